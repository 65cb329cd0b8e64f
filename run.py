#!/usr/bin/env python3
"""
Finance Tracker Entry Point

Starts the FastAPI server with host, port and database taken from the
FINTRACK_* environment (port 8080 by default).
"""

import sys

from finance_tracker.api import run_server
from finance_tracker.config import get_config


if __name__ == "__main__":
    config = get_config()

    print("💰 Starting Finance Tracker...")
    print(f"🗄️  Database: {config.database_url}")
    print("🔢 All amounts use Decimal precision")
    print(f"🌐 API available at: http://localhost:{config.api_port}")
    print(f"📚 Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(
            host=config.api_host,
            port=config.api_port,
            debug=False  # Set to True for development
        )
    except KeyboardInterrupt:
        print("\n👋 Shutting down Finance Tracker...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
