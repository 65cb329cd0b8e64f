"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class TrackerConfig(BaseSettings):
    """Finance tracker configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///finance_tracker.db"  # memory://, sqlite:///path or postgresql://...
    auto_migrate: bool = True
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Dashboard configuration
    recent_transactions_limit: int = 5
    
    class Config:
        env_prefix = "FINTRACK_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = TrackerConfig()


def get_config() -> TrackerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> TrackerConfig:
    """Reload configuration from environment"""
    global config
    config = TrackerConfig()
    return config
