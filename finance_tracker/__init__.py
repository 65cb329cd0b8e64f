"""
Personal Finance Tracker

Records money sources and income/expense postings against them, keeping
every source balance consistent with its postings. All monetary values
use Decimal.
"""

__version__ = "1.0.0"
