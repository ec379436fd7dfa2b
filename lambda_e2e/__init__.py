"""End-to-end test harness for deployed AWS Lambda functions."""

__version__ = '0.1.0'
