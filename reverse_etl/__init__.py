"""Reverse ETL write pipeline: transform source records and load them into destination APIs."""

__version__ = "1.0.0"
