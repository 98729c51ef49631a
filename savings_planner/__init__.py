"""Savings goal budget scheduling and monthly execution tracking."""

__version__ = "0.1.0"
