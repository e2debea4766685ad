"""Tokenwise API: token ledger and subscription plan service."""

__version__ = "0.1.0"
