"""Referral settlement and reconciliation service."""

__version__ = "0.4.0"
