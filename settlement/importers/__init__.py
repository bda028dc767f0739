"""Adapters that turn uploaded clinic tables into candidate treatment rows."""
