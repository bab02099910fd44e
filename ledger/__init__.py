"""Accounts-payable ledger backed by SQLite."""

from ledger.db import LedgerStore, DEFAULT_DB_PATH

__all__ = ["LedgerStore", "DEFAULT_DB_PATH"]
