"""
Simple Bank

Transfer execution core of a double-entry bank ledger: accounts with
non-negative integer balances, atomic two-account transfers under ordered
row locks, and an append-only entry journal.
"""

__version__ = "1.0.0"
