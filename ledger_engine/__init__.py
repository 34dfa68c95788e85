"""
Ledger Engine

Double-entry bookkeeping: per-owner journals grouped into ledgers, immutable
integer minor-unit postings, and transaction groups that only commit when
debits equal credits.
"""

__version__ = "1.0.0"
