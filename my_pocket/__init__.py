"""
My Pocket - Source Package

The ledger engine behind a shared household budget: monthly expenses,
credit card purchases split into installments, a rolling monthly balance,
and offline-first sync of a shared workspace.

DESIGN PRINCIPLES:
1. Local first: every write lands locally before the network is involved
2. Totals are derived, never stored as truth
3. No silent corrections: every overwrite by the remote is surfaced
4. Every step must be auditable
5. Storage and remote backends are swappable
"""

__version__ = "1.0.0"
__author__ = "My Pocket Team"
