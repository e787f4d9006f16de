"""
zkescrow Services
=================

Services:
- escrow: ledger watcher, reveal coordinator, retry queue, read/admin API
- trustee: share custody endpoint run by each trustee
"""

__all__ = [
    "escrow",
    "trustee",
]
