"""
Escrow Service
==============

Event watcher, reveal coordinator, retry queue and the HTTP read/admin
surface of the loan escrow.
"""
