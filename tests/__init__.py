"""
zkescrow Test Suite
===================

- tests/unit/      - ledger, codec, vault, store and registry in isolation
- tests/services/  - trustee and escrow services over in-process HTTP

Run tests:
    pytest
    pytest tests/unit
"""
