"""
Trustee Service
===============

Holds one key share per escrowed identity and releases it once per
authorised request.
"""
