"""
zkescrow Shared Library
=======================

Common utilities and core escrow components shared by the escrow and
trustee services.

Modules:
    - config: Configuration management with Pydantic Settings
    - logging: Structured logging with structlog
    - errors: Escrow error taxonomy
    - store: Injected keyed storage (memory / Redis)
    - blockchain: Escrow ledger client (mock / testnet / mainnet)
    - zk: Proof models and verifier oracle
    - commitments: Identity / activity commitment registry
    - vault: Threshold-escrowed identity encryption
    - trustees: Trustee network client
    - models: Shared response models

Version: 0.1.0
"""

__version__ = "0.1.0"
__author__ = "zkescrow Team"

from shared.config import settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "settings",
    "get_logger",
    "setup_logging",
    "__version__",
]
