# custody/__init__.py
"""
Custody — authorization-gated chain of custody for physical shipments.
A chain is opened by one party, handed off owner to owner, and finally closed.
Every transition is checked against the current owner and the chain's identity,
and recorded in a hash-linked history that can be replayed and verified offline.
"""

__version__ = "0.1.0-dev"

from custody.core.types import CustodyRecord, CustodyState, Transition
from custody.core.errors import (
    CustodyError,
    InvalidStateError,
    AuthorizationError,
    IdentityMismatchError,
    TimestampRegressionError,
)
from custody.chain.entry import CustodyLedgerEntry
from custody.chain.registry import CustodyRegistry
from custody.storage import StorageBackend, SQLiteStorage, create_storage
from custody.verify.verifier import HistoryVerifier, VerificationResult

__all__ = [
    "CustodyRecord",
    "CustodyState",
    "Transition",
    "CustodyError",
    "InvalidStateError",
    "AuthorizationError",
    "IdentityMismatchError",
    "TimestampRegressionError",
    "CustodyLedgerEntry",
    "CustodyRegistry",
    "StorageBackend",
    "SQLiteStorage",
    "create_storage",
    "HistoryVerifier",
    "VerificationResult",
]
