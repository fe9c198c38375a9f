# custody/core/hashing.py
import hashlib

from custody.core.canon import canonical_json
from custody.core.types import CustodyRecord, Transition


def transition_hash(t: Transition) -> str:
    """hex(sha256) of the canonical JSON form of a transition."""
    return hashlib.sha256(canonical_json(t.to_dict())).hexdigest()


def record_hash(record: CustodyRecord) -> str:
    """hex(sha256) of the canonical JSON form of a custody record."""
    return hashlib.sha256(canonical_json(record.to_dict())).hexdigest()
