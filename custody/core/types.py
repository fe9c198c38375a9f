# custody/core/types.py
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Literal, Optional

UINT64_MAX = 2**64 - 1


class CustodyState(str, Enum):
    """Lifecycle phase of a custody chain. Only ever moves forward."""
    UNINITIALIZED = "uninitialized"
    STARTED = "started"
    COMPLETE = "complete"


@dataclass(frozen=True)
class CustodyRecord:
    """Current view of one custody chain."""
    chain_id: str = ""
    owner: Optional[str] = None             # None until opened
    location: str = ""
    updated_at: int = 0                     # host-supplied timestamp, uint64
    state: CustodyState = CustodyState.UNINITIALIZED

    @classmethod
    def empty(cls) -> "CustodyRecord":
        """Sentinel returned when a chain has never been opened."""
        return cls()

    @property
    def is_terminal(self) -> bool:
        return self.state is CustodyState.COMPLETE

    def to_dict(self) -> dict:
        d = asdict(self)
        d["state"] = self.state.value
        # JCS writes numbers as doubles; uint64 needs the exact decimal form
        d["updated_at"] = str(self.updated_at)
        return d


@dataclass(frozen=True)
class Transition:
    """Single committed state change in a chain's custody history."""
    chain_id: str
    sequence: int
    operation: Literal["open", "transfer", "finalize"]
    caller: str                     # identity that performed the operation
    owner: str                      # owner after the operation
    location: str
    updated_at: int
    state: CustodyState
    prev_hash: str = ""             # hex(sha256) or empty for first transition

    def to_dict(self) -> dict:
        """Helper for canonicalization / hashing."""
        d = asdict(self)
        d["state"] = self.state.value
        d["updated_at"] = str(self.updated_at)
        return d

    def record(self) -> CustodyRecord:
        """The custody record as it stood right after this transition."""
        return CustodyRecord(
            chain_id=self.chain_id,
            owner=self.owner,
            location=self.location,
            updated_at=self.updated_at,
            state=self.state,
        )
