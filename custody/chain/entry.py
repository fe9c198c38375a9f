# custody/chain/entry.py
import threading
from dataclasses import replace
from typing import List, Optional

from custody.core.types import CustodyRecord, CustodyState, Transition, UINT64_MAX
from custody.core.errors import (
    AuthorizationError,
    IdentityMismatchError,
    InvalidStateError,
    TimestampRegressionError,
)
from custody.core.hashing import transition_hash
from custody.storage import StorageBackend


def _check_args(now: int, **identities) -> None:
    # bool is an int subclass; a flag is never a timestamp
    if isinstance(now, bool) or not isinstance(now, int):
        raise ValueError(f"Timestamp must be an integer, got {type(now).__name__}")
    if not 0 <= now <= UINT64_MAX:
        raise ValueError(f"Timestamp out of uint64 range: {now}")
    for name, value in identities.items():
        if not isinstance(value, str):
            raise ValueError(f"{name} must be a string, got {type(value).__name__}")


class CustodyLedgerEntry:
    """
    Custody state machine for a single shipment.

        UNINITIALIZED --open--> STARTED --transfer--> STARTED
        STARTED --finalize--> COMPLETE (terminal)

    Caller identity and the current timestamp are supplied by the host on
    every call. All preconditions are checked before anything changes; with
    storage attached, the new record is persisted before it replaces the
    in-memory one.
    """

    def __init__(
        self,
        record: Optional[CustodyRecord] = None,
        storage: Optional[StorageBackend] = None,
        require_monotonic_time: bool = False,
        transitions: Optional[List[Transition]] = None,
    ):
        self._record = record or CustodyRecord.empty()
        self._transitions: List[Transition] = list(transitions or [])
        self.storage = storage
        self.require_monotonic_time = require_monotonic_time
        self._lock = threading.Lock()

    @classmethod
    def load(
        cls,
        storage: StorageBackend,
        chain_id: str,
        require_monotonic_time: bool = False,
    ) -> "CustodyLedgerEntry":
        """
        Restore an entry from storage. Unknown chain IDs give a fresh entry.
        The record is rebuilt from the hash-checked history; a stored record
        that disagrees with it is rejected.
        """
        stored = storage.load_record(chain_id)
        transitions = storage.load_transitions(chain_id)
        if not transitions:
            if stored is not None:
                raise ValueError(f"Stored record for '{chain_id}' has no history")
            return cls(storage=storage, require_monotonic_time=require_monotonic_time)

        record = transitions[-1].record()
        if stored != record:
            raise ValueError(f"Stored record for '{chain_id}' does not match history")
        return cls(
            record=record,
            storage=storage,
            require_monotonic_time=require_monotonic_time,
            transitions=transitions,
        )

    # ── operations

    def open(self, chain_id: str, location: str, caller_id: str, now: int) -> None:
        _check_args(now, chain_id=chain_id, location=location, caller_id=caller_id)
        with self._lock:
            current = self._record
            if current.state is not CustodyState.UNINITIALIZED:
                raise InvalidStateError(
                    "contract already in use",
                    {"chain_id": current.chain_id, "state": current.state.value},
                )
            updated = CustodyRecord(
                chain_id=chain_id,
                owner=caller_id,
                location=location,
                updated_at=now,
                state=CustodyState.STARTED,
            )
            self._commit("open", caller_id, updated)

    def transfer(self, chain_id: str, new_owner: str, location: str, caller_id: str, now: int) -> None:
        _check_args(now, chain_id=chain_id, new_owner=new_owner, location=location, caller_id=caller_id)
        with self._lock:
            current = self._gate(chain_id, caller_id, now, "only current owner can exchange")
            updated = replace(current, owner=new_owner, location=location, updated_at=now)
            self._commit("transfer", caller_id, updated)

    def finalize(self, chain_id: str, receiver: str, location: str, caller_id: str, now: int) -> None:
        _check_args(now, chain_id=chain_id, receiver=receiver, location=location, caller_id=caller_id)
        with self._lock:
            current = self._gate(chain_id, caller_id, now, "only current owner can complete")
            updated = replace(
                current,
                owner=receiver,
                location=location,
                updated_at=now,
                state=CustodyState.COMPLETE,
            )
            self._commit("finalize", caller_id, updated)

    def read(self) -> CustodyRecord:
        """World-readable view; the Uninitialized sentinel before open."""
        return self._record

    def history(self) -> List[Transition]:
        """Returns copy of the committed transitions."""
        with self._lock:
            return self._transitions.copy()

    # ── internals (caller holds self._lock)

    def _gate(self, chain_id: str, caller_id: str, now: int, auth_message: str) -> CustodyRecord:
        current = self._record
        if caller_id != current.owner:
            raise AuthorizationError(auth_message, {"caller": caller_id})
        if chain_id != current.chain_id:
            raise IdentityMismatchError(
                "supply chain ID mismatch",
                {"expected": current.chain_id, "got": chain_id},
            )
        if current.state is not CustodyState.STARTED:
            raise InvalidStateError("not in valid state", {"state": current.state.value})
        if self.require_monotonic_time and now < current.updated_at:
            raise TimestampRegressionError(
                "timestamp earlier than last update",
                {"updated_at": current.updated_at, "now": now},
            )
        return current

    def _commit(self, operation: str, caller_id: str, updated: CustodyRecord) -> None:
        prev_hash = transition_hash(self._transitions[-1]) if self._transitions else ""
        transition = Transition(
            chain_id=updated.chain_id,
            sequence=len(self._transitions),
            operation=operation,
            caller=caller_id,
            owner=updated.owner,
            location=updated.location,
            updated_at=updated.updated_at,
            state=updated.state,
            prev_hash=prev_hash,
        )

        # Persist first; a storage failure leaves the entry untouched
        if self.storage:
            self.storage.save(updated, transition)

        self._record = updated
        self._transitions.append(transition)
