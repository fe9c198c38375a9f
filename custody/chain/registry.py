# custody/chain/registry.py
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from custody.chain.entry import CustodyLedgerEntry
from custody.core.types import CustodyRecord, Transition
from custody.core.errors import IdentityMismatchError, InvalidStateError
from custody.storage import StorageBackend, create_storage


@dataclass
class CustodyRegistry:
    """
    Tracks many custody chains side by side, one entry per chain ID.
    Supports optional persistent storage (SQLite).
    """
    storage: Optional[Union[StorageBackend, str]] = None
    require_monotonic_time: bool = False
    entries: Dict[str, CustodyLedgerEntry] = field(default_factory=dict)

    def __post_init__(self):
        self._lock = threading.Lock()

        if isinstance(self.storage, str):
            stripped = self.storage.strip()
            if stripped.startswith(("sqlite://", "jsonl:")):
                self.storage = create_storage(stripped)
            elif stripped:
                # Plain file path → SQLite
                self.storage = create_storage(f"sqlite://{stripped}")
            else:
                self.storage = None

        if self.storage and not self.entries:
            for chain_id in self.storage.list_chains():
                self.entries[chain_id] = CustodyLedgerEntry.load(
                    self.storage, chain_id, self.require_monotonic_time
                )
            print(f"[custody] Loaded {len(self.entries)} custody chains from storage")

    def open(self, chain_id: str, location: str, caller_id: str, now: int) -> None:
        with self._lock:
            if chain_id in self.entries:
                existing = self.entries[chain_id].read()
                raise InvalidStateError(
                    "contract already in use",
                    {"chain_id": chain_id, "state": existing.state.value},
                )
            entry = CustodyLedgerEntry(
                storage=self.storage,
                require_monotonic_time=self.require_monotonic_time,
            )
            entry.open(chain_id, location, caller_id, now)
            self.entries[chain_id] = entry

    def transfer(self, chain_id: str, new_owner: str, location: str, caller_id: str, now: int) -> None:
        self._entry(chain_id).transfer(chain_id, new_owner, location, caller_id, now)

    def finalize(self, chain_id: str, receiver: str, location: str, caller_id: str, now: int) -> None:
        self._entry(chain_id).finalize(chain_id, receiver, location, caller_id, now)

    def read(self, chain_id: str) -> CustodyRecord:
        with self._lock:
            entry = self.entries.get(chain_id)
        if entry is None:
            return CustodyRecord.empty()
        return entry.read()

    def history(self, chain_id: str) -> List[Transition]:
        with self._lock:
            entry = self.entries.get(chain_id)
        return entry.history() if entry else []

    def chain_ids(self) -> List[str]:
        with self._lock:
            return sorted(self.entries)

    def _entry(self, chain_id: str) -> CustodyLedgerEntry:
        with self._lock:
            entry = self.entries.get(chain_id)
        if entry is None:
            raise IdentityMismatchError("unknown supply chain ID", {"chain_id": chain_id})
        return entry

    def close(self) -> None:
        """Release storage resources (e.g. database connection)."""
        if self.storage:
            self.storage.close()
            print("[custody] Storage closed")
            self.storage = None
            for entry in self.entries.values():
                entry.storage = None
