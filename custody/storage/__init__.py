# custody/storage/__init__.py
"""
Storage backends for persistent custody records and their history.
"""

from abc import ABC, abstractmethod
from typing import List, Optional
from pathlib import Path
from custody.core.types import CustodyRecord, Transition


class StorageBackend(ABC):
    """Abstract base for all persistent storage implementations."""

    @abstractmethod
    def save(self, record: CustodyRecord, transition: Transition) -> None:
        """Store the new record and the transition that produced it, atomically."""
        pass

    @abstractmethod
    def load_record(self, chain_id: str) -> Optional[CustodyRecord]:
        pass

    @abstractmethod
    def load_transitions(self, chain_id: str, check_links: bool = True) -> List[Transition]:
        pass

    @abstractmethod
    def list_chains(self) -> List[str]:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


def create_storage(uri: str) -> StorageBackend:
    if uri.startswith("sqlite://"):
        from .sqlite import SQLiteStorage
        raw_path = uri[len("sqlite://"):]
        return SQLiteStorage(Path(raw_path).expanduser().resolve())

    elif uri.startswith("jsonl:"):
        raise NotImplementedError("JSONL backend coming soon")
    else:
        raise ValueError(f"Unsupported storage URI: {uri}")


from .sqlite import SQLiteStorage

__all__ = ["StorageBackend", "create_storage", "SQLiteStorage"]
