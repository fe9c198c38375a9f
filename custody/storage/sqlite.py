# custody/storage/sqlite.py
import os
import sqlite3
import threading
from pathlib import Path
from typing import List, Optional

from custody.core.types import CustodyRecord, CustodyState, Transition
from custody.core.canon import canonical_json_str
from custody.core.hashing import transition_hash
from . import StorageBackend


class SQLiteStorage(StorageBackend):
    """SQLite persistent storage for custody records and transitions."""

    def __init__(self, db_path: str | Path | None = None):
        if db_path is None:
            env_path = os.environ.get("CUSTODY_DB_PATH")
            db_path = env_path if env_path else Path.cwd() / "custody-records.db"

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = self.db_path.resolve()

        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None
        self._connect()

    def _connect(self):
        self._conn = sqlite3.connect(
            str(self.db_path), isolation_level=None, check_same_thread=False
        )
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_schema()

    def _create_schema(self):
        # updated_at is uint64, wider than SQLite INTEGER; kept as decimal text
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS custody_records (
                chain_id    TEXT    PRIMARY KEY,
                owner       TEXT,
                location    TEXT    NOT NULL,
                updated_at  TEXT    NOT NULL,
                state       TEXT    NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS custody_transitions (
                chain_id        TEXT    NOT NULL,
                sequence        INTEGER NOT NULL,
                operation       TEXT    NOT NULL,
                caller          TEXT    NOT NULL,
                owner           TEXT    NOT NULL,
                location        TEXT    NOT NULL,
                updated_at      TEXT    NOT NULL,
                state           TEXT    NOT NULL,
                prev_hash       TEXT    NOT NULL,
                transition_hash TEXT    NOT NULL,
                canonical_json  TEXT    NOT NULL,
                PRIMARY KEY (chain_id, sequence)
            )
        """)
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_owner ON custody_records(owner)")

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Storage connection is closed")
        return self._conn

    def save(self, record: CustodyRecord, transition: Transition) -> None:
        if record.state is CustodyState.UNINITIALIZED:
            raise ValueError("Cannot persist an uninitialized record")
        if transition.chain_id != record.chain_id:
            raise ValueError("Transition does not belong to this record")

        with self._lock:
            conn = self.conn
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute("""
                    INSERT INTO custody_records (chain_id, owner, location, updated_at, state)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(chain_id) DO UPDATE SET
                        owner = excluded.owner,
                        location = excluded.location,
                        updated_at = excluded.updated_at,
                        state = excluded.state
                """, (
                    record.chain_id, record.owner, record.location,
                    str(record.updated_at), record.state.value
                ))
                conn.execute("""
                    INSERT INTO custody_transitions
                    (chain_id, sequence, operation, caller, owner, location,
                     updated_at, state, prev_hash, transition_hash, canonical_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    transition.chain_id, transition.sequence, transition.operation,
                    transition.caller, transition.owner, transition.location,
                    str(transition.updated_at), transition.state.value,
                    transition.prev_hash, transition_hash(transition),
                    canonical_json_str(transition.to_dict())
                ))
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def load_record(self, chain_id: str) -> Optional[CustodyRecord]:
        with self._lock:
            row = self.conn.execute("""
                SELECT chain_id, owner, location, updated_at, state
                FROM custody_records WHERE chain_id = ?
            """, (chain_id,)).fetchone()
        if row is None:
            return None
        cid, owner, location, updated_at, state = row
        return CustodyRecord(
            chain_id=cid,
            owner=owner,
            location=location,
            updated_at=int(updated_at),
            state=CustodyState(state),
        )

    def load_transitions(self, chain_id: str, check_links: bool = True) -> List[Transition]:
        loaded = self._query_transitions(chain_id)
        if not check_links:
            return loaded
        for i, t in enumerate(loaded):
            if t.sequence != i:
                raise ValueError(f"Chain broken at sequence {i}")
            if i == 0 and t.prev_hash != "":
                raise ValueError("Chain broken at sequence 0")
            if i > 0 and t.prev_hash != transition_hash(loaded[i - 1]):
                raise ValueError(f"Chain broken at sequence {t.sequence}")
        return loaded

    def query_transitions(self, chain_id: str, limit: int = 50) -> List[Transition]:
        """Most recent transitions (latest last), without chain checks."""
        return self._query_transitions(chain_id, limit=limit)

    def _query_transitions(self, chain_id: str, limit: Optional[int] = None) -> List[Transition]:
        sql = """
            SELECT chain_id, sequence, operation, caller, owner, location,
                   updated_at, state, prev_hash
            FROM custody_transitions
            WHERE chain_id = ?
            ORDER BY sequence DESC
        """
        params: tuple = (chain_id,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (chain_id, limit)

        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()

        loaded = []
        for row in rows:
            cid, seq, op, caller, owner, location, ts, state, prev = row
            loaded.append(Transition(
                chain_id=cid,
                sequence=seq,
                operation=op,
                caller=caller,
                owner=owner,
                location=location,
                updated_at=int(ts),
                state=CustodyState(state),
                prev_hash=prev,
            ))
        loaded.reverse()  # latest last
        return loaded

    def list_chains(self) -> List[str]:
        with self._lock:
            cursor = self.conn.execute("SELECT chain_id FROM custody_records ORDER BY chain_id")
            return [row[0] for row in cursor.fetchall()]

    def get_transition_count(self, chain_id: str) -> int:
        with self._lock:
            cursor = self.conn.execute(
                "SELECT COUNT(*) FROM custody_transitions WHERE chain_id = ?",
                (chain_id,)
            )
            return cursor.fetchone()[0]

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
