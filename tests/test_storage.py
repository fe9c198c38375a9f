# tests/test_storage.py
import os
import sqlite3
import pytest
from pathlib import Path
from tempfile import TemporaryDirectory

from custody.storage import SQLiteStorage, create_storage, StorageBackend
from custody.chain.entry import CustodyLedgerEntry
from custody.chain.registry import CustodyRegistry
from custody.core.types import CustodyRecord, CustodyState, Transition, UINT64_MAX
from custody.core.errors import AuthorizationError, InvalidStateError


@pytest.fixture
def temp_db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
def storage(temp_db_path: Path) -> SQLiteStorage:
    s = SQLiteStorage(db_path=temp_db_path)
    yield s
    s.close()


def test_create_storage_dynamic_routing(temp_db_path: Path):
    storage = create_storage(f"sqlite://{temp_db_path}")
    assert isinstance(storage, SQLiteStorage)
    assert isinstance(storage, StorageBackend)
    assert str(storage.db_path) == str(temp_db_path.resolve())
    storage.close()


def test_create_storage_unsupported():
    with pytest.raises(NotImplementedError):
        create_storage("jsonl:/tmp/x.jsonl")
    with pytest.raises(ValueError, match="Unsupported"):
        create_storage("postgres://db")


def test_sqlite_init_default_and_env(monkeypatch):
    with TemporaryDirectory() as tmpdir:
        monkeypatch.chdir(tmpdir)
        monkeypatch.delenv("CUSTODY_DB_PATH", raising=False)
        default_storage = SQLiteStorage()
        assert default_storage.db_path.name == "custody-records.db"
        default_storage.close()

        env_db = Path(tmpdir) / "env" / "env-test.db"
        monkeypatch.setenv("CUSTODY_DB_PATH", str(env_db))
        env_storage = SQLiteStorage()
        assert env_storage.db_path == env_db.resolve()
        env_storage.close()


def test_sqlite_schema_creation(storage: SQLiteStorage):
    columns = {row[1] for row in storage.conn.execute("PRAGMA table_info(custody_records)")}
    assert columns == {"chain_id", "owner", "location", "updated_at", "state"}

    columns = {row[1] for row in storage.conn.execute("PRAGMA table_info(custody_transitions)")}
    assert columns == {
        "chain_id", "sequence", "operation", "caller", "owner", "location",
        "updated_at", "state", "prev_hash", "transition_hash", "canonical_json"
    }


def test_entry_persists_every_commit(storage: SQLiteStorage):
    entry = CustodyLedgerEntry(storage=storage)
    entry.open("chain-1", "Warehouse A", "alice", 100)
    entry.transfer("chain-1", "bob", "Port B", "alice", 200)

    assert storage.load_record("chain-1") == entry.read()
    assert storage.load_transitions("chain-1") == entry.history()
    assert storage.get_transition_count("chain-1") == 2
    assert storage.list_chains() == ["chain-1"]


def test_rejected_operation_not_persisted(storage: SQLiteStorage):
    entry = CustodyLedgerEntry(storage=storage)
    entry.open("chain-1", "Warehouse A", "alice", 100)
    with pytest.raises(AuthorizationError):
        entry.transfer("chain-1", "mallory", "Hideout", "mallory", 200)

    assert storage.load_record("chain-1").owner == "alice"
    assert storage.get_transition_count("chain-1") == 1


def test_load_entry_round_trip(storage: SQLiteStorage):
    entry = CustodyLedgerEntry(storage=storage)
    entry.open("chain-1", "Warehouse A", "alice", 100)
    entry.transfer("chain-1", "bob", "Port B", "alice", 200)

    restored = CustodyLedgerEntry.load(storage, "chain-1")
    assert restored.read() == entry.read()
    assert restored.history() == entry.history()

    # restored entry continues the same history
    restored.finalize("chain-1", "carol", "Destination", "bob", 400)
    assert storage.load_record("chain-1").state is CustodyState.COMPLETE
    assert storage.load_transitions("chain-1")[-1].sequence == 2


def test_load_unknown_chain(storage: SQLiteStorage):
    assert storage.load_record("non-existent") is None
    assert storage.load_transitions("non-existent") == []
    assert CustodyLedgerEntry.load(storage, "non-existent").read() == CustodyRecord.empty()


def test_uint64_timestamp_survives_storage(storage: SQLiteStorage):
    entry = CustodyLedgerEntry(storage=storage)
    entry.open("chain-1", "Warehouse A", "alice", UINT64_MAX)
    assert storage.load_record("chain-1").updated_at == UINT64_MAX
    assert storage.load_transitions("chain-1")[0].updated_at == UINT64_MAX


def test_save_uninitialized_raises(storage: SQLiteStorage):
    t = Transition("c", 0, "open", "alice", "alice", "here", 1, CustodyState.STARTED)
    with pytest.raises(ValueError, match="uninitialized"):
        storage.save(CustodyRecord.empty(), t)


def test_failed_save_leaves_entry_unchanged(storage: SQLiteStorage):
    entry = CustodyLedgerEntry(storage=storage)
    entry.open("chain-1", "Warehouse A", "alice", 100)

    # Another writer already stored sequence 1 for this chain
    storage.conn.execute("""
        INSERT INTO custody_transitions VALUES
        ('chain-1', 1, 'transfer', 'alice', 'eve', 'X', '150', 'started', '', '', '{}')
    """)

    with pytest.raises(sqlite3.IntegrityError):
        entry.transfer("chain-1", "bob", "Port B", "alice", 200)

    assert entry.read().owner == "alice"
    assert len(entry.history()) == 1
    assert storage.load_record("chain-1").owner == "alice"


def test_registry_integration_with_storage(temp_db_path: Path):
    reg = CustodyRegistry(storage=f"sqlite://{temp_db_path}")
    reg.open("chain-1", "Warehouse A", "alice", 100)
    reg.open("chain-2", "Warehouse Z", "zoe", 110)
    reg.transfer("chain-1", "bob", "Port B", "alice", 200)
    reg.close()

    reg2 = CustodyRegistry(storage=str(temp_db_path))
    assert reg2.chain_ids() == ["chain-1", "chain-2"]
    assert reg2.read("chain-1").owner == "bob"
    with pytest.raises(InvalidStateError):
        reg2.open("chain-2", "Warehouse Z", "zoe", 300)
    reg2.finalize("chain-1", "carol", "Destination", "bob", 400)
    reg2.close()

    with SQLiteStorage(temp_db_path) as s:
        assert s.load_record("chain-1").state is CustodyState.COMPLETE


def test_tamper_detection_on_load(temp_db_path: Path):
    reg = CustodyRegistry(storage=str(temp_db_path))
    reg.open("chain-1", "Warehouse A", "alice", 100)
    reg.transfer("chain-1", "bob", "Port B", "alice", 200)
    reg.close()

    conn = sqlite3.connect(temp_db_path)
    conn.execute("UPDATE custody_transitions SET owner = 'mallory' WHERE sequence = 0")
    conn.commit()
    conn.close()

    with pytest.raises(ValueError, match="Chain broken"):
        CustodyRegistry(storage=str(temp_db_path))


def test_close_releases_resources(temp_db_path: Path):
    storage = SQLiteStorage(temp_db_path)
    assert storage._conn is not None
    storage.close()

    entry = CustodyLedgerEntry(storage=storage)
    with pytest.raises(RuntimeError, match="closed"):
        entry.open("chain-1", "Warehouse A", "alice", 100)
    assert entry.read() == CustodyRecord.empty()


def test_context_manager(temp_db_path: Path):
    with SQLiteStorage(temp_db_path) as storage:
        assert storage._conn is not None
    with pytest.raises(RuntimeError, match="closed"):
        storage.load_record("test")


def test_tampered_record_table_rejected_on_load(temp_db_path: Path):
    reg = CustodyRegistry(storage=str(temp_db_path))
    reg.open("chain-1", "Warehouse A", "alice", 100)
    reg.close()

    conn = sqlite3.connect(temp_db_path)
    conn.execute("UPDATE custody_records SET owner = 'mallory' WHERE chain_id = 'chain-1'")
    conn.commit()
    conn.close()

    with pytest.raises(ValueError, match="does not match history"):
        CustodyRegistry(storage=str(temp_db_path))

    with SQLiteStorage(temp_db_path) as s:
        with pytest.raises(ValueError, match="does not match history"):
            CustodyLedgerEntry.load(s, "chain-1")


def test_record_without_history_rejected_on_load(temp_db_path: Path):
    with SQLiteStorage(temp_db_path) as s:
        s.conn.execute("""
            INSERT INTO custody_records VALUES ('chain-1', 'mallory', 'Hideout', '100', 'started')
        """)
        with pytest.raises(ValueError, match="no history"):
            CustodyLedgerEntry.load(s, "chain-1")


def test_loaded_owner_comes_from_history(storage: SQLiteStorage):
    entry = CustodyLedgerEntry(storage=storage)
    entry.open("chain-1", "Warehouse A", "alice", 100)
    entry.transfer("chain-1", "bob", "Port B", "alice", 200)

    restored = CustodyLedgerEntry.load(storage, "chain-1")
    assert restored.read() == entry.history()[-1].record()
    with pytest.raises(AuthorizationError):
        restored.transfer("chain-1", "mallory", "Hideout", "alice", 300)


def test_first_transition_must_not_link_backwards(temp_db_path: Path):
    reg = CustodyRegistry(storage=str(temp_db_path))
    reg.open("chain-1", "Warehouse A", "alice", 100)
    reg.close()

    conn = sqlite3.connect(temp_db_path)
    conn.execute("UPDATE custody_transitions SET prev_hash = 'deadbeef' WHERE sequence = 0")
    conn.commit()
    conn.close()

    with SQLiteStorage(temp_db_path) as s:
        with pytest.raises(ValueError, match="Chain broken at sequence 0"):
            s.load_transitions("chain-1")
