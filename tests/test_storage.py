"""
Tests for storage backends and the atomic unit
"""

import pytest
import tempfile
import threading
import os
from pathlib import Path

from wallet_ledger.storage import (
    InMemoryStorage, SQLiteStorage, StorageInterface, create_storage
)
from wallet_ledger.errors import ConcurrencyConflict, DuplicateReference


record = {"id": "rec_1", "name": "Test Record", "amount": "100.50", "version": 0}


class StorageContract:
    """Behaviour every backend shares; subclasses provide make_storage()"""

    def make_storage(self) -> StorageInterface:
        raise NotImplementedError

    def setup_method(self):
        self.storage = self.make_storage()

    def teardown_method(self):
        self.storage.close()

    def test_basic_operations(self):
        """Test save, load, exists, find, count and delete"""
        self.storage.save("things", "rec_1", record)
        assert self.storage.load("things", "rec_1") == record
        assert self.storage.exists("things", "rec_1")
        assert not self.storage.exists("things", "missing")
        assert self.storage.load("things", "missing") is None

        self.storage.save("things", "rec_2", {"id": "rec_2", "name": "Other"})
        assert self.storage.count("things") == 2
        assert [r["id"] for r in self.storage.find("things", {"name": "Other"})] == ["rec_2"]

        assert self.storage.delete("things", "rec_1")
        assert not self.storage.delete("things", "rec_1")
        assert self.storage.count("things") == 1

        self.storage.clear_table("things")
        assert self.storage.count("things") == 0

    def test_save_overwrites(self):
        self.storage.save("things", "rec_1", record)
        self.storage.save("things", "rec_1", {**record, "name": "Renamed"})
        assert self.storage.load("things", "rec_1")["name"] == "Renamed"
        assert self.storage.count("things") == 1

    def test_load_all_keeps_insertion_order(self):
        for i in range(5):
            self.storage.insert("ordered", f"id_{4 - i}", {"n": i})
        assert [r["n"] for r in self.storage.load_all("ordered")] == [0, 1, 2, 3, 4]

    def test_insert_is_unique(self):
        """insert() refuses an existing id"""
        self.storage.insert("keys", "k1", {"value": 1})
        with pytest.raises(DuplicateReference):
            self.storage.insert("keys", "k1", {"value": 2})
        assert self.storage.load("keys", "k1") == {"value": 1}

    def test_save_if_version(self):
        self.storage.insert("versioned", "v1", {"id": "v1", "version": 0, "n": 1})
        new_version = self.storage.save_if_version("versioned", "v1", {"id": "v1", "n": 2}, 0)
        assert new_version == 1
        stored = self.storage.load("versioned", "v1")
        assert stored["n"] == 2
        assert stored["version"] == 1

    def test_save_if_version_conflict(self):
        """A stale expected version is a concurrency conflict"""
        self.storage.insert("versioned", "v1", {"id": "v1", "version": 0, "n": 1})
        self.storage.save_if_version("versioned", "v1", {"id": "v1", "n": 2}, 0)
        with pytest.raises(ConcurrencyConflict):
            self.storage.save_if_version("versioned", "v1", {"id": "v1", "n": 3}, 0)
        assert self.storage.load("versioned", "v1")["n"] == 2

    def test_save_if_version_missing_record(self):
        with pytest.raises(ConcurrencyConflict):
            self.storage.save_if_version("versioned", "ghost", {"id": "ghost"}, 0)

    def test_atomic_commits(self):
        with self.storage.atomic():
            assert self.storage.in_transaction
            self.storage.save("things", "rec_1", record)
        assert not self.storage.in_transaction
        assert self.storage.exists("things", "rec_1")

    def test_atomic_rolls_back_every_write(self):
        """An exception undoes all writes of the unit"""
        self.storage.save("things", "existing", {"n": 1})
        with pytest.raises(RuntimeError, match="boom"):
            with self.storage.atomic():
                self.storage.save("things", "rec_1", record)
                self.storage.save("things", "existing", {"n": 2})
                self.storage.delete("things", "existing")
                raise RuntimeError("boom")

        assert not self.storage.exists("things", "rec_1")
        assert self.storage.load("things", "existing") == {"n": 1}

    def test_rollback_after_duplicate_insert(self):
        with pytest.raises(DuplicateReference):
            with self.storage.atomic():
                self.storage.insert("keys", "k1", {"value": 1})
                self.storage.insert("other", "o1", {"value": 1})
                self.storage.insert("keys", "k1", {"value": 2})
        assert not self.storage.exists("keys", "k1")
        assert not self.storage.exists("other", "o1")

    def test_nested_units_commit_once(self):
        with self.storage.atomic():
            self.storage.save("things", "outer", {"n": 1})
            with self.storage.atomic():
                self.storage.save("things", "inner", {"n": 2})
            assert self.storage.in_transaction
        assert self.storage.exists("things", "outer")
        assert self.storage.exists("things", "inner")

    def test_failed_inner_unit_rolls_back_outer(self):
        with pytest.raises(ValueError):
            with self.storage.atomic():
                self.storage.save("things", "outer", {"n": 1})
                with self.storage.atomic():
                    self.storage.save("things", "inner", {"n": 2})
                    raise ValueError("inner failure")
        assert not self.storage.exists("things", "outer")
        assert not self.storage.exists("things", "inner")

    def test_swallowed_inner_failure_dooms_outer_unit(self):
        with pytest.raises(RuntimeError, match="aborted"):
            with self.storage.atomic():
                self.storage.save("things", "outer", {"n": 1})
                try:
                    with self.storage.atomic():
                        raise ValueError("inner failure")
                except ValueError:
                    pass
        assert not self.storage.exists("things", "outer")

    def test_in_transaction_is_per_thread(self):
        seen = []
        with self.storage.atomic():
            worker = threading.Thread(target=lambda: seen.append(self.storage.in_transaction))
            worker.start()
            worker.join()
        assert seen == [False]

    def test_concurrent_units_serialize(self):
        """Read-modify-write inside units never loses an update"""
        self.storage.save("counters", "c", {"n": 0})

        def bump():
            for _ in range(25):
                with self.storage.atomic():
                    current = self.storage.load("counters", "c")["n"]
                    self.storage.save("counters", "c", {"n": current + 1})

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert self.storage.load("counters", "c")["n"] == 100


class TestInMemoryStorage(StorageContract):
    """Test InMemoryStorage"""

    def make_storage(self):
        return InMemoryStorage()

    def test_returned_records_are_copies(self):
        self.storage.save("things", "rec_1", {"items": [1]})
        loaded = self.storage.load("things", "rec_1")
        loaded["items"].append(2)
        assert self.storage.load("things", "rec_1") == {"items": [1]}


class TestSQLiteStorage(StorageContract):
    """Test SQLiteStorage on a temporary file"""

    def make_storage(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = Path(self.tmpdir.name) / "ledger.db"
        return SQLiteStorage(self.db_path)

    def teardown_method(self):
        self.storage.close()
        self.tmpdir.cleanup()

    def test_persistence_across_connections(self):
        self.storage.save("things", "rec_1", record)
        self.storage.close()

        reopened = SQLiteStorage(self.db_path)
        try:
            assert reopened.load("things", "rec_1") == record
        finally:
            reopened.close()
        self.storage = SQLiteStorage(self.db_path)

    def test_rolled_back_table_creation(self):
        """A table first created inside a rolled-back unit can be used afterwards"""
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.save("fresh", "f1", {"n": 1})
                raise RuntimeError("abort")
        self.storage.save("fresh", "f1", {"n": 2})
        assert self.storage.load("fresh", "f1") == {"n": 2}


class TestCreateStorage:
    """Test storage URL parsing"""

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_memory_url(self):
        storage = create_storage("sqlite://:memory:")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == ":memory:"
        storage.close()

    def test_sqlite_file_url(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "wallet.db")
            storage = create_storage(f"sqlite:///{path}")
            assert isinstance(storage, SQLiteStorage)
            storage.save("things", "rec_1", record)
            storage.close()
            assert os.path.exists(path)

    def test_unsupported_url(self):
        with pytest.raises(ValueError, match="Unsupported"):
            create_storage("postgresql://localhost/ledger")
