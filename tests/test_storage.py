"""
Tests for storage backends and transaction support
"""

import pytest
import sqlite3
import tempfile
from datetime import datetime, timezone, date
from pathlib import Path
from dataclasses import dataclass

from lending_core.storage import (
    InMemoryStorage, SQLiteStorage, StorageRecord, create_storage
)
from lending_core.status import RepaymentStatus


# Test data
test_data = {
    "id": "test_001",
    "loan_id": "LOAN001",
    "amount": 1000,
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


class TestStorageInterface:
    """Test base storage interface functionality"""

    def test_in_memory_storage_basic_operations(self):
        """Test basic CRUD operations with InMemoryStorage"""
        storage = InMemoryStorage()

        # Test save and load
        storage.save("test_table", "record_1", test_data)
        loaded = storage.load("test_table", "record_1")
        assert loaded == test_data

        # Test exists
        assert storage.exists("test_table", "record_1")
        assert not storage.exists("test_table", "non_existent")

        # Test load_all
        storage.save("test_table", "record_2", {"id": "record_2", "loan_id": "LOAN002"})
        all_records = storage.load_all("test_table")
        assert len(all_records) == 2

        # Test find
        results = storage.find("test_table", {"loan_id": "LOAN001"})
        assert len(results) == 1
        assert results[0]["id"] == "test_001"

        # Test count
        assert storage.count("test_table") == 2

        # Test delete
        assert storage.delete("test_table", "record_1")
        assert not storage.exists("test_table", "record_1")
        assert storage.count("test_table") == 1

        # Test clear_table
        storage.clear_table("test_table")
        assert storage.count("test_table") == 0

        storage.close()

    def test_in_memory_storage_returns_copies(self):
        """Test that loaded records cannot mutate stored state"""
        storage = InMemoryStorage()
        storage.save("test_table", "record_1", test_data)

        loaded = storage.load("test_table", "record_1")
        loaded["amount"] = 0

        assert storage.load("test_table", "record_1")["amount"] == 1000

    def test_sqlite_storage_basic_operations(self):
        """Test basic CRUD operations with SQLiteStorage"""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "test.db"
            storage = SQLiteStorage(db_path)

            storage.save("test_table", "record_1", test_data)
            loaded = storage.load("test_table", "record_1")
            assert loaded == test_data

            assert storage.exists("test_table", "record_1")
            assert not storage.exists("test_table", "non_existent")

            storage.save("test_table", "record_2", {"id": "record_2", "loan_id": "LOAN002"})
            assert len(storage.load_all("test_table")) == 2

            results = storage.find("test_table", {"loan_id": "LOAN001"})
            assert len(results) == 1
            assert results[0]["id"] == "test_001"

            assert storage.count("test_table") == 2

            assert storage.delete("test_table", "record_1")
            assert storage.count("test_table") == 1

            storage.clear_table("test_table")
            assert storage.count("test_table") == 0

            storage.close()

    def test_sqlite_storage_persists_across_connections(self):
        """Test that committed records survive reopening the database"""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "test.db"

            storage = SQLiteStorage(db_path)
            storage.save("test_table", "record_1", test_data)
            storage.close()

            reopened = SQLiteStorage(db_path)
            assert reopened.load("test_table", "record_1") == test_data
            reopened.close()


class TestTransactionSupport:
    """Test atomic transaction support"""

    def test_in_memory_atomic_commit(self):
        """Test successful atomic block with InMemoryStorage"""
        storage = InMemoryStorage()

        with storage.atomic():
            storage.save("test_table", "record_1", test_data)
            storage.save("test_table", "record_2", {"id": "record_2"})

        assert storage.count("test_table") == 2

    def test_in_memory_atomic_rollback(self):
        """Test that a failed atomic block leaves no trace in InMemoryStorage"""
        storage = InMemoryStorage()
        storage.save("test_table", "record_1", test_data)

        with pytest.raises(ValueError, match="Simulated error"):
            with storage.atomic():
                storage.save("test_table", "record_2", {"id": "record_2"})
                storage.save("test_table", "record_1", {"id": "test_001", "amount": 0})
                storage.save("other_table", "record_3", {"id": "record_3"})
                raise ValueError("Simulated error")

        assert storage.count("test_table") == 1
        assert storage.load("test_table", "record_1")["amount"] == 1000
        assert storage.count("other_table") == 0

    def test_in_memory_nested_atomic_joins_outer(self):
        """Test that an outer rollback also undoes a committed inner block"""
        storage = InMemoryStorage()

        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("test_table", "record_1", test_data)
                raise RuntimeError("outer failure")

        assert storage.count("test_table") == 0

        # Lock is fully released afterwards
        with storage.atomic():
            storage.save("test_table", "record_1", test_data)
        assert storage.count("test_table") == 1

    def test_sqlite_atomic_transactions(self):
        """Test commit and rollback with SQLiteStorage"""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "test.db"
            storage = SQLiteStorage(db_path)

            with storage.atomic():
                storage.save("test_table", "record_1", test_data)
                storage.save("test_table", "record_2", {"id": "record_2"})

            assert storage.count("test_table") == 2

            initial_count = storage.count("test_table")
            with pytest.raises(ValueError):
                with storage.atomic():
                    storage.save("test_table", "record_3", {"id": "record_3"})
                    storage.save("test_table", "record_4", {"id": "record_4"})
                    raise ValueError("Simulated error")

            # Count should be unchanged due to rollback
            assert storage.count("test_table") == initial_count
            assert not storage.exists("test_table", "record_3")
            assert not storage.exists("test_table", "record_4")

            storage.close()

    def test_sqlite_nested_atomic_commits_once(self):
        """Test that nested atomic blocks share one SQLite transaction"""
        storage = SQLiteStorage()
        storage.save("test_table", "seed", {"id": "seed"})

        with pytest.raises(ValueError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("test_table", "record_1", test_data)
                raise ValueError("outer failure")

        assert not storage.exists("test_table", "record_1")
        storage.close()


    def test_in_memory_rollback_restores_deletes_and_clears(self):
        """Test rollback brings back deleted records and cleared tables"""
        storage = InMemoryStorage()
        storage.save("test_table", "record_1", test_data)
        storage.save("other_table", "record_2", {"id": "record_2"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.delete("test_table", "record_1")
                storage.clear_table("other_table")
                storage.save("test_table", "record_1", {"id": "test_001", "amount": 5})
                raise RuntimeError("abort")

        assert storage.load("test_table", "record_1") == test_data
        assert storage.load("other_table", "record_2") == {"id": "record_2"}

    def test_in_memory_transaction_tracks_only_touched_records(self):
        """Test a transaction's undo log grows with its writes, not with the store"""
        storage = InMemoryStorage()
        for i in range(100):
            storage.save("audit_events", f"event_{i}", {"id": f"event_{i}"})

        with storage.atomic():
            storage.save("loans", "L1", {"id": "L1"})
            storage.save("loans", "L1", {"id": "L1", "version": 1})
            assert len(storage._undo) == 1

        assert storage._undo is None

    def test_sqlite_transaction_holds_write_lock(self):
        """Test a second connection cannot write while a transaction is open"""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "test.db"
            storage = SQLiteStorage(db_path)
            storage.save("test_table", "seed", {"id": "seed"})
            other = sqlite3.connect(str(db_path), timeout=0.1)

            with storage.atomic():
                with pytest.raises(sqlite3.OperationalError, match="locked"):
                    other.execute("BEGIN IMMEDIATE")

            # Released once the transaction ends
            other.execute("BEGIN IMMEDIATE")
            other.rollback()
            other.close()
            storage.close()


class TestCompareAndSave:
    """Test conditional replacement of records"""

    @pytest.mark.parametrize("backend", ["memory", "sqlite"])
    def test_replaces_only_matching_record(self, backend):
        storage = InMemoryStorage() if backend == "memory" else SQLiteStorage()
        storage.save("loans", "L1", {"id": "L1", "version": 0})

        assert storage.compare_and_save("loans", "L1", {"id": "L1", "version": 1}, "version", 0)
        assert storage.load("loans", "L1")["version"] == 1

        assert not storage.compare_and_save("loans", "L1", {"id": "L1", "version": 1}, "version", 0)
        assert not storage.compare_and_save("loans", "missing", {"id": "missing"}, "version", 0)
        assert not storage.exists("loans", "missing")
        storage.close()

    @pytest.mark.parametrize("backend", ["memory", "sqlite"])
    def test_rolled_back_with_transaction(self, backend):
        storage = InMemoryStorage() if backend == "memory" else SQLiteStorage()
        storage.save("loans", "L1", {"id": "L1", "version": 0})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.compare_and_save("loans", "L1", {"id": "L1", "version": 1}, "version", 0)
                raise RuntimeError("abort")

        assert storage.load("loans", "L1")["version"] == 0
        storage.close()

    def test_sees_writes_from_another_connection(self):
        """Test the comparison uses the committed value, not this connection's last read"""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "test.db"
            storage_a = SQLiteStorage(db_path)
            storage_b = SQLiteStorage(db_path)
            storage_a.save("loans", "L1", {"id": "L1", "version": 0})

            assert storage_a.load("loans", "L1")["version"] == 0
            storage_b.save("loans", "L1", {"id": "L1", "version": 1, "total_paid": 300})

            with storage_a.atomic():
                saved = storage_a.compare_and_save(
                    "loans", "L1", {"id": "L1", "version": 1, "total_paid": 200}, "version", 0
                )

            assert not saved
            assert storage_b.load("loans", "L1")["total_paid"] == 300

            storage_a.close()
            storage_b.close()


class TestStorageRecord:
    """Test StorageRecord serialization"""

    def test_storage_record_serialization(self):
        """Test that dates, datetimes and enums become JSON-friendly values"""

        @dataclass
        class TestRecord(StorageRecord):
            due_date: date
            status: RepaymentStatus

        now = datetime.now(timezone.utc)
        record = TestRecord(
            id="rec_1",
            created_at=now,
            updated_at=now,
            due_date=date(2024, 2, 1),
            status=RepaymentStatus.PARTIAL
        )

        result = record.to_dict()
        assert result["created_at"] == now.isoformat()
        assert result["due_date"] == "2024-02-01"
        assert result["status"] == "partial"

        parsed = StorageRecord._parse_timestamps(result)
        assert parsed["created_at"] == now
        assert result["created_at"] == now.isoformat()  # Original untouched


class TestCreateStorage:
    """Test storage selection from database URLs"""

    def test_memory_urls(self):
        assert isinstance(create_storage(":memory:"), InMemoryStorage)
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self):
        """Test sqlite:/// URLs map to a file path"""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "lending.db"
            storage = create_storage(f"sqlite:///{db_path}")
            assert isinstance(storage, SQLiteStorage)
            storage.save("loans", "L1", {"id": "L1"})
            storage.close()
            assert db_path.exists()

    def test_sqlite_in_memory_url(self):
        storage = create_storage("sqlite://")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == ":memory:"
        storage.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError, match="Unsupported database URL"):
            create_storage("postgresql://localhost/lending")
