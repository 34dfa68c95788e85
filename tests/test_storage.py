"""
Tests for storage backends and transaction support
"""

import pytest
import threading
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass

from ledger_engine.config import LedgerConfig
from ledger_engine.storage import (
    InMemoryStorage, SQLiteStorage, StorageRecord,
    create_storage, from_storage_datetime, record_matches, to_storage_datetime
)


# Test data
test_data = {
    "id": "test_001",
    "name": "Test Record",
    "amount": 10050,
    "created_at": to_storage_datetime(datetime.now(timezone.utc)),
    "updated_at": to_storage_datetime(datetime.now(timezone.utc))
}


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    """Each backend in turn; the SQLite one is file-backed"""
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "test.db")
    yield backend
    backend.close()


class TestStorageInterface:
    """Test basic operations shared by every backend"""

    def test_basic_operations(self, storage):
        """Test basic CRUD operations"""
        storage.save("test_table", "record_1", test_data)
        loaded = storage.load("test_table", "record_1")
        assert loaded == test_data

        assert storage.exists("test_table", "record_1")
        assert not storage.exists("test_table", "non_existent")
        assert storage.load("test_table", "non_existent") is None

        storage.save("test_table", "record_2", {"id": "record_2", "data": "test"})
        assert len(storage.load_all("test_table")) == 2

        results = storage.find("test_table", {"id": "test_001"})
        assert len(results) == 1
        assert results[0]["id"] == "test_001"

        assert storage.count("test_table") == 2

        assert storage.delete("test_table", "record_1")
        assert not storage.delete("test_table", "record_1")
        assert storage.count("test_table") == 1

        storage.clear_table("test_table")
        assert storage.count("test_table") == 0

    def test_save_overwrites_in_place(self, storage):
        """Updating a record keeps its position in insertion order"""
        storage.save("t", "a", {"id": "a", "v": 1})
        storage.save("t", "b", {"id": "b", "v": 2})
        storage.save("t", "a", {"id": "a", "v": 3})

        records = storage.load_all("t")
        assert [r["id"] for r in records] == ["a", "b"]
        assert records[0]["v"] == 3

    def test_loaded_records_are_copies(self, storage):
        storage.save("t", "a", {"id": "a", "tags": ["x"]})
        loaded = storage.load("t", "a")
        loaded["tags"].append("y")

        assert storage.load("t", "a")["tags"] == ["x"]


class TestFilters:
    """Test filter lookups, count and sum"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        base = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)
        rows = [
            ("p1", "j1", 100, None, base, None),
            ("p2", "j1", None, 250, base + timedelta(days=1), None),
            ("p3", "j2", 40, None, base + timedelta(days=2), None),
            ("p4", "j2", 60, None, base, to_storage_datetime(base)),
        ]
        for record_id, journal_id, debit, credit, post_date, deleted_at in rows:
            self.storage.save("postings", record_id, {
                "id": record_id,
                "journal_id": journal_id,
                "debit": debit,
                "credit": credit,
                "post_date": to_storage_datetime(post_date),
                "deleted_at": deleted_at,
            })
        self.base = base

    def test_exact_and_in(self):
        assert self.storage.count("postings", {"journal_id": "j1"}) == 2
        assert self.storage.count("postings", {"journal_id__exact": "j2"}) == 2
        assert self.storage.count("postings", {"journal_id__in": ["j1", "j2"]}) == 4
        assert self.storage.count("postings", {"journal_id__in": []}) == 0

    def test_isnull(self):
        assert self.storage.count("postings", {"deleted_at__isnull": True}) == 3
        assert self.storage.count("postings", {"deleted_at__isnull": False}) == 1

        # A missing field counts as null
        assert self.storage.count("postings", {"missing__isnull": True}) == 4
        assert self.storage.count("postings", {"missing": None}) == 0

    def test_datetime_comparisons(self):
        """Datetime operands are compared in storage form"""
        cutoff = self.base + timedelta(days=1)
        assert self.storage.count("postings", {"post_date__lte": cutoff}) == 3
        assert self.storage.count("postings", {"post_date__lt": cutoff}) == 2
        assert self.storage.count("postings", {"post_date__gt": cutoff}) == 1
        assert self.storage.count("postings", {"post_date__gte": cutoff}) == 2

    def test_comparisons_skip_nulls(self):
        assert self.storage.count("postings", {"debit__gte": 0}) == 3
        assert self.storage.count("postings", {"credit__gt": 0}) == 1

    def test_sum(self):
        assert self.storage.sum("postings", "debit") == 200
        assert self.storage.sum("postings", "credit") == 250
        assert self.storage.sum("postings", "debit", {"deleted_at__isnull": True}) == 140
        assert self.storage.sum("postings", "debit", {"journal_id": "nope"}) == 0

    def test_record_matches_without_filters(self):
        assert record_matches({"a": 1}, None)
        assert record_matches({"a": 1}, {})

    def test_sqlite_filters_match_memory(self, tmp_path):
        """SQLite filters in Python over the same JSON documents"""
        sqlite = SQLiteStorage(tmp_path / "filters.db")
        for record in self.storage.load_all("postings"):
            sqlite.save("postings", record["id"], record)

        filters = {"journal_id__in": ["j2"], "deleted_at__isnull": True}
        assert sqlite.sum("postings", "debit", filters) == 40
        assert sqlite.count("postings", filters) == self.storage.count("postings", filters)
        sqlite.close()


class TestTransactionSupport:
    """Test atomic transaction support"""

    def test_atomic_commit(self, storage):
        with storage.atomic():
            storage.save("test_table", "record_1", test_data)
            storage.save("test_table", "record_2", {"id": "record_2", "data": "test"})

        assert storage.count("test_table") == 2
        assert not storage.in_transaction

    def test_atomic_rollback(self, storage):
        """An exception inside the block discards every write"""
        storage.save("test_table", "record_1", {"id": "record_1", "v": 1})

        with pytest.raises(ValueError):
            with storage.atomic():
                storage.save("test_table", "record_1", {"id": "record_1", "v": 2})
                storage.save("test_table", "record_2", {"id": "record_2"})
                storage.save("other_table", "x", {"id": "x"})
                raise ValueError("Simulated error")

        assert storage.load("test_table", "record_1") == {"id": "record_1", "v": 1}
        assert not storage.exists("test_table", "record_2")
        assert storage.count("other_table") == 0
        assert not storage.in_transaction

        # Storage remains usable after a rollback
        storage.save("other_table", "y", {"id": "y"})
        assert storage.count("other_table") == 1

    def test_nested_atomic_joins_outer_unit(self, storage):
        """An inner unit only commits with the outermost one"""
        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("test_table", "inner", {"id": "inner"})
                assert storage.in_transaction
                raise RuntimeError("outer fails")

        assert not storage.exists("test_table", "inner")

    def test_rollback_restores_deletes_and_clears(self, storage):
        storage.save("t", "a", {"id": "a", "v": 1})
        storage.save("t", "b", {"id": "b", "v": 1})

        with pytest.raises(ValueError):
            with storage.atomic():
                storage.delete("t", "a")
                storage.save("t", "b", {"id": "b", "v": 2})
                storage.clear_table("t")
                storage.save("t", "c", {"id": "c"})
                raise ValueError("Simulated error")

        assert storage.load_all("t") == [{"id": "a", "v": 1}, {"id": "b", "v": 1}]

    def test_in_memory_unit_logs_only_written_records(self):
        """Opening a unit does not copy the existing dataset"""
        storage = InMemoryStorage()
        for i in range(500):
            storage.save("postings", f"p{i}", {"id": f"p{i}", "debit": i})

        with storage.atomic():
            storage.save("postings", "new", {"id": "new", "debit": 1})
            storage.save("journals", "j1", {"id": "j1", "balance": -1})
            assert len(storage._undo) == 2

        assert storage._undo is None
        assert storage.count("postings") == 501

    def test_commit_outside_transaction(self, storage):
        with pytest.raises(RuntimeError):
            storage.commit()
        with pytest.raises(RuntimeError):
            storage.rollback()

    def test_atomic_blocks_other_threads(self):
        """Readers wait until an open unit finishes"""
        storage = InMemoryStorage()
        observed = []
        started = threading.Event()

        def reader():
            started.set()
            observed.append(storage.exists("t", "a"))

        with storage.atomic():
            thread = threading.Thread(target=reader)
            thread.start()
            started.wait()
            thread.join(timeout=0.2)
            assert thread.is_alive()
            storage.save("t", "a", {"id": "a"})

        thread.join()
        assert observed == [True]

    def test_sqlite_persists_across_connections(self, tmp_path):
        db_path = tmp_path / "ledger.db"
        storage = SQLiteStorage(db_path)
        with storage.atomic():
            storage.save("t", "a", {"id": "a", "v": 1})
        storage.close()

        reopened = SQLiteStorage(db_path)
        assert reopened.load("t", "a") == {"id": "a", "v": 1}
        reopened.close()


class TestStorageRecord:
    """Test record serialization helpers"""

    def test_storage_record_serialization(self):
        @dataclass
        class TestRecord(StorageRecord):
            name: str

        now = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)
        record = TestRecord(id="r1", created_at=now, updated_at=now, name="x")

        data = record.to_dict()
        assert data == {
            "id": "r1",
            "created_at": "2024-03-01T09:30:00.000000+00:00",
            "updated_at": "2024-03-01T09:30:00.000000+00:00",
        }
        assert StorageRecord.base_fields(data)["created_at"] == now

    def test_datetime_round_trip_is_utc(self):
        naive = datetime(2024, 3, 1, 9, 30)
        stored = to_storage_datetime(naive)
        assert stored.endswith("+00:00")
        assert from_storage_datetime(stored) == naive.replace(tzinfo=timezone.utc)
        assert from_storage_datetime(None) is None


class TestCreateStorage:
    """Test backend selection from configuration"""

    def test_memory_backend(self):
        assert isinstance(create_storage(LedgerConfig(storage_backend="memory")), InMemoryStorage)

    def test_sqlite_backend(self, tmp_path):
        config = LedgerConfig(storage_backend="sqlite", sqlite_path=str(tmp_path / "x.db"))
        storage = create_storage(config)
        assert isinstance(storage, SQLiteStorage)
        storage.close()

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_storage(LedgerConfig(storage_backend="postgres"))
