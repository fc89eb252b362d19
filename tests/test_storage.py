"""
Test suite for storage module

Tests both backends, the atomic unit of work and per-record locking.
"""

import pytest
import threading
import time
from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass

from microlend.exceptions import InvalidStateError, PersistenceError
from microlend.ledger import LoanStatus
from microlend.storage import (
    InMemoryStorage, SQLiteStorage, StorageRecord, create_storage, serialize_value
)


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "ledger.db")
    yield backend
    backend.close()


class TestStorageInterface:
    """Test basic operations on every backend"""

    def test_save_load_exists_delete(self, storage):
        storage.save("loans", "L1", {"id": "L1", "owner_id": "o1", "total_amount": "1000.00"})

        assert storage.exists("loans", "L1")
        assert storage.load("loans", "L1")["total_amount"] == "1000.00"
        assert storage.count("loans") == 1

        assert storage.delete("loans", "L1") is True
        assert storage.load("loans", "L1") is None
        assert storage.delete("loans", "L1") is False

    def test_find_by_filters(self, storage):
        storage.save("installments", "L1_1", {"loan_id": "L1", "status": "paid"})
        storage.save("installments", "L1_2", {"loan_id": "L1", "status": "pending"})
        storage.save("installments", "L2_1", {"loan_id": "L2", "status": "pending"})

        assert len(storage.find("installments", {"loan_id": "L1"})) == 2
        assert len(storage.find("installments", {"status": "pending"})) == 2
        assert storage.find("installments", {"loan_id": "L3"}) == []

    def test_save_replaces_record(self, storage):
        storage.save("loans", "L1", {"status": "pending"})
        storage.save("loans", "L1", {"status": "active"})

        assert storage.count("loans") == 1
        assert storage.load("loans", "L1")["status"] == "active"

    def test_loaded_records_are_copies(self, storage):
        storage.save("loans", "L1", {"status": "pending"})
        loaded = storage.load("loans", "L1")
        loaded["status"] = "tampered"

        assert storage.load("loans", "L1")["status"] == "pending"

    def test_find_null_and_boolean_values(self, storage):
        storage.save("loans", "L1", {"completed_at": None, "sms_enabled": True})
        storage.save("loans", "L2", {"completed_at": "2024-01-01", "sms_enabled": False})
        storage.save("loans", "L3", {"sms_enabled": True})

        assert [r["completed_at"] for r in storage.find("loans", {"completed_at": None})] == [None]
        assert len(storage.find("loans", {"sms_enabled": True})) == 2

    def test_load_all_keeps_insertion_order(self, storage):
        for record_id in ("B", "A", "C"):
            storage.save("audit_events", record_id, {"id": record_id})
        storage.save("audit_events", "B", {"id": "B", "updated": True})

        assert [r["id"] for r in storage.load_all("audit_events")] == ["B", "A", "C"]

    def test_rejects_unsafe_table_names(self):
        storage = SQLiteStorage()
        with pytest.raises(ValueError):
            storage.save("loans; DROP TABLE loans", "L1", {})
        storage.close()


class TestAtomicUnit:
    """Test commit and rollback of the atomic context manager"""

    def test_commit_on_normal_exit(self, storage):
        with storage.atomic():
            storage.save("collections", "C1", {"amount": "100.00"})
            storage.save("loans", "L1", {"paid_amount": "100.00"})

        assert storage.exists("collections", "C1")
        assert storage.exists("loans", "L1")

    def test_ledger_error_rolls_back_and_propagates(self, storage):
        storage.save("loans", "L1", {"paid_amount": "0.00"})

        with pytest.raises(InvalidStateError):
            with storage.atomic():
                storage.save("collections", "C1", {"amount": "100.00"})
                storage.save("loans", "L1", {"paid_amount": "100.00"})
                raise InvalidStateError("loan was cancelled meanwhile")

        assert not storage.exists("collections", "C1")
        assert storage.load("loans", "L1")["paid_amount"] == "0.00"

    def test_other_errors_surface_as_persistence_error(self, storage):
        with pytest.raises(PersistenceError) as exc_info:
            with storage.atomic():
                storage.save("collections", "C1", {"amount": "100.00"})
                raise RuntimeError("disk full")

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert not storage.exists("collections", "C1")

    def test_nested_units_commit_with_outermost(self, storage):
        with pytest.raises(InvalidStateError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("loans", "L1", {"status": "active"})
                raise InvalidStateError("abort")

        assert not storage.exists("loans", "L1")

    def test_storage_usable_after_rollback(self, storage):
        with pytest.raises(InvalidStateError):
            with storage.atomic():
                storage.save("brand_new_table", "X", {"v": 1})
                raise InvalidStateError("abort")

        storage.save("brand_new_table", "Y", {"v": 2})
        assert storage.load("brand_new_table", "Y") == {"v": 2}
        assert storage.load("brand_new_table", "X") is None


class TestRecordLock:
    """Test per-record serialization"""

    def test_lock_serializes_read_modify_write(self):
        storage = InMemoryStorage()
        storage.save("loans", "L1", {"paid": 0})

        def pay():
            for _ in range(50):
                with storage.record_lock("loans", "L1"):
                    current = storage.load("loans", "L1")["paid"]
                    time.sleep(0)
                    storage.save("loans", "L1", {"paid": current + 1})

        threads = [threading.Thread(target=pay) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert storage.load("loans", "L1")["paid"] == 200

    def test_lock_is_reentrant(self):
        storage = InMemoryStorage()
        with storage.record_lock("loans", "L1"):
            with storage.record_lock("loans", "L1"):
                storage.save("loans", "L1", {"ok": True})
        assert storage.exists("loans", "L1")


@dataclass
class SampleRecord(StorageRecord):
    amount: Decimal
    due_date: date


class TestStorageRecord:
    """Test record serialization"""

    def test_to_dict_serializes_decimals_and_dates(self):
        now = datetime.now(timezone.utc)
        record = SampleRecord(id="R1", created_at=now, updated_at=now,
                              amount=Decimal('12.50'), due_date=date(2024, 1, 31))
        data = record.to_dict()

        assert data["amount"] == "12.50"
        assert data["due_date"] == "2024-01-31"
        assert data["created_at"] == now.isoformat()

    def test_from_dict_parses_timestamps(self):
        now = datetime.now(timezone.utc)
        record = SampleRecord.from_dict({
            "id": "R1", "created_at": now.isoformat(), "updated_at": now.isoformat(),
            "amount": Decimal('1.00'), "due_date": date(2024, 1, 1)
        })
        assert record.created_at == now

    def test_serialize_value_nested(self):
        value = serialize_value({
            "status": LoanStatus.ACTIVE,
            "fees": [Decimal('10.00'), (date(2024, 1, 2), None)],
            "count": 3,
        })
        assert value == {"status": "active", "fees": ["10.00", ["2024-01-02", None]], "count": 3}


class TestCreateStorage:
    """Test backend selection from URL"""

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_memory_url(self):
        storage = create_storage("sqlite:///:memory:")
        assert isinstance(storage, SQLiteStorage)
        storage.close()

    def test_sqlite_file_url(self, tmp_path):
        storage = create_storage(f"sqlite:///{tmp_path / 'x.db'}")
        storage.save("loans", "L1", {"a": 1})
        storage.close()

        reopened = SQLiteStorage(tmp_path / "x.db")
        assert reopened.load("loans", "L1") == {"a": 1}
        reopened.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/db")
