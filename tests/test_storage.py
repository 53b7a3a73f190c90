"""
Tests for storage backends, compare-and-swap and transaction support
"""

import pytest
import sqlite3
import threading
from datetime import datetime, timezone

from loan_desk.errors import DependencyError
from loan_desk.storage import (
    InMemoryStorage, SQLiteStorage, StorageInterface, create_storage
)


def make_record(record_id: str, version: int = 1, **fields):
    now = datetime.now(timezone.utc).isoformat()
    record = {"id": record_id, "version": version, "created_at": now, "updated_at": now}
    record.update(fields)
    return record


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "test.db")
    yield backend
    backend.close()


class TestStorageBasics:
    """Basic CRUD operations shared by both backends"""

    def test_save_and_load(self, storage):
        record = make_record("loan_1", status="Pending")
        storage.save("loans", "loan_1", record)

        assert storage.load("loans", "loan_1") == record
        assert storage.exists("loans", "loan_1")
        assert not storage.exists("loans", "missing")
        assert storage.load("loans", "missing") is None

    def test_find_matches_every_filter(self, storage):
        storage.save("loans", "a", make_record("a", status="Pending", shopkeeper_id="s1"))
        storage.save("loans", "b", make_record("b", status="Active", shopkeeper_id="s1"))
        storage.save("loans", "c", make_record("c", status="Pending", shopkeeper_id="s2"))

        results = storage.find("loans", {"status": "Pending", "shopkeeper_id": "s1"})
        assert [r["id"] for r in results] == ["a"]
        assert len(storage.find("loans", {})) == 3
        assert storage.find("loans", {"missing_field": 1}) == []

    def test_count_and_delete(self, storage):
        storage.save("loans", "a", make_record("a"))
        storage.save("loans", "b", make_record("b"))
        assert storage.count("loans") == 2

        assert storage.delete("loans", "a")
        assert not storage.delete("loans", "a")
        assert storage.count("loans") == 1

    def test_loaded_record_is_a_copy(self, storage):
        storage.save("loans", "a", make_record("a", ledger=[]))
        loaded = storage.load("loans", "a")
        loaded["ledger"].append({"amount": "1.00"})

        assert storage.load("loans", "a")["ledger"] == []


class TestCompareAndSwap:
    """Optimistic concurrency on the version field"""

    def test_insert_only_when_absent(self, storage):
        assert storage.compare_and_swap("loans", "a", make_record("a"), None)
        assert not storage.compare_and_swap("loans", "a", make_record("a", status="other"), None)
        assert "status" not in storage.load("loans", "a")

    def test_update_requires_matching_version(self, storage):
        storage.compare_and_swap("loans", "a", make_record("a", version=1), None)

        assert storage.compare_and_swap("loans", "a", make_record("a", version=2, emis_paid=1), 1)
        # A writer still holding version 1 loses
        assert not storage.compare_and_swap("loans", "a", make_record("a", version=2, emis_paid=5), 1)

        loaded = storage.load("loans", "a")
        assert loaded["version"] == 2
        assert loaded["emis_paid"] == 1

    def test_update_of_missing_record_fails(self, storage):
        assert not storage.compare_and_swap("loans", "ghost", make_record("ghost", version=2), 1)
        assert not storage.exists("loans", "ghost")


class TestTransactions:
    """atomic() groups writes into one unit"""

    def test_commit_keeps_all_writes(self, storage):
        with storage.atomic():
            storage.save("shopkeepers", "s1", make_record("s1", token_balance=4))
            storage.save("loans", "a", make_record("a"))

        assert storage.load("shopkeepers", "s1")["token_balance"] == 4
        assert storage.exists("loans", "a")

    def test_rollback_discards_all_writes(self, storage):
        storage.save("shopkeepers", "s1", make_record("s1", token_balance=5))

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("shopkeepers", "s1", make_record("s1", token_balance=4))
                storage.save("loans", "a", make_record("a"))
                raise RuntimeError("insert failed")

        assert storage.load("shopkeepers", "s1")["token_balance"] == 5
        assert not storage.exists("loans", "a")

    def test_nested_atomic_commits_with_outer(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("loans", "inner", make_record("inner"))
                raise RuntimeError("outer failed")

        assert not storage.exists("loans", "inner")


class FailingCommitConnection:
    """Wraps a sqlite3 connection whose commit can be made to fail"""

    def __init__(self, connection):
        self._connection = connection
        self.fail_commit = False

    def commit(self):
        if self.fail_commit:
            raise sqlite3.OperationalError("disk I/O error")
        self._connection.commit()

    def __getattr__(self, name):
        return getattr(self._connection, name)


class TestFailedCommit:
    """A commit failure rolls back and leaves the backend usable"""

    def setup_method(self):
        self.storage = SQLiteStorage(":memory:")
        self.storage.save("loans", "a", make_record("a"))
        self.connection = FailingCommitConnection(self.storage._connection)
        self.storage._connection = self.connection

    def teardown_method(self):
        self.storage._connection = self.connection._connection
        self.storage.close()

    def test_commit_error_surfaces_as_dependency_error(self):
        self.connection.fail_commit = True
        with pytest.raises(DependencyError, match="disk I/O error"):
            with self.storage.atomic():
                self.storage.save("loans", "b", make_record("b"))

        self.connection.fail_commit = False
        assert not self.storage.exists("loans", "b")

    def test_later_transactions_stay_atomic(self):
        self.connection.fail_commit = True
        with pytest.raises(DependencyError):
            with self.storage.atomic():
                self.storage.save("loans", "b", make_record("b"))
        self.connection.fail_commit = False

        with pytest.raises(ValueError):
            with self.storage.atomic():
                self.storage.save("loans", "c", make_record("c"))
                raise ValueError("insert failed")

        assert not self.storage.exists("loans", "c")
        with self.storage.atomic():
            self.storage.save("loans", "d", make_record("d"))
        assert self.storage.exists("loans", "d")

    def test_lock_is_released_for_other_threads(self):
        self.connection.fail_commit = True
        with pytest.raises(DependencyError):
            with self.storage.atomic():
                self.storage.save("loans", "b", make_record("b"))
        self.connection.fail_commit = False

        errors = []

        def write():
            try:
                self.storage.save("loans", "e", make_record("e"))
            except Exception as e:
                errors.append(e)

        thread = threading.Thread(target=write)
        thread.start()
        thread.join()

        assert errors == []
        assert self.storage.exists("loans", "e")


class TestBoundedWrites:
    """Lock waits are bounded and surface as retryable dependency errors"""

    def test_in_memory_lock_timeout(self):
        storage = InMemoryStorage(lock_timeout=0.05)
        holding = threading.Event()
        release = threading.Event()

        def hold_lock():
            with storage.atomic():
                holding.set()
                release.wait(2)

        thread = threading.Thread(target=hold_lock)
        thread.start()
        holding.wait(2)
        try:
            with pytest.raises(DependencyError) as exc_info:
                storage.save("loans", "a", make_record("a"))
            assert exc_info.value.retryable
        finally:
            release.set()
            thread.join()

    def test_sqlite_open_failure_is_dependency_error(self, tmp_path):
        with pytest.raises(DependencyError):
            SQLiteStorage(tmp_path / "missing_dir" / "loans.db")


class TestCreateStorage:
    """Backend selection from a database URL"""

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self, tmp_path):
        storage = create_storage(f"sqlite:///{tmp_path / 'loans.db'}")
        assert isinstance(storage, SQLiteStorage)
        assert isinstance(storage, StorageInterface)
        storage.close()

    def test_sqlite_in_process(self):
        storage = create_storage("sqlite://")
        assert storage.db_path == ":memory:"
        storage.close()

    def test_unknown_scheme(self):
        with pytest.raises(ValueError, match="Unsupported database URL"):
            create_storage("mongodb://localhost/loans")
