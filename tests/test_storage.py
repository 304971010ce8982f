"""
Tests for the sync storage backends

Covers CRUD, filtering and the versioned compare-and-save that the workflow
engine relies on, for both InMemoryStorage and SQLiteStorage.
"""

import pytest
from datetime import datetime, timezone

from clinic_workflow.storage import (
    InMemoryStorage,
    SQLiteStorage,
    parse_datetime,
    serialize_datetime,
    to_jsonable,
)
from clinic_workflow.tasks import TaskStatus


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "workflow_test.db")
    yield backend
    backend.close()


class TestStorageBackends:
    """Behaviour shared by every sync backend"""

    def test_basic_crud_operations(self, storage):
        record = {"id": "r1", "name": "Leave policy", "version": 1}
        storage.save("records", "r1", record)

        assert storage.load("records", "r1") == record
        assert storage.exists("records", "r1") is True
        assert storage.count("records") == 1
        assert storage.load_all("records") == [record]

        assert storage.delete("records", "r1") is True
        assert storage.load("records", "r1") is None
        assert storage.delete("records", "r1") is False

    def test_load_returns_copy(self, storage):
        storage.save("records", "r1", {"id": "r1", "tags": ["a"]})
        loaded = storage.load("records", "r1")
        loaded["tags"].append("b")
        assert storage.load("records", "r1")["tags"] == ["a"]

    def test_find_matches_every_filter(self, storage):
        storage.save("employees", "e1", {"id": "e1", "department_id": "hr", "is_active": True})
        storage.save("employees", "e2", {"id": "e2", "department_id": "hr", "is_active": False})
        storage.save("employees", "e3", {"id": "e3", "department_id": "nursing", "is_active": True})

        found = storage.find("employees", {"department_id": "hr", "is_active": True})
        assert [r["id"] for r in found] == ["e1"]
        assert len(storage.find("employees", {})) == 3
        assert storage.find("employees", {"missing_key": 1}) == []

    def test_insert_if_absent(self, storage):
        assert storage.compare_and_save("guards", "leave:42", {"id": "leave:42", "version": 1}, None)
        assert not storage.compare_and_save("guards", "leave:42", {"id": "leave:42", "version": 1}, None)

    def test_compare_and_save_checks_version(self, storage):
        storage.compare_and_save("instances", "i1", {"id": "i1", "version": 1}, None)

        assert storage.compare_and_save("instances", "i1", {"id": "i1", "version": 2}, 1)
        # A writer still holding version 1 loses
        assert not storage.compare_and_save("instances", "i1", {"id": "i1", "version": 2, "x": 1}, 1)
        assert storage.load("instances", "i1") == {"id": "i1", "version": 2}

    def test_compare_and_save_missing_record(self, storage):
        assert not storage.compare_and_save("instances", "nope", {"id": "nope", "version": 2}, 1)
        assert storage.load("instances", "nope") is None

    def test_clear_table(self, storage):
        storage.save("records", "r1", {"id": "r1"})
        storage.save("records", "r2", {"id": "r2"})
        storage.clear_table("records")
        assert storage.count("records") == 0

    def test_atomic_rolls_back_every_write(self, storage):
        storage.save("records", "keep", {"id": "keep", "version": 1})
        storage.save("records", "gone", {"id": "gone"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.compare_and_save("records", "keep", {"id": "keep", "version": 2}, 1)
                storage.delete("records", "gone")
                storage.save("records", "lost", {"id": "lost"})
                storage.save("audit", "a1", {"id": "a1"})
                raise RuntimeError("boom")

        assert storage.load("records", "keep") == {"id": "keep", "version": 1}
        assert storage.exists("records", "gone")
        assert not storage.exists("records", "lost")
        assert storage.count("audit") == 0

    def test_atomic_commits(self, storage):
        with storage.atomic():
            storage.save("records", "r1", {"id": "r1"})
        storage.rollback()
        assert storage.exists("records", "r1")


class TestSQLitePersistence:
    """SQLite persistence across connections"""

    def test_data_survives_reopen(self, tmp_path):
        path = tmp_path / "reopen.db"
        storage = SQLiteStorage(path)
        storage.save("records", "r1", {"id": "r1", "version": 3})
        storage.close()

        reopened = SQLiteStorage(path)
        assert reopened.load("records", "r1") == {"id": "r1", "version": 3}
        assert reopened.compare_and_save("records", "r1", {"id": "r1", "version": 4}, 3)
        reopened.close()


class TestSerializationHelpers:

    def test_parse_naive_datetime_as_utc(self):
        parsed = parse_datetime("2026-03-02T09:00:00")
        assert parsed == datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def test_parse_empty_values(self):
        assert parse_datetime(None) is None
        assert parse_datetime("") is None

    def test_serialize_round_trip(self):
        moment = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)
        assert parse_datetime(serialize_datetime(moment)) == moment
        assert serialize_datetime(None) is None

    def test_to_jsonable_converts_nested_values(self):
        moment = datetime(2026, 3, 2, tzinfo=timezone.utc)
        value = {"status": TaskStatus.ASSIGNED, "at": [moment], "pair": ("a", 1)}
        assert to_jsonable(value) == {
            "status": "assigned",
            "at": [moment.isoformat()],
            "pair": ["a", 1],
        }
