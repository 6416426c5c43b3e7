"""Tests for key-value backends."""

from pathlib import Path

import pytest

from chorus.storage import InMemoryKeyValueStore, SQLiteKeyValueStore


@pytest.fixture
def sqlite_store(tmp_path: Path) -> SQLiteKeyValueStore:
    store = SQLiteKeyValueStore(tmp_path / "nested" / "chorus.db")
    store.init_db()
    yield store
    store.close()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path: Path):
    if request.param == "memory":
        yield InMemoryKeyValueStore()
        return
    store = SQLiteKeyValueStore(tmp_path / "kv.db")
    store.init_db()
    yield store
    store.close()


class TestKeyValueStore:
    def test_get_missing(self, store):
        assert store.get("nope") is None

    def test_set_and_get(self, store):
        store.set("a", "1")
        assert store.get("a") == "1"

    def test_overwrite(self, store):
        store.set("a", "1")
        store.set("a", "2")
        assert store.get("a") == "2"

    def test_delete(self, store):
        store.set("a", "1")
        assert store.delete("a") is True
        assert store.delete("a") is False
        assert store.get("a") is None

    def test_keys_sorted(self, store):
        store.set("b", "x")
        store.set("a", "y")
        assert store.keys() == ["a", "b"]


class TestSQLiteKeyValueStore:
    def test_creates_parent_directory(self, sqlite_store: SQLiteKeyValueStore):
        assert sqlite_store.db_path.parent.exists()

    def test_persists_across_connections(self, tmp_path: Path):
        path = tmp_path / "kv.db"
        first = SQLiteKeyValueStore(path)
        first.init_db()
        first.set("chorus-chats", "[]")
        first.close()

        second = SQLiteKeyValueStore(path)
        second.init_db()
        assert second.get("chorus-chats") == "[]"
        second.close()

    def test_init_db_idempotent(self, sqlite_store: SQLiteKeyValueStore):
        sqlite_store.set("k", "v")
        sqlite_store.init_db()
        assert sqlite_store.get("k") == "v"

    def test_close_twice(self, sqlite_store: SQLiteKeyValueStore):
        sqlite_store.close()
        sqlite_store.close()


class TestInMemoryKeyValueStore:
    def test_initial_data_is_copied(self):
        initial = {"a": "1"}
        store = InMemoryKeyValueStore(initial)
        store.set("b", "2")
        assert initial == {"a": "1"}
