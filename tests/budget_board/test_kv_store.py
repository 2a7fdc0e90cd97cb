"""Tests for key-value stores.

Tests verify:
- Values round-trip through both stores
- File writes are atomic and leave no temp files behind
- Invalid keys and corrupt files are reported
"""

import json
import os

import pytest

from budget_board.kv_store import JsonFileStore, MemoryStore, validate_key


@pytest.fixture
def file_store(tmp_path):
    return JsonFileStore(tmp_path / "store")


class TestValidateKey:
    @pytest.mark.parametrize("key", ["dashboards_index", "dashboard_data_01HQ", "a.b-c"])
    def test_valid(self, key):
        assert validate_key(key) == key

    @pytest.mark.parametrize("key", ["", "../escape", "a/b", "..", "with space"])
    def test_invalid(self, key):
        with pytest.raises(ValueError, match="Invalid store key"):
            validate_key(key)


class TestMemoryStore:
    def test_get_missing_returns_none(self):
        assert MemoryStore().get("nothing") is None

    def test_values_are_copied(self):
        store = MemoryStore()
        value = {"items": [1, 2]}
        store.set("k", value)
        value["items"].append(3)

        loaded = store.get("k")
        loaded["items"].append(4)
        assert store.get("k") == {"items": [1, 2]}

    def test_non_json_value_rejected(self):
        with pytest.raises(TypeError):
            MemoryStore().set("k", {"when": object()})

    def test_delete_and_keys(self):
        store = MemoryStore({"b": 1, "a": 2})
        store.delete("b")
        store.delete("missing")
        assert store.keys() == ["a"]


class TestJsonFileStore:
    """Tests for the file-backed store."""

    def test_set_creates_directory_and_file(self, file_store):
        file_store.set("dashboards_index", {"dashboards": []})

        path = file_store.path_for("dashboards_index")
        assert path.exists()
        assert json.loads(path.read_text(encoding="utf-8")) == {"dashboards": []}

    def test_round_trip_unicode(self, file_store):
        file_store.set("k", {"name": "Café Ü"})
        assert file_store.get("k") == {"name": "Café Ü"}

    def test_replaces_existing_value(self, file_store):
        file_store.set("k", {"v": 1})
        file_store.set("k", {"v": 2})
        assert file_store.get("k") == {"v": 2}

    def test_no_temp_files_left(self, file_store):
        file_store.set("k", [1, 2, 3])
        leftovers = [p.name for p in file_store.directory.iterdir() if p.name.startswith(".tmp_")]
        assert leftovers == []

    def test_failed_write_keeps_previous_value(self, file_store):
        file_store.set("k", {"v": 1})
        with pytest.raises(TypeError):
            file_store.set("k", {"v": object()})

        assert file_store.get("k") == {"v": 1}
        assert file_store.keys() == ["k"]

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    def test_permissions(self, file_store):
        file_store.set("k", {})
        assert oct(file_store.path_for("k").stat().st_mode)[-3:] == "644"

    def test_get_missing_returns_none(self, file_store):
        assert file_store.get("missing") is None

    def test_corrupt_file_raises_value_error(self, file_store):
        file_store.directory.mkdir(parents=True)
        file_store.path_for("k").write_text("{not json", encoding="utf-8")
        with pytest.raises(ValueError, match="Invalid JSON"):
            file_store.get("k")

    def test_delete(self, file_store):
        file_store.set("k", 1)
        file_store.delete("k")
        file_store.delete("k")
        assert file_store.get("k") is None

    def test_keys_sorted(self, file_store):
        for key in ("b", "a", "c"):
            file_store.set(key, key)
        assert file_store.keys() == ["a", "b", "c"]

    def test_keys_on_missing_directory(self, tmp_path):
        assert JsonFileStore(tmp_path / "nowhere").keys() == []
