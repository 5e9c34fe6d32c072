"""Tests for spartanbot/storage.py"""
import os

import pytest

from spartanbot.errors import PersistenceError
from spartanbot.storage import STORAGE_KEY, JsonFileStorage


class TestJsonFileStorage:
    def test_missing_key_is_none(self, tmp_path):
        assert JsonFileStorage(tmp_path / "store").get_item(STORAGE_KEY) is None

    def test_write_creates_directory_and_replaces_whole_value(self, tmp_path):
        storage = JsonFileStorage(tmp_path / "store")
        storage.set_item(STORAGE_KEY, {"settings": {"a": 1}, "rental_providers": [{"uid": "x"}]})
        storage.set_item(STORAGE_KEY, {"settings": {}, "rental_providers": []})
        assert storage.get_item(STORAGE_KEY) == {"settings": {}, "rental_providers": []}
        # no temp files left behind
        assert os.listdir(tmp_path / "store") == ["spartanbot-storage.json"]

    def test_corrupt_file_raises_persistence_error(self, tmp_path):
        storage = JsonFileStorage(tmp_path)
        (tmp_path / "spartanbot-storage.json").write_text("{not json")
        with pytest.raises(PersistenceError):
            storage.get_item(STORAGE_KEY)

    def test_unserializable_value_raises_and_keeps_previous(self, tmp_path):
        storage = JsonFileStorage(tmp_path)
        storage.set_item(STORAGE_KEY, {"ok": True})
        with pytest.raises(PersistenceError):
            storage.set_item(STORAGE_KEY, {"bad": object()})
        assert storage.get_item(STORAGE_KEY) == {"ok": True}
        assert sorted(os.listdir(tmp_path)) == ["spartanbot-storage.json"]

    def test_keys_are_sanitized(self, tmp_path):
        storage = JsonFileStorage(tmp_path)
        storage.set_item("../escape", 1)
        assert (tmp_path / ".._escape.json").exists()
