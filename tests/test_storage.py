from __future__ import annotations

import json
from pathlib import Path

import pytest

from smart_fhir.smart.storage import (
    TOKEN_RESPONSE_KEY,
    FlatSessionStore,
    JsonFileStorage,
    PerStateSessionStore,
)

LAUNCH = {"client": {"client_id": "abc"}, "server": "https://fhir.example/r4"}


class TestFlatSessionStore:
    def test_token_lives_under_fixed_key(self) -> None:
        storage: dict[str, str] = {}
        store = FlatSessionStore(storage)
        store.save_session("S1", LAUNCH)
        store.save_token({"state": "S1", "access_token": "T"})

        assert json.loads(storage["S1"]) == LAUNCH
        assert json.loads(storage[TOKEN_RESPONSE_KEY]) == {"state": "S1", "access_token": "T"}
        assert store.load_token() == {"state": "S1", "access_token": "T"}
        assert store.load_token("anything") == {"state": "S1", "access_token": "T"}

    def test_clear_token_keeps_sessions(self) -> None:
        store = FlatSessionStore()
        store.save_session("S1", LAUNCH)
        store.save_token({"state": "S1"})
        store.clear_token()
        assert store.load_token() is None
        assert store.load_session("S1") == LAUNCH

    def test_missing_session(self) -> None:
        store = FlatSessionStore()
        assert store.load_session("nope") is None
        assert store.load_session(None) is None


class TestPerStateSessionStore:
    def test_token_nested_in_launch_record(self) -> None:
        storage: dict[str, str] = {}
        store = PerStateSessionStore(storage)
        store.save_session("S1", LAUNCH)
        store.save_session("S2", LAUNCH)
        store.save_token({"state": "S1", "access_token": "T1"})
        store.save_token({"state": "S2", "access_token": "T2"})

        assert TOKEN_RESPONSE_KEY not in storage
        assert json.loads(storage["S1"])[TOKEN_RESPONSE_KEY]["access_token"] == "T1"
        assert store.load_token("S2") == {"state": "S2", "access_token": "T2"}
        assert store.load_session("S1")["server"] == LAUNCH["server"]

    def test_token_without_state_is_rejected(self) -> None:
        store = PerStateSessionStore()
        with pytest.raises(ValueError, match="state"):
            store.save_token({"access_token": "T"})

    def test_unknown_state_has_no_token(self) -> None:
        store = PerStateSessionStore()
        assert store.load_token("S9") is None
        assert store.load_token(None) is None


class TestJsonFileStorage:
    def test_writes_survive_new_instances(self, tmp_path: Path) -> None:
        path = tmp_path / "state" / "sessions.json"
        first = PerStateSessionStore(JsonFileStorage(path))
        first.save_session("S1", LAUNCH)
        first.save_token({"state": "S1", "access_token": "T"})

        second = PerStateSessionStore(JsonFileStorage(path))
        assert second.load_token("S1") == {"state": "S1", "access_token": "T"}
        assert set(json.loads(path.read_text(encoding="utf-8"))) == {"S1"}

    def test_mapping_protocol(self, tmp_path: Path) -> None:
        storage = JsonFileStorage(tmp_path / "sessions.json")
        assert len(storage) == 0
        assert storage.get("missing") is None
        storage["a"] = "1"
        storage["b"] = "2"
        assert sorted(storage) == ["a", "b"]
        del storage["a"]
        assert dict(storage) == {"b": "2"}
        storage.clear()
        assert len(storage) == 0
        assert storage.path.exists()

    def test_non_object_file_is_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "sessions.json"
        path.write_text("[1, 2]", encoding="utf-8")
        with pytest.raises(ValueError, match="JSON object"):
            len(JsonFileStorage(path))
