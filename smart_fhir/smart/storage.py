"""
Session persistence for the SMART launch.

Launch records are stored as JSON strings keyed by the launch `state`. Where
the token response lives depends on the layout, chosen when the store is
constructed:

- `FlatSessionStore` keeps the token response under the fixed `tokenResponse`
  key, so one launch at a time is tracked per storage.
- `PerStateSessionStore` nests the token response inside the launch record, so
  several launches can share one storage; the `state` must be known to find
  the token again (it comes back on the redirect URL).

Both work over any `MutableMapping[str, str]`: a dict, a web framework session,
or `JsonFileStorage`.
"""

from __future__ import annotations

import json
import os
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import suppress
from pathlib import Path
from typing import Any

TOKEN_RESPONSE_KEY = "tokenResponse"


class SessionStore(ABC):
    def __init__(self, storage: MutableMapping[str, str] | None = None):
        self._storage: MutableMapping[str, str] = storage if storage is not None else {}

    @property
    def storage(self) -> MutableMapping[str, str]:
        return self._storage

    def save_session(self, state: str, record: Mapping[str, Any]) -> None:
        self._storage[state] = json.dumps(record)

    def load_session(self, state: str | None) -> dict[str, Any] | None:
        if not state:
            return None
        raw = self._storage.get(state)
        if raw is None:
            return None
        return json.loads(raw)

    @abstractmethod
    def save_token(self, token: Mapping[str, Any]) -> None:
        """Persist a token response (which must carry its `state`)."""

    @abstractmethod
    def load_token(self, state: str | None = None) -> dict[str, Any] | None:
        """Return the stored token response, or None."""

    @abstractmethod
    def clear_token(self) -> None:
        """Forget any token response inherited from an earlier launch."""


class FlatSessionStore(SessionStore):
    """Token response under the fixed `tokenResponse` key."""

    def save_token(self, token: Mapping[str, Any]) -> None:
        self._storage[TOKEN_RESPONSE_KEY] = json.dumps(dict(token))

    def load_token(self, state: str | None = None) -> dict[str, Any] | None:
        raw = self._storage.get(TOKEN_RESPONSE_KEY)
        if raw is None:
            return None
        return json.loads(raw)

    def clear_token(self) -> None:
        self._storage.pop(TOKEN_RESPONSE_KEY, None)


class PerStateSessionStore(SessionStore):
    """Token response nested in the launch record under `tokenResponse`."""

    def save_token(self, token: Mapping[str, Any]) -> None:
        state = token.get("state")
        if not state:
            raise ValueError("Token response has no 'state'; cannot locate its launch record")
        record = self.load_session(state) or {}
        record[TOKEN_RESPONSE_KEY] = dict(token)
        self.save_session(state, record)

    def load_token(self, state: str | None = None) -> dict[str, Any] | None:
        record = self.load_session(state)
        if record is None:
            return None
        return record.get(TOKEN_RESPONSE_KEY)

    def clear_token(self) -> None:
        self._storage.pop(TOKEN_RESPONSE_KEY, None)


class JsonFileStorage(MutableMapping[str, str]):
    """
    String key/value storage persisted to a JSON file.

    Every write replaces the file atomically; reads always go to disk so several
    processes (e.g. two CLI invocations) see each other's writes.
    """

    def __init__(self, path: str | Path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, str]:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        if not text.strip():
            return {}
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError(f"Session file {self._path} does not hold a JSON object")
        return {str(k): str(v) for k, v in data.items()}

    def _write(self, data: Mapping[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".session-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(dict(data), handle, indent=2, sort_keys=True)
            if os.name == "posix":
                with suppress(OSError):
                    os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self._path)
        except BaseException:
            with suppress(OSError):
                os.unlink(tmp_name)
            raise

    def __getitem__(self, key: str) -> str:
        return self._read()[key]

    def __setitem__(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def __delitem__(self, key: str) -> None:
        data = self._read()
        del data[key]
        self._write(data)

    def __iter__(self) -> Iterator[str]:
        return iter(self._read())

    def __len__(self) -> int:
        return len(self._read())

    def clear(self) -> None:
        self._write({})
