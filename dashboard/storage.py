"""Client-side storage slots used to persist and recover identities."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Dict, MutableMapping, Optional, Protocol

LOCAL_SESSION_KEY = "local_session"
EDGE_IDENTITY_KEY = "edge_identity"


class SlotStore(Protocol):
    """Minimal string key/value storage, shaped like browser storage."""

    def get_item(self, key: str) -> Optional[str]:
        ...

    def set_item(self, key: str, value: str) -> None:
        ...

    def remove_item(self, key: str) -> None:
        ...


class MappingStore:
    """Store slots inside an existing mapping such as a signed cookie session."""

    def __init__(self, backing: Optional[MutableMapping[str, object]] = None) -> None:
        self._backing: MutableMapping[str, object] = backing if backing is not None else {}

    def get_item(self, key: str) -> Optional[str]:
        value = self._backing.get(key)
        if value is None:
            return None
        return value if isinstance(value, str) else str(value)

    def set_item(self, key: str, value: str) -> None:
        self._backing[key] = value

    def remove_item(self, key: str) -> None:
        self._backing.pop(key, None)


class JsonFileStore:
    """Persist slots in a small JSON document on disk."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Dict[str, str]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(key): str(value) for key, value in data.items()}

    def _dump(self, data: Dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._dump(data)

    def remove_item(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if data.pop(key, None) is not None:
                self._dump(data)


__all__ = [
    "EDGE_IDENTITY_KEY",
    "JsonFileStore",
    "LOCAL_SESSION_KEY",
    "MappingStore",
    "SlotStore",
]
