from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Optional, Protocol

LOG = logging.getLogger("flashsync.local_cache")

Record = Dict[str, Any]


class LocalCache(Protocol):
    def find(self, collection: str, record_id: Optional[str] = None, owner_id: Optional[str] = None) -> List[Record]: ...
    def get(self, collection: str, record_id: str) -> Optional[Record]: ...
    def put(self, collection: str, record: Record) -> Record: ...
    def remove(self, collection: str, record_id: str) -> bool: ...


def _matches(record: Record, record_id: Optional[str], owner_id: Optional[str]) -> bool:
    if record_id is not None and record.get("id") != record_id:
        return False
    if owner_id is not None and record.get("owner_id") != owner_id:
        return False
    return True


class InMemoryLocalCache:
    """Process-local cache; used in tests and when no data directory is configured."""

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Record]] = {}
        self._lock = RLock()

    def find(self, collection: str, record_id: Optional[str] = None, owner_id: Optional[str] = None) -> List[Record]:
        with self._lock:
            records = self._collections.get(collection, {})
            if record_id is not None:
                hit = records.get(record_id)
                candidates = [hit] if hit is not None else []
            else:
                candidates = list(records.values())
            return [copy.deepcopy(r) for r in candidates if _matches(r, record_id, owner_id)]

    def get(self, collection: str, record_id: str) -> Optional[Record]:
        with self._lock:
            hit = self._collections.get(collection, {}).get(record_id)
            return copy.deepcopy(hit) if hit is not None else None

    def put(self, collection: str, record: Record) -> Record:
        with self._lock:
            self._collections.setdefault(collection, {})[record["id"]] = copy.deepcopy(record)
            return copy.deepcopy(record)

    def remove(self, collection: str, record_id: str) -> bool:
        with self._lock:
            return self._collections.get(collection, {}).pop(record_id, None) is not None


class FileLocalCache(InMemoryLocalCache):
    """JSON file-backed cache that survives restarts.

    Structure: one ``<collection>.json`` file per collection holding an object
    that maps record id -> record. Thread-safe with a coarse RLock; writes go
    through a temp file and an atomic rename.
    """

    def __init__(self, directory: Optional[str] = None) -> None:
        super().__init__()
        default_dir = Path.cwd() / "run" / "cache"
        self._dir = Path(directory or os.getenv("FLASHSYNC_DATA_DIR", str(default_dir)))
        self._dir.mkdir(parents=True, exist_ok=True)
        self._loaded: set[str] = set()

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, collection: str) -> Path:
        return self._dir / f"{collection}.json"

    def _ensure_loaded(self, collection: str) -> None:
        if collection in self._loaded:
            return
        self._loaded.add(collection)
        path = self._path(collection)
        if not path.exists():
            return
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            # Corrupt file: start the collection empty
            LOG.warning("local_cache_unreadable", extra={"path": str(path)})
            return
        if isinstance(data, dict):
            self._collections[collection] = {
                str(rid): rec for rid, rec in data.items() if isinstance(rec, dict)
            }

    def _save(self, collection: str) -> None:
        path = self._path(collection)
        tmp = path.with_suffix(".json.tmp")
        payload = self._collections.get(collection, {})
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp, path)

    def find(self, collection: str, record_id: Optional[str] = None, owner_id: Optional[str] = None) -> List[Record]:
        with self._lock:
            self._ensure_loaded(collection)
            return super().find(collection, record_id=record_id, owner_id=owner_id)

    def get(self, collection: str, record_id: str) -> Optional[Record]:
        with self._lock:
            self._ensure_loaded(collection)
            return super().get(collection, record_id)

    def put(self, collection: str, record: Record) -> Record:
        with self._lock:
            self._ensure_loaded(collection)
            stored = super().put(collection, record)
            self._save(collection)
            return stored

    def remove(self, collection: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_loaded(collection)
            ok = super().remove(collection, record_id)
            if ok:
                self._save(collection)
            return ok
