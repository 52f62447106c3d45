"""Queue snapshots behind a pluggable key-value store."""

from __future__ import annotations

import logging
import os
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Union

import pydantic
import redis
from pydantic import BaseModel, Field

from chunkferry.models import FileRecord
from chunkferry.utils.formatting import safe_filename

SNAPSHOT_VERSION = "1.0.0"
DEFAULT_KEY = "parallel-uploader-queue"
DEFAULT_TTL_SECONDS = 24 * 60 * 60

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """The backing store could not be read or written."""


class KeyValueStore(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        pass


class MemoryStore(KeyValueStore):
    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self._data if k.startswith(prefix))


class NullStore(KeyValueStore):
    """Accepts writes and forgets them."""

    def get(self, key: str) -> Optional[str]:
        return None

    def set(self, key: str, value: str) -> None:
        pass

    def delete(self, key: str) -> None:
        pass

    def keys(self, prefix: str = "") -> List[str]:
        return []


class JsonFileStore(KeyValueStore):
    """One ``<key>.json`` file per key under ``directory``.

    Writes go to a temporary file first and are moved into place, so a crash
    never leaves a half-written snapshot behind.
    """

    suffix = ".json"

    def __init__(self, directory: Union[str, Path]) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        name = safe_filename(key).replace(" ", "_") or "default"
        return self.directory / f"{name}{self.suffix}"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StoreError(f"cannot read {path}: {exc}") from exc

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp = path.with_name(path.name + ".tmp")
        try:
            tmp.write_text(value, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            raise StoreError(f"cannot write {path}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise StoreError(f"cannot delete {key}: {exc}") from exc

    def keys(self, prefix: str = "") -> List[str]:
        return sorted(
            p.name[: -len(self.suffix)]
            for p in self.directory.glob(f"*{self.suffix}")
            if p.name[: -len(self.suffix)].startswith(prefix)
        )


class RedisStore(KeyValueStore):
    """Snapshots in Redis; ``ttl_seconds`` is applied as the key expiry."""

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        url: Optional[str] = None,
        namespace: str = "chunkferry:",
        ttl_seconds: Optional[int] = None,
    ) -> None:
        if client is None:
            client = redis.Redis.from_url(
                url or os.getenv("REDIS_URL", "redis://localhost:6379/0"), decode_responses=True
            )
        self.client = client
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds

    def get(self, key: str) -> Optional[str]:
        try:
            value = self.client.get(self.namespace + key)
        except redis.RedisError as exc:
            raise StoreError(str(exc)) from exc
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    def set(self, key: str, value: str) -> None:
        try:
            self.client.set(self.namespace + key, value, ex=self.ttl_seconds)
        except redis.RedisError as exc:
            raise StoreError(str(exc)) from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete(self.namespace + key)
        except redis.RedisError as exc:
            raise StoreError(str(exc)) from exc

    def keys(self, prefix: str = "") -> List[str]:
        try:
            found = self.client.scan_iter(match=f"{self.namespace}{prefix}*")
            names = [k.decode("utf-8") if isinstance(k, bytes) else k for k in found]
        except redis.RedisError as exc:
            raise StoreError(str(exc)) from exc
        return sorted(name[len(self.namespace):] for name in names)


class Snapshot(BaseModel):
    file_id: str
    file_name: str
    file_size: int
    uploaded_size: int = 0
    progress: int = 0
    status: str
    total_chunks: int = 0
    committed_parts: List[int] = Field(default_factory=list)
    mime_type: str = ""
    last_updated: float

    @classmethod
    def from_record(cls, record: FileRecord, committed_parts: Iterable[int] = ()) -> "Snapshot":
        return cls(
            file_id=record.id,
            file_name=record.name,
            file_size=record.size,
            uploaded_size=record.uploaded_size,
            progress=record.progress,
            status=record.status.value,
            total_chunks=record.total_chunks,
            committed_parts=sorted(committed_parts),
            mime_type=record.mime_type,
            last_updated=record.last_updated,
        )


class SnapshotDocument(BaseModel):
    version: str = SNAPSHOT_VERSION
    timestamp: float
    files: List[Snapshot] = Field(default_factory=list)


class QueuePersistence:
    """Saves and restores the upload queue as one versioned document.

    Every failure of the store is logged and reported as ``False`` / an empty
    result; persistence never stops an upload.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        key: str = DEFAULT_KEY,
        enabled: bool = True,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store if store is not None else MemoryStore()
        self.key = key
        self.enabled = enabled
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled

    def is_enabled(self) -> bool:
        return self.enabled and not isinstance(self.store, NullStore)

    def _write(self, document: SnapshotDocument) -> bool:
        try:
            self.store.set(self.key, document.model_dump_json())
        except StoreError as exc:
            logger.warning("Failed to save upload queue: %s", exc)
            return False
        return True

    def _read(self) -> Optional[SnapshotDocument]:
        try:
            raw = self.store.get(self.key)
        except StoreError as exc:
            logger.warning("Failed to load upload queue: %s", exc)
            return None
        if not raw:
            return None
        try:
            return SnapshotDocument.model_validate_json(raw)
        except pydantic.ValidationError as exc:
            logger.warning("Discarding unreadable upload queue snapshot: %s", exc.errors()[:1])
            self.clear()
            return None

    def build_document(
        self, records: Iterable[FileRecord], committed_parts: Mapping[str, Iterable[int]]
    ) -> SnapshotDocument:
        files = [Snapshot.from_record(r, committed_parts.get(r.id, ())) for r in records]
        return SnapshotDocument(timestamp=self._clock(), files=files)

    def write_document(self, document: SnapshotDocument) -> bool:
        """Store a prepared document; safe to call from a worker thread."""
        if not self.enabled:
            return False
        return self._write(document)

    def save_queue(self, records: Iterable[FileRecord], committed_parts: Mapping[str, Iterable[int]]) -> bool:
        if not self.enabled:
            return False
        return self._write(self.build_document(records, committed_parts))

    def load_queue(self) -> List[Snapshot]:
        """Return unexpired snapshots; expired ones are purged from the store."""
        if not self.enabled:
            return []
        document = self._read()
        if document is None:
            return []
        if document.version != SNAPSHOT_VERSION:
            logger.warning(
                "Upload queue snapshot version %s != %s, clearing it", document.version, SNAPSHOT_VERSION
            )
            self.clear()
            return []
        now = self._clock()
        fresh = [s for s in document.files if now - s.last_updated <= self.ttl_seconds]
        if len(fresh) != len(document.files):
            logger.info("Purged %d expired upload snapshots", len(document.files) - len(fresh))
            if fresh:
                self._write(SnapshotDocument(timestamp=now, files=fresh))
            else:
                self.clear()
        return fresh

    def remove_file(self, file_id: str) -> bool:
        if not self.enabled:
            return False
        document = self._read()
        if document is None:
            return False
        remaining = [s for s in document.files if s.file_id != file_id]
        if len(remaining) == len(document.files):
            return False
        document.files = remaining
        document.timestamp = self._clock()
        return self._write(document)

    def clear(self) -> bool:
        try:
            self.store.delete(self.key)
        except StoreError as exc:
            logger.warning("Failed to clear upload queue: %s", exc)
            return False
        return True
