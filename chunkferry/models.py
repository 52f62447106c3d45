from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from chunkferry.sources import ByteRangeReader


class FileStatus(str, Enum):
    QUEUED = "queued"
    INITIALIZING = "initializing"
    UPLOADING = "uploading"
    PAUSED = "paused"
    ERROR = "error"
    COMPLETE = "complete"


class ChunkStatus(str, Enum):
    WAITING = "waiting"
    PENDING = "pending"
    UPLOADED = "uploaded"
    ERROR = "error"


@dataclass
class PartInfo:
    """A part the server has stored (committed part)."""

    part_number: int
    etag: str = ""
    size: int = 0

    @classmethod
    def coerce(cls, value: Any) -> "PartInfo":
        """Accept a PartInfo or a server dict (camelCase or snake_case keys)."""
        if isinstance(value, PartInfo):
            return PartInfo(value.part_number, value.etag, value.size)
        if not isinstance(value, Mapping):
            raise TypeError(f"cannot read part info from {type(value).__name__}")
        number = value.get("part_number", value.get("partNumber"))
        size = value.get("size", value.get("partSize", value.get("part_size")))
        return cls(
            part_number=int(number) if number is not None else 0,
            etag=str(value.get("etag") or ""),
            size=int(size or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"part_number": self.part_number, "etag": self.etag, "size": self.size}


@dataclass
class ChunkTask:
    part_number: int
    start: int
    end: int
    status: ChunkStatus = ChunkStatus.WAITING
    retry_count: int = 0
    # bytes of the in-flight transfer; cleared once the transfer returns
    data: Optional[bytes] = field(default=None, repr=False)

    @property
    def size(self) -> int:
        return self.end - self.start


@dataclass
class FileRecord:
    id: str
    name: str
    size: int
    reader: Optional[ByteRangeReader] = field(default=None, repr=False)
    mime_type: str = ""
    uploaded_size: int = 0
    progress: int = 0
    status: FileStatus = FileStatus.QUEUED
    total_chunks: int = 0
    parts: List[PartInfo] = field(default_factory=list)
    upload_id: Optional[str] = None
    error_message: str = ""
    response: Any = None
    last_updated: float = field(default_factory=time.time)

    def touch(self) -> None:
        self.last_updated = time.time()

    def read_chunk(self, chunk: ChunkTask) -> bytes:
        if self.reader is None:
            raise ValueError(f"{self.name} has no byte source attached")
        return self.reader.read(chunk.start, chunk.end)


@dataclass
class CallbackResult:
    """Normalized answer of an external callback."""

    success: bool
    data: Any = None
    message: Optional[str] = None

    @classmethod
    def coerce(cls, value: Any) -> "CallbackResult":
        if isinstance(value, CallbackResult):
            return value
        if isinstance(value, bool):
            return cls(success=value)
        if isinstance(value, Mapping):
            success = value.get("success", value.get("isSuccess", False))
            return cls(success=bool(success), data=value.get("data"), message=value.get("message"))
        if value is None:
            return cls(success=False, message="callback returned nothing")
        raise TypeError(f"unsupported callback result: {type(value).__name__}")

    def get(self, key: str, default: Any = None) -> Any:
        """Read a key from ``data`` when it is a mapping."""
        if isinstance(self.data, Mapping):
            return self.data.get(key, default)
        return default


@dataclass
class QueueStats:
    queued: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    paused: int = 0

    @property
    def total(self) -> int:
        return self.queued + self.active + self.completed + self.failed + self.paused

    def to_dict(self) -> Dict[str, int]:
        return {
            "queued": self.queued,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "paused": self.paused,
            "total": self.total,
        }
