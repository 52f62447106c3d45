"""Byte sources an upload reads its chunks from."""

from __future__ import annotations

import mimetypes
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from chunkferry.utils.formatting import basename_any


class ByteRangeReader(ABC):
    """Random access to ``[start, end)`` of an upload source."""

    @property
    @abstractmethod
    def size(self) -> int:
        pass

    @abstractmethod
    def read(self, start: int, end: int) -> bytes:
        """Return the bytes in ``[start, end)``; may run on a worker thread."""
        pass

    def close(self) -> None:
        pass


class FileRangeReader(ByteRangeReader):
    """Reads ranges from a file on disk.

    Each call opens its own handle, so concurrent reads from several execution
    slots never share a file position.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._size = os.path.getsize(self.path)

    @property
    def size(self) -> int:
        return self._size

    def read(self, start: int, end: int) -> bytes:
        if start < 0 or end < start:
            raise ValueError(f"invalid byte range [{start}, {end})")
        with open(self.path, "rb") as fh:
            fh.seek(start)
            return fh.read(end - start)


class BytesRangeReader(ByteRangeReader):
    """In-memory source, mostly for tests and small payloads."""

    def __init__(self, data: bytes) -> None:
        self._data = memoryview(bytes(data))

    @property
    def size(self) -> int:
        return len(self._data)

    def read(self, start: int, end: int) -> bytes:
        if start < 0 or end < start:
            raise ValueError(f"invalid byte range [{start}, {end})")
        return self._data[start:end].tobytes()


@dataclass
class UploadSource:
    """What a caller hands to ``add_files``: a name, a size and a reader."""

    name: str
    size: int
    reader: Optional[ByteRangeReader] = field(default=None, repr=False)
    mime_type: str = ""

    @classmethod
    def from_path(cls, path: Union[str, Path], mime_type: Optional[str] = None) -> "UploadSource":
        reader = FileRangeReader(path)
        name = basename_any(str(path))
        if mime_type is None:
            mime_type = mimetypes.guess_type(name)[0] or ""
        return cls(name=name, size=reader.size, reader=reader, mime_type=mime_type)

    @classmethod
    def from_bytes(cls, name: str, data: bytes, mime_type: Optional[str] = None) -> "UploadSource":
        reader = BytesRangeReader(data)
        if mime_type is None:
            mime_type = mimetypes.guess_type(name)[0] or ""
        return cls(name=name, size=reader.size, reader=reader, mime_type=mime_type)

    @classmethod
    def coerce(cls, item) -> "UploadSource":
        """Accept an UploadSource or a filesystem path."""
        if isinstance(item, UploadSource):
            return item
        if isinstance(item, (str, os.PathLike)):
            return cls.from_path(item)
        raise TypeError(f"cannot upload object of type {type(item).__name__}")
