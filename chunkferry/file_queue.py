from __future__ import annotations

import logging
import uuid
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

from chunkferry.errors import ErrorType, ValidationError
from chunkferry.models import FileRecord, FileStatus, QueueStats
from chunkferry.sources import UploadSource
from chunkferry.utils.formatting import file_extension, format_bytes, normalize_type_patterns

logger = logging.getLogger(__name__)

WILDCARD_TYPES = {"*", "*/*"}

RejectHandler = Callable[[UploadSource, ValidationError], None]


class FileQueue:
    """FIFO of validated files waiting for an upload slot, plus the active map."""

    def __init__(
        self,
        max_file_size: Optional[int] = None,
        allowed_types: Union[str, Sequence[str], None] = None,
    ) -> None:
        self.max_file_size = max_file_size
        self.allowed_types = normalize_type_patterns(allowed_types)
        self._queue: List[FileRecord] = []
        self._active: Dict[str, FileRecord] = {}
        self._completed = 0
        self._failed = 0

    def is_allowed_type(self, name: str, mime_type: str = "") -> bool:
        if not self.allowed_types or WILDCARD_TYPES.intersection(self.allowed_types):
            return True
        mime = (mime_type or "").lower()
        ext = file_extension(name)
        for pattern in self.allowed_types:
            if "/" in pattern:
                if not mime:
                    continue
                if pattern == mime:
                    return True
                if pattern.endswith("/*") and mime.split("/", 1)[0] == pattern[:-2]:
                    return True
            elif ext and pattern == "." + ext:
                return True
        return False

    def validate(self, source: UploadSource) -> None:
        if self.max_file_size is not None and source.size > self.max_file_size:
            raise ValidationError(
                f"File size exceeds limit: {format_bytes(source.size)} > {format_bytes(self.max_file_size)}",
                error_type=ErrorType.FILE_TOO_LARGE,
                file_name=source.name,
                file_size=source.size,
            )
        if not self.is_allowed_type(source.name, source.mime_type):
            shown = source.mime_type or file_extension(source.name) or "unknown"
            raise ValidationError(
                f"File type not allowed: {shown}",
                error_type=ErrorType.FILE_TYPE_NOT_ALLOWED,
                file_name=source.name,
                file_size=source.size,
            )

    def add_files(self, items: Iterable, on_reject: Optional[RejectHandler] = None) -> List[FileRecord]:
        """Validate and enqueue ``items`` (UploadSource objects or paths).

        Without ``on_reject`` the first invalid item raises ValidationError;
        items before it stay queued.
        """
        added: List[FileRecord] = []
        for item in items:
            source = UploadSource.coerce(item)
            try:
                self.validate(source)
            except ValidationError as exc:
                if on_reject is None:
                    raise
                logger.warning("Rejected %s: %s", source.name, exc)
                on_reject(source, exc)
                continue
            record = FileRecord(
                id=str(uuid.uuid4()),
                name=source.name,
                size=source.size,
                reader=source.reader,
                mime_type=source.mime_type,
            )
            self._queue.append(record)
            added.append(record)
        return added

    def get_next(self) -> Optional[FileRecord]:
        if not self._queue:
            return None
        return self._queue.pop(0)

    def activate(self, record: FileRecord) -> None:
        self._active[record.id] = record

    def get_active(self, file_id: str) -> Optional[FileRecord]:
        return self._active.get(file_id)

    def all_active(self) -> List[FileRecord]:
        return list(self._active.values())

    def queued_files(self) -> List[FileRecord]:
        return list(self._queue)

    def remove_queued(self, file_id: str) -> Optional[FileRecord]:
        for index, record in enumerate(self._queue):
            if record.id == file_id:
                return self._queue.pop(index)
        return None

    def retire(self, file_id: str, status: Optional[FileStatus] = None) -> Optional[FileRecord]:
        """Drop a file from the active map, counting it as completed or failed."""
        record = self._active.pop(file_id, None)
        if record is None:
            return None
        if status is FileStatus.COMPLETE:
            self._completed += 1
        elif status is FileStatus.ERROR:
            self._failed += 1
        return record

    def update_status(self, file_id: str, status: FileStatus) -> None:
        record = self._active.get(file_id)
        if record is not None:
            record.status = status
            record.touch()

    def update_progress(self, file_id: str, uploaded_size: int) -> None:
        record = self._active.get(file_id)
        if record is None:
            return
        record.uploaded_size = uploaded_size
        record.progress = round(uploaded_size / record.size * 100) if record.size else 100
        record.touch()

    def active_count(self) -> int:
        return len(self._active)

    def queue_length(self) -> int:
        return len(self._queue)

    def clear_queue(self) -> List[FileRecord]:
        dropped, self._queue = self._queue, []
        return dropped

    def clear_active(self) -> None:
        self._active.clear()

    def get_stats(self) -> QueueStats:
        stats = QueueStats(queued=len(self._queue), completed=self._completed, failed=self._failed)
        for record in self._active.values():
            if record.status in (FileStatus.INITIALIZING, FileStatus.UPLOADING):
                stats.active += 1
            elif record.status is FileStatus.PAUSED:
                stats.paused += 1
        return stats
