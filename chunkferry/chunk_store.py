from __future__ import annotations

import bisect
import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from chunkferry.models import ChunkStatus, ChunkTask, FileRecord, PartInfo

DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024

logger = logging.getLogger(__name__)


@dataclass
class ChunkStats:
    total: int
    completed: int
    pending: int
    remaining: int


class ChunkStateStore:
    """Per-file chunk queues, pending sets and committed parts.

    Only the orchestrator's control flow touches this object, so nothing here
    is locked.
    """

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size
        self._queues: Dict[str, List[ChunkTask]] = {}
        self._pending: Dict[str, Dict[int, ChunkTask]] = {}
        # part_number -> committed size
        self._uploaded: Dict[str, Dict[int, int]] = {}
        self._file_sizes: Dict[str, int] = {}

    def total_chunks_for(self, size: int) -> int:
        return math.ceil(size / self.chunk_size) if size > 0 else 0

    def build_chunks(self, size: int) -> List[ChunkTask]:
        """Split ``[0, size)`` into contiguous chunks numbered from 1."""
        chunks: List[ChunkTask] = []
        for index in range(self.total_chunks_for(size)):
            start = index * self.chunk_size
            end = min(start + self.chunk_size, size)
            chunks.append(ChunkTask(part_number=index + 1, start=start, end=end))
        return chunks

    def prepare_queue(self, record: FileRecord) -> List[ChunkTask]:
        chunks = self.build_chunks(record.size)
        self._queues[record.id] = list(chunks)
        self._pending[record.id] = {}
        self._uploaded[record.id] = {}
        self._file_sizes[record.id] = record.size
        record.total_chunks = len(chunks)
        return chunks

    def is_tracked(self, file_id: str) -> bool:
        return file_id in self._queues

    def get_next(self, file_id: str) -> Optional[ChunkTask]:
        queue = self._queues.get(file_id)
        if not queue:
            return None
        return queue.pop(0)

    def remaining_count(self, file_id: str) -> int:
        return len(self._queues.get(file_id, ()))

    def pending_count(self, file_id: str) -> int:
        return len(self._pending.get(file_id, ()))

    def is_pending(self, file_id: str, part_number: int) -> bool:
        return part_number in self._pending.get(file_id, {})

    def mark_pending(self, file_id: str, chunk: ChunkTask) -> None:
        pending = self._pending.setdefault(file_id, {})
        if chunk.part_number in pending:
            raise ValueError(f"part {chunk.part_number} of {file_id} is already in flight")
        chunk.status = ChunkStatus.PENDING
        pending[chunk.part_number] = chunk

    def mark_uploaded(self, file_id: str, chunk: ChunkTask) -> None:
        chunk.status = ChunkStatus.UPLOADED
        chunk.data = None
        self._pending.get(file_id, {}).pop(chunk.part_number, None)
        self._uploaded.setdefault(file_id, {})[chunk.part_number] = chunk.size

    def mark_failed(self, file_id: str, chunk: ChunkTask, max_retries: int) -> bool:
        """Put ``chunk`` back in the waiting queue if it has retries left.

        The queue stays ordered by part number, so a retried chunk goes out
        ahead of higher parts. Returns False (chunk left in ``error``) once
        ``max_retries`` is used up.
        """
        chunk.data = None
        self._pending.get(file_id, {}).pop(chunk.part_number, None)
        if chunk.retry_count >= max_retries:
            chunk.status = ChunkStatus.ERROR
            return False
        chunk.retry_count += 1
        chunk.status = ChunkStatus.WAITING
        queue = self._queues.get(file_id)
        if queue is not None:
            numbers = [c.part_number for c in queue]
            queue.insert(bisect.bisect_left(numbers, chunk.part_number), chunk)
        return True

    def calculate_uploaded_size(self, file_id: str) -> int:
        return sum(self._uploaded.get(file_id, {}).values())

    def uploaded_parts(self, file_id: str) -> List[int]:
        return sorted(self._uploaded.get(file_id, {}))

    def is_complete(self, file_id: str) -> bool:
        return not self._queues.get(file_id) and not self._pending.get(file_id)

    def expected_part_size(self, part_number: int, file_size: int) -> int:
        if part_number == self.total_chunks_for(file_size):
            remaining = file_size - (part_number - 1) * self.chunk_size
            return remaining if remaining > 0 else self.chunk_size
        return self.chunk_size

    def resume_from_parts(self, record: FileRecord, existing_parts: Iterable) -> List[PartInfo]:
        """Trust server-reported parts so they are not uploaded again.

        Parts missing a size get the size they should have. The whole report is
        discarded when every etag is identical across several parts, or when a
        part number falls outside the file. Returns the accepted parts; an
        empty list means a full upload.

        The identical-etag test is only a heuristic for a misbehaving server:
        a small upload whose parts legitimately share an etag is restarted, and
        distinct but wrong etags pass.
        """
        file_id = record.id
        if not self.is_tracked(file_id):
            self.prepare_queue(record)
        reported = [PartInfo.coerce(part) for part in existing_parts or []]
        if not reported:
            return []

        for part in reported:
            if part.size <= 0:
                part.size = self.expected_part_size(part.part_number, record.size)

        if len(reported) > 1 and len({part.etag for part in reported}) == 1:
            logger.warning(
                "Ignoring %d reported parts for %s: every part has etag %r",
                len(reported),
                record.name,
                reported[0].etag,
            )
            return []

        max_part = self.total_chunks_for(record.size)
        invalid = [p.part_number for p in reported if p.part_number < 1 or p.part_number > max_part]
        if invalid:
            logger.warning(
                "Ignoring reported parts for %s: part numbers %s outside 1..%d",
                record.name,
                invalid,
                max_part,
            )
            return []

        accepted: Dict[int, PartInfo] = {}
        for part in reported:
            accepted[part.part_number] = part
        queue = self._queues[file_id]
        self._queues[file_id] = [c for c in queue if c.part_number not in accepted]
        uploaded = self._uploaded.setdefault(file_id, {})
        # progress counts each chunk's own byte range
        for number in accepted:
            uploaded[number] = self.expected_part_size(number, record.size)
        logger.info(
            "Resuming %s: %d parts already stored, %d to upload",
            record.name,
            len(accepted),
            len(self._queues[file_id]),
        )
        return [accepted[n] for n in sorted(accepted)]

    def stats(self, file_id: str) -> ChunkStats:
        remaining = self.remaining_count(file_id)
        pending = self.pending_count(file_id)
        completed = len(self._uploaded.get(file_id, {}))
        total = self.total_chunks_for(self._file_sizes.get(file_id, 0))
        return ChunkStats(
            total=max(total, remaining + pending + completed),
            completed=completed,
            pending=pending,
            remaining=remaining,
        )

    def cleanup(self, file_id: str) -> None:
        self._queues.pop(file_id, None)
        self._pending.pop(file_id, None)
        self._uploaded.pop(file_id, None)
        self._file_sizes.pop(file_id, None)

    def cleanup_all(self) -> None:
        self._queues.clear()
        self._pending.clear()
        self._uploaded.clear()
        self._file_sizes.clear()
