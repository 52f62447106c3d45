from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from typing import Any, Callable, Coroutine, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from chunkferry.backend import TaskExecutionBackend
from chunkferry.callbacks import UploadCallbacks
from chunkferry.chunk_store import ChunkStateStore
from chunkferry.config import UploaderConfig
from chunkferry.errors import (
    ChunkUploadError,
    FinalizeError,
    InitializationError,
    UploaderError,
    ValidationError,
)
from chunkferry.file_queue import FileQueue
from chunkferry.metrics import PerformanceData, PerformanceMonitor
from chunkferry.models import CallbackResult, ChunkTask, FileRecord, FileStatus, PartInfo, QueueStats
from chunkferry.persistence import JsonFileStore, KeyValueStore, MemoryStore, QueuePersistence, SnapshotDocument
from chunkferry.rate_limiter import TokenBucketLimiter
from chunkferry.sources import UploadSource
from chunkferry.utils.formatting import format_bytes

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, Any], None]

FILE_ADDED = "file_added"
FILE_PROGRESS = "file_progress"
FILE_SUCCESS = "file_success"
FILE_ERROR = "file_error"
FILE_COMPLETE = "file_complete"
FILE_REJECTED = "file_rejected"
ALL_COMPLETE = "all_complete"
PERFORMANCE_UPDATE = "performance_update"


def _send_part(upload: Callable[..., Any], record: FileRecord, chunk: ChunkTask) -> Any:
    # runs on an execution slot: read the range there, then hand it to the transport
    chunk.data = record.read_chunk(chunk)
    return upload(record, chunk)


class UploadOrchestrator:
    """Uploads queued files in chunks, several files and chunks at a time.

    All bookkeeping happens on the asyncio loop that calls ``add_files``;
    external callbacks, slot work and waits are the only suspension points.

    ``event_callback(type_, data)`` receives:

    * ``file_added`` / ``file_progress``: the FileRecord
    * ``file_success`` / ``file_complete``: ``{"file": record, "data": ...}``
    * ``file_error``: ``{"file": record, "error": UploaderError}``
    * ``file_rejected``: ``{"name", "size", "error"}``
    * ``all_complete``: QueueStats
    * ``performance_update``: PerformanceData
    """

    def __init__(
        self,
        callbacks: UploadCallbacks,
        config: Optional[UploaderConfig] = None,
        event_callback: Optional[EventCallback] = None,
        store: Optional[KeyValueStore] = None,
        backend: Optional[TaskExecutionBackend] = None,
        limiter: Optional[TokenBucketLimiter] = None,
        monitor: Optional[PerformanceMonitor] = None,
    ) -> None:
        if callbacks.upload_part is None:
            raise ValueError("an upload_part callback is required")
        self.config = config or UploaderConfig()
        cfg = self.config
        self.callbacks = callbacks
        self.event_callback = event_callback
        self.queue = FileQueue(max_file_size=cfg.max_file_size, allowed_types=cfg.allowed_types)
        self.chunks = ChunkStateStore(cfg.chunk_size)
        self.limiter = limiter or TokenBucketLimiter(cfg.speed_limit, enabled=cfg.enable_speed_limit)
        self.backend = backend or TaskExecutionBackend(enabled=cfg.use_workers, size=cfg.worker_count)
        self.backend.initialize()
        self.monitor = monitor or PerformanceMonitor(enabled=cfg.enable_performance_monitor)
        if store is None:
            store = JsonFileStore(cfg.persistence_dir) if cfg.persistence_dir else MemoryStore()
        self.persistence = QueuePersistence(
            store,
            key=cfg.persistence_key,
            enabled=cfg.enable_persistence,
            ttl_seconds=cfg.snapshot_ttl,
        )
        self.restored_snapshots = self.persistence.load_queue()
        if self.restored_snapshots:
            logger.info("Found %d unfinished uploads from a previous run", len(self.restored_snapshots))

        self._tasks: Set[asyncio.Task] = set()
        self._finalizing: Set[str] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._had_work = False
        self._destroyed = False
        self._snapshot_handle: Optional[asyncio.TimerHandle] = None
        self._snapshot_lock: Optional[asyncio.Lock] = None
        self._snapshot_seq = 0
        self._snapshot_written = 0
        self._monitor_task: Optional[asyncio.Task] = None

    # -- public API -------------------------------------------------------

    def add_files(self, items: Iterable) -> List[FileRecord]:
        """Queue files and start as many as the file limit allows.

        Must be called from the running event loop. Invalid files are reported
        through ``file_rejected`` and skipped.
        """
        if self._destroyed:
            raise RuntimeError("uploader has been destroyed")
        asyncio.get_running_loop()
        added = self.queue.add_files(items, on_reject=self._on_reject)
        for record in added:
            logger.info("Queued %s (%s)", record.name, format_bytes(record.size))
            self._emit(FILE_ADDED, record)
        if added:
            self._had_work = True
            self._idle.clear()
            self._schedule_snapshot()
            self._start_monitor()
            self._process_queue()
        return added

    def pause(self, file_id: str) -> bool:
        record = self.queue.get_active(file_id)
        if record is None or record.status is not FileStatus.UPLOADING:
            return False
        self.queue.update_status(file_id, FileStatus.PAUSED)
        logger.info("Paused %s", record.name)
        self._schedule_snapshot()
        if self.callbacks.notify_pause is not None:
            self._spawn(self._notify_pause(record))
        return True

    def resume(self, file_id: str) -> bool:
        record = self.queue.get_active(file_id)
        if record is None or record.status is not FileStatus.PAUSED:
            return False
        self.queue.update_status(file_id, FileStatus.UPLOADING)
        logger.info("Resumed %s", record.name)
        self._schedule_snapshot()
        self._pump(record)
        return True

    def cancel(self, file_id: str) -> bool:
        """Drop a file, queued or active. Returns False if it is unknown (already gone)."""
        record = self.queue.get_active(file_id)
        if record is None:
            queued = self.queue.remove_queued(file_id)
            if queued is None:
                return False
            logger.info("Removed %s from the queue", queued.name)
            self._schedule_snapshot()
            self._check_all_complete()
            return True
        self.backend.abort_file_tasks(file_id)
        self.monitor.record_file_complete(file_id)
        logger.info("Cancelled %s", record.name)
        self._retire(record, None)
        self._process_queue()
        return True

    def pause_all(self) -> int:
        return sum(1 for record in self.queue.all_active() if self.pause(record.id))

    def resume_all(self) -> int:
        return sum(1 for record in self.queue.all_active() if self.resume(record.id))

    def cancel_all(self) -> int:
        cancelled = 0
        for record in self.queue.queued_files():
            cancelled += self.cancel(record.id)
        for record in self.queue.all_active():
            cancelled += self.cancel(record.id)
        return cancelled

    async def join(self) -> None:
        """Wait until no file is queued or active."""
        await self._idle.wait()

    async def destroy(self) -> None:
        """Persist the current queue, cancel everything and release the slots."""
        await self.flush_snapshot()
        self._destroyed = True
        self.cancel_all()
        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self.chunks.cleanup_all()
        self.backend.shutdown()
        self._idle.set()

    def get_stats(self) -> QueueStats:
        return self.queue.get_stats()

    def get_file(self, file_id: str) -> Optional[FileRecord]:
        record = self.queue.get_active(file_id)
        if record is not None:
            return record
        for queued in self.queue.queued_files():
            if queued.id == file_id:
                return queued
        return None

    def get_performance_data(self) -> PerformanceData:
        active = self.queue.all_active()
        remaining = sum(max(0, r.size - r.uploaded_size) for r in active)
        remaining += sum(r.size for r in self.queue.queued_files())
        self.monitor.set_file_stats(len(active), self.get_stats().total)
        return self.monitor.get_performance_data(remaining)

    def set_speed_limit(self, bytes_per_second: int, enabled: bool = True) -> None:
        self.limiter.set_rate(bytes_per_second)
        self.limiter.set_enabled(enabled and bytes_per_second > 0)

    def set_performance_monitoring(self, enabled: bool) -> None:
        self.monitor.set_enabled(enabled)
        if enabled and not self._idle.is_set():
            self._start_monitor()

    def set_persistence(self, enabled: bool) -> None:
        self.persistence.set_enabled(enabled)
        if not enabled and self._snapshot_handle is not None:
            self._snapshot_handle.cancel()
            self._snapshot_handle = None

    async def flush_snapshot(self) -> None:
        """Write the queue now and wait until the store has it."""
        if self._snapshot_handle is not None:
            self._snapshot_handle.cancel()
            self._snapshot_handle = None
        if self.persistence.is_enabled() and not self._destroyed:
            await self._store_snapshot(*self._build_snapshot())

    # -- scheduling -------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Upload task crashed", exc_info=exc)

    def _is_current(self, record: FileRecord) -> bool:
        return self.queue.get_active(record.id) is record

    def _in_flight(self, record: FileRecord, chunk: ChunkTask) -> bool:
        return self._is_current(record) and self.chunks.is_pending(record.id, chunk.part_number)

    def _process_queue(self) -> None:
        while self.queue.active_count() < self.config.max_concurrent_files:
            record = self.queue.get_next()
            if record is None:
                break
            record.status = FileStatus.INITIALIZING
            record.touch()
            self.queue.activate(record)
            self.monitor.record_file_start(record.id)
            self._spawn(self._start_file(record))
        self._check_all_complete()

    def _check_all_complete(self) -> None:
        if not self._had_work or self.queue.active_count() or self.queue.queue_length():
            return
        self._had_work = False
        self._idle.set()
        stats = self.get_stats()
        logger.info("All uploads finished: %d completed, %d failed", stats.completed, stats.failed)
        self._emit(ALL_COMPLETE, stats)

    def _pump(self, record: FileRecord) -> None:
        """Top up the file's in-flight chunks, or finalize once none are left."""
        if not self._is_current(record) or record.status is not FileStatus.UPLOADING:
            return
        if self.chunks.is_complete(record.id):
            if record.id not in self._finalizing:
                self._finalizing.add(record.id)
                self._spawn(self._finalize(record))
            return
        while self.chunks.pending_count(record.id) < self.config.max_concurrent_chunks:
            chunk = self.chunks.get_next(record.id)
            if chunk is None:
                break
            self.chunks.mark_pending(record.id, chunk)
            self._spawn(self._upload_chunk(record, chunk))
        self._update_connections()

    def _update_connections(self) -> None:
        self.monitor.set_active_connections(sum(self.chunks.pending_count(r.id) for r in self.queue.all_active()))

    async def _call(self, fn: Callable[..., Any], *args: Any) -> CallbackResult:
        if inspect.iscoroutinefunction(fn):
            result = await fn(*args)
        else:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(None, functools.partial(fn, *args))
        if inspect.isawaitable(result):
            result = await result
        return CallbackResult.coerce(result)

    # -- file lifecycle ---------------------------------------------------

    async def _start_file(self, record: FileRecord) -> None:
        self.chunks.prepare_queue(record)
        logger.info("Starting %s (%d chunks)", record.name, record.total_chunks)
        if self.callbacks.begin is not None:
            try:
                result = await self._call(self.callbacks.begin, record)
            except Exception as exc:
                if self._is_current(record):
                    self._fail_file(record, InitializationError.for_file(f"begin failed for {record.name}: {exc}", record))
                return
            if not self._is_current(record):
                return
            if not result.success:
                message = result.message or f"begin failed for {record.name}"
                self._fail_file(record, InitializationError.for_file(message, record))
                return
            if result.get("skip_upload") or result.get("skipUpload"):
                logger.info("Server already has %s, skipping upload", record.name)
                self._complete_file(record, result.data)
                return
            upload_id = result.get("upload_id", result.get("uploadId"))
            if upload_id is not None:
                record.upload_id = str(upload_id)
        if self.callbacks.list_parts is not None:
            await self._reconcile(record)
            if not self._is_current(record):
                return
        self.queue.update_status(record.id, FileStatus.UPLOADING)
        self._schedule_snapshot()
        self._pump(record)

    async def _reconcile(self, record: FileRecord) -> None:
        try:
            result = await self._call(self.callbacks.list_parts, record)
        except Exception as exc:
            logger.warning("Could not list stored parts of %s, uploading all of it: %s", record.name, exc)
            return
        if not self._is_current(record) or not result.success or not result.data:
            return
        reported = result.data.get("parts", ()) if isinstance(result.data, Mapping) else result.data
        try:
            accepted = self.chunks.resume_from_parts(record, reported)
        except (TypeError, ValueError) as exc:
            logger.warning("Unreadable part list for %s, uploading all of it: %s", record.name, exc)
            return
        if accepted:
            record.parts.extend(accepted)
            self._update_progress(record)

    async def _upload_chunk(self, record: FileRecord, chunk: ChunkTask) -> None:
        await self.limiter.acquire(chunk.size)
        if not self._in_flight(record, chunk):
            return
        try:
            result = await self._transfer(record, chunk)
        except Exception as exc:
            if self._in_flight(record, chunk):
                await self._chunk_failed(record, chunk, repr(exc))
            return
        if not self._in_flight(record, chunk):
            return
        if not result.success:
            await self._chunk_failed(record, chunk, result.message or "upload_part reported failure")
            return
        self._chunk_uploaded(record, chunk, result)

    async def _transfer(self, record: FileRecord, chunk: ChunkTask) -> CallbackResult:
        upload = self.callbacks.upload_part
        key = (record.id, chunk.part_number)
        if inspect.iscoroutinefunction(upload):
            chunk.data = await self.backend.execute(record.read_chunk, chunk, task=key)
            result = await upload(record, chunk)
        else:
            result = await self.backend.execute(_send_part, upload, record, chunk, task=key)
        if inspect.isawaitable(result):
            result = await result
        return CallbackResult.coerce(result)

    def _chunk_uploaded(self, record: FileRecord, chunk: ChunkTask, result: CallbackResult) -> None:
        etag = result.get("etag")
        if not etag:
            logger.warning("No etag returned for part %d of %s", chunk.part_number, record.name)
        self.chunks.mark_uploaded(record.id, chunk)
        record.parts.append(PartInfo(part_number=chunk.part_number, etag=str(etag or ""), size=chunk.size))
        self.monitor.record_bytes(chunk.size)
        logger.debug("Stored part %d/%d of %s", chunk.part_number, record.total_chunks, record.name)
        self._update_progress(record)
        self._schedule_snapshot()
        self._pump(record)

    async def _chunk_failed(self, record: FileRecord, chunk: ChunkTask, reason: str) -> None:
        max_retries = self.config.max_retries
        if chunk.retry_count >= max_retries:
            self.chunks.mark_failed(record.id, chunk, max_retries)
            error = ChunkUploadError.for_file(
                f"Part {chunk.part_number} of {record.name} failed after {max_retries} retries: {reason}",
                record,
                part_number=chunk.part_number,
            )
            self._fail_file(record, error)
            return
        attempt = chunk.retry_count + 1
        delay_ms = self.config.retry_delay_for(attempt)
        logger.warning(
            "Part %d of %s failed (%s); retry %d/%d in %dms",
            chunk.part_number,
            record.name,
            reason,
            attempt,
            max_retries,
            delay_ms,
        )
        if delay_ms > 0:
            # the chunk stays pending while it waits
            await asyncio.sleep(delay_ms / 1000)
            if not self._in_flight(record, chunk):
                return
        self.chunks.mark_failed(record.id, chunk, max_retries)
        self._pump(record)

    async def _finalize(self, record: FileRecord) -> None:
        record.parts.sort(key=lambda part: part.part_number)
        data = None
        if self.callbacks.finalize is not None:
            try:
                result = await self._call(self.callbacks.finalize, record)
            except Exception as exc:
                if self._is_current(record):
                    self._fail_file(record, FinalizeError.for_file(f"finalize failed for {record.name}: {exc}", record))
                return
            if not self._is_current(record):
                return
            if not result.success:
                message = result.message or f"finalize failed for {record.name}"
                self._fail_file(record, FinalizeError.for_file(message, record))
                return
            data = result.data
        self._complete_file(record, data)

    async def _notify_pause(self, record: FileRecord) -> None:
        try:
            result = await self._call(self.callbacks.notify_pause, record)
        except Exception as exc:
            logger.warning("Pause notification for %s failed: %s", record.name, exc)
            return
        if not result.success:
            logger.warning("Pause notification for %s was refused: %s", record.name, result.message)

    def _update_progress(self, record: FileRecord) -> None:
        self.queue.update_progress(record.id, self.chunks.calculate_uploaded_size(record.id))
        self._emit(FILE_PROGRESS, record)

    def _complete_file(self, record: FileRecord, data: Any) -> None:
        record.response = data
        self.queue.update_progress(record.id, record.size)
        self.queue.update_status(record.id, FileStatus.COMPLETE)
        self.monitor.record_file_complete(record.id)
        logger.info("Uploaded %s", record.name)
        self._retire(record, FileStatus.COMPLETE)
        self._emit(FILE_SUCCESS, {"file": record, "data": data})
        self._emit(FILE_COMPLETE, {"file": record, "data": data})
        self._process_queue()

    def _fail_file(self, record: FileRecord, error: UploaderError) -> None:
        record.error_message = str(error)
        self.queue.update_status(record.id, FileStatus.ERROR)
        self.backend.abort_file_tasks(record.id)
        self.monitor.record_file_complete(record.id)
        logger.error("Upload of %s failed: %s", record.name, error)
        self._retire(record, FileStatus.ERROR)
        self._emit(FILE_ERROR, {"file": record, "error": error})
        self._emit(FILE_COMPLETE, {"file": record, "data": {"error": str(error)}})
        self._process_queue()

    def _retire(self, record: FileRecord, status: Optional[FileStatus]) -> None:
        """Drop the file from the active set; the caller refills it with ``_process_queue``."""
        self.queue.retire(record.id, status)
        self.chunks.cleanup(record.id)
        self._finalizing.discard(record.id)
        if record.reader is not None:
            record.reader.close()
        self._update_connections()
        self._schedule_snapshot()

    # -- events, snapshots, metrics ----------------------------------------

    def _emit(self, type_: str, data: Any = None) -> None:
        if self.event_callback is None:
            return
        try:
            self.event_callback(type_, data)
        except Exception:
            logger.exception("Event callback failed for %s", type_)

    def _on_reject(self, source: UploadSource, error: ValidationError) -> None:
        self._emit(FILE_REJECTED, {"name": source.name, "size": source.size, "error": error})

    def _schedule_snapshot(self) -> None:
        if self._destroyed or not self.persistence.is_enabled() or self._snapshot_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._snapshot_handle = loop.call_later(self.config.snapshot_debounce_ms / 1000, self._write_snapshot)

    def _write_snapshot(self) -> None:
        self._snapshot_handle = None
        self._spawn(self._store_snapshot(*self._build_snapshot()))

    def _build_snapshot(self) -> Tuple[int, SnapshotDocument]:
        records = self.queue.all_active() + self.queue.queued_files()
        committed: Dict[str, List[int]] = {r.id: self.chunks.uploaded_parts(r.id) for r in records}
        self._snapshot_seq += 1
        return self._snapshot_seq, self.persistence.build_document(records, committed)

    async def _store_snapshot(self, seq: int, document: SnapshotDocument) -> None:
        # store I/O runs off the loop; an older document never replaces a newer one
        if self._snapshot_lock is None:
            self._snapshot_lock = asyncio.Lock()
        async with self._snapshot_lock:
            if seq <= self._snapshot_written:
                return
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self.persistence.write_document, document)
            self._snapshot_written = seq

    def _start_monitor(self) -> None:
        if not self.monitor.is_enabled():
            return
        if self._monitor_task is not None and not self._monitor_task.done():
            return
        self._monitor_task = self._spawn(self._monitor_loop())

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.performance_interval)
            if self._idle.is_set() or not self.monitor.is_enabled():
                return
            self._emit(PERFORMANCE_UPDATE, self.get_performance_data())
