from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import os
import threading
from concurrent.futures import BrokenExecutor, Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, List, Optional

from chunkferry.errors import BackendError

DEFAULT_MAX_SLOTS = 8

logger = logging.getLogger(__name__)


def default_slot_count() -> int:
    return max(1, min(os.cpu_count() or 4, DEFAULT_MAX_SLOTS))


def _thread_slot() -> Executor:
    return ThreadPoolExecutor(max_workers=1, thread_name_prefix="chunkferry-slot")


@dataclass
class ExecutionSlot:
    slot_id: int
    executor: Executor = field(repr=False)
    busy: bool = False
    task: Optional[Hashable] = None
    future: Optional[Future] = field(default=None, repr=False)


class TaskExecutionBackend:
    """Fixed pool of single-worker executors with idle/busy tracking.

    Slots run on OS threads (or processes with a custom ``executor_factory``),
    so the slot list is the one structure guarded by a lock. A slot whose
    executor breaks is evicted; once none are left the backend turns itself
    off and every call runs directly.
    """

    def __init__(
        self,
        enabled: bool = True,
        size: Optional[int] = None,
        executor_factory: Optional[Callable[[], Executor]] = None,
    ) -> None:
        self.enabled = enabled
        self.requested_size = size
        self._executor_factory = executor_factory or _thread_slot
        self._slots: List[ExecutionSlot] = []
        self._lock = threading.Lock()
        self._initialized = False
        self.direct_count = 0

    def initialize(self, size: Optional[int] = None) -> int:
        if self._initialized:
            return self.pool_size
        self._initialized = True
        count = size if size is not None else self.requested_size
        if not self.enabled:
            count = 0
        elif count is None:
            count = default_slot_count()
        count = max(0, int(count))
        for slot_id in range(count):
            try:
                executor = self._executor_factory()
            except Exception as exc:
                logger.warning("Could not create execution slot %d: %s", slot_id, exc)
                break
            self._slots.append(ExecutionSlot(slot_id=slot_id, executor=executor))
        if not self._slots:
            self.enabled = False
        logger.debug("Execution backend initialized with %d slots", len(self._slots))
        return len(self._slots)

    @property
    def pool_size(self) -> int:
        with self._lock:
            return len(self._slots)

    @property
    def busy_count(self) -> int:
        with self._lock:
            return sum(1 for slot in self._slots if slot.busy)

    def is_enabled(self) -> bool:
        return self.enabled and self.pool_size > 0

    def get_available(self) -> Optional[ExecutionSlot]:
        if not self.enabled:
            return None
        with self._lock:
            for slot in self._slots:
                if not slot.busy:
                    return slot
        return None

    async def dispatch(self, slot: ExecutionSlot, fn: Callable[..., Any], *args: Any, task: Optional[Hashable] = None) -> Any:
        """Run ``fn(*args)`` on ``slot`` and return its result.

        Exceptions raised by ``fn`` reach the caller untouched. A slot that
        cannot run work any more is evicted and reported as BackendError.
        """
        with self._lock:
            if slot.busy or slot not in self._slots:
                raise BackendError(f"execution slot {slot.slot_id} is not available", slot_id=slot.slot_id)
            slot.busy = True
            slot.task = task
        try:
            try:
                future = slot.executor.submit(fn, *args)
            except (BrokenExecutor, RuntimeError) as exc:
                self._evict(slot, exc)
                raise BackendError(
                    f"execution slot {slot.slot_id} refused work: {exc}", slot_id=slot.slot_id
                ) from exc
            slot.future = future
            try:
                return await asyncio.wrap_future(future)
            except BrokenExecutor as exc:
                self._evict(slot, exc)
                raise BackendError(f"execution slot {slot.slot_id} crashed: {exc}", slot_id=slot.slot_id) from exc
        finally:
            self._release(slot)

    async def execute(self, fn: Callable[..., Any], *args: Any, task: Optional[Hashable] = None) -> Any:
        """Use an idle slot if there is one, otherwise run directly. Never waits for a slot."""
        slot = self.get_available()
        if slot is not None:
            try:
                return await self.dispatch(slot, fn, *args, task=task)
            except BackendError as exc:
                logger.warning("%s; running task directly", exc)
        return await self.run_direct(fn, *args)

    async def run_direct(self, fn: Callable[..., Any], *args: Any) -> Any:
        self.direct_count += 1
        if inspect.iscoroutinefunction(fn):
            return await fn(*args)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    def abort_file_tasks(self, file_id: str) -> int:
        """Cancel slot work for ``file_id`` that has not started yet (best effort)."""
        cancelled = 0
        with self._lock:
            for slot in self._slots:
                owner = slot.task[0] if isinstance(slot.task, tuple) and slot.task else slot.task
                if owner == file_id and slot.future is not None and slot.future.cancel():
                    cancelled += 1
        return cancelled

    def _release(self, slot: ExecutionSlot) -> None:
        with self._lock:
            slot.busy = False
            slot.task = None
            slot.future = None

    def _evict(self, slot: ExecutionSlot, exc: BaseException) -> None:
        with self._lock:
            if slot in self._slots:
                self._slots.remove(slot)
            remaining = len(self._slots)
        logger.warning("Evicting execution slot %d after backend failure: %s", slot.slot_id, exc)
        slot.executor.shutdown(wait=False, cancel_futures=True)
        if remaining == 0:
            logger.warning("All execution slots failed; falling back to direct execution")
            self.enabled = False

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = len(self._slots)
            busy = sum(1 for slot in self._slots if slot.busy)
        return {
            "enabled": self.enabled and total > 0,
            "total": total,
            "busy": busy,
            "idle": total - busy,
            "direct": self.direct_count,
        }

    def shutdown(self, wait: bool = False) -> None:
        with self._lock:
            slots = list(self._slots)
            self._slots.clear()
        for slot in slots:
            slot.executor.shutdown(wait=wait, cancel_futures=True)
        self.enabled = False
