from __future__ import annotations

import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Callable, Deque, Dict, Optional, Set

SPEED_HISTORY_SIZE = 10


@dataclass
class PerformanceData:
    current_speed: float = 0.0
    average_speed: float = 0.0
    peak_speed: float = 0.0
    active_connections: int = 0
    bytes_transferred: int = 0
    elapsed_ms: int = 0
    eta_ms: Optional[int] = None
    active_files: int = 0
    total_files: int = 0
    timestamp: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PerformanceMonitor:
    """Throughput bookkeeping sampled by the orchestrator.

    Every ``get_performance_data`` call takes one speed sample (bytes since the
    previous call over time since the previous call). A disabled monitor
    records nothing and reports zeros.
    """

    def __init__(self, enabled: bool = False, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.enabled = enabled
        self._history: Deque[float] = deque(maxlen=SPEED_HISTORY_SIZE)
        self._files_started: Set[str] = set()
        self._files_completed: Set[str] = set()
        self.reset()

    def set_enabled(self, enabled: bool) -> None:
        if enabled and not self.enabled:
            self.reset()
        self.enabled = enabled

    def is_enabled(self) -> bool:
        return self.enabled

    def reset(self) -> None:
        self.start_time = self._clock()
        self.last_sample_time = self.start_time
        self.last_sample_bytes = 0
        self.bytes_transferred = 0
        self.peak_speed = 0.0
        self.active_connections = 0
        self.active_files = 0
        self.total_files = 0
        self._history.clear()
        self._files_started.clear()
        self._files_completed.clear()

    def record_bytes(self, num_bytes: int) -> None:
        if self.enabled:
            self.bytes_transferred += num_bytes

    def record_file_start(self, file_id: str) -> None:
        if self.enabled:
            self._files_started.add(file_id)

    def record_file_complete(self, file_id: str) -> None:
        if self.enabled:
            self._files_completed.add(file_id)

    @property
    def files_completed(self) -> int:
        return len(self._files_completed)

    def set_active_connections(self, count: int) -> None:
        if self.enabled:
            self.active_connections = count

    def set_file_stats(self, active: int, total: int) -> None:
        if self.enabled:
            self.active_files = active
            self.total_files = total

    def _sample_speed(self, now: float) -> float:
        elapsed = now - self.last_sample_time
        if elapsed <= 0:
            return 0.0
        speed = (self.bytes_transferred - self.last_sample_bytes) / elapsed
        self.last_sample_time = now
        self.last_sample_bytes = self.bytes_transferred
        return speed

    def get_performance_data(self, remaining_bytes: int = 0) -> PerformanceData:
        if not self.enabled:
            return PerformanceData(timestamp=time.time())
        now = self._clock()
        speed = self._sample_speed(now)
        self._history.append(speed)
        self.peak_speed = max(self.peak_speed, speed)
        eta = round(remaining_bytes / speed * 1000) if speed > 0 and remaining_bytes > 0 else None
        return PerformanceData(
            current_speed=speed,
            average_speed=sum(self._history) / len(self._history),
            peak_speed=self.peak_speed,
            active_connections=self.active_connections,
            bytes_transferred=self.bytes_transferred,
            elapsed_ms=round((now - self.start_time) * 1000),
            eta_ms=eta,
            active_files=self.active_files,
            total_files=self.total_files,
            timestamp=time.time(),
        )
