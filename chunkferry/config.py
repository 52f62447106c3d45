from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from chunkferry.chunk_store import DEFAULT_CHUNK_SIZE
from chunkferry.persistence import DEFAULT_KEY, DEFAULT_TTL_SECONDS
from chunkferry.utils.formatting import normalize_type_patterns

ENV_PREFIX = "CHUNKFERRY_"


class RetryPolicy(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


def retry_delay(policy: RetryPolicy, base_ms: int, attempt: int) -> int:
    """Delay in ms before retry number ``attempt`` (1-based)."""
    attempt = max(1, attempt)
    if policy is RetryPolicy.FIXED:
        return base_ms
    if policy is RetryPolicy.EXPONENTIAL:
        return base_ms * 2 ** (attempt - 1)
    return base_ms * attempt


@dataclass
class UploaderConfig:
    max_concurrent_files: int = 3
    max_concurrent_chunks: int = 3
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_retries: int = 3
    retry_delay_ms: int = 1000
    retry_backoff: RetryPolicy = RetryPolicy.LINEAR
    max_file_size: Optional[int] = None
    allowed_types: Optional[List[str]] = None
    enable_speed_limit: bool = False
    speed_limit: int = 0
    enable_performance_monitor: bool = False
    performance_interval: float = 1.0
    enable_persistence: bool = False
    persistence_key: str = DEFAULT_KEY
    persistence_dir: Optional[str] = None
    snapshot_ttl: float = DEFAULT_TTL_SECONDS
    snapshot_debounce_ms: int = 500
    use_workers: bool = True
    worker_count: Optional[int] = None
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.retry_backoff = RetryPolicy(self.retry_backoff)
        if self.allowed_types is not None:
            self.allowed_types = normalize_type_patterns(self.allowed_types) or None
        for name in ("max_concurrent_files", "max_concurrent_chunks", "chunk_size"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        for name in ("max_retries", "retry_delay_ms", "speed_limit", "snapshot_debounce_ms"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")
        if self.max_file_size is not None and self.max_file_size <= 0:
            raise ValueError("max_file_size must be positive")
        if self.performance_interval <= 0:
            raise ValueError("performance_interval must be positive")
        if self.snapshot_ttl <= 0:
            raise ValueError("snapshot_ttl must be positive")
        if self.worker_count is not None and self.worker_count < 0:
            raise ValueError("worker_count must not be negative")

    def retry_delay_for(self, attempt: int) -> int:
        return retry_delay(self.retry_backoff, self.retry_delay_ms, attempt)

    def replace(self, **changes: Any) -> "UploaderConfig":
        """Copy with ``changes`` applied; None values are ignored."""
        return dataclasses.replace(self, **{k: v for k, v in changes.items() if v is not None})

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX, **overrides: Any) -> "UploaderConfig":
        """Build from ``<PREFIX><FIELD>`` environment variables (after loading .env)."""
        load_dotenv()
        values: Dict[str, Any] = {}
        for f in dataclasses.fields(cls):
            raw = os.getenv(prefix + f.name.upper())
            if raw is None or raw.strip() == "":
                continue
            values[f.name] = _parse_env(f.name, raw.strip())
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


_INT_FIELDS = {
    "max_concurrent_files",
    "max_concurrent_chunks",
    "chunk_size",
    "max_retries",
    "retry_delay_ms",
    "max_file_size",
    "speed_limit",
    "snapshot_debounce_ms",
    "worker_count",
}
_FLOAT_FIELDS = {"performance_interval", "snapshot_ttl"}
_BOOL_FIELDS = {"enable_speed_limit", "enable_performance_monitor", "enable_persistence", "use_workers"}
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_env(name: str, raw: str) -> Any:
    if name in _BOOL_FIELDS:
        lowered = raw.lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ValueError(f"{name}: expected a boolean, got {raw!r}")
    if name in _INT_FIELDS:
        try:
            return int(raw)
        except ValueError:
            raise ValueError(f"{name}: expected an integer, got {raw!r}") from None
    if name in _FLOAT_FIELDS:
        try:
            return float(raw)
        except ValueError:
            raise ValueError(f"{name}: expected a number, got {raw!r}") from None
    if name == "allowed_types":
        return normalize_type_patterns(raw)
    if name == "retry_backoff":
        return RetryPolicy(raw.lower())
    return raw
