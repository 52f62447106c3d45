from __future__ import annotations

import os
import re
import unicodedata
from typing import List, Optional, Sequence, Union

BYTE_UNITS = ["B", "KB", "MB", "GB", "TB"]
SPEED_UNITS = ["B/s", "KB/s", "MB/s", "GB/s"]


def _scaled(value: float, units: List[str]) -> str:
    if value <= 0:
        return f"0 {units[0]}"
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{value:.1f} {units[index]}"


def format_bytes(num_bytes: float) -> str:
    """Human readable size, e.g. 5.0 MB."""
    return _scaled(num_bytes, BYTE_UNITS)


def format_speed(bytes_per_second: float) -> str:
    """Human readable throughput, e.g. 1.2 MB/s."""
    return _scaled(bytes_per_second, SPEED_UNITS)


def format_duration(milliseconds: Optional[float]) -> str:
    """Compact duration: 850ms, 12s, 3m 4s, 1h 2m 3s."""
    if milliseconds is None:
        return "?"
    if milliseconds < 1000:
        return f"{round(milliseconds)}ms"
    seconds = int(milliseconds // 1000)
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def file_extension(name: str) -> str:
    """Lower-case extension without the dot ('' when there is none)."""
    _, ext = os.path.splitext(basename_any(name).lower())
    return ext.lstrip(".")


def normalize_type_patterns(patterns: Union[str, Sequence[str], None]) -> List[str]:
    """Return a clean, de-duplicated allow-list.

    Accepts a comma-separated string, any iterable, or None. MIME patterns are
    lower-cased; bare extensions are kept with a leading dot so ``pdf`` and
    ``.pdf`` compare equal.
    """
    if patterns is None:
        return []
    if isinstance(patterns, str):
        raw = [p.strip() for p in patterns.split(",")]
    else:
        raw = [str(p).strip() for p in patterns]
    normalized: List[str] = []
    for item in raw:
        if not item:
            continue
        key = item.lower()
        if "/" not in key and key != "*" and not key.startswith("."):
            key = "." + key
        if key not in normalized:
            normalized.append(key)
    return normalized


def safe_filename(name: str) -> str:
    """Convert to a safe filename while preserving spaces and dashes."""
    # normalize
    name = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    # remove bad chars
    name = re.sub(r'[\\/:*?"<>|]', "", name)
    # collapse whitespace
    name = re.sub(r"\s+", " ", name).strip()
    return name


def basename_any(path: str) -> str:
    """Return filename component regardless of slash type (handles Windows paths on *nix)."""
    normalized = path.replace("\\", "/")
    if "/" not in normalized:
        return normalized
    return normalized.rsplit("/", 1)[-1]
