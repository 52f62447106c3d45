from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

# Each callback receives the FileRecord (and ChunkTask for upload_part) and
# returns something CallbackResult.coerce understands. Plain functions run off
# the event loop; coroutine functions are awaited on it.
Callback = Callable[..., Any]


@dataclass
class UploadCallbacks:
    begin: Optional[Callback] = None
    list_parts: Optional[Callback] = None
    upload_part: Optional[Callback] = None
    finalize: Optional[Callback] = None
    notify_pause: Optional[Callback] = None
