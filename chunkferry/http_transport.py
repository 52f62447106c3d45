from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from chunkferry.callbacks import UploadCallbacks
from chunkferry.models import CallbackResult, ChunkTask, FileRecord

logger = logging.getLogger(__name__)

DEFAULT_PATHS: Dict[str, str] = {
    "begin": "/uploads",
    "list_parts": "/uploads/{file_id}/parts",
    "upload_part": "/uploads/{file_id}/parts",
    "finalize": "/uploads/{file_id}/complete",
    "notify_pause": "/uploads/{file_id}/pause",
}

_TRANSIENT = (requests.exceptions.ConnectionError, requests.exceptions.Timeout)


class HttpTransport:
    """Plain HTTP implementation of the upload callbacks.

    Paths are templates formatted with ``file_id`` and ``upload_id``. Control
    calls are retried on connection errors and timeouts; part uploads are not,
    the orchestrator already retries those per chunk.
    """

    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = 30.0,
        paths: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        if api_key:
            self.session.headers["Authorization"] = f"Bearer {api_key}"
        self.timeout = timeout
        self.paths = {**DEFAULT_PATHS, **(paths or {})}

    def _url(self, name: str, record: FileRecord) -> str:
        return self.base_url + self.paths[name].format(file_id=record.id, upload_id=record.upload_id or "")

    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        return self.session.request(method, url, timeout=self.timeout, **kwargs)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_fixed(1),
        retry=retry_if_exception_type(_TRANSIENT),
        reraise=True,
    )
    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        return self._send(method, url, **kwargs)

    def _result(self, response: requests.Response) -> CallbackResult:
        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError:
            logger.warning("%s -> HTTP %s", response.url, response.status_code)
            return CallbackResult(success=False, message=f"HTTP {response.status_code}: {response.reason}")
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, Mapping) and ("success" in payload or "isSuccess" in payload):
            return CallbackResult.coerce(payload)
        return CallbackResult(success=True, data=payload)

    def begin(self, record: FileRecord) -> CallbackResult:
        body = {
            "file_id": record.id,
            "file_name": record.name,
            "file_size": record.size,
            "mime_type": record.mime_type,
            "total_chunks": record.total_chunks,
        }
        return self._result(self._request("POST", self._url("begin", record), json=body))

    def list_parts(self, record: FileRecord) -> CallbackResult:
        return self._result(self._request("GET", self._url("list_parts", record)))

    def upload_part(self, record: FileRecord, chunk: ChunkTask) -> CallbackResult:
        if chunk.data is None:
            raise ValueError(f"part {chunk.part_number} of {record.name} has no data")
        form = {"fileId": record.id, "partNumber": str(chunk.part_number)}
        if record.upload_id:
            form["uploadId"] = record.upload_id
        files = {"file": (f"{record.name}.part{chunk.part_number}", chunk.data, "application/octet-stream")}
        response = self._send("POST", self._url("upload_part", record), data=form, files=files)
        result = self._result(response)
        etag = response.headers.get("ETag")
        if result.success and etag and not result.get("etag"):
            data = dict(result.data) if isinstance(result.data, Mapping) else {}
            data["etag"] = etag.strip('"')
            result = CallbackResult(success=True, data=data, message=result.message)
        return result

    def finalize(self, record: FileRecord) -> CallbackResult:
        body = {
            "file_id": record.id,
            "upload_id": record.upload_id,
            "parts": [part.to_dict() for part in record.parts],
        }
        return self._result(self._request("POST", self._url("finalize", record), json=body))

    def notify_pause(self, record: FileRecord) -> CallbackResult:
        return self._result(self._request("POST", self._url("notify_pause", record), json={"file_id": record.id}))

    def callbacks(self) -> UploadCallbacks:
        return UploadCallbacks(
            begin=self.begin,
            list_parts=self.list_parts,
            upload_part=self.upload_part,
            finalize=self.finalize,
            notify_pause=self.notify_pause,
        )

    def close(self) -> None:
        self.session.close()
