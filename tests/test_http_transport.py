import time

import pytest
import requests

from chunkferry.http_transport import HttpTransport
from chunkferry.models import ChunkTask, FileRecord, PartInfo


class DummyResponse:
    def __init__(self, status=200, payload=None, headers=None, url="http://up/x"):
        self.status_code = status
        self._payload = payload
        self.headers = headers or {}
        self.url = url
        self.reason = "Bad" if status >= 400 else "OK"

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code}", response=self)

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class DummySession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []
        self.headers = {}
        self.closed = False

    def request(self, method, url, **kw):
        self.calls.append((method, url, kw))
        resp = self.responses.pop(0)
        if isinstance(resp, Exception):
            raise resp
        return resp

    def close(self):
        self.closed = True


def rec():
    return FileRecord(id="f1", name="movie.mkv", size=20, upload_id="u-9", total_chunks=2)


def test_begin_posts_file_info_and_sets_auth():
    session = DummySession([DummyResponse(payload={"upload_id": "u-1"})])
    t = HttpTransport("http://up/api/", session=session, api_key="k", timeout=5)
    result = t.begin(rec())
    assert result.success and result.get("upload_id") == "u-1"
    method, url, kw = session.calls[0]
    assert (method, url) == ("POST", "http://up/api/uploads")
    assert kw["json"]["file_name"] == "movie.mkv"
    assert kw["timeout"] == 5
    assert session.headers["Authorization"] == "Bearer k"


def test_envelope_payloads_are_coerced():
    session = DummySession([DummyResponse(payload={"isSuccess": False, "message": "quota"})])
    result = HttpTransport("http://up", session=session).begin(rec())
    assert not result.success
    assert result.message == "quota"


def test_http_errors_become_failed_results():
    session = DummySession([DummyResponse(status=404)])
    result = HttpTransport("http://up", session=session).list_parts(rec())
    assert not result.success
    assert "404" in result.message


def test_control_calls_retry_connection_errors(monkeypatch):
    monkeypatch.setattr(time, "sleep", lambda s: None)
    session = DummySession([requests.exceptions.ConnectionError("reset"), DummyResponse(payload=[])])
    result = HttpTransport("http://up", session=session).list_parts(rec())
    assert result.success
    assert len(session.calls) == 2
    assert session.calls[1][1] == "http://up/uploads/f1/parts"


def test_control_calls_give_up_after_three_attempts(monkeypatch):
    monkeypatch.setattr(time, "sleep", lambda s: None)
    session = DummySession([requests.exceptions.Timeout("slow")] * 3)
    with pytest.raises(requests.exceptions.Timeout):
        HttpTransport("http://up", session=session).finalize(rec())
    assert len(session.calls) == 3


def test_upload_part_sends_multipart_form_and_picks_up_etag_header():
    session = DummySession([DummyResponse(payload={"ok": True}, headers={"ETag": '"abc"'})])
    chunk = ChunkTask(part_number=2, start=10, end=20, data=b"0123456789")
    result = HttpTransport("http://up", session=session).upload_part(rec(), chunk)
    assert result.success
    assert result.get("etag") == "abc"
    _, url, kw = session.calls[0]
    assert url == "http://up/uploads/f1/parts"
    assert kw["data"] == {"fileId": "f1", "partNumber": "2", "uploadId": "u-9"}
    assert kw["files"]["file"][1] == b"0123456789"


def test_upload_part_is_not_retried():
    session = DummySession([requests.exceptions.ConnectionError("reset")])
    chunk = ChunkTask(part_number=1, start=0, end=3, data=b"abc")
    with pytest.raises(requests.exceptions.ConnectionError):
        HttpTransport("http://up", session=session).upload_part(rec(), chunk)
    assert len(session.calls) == 1


def test_finalize_sends_sorted_parts_and_callbacks_bundle():
    session = DummySession([DummyResponse(payload={"url": "http://cdn/movie.mkv"})])
    t = HttpTransport("http://up", session=session)
    record = rec()
    record.parts = [PartInfo(1, "a", 10), PartInfo(2, "b", 10)]
    result = t.finalize(record)
    assert result.get("url") == "http://cdn/movie.mkv"
    assert session.calls[0][2]["json"]["parts"][1] == {"part_number": 2, "etag": "b", "size": 10}
    cbs = t.callbacks()
    assert cbs.upload_part == t.upload_part
    t.close()
    assert session.closed
