import pytest

from chunkferry.errors import ChunkUploadError, ErrorType
from chunkferry.models import CallbackResult, ChunkTask, FileRecord, PartInfo
from chunkferry.sources import FileRangeReader, UploadSource


def test_callback_result_coercion():
    assert CallbackResult.coerce(True).success
    assert not CallbackResult.coerce(None).success
    res = CallbackResult.coerce({"isSuccess": True, "data": {"etag": "x"}})
    assert res.success and res.get("etag") == "x"
    assert CallbackResult.coerce({"success": False, "message": "no"}).message == "no"
    assert CallbackResult(success=True, data=["a"]).get("etag", "d") == "d"
    with pytest.raises(TypeError):
        CallbackResult.coerce(42)


def test_part_info_accepts_server_spellings():
    assert PartInfo.coerce({"partNumber": "2", "etag": "e", "partSize": 9}) == PartInfo(2, "e", 9)
    assert PartInfo.coerce({"part_number": 3}).size == 0
    with pytest.raises(TypeError):
        PartInfo.coerce(("1", "e"))


def test_file_range_reader_reads_slices(tmp_path):
    p = tmp_path / "data.bin"
    p.write_bytes(b"abcdefghij")
    reader = FileRangeReader(p)
    assert reader.size == 10
    assert reader.read(3, 7) == b"defg"
    with pytest.raises(ValueError):
        reader.read(5, 2)


def test_record_reads_its_chunks():
    source = UploadSource.from_bytes("a.txt", b"hello world")
    rec = FileRecord(id="1", name=source.name, size=source.size, reader=source.reader)
    assert rec.read_chunk(ChunkTask(part_number=2, start=6, end=11)) == b"world"
    with pytest.raises(ValueError):
        FileRecord(id="2", name="x", size=1).read_chunk(ChunkTask(1, 0, 1))
    with pytest.raises(TypeError):
        UploadSource.coerce(123)


def test_errors_carry_file_identity():
    rec = FileRecord(id="f", name="a.bin", size=5)
    err = ChunkUploadError.for_file("part 2 failed", rec, part_number=2)
    assert (err.file_id, err.file_name, err.file_size, err.part_number) == ("f", "a.bin", 5, 2)
    assert err.error_type is ErrorType.CHUNK_UPLOAD_FAILED
    assert str(err) == "part 2 failed"
