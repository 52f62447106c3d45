import pytest

from chunkferry.errors import ErrorType, ValidationError
from chunkferry.file_queue import FileQueue
from chunkferry.models import FileStatus
from chunkferry.sources import UploadSource


def src(name, size=10, mime=None):
    return UploadSource.from_bytes(name, b"x" * size, mime_type=mime)


def test_files_are_queued_fifo_with_unique_ids():
    q = FileQueue()
    added = q.add_files([src("a.txt"), src("b.txt"), src("c.txt")])
    assert len({r.id for r in added}) == 3
    assert [q.get_next().name for _ in range(3)] == ["a.txt", "b.txt", "c.txt"]
    assert q.get_next() is None


def test_paths_are_accepted(tmp_path):
    p = tmp_path / "notes.pdf"
    p.write_bytes(b"%PDF-1.4")
    q = FileQueue(allowed_types=".pdf")
    (rec,) = q.add_files([str(p)])
    assert rec.name == "notes.pdf"
    assert rec.size == 8
    assert rec.mime_type == "application/pdf"


def test_too_large_file_raises_with_identity():
    q = FileQueue(max_file_size=5)
    with pytest.raises(ValidationError) as info:
        q.add_files([src("big.bin", size=6)])
    assert info.value.error_type is ErrorType.FILE_TOO_LARGE
    assert info.value.file_name == "big.bin"
    assert info.value.file_size == 6
    assert q.queue_length() == 0


def test_rejections_go_to_the_handler():
    rejected = []
    q = FileQueue(allowed_types=["image/*", "pdf"])
    added = q.add_files(
        [src("cat.png", mime="image/png"), src("run.exe", mime="application/x-msdownload"), src("doc.pdf", mime="")],
        on_reject=lambda source, err: rejected.append((source.name, err.error_type)),
    )
    assert [r.name for r in added] == ["cat.png", "doc.pdf"]
    assert rejected == [("run.exe", ErrorType.FILE_TYPE_NOT_ALLOWED)]


@pytest.mark.parametrize(
    "patterns, name, mime, allowed",
    [
        (None, "x.bin", "", True),
        ("*", "x.bin", "application/octet-stream", True),
        (["*/*"], "x.bin", "", True),
        (["image/png"], "a.png", "image/png", True),
        (["image/png"], "a.jpg", "image/jpeg", False),
        (["image/*"], "a.jpg", "image/jpeg", True),
        (["image/*"], "a.mp4", "video/mp4", False),
        ([".mp4"], "clip.MP4", "", True),
        (["mp4"], "clip.mp4", "video/mp4", True),
        ([".mp4"], "clip", "", False),
    ],
)
def test_type_matching(patterns, name, mime, allowed):
    assert FileQueue(allowed_types=patterns).is_allowed_type(name, mime) is allowed


def test_stats_count_active_states_and_retired_tallies():
    q = FileQueue()
    recs = q.add_files([src(f"{i}.txt") for i in range(5)])
    for _ in range(3):
        q.activate(q.get_next())
    q.update_status(recs[0].id, FileStatus.INITIALIZING)
    q.update_status(recs[1].id, FileStatus.UPLOADING)
    q.update_status(recs[2].id, FileStatus.PAUSED)
    stats = q.get_stats()
    assert (stats.queued, stats.active, stats.paused) == (2, 2, 1)
    q.retire(recs[0].id, FileStatus.COMPLETE)
    q.retire(recs[1].id, FileStatus.ERROR)
    stats = q.get_stats()
    assert (stats.completed, stats.failed, stats.active) == (1, 1, 0)
    assert stats.total == 5


def test_progress_is_rounded_percent():
    q = FileQueue()
    (rec,) = q.add_files([src("a.txt", size=3)])
    q.activate(q.get_next())
    q.update_progress(rec.id, 1)
    assert rec.progress == 33
    assert rec.uploaded_size == 1


def test_remove_queued():
    q = FileQueue()
    a, b = q.add_files([src("a"), src("b")])
    assert q.remove_queued(a.id) is a
    assert q.remove_queued(a.id) is None
    assert [r.id for r in q.queued_files()] == [b.id]
