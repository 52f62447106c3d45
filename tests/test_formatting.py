from chunkferry.utils.formatting import (
    basename_any,
    file_extension,
    format_bytes,
    format_duration,
    format_speed,
    normalize_type_patterns,
    safe_filename,
)


def test_format_bytes_and_speed():
    assert format_bytes(0) == "0 B"
    assert format_bytes(512) == "512.0 B"
    assert format_bytes(5 * 1024 * 1024) == "5.0 MB"
    assert format_speed(1536) == "1.5 KB/s"


def test_format_duration():
    assert format_duration(None) == "?"
    assert format_duration(850) == "850ms"
    assert format_duration(12_400) == "12s"
    assert format_duration(184_000) == "3m 4s"
    assert format_duration(3_723_000) == "1h 2m 3s"


def test_file_extension():
    assert file_extension("C:\\clips\\Holiday.MOV") == "mov"
    assert file_extension("README") == ""


def test_normalize_type_patterns():
    assert normalize_type_patterns("Image/*, pdf,.PDF, ,*") == ["image/*", ".pdf", "*"]
    assert normalize_type_patterns(None) == []


def test_safe_filename_and_basename():
    assert safe_filename('a<b>:c"?.txt') == "abc.txt"
    assert basename_any("dir\\sub/file.bin") == "file.bin"
