import gzip
import io
from pathlib import Path

import pytest

from zipmarket_etl.ingest.line_reader import LineRecord, iter_file_lines, read_lines


def test_read_lines_numbers_from_one_and_handles_mixed_endings():
    stream = ["a\r\nb\n", "c\rd"]
    assert list(read_lines(stream)) == [
        LineRecord(1, "a"),
        LineRecord(2, "b"),
        LineRecord(3, "c"),
        LineRecord(4, "d"),
    ]


def test_read_lines_keeps_interior_blank_lines():
    assert [record.line for record in read_lines(io.StringIO("a\n\nb\n"))] == ["a", "", "b"]


def test_read_lines_decodes_bytes():
    assert list(read_lines([b"caf\xc3\xa9\n"])) == [LineRecord(1, "café")]


def test_read_lines_propagates_stream_errors():
    def broken():
        yield "first\n"
        raise OSError("disk went away")

    lines = read_lines(broken())
    assert next(lines) == LineRecord(1, "first")
    with pytest.raises(OSError):
        next(lines)


def test_iter_file_lines_reads_gzip_and_strips_bom(tmp_path: Path):
    path = tmp_path / "feed.tsv000.gz"
    with gzip.open(path, "wb") as f:
        f.write("\ufeffHEADER\r\nrow\r\n".encode("utf-8"))

    assert [record.line for record in iter_file_lines(path)] == ["HEADER", "row"]


def test_iter_file_lines_reads_plain_text(tmp_path: Path):
    path = tmp_path / "US.txt"
    path.write_text("one\ntwo", encoding="utf-8")
    assert [record.line_number for record in iter_file_lines(path)] == [1, 2]


def test_read_lines_strips_bom_from_byte_streams():
    lines = list(read_lines([b"\xef\xbb\xbfREGION_TYPE\tSTATE_CODE\n", b"zip code\tNJ\n"]))
    assert lines == [LineRecord(1, "REGION_TYPE\tSTATE_CODE"), LineRecord(2, "zip code\tNJ")]


def test_read_lines_replaces_undecodable_bytes():
    lines = list(read_lines([b"good\n", b"Caf\xe9\n", b"also good\n"]))
    assert [record.line for record in lines] == ["good", "Caf\ufffd", "also good"]


def test_iter_file_lines_survives_invalid_bytes(tmp_path: Path):
    path = tmp_path / "feed.tsv000.gz"
    with gzip.open(path, "wb") as f:
        f.write(b"first\nCaf\xe9 row\nlast\n")

    assert [record.line for record in iter_file_lines(path)] == ["first", "Caf\ufffd row", "last"]
