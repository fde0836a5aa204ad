"""Lazy, 1-indexed line iteration over source files."""

from __future__ import annotations

import codecs
import gzip
import re
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterable, Iterator

SOURCE_ENCODING = "utf-8-sig"
# Undecodable bytes become U+FFFD so a bad byte fails one row, not the run.
DECODE_ERRORS = "replace"
_LINE_BREAK_RE = re.compile(r"\r\n|\r|\n")


@dataclass(frozen=True)
class LineRecord:
    line_number: int
    line: str


def _split_line_endings(raw: str) -> list[str]:
    parts = _LINE_BREAK_RE.split(raw)
    if len(parts) > 1 and parts[-1] == "":
        parts.pop()
    return parts


def read_lines(stream: Iterable[str | bytes]) -> Iterator[LineRecord]:
    """Yield ``LineRecord`` items from a text or byte stream.

    The sequence is single-pass. Errors raised by the stream propagate to the
    consumer; a final line terminator does not produce an empty trailing line.
    """
    decoder = codecs.getincrementaldecoder(SOURCE_ENCODING)(errors=DECODE_ERRORS)
    line_number = 0
    for raw in stream:
        if isinstance(raw, bytes):
            raw = decoder.decode(raw)
            if not raw:
                continue
        for line in _split_line_endings(raw):
            line_number += 1
            yield LineRecord(line_number=line_number, line=line)

    tail = decoder.decode(b"", final=True)
    if tail:
        for line in _split_line_endings(tail):
            line_number += 1
            yield LineRecord(line_number=line_number, line=line)


def open_text_source(path: Path) -> IO[str]:
    if path.suffix.lower() == ".gz":
        return gzip.open(path, "rt", encoding=SOURCE_ENCODING, errors=DECODE_ERRORS, newline=None)
    return path.open("r", encoding=SOURCE_ENCODING, errors=DECODE_ERRORS, newline=None)


def iter_file_lines(path: Path) -> Iterator[LineRecord]:
    with open_text_source(path) as stream:
        yield from read_lines(stream)
