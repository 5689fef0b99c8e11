from __future__ import annotations

import re
from typing import Iterator, NamedTuple

# Fixed sizes keep regenerated artifacts identical across runs.
CHUNK_SIZE_CHARS = 1200
CHUNK_OVERLAP_CHARS = 150

_BLANK_LINE_RE = re.compile(r"\n[ \t]*\n")


class TextChunk(NamedTuple):
    text: str
    start: int
    end: int


def _trimmed_span(text: str, start: int, end: int) -> tuple[int, int] | None:
    segment = text[start:end]
    stripped = segment.strip()
    if not stripped:
        return None
    lead = len(segment) - len(segment.lstrip())
    return start + lead, start + lead + len(stripped)


def _paragraph_spans(text: str) -> Iterator[tuple[int, int]]:
    cursor = 0
    for separator in _BLANK_LINE_RE.finditer(text):
        span = _trimmed_span(text, cursor, separator.start())
        if span is not None:
            yield span
        cursor = separator.end()
    span = _trimmed_span(text, cursor, len(text))
    if span is not None:
        yield span


def chunk_text(
    text: str,
    *,
    chunk_size: int = CHUNK_SIZE_CHARS,
    chunk_overlap: int = CHUNK_OVERLAP_CHARS,
) -> Iterator[TextChunk]:
    # One chunk per paragraph; longer paragraphs are cut into overlapping windows.
    if chunk_overlap >= chunk_size:
        raise ValueError("chunk_overlap must be smaller than chunk_size")
    step = chunk_size - chunk_overlap
    for start, end in _paragraph_spans(text):
        if end - start <= chunk_size:
            yield TextChunk(text[start:end], start, end)
            continue
        for offset in range(start, end, step):
            stop = min(end, offset + chunk_size)
            yield TextChunk(text[offset:stop], offset, stop)
            if stop == end:
                break
