from __future__ import annotations

import math

import pytest

from docledger.core.config import EMBED_DIM
from docledger.ingestion.chunking import chunk_text
from docledger.ingestion.embeddings import embed_text


def test_chunk_text_splits_paragraphs_with_offsets() -> None:
    text = "First paragraph.\n\nSecond one here.\n\n\n"

    chunks = list(chunk_text(text))

    assert [chunk for chunk, _, _ in chunks] == ["First paragraph.", "Second one here."]
    for chunk, start, end in chunks:
        assert text[start:end] == chunk


def test_chunk_text_windows_oversized_paragraphs() -> None:
    text = "x" * 25

    chunks = list(chunk_text(text, chunk_size=10, chunk_overlap=2))

    assert [(start, end) for _, start, end in chunks] == [(0, 10), (8, 18), (16, 25)]


def test_chunk_text_rejects_overlap_not_smaller_than_size() -> None:
    with pytest.raises(ValueError):
        list(chunk_text("abc", chunk_size=5, chunk_overlap=5))


def test_embeddings_are_deterministic_and_normalized() -> None:
    first = embed_text("Quarterly revenue report")
    second = embed_text("quarterly REVENUE report")

    assert first == second
    assert len(first) == EMBED_DIM
    assert math.isclose(math.sqrt(sum(v * v for v in first)), 1.0, rel_tol=1e-6)


def test_embedding_of_text_without_tokens_is_zero() -> None:
    assert embed_text("--- !!!") == [0.0] * EMBED_DIM
