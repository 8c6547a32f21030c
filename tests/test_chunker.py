from __future__ import annotations

import logging

import pytest

from hybrid_memory.core.errors import ConfigurationError
from hybrid_memory.memory.token_counter import HeuristicTokenCounter
from hybrid_memory.memory.types import MessageRole
from hybrid_memory.processing.chunker import ChunkingConfig, ChunkingStrategy, MessageChunker

LONG_TEXT = " ".join(f"word{i}" for i in range(200))


def test_short_message_is_single_chunk(make_message):
    chunker = MessageChunker()
    message = make_message(1, "Just a short note.")

    chunks = chunker.chunk(message, ChunkingConfig())

    assert len(chunks) == 1
    chunk = chunks[0]
    assert chunk.id == "m1_chunk_0"
    assert chunk.total_chunks == 1
    assert (chunk.start_position, chunk.end_position) == (0, len(message.content))
    assert chunker.needs_chunking(message.content, ChunkingConfig()) is False


def test_fixed_token_chunks_respect_limit_and_keep_words(make_message):
    chunker = MessageChunker()
    counter = HeuristicTokenCounter()
    message = make_message(1, LONG_TEXT)
    config = ChunkingConfig(max_chunk_tokens=20)

    chunks = chunker.chunk(message, config)

    assert len(chunks) > 1
    assert [chunk.chunk_index for chunk in chunks] == list(range(len(chunks)))
    assert {chunk.total_chunks for chunk in chunks} == {len(chunks)}
    for chunk in chunks:
        assert counter.estimate(chunk.content) <= 20
        assert chunk.content == LONG_TEXT[chunk.start_position : chunk.end_position]
        assert chunk.end_position == len(LONG_TEXT) or LONG_TEXT[chunk.end_position] == " "
    assert " ".join(chunk.content for chunk in chunks).split() == LONG_TEXT.split()


def test_sentence_boundary_merges_small_sentences(make_message):
    chunker = MessageChunker()
    message = make_message(1, "First sentence here. Second one! Third?")
    config = ChunkingConfig(max_chunk_tokens=6, strategy=ChunkingStrategy.SENTENCE_BOUNDARY)

    chunks = chunker.chunk(message, config)

    assert [chunk.content for chunk in chunks] == ["First sentence here.", "Second one! Third?"]
    assert chunks[0].metadata["strategy"] == "sentence_boundary"


def test_paragraph_boundary_splits_on_blank_lines(make_message):
    chunker = MessageChunker()
    message = make_message(1, "Para one text.\n\nPara two text.")
    config = ChunkingConfig(max_chunk_tokens=4, strategy=ChunkingStrategy.PARAGRAPH_BOUNDARY)

    chunks = chunker.chunk(message, config)

    assert [chunk.content for chunk in chunks] == ["Para one text.", "Para two text."]
    assert chunks[1].start_position == 16


def test_word_boundary_never_splits_words(make_message):
    chunker = MessageChunker()
    message = make_message(1, LONG_TEXT)
    config = ChunkingConfig(max_chunk_tokens=15, strategy=ChunkingStrategy.WORD_BOUNDARY)

    chunks = chunker.chunk(message, config)

    words = set(LONG_TEXT.split())
    assert len(chunks) > 1
    for chunk in chunks:
        assert set(chunk.content.split()) <= words


def test_fixed_char_without_word_preservation(make_message):
    chunker = MessageChunker()
    message = make_message(1, "abcdefghij" * 10)
    config = ChunkingConfig(
        max_chunk_chars=30, strategy=ChunkingStrategy.FIXED_CHAR, preserve_words=False
    )

    chunks = chunker.chunk(message, config)

    assert [(c.start_position, c.end_position) for c in chunks] == [
        (0, 30),
        (30, 60),
        (60, 90),
        (90, 100),
    ]


def test_sliding_window_overlaps(make_message):
    chunker = MessageChunker()
    message = make_message(1, "x" * 120)
    config = ChunkingConfig(
        max_chunk_chars=50,
        overlap_ratio=0.2,
        strategy=ChunkingStrategy.SLIDING_WINDOW,
        preserve_words=False,
    )

    chunks = chunker.chunk(message, config)

    assert [c.start_position for c in chunks] == [0, 40, 80]
    assert [c.end_position for c in chunks] == [50, 90, 120]
    assert all(c.metadata["overlap_ratio"] == 0.2 for c in chunks)


def test_delimiter_strategy_keeps_delimiters(make_message):
    chunker = MessageChunker()
    message = make_message(1, "alpha|beta|gamma")
    config = ChunkingConfig(
        max_chunk_tokens=2, strategy=ChunkingStrategy.DELIMITER, custom_delimiters=("|",)
    )

    chunks = chunker.chunk(message, config)

    assert [c.content for c in chunks] == ["alpha|", "beta|", "gamma"]
    assert chunks[0].metadata["delimiters"] == ["|"]


def test_delimiter_strategy_requires_delimiters():
    with pytest.raises(ConfigurationError):
        ChunkingConfig(strategy=ChunkingStrategy.DELIMITER)


@pytest.mark.parametrize("overlap", [-0.1, 1.0])
def test_overlap_ratio_is_validated(overlap):
    with pytest.raises(ConfigurationError):
        ChunkingConfig(overlap_ratio=overlap)


def test_empty_content_is_rejected(make_message):
    with pytest.raises(ConfigurationError):
        MessageChunker().chunk(make_message(1, ""), ChunkingConfig())


def test_chunk_count_is_capped(make_message, caplog):
    chunker = MessageChunker()
    message = make_message(1, LONG_TEXT)
    config = ChunkingConfig(max_chunk_tokens=20, max_chunks_per_message=3)

    with caplog.at_level(logging.WARNING):
        chunks = chunker.chunk(message, config)

    assert len(chunks) == 3
    assert {c.total_chunks for c in chunks} == {3}
    assert "truncating" in caplog.text


def test_chunk_to_message_carries_lineage(make_message):
    message = make_message(3, LONG_TEXT, role=MessageRole.ASSISTANT)
    chunk = MessageChunker().chunk(message, ChunkingConfig(max_chunk_tokens=20))[1]

    converted = chunk.to_message(message.role, message.timestamp)

    assert converted.id == "m3_chunk_1"
    assert converted.role is MessageRole.ASSISTANT
    assert converted.metadata["is_chunk"] is True
    assert converted.metadata["parent_message_id"] == "m3"
    assert converted.metadata["chunk_index"] == 1


def test_statistics_track_batches(make_message):
    chunker = MessageChunker()
    messages = [make_message(1, "short"), make_message(2, LONG_TEXT)]

    result = chunker.chunk_batch(messages, ChunkingConfig(max_chunk_tokens=20))

    stats = chunker.get_statistics()
    assert set(result) == {"m1", "m2"}
    assert stats.total_messages == 2
    assert stats.total_chunks == len(result["m1"]) + len(result["m2"])
    assert sum(stats.size_distribution.values()) == stats.total_chunks
    assert stats.average_chunks_per_message == stats.total_chunks / 2

    chunker.reset_statistics()
    assert chunker.get_statistics().total_chunks == 0


def test_character_limit_forces_chunking_for_token_strategy(make_message):
    chunker = MessageChunker()
    content = ("ab" + " " * 10) * 200
    message = make_message(1, content)
    config = ChunkingConfig()

    chunks = chunker.chunk(message, config)

    assert HeuristicTokenCounter().estimate(content) <= config.max_chunk_tokens
    assert chunker.needs_chunking(content, config) is True
    assert len(chunks) > 1
    for chunk in chunks:
        assert chunk.end_position - chunk.start_position <= config.max_chunk_chars
        assert chunk.content == content[chunk.start_position : chunk.end_position]


def test_chunks_carry_token_estimates(make_message):
    counter = HeuristicTokenCounter()
    message = make_message(1, LONG_TEXT)

    chunks = MessageChunker().chunk(message, ChunkingConfig(max_chunk_tokens=20))

    for chunk in chunks:
        assert chunk.estimated_tokens == counter.estimate(chunk.content)
        assert 0 < chunk.estimated_tokens <= 20
    converted = chunks[0].to_message(message.role, message.timestamp)
    assert converted.metadata["estimated_tokens"] == chunks[0].estimated_tokens
