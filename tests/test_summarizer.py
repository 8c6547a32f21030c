from __future__ import annotations

import pytest

from hybrid_memory.core.errors import ConfigurationError
from hybrid_memory.memory.token_counter import HeuristicTokenCounter
from hybrid_memory.memory.types import MessageRole
from hybrid_memory.services.summarizer import (
    DeterministicSummarizer,
    SummarizationConfig,
    SummarizationMode,
    select_for_summary,
)


@pytest.mark.anyio
async def test_deterministic_summary_truncates(make_message):
    summarizer = DeterministicSummarizer(max_chars=200)
    messages = [make_message(1, "a" * 150), make_message(2, "b" * 150)]

    info = await summarizer.summarize(messages, HeuristicTokenCounter())

    assert info.summary.endswith("…")
    assert len(info.summary) == 201
    assert info.chunk_id.startswith("summary_")
    assert info.summarized_message_ids == ("m1", "m2")
    assert info.token_estimate_before == 76
    assert info.token_estimate_after < info.token_estimate_before


@pytest.mark.anyio
async def test_deterministic_summary_of_nothing_is_empty():
    info = await DeterministicSummarizer().summarize([], HeuristicTokenCounter())

    assert info.summary == ""
    assert info.token_estimate_before == 0
    assert info.token_estimate_after == 0


def conversation(make_message, count: int):
    return [make_message(i, f"message {i}") for i in range(count)]


def test_oldest_first_retains_recent_share(make_message):
    excluded = conversation(make_message, 10)
    config = SummarizationConfig(
        mode=SummarizationMode.OLDEST_FIRST, recent_message_retention_ratio=0.7
    )

    selection = select_for_summary(excluded, excluded, config)

    assert [m.id for m in selection.to_summarize] == ["m0", "m1", "m2"]
    assert selection.folded_summaries == []


def test_chunked_takes_oldest_block(make_message):
    excluded = conversation(make_message, 10)
    config = SummarizationConfig(mode=SummarizationMode.CHUNKED, chunk_size=4)

    selection = select_for_summary(excluded, excluded, config)

    assert [m.id for m in selection.to_summarize] == ["m0", "m1", "m2", "m3"]


def test_layered_folds_prior_summaries(make_message):
    prior = make_message(0, "Earlier summary", role=MessageRole.SUMMARY, message_id="s0")
    system = make_message(1, "System rules", role=MessageRole.SYSTEM, message_id="sys")
    excluded = [system, *conversation(make_message, 3)]
    all_messages = [prior, *excluded]

    selection = select_for_summary(excluded, all_messages, SummarizationConfig(chunk_size=2))

    assert [m.id for m in selection.to_summarize] == ["s0", "m0", "m1"]
    assert [m.id for m in selection.folded_summaries] == ["s0"]


def test_selection_ignores_system_and_summary_roles(make_message):
    excluded = [
        make_message(1, "rules", role=MessageRole.SYSTEM),
        make_message(2, "old summary", role=MessageRole.SUMMARY),
    ]

    assert select_for_summary(excluded, excluded, SummarizationConfig()).is_empty


@pytest.mark.parametrize("kwargs", [{"chunk_size": 0}, {"recent_message_retention_ratio": 1.5}])
def test_summarization_config_is_validated(kwargs):
    with pytest.raises(ConfigurationError):
        SummarizationConfig(**kwargs)
