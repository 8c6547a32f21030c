from __future__ import annotations

from hybrid_memory.memory.types import MemoryContextResult, MessageRole
from hybrid_memory.services.prompt_builder import PromptBuilder


def context(make_message) -> MemoryContextResult:
    messages = [
        make_message(0, "Be concise.", MessageRole.SYSTEM),
        make_message(1, "User asked about sourdough.", MessageRole.SUMMARY),
        make_message(2, "What flour should I use?"),
        make_message(3, "Bread flour works best.", MessageRole.ASSISTANT),
    ]
    return MemoryContextResult(messages=messages, estimated_tokens=20)


def test_build_messages_maps_roles(make_message):
    payload = PromptBuilder().build_messages(context(make_message))

    assert payload == [
        {"role": "system", "content": "Be concise."},
        {"role": "system", "content": "[Memory] User asked about sourdough."},
        {"role": "user", "content": "What flour should I use?"},
        {"role": "assistant", "content": "Bread flour works best."},
    ]


def test_system_prompt_replaces_context_system_message(make_message):
    payload = PromptBuilder(memory_prefix="Memory:").build_messages(
        context(make_message), system_prompt="  You are a baker.  "
    )

    assert payload[0] == {"role": "system", "content": "You are a baker."}
    assert payload[1] == {"role": "system", "content": "Memory: User asked about sourdough."}
    assert len(payload) == 4


def test_render_text(make_message):
    text = PromptBuilder().render_text(context(make_message))

    assert text.splitlines()[0] == "system: Be concise."
    assert text.splitlines()[-1] == "assistant: Bread flour works best."
