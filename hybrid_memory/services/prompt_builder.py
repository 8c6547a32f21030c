from __future__ import annotations

from typing import List, Optional

from hybrid_memory.memory.types import MemoryContextResult, Message, MessageRole


class PromptBuilder:
    """Turn an assembled memory context into provider chat payloads."""

    def __init__(self, memory_prefix: str = "[Memory]") -> None:
        self._memory_prefix = memory_prefix

    def build_messages(
        self,
        result: MemoryContextResult,
        system_prompt: Optional[str] = None,
    ) -> List[dict]:
        """Create the message list for an LLM provider.

        Summary and semantic messages are sent as system entries since chat
        APIs have no summary role. ``system_prompt`` replaces the context's own
        system message when given.
        """

        payload: List[dict] = []
        if system_prompt and system_prompt.strip():
            payload.append({"role": "system", "content": system_prompt.strip()})
        for message in result.messages:
            if message.role is MessageRole.SYSTEM:
                if system_prompt and system_prompt.strip():
                    continue
                payload.append({"role": "system", "content": message.content})
            elif message.role is MessageRole.SUMMARY:
                payload.append(
                    {"role": "system", "content": f"{self._memory_prefix} {message.content}"}
                )
            else:
                payload.append({"role": message.role.value, "content": message.content})
        return payload

    def render_text(self, result: MemoryContextResult) -> str:
        """Render the context as a plain ``role: content`` transcript."""

        return "\n".join(self._render_line(message) for message in result.messages)

    @staticmethod
    def _render_line(message: Message) -> str:
        return f"{message.role.value}: {message.content}"
