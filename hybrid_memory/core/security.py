from __future__ import annotations

import re

API_KEY_PATTERN = re.compile(r"(sk-[A-Za-z0-9_-]{6,})")
BEARER_PATTERN = re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]{6,}")


def mask_credentials(text: str) -> str:
    """Mask embedding-provider API keys and bearer tokens."""

    masked = API_KEY_PATTERN.sub("sk-***", text)
    return BEARER_PATTERN.sub(r"\1***", masked)


def preview_content(content: str, limit: int) -> str:
    # Single-line preview of message content for log lines and error params.
    preview = " ".join(content.split())
    if len(preview) > limit:
        preview = preview[:limit] + "..."
    return preview
