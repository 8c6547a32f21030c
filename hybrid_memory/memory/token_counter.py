from __future__ import annotations

import math
from typing import Protocol


class TokenCounter(Protocol):
    """Approximate token estimator used for budget decisions."""

    def estimate(self, text: str) -> int:
        """Return a non-negative token estimate for ``text``."""


class HeuristicTokenCounter:
    """Character-ratio estimator (about four characters per token for English)."""

    def __init__(self, chars_per_token: int = 4) -> None:
        if chars_per_token <= 0:
            chars_per_token = 4
        self._chars_per_token = chars_per_token

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        collapsed = " ".join(text.split())
        if not collapsed:
            return 0
        return math.ceil(len(collapsed) / self._chars_per_token)
