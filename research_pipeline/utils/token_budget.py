"""
Token budget utilities.

Lightweight estimator: ~4 characters per token as a heuristic for English text.
"""

from __future__ import annotations

from typing import Iterable

from ..models.research import Source


def estimate_tokens(text: str) -> int:
    """Rough token estimator (~4 chars per token)."""
    if not text:
        return 0
    return (len(text) + 3) // 4


def select_sources_within_budget(sources: Iterable[Source], max_tokens: int) -> list[Source]:
    """Keep sources in order while their title+snippet+content fit ``max_tokens``."""
    selected: list[Source] = []
    used = 0
    for source in sources:
        cost = estimate_tokens(source.text) + estimate_tokens(source.content or "")
        if used + cost > max_tokens and selected:
            break
        selected.append(source)
        used += cost
    return selected
