"""
Per-run tally of tokens consumed and produced by text-generation calls.
"""

import threading
from collections import defaultdict
from typing import Dict, Optional

from ..models.research import TokenUsage
from ..utils.token_budget import estimate_tokens


class TokenAccountant:
    """Accumulates prompt/completion token counts, overall and per stage."""

    def __init__(self):
        self._lock = threading.Lock()
        self._prompt = 0
        self._completion = 0
        self._by_stage: Dict[str, int] = defaultdict(int)

    def record(self, stage: str, prompt_tokens: int, completion_tokens: int) -> None:
        prompt_tokens = max(0, int(prompt_tokens))
        completion_tokens = max(0, int(completion_tokens))
        with self._lock:
            self._prompt += prompt_tokens
            self._completion += completion_tokens
            self._by_stage[stage] += prompt_tokens + completion_tokens

    def record_text(self, stage: str, prompt: str, completion: str, usage: Optional[Dict[str, int]] = None) -> None:
        """Record a call; provider-reported ``usage`` wins over the estimate."""
        if usage and (usage.get("prompt_tokens") or usage.get("completion_tokens")):
            self.record(stage, usage.get("prompt_tokens", 0), usage.get("completion_tokens", 0))
        else:
            self.record(stage, estimate_tokens(prompt), estimate_tokens(completion))

    @property
    def total(self) -> int:
        return self._prompt + self._completion

    def usage(self) -> TokenUsage:
        with self._lock:
            return TokenUsage(
                prompt_tokens=self._prompt,
                completion_tokens=self._completion,
                total_tokens=self._prompt + self._completion,
                by_stage=dict(self._by_stage),
            )
