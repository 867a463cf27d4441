"""
Core configuration and settings for the research pipeline.

This module centralizes tunable knobs for stage budgets, caching, concurrency
and retrieval so magic numbers do not scatter through the codebase. Values can
be overridden via env vars (``.env`` is loaded on import) to balance cost and
latency per environment. Per-run options live on :class:`Settings`.
"""

import os
from dataclasses import dataclass
from typing import Dict, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .errors import FatalConfigError

load_dotenv()


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)) or default)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)) or default)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def _env_opt_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


# ────────────────────────────────────────────────────────────
#  Models & generation
# ────────────────────────────────────────────────────────────

OPENAI_BASE_URL: Optional[str] = os.getenv("OPENAI_BASE_URL") or None

ROUTER_MODEL: str = os.getenv("ROUTER_MODEL", "gpt-4o-mini")
RESEARCHER_MODEL: str = os.getenv("RESEARCHER_MODEL", "gpt-4o-mini")
ANALYST_MODEL: str = os.getenv("ANALYST_MODEL", "gpt-4o-mini")
WRITER_MODEL: str = os.getenv("WRITER_MODEL", "gpt-4o")
VERIFIER_MODEL: str = os.getenv("VERIFIER_MODEL", "gpt-4o-mini")
CRITIC_MODEL: str = os.getenv("CRITIC_MODEL", "gpt-4o-mini")

ROUTER_TEMPERATURE: float = _env_float("ROUTER_TEMPERATURE", 0.0)
RESEARCHER_TEMPERATURE: float = _env_float("RESEARCHER_TEMPERATURE", 0.2)
WRITER_TEMPERATURE: float = _env_float("WRITER_TEMPERATURE", 0.4)
CRITIC_TEMPERATURE: float = _env_float("CRITIC_TEMPERATURE", 0.0)

LLM_REQUEST_TIMEOUT_SEC: float = _env_float("LLM_REQUEST_TIMEOUT_SEC", 60.0)
LLM_MAX_RETRIES: int = _env_int("LLM_MAX_RETRIES", 2)
WRITER_MAX_TOKENS: int = _env_int("WRITER_MAX_TOKENS", 2000)


# ────────────────────────────────────────────────────────────
#  Search & retrieval
# ────────────────────────────────────────────────────────────

SEARCH_DEPTH: str = os.getenv("SEARCH_DEPTH", "basic")
SEARCH_MAX_RESULTS: int = _env_int("SEARCH_MAX_RESULTS", 8)
SEARCH_API_TIMEOUT_SEC: float = _env_float("SEARCH_API_TIMEOUT_SEC", 20.0)
SEARCH_FETCH_TIMEOUT_SEC: float = _env_float("SEARCH_FETCH_TIMEOUT_SEC", 15.0)
SEARCH_FETCH_MAX_CHARS: int = _env_int("SEARCH_FETCH_MAX_CHARS", 8000)
SEARCH_PARALLEL_NEWS: bool = _env_bool("SEARCH_PARALLEL_NEWS", True)
NEWS_DAYS: int = _env_int("NEWS_DAYS", 7)

MIN_FOREIGN_SOURCES: int = _env_int("MIN_EN_SOURCES", 3)
MAX_PER_DOMAIN: int = _env_int("MAX_PER_DOMAIN", 2)
QUERY_EXPANSION: bool = _env_bool("QUERY_EXPANSION", True)
MAX_EXPANDED_QUERIES: int = _env_int("MAX_EXPANDED_QUERIES", 3)

FACTCHECK_CLAIMS: int = _env_int("FACTCHECK_CLAIMS", 4)
FACTCHECK_PER_CLAIM_SOURCES: int = _env_int("FACTCHECK_PER_CLAIM_SOURCES", 6)


# ────────────────────────────────────────────────────────────
#  Caches & concurrency
# ────────────────────────────────────────────────────────────

VALIDATION_CACHE_TTL_SEC: float = _env_float("VALIDATION_CACHE_TTL_SEC", 3600.0)
VALIDATION_CACHE_MAX_SIZE: int = _env_int("VALIDATION_CACHE_MAX_SIZE", 1000)
SEARCH_CACHE_TTL_SEC: float = _env_float("SEARCH_CACHE_TTL_SEC", 600.0)
SEARCH_CACHE_MAX_SIZE: int = _env_int("SEARCH_CACHE_MAX_SIZE", 500)
PAGE_CACHE_TTL_SEC: float = _env_float("PAGE_CACHE_TTL_SEC", 1800.0)
PAGE_CACHE_MAX_SIZE: int = _env_int("PAGE_CACHE_MAX_SIZE", 200)

EXECUTOR_MAX_CONCURRENT: int = _env_int("EXECUTOR_MAX_CONCURRENT", 5)
VALIDATION_BATCH_SIZE: int = _env_int("VALIDATION_BATCH_SIZE", 3)


# ────────────────────────────────────────────────────────────
#  Stage budgets (env‑overridable)
# ────────────────────────────────────────────────────────────

STAGE_MIN_MS: Dict[str, int] = {
    "plan": _env_int("PLAN_MIN_MS", 800),
    "retrieve": _env_int("RETRIEVE_MIN_MS", 1500),
    "extract": _env_int("EXTRACT_MIN_MS", 1500),
    "analyze": _env_int("ANALYZE_MIN_MS", 800),
    "write": _env_int("WRITE_MIN_MS", 1500),
    "verify": _env_int("VERIFY_MIN_MS", 1200),
    "verify_rewrite": _env_int("VERIFY_REWRITE_MIN_MS", 800),
    "critique": _env_int("CRITIQUE_MIN_MS", 600),
    "critique_rewrite": _env_int("CRITIQUE_REWRITE_MIN_MS", 700),
}

VERIFY_REWRITE_RATIO: float = _env_float("VERIFY_REWRITE_RATIO", 0.12)
CRITIQUE_REWRITE_RATIO: float = _env_float("CRITIQUE_REWRITE_RATIO", 0.10)

# Verification only starts with this much budget left
VERIFY_MIN_REMAINING_MS: int = _env_int("VERIFY_MIN_REMAINING_MS", 5000)
# Critique rounds stop once remaining budget drops below this margin
CRITIQUE_SAFETY_MARGIN_MS: int = _env_int("CRITIQUE_SAFETY_MARGIN_MS", 1500)
# Writer streams tokens only with this much budget left (or no deadline)
WRITER_STREAM_MIN_REMAINING_MS: int = _env_int("WRITER_STREAM_MIN_REMAINING_MS", 10000)
# How long a timed-out stage gets to acknowledge cancellation
STAGE_CANCEL_GRACE_MS: int = _env_int("STAGE_CANCEL_GRACE_MS", 250)

# Inline critic edits longer than this replace the draft outright
INLINE_EDIT_MIN_CHARS: int = _env_int("INLINE_EDIT_MIN_CHARS", 50)


@dataclass(frozen=True)
class ModePreset:
    """Ratio split and optional-stage gating for one speed mode."""

    ratios: Dict[str, float]
    run_verify: bool
    run_critique: bool
    min_iterations: int = 1
    max_iterations: int = 3
    diversify_k: int = 10
    fetch_pages: int = 3
    news_parallel: bool = True


MODE_PRESETS: Dict[str, ModePreset] = {
    "fast": ModePreset(
        ratios={
            "plan": 0.08,
            "retrieve": 0.20,
            "extract": 0.10,
            "analyze": 0.08,
            "write": 0.46,
            "verify": 0.0,
            "critique": 0.10,
        },
        run_verify=False,
        run_critique=False,
        max_iterations=1,
        diversify_k=8,
        fetch_pages=2,
        news_parallel=False,
    ),
    "balanced": ModePreset(
        ratios={
            "plan": 0.08,
            "retrieve": 0.22,
            "extract": 0.15,
            "analyze": 0.10,
            "write": 0.32,
            "verify": 0.10,
            "critique": 0.05,
        },
        run_verify=True,
        run_critique=True,
        diversify_k=10,
        fetch_pages=4,
    ),
    "thorough": ModePreset(
        ratios={
            "plan": 0.08,
            "retrieve": 0.25,
            "extract": 0.18,
            "analyze": 0.10,
            "write": 0.24,
            "verify": 0.12,
            "critique": 0.06,
        },
        run_verify=True,
        run_critique=True,
        min_iterations=2,
        diversify_k=12,
        fetch_pages=6,
    ),
}


SpeedMode = Literal["fast", "balanced", "thorough"]
LangCode = Literal["auto", "en", "zh-TW", "ja", "ko"]


class Settings(BaseModel):
    """Per-run options consumed by the orchestrator."""

    speed_mode: SpeedMode = "balanced"
    lang: LangCode = "auto"
    use_web: bool = True
    time_limit_ms: Optional[int] = Field(default=None, ge=0)
    min_foreign_sources: int = Field(default=MIN_FOREIGN_SOURCES, ge=0)
    max_per_domain: int = Field(default=MAX_PER_DOMAIN, ge=1)
    query_expansion: bool = QUERY_EXPANSION
    # Overrides every stage minimum when set
    stage_min_ms: Optional[int] = Field(default=None, ge=0)

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        values = {
            "speed_mode": os.getenv("SPEED_MODE", "balanced"),
            "lang": os.getenv("OUTPUT_LANG", "auto"),
            "use_web": _env_bool("USE_WEB", True),
            "time_limit_ms": _env_opt_int("MAX_TIME_MS"),
            "stage_min_ms": _env_opt_int("STAGE_MIN_MS"),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)

    @property
    def preset(self) -> ModePreset:
        return MODE_PRESETS[self.speed_mode]

    def min_ms(self, stage: str) -> int:
        if self.stage_min_ms is not None:
            return self.stage_min_ms
        return STAGE_MIN_MS.get(stage, 0)

    def ratio(self, stage: str) -> float:
        return self.preset.ratios.get(stage, 0.0)


def require_credentials() -> str:
    """Return the OpenAI API key or raise before any stage starts."""
    api_key = os.getenv("OPENAI_API_KEY", "").strip()
    if not api_key:
        raise FatalConfigError("OPENAI_API_KEY is not set; cannot start a research run")
    return api_key


def search_api_key() -> str:
    return os.getenv("TAVILY_API_KEY", "").strip()
