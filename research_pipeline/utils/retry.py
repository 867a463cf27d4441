"""
Retry and backoff configuration for calls to the text-generation provider.
"""

import logging

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..core import config
from ..core.errors import LLMRateLimitedError, LLMTimeoutError

LLM_BACKOFF_MIN_SEC = config._env_float("LLM_BACKOFF_MIN_SEC", 1.0)
LLM_BACKOFF_MAX_SEC = config._env_float("LLM_BACKOFF_MAX_SEC", 8.0)


def get_llm_retry_decorator(max_retries: int = config.LLM_MAX_RETRIES):
    """
    Retry transient provider errors (rate limits, timeouts) with exponential
    backoff. Invalid requests are never retried.

    Args:
        max_retries: Retries after the first attempt
    """
    return retry(
        stop=stop_after_attempt(max(1, max_retries + 1)),
        wait=wait_exponential(multiplier=1, min=LLM_BACKOFF_MIN_SEC, max=LLM_BACKOFF_MAX_SEC),
        retry=retry_if_exception_type((LLMRateLimitedError, LLMTimeoutError)),
        before_sleep=before_sleep_log(logging.getLogger(__name__), logging.WARNING),
        reraise=True,
    )
