"""
LLM Client for the research pipeline
------------------------------------
Thin OpenAI Chat Completions wrapper satisfying the :class:`TextGenerator`
protocol the stages depend on. Provider errors are mapped onto the pipeline's
LLM error taxonomy; rate limits and timeouts are retried with backoff.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol

import openai
import structlog
from openai import AsyncOpenAI

from ..core import config
from ..core.errors import (
    FatalConfigError,
    LLMError,
    LLMInvalidRequestError,
    LLMRateLimitedError,
    LLMTimeoutError,
)
from ..utils.retry import get_llm_retry_decorator

# ────────────────────────────────────────────────────────────
#  Logging
# ────────────────────────────────────────────────────────────
logger = structlog.get_logger(__name__)

UsageCallback = Callable[[Dict[str, int]], None]


class TextGenerator(Protocol):
    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        structured_output: bool = False,
        on_usage: Optional[UsageCallback] = None,
    ) -> str: ...

    def generate_stream(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        on_usage: Optional[UsageCallback] = None,
    ) -> AsyncIterator[str]: ...


def _map_provider_error(exc: Exception) -> LLMError:
    if isinstance(exc, openai.RateLimitError):
        return LLMRateLimitedError(str(exc))
    if isinstance(exc, openai.APITimeoutError):
        return LLMTimeoutError(str(exc))
    if isinstance(exc, (openai.BadRequestError, openai.UnprocessableEntityError, openai.NotFoundError)):
        return LLMInvalidRequestError(str(exc))
    if isinstance(exc, openai.AuthenticationError):
        return LLMInvalidRequestError(f"authentication failed: {exc}")
    return LLMError(str(exc))


def _usage_dict(usage: Any) -> Dict[str, int]:
    return {
        "prompt_tokens": int(getattr(usage, "prompt_tokens", 0) or 0),
        "completion_tokens": int(getattr(usage, "completion_tokens", 0) or 0),
    }


_retry = get_llm_retry_decorator()


# ────────────────────────────────────────────────────────────
#  Main LLM Client
# ────────────────────────────────────────────────────────────
class LLMClient:
    """OpenAI-backed text generation."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = config.OPENAI_BASE_URL,
        default_model: str = config.RESEARCHER_MODEL,
        timeout: float = config.LLM_REQUEST_TIMEOUT_SEC,
        client: Optional[AsyncOpenAI] = None,
    ):
        if client is None:
            api_key = api_key or config.require_credentials()
            client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)
        self.client = client
        self.default_model = default_model
        logger.info("OpenAI client initialized", base_url=base_url or "default", model=default_model)

    @classmethod
    def from_env(cls) -> "LLMClient":
        try:
            return cls(config.require_credentials())
        except FatalConfigError:
            logger.error("LLM client cannot start without OPENAI_API_KEY")
            raise

    def _messages(self, system_prompt: str, user_prompt: str) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]

    @_retry
    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        structured_output: bool = False,
        on_usage: Optional[UsageCallback] = None,
    ) -> str:
        """Return the completion text; ``on_usage`` receives the provider token counts."""
        params: Dict[str, Any] = {
            "model": model or self.default_model,
            "messages": self._messages(system_prompt, user_prompt),
        }
        if temperature is not None:
            params["temperature"] = temperature
        if max_tokens:
            params["max_tokens"] = max_tokens
        if structured_output:
            params["response_format"] = {"type": "json_object"}

        try:
            response = await self.client.chat.completions.create(**params)
        except openai.OpenAIError as exc:
            mapped = _map_provider_error(exc)
            logger.warning("LLM request failed", model=params["model"], error=str(exc), error_type=type(mapped).__name__)
            raise mapped from exc

        usage = getattr(response, "usage", None)
        if usage is not None and on_usage is not None:
            on_usage(_usage_dict(usage))
        if not getattr(response, "choices", None):
            logger.warning("Empty response received from LLM", model=params["model"])
            return ""
        logger.debug(
            "Completion received",
            model=params["model"],
            prompt_tokens=getattr(usage, "prompt_tokens", None),
            completion_tokens=getattr(usage, "completion_tokens", None),
        )
        return response.choices[0].message.content or ""

    async def generate_stream(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        on_usage: Optional[UsageCallback] = None,
    ) -> AsyncIterator[str]:
        """Yield content deltas in order as the provider produces them.

        The final chunk carries the usage for the whole stream; it goes to
        ``on_usage`` once the deltas are exhausted.
        """
        params: Dict[str, Any] = {
            "model": model or self.default_model,
            "messages": self._messages(system_prompt, user_prompt),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if temperature is not None:
            params["temperature"] = temperature
        if max_tokens:
            params["max_tokens"] = max_tokens

        try:
            response = await self.client.chat.completions.create(**params)
            async for chunk in response:
                usage = getattr(chunk, "usage", None)
                if usage is not None and on_usage is not None:
                    on_usage(_usage_dict(usage))
                if getattr(chunk, "choices", None):
                    delta = chunk.choices[0].delta
                    if getattr(delta, "content", None):
                        yield delta.content
        except openai.OpenAIError as exc:
            mapped = _map_provider_error(exc)
            logger.warning("LLM stream failed", model=params["model"], error=str(exc))
            raise mapped from exc

    async def aclose(self) -> None:
        await self.client.close()
