"""Shared fakes and fixtures.

The fakes stand in for the text generator, the search provider and the page
fetcher so no test touches the network or needs credentials.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Union

import pytest

from research_pipeline.core.config import Settings
from research_pipeline.models.research import Source
from research_pipeline.services.events import RecordingEventSink
from research_pipeline.services.orchestrator import PipelineResources, ResearchOrchestrator

# (marker in the system prompt, role)
_ROLES = (
    ("research router", "plan"),
    ("web search queries", "expand"),
    ("extract verifiable facts", "extract"),
    ("research analyst", "analyze"),
    ("careful research writer", "write"),
    ("checkable factual claims", "claims"),
    ("fact checker", "judge"),
    ("Revise the answer", "revise"),
    ("review research answers", "critique"),
    ("Rewrite the answer", "rewrite"),
)

Reply = Union[str, dict, Exception, Callable[[str, str], str]]


def role_of(system_prompt: str) -> str:
    for marker, role in _ROLES:
        if marker in system_prompt:
            return role
    return "unknown"


DEFAULT_REPLIES: Dict[str, Reply] = {
    "plan": {"useWeb": True, "topic": "general", "steps": ["Researcher", "Analyst", "Writer", "Critic"], "maxIterations": 1},
    "expand": {"queries": ["ai chips market share", "ai accelerator shipments"]},
    "extract": {
        "facts": [
            {"statement": "Nvidia shipped the most AI accelerators in 2024.", "sourceRef": "https://www.reuters.com/tech/ai-chips"},
            {"statement": "AMD expanded data-center GPU revenue.", "sourceRef": "https://apnews.com/article/amd"},
        ]
    },
    "analyze": {
        "facts": [{"statement": "Nvidia leads AI accelerator shipments.", "sourceRef": "https://www.reuters.com/tech/ai-chips"}],
        "notes": "Sources agree that Nvidia leads the market.",
    },
    "write": "Nvidia leads AI accelerator shipments [1]. AMD is growing its data-center GPU revenue [2].",
    "claims": {"claims": ["Nvidia leads AI accelerator shipments."]},
    "judge": {"claims": [{"claim": "Nvidia leads AI accelerator shipments.", "verdict": "SUPPORTED"}]},
    "revise": "Revised answer.",
    "critique": {"verdict": "approve"},
    "rewrite": "Rewritten answer.",
}


class FakeTextGenerator:
    """Replies by role, detected from the system prompt; records every call.

    When ``usage`` is set every call reports it as provider token counts.
    """

    def __init__(
        self,
        replies: Optional[Dict[str, Reply]] = None,
        delays: Optional[Dict[str, float]] = None,
        usage: Optional[Dict[str, int]] = None,
    ):
        self.usage = usage
        self.replies: Dict[str, Reply] = {**DEFAULT_REPLIES, **(replies or {})}
        self.delays = delays or {}
        self.calls: List[str] = []
        self.cancelled: List[str] = []

    async def _reply(self, role: str, system_prompt: str, user_prompt: str) -> str:
        self.calls.append(role)
        delay = self.delays.get(role)
        if delay:
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                self.cancelled.append(role)
                raise
        reply = self.replies.get(role, "")
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(system_prompt, user_prompt)
        if isinstance(reply, dict):
            return json.dumps(reply)
        return reply

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        structured_output: bool = False,
        on_usage: Optional[Callable[[Dict[str, int]], None]] = None,
    ) -> str:
        text = await self._reply(role_of(system_prompt), system_prompt, user_prompt)
        if self.usage and on_usage is not None:
            on_usage(dict(self.usage))
        return text

    async def generate_stream(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        on_usage: Optional[Callable[[Dict[str, int]], None]] = None,
    ):
        text = await self._reply(role_of(system_prompt), system_prompt, user_prompt)
        for word in text.split(" "):
            yield word + " "
        if self.usage and on_usage is not None:
            on_usage(dict(self.usage))


def make_source(url: str, title: str = "", snippet: str = "", published: Optional[str] = None) -> Source:
    return Source(url=url, title=title or url, snippet=snippet or None, published_date=published)


DEFAULT_SOURCES = [
    make_source("https://www.reuters.com/tech/ai-chips", "AI chip shipments", "Nvidia shipped the most AI accelerators."),
    make_source("https://apnews.com/article/amd", "AMD data-center growth", "AMD grew data-center GPU revenue."),
    make_source("https://www.nature.com/articles/x1", "Accelerator study", "A study of accelerator efficiency data."),
]


class FakeSearch:
    """Returns canned sources for every query; records (query, topic)."""

    def __init__(self, results: Optional[List[Source]] = None, error: Optional[Exception] = None):
        self.results = DEFAULT_SOURCES if results is None else results
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def search(
        self,
        query: str,
        *,
        depth: str = "basic",
        max_results: int = 8,
        topic: str = "general",
        days: Optional[int] = None,
    ) -> List[Source]:
        self.calls.append({"query": query, "topic": topic, "days": days, "max_results": max_results})
        if self.error is not None:
            raise self.error
        return list(self.results)


class FakePageFetcher:
    def __init__(self, text: str = "Full article text with study data."):
        self.text = text
        self.urls: List[str] = []

    async def fetch(self, url: str) -> str:
        self.urls.append(url)
        return self.text


@pytest.fixture
def llm() -> FakeTextGenerator:
    return FakeTextGenerator()


@pytest.fixture
def search() -> FakeSearch:
    return FakeSearch()


@pytest.fixture
def fetcher() -> FakePageFetcher:
    return FakePageFetcher()


@pytest.fixture
def sink() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def resources() -> PipelineResources:
    return PipelineResources()


@pytest.fixture
def orchestrator(llm, search, fetcher, resources) -> ResearchOrchestrator:
    return ResearchOrchestrator(llm, search, fetcher, resources=resources)


@pytest.fixture
def settings() -> Settings:
    return Settings(speed_mode="balanced", lang="en", min_foreign_sources=0)
