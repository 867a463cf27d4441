"""
Web search and page fetching for the Retrieve/Extract/Verify stages.

Both collaborators degrade instead of raising: an unconfigured or failing
search provider yields ``[]`` and a failing fetch yields ``""``, so callers
never distinguish "no results" from "unavailable".
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Protocol

import aiohttp
import structlog
from bs4 import BeautifulSoup

from ..core import config
from ..core.errors import ExternalUnavailable
from ..models.research import Source
from ..utils.error_handling import log_exception
from ..utils.text_utils import smart_truncate
from ..utils.url_utils import is_valid_url
from .cache import ResultCache

logger = structlog.get_logger(__name__)

TAVILY_ENDPOINT = "https://api.tavily.com/search"

_FETCH_HEADERS = {
    "User-Agent": "ResearchPipeline/1.0 (+https://github.com/research-pipeline)",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}


class SearchProvider(Protocol):
    async def search(
        self,
        query: str,
        *,
        depth: str = "basic",
        max_results: int = 8,
        topic: str = "general",
        days: Optional[int] = None,
    ) -> List[Source]: ...


class PageFetcherProtocol(Protocol):
    async def fetch(self, url: str) -> str: ...


class BaseSearchAPI:
    """Owns an aiohttp session; use as an async context manager or call ``aclose``."""

    def __init__(self, api_key: str = "", timeout_sec: float = config.SEARCH_API_TIMEOUT_SEC):
        self.api_key = api_key
        self.timeout_sec = timeout_sec
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        self._sess()
        return self

    async def __aexit__(self, *_exc):
        await self.aclose()

    def _sess(self) -> aiohttp.ClientSession:
        if not self.session or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_sec))
        return self.session

    async def aclose(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()


class TavilySearchAPI(BaseSearchAPI):
    """Tavily search with result caching."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        cache: Optional[ResultCache] = None,
        timeout_sec: float = config.SEARCH_API_TIMEOUT_SEC,
    ):
        super().__init__(api_key if api_key is not None else config.search_api_key(), timeout_sec)
        self.cache = cache

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str,
        *,
        depth: str = config.SEARCH_DEPTH,
        max_results: int = config.SEARCH_MAX_RESULTS,
        topic: str = "general",
        days: Optional[int] = None,
    ) -> List[Source]:
        query = (query or "").strip()
        if not query:
            return []
        if not self.configured:
            logger.info("Search skipped; provider not configured", provider="tavily")
            return []

        cache_key = ResultCache.make_key(f"tavily|{topic}|{depth}|{max_results}|{days}|{query}")
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return list(cached)

        try:
            results = await self._search(query, depth=depth, max_results=max_results, topic=topic, days=days)
        except (ExternalUnavailable, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            log_exception("Search provider failed", exc, provider="tavily", query=query[:80])
            return []

        if self.cache is not None and results:
            self.cache.set(cache_key, results)
        logger.debug("Search completed", provider="tavily", query=query[:80], results=len(results))
        return results

    async def _search(self, query: str, *, depth: str, max_results: int, topic: str, days: Optional[int]) -> List[Source]:
        body: Dict[str, Any] = {
            "api_key": self.api_key,
            "query": query,
            "include_answer": False,
            "search_depth": depth,
            "max_results": max_results,
        }
        if topic == "news":
            body["topic"] = "news"
            if days:
                body["days"] = days

        async with self._sess().post(TAVILY_ENDPOINT, json=body) as resp:
            if resp.status != 200:
                raise ExternalUnavailable("tavily", f"HTTP {resp.status}")
            data = await resp.json(content_type=None)

        seen: set = set()
        out: List[Source] = []
        for item in (data or {}).get("results", []) or []:
            url = (item.get("url") or "").strip()
            if not url or url in seen or not is_valid_url(url):
                continue
            seen.add(url)
            out.append(
                Source(
                    url=url,
                    title=item.get("title") or None,
                    snippet=item.get("content") or item.get("snippet") or None,
                    published_date=item.get("published_date") or None,
                )
            )
        return out


def html_to_text(html: str, max_chars: int = config.SEARCH_FETCH_MAX_CHARS) -> str:
    """Visible article text from an HTML document."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "nav", "footer", "header", "aside", "form"]):
        tag.decompose()
    root = soup.find("article") or soup.find("main") or soup.body or soup
    paragraphs = [p.get_text(" ", strip=True) for p in root.find_all(["p", "li", "h1", "h2", "h3"])]
    text = "\n".join(p for p in paragraphs if len(p) > 30)
    if not text:
        text = root.get_text(" ", strip=True)
    return smart_truncate(text, max_chars)


class PageFetcher(BaseSearchAPI):
    """GET a page and reduce it to plain text; cached by URL."""

    def __init__(
        self,
        *,
        cache: Optional[ResultCache] = None,
        timeout_sec: float = config.SEARCH_FETCH_TIMEOUT_SEC,
        max_chars: int = config.SEARCH_FETCH_MAX_CHARS,
    ):
        super().__init__("", timeout_sec)
        self.cache = cache
        self.max_chars = max_chars

    async def fetch(self, url: str) -> str:
        if not is_valid_url(url):
            return ""
        if self.cache is not None:
            cached = self.cache.get(url)
            if cached is not None:
                return cached
        try:
            async with self._sess().get(url, headers=_FETCH_HEADERS, allow_redirects=True) as resp:
                ctype = (resp.headers.get("Content-Type") or "").lower()
                if resp.status != 200 or "html" not in ctype:
                    return ""
                html = await resp.text(errors="ignore")
        except (aiohttp.ClientError, asyncio.TimeoutError, UnicodeDecodeError) as exc:
            log_exception("Page fetch failed", exc, url=url)
            return ""

        text = html_to_text(html, self.max_chars)
        if self.cache is not None and text:
            self.cache.set(url, text)
        return text
