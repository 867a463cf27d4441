"""
Research Orchestrator
=====================

Drives one question through Plan → Retrieve → Extract → Analyze → Write →
Verify → Critique → Complete under an optional overall deadline.

Each stage runs through :class:`StageBudgetScheduler` with the slice ratio of
the active speed mode. A stage that runs out of time is replaced by its
deterministic fallback; a stage whose primary task fails is logged, reported
as an ``error`` event and replaced by the same degraded default. Only a
missing credential (:class:`FatalConfigError`) or a hard cancellation
(:class:`RunCancelledError`) ends a run early.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import structlog

from ..core import config
from ..core.config import Settings
from ..core.errors import LLMError, RunCancelledError, StageFailure
from ..logging_config import bind_run_context, clear_run_context
from ..models.credibility import CredibilityReport
from ..models.research import (
    Critique,
    FactCheckReport,
    PlanStep,
    ResearchBundle,
    RouterPlan,
    Source,
    Stage,
    TokenUsage,
)
from ..utils.error_handling import add_warning, log_exception
from ..utils.text_utils import chunk_text
from .agents import (
    ResearchAgents,
    apply_speed_mode,
    concise_fallback_draft,
    facts_from_snippets,
    heuristic_plan,
    is_placeholder,
    placeholder_bundle,
)
from .cache import ResultCache
from .classifiers import TextClassifier
from .concurrency import BoundedConcurrencyExecutor
from .credibility import CredibilityEvaluator
from .events import EventType, NoOpEventSink, emit_event
from .llm_client import LLMClient, TextGenerator
from .retrieval import RetrievalDiversifier
from .retrieval import expand_queries as rule_based_queries
from .scheduler import CancellationToken, Deadline, StageBudgetScheduler
from .search_apis import PageFetcher, PageFetcherProtocol, SearchProvider, TavilySearchAPI
from .token_accountant import TokenAccountant

logger = structlog.get_logger(__name__)

WRITER_CHUNK_CHARS = 50


# ──────────────────────────────────────────────────────────────────────
# Shared resources and results
# ──────────────────────────────────────────────────────────────────────


@dataclass
class PipelineResources:
    """Caches and executor shared by every run in a process."""

    validation_cache: ResultCache = field(
        default_factory=lambda: ResultCache(
            config.VALIDATION_CACHE_MAX_SIZE, config.VALIDATION_CACHE_TTL_SEC, name="validation"
        )
    )
    search_cache: ResultCache = field(
        default_factory=lambda: ResultCache(config.SEARCH_CACHE_MAX_SIZE, config.SEARCH_CACHE_TTL_SEC, name="search")
    )
    page_cache: ResultCache = field(
        default_factory=lambda: ResultCache(config.PAGE_CACHE_MAX_SIZE, config.PAGE_CACHE_TTL_SEC, name="pages")
    )
    executor: BoundedConcurrencyExecutor = field(
        default_factory=lambda: BoundedConcurrencyExecutor(config.EXECUTOR_MAX_CONCURRENT, name="pipeline")
    )

    def cleanup(self) -> int:
        """Purge expired entries from every cache; returns the total purged."""
        purged = sum(c.cleanup() for c in (self.validation_cache, self.search_cache, self.page_cache))
        if purged:
            logger.debug("Expired cache entries purged", purged=purged)
        return purged

    async def aclose(self) -> None:
        await self.executor.shutdown()
        for cache in (self.validation_cache, self.search_cache, self.page_cache):
            cache.clear()


@dataclass
class ResearchOutcome:
    """Everything a finished run produced."""

    run_id: str
    question: str
    plan: RouterPlan
    sources: List[Source]
    bundle: ResearchBundle
    draft: str
    fact_check: Optional[FactCheckReport]
    critiques: List[Critique]
    credibility: Optional[CredibilityReport]
    usage: TokenUsage
    elapsed_ms: int
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return bool(self.meta.get("degraded"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "question": self.question,
            "plan": self.plan.model_dump(),
            "sources": [s.model_dump(exclude={"content"}) for s in self.sources],
            "facts": [f.model_dump() for f in self.bundle.facts],
            "notes": self.bundle.notes,
            "draft": self.draft,
            "fact_check": self.fact_check.model_dump() if self.fact_check else None,
            "critiques": [c.model_dump() for c in self.critiques],
            "credibility": self.credibility.model_dump(mode="json") if self.credibility else None,
            "usage": self.usage.model_dump(),
            "elapsed_ms": self.elapsed_ms,
            "meta": self.meta,
        }


@dataclass
class _RunContext:
    run_id: str
    question: str
    settings: Settings
    deadline: Deadline
    sink: Any
    agents: ResearchAgents
    accountant: TokenAccountant
    started: float = field(default_factory=time.monotonic)
    stage: str = Stage.PLAN.value
    plan: Optional[RouterPlan] = None
    verification_sources: List[Source] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=lambda: {"stages": {}, "warnings": [], "degraded": False})

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


# ──────────────────────────────────────────────────────────────────────
# Orchestrator
# ──────────────────────────────────────────────────────────────────────


class ResearchOrchestrator:
    """Deadline-bounded research runs over injected collaborators."""

    def __init__(
        self,
        generator: TextGenerator,
        search: Optional[SearchProvider] = None,
        page_fetcher: Optional[PageFetcherProtocol] = None,
        *,
        resources: Optional[PipelineResources] = None,
        scheduler: Optional[StageBudgetScheduler] = None,
        classifier: Optional[TextClassifier] = None,
        diversifier: Optional[RetrievalDiversifier] = None,
        now_fn=None,
    ):
        self.generator = generator
        self.search = search
        self.page_fetcher = page_fetcher
        self.resources = resources or PipelineResources()
        self.scheduler = scheduler or StageBudgetScheduler()
        self.diversifier = diversifier or RetrievalDiversifier(now_fn=now_fn)
        self.evaluator = CredibilityEvaluator(
            cache=self.resources.validation_cache,
            executor=self.resources.executor,
            classifier=classifier,
            now_fn=now_fn,
        )

    async def aclose(self) -> None:
        """Close collaborator sessions; shared resources are closed by their owner."""
        for collaborator in (self.search, self.page_fetcher, self.generator):
            close = getattr(collaborator, "aclose", None)
            if close is not None:
                await close()

    # ──────────────────────────────────────────────────────────────
    # Entry point
    # ──────────────────────────────────────────────────────────────

    async def run(
        self,
        question: str,
        settings: Optional[Settings] = None,
        emit: Any = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ResearchOutcome:
        """Answer ``question``.

        Args:
            question: The user's research question
            settings: Per-run options; defaults to ``Settings()``
            emit: An event sink or a bare ``emit(event, payload)`` callable
            cancel_event: Setting this event aborts the run

        Raises:
            RunCancelledError: ``cancel_event`` was set before the run finished
        """
        settings = settings or Settings()
        accountant = TokenAccountant()
        ctx = _RunContext(
            run_id=uuid.uuid4().hex[:12],
            question=(question or "").strip(),
            settings=settings,
            deadline=Deadline.after_ms(settings.time_limit_ms),
            sink=emit if emit is not None else NoOpEventSink(),
            agents=ResearchAgents(self.generator, accountant, lang=settings.lang),
            accountant=accountant,
        )
        bind_run_context(run_id=ctx.run_id)
        logger.info(
            "Research run started",
            speed_mode=settings.speed_mode,
            time_limit_ms=settings.time_limit_ms,
            use_web=settings.use_web,
            question=ctx.question[:100],
        )
        try:
            if cancel_event is None:
                return await self._pipeline(ctx)
            return await self._run_cancellable(ctx, cancel_event)
        except asyncio.CancelledError:
            await self._report_cancelled(ctx)
            raise
        finally:
            clear_run_context()

    async def _run_cancellable(self, ctx: _RunContext, cancel_event: asyncio.Event) -> ResearchOutcome:
        pipeline = asyncio.ensure_future(self._pipeline(ctx))
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({pipeline, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            pipeline.cancel()
            waiter.cancel()
            raise

        if pipeline.done():
            waiter.cancel()
            return pipeline.result()

        pipeline.cancel()
        await asyncio.gather(pipeline, return_exceptions=True)
        await self._report_cancelled(ctx)
        raise RunCancelledError(ctx.stage)

    async def _report_cancelled(self, ctx: _RunContext) -> None:
        logger.warning("Research run cancelled", stage=ctx.stage, elapsed_ms=ctx.elapsed_ms())
        await emit_event(ctx.sink, EventType.ERROR, {"stage": ctx.stage, "message": "cancelled", "fatal": True})

    # ──────────────────────────────────────────────────────────────
    # Stage plumbing
    # ──────────────────────────────────────────────────────────────

    async def _emit(self, ctx: _RunContext, event: EventType, payload: Dict[str, Any]) -> None:
        await emit_event(ctx.sink, event, payload)

    async def _run_stage(
        self,
        ctx: _RunContext,
        stage: str,
        primary: Callable[[CancellationToken], Any],
        fallback: Callable[[], Any],
        *,
        ratio: Optional[float] = None,
        min_ms: Optional[int] = None,
    ) -> Any:
        """Run one stage against its slice; failures degrade to ``fallback``."""
        ctx.stage = stage
        ratio = ctx.settings.ratio(stage) if ratio is None else ratio
        min_ms = ctx.settings.min_ms(stage) if min_ms is None else min_ms
        remaining = ctx.deadline.remaining_ms()
        await self._emit(
            ctx,
            EventType.STAGE,
            {"stage": stage, "remaining_ms": None if not ctx.deadline.bounded else int(remaining)},
        )

        try:
            outcome = await self.scheduler.run_detailed(stage, ctx.deadline, ratio, min_ms, primary, fallback)
        except StageFailure as exc:
            log_exception("Stage failed; using degraded default", exc.cause or exc, stage=stage)
            add_warning(ctx.meta, "stage_failure", str(exc), stage=stage)
            ctx.meta["stages"][stage] = {"status": "failed"}
            await self._emit(ctx, EventType.ERROR, {"stage": stage, "message": str(exc), "fatal": False})
            value = fallback()
            if inspect.isawaitable(value):
                value = await value
            return value

        if outcome.used_fallback:
            add_warning(
                ctx.meta,
                "stage_timeout",
                str(outcome.timeout),
                stage=stage,
                slice_ms=outcome.slice_ms,
                stopped=outcome.stopped,
            )
        ctx.meta["stages"][stage] = {
            "status": outcome.status,
            "slice_ms": outcome.slice_ms,
            "elapsed_ms": outcome.elapsed_ms,
        }
        logger.debug(
            "Stage finished",
            stage=stage,
            status=outcome.status,
            slice_ms=outcome.slice_ms,
            elapsed_ms=outcome.elapsed_ms,
        )
        return outcome.value

    # ──────────────────────────────────────────────────────────────
    # Pipeline
    # ──────────────────────────────────────────────────────────────

    async def _pipeline(self, ctx: _RunContext) -> ResearchOutcome:
        q = ctx.question
        settings = ctx.settings
        preset = settings.preset

        # Plan
        plan: RouterPlan = await self._run_stage(
            ctx, Stage.PLAN.value, lambda t: ctx.agents.plan(q, t), lambda: heuristic_plan(q)
        )
        plan = apply_speed_mode(plan, settings.speed_mode)
        if not settings.use_web and plan.use_web:
            plan = plan.model_copy(update={"use_web": False})
        ctx.plan = plan
        await self._emit(ctx, EventType.PLAN, plan.model_dump())

        # Retrieve
        sources: List[Source] = []
        if plan.use_web:
            sources = await self._run_stage(
                ctx, Stage.RETRIEVE.value, lambda t: self._retrieve(ctx, plan, t), lambda: []
            )
        await self._emit(
            ctx, EventType.SOURCES, {"sources": [s.model_dump(exclude={"content"}) for s in sources]}
        )

        # Extract
        bundle: ResearchBundle = await self._run_stage(
            ctx,
            Stage.EXTRACT.value,
            lambda t: ctx.agents.extract_facts(q, sources, t),
            lambda: self._extract_fallback(sources),
        )
        await self._emit(ctx, EventType.FACTS, {"facts": [f.model_dump() for f in bundle.facts]})

        # Analyze
        extracted = bundle
        bundle = await self._run_stage(
            ctx, Stage.ANALYZE.value, lambda t: ctx.agents.analyze(q, extracted, t), lambda: extracted
        )
        await self._emit(ctx, EventType.ANALYSIS, {"notes": bundle.notes, "facts": len(bundle.facts)})

        # Write
        draft = await self._write(ctx, bundle)

        # Verify
        report: Optional[FactCheckReport] = None
        if preset.run_verify and PlanStep.FACT_CHECKER.value in plan.step_sequence:
            if ctx.deadline.bounded and ctx.deadline.remaining_ms() < config.VERIFY_MIN_REMAINING_MS:
                add_warning(
                    ctx.meta,
                    "verify_skipped",
                    "not enough time left to verify claims",
                    remaining_ms=int(ctx.deadline.remaining_ms()),
                )
            else:
                draft, report = await self._verify(ctx, draft, bundle)

        # Critique
        critiques: List[Critique] = []
        if preset.run_critique and PlanStep.CRITIC.value in plan.step_sequence:
            draft, critiques = await self._critique_loop(ctx, plan, draft, bundle)

        # Complete
        ctx.stage = Stage.COMPLETE.value
        credibility = await self._credibility(ctx, bundle, report)
        await self._emit(ctx, EventType.CREDIBILITY, credibility.model_dump(mode="json"))

        usage = ctx.accountant.usage()
        await self._emit(ctx, EventType.TOKENS, usage.model_dump())

        elapsed = ctx.elapsed_ms()
        await self._emit(
            ctx,
            EventType.DONE,
            {"text": draft, "elapsed_ms": elapsed, "degraded": ctx.meta["degraded"], "warnings": ctx.meta["warnings"]},
        )
        logger.info(
            "Research run complete",
            elapsed_ms=elapsed,
            sources=len(sources),
            facts=len(bundle.facts),
            tokens=usage.total_tokens,
            degraded=ctx.meta["degraded"],
        )
        return ResearchOutcome(
            run_id=ctx.run_id,
            question=q,
            plan=plan,
            sources=sources,
            bundle=bundle,
            draft=draft,
            fact_check=report,
            critiques=critiques,
            credibility=credibility,
            usage=usage,
            elapsed_ms=elapsed,
            meta=ctx.meta,
        )

    # ──────────────────────────────────────────────────────────────
    # Retrieve
    # ──────────────────────────────────────────────────────────────

    async def _queries(self, ctx: _RunContext, token: CancellationToken) -> List[str]:
        if not ctx.settings.query_expansion:
            return [ctx.question]
        try:
            return await ctx.agents.expand_queries(ctx.question, token)
        except LLMError as exc:
            log_exception("Query expansion failed; using rule-based variants", exc)
            return rule_based_queries(ctx.question, config.MAX_EXPANDED_QUERIES)

    async def _retrieve(self, ctx: _RunContext, plan: RouterPlan, token: CancellationToken) -> List[Source]:
        if self.search is None:
            return []
        preset = ctx.settings.preset
        queries = await self._queries(ctx, token)
        token.raise_if_cancelled()

        news = plan.topic == "news"
        calls = [
            functools.partial(self.search.search, query, topic=plan.topic, days=config.NEWS_DAYS if news else None)
            for query in queries
        ]
        if news and preset.news_parallel and config.SEARCH_PARALLEL_NEWS:
            # Background coverage alongside the news results
            calls.append(functools.partial(self.search.search, ctx.question, topic="general", days=None))

        batches = await self.resources.executor.process_batch(
            calls, batch_size=max(1, len(calls)), return_exceptions=True
        )
        raw: List[Source] = []
        for query_results in batches:
            if isinstance(query_results, BaseException):
                log_exception("Search call failed", query_results)
                continue
            raw.extend(query_results)
        token.raise_if_cancelled()

        ranked = self.diversifier.dedupe_and_score(raw)
        picked = self.diversifier.diversify(
            ranked,
            preset.diversify_k,
            max_per_domain=ctx.settings.max_per_domain,
            min_foreign_count=ctx.settings.min_foreign_sources,
        )
        logger.info("Sources retrieved", queries=len(queries), raw=len(raw), picked=len(picked))
        if self.page_fetcher is not None and picked and preset.fetch_pages:
            picked = await self._attach_page_content(picked, preset.fetch_pages)
        return picked

    async def _attach_page_content(self, sources: List[Source], limit: int) -> List[Source]:
        head = sources[:limit]
        texts = await self.resources.executor.process_batch(
            [functools.partial(self.page_fetcher.fetch, s.url) for s in head],
            batch_size=config.EXECUTOR_MAX_CONCURRENT,
            return_exceptions=True,
        )
        enriched = []
        for source, text in zip(head, texts):
            if isinstance(text, BaseException):
                log_exception("Page fetch failed", text, url=source.url)
                text = ""
            enriched.append(source.model_copy(update={"content": text}) if text else source)
        return enriched + sources[limit:]

    # ──────────────────────────────────────────────────────────────
    # Extract / Write
    # ──────────────────────────────────────────────────────────────

    @staticmethod
    def _extract_fallback(sources: List[Source]) -> ResearchBundle:
        facts = facts_from_snippets(sources)
        if not facts:
            return placeholder_bundle(sources)
        return ResearchBundle(sources=list(sources), facts=facts)

    async def _write(self, ctx: _RunContext, bundle: ResearchBundle) -> str:
        q = ctx.question
        stream = not ctx.deadline.bounded or ctx.deadline.remaining_ms() > config.WRITER_STREAM_MIN_REMAINING_MS
        streamed = 0

        async def _on_chunk(chunk: str) -> None:
            nonlocal streamed
            streamed += 1
            await self._emit(ctx, EventType.WRITER, {"chunk": chunk})

        draft: str = await self._run_stage(
            ctx,
            Stage.WRITE.value,
            lambda t: ctx.agents.write(q, bundle, t, on_chunk=_on_chunk if stream else None),
            lambda: concise_fallback_draft(q, bundle),
        )
        if not draft.strip():
            add_warning(ctx.meta, "empty_draft", "writer returned no text; using concise version")
            draft = concise_fallback_draft(q, bundle)
        if not streamed:
            for chunk in chunk_text(draft, WRITER_CHUNK_CHARS):
                await self._emit(ctx, EventType.WRITER, {"chunk": chunk})
        await self._emit(ctx, EventType.DRAFT, {"text": draft})
        return draft

    # ──────────────────────────────────────────────────────────────
    # Verify
    # ──────────────────────────────────────────────────────────────

    async def _claim_evidence(
        self, ctx: _RunContext, claims: List[str], bundle: ResearchBundle
    ) -> List[List[Source]]:
        if self.search is None or not (ctx.plan and ctx.plan.use_web):
            return [list(bundle.sources) for _ in claims]
        results = await self.resources.executor.process_batch(
            [
                functools.partial(self.search.search, claim, max_results=config.FACTCHECK_PER_CLAIM_SOURCES)
                for claim in claims
            ],
            batch_size=config.EXECUTOR_MAX_CONCURRENT,
            return_exceptions=True,
        )
        evidence: List[List[Source]] = []
        for claim_results in results:
            if isinstance(claim_results, BaseException):
                log_exception("Claim search failed", claim_results)
                claim_results = []
            per_claim = list(claim_results) or list(bundle.sources)
            ctx.verification_sources.extend(claim_results)
            evidence.append(per_claim)
        return evidence

    async def _check_claims(
        self, ctx: _RunContext, draft: str, bundle: ResearchBundle, token: CancellationToken
    ) -> Optional[FactCheckReport]:
        claims = await ctx.agents.extract_claims(draft, token)
        if not claims:
            return FactCheckReport()
        evidence = await self._claim_evidence(ctx, claims, bundle)
        token.raise_if_cancelled()
        return await ctx.agents.judge_claims(claims, evidence, token)

    async def _verify(self, ctx: _RunContext, draft: str, bundle: ResearchBundle):
        report: Optional[FactCheckReport] = await self._run_stage(
            ctx, Stage.VERIFY.value, lambda t: self._check_claims(ctx, draft, bundle, t), lambda: None
        )
        if report is None:
            return draft, None
        await self._emit(ctx, EventType.FACT_CHECK, report.model_dump())
        if report.needs_revision:
            draft = await self._run_stage(
                ctx,
                "verify_rewrite",
                lambda t: ctx.agents.revise_for_fact_check(ctx.question, draft, report, t),
                lambda: draft,
                ratio=config.VERIFY_REWRITE_RATIO,
            )
        return draft, report

    # ──────────────────────────────────────────────────────────────
    # Critique
    # ──────────────────────────────────────────────────────────────

    async def _critique_loop(self, ctx: _RunContext, plan: RouterPlan, draft: str, bundle: ResearchBundle):
        rounds = max(1, plan.max_iterations)
        round_ratio = ctx.settings.ratio(Stage.CRITIQUE.value) / rounds
        critiques: List[Critique] = []

        for round_no in range(1, rounds + 1):
            if ctx.deadline.bounded and ctx.deadline.remaining_ms() < config.CRITIQUE_SAFETY_MARGIN_MS:
                logger.info("Critique loop stopped for time", round=round_no, remaining_ms=int(ctx.deadline.remaining_ms()))
                break

            current = draft
            critique: Critique = await self._run_stage(
                ctx,
                Stage.CRITIQUE.value,
                lambda t: ctx.agents.critique(ctx.question, current, t),
                lambda: Critique(verdict="approve"),
                ratio=round_ratio,
            )
            critiques.append(critique)
            await self._emit(ctx, EventType.CRITIQUE, {"round": round_no, **critique.model_dump()})

            if critique.verdict == "approve":
                break
            edits = (critique.inline_edits or "").strip()
            if len(edits) > config.INLINE_EDIT_MIN_CHARS:
                draft = edits
                break
            draft = await self._run_stage(
                ctx,
                "critique_rewrite",
                functools.partial(ctx.agents.rewrite, ctx.question, current, critique, bundle),
                lambda: current,
                ratio=config.CRITIQUE_REWRITE_RATIO,
            )
        return draft, critiques

    # ──────────────────────────────────────────────────────────────
    # Credibility
    # ──────────────────────────────────────────────────────────────

    async def _credibility(
        self, ctx: _RunContext, bundle: ResearchBundle, report: Optional[FactCheckReport]
    ) -> CredibilityReport:
        facts = [f.statement for f in bundle.facts if not is_placeholder(f)]
        claims = [item.claim for item in report.claims] if report and report.claims else facts

        seen: set = set()
        sources: List[Source] = []
        for source in list(bundle.sources) + ctx.verification_sources:
            if source.url and source.url not in seen:
                seen.add(source.url)
                sources.append(source)
        return await self.evaluator.evaluate(claims, sources, facts)


def build_orchestrator(resources: Optional[PipelineResources] = None) -> ResearchOrchestrator:
    """Wire the OpenAI client, Tavily search and page fetcher.

    Raises:
        FatalConfigError: ``OPENAI_API_KEY`` is not set
    """
    config.require_credentials()
    resources = resources or PipelineResources()
    return ResearchOrchestrator(
        LLMClient.from_env(),
        TavilySearchAPI(cache=resources.search_cache),
        PageFetcher(cache=resources.page_cache),
        resources=resources,
    )
