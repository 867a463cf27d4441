"""
Stage agents: the prompts, parsing and deterministic fallbacks behind each
pipeline stage.

Every LLM-backed method takes the stage's :class:`CancellationToken` and
checks it before each external call and between streamed chunks, so a stage
whose slice expired stops promptly. Structured replies go through the ordered
extraction strategies in :mod:`research_pipeline.utils.json_extract`.
"""

from __future__ import annotations

import re
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import structlog

from ..core import config
from ..core.errors import ParseFailure
from ..models.research import (
    ClaimList,
    Critique,
    Fact,
    FactCheckItem,
    FactCheckReport,
    PlanStep,
    QueryList,
    ResearchBundle,
    RouterPlan,
    Source,
)
from ..utils.json_extract import parse_model
from ..utils.text_utils import first_sentences, lang_directive, smart_truncate
from ..utils.token_budget import select_sources_within_budget
from .llm_client import TextGenerator
from .retrieval import expand_queries as rule_based_queries
from .scheduler import CancellationToken
from .token_accountant import TokenAccountant

logger = structlog.get_logger(__name__)

ChunkCallback = Callable[[str], Awaitable[None]]

NO_RESEARCH_FACT = "(no external research)"

RECENCY_RE = re.compile(
    r"\b(today|latest|news|breaking|just now|this week|yesterday|price|score)\b|今天|最新|新聞|新闻",
    re.IGNORECASE,
)

_MAX_PROMPT_SOURCES = 8
_MAX_PROMPT_FACTS = 12
_SNIPPET_CHARS = 400
_CONTENT_CHARS = 1200
_EXTRACT_PROMPT_TOKENS = 6000


# ────────────────────────────────────────────────────────────
#  Plan helpers
# ────────────────────────────────────────────────────────────

def implies_recency(question: str) -> bool:
    return bool(RECENCY_RE.search(question or ""))


def apply_recency_rule(plan: RouterPlan, question: str) -> RouterPlan:
    """Questions about recent events always search the web as news."""
    if implies_recency(question) and (plan.topic != "news" or not plan.use_web):
        return plan.model_copy(update={"topic": "news", "use_web": True})
    return plan


def heuristic_plan(question: str) -> RouterPlan:
    """Deterministic plan used when routing times out or fails."""
    return apply_recency_rule(RouterPlan(use_web=True, topic="general", max_iterations=1), question)


def apply_speed_mode(plan: RouterPlan, speed_mode: str) -> RouterPlan:
    preset = config.MODE_PRESETS[speed_mode]
    steps = list(plan.step_sequence)
    fact_checker = PlanStep.FACT_CHECKER.value
    if preset.run_verify and fact_checker not in steps:
        # Verification belongs right after writing
        idx = steps.index(PlanStep.WRITER.value) + 1 if PlanStep.WRITER.value in steps else len(steps)
        steps.insert(idx, fact_checker)
    elif not preset.run_verify:
        steps = [s for s in steps if s != fact_checker]
    iterations = min(preset.max_iterations, max(preset.min_iterations, plan.max_iterations))
    return plan.model_copy(update={"step_sequence": steps, "max_iterations": iterations})


# ────────────────────────────────────────────────────────────
#  Fallback content
# ────────────────────────────────────────────────────────────

def placeholder_bundle(sources: Sequence[Source] = (), statement: str = NO_RESEARCH_FACT) -> ResearchBundle:
    return ResearchBundle(sources=list(sources), facts=[Fact(statement=statement)])


def facts_from_text(text: str, sources: Sequence[Source], limit: int = 5) -> List[Fact]:
    """First sentences of a free-text reply, attributed to the top source."""
    ref = sources[0].url if sources else ""
    return [Fact(statement=s, source_ref=ref) for s in first_sentences(text, limit)]


def facts_from_snippets(sources: Sequence[Source], limit: int = 5) -> List[Fact]:
    facts = []
    for source in sources:
        statement = (source.snippet or source.title or "").strip()
        if statement:
            facts.append(
                Fact(
                    statement=smart_truncate(statement, 280),
                    source_ref=source.url,
                    published_date=source.published_date,
                )
            )
        if len(facts) >= limit:
            break
    return facts


def is_placeholder(fact: Fact) -> bool:
    return fact.statement == NO_RESEARCH_FACT


def concise_fallback_draft(question: str, bundle: ResearchBundle) -> str:
    """Plain answer built from facts and references without the model."""
    lines = [f"**{question.strip()}**", "", "Concise version (the full write-up ran out of time).", ""]
    facts = [f for f in bundle.facts if not is_placeholder(f)]
    if facts:
        lines.append("Highlights:")
        for fact in facts[:_MAX_PROMPT_FACTS]:
            suffix = f" ({fact.source_ref})" if fact.source_ref else ""
            lines.append(f"- {fact.statement}{suffix}")
    else:
        lines.append("No verified findings were collected for this question.")
    if bundle.sources:
        lines.extend(["", "References:"])
        for i, source in enumerate(bundle.sources[:_MAX_PROMPT_SOURCES], 1):
            lines.append(f"{i}. {source.title or source.url} - {source.url}")
    return "\n".join(lines)


def _format_sources(sources: Sequence[Source], limit: int = _MAX_PROMPT_SOURCES) -> str:
    blocks = []
    for i, s in enumerate(sources[:limit], 1):
        parts = [f"[{i}] {s.title or s.url}", f"URL: {s.url}"]
        if s.published_date:
            parts.append(f"Published: {s.published_date}")
        if s.snippet:
            parts.append(f"Snippet: {smart_truncate(s.snippet, _SNIPPET_CHARS)}")
        if s.content:
            parts.append(f"Content: {smart_truncate(s.content, _CONTENT_CHARS)}")
        blocks.append("\n".join(parts))
    return "\n\n".join(blocks) or "(no sources)"


def _format_facts(facts: Sequence[Fact], limit: int = _MAX_PROMPT_FACTS) -> str:
    rows = []
    for f in facts[:limit]:
        ref = f" [{f.source_ref}]" if f.source_ref else ""
        rows.append(f"- {f.statement}{ref}")
    return "\n".join(rows) or "- (none)"


# ────────────────────────────────────────────────────────────
#  Agents
# ────────────────────────────────────────────────────────────

class ResearchAgents:
    """LLM-backed stage workers for one run."""

    def __init__(
        self,
        llm: TextGenerator,
        accountant: TokenAccountant,
        *,
        lang: str = "auto",
    ):
        self.llm = llm
        self.accountant = accountant
        self.lang = lang

    async def _call(
        self,
        stage: str,
        system_prompt: str,
        user_prompt: str,
        token: Optional[CancellationToken],
        *,
        model: str,
        temperature: float,
        max_tokens: Optional[int] = None,
        structured: bool = False,
    ) -> str:
        if token is not None:
            token.raise_if_cancelled()
        usage: Dict[str, int] = {}
        text = await self.llm.generate(
            system_prompt,
            user_prompt,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            structured_output=structured,
            on_usage=usage.update,
        )
        self.accountant.record_text(stage, f"{system_prompt}\n{user_prompt}", text or "", usage=usage)
        return text or ""

    # ── Plan ────────────────────────────────────────────────

    async def plan(self, question: str, token: Optional[CancellationToken] = None) -> RouterPlan:
        system = (
            "You are a research router. Reply with JSON only: "
            '{"useWeb": bool, "topic": "general"|"news"|"code"|"math"|"hci"|"research", '
            '"steps": ["Researcher","Analyst","Writer","FactChecker","Critic"], "maxIterations": 1-3}. '
            "If the question implies recency (today, latest, news), set topic to news and useWeb to true."
        )
        raw = await self._call(
            "plan", system, f"Question: {question}", token,
            model=config.ROUTER_MODEL, temperature=config.ROUTER_TEMPERATURE, structured=True,
        )
        try:
            plan = parse_model(raw, RouterPlan)
        except ParseFailure:
            logger.warning("Router reply unparseable; using heuristic plan")
            plan = heuristic_plan(question)
        return apply_recency_rule(plan, question)

    # ── Retrieve ────────────────────────────────────────────

    async def expand_queries(
        self,
        question: str,
        token: Optional[CancellationToken] = None,
        max_queries: int = config.MAX_EXPANDED_QUERIES,
    ) -> List[str]:
        system = (
            "Rewrite the question into distinct web search queries. "
            'Reply with JSON only: {"queries": ["..."]}. Keep each under 12 words; '
            "include one English query even when the question is not in English."
        )
        raw = await self._call(
            "retrieve", system, f"Question: {question}\nMax queries: {max_queries}", token,
            model=config.ROUTER_MODEL, temperature=config.ROUTER_TEMPERATURE, structured=True,
        )
        try:
            queries = parse_model(raw, QueryList, list_field="queries").queries
        except ParseFailure:
            queries = []
        merged = [q.strip() for q in [question, *queries] if q and q.strip()]
        merged = list(dict.fromkeys(merged))
        return merged[:max_queries] if len(merged) > 1 else rule_based_queries(question, max_queries)

    # ── Extract ─────────────────────────────────────────────

    async def extract_facts(
        self,
        question: str,
        sources: Sequence[Source],
        token: Optional[CancellationToken] = None,
    ) -> ResearchBundle:
        if not sources:
            return placeholder_bundle()
        system = (
            "You extract verifiable facts from sources. Reply with JSON only: "
            '{"facts": [{"statement": "...", "sourceRef": "<url>", "evidence": "<short quote>", '
            '"publishedDate": "<date or empty>"}]}. Use only the given sources; every fact cites one URL.'
        )
        selected = select_sources_within_budget(sources, _EXTRACT_PROMPT_TOKENS)
        user = f"Question: {question}\n\nSources:\n{_format_sources(selected)}"
        raw = await self._call(
            "extract", system, user, token,
            model=config.RESEARCHER_MODEL, temperature=config.RESEARCHER_TEMPERATURE, structured=True,
        )
        try:
            facts = parse_model(raw, ResearchBundle, list_field="facts").facts
        except ParseFailure:
            facts = []
        if not facts:
            facts = facts_from_text(raw, sources) or facts_from_snippets(sources)
            logger.info("Fact extraction fell back to heuristics", facts=len(facts))
        return ResearchBundle(sources=list(sources), facts=facts or [Fact(statement=NO_RESEARCH_FACT)])

    # ── Analyze ─────────────────────────────────────────────

    async def analyze(
        self,
        question: str,
        bundle: ResearchBundle,
        token: Optional[CancellationToken] = None,
    ) -> ResearchBundle:
        if all(is_placeholder(f) for f in bundle.facts):
            return bundle
        system = (
            "You are a research analyst. Merge duplicate facts, drop ones irrelevant to the question, "
            "and note conflicts. Reply with JSON only: "
            '{"facts": [{"statement": "...", "sourceRef": "<url>"}], "notes": "<2-4 sentence analysis>"}.'
        )
        user = f"Question: {question}\n\nFacts:\n{_format_facts(bundle.facts)}"
        raw = await self._call(
            "analyze", system, user, token,
            model=config.ANALYST_MODEL, temperature=config.RESEARCHER_TEMPERATURE, structured=True,
        )
        try:
            refined = parse_model(raw, ResearchBundle, list_field="facts")
        except ParseFailure:
            return bundle.model_copy(update={"notes": smart_truncate(raw, 600) or None})
        facts = refined.facts or bundle.facts
        return ResearchBundle(sources=bundle.sources, facts=facts, notes=refined.notes)

    # ── Write ───────────────────────────────────────────────

    def _writer_prompts(self, question: str, bundle: ResearchBundle):
        system = (
            "You are a careful research writer. Answer the question using the facts and sources. "
            "Cite sources inline as [n] matching the reference list and end with a 'References' section. "
            "Say plainly when evidence is thin. "
            + lang_directive(self.lang, question)
        )
        user = (
            f"Question: {question}\n\n"
            f"Analysis notes: {bundle.notes or '(none)'}\n\n"
            f"Facts:\n{_format_facts(bundle.facts)}\n\n"
            f"Sources:\n{_format_sources(bundle.sources)}"
        )
        return system, user

    async def write(
        self,
        question: str,
        bundle: ResearchBundle,
        token: Optional[CancellationToken] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> str:
        """Draft the answer; streams deltas through ``on_chunk`` when given."""
        system, user = self._writer_prompts(question, bundle)
        if on_chunk is None:
            return await self._call(
                "write", system, user, token,
                model=config.WRITER_MODEL, temperature=config.WRITER_TEMPERATURE,
                max_tokens=config.WRITER_MAX_TOKENS,
            )

        if token is not None:
            token.raise_if_cancelled()
        parts: List[str] = []
        usage: Dict[str, int] = {}
        async for delta in self.llm.generate_stream(
            system, user,
            model=config.WRITER_MODEL,
            temperature=config.WRITER_TEMPERATURE,
            max_tokens=config.WRITER_MAX_TOKENS,
            on_usage=usage.update,
        ):
            if token is not None:
                token.raise_if_cancelled()
            parts.append(delta)
            await on_chunk(delta)
        text = "".join(parts)
        self.accountant.record_text("write", f"{system}\n{user}", text, usage=usage)
        return text

    # ── Verify ──────────────────────────────────────────────

    async def extract_claims(
        self,
        draft: str,
        token: Optional[CancellationToken] = None,
        max_claims: int = config.FACTCHECK_CLAIMS,
    ) -> List[str]:
        system = (
            "List the most important checkable factual claims in the text. "
            f'Reply with JSON only: {{"claims": ["..."]}} with at most {max_claims} items.'
        )
        raw = await self._call(
            "verify", system, smart_truncate(draft, 4000), token,
            model=config.VERIFIER_MODEL, temperature=config.CRITIC_TEMPERATURE, structured=True,
        )
        try:
            claims = parse_model(raw, ClaimList, list_field="claims").claims
        except ParseFailure:
            claims = first_sentences(draft, max_claims, min_chars=40)
        return [c.strip() for c in claims if c and c.strip()][:max_claims]

    async def judge_claims(
        self,
        claims: Sequence[str],
        evidence: Sequence[Sequence[Source]],
        token: Optional[CancellationToken] = None,
    ) -> FactCheckReport:
        system = (
            "You are a fact checker. For each claim decide SUPPORTED, WEAK, NO_EVIDENCE or CONTRADICTED "
            "using only its evidence. Reply with JSON only: "
            '{"claims": [{"claim": "...", "verdict": "...", "citations": ["<url>"], "notes": "..."}]}.'
        )
        blocks = []
        for i, (claim, sources) in enumerate(zip(claims, evidence), 1):
            blocks.append(f"Claim {i}: {claim}\nEvidence:\n{_format_sources(sources, limit=4)}")
        raw = await self._call(
            "verify", system, "\n\n".join(blocks), token,
            model=config.VERIFIER_MODEL, temperature=config.CRITIC_TEMPERATURE, structured=True,
        )
        try:
            report = parse_model(raw, FactCheckReport, list_field="claims")
        except ParseFailure:
            report = FactCheckReport(claims=[FactCheckItem(claim=c, verdict="WEAK") for c in claims])
        return report

    async def revise_for_fact_check(
        self,
        question: str,
        draft: str,
        report: FactCheckReport,
        token: Optional[CancellationToken] = None,
    ) -> str:
        flagged = "\n".join(
            f"- [{item.verdict}] {item.claim}" + (f" ({item.notes})" if item.notes else "")
            for item in report.claims
            if item.verdict != "SUPPORTED"
        )
        system = (
            "Revise the answer so unsupported or contradicted claims are removed, qualified or corrected. "
            "Keep supported content and citations. Return only the revised answer. "
            + lang_directive(self.lang, question)
        )
        user = f"Question: {question}\n\nFlagged claims:\n{flagged}\n\nAnswer:\n{draft}"
        revised = await self._call(
            "verify", system, user, token,
            model=config.WRITER_MODEL, temperature=config.WRITER_TEMPERATURE, max_tokens=config.WRITER_MAX_TOKENS,
        )
        return revised.strip() or draft

    # ── Critique ────────────────────────────────────────────

    async def critique(
        self,
        question: str,
        draft: str,
        token: Optional[CancellationToken] = None,
    ) -> Critique:
        system = (
            "You review research answers for accuracy, coverage and clarity. Reply with JSON only: "
            '{"verdict": "approve"|"revise", "issues": ["..."], "suggestions": ["..."], '
            '"inlineEdits": "<optional full corrected answer>"}.'
        )
        raw = await self._call(
            "critique", system, f"Question: {question}\n\nAnswer:\n{smart_truncate(draft, 6000)}", token,
            model=config.CRITIC_MODEL, temperature=config.CRITIC_TEMPERATURE, structured=True,
        )
        try:
            return parse_model(raw, Critique)
        except ParseFailure:
            logger.info("Critique unparseable; treating as approval")
            return Critique(verdict="approve")

    async def rewrite(
        self,
        question: str,
        draft: str,
        critique: Critique,
        bundle: ResearchBundle,
        token: Optional[CancellationToken] = None,
    ) -> str:
        feedback = "\n".join(
            [f"- issue: {i}" for i in critique.issues] + [f"- suggestion: {s}" for s in critique.suggestions]
        )
        system = (
            "Rewrite the answer addressing the reviewer feedback. Keep citations consistent with the sources. "
            "Return only the rewritten answer. "
            + lang_directive(self.lang, question)
        )
        user = (
            f"Question: {question}\n\nFeedback:\n{feedback or '- tighten and clarify'}\n\n"
            f"Facts:\n{_format_facts(bundle.facts)}\n\nAnswer:\n{draft}"
        )
        rewritten = await self._call(
            "critique", system, user, token,
            model=config.WRITER_MODEL, temperature=config.WRITER_TEMPERATURE, max_tokens=config.WRITER_MAX_TOKENS,
        )
        return rewritten.strip() or draft
