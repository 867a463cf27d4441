"""
End-to-end runs of the research orchestrator against fake collaborators.
"""

import asyncio

import pytest

from research_pipeline.core.config import Settings
from research_pipeline.core.errors import FatalConfigError, LLMError, RunCancelledError
from research_pipeline.services.agents import NO_RESEARCH_FACT
from research_pipeline.services.events import RecordingEventSink
from research_pipeline.services.orchestrator import ResearchOrchestrator, build_orchestrator

from .conftest import FakeSearch, FakeTextGenerator


def _index(names, event):
    return names.index(event)


class TestFastNewsRun:
    @pytest.mark.asyncio
    async def test_event_order_and_skipped_verification(self, orchestrator, llm, search, sink):
        settings = Settings(speed_mode="fast", lang="en", min_foreign_sources=0)
        outcome = await orchestrator.run("What is the latest news on AI chips?", settings, emit=sink)

        names = sink.names()
        assert _index(names, "plan") < _index(names, "sources") < _index(names, "facts")
        assert _index(names, "facts") < _index(names, "draft") < _index(names, "tokens") < _index(names, "done")
        assert names[-1] == "done"
        assert "factcheck" not in names
        assert "critique" not in names
        assert "writer" in names

        assert outcome.plan.topic == "news"
        assert outcome.plan.use_web is True
        assert outcome.plan.max_iterations == 1
        assert "FactChecker" not in outcome.plan.step_sequence
        assert outcome.fact_check is None
        assert any(call["topic"] == "news" and call["days"] for call in search.calls)
        assert "claims" not in llm.calls

    @pytest.mark.asyncio
    async def test_streamed_chunks_reassemble_the_draft(self, orchestrator, sink):
        settings = Settings(speed_mode="fast", lang="en", min_foreign_sources=0)
        outcome = await orchestrator.run("Who leads AI chip shipments?", settings, emit=sink)

        chunks = [p["chunk"] for p in sink.payloads("writer")]
        assert "".join(chunks).strip() == outcome.draft.strip()
        assert sink.payloads("draft")[0]["text"] == outcome.draft

    @pytest.mark.asyncio
    async def test_token_usage_reported(self, orchestrator, sink):
        settings = Settings(speed_mode="fast", lang="en", min_foreign_sources=0)
        outcome = await orchestrator.run("Who leads AI chip shipments?", settings, emit=sink)

        tokens = sink.payloads("tokens")[0]
        assert tokens["total_tokens"] > 0
        assert tokens["total_tokens"] == outcome.usage.total_tokens
        assert {"plan", "extract", "write"} <= set(tokens["by_stage"])


class TestDeadlines:
    @pytest.mark.asyncio
    async def test_tiny_deadline_completes_through_plan_fallback(self, search, fetcher, resources, sink):
        llm = FakeTextGenerator(delays={"plan": 5.0})
        orchestrator = ResearchOrchestrator(llm, search, fetcher, resources=resources)
        settings = Settings(speed_mode="balanced", lang="en", time_limit_ms=1, stage_min_ms=800, min_foreign_sources=0)

        outcome = await orchestrator.run("How do heat pumps work?", settings, emit=sink)

        assert sink.names()[-1] == "done"
        assert "plan" in llm.cancelled
        assert outcome.plan.topic == "general"
        codes = [w["code"] for w in outcome.meta["warnings"]]
        assert "stage_timeout" in codes
        assert "verify_skipped" in codes
        assert "factcheck" not in sink.names()
        # Deadline already passed: the critique loop never starts
        assert "critique" not in sink.names()
        assert outcome.meta["stages"]["plan"]["status"] == "fallback"

    @pytest.mark.asyncio
    async def test_bounded_short_deadline_chunks_writer_output(self, orchestrator, sink):
        settings = Settings(speed_mode="fast", lang="en", time_limit_ms=5000, min_foreign_sources=0)
        outcome = await orchestrator.run("Who leads AI chip shipments?", settings, emit=sink)

        chunks = [p["chunk"] for p in sink.payloads("writer")]
        assert all(len(c) <= 50 for c in chunks)
        assert "".join(chunks) == outcome.draft


class TestDegradedStages:
    @pytest.mark.asyncio
    async def test_empty_search_yields_placeholder_fact(self, llm, fetcher, resources, sink, settings):
        orchestrator = ResearchOrchestrator(llm, FakeSearch(results=[]), fetcher, resources=resources)
        outcome = await orchestrator.run("Obscure question with no results", settings, emit=sink)

        assert sink.payloads("sources")[0]["sources"] == []
        assert [f.statement for f in outcome.bundle.facts] == [NO_RESEARCH_FACT]
        assert "extract" not in llm.calls
        assert sink.names()[-1] == "done"

    @pytest.mark.asyncio
    async def test_failed_analysis_keeps_extracted_bundle(self, search, fetcher, resources, sink, settings):
        llm = FakeTextGenerator(replies={"analyze": LLMError("provider down")})
        orchestrator = ResearchOrchestrator(llm, search, fetcher, resources=resources)
        outcome = await orchestrator.run("Who leads AI chip shipments?", settings, emit=sink)

        errors = sink.payloads("error")
        assert errors and errors[0]["stage"] == "analyze"
        assert errors[0]["fatal"] is False
        assert len(outcome.bundle.facts) == 2
        assert outcome.degraded
        assert sink.names()[-1] == "done"

    @pytest.mark.asyncio
    async def test_no_web_setting_skips_retrieval(self, orchestrator, search, sink):
        settings = Settings(speed_mode="fast", lang="en", use_web=False)
        outcome = await orchestrator.run("Explain CRDTs", settings, emit=sink)

        assert search.calls == []
        assert outcome.plan.use_web is False
        assert outcome.sources == []

    @pytest.mark.asyncio
    async def test_unparseable_extraction_falls_back_to_sentences(self, search, fetcher, resources, sink, settings):
        llm = FakeTextGenerator(
            replies={"extract": "Nvidia shipped the most accelerators last year. AMD grew its share as well."}
        )
        orchestrator = ResearchOrchestrator(llm, search, fetcher, resources=resources)
        await orchestrator.run("Who leads AI chip shipments?", settings, emit=sink)

        facts = sink.payloads("facts")[0]["facts"]
        assert facts[0]["statement"].startswith("Nvidia shipped")
        assert facts[0]["source_ref"] == "https://www.reuters.com/tech/ai-chips"


class TestVerifyAndCritique:
    @pytest.mark.asyncio
    async def test_contradicted_claim_triggers_rewrite(self, search, fetcher, resources, sink, settings):
        llm = FakeTextGenerator(
            replies={"judge": {"claims": [{"claim": "Nvidia leads AI accelerator shipments.", "verdict": "CONTRADICTED"}]}}
        )
        orchestrator = ResearchOrchestrator(llm, search, fetcher, resources=resources)
        outcome = await orchestrator.run("Who leads AI chip shipments?", settings, emit=sink)

        assert "factcheck" in sink.names()
        assert outcome.fact_check.needs_revision
        assert outcome.draft == "Revised answer."
        assert any(call["max_results"] == 6 for call in search.calls)

    @pytest.mark.asyncio
    async def test_long_inline_edit_replaces_draft(self, search, fetcher, resources, sink, settings):
        edit = "A fully corrected answer that is comfortably longer than fifty characters."
        llm = FakeTextGenerator(replies={"critique": {"verdict": "revise", "inlineEdits": edit}})
        orchestrator = ResearchOrchestrator(llm, search, fetcher, resources=resources)
        outcome = await orchestrator.run("Who leads AI chip shipments?", settings, emit=sink)

        assert outcome.draft == edit
        assert len(outcome.critiques) == 1
        assert "rewrite" not in llm.calls

    @pytest.mark.asyncio
    async def test_revise_verdict_rewrites_until_iterations_exhausted(self, search, fetcher, resources, sink):
        llm = FakeTextGenerator(replies={"critique": {"verdict": "revise", "issues": ["too vague"]}})
        orchestrator = ResearchOrchestrator(llm, search, fetcher, resources=resources)
        settings = Settings(speed_mode="thorough", lang="en", min_foreign_sources=0)
        outcome = await orchestrator.run("Who leads AI chip shipments?", settings, emit=sink)

        assert outcome.plan.max_iterations == 2
        assert len(outcome.critiques) == 2
        assert llm.calls.count("rewrite") == 2
        assert outcome.draft == "Rewritten answer."
        assert [p["round"] for p in sink.payloads("critique")] == [1, 2]

    @pytest.mark.asyncio
    async def test_credibility_event_precedes_tokens(self, orchestrator, sink, settings):
        outcome = await orchestrator.run("Who leads AI chip shipments?", settings, emit=sink)

        names = sink.names()
        assert _index(names, "credibility") < _index(names, "tokens")
        assert 0 <= outcome.credibility.score.overall <= 100
        assert outcome.credibility.cross_validation


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_event_aborts_run(self, search, fetcher, resources, sink, settings):
        llm = FakeTextGenerator(delays={"write": 10.0})
        orchestrator = ResearchOrchestrator(llm, search, fetcher, resources=resources)
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.1, cancel.set)

        with pytest.raises(RunCancelledError) as exc_info:
            await orchestrator.run("Who leads AI chip shipments?", settings, emit=sink, cancel_event=cancel)

        assert exc_info.value.stage == "write"
        assert "write" in llm.cancelled
        assert sink.names()[-1] == "error"
        assert "done" not in sink.names()

    @pytest.mark.asyncio
    async def test_cancelling_the_task_reports_fatal_error(self, search, fetcher, resources, sink, settings):
        llm = FakeTextGenerator(delays={"write": 10.0})
        orchestrator = ResearchOrchestrator(llm, search, fetcher, resources=resources)
        task = asyncio.ensure_future(orchestrator.run("Who leads AI chip shipments?", settings, emit=sink))
        await asyncio.sleep(0.1)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert "write" in llm.cancelled
        assert sink.names()[-1] == "error"
        assert sink.payloads("error")[-1] == {"stage": "write", "message": "cancelled", "fatal": True}
        assert "done" not in sink.names()

    @pytest.mark.asyncio
    async def test_unset_cancel_event_does_not_interfere(self, orchestrator, sink, settings):
        outcome = await orchestrator.run(
            "Who leads AI chip shipments?", settings, emit=sink, cancel_event=asyncio.Event()
        )
        assert outcome.draft
        assert sink.names()[-1] == "done"


class TestBuildOrchestrator:
    def test_missing_api_key_is_fatal(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(FatalConfigError):
            build_orchestrator()


class FlakySink(RecordingEventSink):
    """Records events but raises on the named ones."""

    def __init__(self, failing):
        super().__init__()
        self.failing = set(failing)

    def emit(self, event, payload):
        super().emit(event, payload)
        if event in self.failing:
            raise ConnectionResetError(f"client went away during {event}")


class TestSinkFailures:
    @pytest.mark.asyncio
    async def test_failing_sink_outside_stages_does_not_abort(self, orchestrator, settings):
        sink = FlakySink({"plan", "sources", "draft", "tokens", "done"})
        outcome = await orchestrator.run("Who leads AI chip shipments?", settings, emit=sink)

        assert outcome.draft
        assert sink.names()[-1] == "done"
        assert not any(w["code"] == "stage_failure" for w in outcome.meta.get("warnings", []))

    @pytest.mark.asyncio
    async def test_failing_writer_chunks_keep_streamed_draft(self, orchestrator, llm, settings):
        sink = FlakySink({"writer"})
        outcome = await orchestrator.run("Who leads AI chip shipments?", settings, emit=sink)

        assert outcome.meta["stages"]["write"]["status"] == "completed"
        written = sink.payloads("draft")[0]["text"]
        assert written.strip() == llm.replies["write"]
        assert "Concise version" not in written


class TestProviderUsage:
    @pytest.mark.asyncio
    async def test_reported_usage_replaces_estimates(self, search, fetcher, resources, sink):
        llm = FakeTextGenerator(usage={"prompt_tokens": 100, "completion_tokens": 20})
        orchestrator = ResearchOrchestrator(llm, search, fetcher, resources=resources)
        settings = Settings(speed_mode="fast", lang="en", min_foreign_sources=0)
        await orchestrator.run("Who leads AI chip shipments?", settings, emit=sink)

        tokens = sink.payloads("tokens")[0]
        assert tokens["prompt_tokens"] == 100 * len(llm.calls)
        assert tokens["completion_tokens"] == 20 * len(llm.calls)
        assert tokens["by_stage"]["plan"] == 120
        assert tokens["by_stage"]["write"] == 120
