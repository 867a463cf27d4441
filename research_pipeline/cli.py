"""
Command-line entry point: run one research question and stream the answer.
"""

import argparse
import asyncio
import json
import re
import sys
from typing import List, Optional

import structlog

from .core.config import Settings
from .core.errors import FatalConfigError, RunCancelledError
from .logging_config import configure_logging
from .services.events import CallbackEventSink, EventType, RecordingEventSink
from .services.orchestrator import PipelineResources, ResearchOutcome, build_orchestrator

logger = structlog.get_logger(__name__)

EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$", re.IGNORECASE)
_UNIT_MS = {"ms": 1, "s": 1000, "m": 60_000, "h": 3_600_000}


def parse_duration_to_ms(value: str) -> int:
    """``"30s"`` → 30000, ``"2m"`` → 120000, ``"500ms"`` → 500; bare numbers are milliseconds."""
    match = _DURATION_RE.match(value or "")
    if not match:
        raise argparse.ArgumentTypeError(f"invalid duration: {value!r} (use e.g. 500ms, 30s, 2m)")
    amount, unit = match.groups()
    return int(float(amount) * _UNIT_MS[(unit or "ms").lower()])


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="research-pipeline",
        description="Answer a question with a deadline-bounded research pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s "What changed in the EU AI Act this week?"
  %(prog)s "量子電腦最新進展" --mode thorough --lang zh-TW
  %(prog)s "Explain CRDTs" --no-web --time-limit 30s --json
        """,
    )
    parser.add_argument("question", help="Research question")
    parser.add_argument(
        "--mode",
        choices=["fast", "balanced", "thorough"],
        default=None,
        help="Speed mode (default: SPEED_MODE or balanced)",
    )
    parser.add_argument(
        "--lang",
        choices=["auto", "en", "zh-TW", "ja", "ko"],
        default=None,
        help="Answer language (default: OUTPUT_LANG or auto)",
    )
    parser.add_argument("--no-web", action="store_true", help="Answer without web search")
    parser.add_argument(
        "--time-limit",
        type=parse_duration_to_ms,
        default=None,
        metavar="DURATION",
        help="Overall deadline, e.g. 500ms, 30s, 2m; bare numbers are milliseconds (default: MAX_TIME_MS or none)",
    )
    parser.add_argument("--no-expand", action="store_true", help="Disable search query expansion")
    parser.add_argument("--json", action="store_true", help="Print the full result as JSON instead of streaming")
    parser.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    overrides = {
        "speed_mode": args.mode,
        "lang": args.lang,
        "time_limit_ms": args.time_limit,
    }
    if args.no_web:
        overrides["use_web"] = False
    if args.no_expand:
        overrides["query_expansion"] = False
    return Settings.from_env(**overrides)


def _print_event(event: str, payload: dict) -> None:
    if event == EventType.WRITER.value:
        sys.stdout.write(payload.get("chunk", ""))
        sys.stdout.flush()
    elif event == EventType.STAGE.value:
        sys.stderr.write(f"[{payload.get('stage')}]\n")
    elif event == EventType.ERROR.value:
        sys.stderr.write(f"! {payload.get('stage')}: {payload.get('message')}\n")


def _print_summary(outcome: ResearchOutcome) -> None:
    lines = ["", ""]
    if outcome.credibility is not None:
        score = outcome.credibility.score
        lines.append(f"Credibility: {score.overall}/100 ({outcome.credibility.uncertainty.recommendation.value})")
        lines.extend(f"  - {w}" for w in score.warnings)
    lines.append(f"Sources: {len(outcome.sources)}  Tokens: {outcome.usage.total_tokens}  Time: {outcome.elapsed_ms}ms")
    if outcome.degraded:
        lines.append("Some stages used fallbacks: " + ", ".join(w["code"] for w in outcome.meta.get("warnings", [])))
    print("\n".join(lines))


async def _run(args: argparse.Namespace) -> int:
    settings = settings_from_args(args)
    resources = PipelineResources()
    orchestrator = build_orchestrator(resources)
    sink = RecordingEventSink() if args.json else CallbackEventSink(_print_event)
    try:
        outcome = await orchestrator.run(args.question, settings, emit=sink)
    finally:
        await orchestrator.aclose()
        await resources.aclose()
    if args.json:
        print(json.dumps(outcome.to_dict(), ensure_ascii=False, indent=2))
    else:
        _print_summary(outcome)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level)
    try:
        return asyncio.run(_run(args))
    except FatalConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except (KeyboardInterrupt, RunCancelledError):
        print("\nInterrupted", file=sys.stderr)
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
