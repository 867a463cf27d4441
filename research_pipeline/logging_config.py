"""Centralised structured logging setup for the research pipeline.

:func:`configure_logging` sets up *structlog* with a JSON pipeline (or a
console renderer when ``LOG_PRETTY=1``) and bridges stdlib logging through the
same processors so third-party libraries (aiohttp, openai) share the format.

Call :func:`configure_logging` once at process start (the CLI does this).
Library modules should call :pyfunc:`structlog.get_logger()` directly and
never re-configure the library.
"""

from __future__ import annotations

import logging
import os
from typing import Dict, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars

__all__ = [
    "configure_logging",
    "bind_run_context",
    "clear_run_context",
    "get_logger",
]


def configure_logging(force: bool = False, level: Optional[str] = None) -> None:  # noqa: D401
    """Setup structlog + stdlib bridging exactly once.

    Args:
        force: When True, reconfigure even if previously configured. Use only
               inside isolated scripts/tests that need a different renderer.
        level: Explicit level name; defaults to ``LOG_LEVEL`` or INFO.
    """

    configured = getattr(structlog, "_is_configured", False)  # type: ignore[attr-defined]
    if configured and not force:
        return

    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()

    dev_mode = os.getenv("LOG_PRETTY", "0").lower() in {"1", "true", "yes"}
    if dev_mode:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[structlog.contextvars.merge_contextvars],
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    # Logs go to stderr so streamed answers on stdout stay clean
    root_logger = logging.getLogger()
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level, logging.INFO))

    structlog.configure(
        processors=shared_processors + [renderer],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    setattr(structlog, "_is_configured", True)  # type: ignore[attr-defined]


def bind_run_context(run_id: Optional[str] = None, **extra: str) -> None:
    """Bind run identifiers into structlog contextvars for subsequent logs.

    Only provided keys are updated; safe to call repeatedly.
    """
    payload: Dict[str, str] = {k: v for k, v in extra.items() if v}
    if run_id:
        payload["run_id"] = run_id
    if payload:
        bind_contextvars(**payload)


def clear_run_context() -> None:
    clear_contextvars()


def get_logger(name: Optional[str] = None):
    """Return a structlog logger; ensures configuration first."""
    configure_logging()
    return structlog.get_logger(name) if name else structlog.get_logger()
