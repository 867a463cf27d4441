"""
Error logging and warning helpers shared by the stages.
"""

from __future__ import annotations

from typing import Any, Dict, List

import structlog

_logger = structlog.get_logger(__name__)


def log_exception(context: str, exc: BaseException, level: str = "warning", **fields: Any) -> None:
    """Log an exception with context and its type; never raises."""
    log = getattr(_logger, level, _logger.warning)
    log(context, error=str(exc), error_type=type(exc).__name__, **fields)


def add_warning(
    meta: Dict[str, Any] | None,
    code: str,
    message: str,
    **extra: Any
) -> Dict[str, Any]:
    """Append a warning to a metadata dict; creates the list if missing."""
    meta = meta or {}
    warnings: List[Dict[str, Any]] = list(meta.get("warnings", []) or [])
    warnings.append({"code": code, "message": message, **extra})
    meta["warnings"] = warnings
    meta["degraded"] = True
    return meta
