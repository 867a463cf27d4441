"""
Structured-output extraction from noisy model text.

Each strategy takes raw text and returns the decoded JSON value or ``None``;
:func:`try_parse_json` walks them in order and the first present result wins.
:func:`parse_model` additionally requires the value to validate against a
pydantic model, so a strategy that decodes the wrong shape does not stop the
search.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable, Optional, Sequence, Type, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from ..core.errors import ParseFailure

logger = structlog.get_logger(__name__)

M = TypeVar("M", bound=BaseModel)
Strategy = Callable[[str], Optional[Any]]

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)


def parse_strict(text: str) -> Optional[Any]:
    try:
        return json.loads(text.strip())
    except (TypeError, ValueError):
        return None


def parse_code_block(text: str) -> Optional[Any]:
    for match in _FENCE_RE.finditer(text):
        value = parse_strict(match.group(1))
        if value is not None:
            return value
    return None


def _balanced_span(text: str, opener: str, closer: str) -> Optional[str]:
    """Return the first balanced ``opener..closer`` span, skipping string literals."""
    start = text.find(opener)
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == opener:
                depth += 1
            elif ch == closer:
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        # Unbalanced from here; try the next opener
        start = text.find(opener, start + 1)
    return None


def parse_braced_object(text: str) -> Optional[Any]:
    span = _balanced_span(text, "{", "}")
    return parse_strict(span) if span else None


def parse_bracketed_array(text: str) -> Optional[Any]:
    span = _balanced_span(text, "[", "]")
    return parse_strict(span) if span else None


DEFAULT_STRATEGIES: Sequence[Strategy] = (
    parse_strict,
    parse_code_block,
    parse_braced_object,
    parse_bracketed_array,
)


def try_parse_json(text: str, strategies: Sequence[Strategy] = DEFAULT_STRATEGIES) -> Optional[Any]:
    if not text:
        return None
    for strategy in strategies:
        value = strategy(text)
        if value is not None:
            return value
    return None


def parse_model(
    text: str,
    model: Type[M],
    *,
    list_field: Optional[str] = None,
    strategies: Sequence[Strategy] = DEFAULT_STRATEGIES,
) -> M:
    """Decode ``text`` into ``model`` using the first strategy that validates.

    Args:
        text: Raw model output
        model: Target pydantic model
        list_field: When a strategy yields a bare list, wrap it as
            ``{list_field: value}`` before validating
        strategies: Ordered extraction strategies

    Raises:
        ParseFailure: No strategy produced a value that validates
    """
    for strategy in strategies:
        value = strategy(text or "")
        if value is None:
            continue
        if isinstance(value, list) and list_field:
            value = {list_field: value}
        if not isinstance(value, dict):
            continue
        try:
            return model.model_validate(value)
        except ValidationError as exc:
            logger.debug(
                "Extraction strategy produced invalid shape",
                strategy=strategy.__name__,
                target=model.__name__,
                errors=exc.error_count(),
            )
    raise ParseFailure(model.__name__, raw=(text or "")[:500])
