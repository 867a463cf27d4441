"""
Date helpers for the recency and time-decay heuristics.

All parsing returns timezone-aware UTC datetimes or ``None``.
"""

import re
from datetime import date, datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional, Union


def safe_parse_date(raw: Optional[Union[str, datetime, date]]) -> Optional[datetime]:
    """
    Parse various date formats into timezone-aware datetime.

    Supports:
    - ISO format strings
    - RFC 2822 strings (``Mon, 14 Oct 2024 10:00:00 GMT``) as returned by news feeds
    - datetime/date objects
    - Year-only strings (YYYY)
    - Year-month strings (YYYY-MM)

    Args:
        raw: Input date in various formats

    Returns:
        Timezone-aware datetime or None if parsing fails
    """
    if raw is None:
        return None

    if isinstance(raw, datetime):
        if raw.tzinfo is None:
            return raw.replace(tzinfo=timezone.utc)
        return raw

    if isinstance(raw, date):
        return datetime(raw.year, raw.month, raw.day, tzinfo=timezone.utc)

    if not isinstance(raw, str):
        return None

    raw = raw.strip()
    if not raw:
        return None

    try:
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except ValueError:
        pass

    try:
        dt = parsedate_to_datetime(raw)
        if dt is not None:
            return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    except (TypeError, ValueError, IndexError):
        pass

    m = re.match(r"^(\d{4})$", raw)
    if m:
        return datetime(int(m.group(1)), 1, 1, tzinfo=timezone.utc)

    m = re.match(r"^(\d{4})-(\d{1,2})$", raw)
    if m:
        try:
            return datetime(int(m.group(1)), int(m.group(2)), 1, tzinfo=timezone.utc)
        except ValueError:
            return None

    return None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def age_in_days(
    raw: Optional[Union[str, datetime, date]], now: Optional[datetime] = None
) -> Optional[float]:
    """Days between ``raw`` and ``now`` (negative for future dates); ``None`` when undated or unparseable."""
    parsed = safe_parse_date(raw)
    if parsed is None:
        return None
    return ((now or utc_now()) - parsed).total_seconds() / 86400
