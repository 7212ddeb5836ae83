"""
Small shared helpers (time, dates, list normalization).
"""
from __future__ import annotations

import calendar
from collections.abc import Iterable
from datetime import date, datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp; all DateTime columns are stored without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_months(d: date, months: int) -> date:
    """Calendar-month add, clamping the day to the end of the target month."""
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def add_years(d: date, years: int) -> date:
    return add_months(d, years * 12)


def parse_iso_date(s: str | None) -> date | None:
    if not s:
        return None
    s = s.strip()
    if not s:
        return None
    return date.fromisoformat(s)


def dedupe(values: Iterable) -> list:
    """Order-preserving de-duplication."""
    seen: set = set()
    out: list = []
    for v in values:
        if v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out


def iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
