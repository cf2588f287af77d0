"""Temporal references. Free text in, a concrete date, range or ISO week out.

Everything here is pure: the caller passes ``today``, nothing reads the clock.

    resolve_date_reference("what did we do last week?", today)
        -> WeekRef(IsoWeek(2026, 41))
"""

from __future__ import annotations

import calendar
import re
from datetime import MAXYEAR, MINYEAR, date, timedelta

from persona_mind.models import DateRange, DateRef, DateReference, IsoWeek, RangeRef, WeekRef

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

_WEEK_TOKEN = re.compile(r"^(\d{4})-w0?(\d{1,2})$", re.ASCII)
_DAYS_AGO = re.compile(r"\b(\d+)\s+days?\s+ago\b")
_IN_DAYS = re.compile(r"\bin\s+(\d+)\s+days?\b")
_PAST_SPAN = re.compile(r"\b(?:last|past)\s+(\d+)\s+(days?|weeks?|months?)\b")
_NEXT_SPAN = re.compile(r"\bnext\s+(\d+)\s+(days?|weeks?|months?)\b")
_DAYS_BACK = re.compile(r"\b(\d+)\s+days?\s+back\b")
_WEEKDAY = re.compile(rf"\b(?:(next|last|this)\s+)?({'|'.join(WEEKDAYS)})\b")

_UNIT_DAYS = {"day": 1, "week": 7, "month": 30}  # months approximated

_SUMMARY_TRIGGERS = (
    "remember",
    "recap",
    "summary",
    "summarize",
    "what happened",
    "what did we",
    "what have we",
    "catch me up",
    "what were we",
    "what we talked",
    "my week",
    "this week",
)


def resolve_date_reference(query: str, today: date) -> DateReference | None:
    """Resolve the first temporal expression found in ``query``.

    Forms are tried in a fixed priority order; the first match wins:
    explicit ISO week, single day, week, month/year, day offset,
    weekday, N-unit span.
    """
    lowered = query.lower()

    week = parse_explicit_week(lowered)
    if week is not None:
        return WeekRef(week)

    if _has_phrase(lowered, "today"):
        return DateRef(today)
    if _has_phrase(lowered, "tomorrow"):
        return DateRef(today + timedelta(days=1))
    if _has_phrase(lowered, "yesterday"):
        return DateRef(today - timedelta(days=1))

    if _has_phrase(lowered, "this week"):
        return WeekRef(current_week(today))
    if _has_any(lowered, "last week", "past week", "previous week"):
        return WeekRef(previous_week(current_week(today)))
    if _has_phrase(lowered, "next week"):
        return WeekRef(following_week(current_week(today)))

    if _has_phrase(lowered, "this month"):
        return RangeRef(month_range(today.year, today.month))
    if _has_any(lowered, "last month", "past month", "previous month"):
        year, month = _shift_month(today.year, today.month, -1)
        return RangeRef(month_range(year, month))
    if _has_phrase(lowered, "next month"):
        year, month = _shift_month(today.year, today.month, 1)
        return RangeRef(month_range(year, month))

    if _has_phrase(lowered, "this year"):
        return RangeRef(year_range(today.year))
    if _has_any(lowered, "last year", "past year", "previous year"):
        return RangeRef(year_range(today.year - 1))
    if _has_phrase(lowered, "next year"):
        return RangeRef(year_range(today.year + 1))

    offset = parse_day_offset(lowered)
    if offset is not None:
        shifted = _shift(today, offset)
        if shifted is not None:
            return DateRef(shifted)

    weekday = parse_weekday_reference(lowered, today)
    if weekday is not None:
        return DateRef(weekday)

    span = parse_relative_range(lowered, today)
    if span is not None:
        return RangeRef(span)

    return None


# ── ISO weeks ─────────────────────────────────────────────────────────


def monday_of(year: int, week: int) -> date:
    """Monday of ISO ``week``. Week 1 is the week containing January 4th."""
    if not 1 <= week <= 53:
        raise ValueError(f"ISO week must be in 1..53, got {week}")
    jan4 = date(year, 1, 4)
    week1_monday = jan4 - timedelta(days=jan4.weekday())
    return week1_monday + timedelta(weeks=week - 1)


def iso_week_of(day: date) -> IsoWeek:
    iso = day.isocalendar()
    return IsoWeek(iso[0], iso[1])


def weeks_in_year(year: int) -> int:
    """52 or 53. December 28th always falls in the last ISO week."""
    return date(year, 12, 28).isocalendar()[1]


def current_week(today: date) -> IsoWeek:
    return iso_week_of(today)


def previous_week(week: IsoWeek) -> IsoWeek:
    if week.week == 1:
        return IsoWeek(week.year - 1, weeks_in_year(week.year - 1))
    return IsoWeek(week.year, week.week - 1)


def following_week(week: IsoWeek) -> IsoWeek:
    if week.week >= weeks_in_year(week.year):
        return IsoWeek(week.year + 1, 1)
    return IsoWeek(week.year, week.week + 1)


def parse_explicit_week(text: str) -> IsoWeek | None:
    """Find a token like ``2026-W4`` / ``2026-w04`` anywhere in ``text``."""
    for raw in text.lower().split():
        token = raw.strip("".join(_punctuation(raw)))
        match = _WEEK_TOKEN.match(token)
        if match is None:
            continue
        year, week = int(match.group(1)), int(match.group(2))
        if MINYEAR <= year <= MAXYEAR and 1 <= week <= weeks_in_year(year):
            return IsoWeek(year, week)
    return None


def resolve_query_week(query: str, today: date) -> IsoWeek:
    """Week a weekly-note lookup should target: explicit, last, else current."""
    lowered = query.lower()
    week = parse_explicit_week(lowered)
    if week is not None:
        return week
    if _has_phrase(lowered, "last week"):
        return previous_week(current_week(today))
    return current_week(today)


# ── Months and years ──────────────────────────────────────────────────


def month_range(year: int, month: int) -> DateRange:
    last_day = calendar.monthrange(year, month)[1]
    return DateRange(date(year, month, 1), date(year, month, last_day))


def year_range(year: int) -> DateRange:
    return DateRange(date(year, 1, 1), date(year, 12, 31))


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


# ── Relative expressions ──────────────────────────────────────────────


def parse_day_offset(text: str) -> int | None:
    """``"5 days ago"`` -> -5, ``"in 3 days"`` -> 3."""
    match = _DAYS_AGO.search(text)
    if match:
        return -int(match.group(1))
    match = _IN_DAYS.search(text)
    if match:
        return int(match.group(1))
    return None


def parse_weekday_reference(text: str, today: date) -> date | None:
    """Resolve ``monday`` / ``next friday`` / ``last sunday`` / ``this thursday``.

    A bare weekday name means the next future occurrence, so it is never
    ``today``.
    """
    match = _WEEKDAY.search(text)
    if match is None:
        return None
    qualifier = match.group(1)
    delta = WEEKDAYS.index(match.group(2)) - today.weekday()
    if qualifier == "last":
        if delta >= 0:
            delta -= 7
    elif qualifier == "this":
        if delta < 0:
            delta += 7
    elif delta <= 0:
        delta += 7
    return today + timedelta(days=delta)


def parse_relative_range(text: str, today: date) -> DateRange | None:
    """``"last 7 days"`` / ``"past 2 weeks"`` / ``"next 3 months"``."""
    match = _PAST_SPAN.search(text)
    if match:
        span = int(match.group(1)) * _UNIT_DAYS[match.group(2).rstrip("s")]
        start = _shift(today, -span)
        return DateRange(start, today) if start is not None else None
    match = _NEXT_SPAN.search(text)
    if match:
        span = int(match.group(1)) * _UNIT_DAYS[match.group(2).rstrip("s")]
        end = _shift(today, span)
        return DateRange(today, end) if end is not None else None
    return None


# ── Summary lookups ───────────────────────────────────────────────────


def has_summary_intent(query: str) -> bool:
    lowered = query.lower()
    return any(trigger in lowered for trigger in _SUMMARY_TRIGGERS)


def summary_range_for(query: str, today: date) -> DateRange | None:
    """Date range of conversation summaries a recap-style query asks about."""
    lowered = query.lower()
    if not has_summary_intent(lowered):
        return None
    reference = resolve_date_reference(lowered, today)
    if reference is not None:
        return reference.as_range()
    match = _DAYS_BACK.search(lowered)
    if match:
        start = _shift(today, -max(1, int(match.group(1))))
        if start is not None:
            return DateRange(start, today)
    return None


def date_in_range(day: date, span: DateRange) -> bool:
    return span.start <= day <= span.end


# ── Helpers ───────────────────────────────────────────────────────────


def _shift(day: date, days: int) -> date | None:
    """``day`` moved by ``days``, or None when that leaves the calendar."""
    try:
        return day + timedelta(days=days)
    except OverflowError:
        return None


def _has_phrase(text: str, phrase: str) -> bool:
    return re.search(rf"\b{re.escape(phrase)}\b", text) is not None


def _has_any(text: str, *phrases: str) -> bool:
    return any(_has_phrase(text, phrase) for phrase in phrases)


def _punctuation(token: str) -> set[str]:
    """Characters to strip from token edges: anything but alphanumerics and '-'."""
    return {c for c in token if not c.isalnum() and c != "-"}
