from __future__ import annotations

import re
from datetime import date, timedelta

import structlog

from ..utils import (
    month_bounds,
    month_end,
    month_start,
    parse_date_key,
    shift_month,
    to_date_key,
)

log = structlog.get_logger()

# Month stems in calendar order; group index + 1 is the month number.
_MONTH_STEMS = [
    r"январ\w*",
    r"феврал\w*",
    r"март\w*",
    r"апрел\w*",
    r"ма[йяею]",
    r"июн\w*",
    r"июл\w*",
    r"август\w*",
    r"сентябр\w*",
    r"октябр\w*",
    r"ноябр\w*",
    r"декабр\w*",
]
MONTH_ALT = "|".join(f"({stem})" for stem in _MONTH_STEMS)
_YEAR_MARKER = r"(?:года|году|год|г\b\.?)"
# Year after a month name: four digits unless an amount or day word follows;
# two digits only as 'YY or before a year marker ("мая 25 года").
_MONTH_RE = re.compile(
    rf"\b(?:{MONTH_ALT})\b"
    rf"(?:\s*(?:(\d{{4}})(?!\d)(?!\s*(?:тыс|млн|тенге|тг|т\b|₸|числ))"
    rf"|['’](\d{{2}})(?!\d)"
    rf"|(\d{{2}})(?=\s*{_YEAR_MARKER}))"
    rf"(?:\s*{_YEAR_MARKER})?)?"
)

_ISO_RANGE_RE = re.compile(r"\bс\s+(\d{4}-\d{2}-\d{2})\s+(?:по|до)\s+(\d{4}-\d{2}-\d{2})\b")
_DOTTED_RANGE_RE = re.compile(
    r"\bс\s+(\d{1,2})\.(\d{1,2})(?:\.(\d{4}|\d{2}))?\s+(?:по|до)\s+(\d{1,2})\.(\d{1,2})(?:\.(\d{4}|\d{2}))?(?!\d)"
)
_DAY_BEFORE_YESTERDAY_RE = re.compile(r"\bпозавчера\b")
_YESTERDAY_RE = re.compile(r"\bвчера\b")
_LAST_MONTH_RE = re.compile(r"\b(?:прошл\w*|предыдущ\w*)\s+месяц\w*")
_CURRENT_MONTH_RE = re.compile(r"\b(?:в|за|по|на)\s+(?:этом|этот|текущем|текущий|нынешнем|нынешний)\s+месяц\w*")
_MONTH_SCOPE_RE = re.compile(r"\b(?:за|в|во|по|итог\w*|весь\s+месяц|целый\s+месяц|месяц\w*)\b")
_END_OF_MONTH_RE = re.compile(rf"\bкон(?:ец|ца|це|цу)\s+(?:(?:этого|текущего)\s+)?(?:месяц\w*|(?:{MONTH_ALT}))")
_WEEK_ORDINALS = {
    "перв": 1,
    "втор": 2,
    "трет": 3,
    "четверт": 4,
    "пят": 5,
}
_WEEK_RE = re.compile(
    rf"\b(?:(\d)\s*(?:-?(?:я|ю|й|ая|ую|ой))?|(перв|втор|трет|четверт|пят)\w*)\s+недел\w*"
    rf"(?:\s+(?:(?:этого|текущего)\s+месяца|месяца|(?:{MONTH_ALT})))?"
)
_COMPARISON_RE = re.compile(r"(сравн\w*|по\s+сравнению|против|\bvs\b|относительно|чем\s+в)")


def normalize_question(text) -> str:
    return re.sub(r"\s+", " ", str(text or "").lower().replace("ё", "е")).strip()


def _month_from_groups(groups) -> int | None:
    for idx, group in enumerate(groups):
        if group:
            return idx + 1
    return None


def _expand_year(raw: str | None) -> int | None:
    if not raw:
        return None
    year = int(raw)
    return 2000 + year if len(raw) == 2 else year


def infer_year(month: int, as_of: date) -> int:
    """Year of the nearest occurrence of a month named without a year.

    Asked in January, "октябрь" is last October while "март" is the coming one:
    only months more than half a year ahead fall back to the previous year.
    """
    return as_of.year - 1 if month - as_of.month > 6 else as_of.year


def find_month_mentions(text: str) -> list[dict]:
    """All non-overlapping month mentions, in text order."""
    mentions = []
    for match in _MONTH_RE.finditer(text):
        month = _month_from_groups(match.groups()[:12])
        if month is None:
            continue
        raw_year = match.group(13) or match.group(14) or match.group(15)
        mentions.append({"month": month, "year": _expand_year(raw_year), "index": match.start()})
    return mentions


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _month_span(year: int, month: int) -> tuple[date, date]:
    return month_start(year, month), month_end(year, month)


# Each rule takes (normalized text, as-of date) and returns (start, end) or None.

def _iso_range(text: str, as_of: date):
    match = _ISO_RANGE_RE.search(text)
    if not match:
        return None
    start = parse_date_key(match.group(1))
    end = parse_date_key(match.group(2))
    if start is None or end is None:
        return None
    return start, end


def _dotted_range(text: str, as_of: date):
    match = _DOTTED_RANGE_RE.search(text)
    if not match:
        return None
    d1, m1, y1, d2, m2, y2 = match.groups()
    end_year = _expand_year(y2) or as_of.year
    start_year = _expand_year(y1) or end_year
    start = _safe_date(start_year, int(m1), int(d1))
    end = _safe_date(end_year, int(m2), int(d2))
    if start is None or end is None:
        return None
    if start > end and not y1:
        # "с 20.12 по 10.01" crosses the new year
        start = _safe_date(start_year - 1, int(m1), int(d1))
        if start is None:
            return None
    return start, end


def _relative_day(text: str, as_of: date):
    if _DAY_BEFORE_YESTERDAY_RE.search(text):
        day = as_of - timedelta(days=2)
        return day, day
    if _YESTERDAY_RE.search(text):
        day = as_of - timedelta(days=1)
        return day, day
    return None


def _last_month(text: str, as_of: date):
    if not _LAST_MONTH_RE.search(text):
        return None
    year, month = shift_month(as_of.year, as_of.month, -1)
    return _month_span(year, month)


def _current_month(text: str, as_of: date):
    if not _CURRENT_MONTH_RE.search(text):
        return None
    return _month_span(as_of.year, as_of.month)


def _named_month(text: str, as_of: date):
    if _WEEK_RE.search(text):
        return None
    mentions = find_month_mentions(text)
    if not mentions or not _MONTH_SCOPE_RE.search(text):
        return None
    first = mentions[0]
    year = first["year"] or infer_year(first["month"], as_of)
    return _month_span(year, first["month"])


def _end_of_month(text: str, as_of: date):
    match = _END_OF_MONTH_RE.search(text)
    if not match:
        return None
    month = _month_from_groups(match.groups())
    if month is None:
        return _month_span(as_of.year, as_of.month)
    mentions = [m for m in find_month_mentions(text) if m["month"] == month]
    year = (mentions[0]["year"] if mentions else None) or infer_year(month, as_of)
    return _month_span(year, month)


def _week_of_month(text: str, as_of: date):
    match = _WEEK_RE.search(text)
    if not match:
        return None
    digit, ordinal = match.group(1), match.group(2)
    week = int(digit) if digit else _WEEK_ORDINALS.get(ordinal)
    if not week:
        return None
    month = _month_from_groups(match.groups()[2:14])
    if month is None:
        year, month = as_of.year, as_of.month
    else:
        mentions = [m for m in find_month_mentions(text) if m["month"] == month]
        year = (mentions[0]["year"] if mentions else None) or infer_year(month, as_of)
    first_day, last_day = _month_span(year, month)
    first_monday = first_day + timedelta(days=(7 - first_day.weekday()) % 7)
    start = first_monday + timedelta(days=7 * (week - 1))
    if start > last_day:
        return None
    return start, min(start + timedelta(days=6), last_day)


PERIOD_RULES = [
    ("iso_range", _iso_range),
    ("dotted_range", _dotted_range),
    ("relative_day", _relative_day),
    ("last_month", _last_month),
    ("current_month", _current_month),
    ("named_month", _named_month),
    ("end_of_month", _end_of_month),
    ("week_of_month", _week_of_month),
]


def clamp_period(start_key: str, end_key: str, snapshot: dict | None) -> dict:
    out = {
        "startDateKey": start_key,
        "endDateKey": end_key,
        "requestedStartDateKey": start_key,
        "requestedEndDateKey": end_key,
        "wasClampedToSnapshot": False,
        "noDataReason": None,
    }
    rng = (snapshot or {}).get("range") or {}
    lo, hi = rng.get("startDateKey"), rng.get("endDateKey")
    if not lo or not hi:
        return out
    if end_key < lo or start_key > hi:
        out["noDataReason"] = "outside_snapshot_range"
        out["snapshotStartDateKey"] = lo
        out["snapshotEndDateKey"] = hi
        return out
    clamped_start = max(start_key, lo)
    clamped_end = min(end_key, hi)
    if (clamped_start, clamped_end) != (start_key, end_key):
        out["startDateKey"] = clamped_start
        out["endDateKey"] = clamped_end
        out["wasClampedToSnapshot"] = True
    return out


def resolve_period(question, as_of_key: str, snapshot: dict | None = None) -> dict | None:
    as_of = parse_date_key(as_of_key)
    if as_of is None:
        return None
    text = normalize_question(question)
    if not text:
        return None
    for source, rule in PERIOD_RULES:
        span = rule(text, as_of)
        if span is None:
            continue
        start, end = sorted(span)
        result = clamp_period(to_date_key(start), to_date_key(end), snapshot)
        result["source"] = source
        log.debug("period_resolved", source=source, start=result["startDateKey"], end=result["endDateKey"])
        return result
    return None


def resolve_comparison(question, as_of_key: str, snapshot: dict | None = None) -> dict | None:
    as_of = parse_date_key(as_of_key)
    if as_of is None:
        return None
    text = normalize_question(question)
    mentions = find_month_mentions(text)
    keys = [(m["year"] or infer_year(m["month"], as_of), m["month"]) for m in mentions]
    if len(keys) == 1 and _COMPARISON_RE.search(text):
        keys.append((as_of.year, as_of.month))

    seen = set()
    periods = []
    for year, month in keys:
        if (year, month) in seen:
            continue
        seen.add((year, month))
        start_key, end_key = month_bounds(year, month)
        period = clamp_period(start_key, end_key, snapshot)
        period.update({"source": "comparison", "label": f"{year}-{month:02d}", "year": year, "month": month})
        periods.append(period)
    if len(periods) < 2:
        return None
    return {"periods": periods}


def mentions_comparison(question) -> bool:
    return bool(_COMPARISON_RE.search(normalize_question(question)))
