from __future__ import annotations

import re

import structlog

from ..utils import is_date_key, parse_date_key, shift_date_key
from .categories import normalize_category
from .periods import MONTH_ALT, find_month_mentions, normalize_question, resolve_period

log = structlog.get_logger()

_ISO_DATE_RE = re.compile(r"\b(20\d{2})-(0[1-9]|1[0-2])-(0[1-9]|[12]\d|3[01])\b")
_DMY_RE = re.compile(r"\b([0-2]?\d|3[01])[./](0?\d|1[0-2])[./](\d{4}|\d{2})\b")
_VERBAL_DATE_RE = re.compile(rf"\b([0-2]?\d|3[01])\s+(?:{MONTH_ALT})(?:\s+(\d{{4}}))?")
_ISO_MONTH_RE = re.compile(r"\b(20\d{2})[-/.](0?[1-9]|1[0-2])\b")
_END_OF_MONTH_RE = re.compile(r"(конец месяца|к концу месяца|на конец месяца)")
_RELATIVE_RE = re.compile(r"\b(сегодня|вчера|позавчера)\b")

_UPCOMING_RE = re.compile(r"(ближайш.*операц|какие.*операц.*когда|что.*впереди)")
_FORECAST_RE = re.compile(r"(прогноз|кон(ец|цу|це|ца).*месяц)")
_OPEN_RE = re.compile(r"(открыт.*сч[её]т|на открытых счетах)")
_BALANCE_RE = re.compile(r"(сколько.*денег|что было|баланс|сколько было)")
_CATEGORY_RE = re.compile(r"(расход|доход|трат|потрат|ушло|категори)")

# Question words that never name a category on their own.
_CATEGORY_STOP_PREFIXES = (
    "расход", "доход", "трат", "потрат", "месяц", "сколько", "недел", "период",
    "категор", "сегодн", "вчера", "баланс", "деньг", "денег",
)
_WORD_RE = re.compile(r"[а-яa-z]{4,}")


def parse_date_key_from_question(question, as_of_key: str | None = None) -> str | None:
    text = str(question or "")
    norm = normalize_question(text)

    match = _ISO_DATE_RE.search(text)
    if match:
        key = "-".join(match.groups())
        return key if parse_date_key(key) else None

    match = _DMY_RE.search(text)
    if match:
        day, month, raw_year = match.groups()
        year = int(raw_year)
        if len(raw_year) == 2:
            year = 1900 + year if year >= 70 else 2000 + year
        key = f"{year:04d}-{int(month):02d}-{int(day):02d}"
        return key if parse_date_key(key) else None

    base = as_of_key if is_date_key(as_of_key) else None
    match = _VERBAL_DATE_RE.search(norm)
    if match:
        groups = match.groups()
        month = next(idx + 1 for idx, group in enumerate(groups[1:13]) if group)
        year = int(groups[13]) if groups[13] else (parse_date_key(base).year if base else None)
        if year is not None:
            key = f"{year:04d}-{month:02d}-{int(groups[0]):02d}"
            if parse_date_key(key):
                return key

    if base is None:
        return None
    relative = _RELATIVE_RE.search(norm)
    if not relative:
        return None
    offset = {"сегодня": 0, "вчера": -1, "позавчера": -2}[relative.group(1)]
    return shift_date_key(base, offset)


def parse_target_month(question, as_of_key: str | None = None) -> dict | None:
    text = str(question or "")
    norm = normalize_question(text)

    match = _ISO_MONTH_RE.search(text)
    if match:
        return {"year": int(match.group(1)), "month": int(match.group(2))}

    base = parse_date_key(as_of_key)
    mentions = find_month_mentions(norm)
    if mentions:
        year = mentions[0]["year"] or (base.year if base else None)
        if year is not None:
            return {"year": year, "month": mentions[0]["month"]}

    if base is not None and _END_OF_MONTH_RE.search(norm):
        return {"year": base.year, "month": base.month}
    return None


def snapshot_categories(snapshot: dict | None) -> list[str]:
    names = set()
    for day in (snapshot or {}).get("days") or []:
        lists = day.get("lists") or {}
        for kind in ("income", "expense", "withdrawal"):
            for item in lists.get(kind) or []:
                if item.get("catName"):
                    names.add(item["catName"])
    return sorted(names)


def _stem(word: str) -> str:
    return word[: max(4, len(word) - 2)]


def find_category_mention(question, categories: list[str]) -> str | None:
    """First snapshot category whose name contains a stem of a question word."""
    words = [
        normalize_category(w) for w in _WORD_RE.findall(normalize_question(question))
        if not w.startswith(_CATEGORY_STOP_PREFIXES)
    ]
    stems = [_stem(w) for w in words if len(w) >= 4]
    for name in categories:
        token = normalize_category(name)
        if token and any(stem in token for stem in stems):
            return name
    return None


def _intent(kind: str, date_key=None, target_month=None, numeric=True, needs_llm=False, **extra) -> dict:
    out = {
        "type": kind,
        "dateKey": date_key,
        "targetMonth": target_month,
        "numeric": numeric,
        "needsLlm": needs_llm,
    }
    out.update(extra)
    return out


def parse_snapshot_intent(question, as_of_key: str | None = None, snapshot: dict | None = None) -> dict:
    norm = normalize_question(question)
    date_key = parse_date_key_from_question(question, as_of_key)
    target_month = parse_target_month(question, as_of_key)
    relative = bool(_RELATIVE_RE.search(norm))
    category = None
    if _CATEGORY_RE.search(norm):
        category = find_category_mention(norm, snapshot_categories(snapshot))

    if _UPCOMING_RE.search(norm):
        intent = _intent("UPCOMING_OPS", date_key or as_of_key)
    elif _FORECAST_RE.search(norm):
        kind = "FORECAST_OPEN_END_OF_MONTH" if _OPEN_RE.search(norm) else "FORECAST_END_OF_MONTH"
        intent = _intent(kind, target_month=target_month)
    elif _OPEN_RE.search(norm):
        intent = _intent("OPEN_BALANCES_ON_DATE", date_key or as_of_key)
    elif category:
        period = resolve_period(question, as_of_key, snapshot) if as_of_key else None
        hint = {}
        if period and not period["noDataReason"]:
            hint = {"startDateKey": period["startDateKey"], "endDateKey": period["endDateKey"]}
        intent = _intent("CATEGORY_FACT_BY_CATEGORY", as_of_key, target_month, categoryRaw=category, **hint)
    elif _BALANCE_RE.search(norm) and (date_key or relative):
        intent = _intent("BALANCE_ON_DATE", date_key or as_of_key)
    else:
        intent = _intent("INSIGHTS", date_key or as_of_key, target_month, numeric=False, needs_llm=True)

    log.debug("intent_parsed", intent=intent["type"], date_key=intent["dateKey"])
    return intent
