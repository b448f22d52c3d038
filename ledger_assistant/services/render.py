"""Deterministic text answers over a validated snapshot.

Every renderer returns a plain result dict ``{ok, numeric, text, meta}``. Misses
(no such day, empty period, unknown category) come back as ``ok=False`` with a
diagnostic naming the missing date key or range; nothing here raises for
routine data gaps.
"""
from __future__ import annotations

import structlog
from pydantic import ValidationError

from ..config import settings
from ..pipeline.categories import UNCATEGORIZED, WITHDRAWAL_CATEGORY, fuzzy_matches
from ..pipeline.facts import (
    aggregate,
    compute_deterministic_facts,
    day_has_activity,
    days_between,
    ledger_rows,
)
from ..pipeline.periods import clamp_period
from ..pipeline.validation import op_count
from ..schemas import Intent, RenderResult
from ..utils import (
    coerce_float,
    fmt_money,
    fmt_percent,
    fmt_signed_money,
    is_date_key,
    month_bounds,
    parse_date_key,
    to_dotted_date,
    to_ru_date_label,
)

log = structlog.get_logger()

SEPARATOR = "----------------"
SCOPE_LABELS = {"open": "открытые счета", "hidden": "скрытые счета", "all": "все счета"}


def _result(ok: bool, text: str, numeric: bool = True, meta: dict | None = None) -> dict:
    return RenderResult(ok=ok, numeric=numeric, text=text, meta=meta).model_dump()


def find_day(snapshot: dict, date_key) -> dict | None:
    if not is_date_key(date_key):
        return None
    return next((d for d in snapshot["days"] if d["dateKey"] == date_key), None)


def _missing_day(snapshot: dict, date_key) -> dict:
    rng = snapshot["range"]
    text = (
        f"Не найден день {date_key or '?'} в snapshot. "
        f"Доступный диапазон: {rng['startDateKey']} — {rng['endDateKey']}."
    )
    return _result(False, text, meta={"dateKey": date_key})


def scoped_accounts(day: dict, scope: str) -> list[dict]:
    accounts = day.get("accountBalances") or []
    if scope == "open":
        return [a for a in accounts if a.get("isOpen") is True]
    if scope == "hidden":
        return [a for a in accounts if a.get("isOpen") is not True]
    return list(accounts)


def scoped_balance(day: dict, scope: str) -> float:
    return sum(a["balance"] for a in scoped_accounts(day, scope))


# ----- day block -----

def format_operation(item: dict, kind: str) -> str:
    if kind == "transfer":
        source = item.get("fromAccName") or "???"
        target = item.get("toAccName") or ("Вне системы" if item.get("isOutOfSystemTransfer") else "???")
        return f"{fmt_money(item.get('amount'))}: {source} → {target}"
    amount = abs(coerce_float(item.get("amount")))
    signed = -amount if kind in ("expense", "withdrawal") else amount
    default_cat = WITHDRAWAL_CATEGORY if kind == "withdrawal" else UNCATEGORIZED
    return " < ".join([
        fmt_signed_money(signed),
        item.get("accName") or "???",
        item.get("contName") or "---",
        item.get("projName") or "---",
        item.get("catName") or default_cat,
    ])


def _section(title: str, items: list[tuple[dict, str]]) -> list[str]:
    if not items:
        return []
    return [SEPARATOR, title] + [format_operation(item, kind) for item, kind in items]


def render_day_block(day: dict, scope: str = "all") -> str:
    accounts = scoped_accounts(day, scope)
    lists = day.get("lists") or {}
    totals = day.get("totals") or {}
    lines = [
        day.get("dateLabel") or to_ru_date_label(day["dateKey"]),
        f"Баланс общий: {fmt_money(sum(a['balance'] for a in accounts))}",
        SEPARATOR,
        "Остатки на счетах:",
    ]
    if accounts:
        lines.extend(f"{a['name']} — {fmt_money(a['balance'])}" for a in accounts)
    else:
        lines.append("Нет счетов по выбранному режиму.")
    lines += [
        SEPARATOR,
        f"Доход: +{fmt_money(totals.get('income'))}",
        f"Расход: -{fmt_money(totals.get('expense'))}",
    ]
    lines += _section("ДОХОДЫ", [(i, "income") for i in lists.get("income") or []])
    lines += _section(
        "РАСХОДЫ",
        [(i, "expense") for i in lists.get("expense") or []]
        + [(i, "withdrawal") for i in lists.get("withdrawal") or []],
    )
    lines += _section("ПЕРЕВОДЫ", [(i, "transfer") for i in lists.get("transfer") or []])
    return "\n".join(lines)


def _top_item(items: list[tuple[dict, str]]) -> tuple[dict, str] | None:
    candidates = [(item, kind) for item, kind in items if abs(coerce_float(item.get("amount"))) > 0]
    if not candidates:
        return None
    return max(candidates, key=lambda pair: abs(coerce_float(pair[0].get("amount"))))


def render_day_insights(day: dict, scope: str = "all") -> str:
    totals = day.get("totals") or {}
    income = coerce_float(totals.get("income"))
    expense = coerce_float(totals.get("expense"))
    net = income - expense
    liquidity = scoped_balance(day, scope)
    lists = day.get("lists") or {}

    lines = [SEPARATOR, "ВЫВОДЫ ПО ДНЮ", f"- Нетто дня: {fmt_signed_money(net)}"]
    if expense > 0:
        lines.append(f"- Покрытие расходов доходами дня: {fmt_percent(income / expense * 100)}")
    elif income > 0:
        lines.append("- Покрытие расходов доходами дня: расходов в этот день не было")
    else:
        lines.append("- Покрытие расходов доходами дня: движения по доходам/расходам не было")
    lines.append(f"- Ликвидность на конец дня ({SCOPE_LABELS[scope]}): {fmt_money(liquidity)}")

    top_income = _top_item([(i, "income") for i in lists.get("income") or []])
    if top_income:
        item = top_income[0]
        lines.append(
            f"- Крупнейший доход: {fmt_signed_money(abs(coerce_float(item.get('amount'))))} "
            f"({item.get('catName') or 'Доход'}, {item.get('accName') or '???'})"
        )
    top_expense = _top_item(
        [(i, "expense") for i in lists.get("expense") or []]
        + [(i, "withdrawal") for i in lists.get("withdrawal") or []]
    )
    if top_expense:
        item = top_expense[0]
        lines.append(
            f"- Крупнейший расход: {fmt_signed_money(-abs(coerce_float(item.get('amount'))))} "
            f"({item.get('catName') or 'Расход'}, {item.get('accName') or '???'})"
        )

    anomalies = aggregate([day])["anomalies"][: settings.day_anomalies_limit]
    if anomalies:
        text = "; ".join(f"{row['name']}: {fmt_money(row['gap'])}" for row in anomalies)
        lines.append(f"- Аномалии (расход > компенсации): {text}")
    else:
        lines.append("- Аномалии (расход > компенсации): не обнаружены")

    if expense > income and liquidity > 0:
        lines.append("- Совет: день убыточный по потоку, но ликвидность покрывает разрыв.")
    elif expense > income:
        lines.append("- Совет: день убыточный по потоку и без ликвидности, нужен перенос/покрытие.")
    else:
        lines.append("- Совет: критических действий не требуется.")
    return "\n".join(lines)


def _balance_on_date(snapshot: dict, intent: Intent, as_of_key: str, scope: str) -> dict:
    date_key = intent.dateKey or as_of_key
    day = find_day(snapshot, date_key)
    if day is None:
        return _missing_day(snapshot, date_key)
    text = "\n".join([render_day_block(day, scope), render_day_insights(day, scope)])
    return _result(True, text, meta={"dateKey": day["dateKey"], "scope": scope})


# ----- upcoming -----

def _day_operation_lines(day: dict) -> list[str]:
    lists = day.get("lists") or {}
    pairs = []
    for kind in ("income", "expense", "withdrawal", "transfer"):
        pairs.extend((item, kind) for item in lists.get(kind) or [])
    pairs.sort(key=lambda pair: -abs(coerce_float(pair[0].get("amount"))))
    return [format_operation(item, kind) for item, kind in pairs]


def render_upcoming(snapshot: dict, now_key: str, limit: int | None = None) -> str:
    now = now_key if is_date_key(now_key) else snapshot["range"]["startDateKey"]
    cap = max(1, limit or settings.upcoming_ops_limit)
    candidates = [d for d in snapshot["days"] if d["dateKey"] > now and day_has_activity(d)][:cap]
    if not candidates:
        return f"После {to_ru_date_label(now)} ближайшие операции в snapshot не найдены."

    lines = [f"Ближайшие операции после {to_ru_date_label(now)}:"]
    for day in candidates:
        totals = day.get("totals") or {}
        lines.append(
            f"- {day['dateLabel']}: операций {op_count(day)}, "
            f"доход +{fmt_money(totals.get('income'))}, расход -{fmt_money(totals.get('expense'))}"
        )
        lines.extend(f"  {line}" for line in _day_operation_lines(day)[: settings.upcoming_lines_per_day])
    return "\n".join(lines)


# ----- capacity / feasibility -----

def _days_from(snapshot: dict, date_key: str) -> list[dict]:
    return [d for d in snapshot["days"] if d["dateKey"] >= date_key]


def _min_balance(days: list[dict], scope: str) -> tuple[float, dict]:
    lowest = min(days, key=lambda d: (scoped_balance(d, scope), d["dateKey"]))
    return scoped_balance(lowest, scope), lowest


def _invest_capacity(snapshot: dict, intent: Intent, as_of_key: str) -> dict:
    date_key = intent.dateKey or as_of_key
    if find_day(snapshot, date_key) is None:
        return _missing_day(snapshot, date_key)
    scope = intent.scope
    horizon = _days_from(snapshot, date_key)
    min_balance, min_day = _min_balance(horizon, scope)
    capacity = max(0.0, min_balance)

    lines = []
    inflow = None
    if intent.basis == "inflows":
        window = [d for d in snapshot["days"] if as_of_key < d["dateKey"] <= date_key]
        inflow = sum(
            coerce_float(d["totals"].get("income")) - coerce_float(d["totals"].get("expense")) for d in window
        )
        capacity = max(0.0, min(inflow, capacity))

    lines.append(f"Можно вывести до {to_ru_date_label(date_key)} ({SCOPE_LABELS[scope]}): {fmt_money(capacity)}")
    lines.append(
        f"- Минимальный остаток с {to_ru_date_label(date_key)} по {to_ru_date_label(horizon[-1]['dateKey'])}: "
        f"{fmt_signed_money(min_balance)} ({min_day['dateLabel']})"
    )
    if inflow is not None:
        lines.append(
            f"- Чистый приток с {to_ru_date_label(as_of_key)} по {to_ru_date_label(date_key)}: {fmt_signed_money(inflow)}"
        )
    if capacity <= 0:
        lines.append("- Совет: свободных средств нет, вывод уведет остаток в минус.")
    else:
        lines.append("- Совет: сумма не уводит ни один будущий день в минус.")
    meta = {
        "dateKey": date_key,
        "scope": scope,
        "basis": intent.basis,
        "capacity": round(capacity, 2),
        "minBalance": round(min_balance, 2),
        "minDateKey": min_day["dateKey"],
    }
    return _result(True, "\n".join(lines), meta=meta)


def _expense_feasibility(snapshot: dict, intent: Intent, as_of_key: str) -> dict:
    amount = abs(coerce_float(intent.requestedAmount))
    if amount <= 0:
        return _result(False, "Не указана сумма расхода для проверки.", meta={"requestedAmount": intent.requestedAmount})
    date_key = intent.dateKey or as_of_key
    if find_day(snapshot, date_key) is None:
        return _missing_day(snapshot, date_key)
    scope = intent.scope
    horizon = _days_from(snapshot, date_key)
    min_balance, min_day = _min_balance(horizon, scope)
    margin = min_balance - amount
    affordable = margin >= 0
    first_negative = next((d for d in horizon if scoped_balance(d, scope) - amount < 0), None)

    lines = [
        f"Расход {fmt_money(amount)} на {to_ru_date_label(date_key)} ({SCOPE_LABELS[scope]}): "
        f"{'возможен' if affordable else 'невозможен'}.",
        f"- Минимальный остаток после расхода: {fmt_signed_money(margin)} ({min_day['dateLabel']})",
    ]
    if not affordable:
        lines.append(f"- Не хватает: {fmt_money(-margin)}")
        lines.append(f"- Первый день ухода в минус: {first_negative['dateLabel']}")
    meta = {
        "dateKey": date_key,
        "scope": scope,
        "requestedAmount": amount,
        "affordable": affordable,
        "margin": round(margin, 2),
        "firstNegativeDateKey": first_negative["dateKey"] if first_negative else None,
    }
    return _result(True, "\n".join(lines), meta=meta)


# ----- month-end forecast -----

def _target_month(snapshot: dict, intent: Intent, as_of_key: str) -> tuple[int, int]:
    if intent.targetMonth is not None:
        return intent.targetMonth.year, intent.targetMonth.month
    base = parse_date_key(as_of_key) or parse_date_key(snapshot["range"]["endDateKey"])
    return base.year, base.month


def _forecast_end_of_month(snapshot: dict, intent: Intent, as_of_key: str, scope: str) -> dict:
    year, month = _target_month(snapshot, intent, as_of_key)
    start_key, end_key = month_bounds(year, month)
    day = find_day(snapshot, end_key)
    if day is None:
        text = f"Нет dayKey {end_key} в snapshot; нужен диапазон {start_key} — {end_key}."
        return _result(False, text, meta={"targetDayKey": end_key, "monthStart": start_key})
    header = f"Прогноз балансов на конец месяца ({day['dateLabel']}, {SCOPE_LABELS[scope]}):"
    text = "\n\n".join([header, render_day_block(day, scope)])
    return _result(True, text, meta={"targetDayKey": end_key, "scope": scope})


# ----- category fact -----

def _category_span(snapshot: dict, intent: Intent, as_of_key: str) -> tuple[str, str]:
    if is_date_key(intent.startDateKey) and is_date_key(intent.endDateKey):
        start_key, end_key = intent.startDateKey, intent.endDateKey
    elif intent.targetMonth is not None:
        start_key, end_key = month_bounds(intent.targetMonth.year, intent.targetMonth.month)
    else:
        as_of = parse_date_key(as_of_key) or parse_date_key(snapshot["range"]["endDateKey"])
        start_key, end_key = month_bounds(as_of.year, as_of.month)
    return start_key, min(end_key, as_of_key)


def _category_fact(snapshot: dict, intent: Intent, as_of_key: str) -> dict:
    requested = (intent.categoryRaw or "").strip()
    if not requested:
        return _result(False, "Не указана категория для отчета.")

    start_key, end_key = _category_span(snapshot, intent, as_of_key)
    if start_key > end_key:
        text = f"Период по категории «{requested}» начинается после {as_of_key}: фактических данных еще нет."
        return _result(False, text, meta={"startDateKey": start_key, "asOfDateKey": as_of_key})
    period = clamp_period(start_key, end_key, snapshot)
    if period["noDataReason"]:
        text = (
            f"Нет данных за {to_dotted_date(start_key)} — {to_dotted_date(end_key)}: snapshot покрывает "
            f"{snapshot['range']['startDateKey']} — {snapshot['range']['endDateKey']}."
        )
        return _result(False, text, meta=period)

    span = f"{to_dotted_date(period['startDateKey'])} — {to_dotted_date(period['endDateKey'])}"
    days = days_between(snapshot, period["startDateKey"], period["endDateKey"])
    rows = [
        r for r in ledger_rows(days)
        if not r["synthetic"] and r["bucket"] != "internal_transfer" and fuzzy_matches(requested, r["category"])
    ]
    if not rows:
        return _result(False, f"Категория «{requested}» не найдена в snapshot за {span}.", meta=period)

    income = sum(r["amount"] for r in rows if r["kind"] == "income")
    expense = sum(r["amount"] for r in rows if r["kind"] != "income")
    names = sorted({r["category"] for r in rows})
    lines = [
        f"Категория «{', '.join(names)}» (факт): {span}",
        f"- Расход: -{fmt_money(expense)} (операций: {sum(1 for r in rows if r['kind'] != 'income')})",
    ]
    if income > 0:
        lines.append(f"- Доход: +{fmt_money(income)}")
        lines.append(f"- Нетто по категории: {fmt_signed_money(income - expense)}")
    if period["wasClampedToSnapshot"]:
        lines.append(
            f"- Запрошено {to_dotted_date(start_key)} — {to_dotted_date(end_key)}, "
            f"в snapshot есть только {span}."
        )
    meta = {
        **period,
        "categories": names,
        "income": round(income, 2),
        "expense": round(expense, 2),
    }
    return _result(True, "\n".join(lines), meta=meta)


# ----- generic facts -----

def build_deterministic_insights_block(facts: dict) -> str:
    period = facts["period"]
    if period.get("noDataReason"):
        rng = facts["range"]
        return "\n".join([
            "Детерминированные факты:",
            f"- Нет данных за период {period['startDateKey']} — {period['endDateKey']}: "
            f"snapshot покрывает {rng['startDateKey']} — {rng['endDateKey']}.",
        ])

    totals = facts["totals"]
    balances = facts["endBalances"]
    lines = [
        "Детерминированные факты:",
        f"- Период: {period['startDateLabel']} — {period['endDateLabel']} ({period['dayCount']} дн.)",
        f"- Доход: +{fmt_money(totals['income'])}",
        f"- Расход: -{fmt_money(totals['expense'])}",
        f"- Нетто: {fmt_signed_money(totals['net'])}",
    ]
    if facts["ownerDraw"]["amount"] > 0:
        lines.append(f"- Вывод средств (вне операционных): -{fmt_money(facts['ownerDraw']['amount'])}")
    if facts["offsetNetting"]["amount"] > 0:
        lines.append(f"- Взаимозачеты: {fmt_money(facts['offsetNetting']['amount'])}")
    lines.append(
        f"- Баланс на конец диапазона: {fmt_money(balances['total'])} "
        f"(открытые {fmt_money(balances['open'])}, скрытые {fmt_money(balances['hidden'])})"
    )
    if facts.get("nextObligation"):
        nxt = facts["nextObligation"]
        lines.append(f"- Ближайшее обязательство: {nxt['dateLabel']} — {fmt_money(nxt['amount'])}")
    if facts["anomalies"]:
        top = "; ".join(f"{row['name']}: {fmt_money(row['gap'])}" for row in facts["anomalies"][:3])
        lines.append(f"- Аномалии (расход > компенсации): {top}")
    else:
        lines.append("- Аномалии (расход > компенсации): не обнаружены")
    return "\n".join(lines)


def _insights(snapshot: dict, intent: Intent, as_of_key: str) -> dict:
    facts = compute_deterministic_facts(snapshot, as_of_key)
    text = build_deterministic_insights_block(facts)
    return _result(True, text, numeric=False, meta={"asOfDateKey": facts["asOfDateKey"], "facts": facts})


def _invalid_intent(exc: ValidationError) -> dict:
    errors = [
        {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
        for err in exc.errors()
    ]
    log.warning("intent_invalid", errors=errors)
    fields = ", ".join(err["loc"] for err in errors)
    return _result(False, f"Некорректные параметры intent: {fields}", meta={"errors": errors})


def answer_from_snapshot(snapshot: dict, intent, as_of_key: str | None = None) -> dict:
    if not isinstance(intent, Intent):
        try:
            intent = Intent.model_validate(intent or {})
        except ValidationError as exc:
            return _invalid_intent(exc)
    if not is_date_key(as_of_key):
        as_of_key = intent.dateKey if is_date_key(intent.dateKey) else snapshot["range"]["startDateKey"]

    log.debug("render_intent", intent=intent.type, as_of=as_of_key)
    kind = intent.type
    if kind == "BALANCE_ON_DATE":
        return _balance_on_date(snapshot, intent, as_of_key, intent.scope)
    if kind == "OPEN_BALANCES_ON_DATE":
        return _balance_on_date(snapshot, intent, as_of_key, "open")
    if kind == "UPCOMING_OPS":
        text = render_upcoming(snapshot, intent.dateKey or as_of_key)
        return _result(True, text, meta={"dateKey": intent.dateKey or as_of_key})
    if kind == "INVEST_CAPACITY":
        return _invest_capacity(snapshot, intent, as_of_key)
    if kind == "EXPENSE_FEASIBILITY":
        return _expense_feasibility(snapshot, intent, as_of_key)
    if kind == "FORECAST_END_OF_MONTH":
        return _forecast_end_of_month(snapshot, intent, as_of_key, intent.scope)
    if kind == "FORECAST_OPEN_END_OF_MONTH":
        return _forecast_end_of_month(snapshot, intent, as_of_key, "open")
    if kind == "CATEGORY_FACT_BY_CATEGORY":
        return _category_fact(snapshot, intent, as_of_key)
    return _insights(snapshot, intent, as_of_key)
