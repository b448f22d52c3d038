"""Numeric audit of model-composed answers.

Only arithmetic is checked: every money figure in the answer must be one of the
values derivable from the deterministic facts, and a handful of figures must be
present depending on what the question asks. Style is not policed.
"""
from __future__ import annotations

import re
from itertools import combinations

import structlog

from ..config import settings
from ..pipeline.periods import mentions_comparison, normalize_question
from ..schemas import AuditResult
from ..utils import coerce_float, round_half_up

log = structlog.get_logger()

_MONEY_RE = re.compile(
    r"(?<![\d.,])"
    r"(?:([+\-−]?\d{1,3}(?:[ \u00a0\u202f.]\d{3})+(?:,\d+)?)|([+\-−]?\d+(?:[.,]\d+)?))"
    r"\s*(?:тенге|тг|т|₸)(?![а-яёa-z])",
    re.IGNORECASE,
)
_GROUP_SEP_RE = re.compile(r"[ \u00a0\u202f.]")

_FORECAST_Q_RE = re.compile(r"(прогноз|спрогноз|будет|ожида|к концу|на конец|экстраполир|если так пойдет)")
_BALANCE_IMPACT_Q_RE = re.compile(r"((повлия|отраз|скажется).*(баланс|остат)|хватит ли|что останется|сколько останется)")
_PERIOD_ANALYTICS_Q_RE = re.compile(
    r"(за (месяц|период|неделю|квартал)|итог|структур|по категори|динамик|в этом месяце|прошл\w* месяц|за \w+ месяц)"
)
_SINGLE_AMOUNT_Q_RE = re.compile(r"(^сколько|какая сумма|какой (остаток|баланс)|одной цифрой)")
_CONDITIONAL_AMOUNT_Q_RE = re.compile(r"(сколько|какую сумму).*(если|при условии|с учетом)")

# Anchors that are amounts rather than balances or nets.
_AMOUNT_ANCHORS = ("next_obligation_amount", "scenario_life_spend")


def _normalize_money_token(grouped: str | None, plain: str | None) -> float | None:
    if grouped:
        text = _GROUP_SEP_RE.sub("", grouped)
    else:
        text = plain or ""
    text = text.replace("−", "-").replace(",", ".")
    try:
        return float(text)
    except ValueError:
        return None


def extract_money_numbers(text) -> list[dict]:
    out = []
    for match in _MONEY_RE.finditer(str(text or "")):
        value = _normalize_money_token(match.group(1), match.group(2))
        if value is None:
            continue
        token = match.group(1) or match.group(2)
        out.append({
            "raw": match.group(0),
            "value": value,
            "explicitSign": token[0] in "+-−",
            "index": match.start(),
        })
    return out


def unique_rounded(numbers) -> list[int]:
    seen = set()
    out = []
    for num in numbers:
        key = round_half_up(num)
        if key in seen:
            continue
        seen.add(key)
        out.append(key)
    return out


def unique_values(numbers) -> list[float]:
    """Distinct values at cent precision; matching runs on these, not on whole units."""
    seen = set()
    out = []
    for num in numbers:
        key = round(coerce_float(num), 2)
        if key in seen:
            continue
        seen.add(key)
        out.append(key)
    return out


def combination_sums(numbers, max_items: int | None = None) -> list[float]:
    values = [n for n in unique_values(numbers) if n > 0]
    top = settings.audit_combination_max_items if max_items is None else max_items
    sums = []
    for size in range(2, top + 1):
        sums.extend(sum(combo) for combo in combinations(values, size))
    return unique_values(sums)


def _num(mapping, *keys) -> float:
    val = mapping
    for key in keys:
        if not isinstance(val, dict):
            return 0.0
        val = val.get(key)
    return coerce_float(val)


def _rows(mapping, key) -> list[dict]:
    rows = (mapping or {}).get(key)
    return [r for r in rows if isinstance(r, dict)] if isinstance(rows, list) else []


def _operation_numbers(operations: list[dict]) -> list[float]:
    out = []
    for op in operations:
        out += [_num(op, "amount"), _num(op, "netAmount"), _num(op, "offsetAmount")]
        out += [_num(offset, "amount") for offset in _rows(op, "offsets")]
    return [n for n in out if n > 0]


def _comparison_numbers(periods: list[dict]) -> tuple[list[float], list[float]]:
    """(signed values, amounts) of a period comparison."""
    metrics = ("income", "expense", "net")
    signed = []
    amounts = []
    for period in periods:
        signed.append(_num(period, "totals", "net"))
        amounts += [_num(period, "totals", "income"), _num(period, "totals", "expense")]
        amounts += [_num(period, "ownerDraw", "amount"), _num(period, "offsetNetting", "amount")]
    for left, right in combinations(periods, 2):
        for metric in metrics:
            delta = _num(right, "totals", metric) - _num(left, "totals", metric)
            signed += [delta, -delta, abs(delta)]
    return signed, amounts


def detect_question_flags(question) -> dict:
    norm = normalize_question(question)
    return {
        "asksForecastOrExtrapolation": bool(_FORECAST_Q_RE.search(norm)),
        "asksBalanceImpact": bool(_BALANCE_IMPACT_Q_RE.search(norm)),
        "asksComparison": mentions_comparison(norm),
        "asksPeriodAnalytics": bool(_PERIOD_ANALYTICS_Q_RE.search(norm)),
        "asksSingleAmount": bool(_SINGLE_AMOUNT_Q_RE.search(norm)),
        "isDirectConditionalAmount": bool(_CONDITIONAL_AMOUNT_Q_RE.search(norm)),
    }


def build_expected(facts: dict, semantic_context: dict | None = None) -> dict:
    """Allowed and required money values for one audit call."""
    facts = facts or {}
    ctx = semantic_context or {}
    flags = ctx.get("questionFlags") or {}
    scenario = ctx.get("scenario") or {}
    liquidity = facts.get("liquidity") or {}
    derived = facts.get("derived") or {}
    operations = _rows(facts, "operations")
    comparison = _rows(facts, "comparison")

    response_intent = str(ctx.get("responseIntent") or "")
    mode = str(ctx.get("mode") or "")
    asks_forecast = bool(flags.get("asksForecastOrExtrapolation")) or response_intent == "forecast"
    has_totals = (
        _num(facts, "totals", "income") > 0
        or _num(facts, "totals", "expense") > 0
        or _num(facts, "totals", "net") != 0
    )

    anchors = {
        "open_now": _num(liquidity, "openNow"),
        "open_end": _num(liquidity, "openEnd"),
        "total_now": _num(liquidity, "totalNow"),
        "total_end": _num(liquidity, "totalEnd"),
        "next_obligation_amount": _num(liquidity, "nextObligationAmount"),
        "open_after_next_obligation": _num(liquidity, "openAfterNextObligation"),
        "next_expense_available_before": _num(liquidity, "availableBeforeExpense"),
        "next_expense_post_open": _num(liquidity, "postExpenseOpen"),
        "month_forecast_net": _num(derived, "monthForecastNet"),
        "fact_net": _num(derived, "factNet"),
        "plan_remainder_net": _num(derived, "planRemainderNet"),
        "scenario_life_spend": _num(scenario, "lifeSpend"),
        "scenario_free_capital": _num(scenario, "freeCapital"),
        "scenario_owner_cash_hidden_net": _num(scenario, "ownerCashNetHidden"),
    }

    offset_candidates = [
        n for n in unique_values([
            _num(facts, "offsetNetting", "amount"),
            _num(facts, "fact", "offsetNetting", "amount"),
            _num(facts, "plan", "offsetNetting", "amount"),
        ])
        if n > 0
    ]

    anomaly_numbers = []
    for row in _rows(facts, "anomalies"):
        anomaly_numbers += [_num(row, "gap"), _num(row, "income"), _num(row, "expense")]

    top_categories = [_num(row, "amount") for row in _rows(facts, "topExpenseCategories")]
    top_categories = [n for n in top_categories if n > 0]

    comparison_signed, comparison_amounts = _comparison_numbers(comparison)

    # Balances and nets keep their sign. Amounts may also be written as outflows ("-8 000 т").
    signed = (
        [v for k, v in anchors.items() if k not in _AMOUNT_ANCHORS]
        + [_num(facts, "totals", "net")]
        + [_num(facts, part, "totals", "net") for part in ("fact", "plan")]
        + [_num(facts, "endBalances", m) for m in ("open", "hidden", "total")]
        + comparison_signed
    )
    amounts = (
        [anchors[k] for k in _AMOUNT_ANCHORS]
        + [_num(facts, "totals", m) for m in ("income", "expense", "incomeNet")]
        + [_num(facts, part, "totals", m) for part in ("fact", "plan") for m in ("income", "expense")]
        + [_num(facts, part, key, "amount") for part in ("fact", "plan") for key in ("ownerDraw", "offsetNetting")]
        + [_num(facts, "nextObligation", "amount")]
        + [_num(facts, "ownerDraw", "amount"), _num(facts, "offsetNetting", "amount")]
        + [_num(row, "amount") for row in _rows(facts.get("ownerDraw"), "byCategory")]
        + [_num(row, "amount") for row in _rows(facts.get("offsetNetting"), "byCategory")]
        + _operation_numbers(operations)
        + top_categories
        + combination_sums(top_categories)
        + comparison_amounts
        + anomaly_numbers
    )
    allowed = unique_values(signed + amounts + [-abs(a) for a in amounts] + [0])

    required = []
    if response_intent == "fact" or flags.get("asksSingleAmount"):
        required.append({"name": "any_money_number", "value": None})
    anchor_values = [anchors["open_after_next_obligation"], anchors["open_end"]]
    if asks_forecast and (has_totals or operations or comparison or any(anchor_values)):
        required.append({"name": "any_money_number", "value": None})
        required.append({"name": "forecast_balance_anchor", "value": anchor_values})
    if flags.get("asksBalanceImpact"):
        required.append({"name": "balance_impact_anchor", "value": anchor_values})
        required.append({
            "name": "balance_impact_net",
            "value": [anchors["month_forecast_net"], anchors["fact_net"], anchors["plan_remainder_net"]],
        })
    if scenario.get("enabled") and scenario.get("hasLifeSpendConstraint") and flags.get("isDirectConditionalAmount"):
        required.append({"name": "scenario_free_capital", "value": anchors["scenario_free_capital"]})
    if (
        mode == "liquidity"
        and anchors["next_obligation_amount"] > 0
        and not flags.get("asksComparison")
        and response_intent != "status"
    ):
        required.append({
            "name": "next_obligation_or_open_after",
            "value": [anchors["next_obligation_amount"], anchors["open_after_next_obligation"]],
        })
    if flags.get("asksPeriodAnalytics") and has_totals:
        required.append({
            "name": "period_totals_any",
            "value": [_num(facts, "totals", m) for m in ("income", "expense", "net")],
        })
    if asks_forecast and offset_candidates:
        required.append({"name": "offset_netting_amount", "value": offset_candidates})

    return {
        "mode": mode,
        "responseIntent": response_intent,
        "periodAnalyticsMode": bool(flags.get("asksPeriodAnalytics")) and (has_totals or bool(operations)),
        "comparisonMode": len(comparison) >= 2,
        "asksForecastOrExtrapolation": asks_forecast,
        "anchors": {k: round(v, 2) for k, v in anchors.items()},
        "allowedNumbers": unique_rounded(allowed),
        "allowedValues": allowed,
        "required": _dedupe_required(required),
    }


def _required_key(item: dict) -> tuple:
    value = item["value"]
    if isinstance(value, list):
        return item["name"], tuple(round_half_up(v) for v in value)
    return item["name"], None if value is None else round_half_up(value)


def _dedupe_required(items: list[dict]) -> list[dict]:
    seen = set()
    out = []
    for item in items:
        key = _required_key(item)
        if key in seen:
            continue
        seen.add(key)
        out.append(item)
    return out


def _close(value: float, target: float) -> bool:
    return abs(value - target) < settings.audit_tolerance


def _allowed(item: dict, allowed: list[float]) -> bool:
    if item["explicitSign"]:
        return any(_close(item["value"], n) for n in allowed)
    # An unsigned figure names a magnitude: "убыток 2 300 т".
    return any(_close(item["value"], abs(n)) for n in allowed)


def _satisfies(required_value, observed: list[dict]) -> bool:
    # Presence only; signs are checked against the allowed values.
    candidates = required_value if isinstance(required_value, list) else [required_value]
    return any(_close(abs(obs["value"]), abs(coerce_float(c))) for c in candidates for obs in observed)


def audit_answer(answer_text, facts: dict, semantic_context: dict | None = None) -> dict:
    text = str(answer_text or "").strip()
    if not text:
        return AuditResult(ok=False, errors=["answer_text_empty"], warnings=[], expected={}, observed={}).model_dump()

    expected = build_expected(facts, semantic_context)
    observed = extract_money_numbers(text)
    errors = []
    warnings = []

    for req in expected["required"]:
        if req["name"] == "any_money_number":
            if not observed:
                errors.append("required_number_missing:any_money_number")
        elif not _satisfies(req["value"], observed):
            errors.append(f"required_number_missing:{req['name']}")

    allowed = expected["allowedValues"]
    for item in observed:
        if not _allowed(item, allowed):
            errors.append(f"number_mismatch:unexpected_money_value:{round_half_up(item['value'])}")

    if not observed and expected["responseIntent"] != "advisory":
        warnings.append("no_money_numbers_detected")

    if errors:
        log.info("audit_failed", errors=errors, observed=len(observed))
    return AuditResult(
        ok=not errors,
        errors=errors,
        warnings=warnings,
        expected=expected,
        observed={"moneyNumbers": [{"raw": n["raw"], "value": round_half_up(n["value"])} for n in observed]},
    ).model_dump()


def _required_text(item: dict) -> str:
    if item["name"] == "any_money_number":
        return "любая релевантная сумма"
    if isinstance(item["value"], list):
        return f"{item['name']}: {' или '.join(str(round_half_up(v)) for v in item['value'])}"
    return f"{item['name']}: {round_half_up(item['value'])}"


def build_repair_instruction(audit_errors, expected: dict | None = None, mode: str = "", response_intent: str = "") -> str:
    expected = expected or {}
    allowed = expected.get("allowedNumbers") or []
    required = [_required_text(item) for item in expected.get("required") or []]
    errors = list(audit_errors or [])
    lines = [
        "Ответ не прошел числовую проверку. Перепиши ответ естественным языком.",
        "Проверяется только математика, стиль не ограничивается.",
        f"Режим: {mode or ''}; intent: {response_intent or ''}.",
        "",
        "Правила:",
        "- Используй только суммы из списка допустимых.",
        "- Не добавляй новые денежные суммы, которых нет в списке.",
        "- Если вопрос про одну цифру, ответь одной короткой фразой.",
        "",
        f"Допустимые суммы ({settings.currency_marker}): {', '.join(str(n) for n in allowed) if allowed else 'нет'}",
        f"Обязательные суммы: {' | '.join(required) if required else 'нет'}",
        f"Ошибки: {'; '.join(errors) if errors else 'не указаны'}",
    ]
    return "\n".join(lines)
