"""Ledger Q&A: deterministic answers first, audited model prose otherwise."""
from __future__ import annotations

from typing import Callable

import structlog

from ..pipeline.facts import compute_deterministic_facts
from ..pipeline.intents import parse_snapshot_intent
from ..pipeline.periods import resolve_comparison, resolve_period
from ..pipeline.validation import validate_snapshot
from ..utils import fmt_money, fmt_signed_money
from .audit import audit_answer, build_repair_instruction, detect_question_flags
from .render import answer_from_snapshot, build_deterministic_insights_block

log = structlog.get_logger()

# (system_prompt, user_prompt) -> answer text
Composer = Callable[[str, str], str]

SYSTEM_PROMPT = """\
Ты финансовый директор небольшого бизнеса. Пользователь задает вопрос о своих \
деньгах, а ты получаешь детерминированные факты, посчитанные по его учету.

Правила:
- Отвечай по-русски, коротко и по делу, без дисклеймеров.
- Используй только суммы из блока фактов. Не придумывай и не пересчитывай цифры.
- Суммы пиши целыми числами с пробелами между тысячами и знаком "т" (например, 12 500 т).
- Разделяй факт (уже случилось) и план (запланировано после даты отчета).
- Выводы средств и взаимозачеты не являются операционными расходами.
- Если данных за период нет, так и скажи.
"""

USER_PROMPT_TEMPLATE = """\
Вопрос: {question}

Дата отчета: {as_of}

{facts_block}

ФАКТ / ПЛАН
- Факт: доход +{fact_income}, расход -{fact_expense}, нетто {fact_net}
- План: доход +{plan_income}, расход -{plan_expense}, нетто {plan_net}

ЛИКВИДНОСТЬ
- Открытые счета сейчас: {open_now}; на конец диапазона: {open_end}
- Все счета сейчас: {total_now}; на конец диапазона: {total_end}
- Ближайшее обязательство: {next_obligation}
- Открытые счета после обязательства: {open_after}

МЕСЯЦ {month}
- Прогноз нетто месяца: {month_forecast_net} (факт {fact_month_net}, остаток плана {plan_remainder_net})

КРУПНЕЙШИЕ КАТЕГОРИИ РАСХОДОВ
{top_categories}
{comparison}"""

FALLBACK_HEADER = "Не удалось проверить ответ модели по цифрам. Ниже детерминированные факты."


def _extract_context(question: str, facts: dict) -> dict:
    """Flatten deterministic facts into prompt fields."""
    fact = facts.get("fact") or {}
    plan = facts.get("plan") or {}
    liquidity = facts.get("liquidity") or {}
    derived = facts.get("derived") or {}
    nxt = facts.get("nextObligation")

    top_lines = [f"  {row['name']}: {fmt_money(row['amount'])}" for row in facts.get("topExpenseCategories") or []]
    comparison_lines = []
    for period in facts.get("comparison") or []:
        if period.get("noDataReason"):
            comparison_lines.append(f"  {period['label']}: нет данных в snapshot")
            continue
        totals = period["totals"]
        comparison_lines.append(
            f"  {period['label']}: доход +{fmt_money(totals['income'])}, "
            f"расход -{fmt_money(totals['expense'])}, нетто {fmt_signed_money(totals['net'])}"
        )

    return {
        "question": str(question or "").strip(),
        "as_of": facts.get("asOfDateKey") or "unknown",
        "facts_block": build_deterministic_insights_block(facts),
        "fact_income": fmt_money(fact.get("totals", {}).get("income")),
        "fact_expense": fmt_money(fact.get("totals", {}).get("expense")),
        "fact_net": fmt_signed_money(fact.get("totals", {}).get("net")),
        "plan_income": fmt_money(plan.get("totals", {}).get("income")),
        "plan_expense": fmt_money(plan.get("totals", {}).get("expense")),
        "plan_net": fmt_signed_money(plan.get("totals", {}).get("net")),
        "open_now": fmt_money(liquidity.get("openNow")),
        "open_end": fmt_money(liquidity.get("openEnd")),
        "total_now": fmt_money(liquidity.get("totalNow")),
        "total_end": fmt_money(liquidity.get("totalEnd")),
        "next_obligation": f"{nxt['dateLabel']} — {fmt_money(nxt['amount'])}" if nxt else "нет",
        "open_after": fmt_money(liquidity.get("openAfterNextObligation")),
        "month": derived.get("month", ""),
        "month_forecast_net": fmt_signed_money(derived.get("monthForecastNet")),
        "fact_month_net": fmt_signed_money(derived.get("factNet")),
        "plan_remainder_net": fmt_signed_money(derived.get("planRemainderNet")),
        "top_categories": "\n".join(top_lines) if top_lines else "  Нет расходов",
        "comparison": "\nСРАВНЕНИЕ ПЕРИОДОВ\n" + "\n".join(comparison_lines) if comparison_lines else "",
    }


def build_user_prompt(question: str, facts: dict) -> str:
    return USER_PROMPT_TEMPLATE.format(**_extract_context(question, facts))


def parse_llm_output(raw) -> dict:
    text = str(raw or "").strip()
    if not text:
        return {"ok": False, "error": "empty_llm_output"}
    return {"ok": True, "text": text}


def _semantic_context(question: str, overrides: dict | None) -> dict:
    flags = detect_question_flags(question)
    if flags["asksForecastOrExtrapolation"]:
        response_intent = "forecast"
    elif flags["asksSingleAmount"]:
        response_intent = "fact"
    else:
        response_intent = "advisory"
    context = {"responseIntent": response_intent, "mode": "", "questionFlags": flags}
    context.update(overrides or {})
    return context


def _compose(composer: Composer, system: str, user: str) -> dict:
    try:
        raw = composer(system, user)
    except Exception:
        log.exception("composer_failed")
        raise
    return parse_llm_output(raw)


def _audited(composer: Composer, user_prompt: str, facts: dict, context: dict) -> tuple[dict, dict]:
    answer = _compose(composer, SYSTEM_PROMPT, user_prompt)
    audit = audit_answer(answer.get("text", ""), facts, context)
    return answer, audit


def answer_question(
    question: str,
    snapshot_raw,
    as_of_key: str,
    intent: dict | None = None,
    composer: Composer | None = None,
    detect_intent: bool = False,
    semantic_context: dict | None = None,
) -> dict:
    """Answer one ledger question.

    Args:
        question: Free-text question from the user.
        snapshot_raw: Snapshot JSON as received; validated here.
        as_of_key: "Today" date key splitting fact from plan.
        intent: Pre-classified intent; rendered deterministically when given.
        composer: Callable (system_prompt, user_prompt) -> text. Without one the
                  deterministic facts block is returned as is.
        detect_intent: Run the built-in intent parser when no intent is given.
        semantic_context: Overrides for the audit context (mode, responseIntent,
                          scenario).

    Returns:
        Dict with ok, numeric, text, source and, on the model path, audit and
        attempts.
    """
    validated = validate_snapshot(snapshot_raw)
    if not validated["ok"]:
        return {
            "ok": False,
            "numeric": False,
            "text": f"Snapshot отклонен: {validated['error']}",
            "source": "validation",
            "error": validated["error"],
        }
    snapshot = validated["snapshot"]

    if intent is None and detect_intent:
        parsed = parse_snapshot_intent(question, as_of_key, snapshot)
        if not parsed["needsLlm"]:
            intent = parsed
    if intent is not None:
        return {**answer_from_snapshot(snapshot, intent, as_of_key), "source": "deterministic"}

    period = resolve_period(question, as_of_key, snapshot)
    comparison = resolve_comparison(question, as_of_key, snapshot)
    facts = compute_deterministic_facts(snapshot, as_of_key, period, comparison)
    facts_block = build_deterministic_insights_block(facts)
    if composer is None:
        return {"ok": True, "numeric": False, "text": facts_block, "source": "facts", "facts": facts}

    context = _semantic_context(question, semantic_context)
    user_prompt = build_user_prompt(question, facts)
    answer, audit = _audited(composer, user_prompt, facts, context)
    if audit["ok"]:
        return {"ok": True, "numeric": False, "text": answer["text"], "source": "llm", "audit": audit, "attempts": 1}

    repair = build_repair_instruction(
        audit["errors"],
        audit["expected"],
        context.get("mode", ""),
        context.get("responseIntent", ""),
    )
    log.info("llm_answer_repair", errors=audit["errors"])
    answer, audit = _audited(composer, f"{user_prompt}\n\n{repair}", facts, context)
    if audit["ok"]:
        return {"ok": True, "numeric": False, "text": answer["text"], "source": "llm_repaired", "audit": audit, "attempts": 2}

    log.warning("llm_answer_rejected", errors=audit["errors"])
    return {
        "ok": False,
        "numeric": False,
        "text": f"{FALLBACK_HEADER}\n\n{facts_block}",
        "source": "fallback",
        "audit": audit,
        "attempts": 2,
    }
