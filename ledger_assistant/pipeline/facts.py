from __future__ import annotations

from functools import reduce

from ..config import settings
from ..utils import coerce_float, parse_date_key, to_ru_date_label
from .categories import (
    OUT_OF_SYSTEM_TRANSFER_CATEGORY,
    UNCATEGORIZED,
    WITHDRAWAL_CATEGORY,
    build_vocabulary,
    classify_expense,
)
from .validation import op_count

_EMPTY_ACC = {
    "income": 0.0,
    "incomeNet": 0.0,
    "expense": 0.0,
    "transfers": 0.0,
    "ownerDraw": {},
    "offsetNetting": {},
    "categories": {},
}


def _money(val) -> float:
    return round(coerce_float(val), 2)


def _row(item: dict, date_key: str, kind: str, bucket: str, idx: int, category: str) -> dict:
    return {
        "id": str(item.get("id") or f"{date_key}_{kind}_{idx}"),
        "dateKey": date_key,
        "kind": kind,
        "bucket": bucket,
        "amount": abs(coerce_float(item.get("amount"))),
        "category": category,
        "account": str(item.get("accName") or ""),
        "counterparty": str(item.get("contName") or ""),
        "project": str(item.get("projName") or ""),
        "linkedParentId": str(item.get("linkedParentId") or ""),
        "offsets": list(item.get("offsets") or []),
        "fromAccName": str(item.get("fromAccName") or ""),
        "toAccName": str(item.get("toAccName") or ""),
        "synthetic": False,
    }


def _synthetic(date_key: str, kind: str, amount: float) -> dict:
    return {
        "id": f"{date_key}_{kind}_totals",
        "dateKey": date_key,
        "kind": kind,
        "bucket": "operational",
        "amount": abs(amount),
        "category": None,
        "offsets": [],
        "linkedParentId": "",
        "synthetic": True,
    }


def ledger_rows(days: list[dict], vocabulary: dict | None = None) -> list[dict]:
    """Flatten day lists into classified rows.

    Days without any list items but with stored totals become synthetic rows so
    their figures still reach the period totals.
    """
    vocab = vocabulary or build_vocabulary()
    rows = []
    for day in days:
        key = day["dateKey"]
        lists = day.get("lists") or {}
        if not op_count(day):
            totals = day.get("totals") or {}
            if coerce_float(totals.get("income")):
                rows.append(_synthetic(key, "income", coerce_float(totals.get("income"))))
            if coerce_float(totals.get("expense")):
                rows.append(_synthetic(key, "expense", coerce_float(totals.get("expense"))))
            continue
        for idx, item in enumerate(lists.get("income") or []):
            rows.append(_row(item, key, "income", "operational", idx, item.get("catName") or UNCATEGORIZED))
        for idx, item in enumerate(lists.get("expense") or []):
            bucket = classify_expense(item, vocab)
            rows.append(_row(item, key, "expense", bucket, idx, item.get("catName") or UNCATEGORIZED))
        for idx, item in enumerate(lists.get("withdrawal") or []):
            rows.append(_row(item, key, "withdrawal", "owner_draw", idx, item.get("catName") or WITHDRAWAL_CATEGORY))
        for idx, item in enumerate(lists.get("transfer") or []):
            if item.get("isOutOfSystemTransfer"):
                rows.append(_row(item, key, "transfer", "owner_draw", idx, OUT_OF_SYSTEM_TRANSFER_CATEGORY))
            else:
                rows.append(_row(item, key, "transfer", "internal_transfer", idx, "Перевод"))
    return reconcile_offsets(rows)


def reconcile_offsets(rows: list[dict]) -> list[dict]:
    linked = reduce(
        lambda acc, row: {**acc, row["linkedParentId"]: acc.get(row["linkedParentId"], 0.0) + row["amount"]},
        (row for row in rows if row["kind"] == "expense" and row["linkedParentId"]),
        {},
    )
    out = []
    for row in rows:
        if row["kind"] != "income":
            out.append(row)
            continue
        if row["id"] in linked:
            offset = linked[row["id"]]
        else:
            offset = sum(coerce_float(o.get("amount")) for o in row["offsets"])
        out.append({**row, "offsetAmount": offset, "netAmount": max(0.0, row["amount"] - offset)})
    return out


def _add(mapping: dict, key: str, amount: float) -> dict:
    return {**mapping, key: mapping.get(key, 0.0) + amount}


def _bump(categories: dict, key: str | None, field: str, amount: float) -> dict:
    if key is None:
        return categories
    rec = categories.get(key, {"income": 0.0, "expense": 0.0})
    return {**categories, key: {**rec, field: rec[field] + amount}}


def _fold(acc: dict, row: dict) -> dict:
    amount = row["amount"]
    if row["kind"] == "income":
        return {
            **acc,
            "income": acc["income"] + amount,
            "incomeNet": acc["incomeNet"] + row.get("netAmount", amount),
            "categories": _bump(acc["categories"], row["category"], "income", amount),
        }
    bucket = row["bucket"]
    if bucket == "operational":
        return {
            **acc,
            "expense": acc["expense"] + amount,
            "categories": _bump(acc["categories"], row["category"], "expense", amount),
        }
    if bucket == "owner_draw":
        return {**acc, "ownerDraw": _add(acc["ownerDraw"], row["category"], amount)}
    if bucket == "offset_netting":
        return {**acc, "offsetNetting": _add(acc["offsetNetting"], row["category"], amount)}
    return {**acc, "transfers": acc["transfers"] + amount}


def _by_category(mapping: dict) -> list[dict]:
    rows = [{"name": name, "amount": _money(amount)} for name, amount in mapping.items() if amount > 0]
    return sorted(rows, key=lambda r: (-r["amount"], r["name"]))


def _bucket(mapping: dict) -> dict:
    return {"amount": _money(sum(mapping.values())), "byCategory": _by_category(mapping)}


def _totals(acc: dict) -> dict:
    return {
        "income": _money(acc["income"]),
        "expense": _money(acc["expense"]),
        "net": _money(acc["income"] - acc["expense"]),
        "incomeNet": _money(acc["incomeNet"]),
    }


def find_anomalies(categories: dict, limit: int | None = None) -> list[dict]:
    rows = []
    for name, rec in categories.items():
        income, expense = rec["income"], rec["expense"]
        if income > 0 and expense > income:
            rows.append({"name": name, "income": _money(income), "expense": _money(expense), "gap": _money(expense - income)})
    rows.sort(key=lambda r: (-r["gap"], r["name"]))
    return rows[: settings.anomalies_limit if limit is None else limit]


def _public_operation(row: dict) -> dict:
    op = {
        "id": row["id"],
        "dateKey": row["dateKey"],
        "kind": row["kind"],
        "bucket": row["bucket"],
        "amount": _money(row["amount"]),
        "category": row["category"],
        "account": row.get("account", ""),
        "counterparty": row.get("counterparty", ""),
        "project": row.get("project", ""),
    }
    if row["kind"] == "income":
        op["offsetAmount"] = _money(row.get("offsetAmount"))
        op["netAmount"] = _money(row.get("netAmount", row["amount"]))
    if row["kind"] == "transfer":
        op["fromAccName"] = row.get("fromAccName", "")
        op["toAccName"] = row.get("toAccName", "")
    if row["linkedParentId"]:
        op["linkedParentId"] = row["linkedParentId"]
    return op


def top_operations(rows: list[dict], limit: int | None = None, enforce_floor: bool = True) -> list[dict]:
    floor = settings.operations_floor
    cap = floor if limit is None else int(limit)
    if enforce_floor:
        cap = max(cap, floor)
    # ISO date keys sort lexicographically == chronologically
    real = sorted((r for r in rows if not r["synthetic"]), key=lambda r: (-r["amount"], r["dateKey"]))
    return [_public_operation(r) for r in real[: max(cap, 0)]]


def balances_for_day(day: dict | None) -> dict:
    accounts = (day or {}).get("accountBalances") or []
    open_sum = sum(acc["balance"] for acc in accounts if acc.get("isOpen") is True)
    hidden_sum = sum(acc["balance"] for acc in accounts if acc.get("isOpen") is not True)
    return {"open": _money(open_sum), "hidden": _money(hidden_sum), "total": _money(open_sum + hidden_sum)}


def summarize(days: list[dict], vocabulary: dict | None = None) -> dict:
    acc = reduce(_fold, ledger_rows(days, vocabulary), _EMPTY_ACC)
    return {
        "totals": _totals(acc),
        "ownerDraw": _bucket(acc["ownerDraw"]),
        "offsetNetting": _bucket(acc["offsetNetting"]),
    }


def split_fact_plan(days: list[dict], as_of_key: str, vocabulary: dict | None = None) -> dict:
    return {
        "fact": summarize([d for d in days if d["dateKey"] <= as_of_key], vocabulary),
        "plan": summarize([d for d in days if d["dateKey"] > as_of_key], vocabulary),
    }


def aggregate(
    days: list[dict],
    as_of_key: str | None = None,
    operations_limit: int | None = None,
    enforce_floor: bool = True,
    vocabulary: dict | None = None,
) -> dict:
    vocab = vocabulary or build_vocabulary()
    rows = ledger_rows(days, vocab)
    acc = reduce(_fold, rows, _EMPTY_ACC)
    expense_by_category = _by_category({name: rec["expense"] for name, rec in acc["categories"].items()})
    facts = {
        "period": {
            "startDateKey": days[0]["dateKey"] if days else None,
            "endDateKey": days[-1]["dateKey"] if days else None,
            "dayCount": len(days),
        },
        "totals": _totals(acc),
        "ownerDraw": _bucket(acc["ownerDraw"]),
        "offsetNetting": _bucket(acc["offsetNetting"]),
        "transferVolume": _money(acc["transfers"]),
        "endBalances": balances_for_day(days[-1] if days else None),
        "anomalies": find_anomalies(acc["categories"]),
        "expenseByCategory": expense_by_category,
        "topExpenseCategories": expense_by_category[: settings.top_expense_categories_limit],
        "operations": top_operations(rows, operations_limit, enforce_floor),
        "operationsCount": sum(1 for r in rows if not r["synthetic"]),
    }
    if as_of_key:
        facts.update(split_fact_plan(days, as_of_key, vocab))
    return facts


def day_has_activity(day: dict) -> bool:
    totals = day.get("totals") or {}
    if coerce_float(totals.get("income")) or coerce_float(totals.get("expense")):
        return True
    return op_count(day) > 0


def days_between(snapshot: dict, start_key: str, end_key: str) -> list[dict]:
    return [d for d in snapshot["days"] if start_key <= d["dateKey"] <= end_key]


def _day_at_or_before(days: list[dict], date_key: str) -> dict | None:
    found = None
    for day in days:
        if day["dateKey"] > date_key:
            break
        found = day
    return found


def _liquidity(snapshot: dict, now_key: str, next_obligation: dict | None) -> dict:
    days = snapshot["days"]
    now_day = _day_at_or_before(days, now_key) or days[0]
    now = balances_for_day(now_day)
    end = balances_for_day(days[-1])
    out = {
        "openNow": now["open"],
        "totalNow": now["total"],
        "openEnd": end["open"],
        "totalEnd": end["total"],
        "nextObligationAmount": 0.0,
        "openAfterNextObligation": 0.0,
        "availableBeforeExpense": 0.0,
        "postExpenseOpen": 0.0,
    }
    if next_obligation:
        key = next_obligation["dateKey"]
        obligation_day = next(d for d in days if d["dateKey"] == key)
        before_day = _day_at_or_before([d for d in days if d["dateKey"] < key], key)
        available = balances_for_day(before_day)["open"] if before_day else now["open"]
        out.update({
            "nextObligationAmount": next_obligation["amount"],
            "openAfterNextObligation": balances_for_day(obligation_day)["open"],
            "availableBeforeExpense": available,
            "postExpenseOpen": _money(available - next_obligation["amount"]),
        })
    return out


def _derived(snapshot: dict, now_key: str, vocab: dict) -> dict:
    month_prefix = now_key[:7]
    month_days = [d for d in snapshot["days"] if d["dateKey"].startswith(month_prefix)]
    split = split_fact_plan(month_days, now_key, vocab)
    fact_net = split["fact"]["totals"]["net"]
    plan_net = split["plan"]["totals"]["net"]
    return {
        "month": month_prefix,
        "monthForecastNet": _money(fact_net + plan_net),
        "factNet": fact_net,
        "planRemainderNet": plan_net,
    }


def _comparison(snapshot: dict, comparison: dict | None, vocab: dict) -> list[dict]:
    out = []
    for period in (comparison or {}).get("periods") or []:
        if period.get("noDataReason"):
            days = []
        else:
            days = days_between(snapshot, period["startDateKey"], period["endDateKey"])
        summary = summarize(days, vocab)
        out.append({
            "label": period.get("label"),
            "startDateKey": period["startDateKey"],
            "endDateKey": period["endDateKey"],
            "dayCount": len(days),
            "noDataReason": period.get("noDataReason"),
            **summary,
        })
    return out


def compute_deterministic_facts(
    snapshot: dict,
    as_of_key: str | None,
    period: dict | None = None,
    comparison: dict | None = None,
    operations_limit: int | None = None,
    vocabulary: dict | None = None,
) -> dict:
    vocab = vocabulary or build_vocabulary()
    rng = snapshot["range"]
    now_key = as_of_key if parse_date_key(as_of_key) else rng["startDateKey"]

    if period is None:
        days = snapshot["days"]
        period_meta = {"startDateKey": rng["startDateKey"], "endDateKey": rng["endDateKey"], "source": "snapshot_range"}
    elif period.get("noDataReason"):
        days = []
        period_meta = dict(period)
    else:
        days = days_between(snapshot, period["startDateKey"], period["endDateKey"])
        period_meta = dict(period)

    facts = aggregate(days, now_key, operations_limit, vocabulary=vocab)
    period_meta.update({
        "dayCount": len(days),
        "startDateLabel": to_ru_date_label(period_meta["startDateKey"]),
        "endDateLabel": to_ru_date_label(period_meta["endDateKey"]),
    })

    upcoming = [d for d in snapshot["days"] if d["dateKey"] > now_key and day_has_activity(d)]
    next_obligation = None
    for day in upcoming:
        expense = coerce_float((day.get("totals") or {}).get("expense"))
        if expense > 0:
            next_obligation = {"dateKey": day["dateKey"], "dateLabel": day["dateLabel"], "amount": _money(expense)}
            break

    expense_days = [
        {"dateKey": d["dateKey"], "dateLabel": d["dateLabel"], "expense": _money((d.get("totals") or {}).get("expense"))}
        for d in days
    ]
    top_expense_days = sorted((d for d in expense_days if d["expense"] > 0), key=lambda d: (-d["expense"], d["dateKey"]))[:3]

    facts.update({
        "asOfDateKey": now_key,
        "range": {
            "startDateKey": rng["startDateKey"],
            "endDateKey": rng["endDateKey"],
            "startDateLabel": to_ru_date_label(rng["startDateKey"]),
            "endDateLabel": to_ru_date_label(rng["endDateKey"]),
            "dayCount": len(snapshot["days"]),
        },
        "period": period_meta,
        "upcomingCount": len(upcoming),
        "nextObligation": next_obligation,
        "topExpenseDays": top_expense_days,
        "liquidity": _liquidity(snapshot, now_key, next_obligation),
        "derived": _derived(snapshot, now_key, vocab),
        "comparison": _comparison(snapshot, comparison, vocab),
    })
    return facts
