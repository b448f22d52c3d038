from __future__ import annotations

import structlog

from ..utils import coerce_float, is_date_key, to_ru_date_label

log = structlog.get_logger()

SCHEMA_VERSION = 1
VISIBILITY_MODES = ("open", "hidden", "all")
LIST_KINDS = ("income", "expense", "withdrawal", "transfer")


def _list(value) -> list:
    return [item for item in value if isinstance(item, dict)] if isinstance(value, list) else []


def _str(value, default: str = "") -> str:
    if value is None:
        return default
    text = str(value)
    return text if text else default


def _normalize_offsets(raw) -> list[dict]:
    out = []
    for offset in _list(raw):
        out.append({"amount": abs(coerce_float(offset.get("amount"))), "note": _str(offset.get("note"))})
    return out


def _normalize_entry(item: dict, kind: str) -> dict:
    entry = dict(item)
    entry["amount"] = coerce_float(item.get("amount"))
    if kind == "transfer":
        entry["fromAccName"] = _str(item.get("fromAccName"))
        entry["toAccName"] = _str(item.get("toAccName"))
        entry["isOutOfSystemTransfer"] = bool(item.get("isOutOfSystemTransfer"))
        return entry
    entry["id"] = _str(item.get("id") or item.get("_id"))
    for key in ("catName", "accName", "contName", "projName"):
        entry[key] = _str(item.get(key))
    if kind == "income":
        entry["offsets"] = _normalize_offsets(item.get("offsets"))
    if kind == "expense":
        entry["linkedParentId"] = _str(item.get("linkedParentId") or item.get("offsetIncomeId"))
    return entry


def _normalize_account(acc: dict) -> dict:
    if "isOpen" in acc and acc.get("isOpen") is not None:
        is_open = bool(acc.get("isOpen"))
    elif "isExcluded" in acc and acc.get("isExcluded") is not None:
        is_open = not bool(acc.get("isExcluded"))
    else:
        is_open = False
    return {
        "accountId": _str(acc.get("accountId") or acc.get("_id")),
        "name": _str(acc.get("name") or acc.get("accName"), "Счет"),
        "balance": coerce_float(acc.get("balance")),
        "isOpen": is_open,
    }


def totals_from_lists(lists: dict) -> dict:
    income = sum(abs(coerce_float(item.get("amount"))) for item in lists["income"])
    expense = sum(abs(coerce_float(item.get("amount"))) for item in lists["expense"])
    withdrawal = sum(abs(coerce_float(item.get("amount"))) for item in lists["withdrawal"])
    # Out-of-system transfers leave the books, so they count as cash outflow.
    transfer_out = sum(
        abs(coerce_float(item.get("amount")))
        for item in lists["transfer"]
        if item.get("isOutOfSystemTransfer")
    )
    return {"income": income, "expense": expense + withdrawal + transfer_out}


def op_count(day: dict) -> int:
    lists = day.get("lists") or {}
    return sum(len(lists.get(kind) or []) for kind in LIST_KINDS)


def normalize_day(day: dict) -> dict:
    raw_lists = day.get("lists") if isinstance(day.get("lists"), dict) else {}
    lists = {kind: [_normalize_entry(item, kind) for item in _list(raw_lists.get(kind))] for kind in LIST_KINDS}
    accounts = [_normalize_account(acc) for acc in _list(day.get("accountBalances"))]
    has_items = any(lists[kind] for kind in LIST_KINDS)

    raw_totals = day.get("totals") if isinstance(day.get("totals"), dict) else {}
    income = coerce_float(raw_totals.get("income"))
    expense = coerce_float(raw_totals.get("expense"))
    if has_items:
        # Precomputed totals are sometimes stale zeros while the lists are filled.
        from_lists = totals_from_lists(lists)
        if income == 0:
            income = from_lists["income"]
        if expense == 0:
            expense = from_lists["expense"]

    accounts_total = sum(acc["balance"] for acc in accounts)
    raw_balance = day.get("totalBalance")
    total_balance = coerce_float(raw_balance)
    if raw_balance is None or isinstance(raw_balance, bool) or (total_balance == 0 and (has_items or accounts_total != 0)):
        total_balance = accounts_total

    date_key = str(day.get("dateKey"))
    return {
        "dateKey": date_key,
        "dateLabel": _str(day.get("dateLabel")) or to_ru_date_label(date_key),
        "totalBalance": total_balance,
        "accountBalances": accounts,
        "totals": {"income": income, "expense": expense},
        "lists": lists,
    }


def validate_snapshot(raw) -> dict:
    if not isinstance(raw, dict):
        return _invalid("snapshot отсутствует или некорректен")

    version = raw.get("schemaVersion")
    if isinstance(version, bool) or coerce_float(version) != SCHEMA_VERSION:
        return _invalid(f"schemaVersion должен быть равен {SCHEMA_VERSION}")

    raw_days = raw.get("days") if isinstance(raw.get("days"), list) else []
    if not raw_days:
        return _invalid("days[] пустой")

    for day in raw_days:
        key = day.get("dateKey") if isinstance(day, dict) else None
        if not is_date_key(key):
            return _invalid(f"некорректный day.dateKey: {key if key else '?'}")

    days = sorted((normalize_day(day) for day in raw_days), key=lambda d: d["dateKey"])

    rng = raw.get("range") if isinstance(raw.get("range"), dict) else {}
    start_key = str(rng.get("startDateKey") or days[0]["dateKey"])
    end_key = str(rng.get("endDateKey") or days[-1]["dateKey"])
    if not is_date_key(start_key) or not is_date_key(end_key) or start_key > end_key:
        return _invalid("range.startDateKey или range.endDateKey некорректны")

    mode = str(raw.get("visibilityMode") or "all").lower()
    if mode not in VISIBILITY_MODES:
        mode = "all"

    snapshot = {
        "schemaVersion": SCHEMA_VERSION,
        "range": {"startDateKey": start_key, "endDateKey": end_key},
        "visibilityMode": mode,
        "days": days,
    }
    log.debug("snapshot_validated", days=len(days), start=start_key, end=end_key)
    return {"ok": True, "snapshot": snapshot}


def _invalid(error: str) -> dict:
    log.warning("snapshot_invalid", error=error)
    return {"ok": False, "error": error}
