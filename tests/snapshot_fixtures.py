from datetime import date, timedelta


def entry(entry_id, amount, cat, acc="Kaspi", cont="", proj="", **extra):
    item = {
        "id": entry_id,
        "amount": amount,
        "catName": cat,
        "accName": acc,
        "contName": cont,
        "projName": proj,
    }
    item.update(extra)
    return item


def transfer(amount, src, dst, out_of_system=False):
    return {
        "amount": amount,
        "fromAccName": src,
        "toAccName": dst,
        "isOutOfSystemTransfer": out_of_system,
    }


def day(date_key, income=(), expense=(), withdrawal=(), transfers=(), balances=(), totals=None, total_balance=None):
    out = {
        "dateKey": date_key,
        "accountBalances": [
            {"accountId": name.lower(), "name": name, "balance": balance, "isOpen": is_open}
            for name, balance, is_open in balances
        ],
        "lists": {
            "income": list(income),
            "expense": list(expense),
            "withdrawal": list(withdrawal),
            "transfer": list(transfers),
        },
    }
    if totals is not None:
        out["totals"] = totals
    if total_balance is not None:
        out["totalBalance"] = total_balance
    return out


def snapshot(days, start=None, end=None, schema_version=1, visibility="all"):
    keys = sorted(d["dateKey"] for d in days)
    return {
        "schemaVersion": schema_version,
        "range": {"startDateKey": start or keys[0], "endDateKey": end or keys[-1]},
        "visibilityMode": visibility,
        "days": list(days),
    }


# Kaspi is open, Сейф is hidden. Balances are end-of-day and follow the lists.
FEBRUARY_EVENTS = {
    "2026-02-02": {"expense": [entry("exp-0202", 30000, "Аренда", cont="ТОО Офис")]},
    "2026-02-05": {
        "income": [entry("inc-0205", 50000, "Продажи", cont="Клиент А")],
        "expense": [entry("exp-0205", 8000, "Коммуналка")],
    },
    "2026-02-10": {"expense": [entry("exp-0210", 5000, "Аренда", cont="ТОО Склад")]},
    "2026-02-12": {"withdrawal": [entry("wd-0212", 10000, "Вывод средств")]},
    "2026-02-20": {"expense": [entry("exp-0220", 30000, "Аренда", cont="ТОО Офис")]},
    "2026-02-25": {
        "income": [entry("inc-0225", 20000, "Продажи", cont="Клиент Б")],
        "transfers": [transfer(5000, "Kaspi", "Сейф")],
    },
    "2026-02-27": {"expense": [entry("exp-0227", 70000, "Налоги")]},
}


def february_snapshot():
    """2026-02-01..2026-02-28, totals left for the validator to derive."""
    kaspi, safe = 100000, 50000
    days = []
    current = date(2026, 2, 1)
    while current.month == 2:
        key = current.isoformat()
        events = FEBRUARY_EVENTS.get(key, {})
        kaspi += sum(i["amount"] for i in events.get("income", []))
        kaspi -= sum(i["amount"] for i in events.get("expense", []))
        kaspi -= sum(i["amount"] for i in events.get("withdrawal", []))
        for t in events.get("transfers", []):
            kaspi -= t["amount"]
            safe += t["amount"]
        days.append(day(key, balances=[("Kaspi", kaspi, True), ("Сейф", safe, False)], **events))
        current += timedelta(days=1)
    return snapshot(days)
