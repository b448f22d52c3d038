import calendar
import math
import re
from datetime import date, timedelta
from dateutil.relativedelta import relativedelta

from .config import settings

DATE_KEY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

MONTHS_RU_SHORT = [
    "янв.", "февр.", "мар.", "апр.", "мая", "июн.",
    "июл.", "авг.", "сент.", "окт.", "нояб.", "дек.",
]
# date.weekday(): Monday == 0
WEEKDAYS_RU_SHORT = ["пн", "вт", "ср", "чт", "пт", "сб", "вс"]


def is_date_key(val) -> bool:
    return isinstance(val, str) and bool(DATE_KEY_RE.fullmatch(val))


def parse_date_key(val) -> date | None:
    if not is_date_key(val):
        return None
    try:
        return date.fromisoformat(val)
    except ValueError:
        return None


def to_date_key(dt: date) -> str:
    return dt.isoformat()


def shift_date_key(date_key: str, days: int) -> str | None:
    dt = parse_date_key(date_key)
    if dt is None:
        return None
    return to_date_key(dt + timedelta(days=days))


def month_start(year: int, month: int) -> date:
    return date(year, month, 1)


def month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def month_bounds(year: int, month: int) -> tuple[str, str]:
    return to_date_key(month_start(year, month)), to_date_key(month_end(year, month))


def shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    shifted = date(year, month, 1) + relativedelta(months=delta)
    return shifted.year, shifted.month


def to_ru_date_label(date_key: str) -> str:
    dt = parse_date_key(date_key)
    if dt is None:
        return str(date_key or "?")
    return f"{WEEKDAYS_RU_SHORT[dt.weekday()]}, {dt.day} {MONTHS_RU_SHORT[dt.month - 1]} {dt.year} г."


def to_dotted_date(date_key: str) -> str:
    dt = parse_date_key(date_key)
    if dt is None:
        return str(date_key or "?")
    return dt.strftime("%d.%m.%Y")


def coerce_float(val) -> float:
    if val is None or isinstance(val, bool):
        return 0.0
    try:
        num = float(val)
    except (TypeError, ValueError):
        return 0.0
    return num if math.isfinite(num) else 0.0


def round_half_up(val) -> int:
    return int(math.floor(coerce_float(val) + 0.5))


def fmt_abs_int(val) -> str:
    return f"{round_half_up(abs(coerce_float(val))):,}".replace(",", " ")


def fmt_money(val) -> str:
    return f"{fmt_abs_int(val)} {settings.currency_marker}"


def fmt_signed_money(val) -> str:
    sign = "-" if coerce_float(val) < 0 else "+"
    return f"{sign}{fmt_money(val)}"


def fmt_percent(val) -> str:
    if val is None:
        return "0%"
    return f"{round_half_up(val)}%"
