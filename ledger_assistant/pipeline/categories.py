from __future__ import annotations

import re

from ..config import settings

OWNER_DRAW_CATEGORIES = ("Вывод средств", "Перевод")
OFFSET_NETTING_CATEGORIES = ("Взаимозачет", "Netting", "Offset")

UNCATEGORIZED = "Без категории"
WITHDRAWAL_CATEGORY = "Вывод средств"
OUT_OF_SYSTEM_TRANSFER_CATEGORY = "Перевод вне системы"

_NON_ALNUM_RE = re.compile(r"[^0-9a-zа-я]+")
_REPEAT_RE = re.compile(r"(.)\1+")


def normalize_category(text) -> str:
    """Fold a free-text category into a canonical token.

    "Коммуналка", "комуналка" and "КОММУНАЛКА!" all become "комуналка".
    """
    token = str(text or "").lower().replace("ё", "е")
    token = token.replace("ь", "").replace("ъ", "")
    token = _NON_ALNUM_RE.sub("", token)
    return _REPEAT_RE.sub(r"\1", token)


def _vocabulary(raw: str | None, default: tuple[str, ...]) -> tuple[str, ...]:
    if not raw:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def build_vocabulary(owner_draw=None, offset_netting=None) -> dict:
    owner = owner_draw or _vocabulary(settings.owner_draw_categories, OWNER_DRAW_CATEGORIES)
    netting = offset_netting or _vocabulary(settings.offset_netting_categories, OFFSET_NETTING_CATEGORIES)
    return {
        "owner_draw": tuple(t for t in (normalize_category(v) for v in owner) if t),
        "offset_netting": tuple(t for t in (normalize_category(v) for v in netting) if t),
    }


def matches_vocabulary(token: str, vocabulary) -> bool:
    if not token:
        return False
    return any(term in token for term in vocabulary)


def fuzzy_matches(requested: str, candidate: str) -> bool:
    """Two-way containment on normalized tokens, used for user-typed category names."""
    left = normalize_category(requested)
    right = normalize_category(candidate)
    if not left or not right:
        return False
    return left in right or right in left


def classify_expense(entry: dict, vocabulary: dict) -> str:
    if entry.get("linkedParentId"):
        return "offset_netting"
    token = normalize_category(entry.get("catName"))
    if matches_vocabulary(token, vocabulary["offset_netting"]):
        return "offset_netting"
    if matches_vocabulary(token, vocabulary["owner_draw"]):
        return "owner_draw"
    return "operational"
