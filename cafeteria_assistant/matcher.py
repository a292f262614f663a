from __future__ import annotations

import random
from typing import List, Optional, Tuple

from .config import CONGESTION_BUSY_AT, CONGESTION_VERY_BUSY_AT
from .models import AllergyEntry, KnowledgeFacts
from .phrasing import (
    format_allergen_menus,
    format_allergy_table,
    format_hours_answer,
    format_menu_allergens,
    format_menu_answer,
    format_no_allergy_data,
    format_reservation_count_answer,
    format_time_window_answer,
)
from .utils import normalize_message

MENU_KEYWORDS = ("定食", "メニュー")
HOURS_KEYWORDS = ("休業", "営業")
RESERVATION_TIME_KEYWORDS = ("予約時間", "いつ予約", "予約可能")
RESERVATION_COUNT_KEYWORDS = ("予約", "混雑", "人数")
ALLERGY_KEYWORDS = ("アレルギー", "アレルゲン")

# Checked in this order; the first category with a keyword hit wins.
CATEGORY_ORDER: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("menu", MENU_KEYWORDS),
    ("hours", HOURS_KEYWORDS),
    ("reservation_time", RESERVATION_TIME_KEYWORDS),
    ("reservation_count", RESERVATION_COUNT_KEYWORDS),
    ("allergy", ALLERGY_KEYWORDS),
)

COMMON_ALLERGENS = ("小麦", "大豆", "乳", "卵", "そば", "エビ", "カニ", "落花生")

CONGESTION_QUIET = "空いています"
CONGESTION_BUSY = "やや混雑"
CONGESTION_VERY_BUSY = "非常に混雑"


def detect_category(message: str) -> Optional[str]:
    t = normalize_message(message)
    if not t:
        return None
    for category, keywords in CATEGORY_ORDER:
        if any(k in t for k in keywords):
            return category
    return None


def congestion_level(
    total: int,
    *,
    busy_at: int = CONGESTION_BUSY_AT,
    very_busy_at: int = CONGESTION_VERY_BUSY_AT,
) -> str:
    if total >= very_busy_at:
        return CONGESTION_VERY_BUSY
    if total >= busy_at:
        return CONGESTION_BUSY
    return CONGESTION_QUIET


def find_menu_in_message(message: str, table: List[AllergyEntry]) -> Optional[AllergyEntry]:
    t = normalize_message(message)
    for entry in table:
        name = normalize_message(entry.menu)
        if name and name in t:
            return entry
    return None


def find_allergen_in_message(message: str) -> Optional[str]:
    t = normalize_message(message)
    for allergen in COMMON_ALLERGENS:
        if allergen in t:
            return allergen
    return None


def _answer_allergy(message: str, facts: KnowledgeFacts, rng: Optional[random.Random]) -> str:
    table = facts.allergy_table
    if not table:
        return format_no_allergy_data(rng)

    entry = find_menu_in_message(message, table)
    if entry is not None:
        return format_menu_allergens(entry, rng)

    allergen = find_allergen_in_message(message)
    if allergen is not None:
        menus = [e.menu for e in table if allergen in e.allergens]
        return format_allergen_menus(allergen, menus, rng)

    return format_allergy_table(table, rng)


def match_with_rules(
    message: str,
    facts: KnowledgeFacts,
    *,
    rng: Optional[random.Random] = None,
    busy_at: int = CONGESTION_BUSY_AT,
    very_busy_at: int = CONGESTION_VERY_BUSY_AT,
) -> Optional[str]:
    """
    Deterministic, fact-based answer for cafeteria questions.

    Returns the composed answer, or None when no keyword category matches
    (the caller then defers to the AI providers). None is the only
    "no match" value; an answer is never the empty string.
    """
    category = detect_category(message)

    if category == "menu":
        food = facts.today_menu.food if facts.today_menu else None
        return format_menu_answer(food, facts.today_holiday, rng)

    if category == "hours":
        return format_hours_answer(facts.today_holiday, rng)

    if category == "reservation_time":
        return format_time_window_answer(facts.reservation_time_window, rng)

    if category == "reservation_count":
        total = facts.total_reservation_count
        level = congestion_level(total, busy_at=busy_at, very_busy_at=very_busy_at)
        return format_reservation_count_answer(total, level, rng)

    if category == "allergy":
        return _answer_allergy(message, facts, rng)

    return None
