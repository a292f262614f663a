"""
Knowledge store reader.

Loads the facts the deterministic matcher answers from:
- holidays.json            [{date, reason}]
- daily-menu.json          [{date, food}]
- reservation-times.json   {enabled, timeSlots: [{startTime, endTime}], message}
- allergies.json           {allergies: [{menu, allergens: [...]}]}
- reservations.json        [Reservation]

Read-only. Missing or malformed files degrade to empty/absent facts.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from pathlib import Path
from typing import Any, List, Optional, Union

from pydantic import ValidationError

from .models import AllergyEntry, DailyMenu, Holiday, KnowledgeFacts, ReservationTimeWindow, TimeSlot

logger = logging.getLogger(__name__)

HOLIDAYS_FILE = "holidays.json"
DAILY_MENU_FILE = "daily-menu.json"
RESERVATION_TIMES_FILE = "reservation-times.json"
ALLERGIES_FILE = "allergies.json"
RESERVATIONS_FILE = "reservations.json"

# date.weekday(): 5 = Saturday, 6 = Sunday
WEEKEND_REASONS = {5: "土曜日", 6: "日曜日"}

PathLike = Union[str, Path]


def read_json_safe(path: PathLike, default: Any) -> Any:
    """
    Read a JSON document, returning `default` when the file is missing, empty,
    unparseable, or of a different top-level type than `default`.
    """
    p = Path(path)
    if not p.exists():
        return default
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        logger.warning("Could not read %s: %s", p, e)
        return default
    if not text.strip():
        return default
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed JSON in %s", p)
        return default
    if not isinstance(data, type(default)):
        return default
    return data


def _iso(day: dt.date) -> str:
    return day.isoformat()


def parse_holidays(doc: Any) -> List[Holiday]:
    out: List[Holiday] = []
    for raw in doc if isinstance(doc, list) else []:
        if not isinstance(raw, dict) or not raw.get("date"):
            continue
        reason = raw.get("reason")
        out.append(Holiday(date=str(raw["date"]), reason=str(reason) if reason else None))
    return out


def find_today_holiday(holidays: List[Holiday], today: dt.date) -> Optional[Holiday]:
    """
    Explicit holiday entry for today, else a synthetic weekend entry.
    The weekend rule never replaces an explicit entry.
    """
    key = _iso(today)
    for h in holidays:
        if h.date == key:
            return h
    weekend_reason = WEEKEND_REASONS.get(today.weekday())
    if weekend_reason:
        return Holiday(date=key, reason=weekend_reason)
    return None


def find_today_menu(doc: Any, today: dt.date) -> Optional[DailyMenu]:
    key = _iso(today)
    for raw in doc if isinstance(doc, list) else []:
        if isinstance(raw, dict) and raw.get("date") == key:
            return DailyMenu(date=key, food=str(raw.get("food") or ""))
    return None


def parse_reservation_time_window(doc: Any) -> Optional[ReservationTimeWindow]:
    if not isinstance(doc, dict) or not doc:
        return None

    raw_slots = doc.get("timeSlots")
    if not isinstance(raw_slots, list):
        # legacy single-window layout
        if doc.get("startTime") and doc.get("endTime"):
            raw_slots = [{"startTime": doc["startTime"], "endTime": doc["endTime"]}]
        else:
            raw_slots = []

    slots: List[TimeSlot] = []
    for s in raw_slots:
        if not isinstance(s, dict):
            continue
        try:
            slots.append(TimeSlot.model_validate(s))
        except ValidationError:
            continue

    return ReservationTimeWindow(
        enabled=bool(doc.get("enabled", False)),
        slots=slots,
        message=str(doc.get("message") or ""),
    )


def parse_allergy_table(doc: Any) -> List[AllergyEntry]:
    items = doc.get("allergies") if isinstance(doc, dict) else None
    out: List[AllergyEntry] = []
    for raw in items if isinstance(items, list) else []:
        if not isinstance(raw, dict) or not raw.get("menu"):
            continue
        allergens = raw.get("allergens")
        out.append(
            AllergyEntry(
                menu=str(raw["menu"]),
                allergens=[str(a) for a in allergens] if isinstance(allergens, list) else [],
            )
        )
    return out


def load_holidays(data_dir: PathLike) -> List[Holiday]:
    return parse_holidays(read_json_safe(Path(data_dir) / HOLIDAYS_FILE, []))


def load_knowledge_facts(data_dir: PathLike, today: Optional[dt.date] = None) -> KnowledgeFacts:
    """
    Assemble KnowledgeFacts for `today` (defaults to the current local date).
    Computed fresh on every call.
    """
    base = Path(data_dir)
    today = today or dt.date.today()

    reservations = read_json_safe(base / RESERVATIONS_FILE, [])

    return KnowledgeFacts(
        today=today,
        today_holiday=find_today_holiday(load_holidays(base), today),
        today_menu=find_today_menu(read_json_safe(base / DAILY_MENU_FILE, []), today),
        reservation_time_window=parse_reservation_time_window(read_json_safe(base / RESERVATION_TIMES_FILE, {})),
        total_reservation_count=len(reservations),
        allergy_table=parse_allergy_table(read_json_safe(base / ALLERGIES_FILE, {})),
    )
