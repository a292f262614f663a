import datetime as dt
import json

from cafeteria_assistant.knowledge import (
    find_today_holiday,
    load_knowledge_facts,
    parse_holidays,
    parse_reservation_time_window,
    read_json_safe,
)

WEDNESDAY = dt.date(2024, 5, 1)
SATURDAY = dt.date(2024, 5, 4)
SUNDAY = dt.date(2024, 5, 5)


def _write(path, data):
    path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")


def test_missing_data_dir_yields_empty_facts(tmp_path):
    facts = load_knowledge_facts(tmp_path / "nope", today=WEDNESDAY)
    assert facts.today_holiday is None
    assert facts.today_menu is None
    assert facts.reservation_time_window is None
    assert facts.total_reservation_count == 0
    assert facts.allergy_table == []


def test_malformed_files_degrade_without_raising(tmp_path):
    (tmp_path / "holidays.json").write_text("{not json", encoding="utf-8")
    (tmp_path / "daily-menu.json").write_text("", encoding="utf-8")
    _write(tmp_path / "reservations.json", {"not": "a list"})
    _write(tmp_path / "allergies.json", ["wrong", "shape"])

    facts = load_knowledge_facts(tmp_path, today=WEDNESDAY)
    assert facts.today_holiday is None
    assert facts.today_menu is None
    assert facts.total_reservation_count == 0
    assert facts.allergy_table == []


def test_read_json_safe_type_mismatch_returns_default(tmp_path):
    p = tmp_path / "x.json"
    _write(p, {"a": 1})
    assert read_json_safe(p, []) == []
    assert read_json_safe(p, {}) == {"a": 1}


def test_todays_menu_and_reservation_count(tmp_path):
    _write(tmp_path / "daily-menu.json", [{"date": "2024-04-30", "food": "うどん"}, {"date": "2024-05-01", "food": "カレー"}])
    _write(tmp_path / "reservations.json", [{"name": "a"}, {"name": "b"}, {"name": "c"}])

    facts = load_knowledge_facts(tmp_path, today=WEDNESDAY)
    assert facts.today_menu is not None
    assert facts.today_menu.food == "カレー"
    assert facts.total_reservation_count == 3


def test_weekend_yields_synthetic_holiday():
    assert find_today_holiday([], SATURDAY).reason == "土曜日"
    assert find_today_holiday([], SUNDAY).reason == "日曜日"
    assert find_today_holiday([], WEDNESDAY) is None


def test_explicit_holiday_wins_over_weekend_rule():
    holidays = parse_holidays([{"date": "2024-05-04", "reason": "創立記念日"}])
    h = find_today_holiday(holidays, SATURDAY)
    assert h.reason == "創立記念日"


def test_holiday_without_reason_is_kept():
    holidays = parse_holidays([{"date": "2024-05-01"}, {"reason": "no date"}, "junk"])
    assert len(holidays) == 1
    assert find_today_holiday(holidays, WEDNESDAY).reason is None


def test_time_window_slots_and_legacy_layout():
    w = parse_reservation_time_window(
        {
            "enabled": True,
            "timeSlots": [{"startTime": "11:00", "endTime": "12:00"}, {"startTime": "13:00"}],
            "message": "前日まで",
        }
    )
    assert w.enabled is True
    assert [(s.start, s.end) for s in w.slots] == [("11:00", "12:00")]
    assert w.message == "前日まで"

    legacy = parse_reservation_time_window({"enabled": True, "startTime": "10:00", "endTime": "14:00"})
    assert [(s.start, s.end) for s in legacy.slots] == [("10:00", "14:00")]

    assert parse_reservation_time_window({}) is None


def test_allergy_table_is_ordered_and_deduplicated(tmp_path):
    _write(
        tmp_path / "allergies.json",
        {"allergies": [{"menu": "カレー", "allergens": ["小麦", "乳", "小麦", " "]}, {"menu": ""}, {"menu": "サラダ"}]},
    )
    facts = load_knowledge_facts(tmp_path, today=WEDNESDAY)
    assert [(e.menu, e.allergens) for e in facts.allergy_table] == [("カレー", ["小麦", "乳"]), ("サラダ", [])]
