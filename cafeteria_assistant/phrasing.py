from __future__ import annotations

import random
from typing import List, Optional, Sequence

from .models import AllergyEntry, Holiday, ReservationTimeWindow

ALLERGY_NOTICE = "⚠️ アレルギーをお持ちの方は、予約時や来店時に必ずスタッフにお申し出ください。"
ALLERGY_CONSULT = "⚠️ アレルギーをお持ちの方は、必ずスタッフにご相談ください。"
UNKNOWN_REASON = "不明"
UNSET_MENU = "未設定"
OPEN_STATUS = "営業予定"

# Each pool holds interchangeable phrasings carrying the same facts.
MENU_TEMPLATES = (
    "本日の定食は「{food}」です。\n\n営業状況は{status}です。",
    "今日の定食は「{food}」となっています。\n\n営業状況は{status}です。",
    "本日の定食メニューは「{food}」です。\n\n営業状況は{status}です。",
)

CLOSED_TEMPLATES = (
    "本日は🚫 休業となっております。\n\n理由: {reason}",
    "申し訳ございませんが、本日は🚫 休業です。\n\n理由: {reason}",
    "本日は🚫 休業となっています。\n\n理由: {reason}",
)

OPEN_TEMPLATES = (
    "本日は✅ 営業予定です。",
    "本日は✅ 営業しています。",
    "本日は✅ 営業予定となっています。",
)

TIME_WINDOW_TEMPLATES = (
    "予約可能時間は以下の通りです：\n\n{slots}{note}",
    "予約は以下の時間帯で受け付けています：\n\n{slots}{note}",
    "予約可能時間：\n\n{slots}{note}",
)

NO_TIME_LIMIT_TEMPLATES = (
    "予約時間の制限は現在ありません。いつでも予約可能です。",
    "予約はいつでも可能です。時間制限はありません。",
    "予約時間の制限はありません。いつでも予約できます。",
)

RESERVATION_COUNT_TEMPLATES = (
    "現在の予約人数は{count}人です。\n\n混雑予測: {congestion}",
    "予約人数は{count}人となっています。\n\n混雑予測: {congestion}",
    "現在{count}人の予約があります。\n\n混雑予測: {congestion}",
)

NO_ALLERGY_DATA_TEMPLATES = (
    "申し訳ございませんが、現在アレルギー情報が登録されていません。\n\n詳しくはスタッフにお問い合わせください。",
    "アレルギー情報は現在登録されていません。\n\n詳細については、スタッフまでお気軽にお問い合わせください。",
)

MENU_ALLERGENS_TEMPLATES = (
    "{menu}には以下のアレルギー物質が含まれています：\n\n{allergens}\n\n" + ALLERGY_NOTICE,
    "{menu}のアレルギー物質は以下の通りです：\n\n{allergens}\n\n" + ALLERGY_CONSULT,
)

ALLERGEN_MENUS_TEMPLATES = (
    "{allergen}を含むメニューは以下の通りです：\n\n{menus}\n\n" + ALLERGY_NOTICE,
    "{allergen}が含まれているメニューは：\n\n{menus}\n\n" + ALLERGY_CONSULT,
)

ALLERGEN_NONE_TEMPLATES = (
    "{allergen}を含むメニューは現在ありません。\n\n"
    "ただし、調理環境により混入の可能性がありますので、アレルギーをお持ちの方は必ずスタッフにご相談ください。",
    "現在のメニューには{allergen}は含まれていません。\n\n"
    "ただし、アレルギーをお持ちの方は、念のためスタッフにお問い合わせください。",
)

ALLERGY_TABLE_TEMPLATES = (
    "{table}",
    "以下が各メニューのアレルギー情報です：\n\n{table}",
)


def _pick(pool: Sequence[str], rng: Optional[random.Random], **values: object) -> str:
    chooser = rng or random
    return chooser.choice(list(pool)).format(**values)


def join_ja(items: Sequence[str]) -> str:
    return "、".join(str(i) for i in items if i)


def holiday_status(holiday: Optional[Holiday]) -> str:
    if holiday is None:
        return OPEN_STATUS
    return f"休業（理由: {holiday.reason or UNKNOWN_REASON}）"


def format_menu_answer(food: Optional[str], holiday: Optional[Holiday], rng: Optional[random.Random] = None) -> str:
    return _pick(MENU_TEMPLATES, rng, food=food or UNSET_MENU, status=holiday_status(holiday))


def format_hours_answer(holiday: Optional[Holiday], rng: Optional[random.Random] = None) -> str:
    if holiday is not None:
        return _pick(CLOSED_TEMPLATES, rng, reason=holiday.reason or UNKNOWN_REASON)
    return _pick(OPEN_TEMPLATES, rng)


def format_time_window_answer(window: Optional[ReservationTimeWindow], rng: Optional[random.Random] = None) -> str:
    if window is not None and window.enabled and window.slots:
        slots = join_ja([f"{s.start}〜{s.end}" for s in window.slots])
        note = f"\n\n補足: {window.message}" if window.message else ""
        return _pick(TIME_WINDOW_TEMPLATES, rng, slots=slots, note=note)
    return _pick(NO_TIME_LIMIT_TEMPLATES, rng)


def format_reservation_count_answer(count: int, congestion: str, rng: Optional[random.Random] = None) -> str:
    return _pick(RESERVATION_COUNT_TEMPLATES, rng, count=count, congestion=congestion)


def format_no_allergy_data(rng: Optional[random.Random] = None) -> str:
    return _pick(NO_ALLERGY_DATA_TEMPLATES, rng)


def format_menu_allergens(entry: AllergyEntry, rng: Optional[random.Random] = None) -> str:
    return _pick(MENU_ALLERGENS_TEMPLATES, rng, menu=entry.menu, allergens=join_ja(entry.allergens))


def format_allergen_menus(allergen: str, menus: List[str], rng: Optional[random.Random] = None) -> str:
    if not menus:
        return _pick(ALLERGEN_NONE_TEMPLATES, rng, allergen=allergen)
    return _pick(ALLERGEN_MENUS_TEMPLATES, rng, allergen=allergen, menus=join_ja(menus))


def format_allergy_table(table: List[AllergyEntry], rng: Optional[random.Random] = None) -> str:
    lines = ["アレルギー情報一覧：", ""]
    lines.extend(f"・{e.menu}：{join_ja(e.allergens)}" for e in table)
    lines.append("")
    lines.append(ALLERGY_NOTICE)
    return _pick(ALLERGY_TABLE_TEMPLATES, rng, table="\n".join(lines))
