"""
AI reading of cafeteria data for staff: the monthly report analysis and the
daily advice (a set-meal proposal and an attendance prediction).

These run through the same adapters and fallback chain as chat answers.
The monthly analysis walks OpenAI, Gemini and Groq in that order. The daily
advice uses OpenAI only; when it fails, the attendance prediction falls back
to plain statistics over the recorded attendance.
"""

from __future__ import annotations

import datetime as dt
import logging
import math
import statistics
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import httpx
from pydantic import ValidationError

from .chain import run_chain
from .config import load_provider_configs
from .knowledge import load_holidays, read_json_safe
from .ledger import SalesLedger
from .models import AnalysisResult, AttendanceDay, AttendancePrediction, DayOfWeekStats, MenuAdvice
from .provider_schema import ChainResult, ProviderConfig
from .providers import ProviderRequest, build_providers
from .report import generate_monthly_report
from .utils import DebugLog, Deadline, _trace

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

REVIEWS_FILE = "reviews.json"
ATTENDANCE_FILE = "attendance-data.json"

ANALYSIS_PROVIDERS: Tuple[str, ...] = ("openai", "gemini", "groq")
ADVICE_PROVIDERS: Tuple[str, ...] = ("openai",)
ANALYSIS_TEMPERATURE = 0.7
ANALYSIS_MAX_TOKENS = 2000
REVIEW_LIMIT = 20
RECENT_DAYS = 7
MENU_BUDGET_YEN = 400

# Index 0 is Sunday.
DAY_NAMES: Tuple[str, ...] = ("日", "月", "火", "水", "木", "金", "土")
DONBURI_DAY = "月"

ANALYSIS_UNAVAILABLE = "AI APIが利用できません。設定を確認してください。"
OPENAI_NOT_CONFIGURED = "OpenAI APIが設定されていません"
ADVICE_FAILED = "AI APIの呼び出しに失敗しました"
NOT_ENOUGH_DATA = "データ不足のため予測できません"

ANALYSIS_SYSTEM_PROMPT = (
    "あなたは学校食堂の経営分析の専門家です。提供されたデータを分析して、"
    "食堂の改善点と良い点をわかりやすく説明してください。"
)

ANALYSIS_ANSWER_FORMAT = """以下の形式で回答してください：

## 📊 分析結果

### ✅ 良い点
- [具体的な良い点を3-5個挙げてください]

### 🔧 改善点
- [具体的な改善点を3-5個挙げてください]

### 💡 推奨事項
- [改善のための具体的な推奨事項を3-5個挙げてください]

回答は日本語で、わかりやすく、具体的に書いてください。"""

MENU_SYSTEM_PROMPT = (
    "あなたは学校食堂のメニュー提案の専門家です。予算とメニュー構成に基づいて、"
    "栄養バランスが良く、生徒に人気のある定食メニューを提案してください。"
    "毎日異なるメニューを提案し、バリエーションを持たせてください。"
)

DONBURI_NOTE = (
    "\n\n【重要】月曜日は必ずどんぶり（丼物）を提案してください。どんぶりとは、キムチ丼、牛丼、親子丼、天丼、"
    "カツ丼、中華丼、五目丼、鰻丼、鉄火丼、海鮮丼など、ご飯の上に具材を乗せた丼物のことです。"
)

DONBURI_FORMAT = (
    "\n\n以下の形式で回答してください：\n\n【今日のおすすめ定食】\n\n"
    "どんぶり：[どんぶりメニュー名（例：キムチ丼、牛丼など）]\n- [簡単な説明]\n\n味噌汁：[具材]\n\n予算：約[金額]円"
)

SET_MEAL_FORMAT = (
    "\n\n以下の形式で回答してください：\n\n【今日のおすすめ定食】\n\n"
    "主菜：[メニュー名]\n- [簡単な説明]\n\n副菜：[メニュー名]\n- [簡単な説明]\n\n味噌汁：[具材]\n\n予算：約[金額]円"
)

PREDICTION_SYSTEM_PROMPT = (
    "あなたは来客数予測の専門家です。過去のデータを多角的に分析して、今日の来客数を正確に予測してください。"
    "曜日別の傾向、最近の傾向、統計的な分析を総合的に考慮してください。"
)

PREDICTION_ANSWER_FORMAT = (
    "以下の形式で回答してください：\n\n【来客数予測】\n\n予測来客数：約[人数]人\n\n【分析根拠】\n"
    "1. 曜日別分析：[同じ曜日の傾向]\n"
    "2. 最近の傾向：[直近の来客数の傾向]\n"
    "3. 統計的分析：[平均値、中央値などの統計]\n"
    "4. その他の要因：[季節、時期などの要因]\n\n"
    "【信頼度】\nデータ数と分析の質に基づいた信頼度：[高/中/低]"
)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def day_of_week_label(date: dt.date) -> str:
    return DAY_NAMES[(date.weekday() + 1) % 7]


def _select_configs(configs: Sequence[ProviderConfig], names: Sequence[str]) -> List[ProviderConfig]:
    by_name = {c.name: c for c in configs}
    return [by_name[n] for n in names if n in by_name]


def _openai_ready(configs: Sequence[ProviderConfig]) -> bool:
    return any(c.name == "openai" and c.enabled and c.has_credential for c in configs)


def _ask(
    configs: Sequence[ProviderConfig],
    names: Sequence[str],
    system_prompt: str,
    user_prompt: str,
    *,
    http_client: Optional[httpx.Client],
    deadline_ms: Optional[int],
    trace: bool,
) -> ChainResult:
    request = ProviderRequest(
        message=user_prompt,
        system_prompt=system_prompt,
        temperature=ANALYSIS_TEMPERATURE,
        max_tokens=ANALYSIS_MAX_TOKENS,
    )
    adapters = build_providers(_select_configs(configs, names), http_client=http_client)
    # Any non-empty answer is accepted.
    return run_chain(
        adapters,
        request,
        min_length=0,
        deadline=Deadline(deadline_ms),
        log=DebugLog(),
        trace=trace,
    )


def load_reviews(data_dir: PathLike) -> List[Dict[str, Any]]:
    return [r for r in read_json_safe(Path(data_dir) / REVIEWS_FILE, []) if isinstance(r, dict)]


def render_analysis_prompt(report: Mapping[str, Any], reviews: Sequence[Mapping[str, Any]]) -> str:
    """User prompt for the monthly analysis: reviews, menu sales, daily rows and totals."""
    if reviews:
        lines = ["レビュー一覧:"]
        for r in list(reviews)[-REVIEW_LIMIT:]:
            lines.append(f"- {r.get('name') or '匿名'} ({r.get('date') or ''}): {r.get('comment') or ''}")
        reviews_text = "\n".join(lines) + "\n"
    else:
        reviews_text = "レビューはまだありません。\n"

    menu_sales = report.get("menuSales") or {}
    if menu_sales:
        ranked = sorted(menu_sales.items(), key=lambda kv: kv[1], reverse=True)
        menu_text = "メニュー別売上数:\n" + "".join(f"- {menu}: {qty}個\n" for menu, qty in ranked)
    else:
        menu_text = "メニュー別売上データはありません。\n"

    daily = report.get("dailySales") or []
    daily_text = ""
    if daily:
        daily_text = "日別売上データ:\n" + "".join(
            f"- {d['date']}: 予約数 {d['reservations']}人、来客数 {d['people']}人\n" for d in daily
        )

    return (
        "以下のデータを分析して、食堂の改善点と良い点を具体的に教えてください。\n\n"
        f"{reviews_text}\n"
        f"{menu_text}\n"
        f"{daily_text}\n"
        f"総営業日数: {report.get('totalDays', 0)}日\n"
        f"総予約数: {report.get('totalReservations', 0)}人\n"
        f"総来客数: {report.get('totalPeople', 0)}人\n"
        f"1日平均来客数: {report.get('averageDailyPeople', 0)}人\n\n"
        f"{ANALYSIS_ANSWER_FORMAT}"
    )


def analyze_month(
    data_dir: PathLike,
    year: int,
    month: int,
    *,
    provider_configs: Optional[Sequence[ProviderConfig]] = None,
    today: Optional[dt.date] = None,
    http_client: Optional[httpx.Client] = None,
    deadline_ms: Optional[int] = None,
    debug: bool = False,
) -> AnalysisResult:
    """Monthly report from the sales ledger, read by the first analysis provider that answers."""
    snapshot = SalesLedger.in_dir(data_dir).snapshot()
    report = generate_monthly_report(snapshot, load_holidays(data_dir), year, month, today=today)
    prompt = render_analysis_prompt(report, load_reviews(data_dir))

    configs = list(provider_configs) if provider_configs is not None else load_provider_configs()
    result = _ask(
        configs,
        ANALYSIS_PROVIDERS,
        ANALYSIS_SYSTEM_PROMPT,
        prompt,
        http_client=http_client,
        deadline_ms=deadline_ms,
        trace=debug,
    )
    _trace(debug, "analysis.result", {"year": year, "month": month, "provider": result.provider})

    if result.exhausted:
        logger.warning("Monthly analysis %04d-%02d: no provider answered", year, month)
        return AnalysisResult(year=year, month=month, error=ANALYSIS_UNAVAILABLE, report=report, attempts=result.attempts)
    return AnalysisResult(
        year=year,
        month=month,
        analysis=(result.response_text or "").strip(),
        api=result.provider,
        report=report,
        attempts=result.attempts,
    )


def load_attendance(data_dir: PathLike) -> Tuple[List[int], List[AttendanceDay]]:
    """
    `attendance-data.json` holds {"attendance": [int, ...],
    "attendanceWithDays": [{"day": "月", "attendance": int}, ...]}.
    Unusable values are logged and skipped.
    """
    path = Path(data_dir) / ATTENDANCE_FILE
    doc = read_json_safe(path, {})
    if not isinstance(doc, dict):
        logger.warning("Attendance file %s is not a JSON object; ignoring it", path)
        doc = {}

    counts: List[int] = []
    for v in doc.get("attendance") or []:
        if isinstance(v, bool):
            continue
        try:
            counts.append(int(v))
        except (TypeError, ValueError):
            logger.warning("Skipping non-numeric attendance value %r in %s", v, path)

    with_days: List[AttendanceDay] = []
    for raw in doc.get("attendanceWithDays") or []:
        try:
            with_days.append(AttendanceDay.model_validate(raw))
        except ValidationError:
            logger.warning("Skipping malformed attendance row in %s", path)
    return counts, with_days


def day_of_week_stats(rows: Sequence[AttendanceDay]) -> Dict[str, DayOfWeekStats]:
    """Per-weekday count, rounded average, max, min and total; weekdays without data are left out."""
    stats: Dict[str, DayOfWeekStats] = {}
    for day in DAY_NAMES:
        values = [r.attendance for r in rows if r.day == day]
        if not values:
            continue
        stats[day] = DayOfWeekStats(
            count=len(values),
            avg=_round_half_up(sum(values) / len(values)),
            max=max(values),
            min=min(values),
            total=sum(values),
        )
    return stats


def render_prediction_prompt(counts: Sequence[int], stats: Mapping[str, DayOfWeekStats], today_label: str) -> str:
    lines = [
        "【過去の来客数データ - 全体統計】",
        f"- 平均：約{_round_half_up(sum(counts) / len(counts))}人",
        f"- 中央値：約{_round_half_up(statistics.median(counts))}人",
        f"- 最大：{max(counts)}人",
        f"- 最小：{min(counts)}人",
        f"- データ数：{len(counts)}件",
    ]
    if len(counts) >= RECENT_DAYS:
        recent = list(counts)[-RECENT_DAYS:]
        lines.append(f"- 直近7日平均：約{_round_half_up(sum(recent) / len(recent))}人")

    if stats:
        lines += ["", "【曜日別統計】"]
        for day, s in stats.items():
            lines.append(f"- {day}曜日：平均{s.avg}人（最大{s.max}人、最小{s.min}人、データ数{s.count}件）")
        todays = stats.get(today_label)
        if todays is not None:
            lines += [
                "",
                f"【今日（{today_label}曜日）の過去データ】",
                f"- 平均：{todays.avg}人",
                f"- 最大：{todays.max}人",
                f"- 最小：{todays.min}人",
                f"- データ数：{todays.count}件",
            ]

    lines += [
        "",
        "【予測の観点】",
        "以下の観点から総合的に分析して予測してください：",
        "1. 曜日別の傾向（同じ曜日の過去データ）",
        "2. 最近の傾向（直近の来客数）",
        "3. 統計的な分析（平均、中央値、最大、最小）",
        "4. 季節や時期による変動",
        "5. データの信頼性（データ数が多いほど信頼性が高い）",
        "",
        f"今日は{today_label}曜日です。",
        "",
        "これらのデータを基に、多角的な分析を行い、今日の来客数を予測してください。",
        "",
    ]
    return "\n".join(lines) + "\n" + PREDICTION_ANSWER_FORMAT


def predict_attendance(
    data_dir: PathLike,
    *,
    provider_configs: Optional[Sequence[ProviderConfig]] = None,
    today: Optional[dt.date] = None,
    http_client: Optional[httpx.Client] = None,
    deadline_ms: Optional[int] = None,
    debug: bool = False,
) -> AttendancePrediction:
    configs = list(provider_configs) if provider_configs is not None else load_provider_configs()
    if not _openai_ready(configs):
        return AttendancePrediction(error=OPENAI_NOT_CONFIGURED)

    counts, with_days = load_attendance(data_dir)
    if not counts:
        return AttendancePrediction(prediction=NOT_ENOUGH_DATA, confidence="low")

    today_label = day_of_week_label(today or dt.date.today())
    stats = day_of_week_stats(with_days)
    result = _ask(
        configs,
        ADVICE_PROVIDERS,
        PREDICTION_SYSTEM_PROMPT,
        render_prediction_prompt(counts, stats, today_label),
        http_client=http_client,
        deadline_ms=deadline_ms,
        trace=debug,
    )
    if not result.exhausted:
        return AttendancePrediction(prediction=(result.response_text or "").strip(), confidence="high", method="ai_advanced")

    logger.warning("Attendance prediction: AI call failed, using statistics")
    todays = stats.get(today_label)
    if todays is not None:
        return AttendancePrediction(
            prediction=todays.avg,
            confidence="medium",
            method="day_of_week_statistical",
            details=f"{today_label}曜日の過去平均値（{todays.avg}人）を基に予測しました。",
        )
    overall = _round_half_up(sum(counts) / len(counts))
    return AttendancePrediction(
        prediction=overall,
        confidence="medium",
        method="statistical",
        details=f"過去の平均値（{overall}人）を基に予測しました。",
    )


def render_menu_prompt(date: dt.date, day_label: str, counts: Sequence[int]) -> str:
    donburi = day_label == DONBURI_DAY
    structure = "どんぶり＋味噌汁" if donburi else "ごはん＋味噌汁＋主菜＋副菜"
    date_str = f"{date.year:04d}年{date.month:02d}月{date.day:02d}日"

    prompt = (
        f"今日は{date_str}（{day_label}曜日）です。\n\n以下の条件で定食メニューを提案してください：\n\n"
        f"- 一人当たり予算：{MENU_BUDGET_YEN}円程度\n"
        f"- メニュー構成：{structure}\n"
        "- 栄養バランスを考慮\n"
        "- 生徒に人気のあるメニュー\n"
        "- 具体的なメニュー名と簡単な説明を提供\n"
        f"- 今日の日付（{date_str}）を考慮して、この日特有のメニューを提案してください\n"
    )
    if donburi:
        prompt += DONBURI_NOTE
    if counts:
        expected = _round_half_up(sum(counts) / len(counts))
        prompt += f"\n\n過去の来客数データから、今日は約{expected}人の来客が予測されます。"
    return prompt + (DONBURI_FORMAT if donburi else SET_MEAL_FORMAT)


def generate_menu_advice(
    data_dir: PathLike,
    *,
    provider_configs: Optional[Sequence[ProviderConfig]] = None,
    today: Optional[dt.date] = None,
    http_client: Optional[httpx.Client] = None,
    deadline_ms: Optional[int] = None,
    debug: bool = False,
) -> MenuAdvice:
    """Today's set-meal proposal; Mondays always get a rice bowl."""
    today = today or dt.date.today()
    day_label = day_of_week_label(today)
    configs = list(provider_configs) if provider_configs is not None else load_provider_configs()
    if not _openai_ready(configs):
        return MenuAdvice(date=today.isoformat(), day_of_week=day_label, error=OPENAI_NOT_CONFIGURED)

    counts, _ = load_attendance(data_dir)
    result = _ask(
        configs,
        ADVICE_PROVIDERS,
        MENU_SYSTEM_PROMPT,
        render_menu_prompt(today, day_label, counts),
        http_client=http_client,
        deadline_ms=deadline_ms,
        trace=debug,
    )
    if result.exhausted:
        logger.warning("Menu advice: AI call failed")
        return MenuAdvice(date=today.isoformat(), day_of_week=day_label, error=ADVICE_FAILED)
    return MenuAdvice(date=today.isoformat(), day_of_week=day_label, advice=(result.response_text or "").strip())
