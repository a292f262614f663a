from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .provider_schema import DiagnosticReport, ProviderAttemptResult


class ChatTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class Holiday(BaseModel):
    date: str
    reason: Optional[str] = None


class DailyMenu(BaseModel):
    date: str
    food: str


class TimeSlot(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    start: str = Field(alias="startTime")
    end: str = Field(alias="endTime")


class ReservationTimeWindow(BaseModel):
    enabled: bool = False
    slots: List[TimeSlot] = Field(default_factory=list)
    message: str = ""


class AllergyEntry(BaseModel):
    menu: str
    allergens: List[str] = Field(default_factory=list)  # ordered, de-duplicated

    @field_validator("allergens")
    @classmethod
    def _dedupe(cls, v: List[str]) -> List[str]:
        seen: List[str] = []
        for a in v:
            a = str(a).strip()
            if a and a not in seen:
                seen.append(a)
        return seen


class KnowledgeFacts(BaseModel):
    today: dt.date
    today_holiday: Optional[Holiday] = None
    today_menu: Optional[DailyMenu] = None
    reservation_time_window: Optional[ReservationTimeWindow] = None
    total_reservation_count: int = 0
    allergy_table: List[AllergyEntry] = Field(default_factory=list)


class Reservation(BaseModel):
    # Unknown keys written by the reservation pages are kept on round-trip.
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: Optional[Union[int, str]] = None
    name: str
    date: str
    food: str = ""
    people: int = Field(default=1, ge=1)
    time: Optional[str] = None
    verified: bool = False
    reservation_number: Optional[int] = Field(default=None, alias="reservationNumber")


class LedgerEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reservations: int = 0
    people: int = 0
    menu_sales: Dict[str, int] = Field(default_factory=dict, alias="menuSales")


class ChatResponse(BaseModel):
    text: str
    source: Literal["guard", "knowledge", "provider", "diagnostics", "error"]
    provider: Optional[str] = None
    attempts: List[ProviderAttemptResult] = Field(default_factory=list)
    diagnostics: Optional[DiagnosticReport] = None
    debug_logs: List[str] = Field(default_factory=list)
    meta: Dict[str, Any] = Field(default_factory=dict)


class AttendanceDay(BaseModel):
    day: str
    attendance: int


class DayOfWeekStats(BaseModel):
    count: int
    avg: int
    max: int
    min: int
    total: int


class AnalysisResult(BaseModel):
    """AI reading of one month: `analysis` and `api` on success, `error` otherwise."""

    year: int
    month: int
    analysis: Optional[str] = None
    api: Optional[str] = None
    error: Optional[str] = None
    report: Dict[str, Any] = Field(default_factory=dict)
    attempts: List[ProviderAttemptResult] = Field(default_factory=list)


class MenuAdvice(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    date: str
    day_of_week: str = Field(alias="dayOfWeek")
    advice: Optional[str] = None
    error: Optional[str] = None


class AttendancePrediction(BaseModel):
    prediction: Union[int, str, None] = None
    confidence: Optional[Literal["low", "medium", "high"]] = None
    method: Optional[Literal["ai_advanced", "day_of_week_statistical", "statistical"]] = None
    details: Optional[str] = None
    error: Optional[str] = None
