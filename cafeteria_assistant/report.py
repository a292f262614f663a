from __future__ import annotations

import calendar
import datetime as dt
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set

from .models import Holiday, LedgerEntry

TOP_MENU_LIMIT = 5


def closed_days(year: int, month: int, holidays: Sequence[Holiday]) -> Set[str]:
    """Explicit holidays of the month plus every Saturday and Sunday."""
    prefix = f"{year:04d}-{month:02d}-"
    out = {h.date for h in holidays if h.date.startswith(prefix)}
    days_in_month = calendar.monthrange(year, month)[1]
    for day in range(1, days_in_month + 1):
        d = dt.date(year, month, day)
        if d.weekday() >= 5:
            out.add(d.isoformat())
    return out


def operating_days(year: int, month: int, holidays: Sequence[Holiday], today: dt.date) -> int:
    """
    Open days from the 1st up to today (inclusive) for the current month,
    the whole month for past months, 0 for future months.
    """
    if (year, month) > (today.year, today.month):
        return 0
    end_day = calendar.monthrange(year, month)[1]
    if (year, month) == (today.year, today.month):
        end_day = today.day

    closed = closed_days(year, month, holidays)
    return sum(
        1 for day in range(1, end_day + 1) if dt.date(year, month, day).isoformat() not in closed
    )


def generate_monthly_report(
    snapshot: Mapping[str, LedgerEntry],
    holidays: Sequence[Holiday],
    year: int,
    month: int,
    today: Optional[dt.date] = None,
) -> Dict[str, Any]:
    """
    Monthly summary of the sales ledger, shaped for JSON output:

        year, month, totalDays, totalReservations, totalPeople, menuSales,
        dailySales (sorted by date), topMenu (top 5), averageDailyPeople,
        busiestDay
    """
    today = today or dt.date.today()
    prefix = f"{year:04d}-{month:02d}-"

    total_days = operating_days(year, month, holidays, today)
    total_reservations = 0
    total_people = 0
    menu_sales: Dict[str, int] = {}
    daily: List[Dict[str, Any]] = []

    for day in sorted(d for d in snapshot if d.startswith(prefix)):
        entry = snapshot[day]
        total_reservations += entry.reservations
        total_people += entry.people
        for menu, qty in entry.menu_sales.items():
            menu_sales[menu] = menu_sales.get(menu, 0) + qty
        daily.append(
            {
                "date": day,
                "reservations": entry.reservations,
                "people": entry.people,
                "menuSales": dict(entry.menu_sales),
            }
        )

    ranked = sorted(menu_sales.items(), key=lambda kv: kv[1], reverse=True)

    # Earliest day wins ties; a month with no verified people has no busiest day.
    busiest_day = None
    max_people = 0
    for row in daily:
        if row["people"] > max_people:
            max_people = row["people"]
            busiest_day = row["date"]

    return {
        "year": year,
        "month": month,
        "totalDays": total_days,
        "totalReservations": total_reservations,
        "totalPeople": total_people,
        "menuSales": dict(ranked),
        "dailySales": daily,
        "topMenu": dict(ranked[:TOP_MENU_LIMIT]),
        "averageDailyPeople": round(total_people / total_days, 1) if total_days > 0 else 0,
        "busiestDay": busiest_day,
    }
