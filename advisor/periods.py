from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

TRAILING_WINDOW_DAYS = 30
TREND_MONTHS = 3


@dataclass(frozen=True)
class MonthWindow:
    month: str
    start: date
    end_exclusive: date

    @property
    def last_day(self) -> date:
        return self.end_exclusive - timedelta(days=1)

    def contains(self, value: date) -> bool:
        return self.start <= value < self.end_exclusive


def parse_month_value(value: str) -> date:
    normalized = (value or "").strip()
    try:
        parsed = datetime.strptime(normalized, "%Y-%m").date()
    except ValueError as exc:
        raise ValueError("Invalid month format. Use YYYY-MM.") from exc
    if len(normalized) != 7:
        raise ValueError("Invalid month format. Use YYYY-MM.")
    return parsed


def format_month(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def current_month(now: datetime | None = None) -> str:
    """Return the UTC month of ``now`` (default: the current instant)."""
    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return format_month(moment.date())


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def month_window(month: str) -> MonthWindow:
    start = parse_month_value(month)
    return MonthWindow(
        month=format_month(start),
        start=start,
        end_exclusive=shift_month(start, 1),
    )


def trend_months(month: str) -> list[str]:
    """Return the month and its two predecessors, oldest first."""
    start = parse_month_value(month)
    return [
        format_month(shift_month(start, offset))
        for offset in range(-(TREND_MONTHS - 1), 1)
    ]


def resolve_anchor_date(window: MonthWindow, today: date) -> date:
    """Anchor the trailing window to today, or to the month's last day once it is over."""
    if today > window.last_day:
        return window.last_day
    return today


def trailing_window(anchor: date) -> tuple[date, date]:
    return anchor - timedelta(days=TRAILING_WINDOW_DAYS - 1), anchor
