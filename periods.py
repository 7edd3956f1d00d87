import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from errors import ValidationError

MONTH_RE = re.compile(r"^\d{4}-\d{2}$")
END_OF_DAY = time(23, 59, 59, 999000)


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime
    month: Optional[str] = None

    @property
    def days(self) -> int:
        return (self.end.date() - self.start.date()).days + 1

    @property
    def window(self) -> str:
        if self.month:
            return self.month
        return f"{self.start.date().isoformat()}:{self.end.date().isoformat()}"

    def as_dict(self) -> dict[str, str]:
        return {
            "startDate": self.start.isoformat(timespec="milliseconds"),
            "endDate": self.end.isoformat(timespec="milliseconds"),
        }


def local_now() -> datetime:
    """Current wall-clock time in the configured timezone, as a naive datetime."""
    tz = ZoneInfo(get_settings().timezone)
    return datetime.now(tz).replace(tzinfo=None)


def month_key(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def previous_month_key(d: date) -> str:
    first = d.replace(day=1)
    return month_key(first - timedelta(days=1))


def month_bounds(year: int, month: int) -> tuple[datetime, datetime]:
    start = datetime(year, month, 1)
    if month == 12:
        next_first = date(year + 1, 1, 1)
    else:
        next_first = date(year, month + 1, 1)
    last_day = next_first - date.resolution
    return start, datetime.combine(last_day, END_OF_DAY)


def parse_month(month: str) -> tuple[int, int]:
    if not MONTH_RE.match(month):
        raise ValidationError("Month must be in YYYY-MM format (e.g., 2024-01)")
    year, month_num = (int(part) for part in month.split("-"))
    if not 1 <= month_num <= 12 or year < 1:
        raise ValidationError("Month must be in YYYY-MM format (e.g., 2024-01)")
    return year, month_num


def parse_calendar_date(value: str, field: str) -> date:
    raw = value.strip()
    try:
        if len(raw) > 10:
            return datetime.fromisoformat(raw.replace("Z", "+00:00")).date()
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise ValidationError(
            f"Invalid {field} format. Use ISO 8601 format (e.g., 2024-01-15)"
        ) from exc


def resolve_range(
    month: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> DateRange:
    if month:
        year, month_num = parse_month(month)
        start, end = month_bounds(year, month_num)
        return DateRange(start, end, month=f"{year:04d}-{month_num:02d}")

    if start_date and end_date:
        start_day = parse_calendar_date(start_date, "startDate")
        end_day = parse_calendar_date(end_date, "endDate")
        if start_day > end_day:
            raise ValidationError("startDate must be before or equal to endDate")
        return DateRange(
            datetime.combine(start_day, time.min),
            datetime.combine(end_day, END_OF_DAY),
        )

    now = now or local_now()
    start, end = month_bounds(now.year, now.month)
    return DateRange(start, end, month=month_key(now))
