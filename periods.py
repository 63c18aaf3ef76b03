from dataclasses import dataclass
from datetime import date
from typing import Optional


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    @property
    def is_empty(self) -> bool:
        return self.end < self.start


def month_bounds(year: int, month: int) -> tuple[date, date]:
    first = date(year, month, 1)
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return first, next_month - date.resolution


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Optional[Period]:
    """Turn query parameters into a date range.

    Returns ``None`` for the unbounded "all" view. A custom range whose end is
    before its start is returned as-is; queries over it match nothing.
    """
    today = today or date.today()
    if start or end:
        period = "custom"
    if not period or period == "all":
        return None
    if period == "last_month":
        first_this = today.replace(day=1)
        last_month_end = first_this - date.resolution
        last_month_start = last_month_end.replace(day=1)
        return Period("last_month", last_month_start, last_month_end)
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        return Period("custom", date.fromisoformat(start), date.fromisoformat(end))
    if period == "this_month":
        first, last = month_bounds(today.year, today.month)
        return Period("this_month", first, last)
    raise ValueError(f"Unknown period: {period}")
