from __future__ import annotations

from calendar import monthrange
from datetime import date, datetime

from ..exceptions import BillingValidationError


def month_bounds(check_date: date) -> tuple[date, date]:
    month_start = date(check_date.year, check_date.month, 1)
    last_day = monthrange(month_start.year, month_start.month)[1]
    month_end = date(month_start.year, month_start.month, last_day)
    return month_start, month_end


def parse_month_start(month_value: object) -> date:
    """Accepts a date or a ``YYYY-MM`` / ``YYYY-MM-DD`` string naming the first of a month."""
    if isinstance(month_value, datetime):
        month_value = month_value.date()
    if isinstance(month_value, date):
        parsed = month_value
    elif isinstance(month_value, str) and month_value.strip():
        raw = month_value.strip()
        try:
            if len(raw) == 7:
                year_str, month_str = raw.split("-")
                parsed = date(int(year_str), int(month_str), 1)
            else:
                parsed = date.fromisoformat(raw)
        except (ValueError, TypeError) as exc:
            raise BillingValidationError(
                f"Invalid month {month_value!r}. Expected YYYY-MM or YYYY-MM-01."
            ) from exc
    else:
        raise BillingValidationError("A billing month is required.")

    if parsed.day != 1:
        raise BillingValidationError(
            f"Month key {parsed.isoformat()} must be the first day of the month."
        )
    return parsed


def parse_lenient_date(value: object) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            return None
    return None


def inclusive_days(start: date, end: date) -> int:
    return (end - start).days + 1
