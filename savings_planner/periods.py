"""Payment-day aligned period calendar."""

import calendar
from datetime import date, datetime, timezone
from typing import Union


def add_months(value: date, months: int) -> date:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def period_label(value: Union[date, datetime]) -> str:
    """Return the ``YYYY-MM`` label of a date or UTC instant."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        value = value.date()
    return f"{value.year:04d}-{value.month:02d}"


def next_payment_date(today: date, payment_day: int) -> date:
    """First payment date strictly after ``today``."""
    payment_date = date(today.year, today.month, payment_day)
    if payment_date <= today:
        payment_date = add_months(payment_date, 1)
    return payment_date


def periods_until(deadline: date, today: date, payment_day: int) -> int:
    """Count payment dates falling strictly before ``deadline``.

    Counting starts from the next payment date. Always at least 1 so that a
    goal due this period still divides by one period.
    """
    payment_date = next_payment_date(today, payment_day)
    count = 0
    while payment_date < deadline:
        count += 1
        payment_date = add_months(payment_date, 1)
    return max(1, count)
