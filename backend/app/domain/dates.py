"""
Date Utilities

Pure helpers for civil-date arithmetic and display formatting.

Expiration dates are civil dates (no time of day, no timezone). They are
interpreted against the viewer's local day boundaries so that a record
due "today" does not flip a day early or late around midnight UTC.
Every helper is total: bad input yields a safe default instead of raising.
"""

import math
from datetime import date, datetime, time
from typing import Optional, Union

DateInput = Union[str, date, datetime, None]

DEFAULT_LOCALE = "es-AR"

SECONDS_PER_DAY = 86400

_SPANISH_MONTHS = (
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
)
_ENGLISH_MONTHS = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)


def parse_civil_date(value: DateInput) -> Optional[Union[date, datetime]]:
    """
    Parse a date-only or date-time value.

    Accepts ``date``/``datetime`` objects and ISO strings
    (``YYYY-MM-DD`` or ``YYYY-MM-DDTHH:MM[:SS][Z|+HH:MM]``).

    Returns:
        ``date`` for date-only input, ``datetime`` when a time part is
        present, or None if the value cannot be parsed.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None

    raw = value.strip()
    if not raw:
        return None

    try:
        if "T" in raw or " " in raw:
            if raw.endswith("Z"):
                raw = raw[:-1] + "+00:00"
            return datetime.fromisoformat(raw)
        return date.fromisoformat(raw)
    except ValueError:
        return None


def _to_local_naive(value: datetime) -> datetime:
    """Convert an aware datetime to naive local time; naive is kept as-is."""
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


def _as_date(parsed: Union[date, datetime]) -> date:
    if isinstance(parsed, datetime):
        return _to_local_naive(parsed).date()
    return parsed


def days_until(value: DateInput, today: Optional[date] = None) -> Optional[int]:
    """
    Days from local midnight today until the given date.

    ``ceil((target - today_midnight) / 1 day)``; negative means the date is
    already past, 0 means it is today.

    Args:
        value: Civil date (or timestamp) to measure against
        today: Reference day; defaults to the local calendar day

    Returns:
        Whole days, or None if the value is not a recognizable date
    """
    parsed = parse_civil_date(value)
    if parsed is None:
        return None

    today = today or date.today()

    if isinstance(parsed, datetime):
        target = _to_local_naive(parsed)
        delta = target - datetime.combine(today, time.min)
        return math.ceil(delta.total_seconds() / SECONDS_PER_DAY)

    return (parsed - today).days


def format_local(value: DateInput, locale: str = DEFAULT_LOCALE) -> str:
    """Short display date (es-AR: ``12/3/2025``). Returns ``-`` for bad input."""
    parsed = parse_civil_date(value)
    if parsed is None:
        return "-"

    day = _as_date(parsed)
    if locale.startswith("es"):
        return f"{day.day}/{day.month}/{day.year}"
    if locale == "en-US":
        return f"{day.month}/{day.day}/{day.year}"
    return day.isoformat()


def format_long(value: DateInput, locale: str = DEFAULT_LOCALE) -> str:
    """Long display date used in reminder emails (``12 de marzo de 2025``)."""
    parsed = parse_civil_date(value)
    if parsed is None:
        return "-"

    day = _as_date(parsed)
    if locale.startswith("es"):
        return f"{day.day} de {_SPANISH_MONTHS[day.month - 1]} de {day.year}"
    if locale.startswith("en"):
        return f"{_ENGLISH_MONTHS[day.month - 1]} {day.day}, {day.year}"
    return day.isoformat()


def add_years(value: date, years: int) -> date:
    """Shift a date by whole calendar years; Feb 29 rolls over to Mar 1."""
    try:
        return value.replace(year=value.year + years)
    except ValueError:
        return value.replace(year=value.year + years, month=3, day=1)

