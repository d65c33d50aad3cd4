"""
Expiration Domain Logic

Compliance status for dated records (certificates, inspections, QR-tagged
equipment documents) and the look-ahead window used for reminders.

Statuses are derived on every read from the expiration date and the
current day. Nothing here is stored or cached.
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from app.domain.dates import (
    DEFAULT_LOCALE,
    DateInput,
    add_years,
    days_until,
    format_long,
    parse_civil_date,
)


DEFAULT_EXPIRING_THRESHOLD_DAYS = 31
DEFAULT_NOTIFICATION_WINDOW_DAYS = 31
DEFAULT_URGENCY_THRESHOLD_DAYS = 10

# QR-tagged documents carry an inspection ("extracted") date rather than an
# expiration date; they expire a fixed number of years later.
QR_VALIDITY_YEARS = 1
QR_EXPIRING_THRESHOLD_DAYS = 30


class ExpirationStatus(str, Enum):
    """Compliance status of a dated record."""
    VALID = "valid"
    EXPIRING = "expiring"
    EXPIRED = "expired"


class NotificationCategory(str, Enum):
    """Reminder category emitted for a dated record."""
    EXPIRATION_WARNING = "expiration_warning"
    EXPIRED = "expired"


class RecordKind(str, Enum):
    """Kinds of dated records tracked by the product."""
    CERTIFICATE = "certificate"
    INSPECTION = "inspection"
    EVENT = "event"
    FIRE_EXTINGUISHER = "fire_extinguisher"
    QR_DOCUMENT = "qr_document"


class ExpirationNotice(BaseModel):
    """Reminder payload handed to notification collaborators."""
    record_id: str
    kind: RecordKind
    category: NotificationCategory
    days_until_expiration: int
    urgent: bool
    expiration_display: str


def classify_expiration(
    expiration_date: DateInput,
    threshold_days: int = DEFAULT_EXPIRING_THRESHOLD_DAYS,
    today: Optional[date] = None,
) -> ExpirationStatus:
    """
    Classify a record as valid, expiring or expired.

    A record due today is already expired: the threshold only covers
    days strictly in the future. Unparseable dates are reported expired.
    """
    remaining = days_until(expiration_date, today=today)
    if remaining is None or remaining < 1:
        return ExpirationStatus.EXPIRED
    if remaining <= threshold_days:
        return ExpirationStatus.EXPIRING
    return ExpirationStatus.VALID


def is_within_window(
    expiration_date: DateInput,
    window_days: int = DEFAULT_NOTIFICATION_WINDOW_DAYS,
    today: Optional[date] = None,
) -> bool:
    """True iff the record expires after today and within ``window_days``."""
    remaining = days_until(expiration_date, today=today)
    if remaining is None:
        return False
    return 0 < remaining <= window_days


def notification_category(
    expiration_date: DateInput,
    window_days: int = DEFAULT_NOTIFICATION_WINDOW_DAYS,
    today: Optional[date] = None,
) -> Optional[NotificationCategory]:
    """Which reminder (if any) a record should trigger today."""
    remaining = days_until(expiration_date, today=today)
    if remaining is None:
        return None
    if remaining < 1:
        return NotificationCategory.EXPIRED
    if remaining <= window_days:
        return NotificationCategory.EXPIRATION_WARNING
    return None


def is_urgent(
    days_until_expiration: int,
    urgency_threshold_days: int = DEFAULT_URGENCY_THRESHOLD_DAYS,
) -> bool:
    """Reminders this close to the deadline are flagged as urgent."""
    return days_until_expiration <= urgency_threshold_days


def qr_document_expiration(
    extracted_date: DateInput,
    validity_years: int = QR_VALIDITY_YEARS,
) -> Optional[date]:
    """Expiration of a QR document: its extracted date plus ``validity_years``."""
    parsed = parse_civil_date(extracted_date)
    if parsed is None:
        return None
    if isinstance(parsed, datetime):
        parsed = parsed.date()
    return add_years(parsed, validity_years)


def build_expiration_notice(
    record_id: str,
    kind: RecordKind,
    expiration_date: DateInput,
    window_days: int = DEFAULT_NOTIFICATION_WINDOW_DAYS,
    urgency_threshold_days: int = DEFAULT_URGENCY_THRESHOLD_DAYS,
    locale: str = DEFAULT_LOCALE,
    today: Optional[date] = None,
) -> Optional[ExpirationNotice]:
    """
    Build the reminder for a record, or None when no reminder is due.

    Args:
        record_id: Identifier of the dated record
        kind: Record kind (used by consumers to pick wording)
        expiration_date: Civil expiration date
        window_days: Look-ahead window for expiration warnings
        urgency_threshold_days: Days at or below which a warning is urgent
        locale: Locale for the human-readable date
        today: Reference day

    Returns:
        ExpirationNotice or None
    """
    category = notification_category(expiration_date, window_days, today=today)
    if category is None:
        return None

    remaining = days_until(expiration_date, today=today)
    return ExpirationNotice(
        record_id=record_id,
        kind=kind,
        category=category,
        days_until_expiration=remaining,
        urgent=is_urgent(remaining, urgency_threshold_days),
        expiration_display=format_long(expiration_date, locale),
    )
