"""
Trial Access Rules

Decides whether a company may use the product: paid subscribers always
can, unsubscribed companies only while their trial window is open.

These checks are relative to the wall clock, so callers must evaluate
them on every request instead of caching the result.
"""

import math
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from app.domain.company import Company


DEFAULT_TRIAL_DAYS = 14


class TrialStatus(str, Enum):
    """Trial state of a company."""
    ACTIVE = "active"
    EXPIRED = "expired"
    NONE = "none"  # subscribed, or never granted a trial


def _utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _now(now: Optional[datetime]) -> datetime:
    return _utc(now) if now is not None else datetime.now(timezone.utc)


def trial_status(company: Optional[Company], now: Optional[datetime] = None) -> TrialStatus:
    """
    Trial status for a company.

    - none:    no company, paid subscriber, or no trial was ever set
    - active:  trial end is still in the future
    - expired: trial ended and the company is not subscribed
    """
    if company is None:
        return TrialStatus.NONE
    if company.is_subscribed:
        return TrialStatus.NONE
    if company.trial_ends_at is None:
        return TrialStatus.NONE

    if _now(now) < _utc(company.trial_ends_at):
        return TrialStatus.ACTIVE
    return TrialStatus.EXPIRED


def trial_days_remaining(company: Optional[Company], now: Optional[datetime] = None) -> int:
    """Whole days left in the trial (rounded up); 0 when none or over."""
    if company is None or company.is_subscribed or company.trial_ends_at is None:
        return 0

    remaining = _utc(company.trial_ends_at) - _now(now)
    if remaining <= timedelta(0):
        return 0
    return math.ceil(remaining.total_seconds() / 86400)


def has_access(company: Optional[Company], now: Optional[datetime] = None) -> bool:
    """Whether the company may use protected functionality right now."""
    if company is None:
        return False
    if company.is_subscribed:
        return True
    return trial_status(company, now) == TrialStatus.ACTIVE


def trial_end_for(start: datetime, trial_days: int = DEFAULT_TRIAL_DAYS) -> datetime:
    """Trial end stamped on a newly created company."""
    return _utc(start) + timedelta(days=trial_days)
