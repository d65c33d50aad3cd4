"""
Access API Routes

Trial/subscription access status for the signed-in company.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel

from app.api.dependencies import CurrentCompany
from app.config.settings import get_settings
from app.domain.company import Company, CompanySubscriptionStatus
from app.domain.trial import (
    TrialStatus,
    has_access,
    trial_days_remaining,
    trial_end_for,
    trial_status,
)
from app.infrastructure.db.dependencies import CompanyRepoDep


logger = logging.getLogger(__name__)

router = APIRouter()


class AccessStatusResponse(BaseModel):
    company_id: str
    has_access: bool
    is_subscribed: bool
    trial_status: TrialStatus
    trial_days_remaining: int
    trial_ends_at: Optional[datetime] = None
    subscription_status: Optional[CompanySubscriptionStatus] = None
    selected_plan: Optional[str] = None


def _access_response(company: Company) -> AccessStatusResponse:
    now = datetime.now(timezone.utc)
    return AccessStatusResponse(
        company_id=company.id,
        has_access=has_access(company, now),
        is_subscribed=company.is_subscribed,
        trial_status=trial_status(company, now),
        trial_days_remaining=trial_days_remaining(company, now),
        trial_ends_at=company.trial_ends_at,
        subscription_status=company.subscription_status,
        selected_plan=company.selected_plan,
    )


@router.get("/access", response_model=AccessStatusResponse)
async def get_access_status(company: CurrentCompany):
    """Current access decision. Never cached: recomputed on every call."""
    return _access_response(company)


@router.post("/access/trial", response_model=AccessStatusResponse)
async def start_trial(company: CurrentCompany, companies: CompanyRepoDep):
    """
    Grant the free trial to a company that never had one.

    Idempotent: an existing trial end (expired or not) is left alone.
    """
    if company.trial_ends_at is not None or company.is_subscribed:
        return _access_response(company)

    ends_at = trial_end_for(datetime.now(timezone.utc), get_settings().trial_days)
    updated = await companies.start_trial(company.id, ends_at)
    return _access_response(updated)
