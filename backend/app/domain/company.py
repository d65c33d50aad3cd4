"""
Company Domain Model

The billing-relevant slice of a company (institution) record.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class CompanySubscriptionStatus(str, Enum):
    """Denormalized subscription state kept on the company row."""
    ACTIVE = "active"
    CANCELED = "canceled"
    PAUSED = "paused"
    EXPIRED = "expired"


class Company(BaseModel):
    """Company entity as read by the access gate and billing flows."""
    model_config = ConfigDict(from_attributes=True)

    id: Optional[str] = None
    user_id: str
    name: str = ""
    is_subscribed: bool = False
    trial_ends_at: Optional[datetime] = None
    subscription_status: Optional[CompanySubscriptionStatus] = None
    selected_plan: Optional[str] = None
    subscription_renewal_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
