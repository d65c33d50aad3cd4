"""
Subscription Database Model

SQLModel table for subscription data persistence.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field
from sqlalchemy import Column, DateTime, ForeignKey, Numeric
from sqlalchemy.dialects.postgresql import UUID as PGUUID

from app.infrastructure.db.models.base import TimestampMixin


class SubscriptionModel(TimestampMixin, table=True):
    """
    Subscription table. A company may accumulate several rows over time;
    the most recently created one governs access.
    
    Maps to the 'subscriptions' table in PostgreSQL.
    """
    
    __tablename__ = "subscriptions"
    
    id: UUID = Field(default_factory=uuid4, sa_column=Column(PGUUID(as_uuid=True), primary_key=True))
    company_id: UUID = Field(
        sa_column=Column(
            PGUUID(as_uuid=True),
            ForeignKey("companies.id", ondelete="CASCADE"),
            index=True,
            nullable=False,
        )
    )
    
    # Processor linkage
    payment_provider: str = Field(default="stripe")
    external_subscription_id: Optional[str] = Field(default=None, unique=True, index=True)
    external_plan_id: Optional[str] = Field(default=None)
    
    # Plan terms
    plan_key: str
    plan_name: str
    amount: Decimal = Field(sa_column=Column(Numeric(12, 2), nullable=False))
    currency: str = Field(default="ARS")
    
    status: str = Field(default="pending", index=True)
    subscriber_email: Optional[str] = Field(default=None)
    
    # Card of record (display only)
    payment_method_brand: Optional[str] = Field(default=None)
    card_last_four: Optional[str] = Field(default=None, max_length=4)
    
    # Billing period dates
    current_period_start: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    current_period_end: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    next_billing_time: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    
    # Lifecycle timestamps, stamped by sync
    activated_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    cancelled_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    suspended_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    
    failed_payments_count: int = Field(default=0)
