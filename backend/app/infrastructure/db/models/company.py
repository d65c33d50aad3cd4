"""
Company Database Model

SQLModel table for the billing-relevant columns of a company.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field
from sqlalchemy import Column, DateTime
from sqlalchemy.dialects.postgresql import UUID as PGUUID

from app.infrastructure.db.models.base import TimestampMixin


class CompanyModel(TimestampMixin, table=True):
    """
    Company (institution) owned by a user.
    
    Maps to the 'companies' table in PostgreSQL.
    """
    
    __tablename__ = "companies"
    
    id: UUID = Field(default_factory=uuid4, sa_column=Column(PGUUID(as_uuid=True), primary_key=True))
    user_id: UUID = Field(sa_column=Column(PGUUID(as_uuid=True), unique=True, index=True, nullable=False))
    name: str = Field(default="")
    
    # Access
    is_subscribed: bool = Field(default=False)
    trial_ends_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    
    # Denormalized from the governing subscription after each sync
    subscription_status: Optional[str] = Field(default=None)
    selected_plan: Optional[str] = Field(default=None)
    subscription_renewal_date: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
