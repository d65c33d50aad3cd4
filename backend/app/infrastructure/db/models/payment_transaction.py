"""
Payment Transaction Database Model

Charges recorded by the payment processor integration. Rows are
append-only; this service only reads them.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel
from sqlalchemy import Column, DateTime, ForeignKey, Numeric
from sqlalchemy.dialects.postgresql import UUID as PGUUID

from app.infrastructure.db.models.base import utc_now


class PaymentTransactionModel(SQLModel, table=True):
    """Maps to the 'payment_transactions' table in PostgreSQL."""
    
    __tablename__ = "payment_transactions"
    
    id: UUID = Field(default_factory=uuid4, sa_column=Column(PGUUID(as_uuid=True), primary_key=True))
    subscription_id: Optional[UUID] = Field(
        default=None,
        sa_column=Column(PGUUID(as_uuid=True), ForeignKey("subscriptions.id", ondelete="SET NULL"), index=True),
    )
    company_id: UUID = Field(
        sa_column=Column(
            PGUUID(as_uuid=True),
            ForeignKey("companies.id", ondelete="CASCADE"),
            index=True,
            nullable=False,
        )
    )
    external_transaction_id: Optional[str] = Field(default=None, unique=True)
    
    gross_amount: Decimal = Field(sa_column=Column(Numeric(12, 2), nullable=False))
    fee_amount: Optional[Decimal] = Field(default=None, sa_column=Column(Numeric(12, 2)))
    net_amount: Optional[Decimal] = Field(default=None, sa_column=Column(Numeric(12, 2)))
    currency: str = Field(default="ARS")
    status: str = Field(default="pending")
    
    paid_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True), nullable=False)
