"""
SQLModel ORM Models for Escuela Segura

Exports all database models for Alembic autogenerate and application use.
Import models here to register them with SQLModel.metadata.
"""

from app.infrastructure.db.models.base import TimestampMixin
from app.infrastructure.db.models.company import CompanyModel
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.db.models.payment_transaction import PaymentTransactionModel


__all__ = [
    "TimestampMixin",
    "CompanyModel",
    "SubscriptionModel",
    "PaymentTransactionModel",
]
