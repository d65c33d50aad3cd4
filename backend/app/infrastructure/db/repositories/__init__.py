"""
Repository Layer for Escuela Segura

Exports all repository classes for dependency injection.
"""

from app.infrastructure.db.repositories.company_repository import (
    CompanyRepository,
    get_company_repository,
)
from app.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
    get_subscription_repository,
)
from app.infrastructure.db.repositories.payment_transaction_repository import (
    PaymentTransactionRepository,
    get_payment_transaction_repository,
)


__all__ = [
    "CompanyRepository",
    "SubscriptionRepository",
    "PaymentTransactionRepository",
    "get_company_repository",
    "get_subscription_repository",
    "get_payment_transaction_repository",
]
