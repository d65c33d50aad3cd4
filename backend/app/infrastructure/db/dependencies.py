"""
Dependency Injection Providers for Escuela Segura

FastAPI dependencies for repositories and the subscription lifecycle service.
Routes depend on these providers so tests can replace them through
app.dependency_overrides.
"""

from typing import Annotated

from fastapi import Depends

from app.infrastructure.db.repositories import (
    CompanyRepository,
    SubscriptionRepository,
    PaymentTransactionRepository,
    get_company_repository,
    get_subscription_repository,
    get_payment_transaction_repository,
)


# Type aliases for repository dependencies
CompanyRepoDep = Annotated[
    CompanyRepository,
    Depends(get_company_repository)
]
SubscriptionRepoDep = Annotated[
    SubscriptionRepository,
    Depends(get_subscription_repository)
]
PaymentTransactionRepoDep = Annotated[
    PaymentTransactionRepository,
    Depends(get_payment_transaction_repository)
]
