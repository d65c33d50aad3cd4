"""
Database Infrastructure Package for Escuela Segura

Exports database utilities and repository dependencies.
"""

from app.infrastructure.db.database import (
    DatabaseManager,
    get_db_manager,
    get_session_context,
    init_db,
    close_db,
)

from app.infrastructure.db.dependencies import (
    CompanyRepoDep,
    SubscriptionRepoDep,
    PaymentTransactionRepoDep,
)


__all__ = [
    # Database management
    "DatabaseManager",
    "get_db_manager",
    "get_session_context",
    "init_db",
    "close_db",
    # Dependencies
    "CompanyRepoDep",
    "SubscriptionRepoDep",
    "PaymentTransactionRepoDep",
]
