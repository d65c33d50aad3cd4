"""
Payment Transaction Repository

Read-only access to processor charges for the payment history view.
"""

from typing import Optional
from uuid import UUID

from sqlmodel import select

from app.domain.subscription import PaymentTransaction, PaymentTransactionStatus
from app.infrastructure.db.database import get_session_context
from app.infrastructure.db.models.payment_transaction import PaymentTransactionModel


class PaymentTransactionRepository:
    """Repository for payment transactions. Rows are written by the processor integration."""

    async def list_for_company(self, company_id: str, limit: int = 50) -> list[PaymentTransaction]:
        """Most recent charges first."""
        async with get_session_context() as session:
            statement = (
                select(PaymentTransactionModel)
                .where(PaymentTransactionModel.company_id == UUID(company_id))
                .order_by(PaymentTransactionModel.created_at.desc())
                .limit(limit)
            )
            result = await session.execute(statement)
            return [self._to_domain(m) for m in result.scalars().all()]

    def _to_domain(self, model: PaymentTransactionModel) -> PaymentTransaction:
        return PaymentTransaction(
            id=str(model.id),
            subscription_id=str(model.subscription_id) if model.subscription_id else None,
            company_id=str(model.company_id),
            external_transaction_id=model.external_transaction_id,
            gross_amount=model.gross_amount,
            fee_amount=model.fee_amount,
            net_amount=model.net_amount,
            currency=model.currency or "ARS",
            status=PaymentTransactionStatus(model.status),
            paid_at=model.paid_at,
            created_at=model.created_at,
        )


_payment_repo_instance: Optional[PaymentTransactionRepository] = None


def get_payment_transaction_repository() -> PaymentTransactionRepository:
    """Get or create payment transaction repository singleton."""
    global _payment_repo_instance

    if _payment_repo_instance is None:
        _payment_repo_instance = PaymentTransactionRepository()

    return _payment_repo_instance
