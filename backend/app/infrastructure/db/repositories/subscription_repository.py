"""
Subscription Repository

Data access layer for subscription persistence.
Follows Repository pattern for Clean Architecture.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4, UUID

from sqlalchemy import or_, and_
from sqlmodel import select

from app.infrastructure.db.database import get_session_context
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.domain.subscription import (
    PaymentProvider,
    PlanKey,
    Subscription,
    SubscriptionStatus,
)
from app.infrastructure.exceptions import NotFoundError


logger = logging.getLogger(__name__)


def _uuid(value) -> UUID:
    return UUID(value) if isinstance(value, str) else value


class SubscriptionRepository:
    """
    Repository for subscription data access.

    Implements CRUD operations with domain model mapping.
    Uses async SQLModel for database operations.
    """

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get_by_id(self, subscription_id: str) -> Optional[Subscription]:
        """
        Get subscription by internal ID.

        Args:
            subscription_id: Subscription UUID as string

        Returns:
            Subscription domain model or None
        """
        try:
            subscription_uuid = _uuid(subscription_id)
        except ValueError:
            return None

        async with get_session_context() as session:
            model = await session.get(SubscriptionModel, subscription_uuid)

            if model:
                return self._to_domain(model)

            return None

    async def get_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        """Get subscription by processor subscription ID."""
        async with get_session_context() as session:
            statement = select(SubscriptionModel).where(
                SubscriptionModel.external_subscription_id == external_subscription_id
            )
            result = await session.execute(statement)
            model = result.scalar_one_or_none()

            if model:
                return self._to_domain(model)

            return None

    async def get_governing_for_company(self, company_id: str) -> Optional[Subscription]:
        """
        Get the subscription that governs a company's access.

        Several rows may exist per company (past cancellations, failed
        attempts); the most recently created one wins.
        """
        async with get_session_context() as session:
            statement = (
                select(SubscriptionModel)
                .where(SubscriptionModel.company_id == _uuid(company_id))
                .order_by(SubscriptionModel.created_at.desc())
                .limit(1)
            )
            result = await session.execute(statement)
            model = result.scalars().first()

            if model:
                return self._to_domain(model)

            return None

    async def list_due_for_sync(self, now: datetime, limit: int = 100) -> list[Subscription]:
        """Active subscriptions whose next billing time has passed."""
        async with get_session_context() as session:
            statement = (
                select(SubscriptionModel)
                .where(SubscriptionModel.status == SubscriptionStatus.ACTIVE.value)
                .where(SubscriptionModel.next_billing_time.is_not(None))
                .where(SubscriptionModel.next_billing_time <= now)
                .order_by(SubscriptionModel.next_billing_time)
                .limit(limit)
            )
            result = await session.execute(statement)
            return [self._to_domain(m) for m in result.scalars().all()]

    async def list_cancelled_past_period(self, now: datetime, limit: int = 100) -> list[Subscription]:
        """Cancelled subscriptions whose paid-through time is behind ``now``."""
        async with get_session_context() as session:
            statement = (
                select(SubscriptionModel)
                .where(SubscriptionModel.status == SubscriptionStatus.CANCELLED.value)
                .where(
                    or_(
                        SubscriptionModel.next_billing_time <= now,
                        and_(
                            SubscriptionModel.next_billing_time.is_(None),
                            SubscriptionModel.current_period_end <= now,
                        ),
                    )
                )
                .limit(limit)
            )
            result = await session.execute(statement)
            return [self._to_domain(m) for m in result.scalars().all()]

    # =========================================================================
    # Command Methods
    # =========================================================================

    async def create(self, subscription: Subscription) -> Subscription:
        """
        Create a new subscription.

        Args:
            subscription: Subscription domain model

        Returns:
            Created subscription with ID
        """
        async with get_session_context() as session:
            model = self._to_model(subscription)
            model.id = uuid4()
            model.created_at = datetime.now(timezone.utc)
            model.updated_at = model.created_at

            session.add(model)
            await session.commit()
            await session.refresh(model)

            logger.info(f"Created subscription {model.id} for company {model.company_id}")
            return self._to_domain(model)

    async def update(self, subscription: Subscription) -> Subscription:
        """
        Write every mutable field of an existing subscription.

        Args:
            subscription: Subscription with updated values

        Returns:
            Updated subscription
        """
        async with get_session_context() as session:
            model = await session.get(SubscriptionModel, _uuid(subscription.id))

            if not model:
                raise NotFoundError(
                    f"Subscription {subscription.id} not found",
                    operation="update",
                    table="subscriptions",
                )

            model.external_subscription_id = subscription.external_subscription_id
            model.external_plan_id = subscription.external_plan_id
            model.plan_key = subscription.plan_key.value
            model.plan_name = subscription.plan_name
            model.amount = subscription.amount
            model.currency = subscription.currency
            model.status = subscription.status.value
            model.subscriber_email = subscription.subscriber_email
            model.payment_method_brand = subscription.payment_method_brand
            model.card_last_four = subscription.card_last_four
            model.current_period_start = subscription.current_period_start
            model.current_period_end = subscription.current_period_end
            model.next_billing_time = subscription.next_billing_time
            model.activated_at = subscription.activated_at
            model.cancelled_at = subscription.cancelled_at
            model.suspended_at = subscription.suspended_at
            model.failed_payments_count = subscription.failed_payments_count
            model.updated_at = datetime.now(timezone.utc)

            await session.commit()
            await session.refresh(model)

            logger.debug(f"Updated subscription {subscription.id} ({subscription.status.value})")
            return self._to_domain(model)

    # =========================================================================
    # Mapping Methods
    # =========================================================================

    def _to_domain(self, model: SubscriptionModel) -> Subscription:
        """Convert database model to domain entity."""
        return Subscription(
            id=str(model.id),
            company_id=str(model.company_id),
            payment_provider=PaymentProvider(model.payment_provider),
            external_subscription_id=model.external_subscription_id,
            external_plan_id=model.external_plan_id,
            plan_key=PlanKey(model.plan_key),
            plan_name=model.plan_name,
            amount=model.amount,
            currency=model.currency or "ARS",
            status=SubscriptionStatus(model.status),
            subscriber_email=model.subscriber_email,
            payment_method_brand=model.payment_method_brand,
            card_last_four=model.card_last_four,
            current_period_start=model.current_period_start,
            current_period_end=model.current_period_end,
            next_billing_time=model.next_billing_time,
            activated_at=model.activated_at,
            cancelled_at=model.cancelled_at,
            suspended_at=model.suspended_at,
            failed_payments_count=model.failed_payments_count or 0,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, domain: Subscription) -> SubscriptionModel:
        """Convert domain entity to database model."""
        return SubscriptionModel(
            id=_uuid(domain.id) if domain.id else None,
            company_id=_uuid(domain.company_id),
            payment_provider=domain.payment_provider.value,
            external_subscription_id=domain.external_subscription_id,
            external_plan_id=domain.external_plan_id,
            plan_key=domain.plan_key.value,
            plan_name=domain.plan_name,
            amount=domain.amount,
            currency=domain.currency,
            status=domain.status.value,
            subscriber_email=domain.subscriber_email,
            payment_method_brand=domain.payment_method_brand,
            card_last_four=domain.card_last_four,
            current_period_start=domain.current_period_start,
            current_period_end=domain.current_period_end,
            next_billing_time=domain.next_billing_time,
            activated_at=domain.activated_at,
            cancelled_at=domain.cancelled_at,
            suspended_at=domain.suspended_at,
            failed_payments_count=domain.failed_payments_count,
        )


# =============================================================================
# Singleton Instance
# =============================================================================

_subscription_repo_instance: Optional[SubscriptionRepository] = None


def get_subscription_repository() -> SubscriptionRepository:
    """Get or create subscription repository singleton."""
    global _subscription_repo_instance

    if _subscription_repo_instance is None:
        _subscription_repo_instance = SubscriptionRepository()

    return _subscription_repo_instance
