"""
Subscription Lifecycle Service

Drives subscription transitions against the payment processor while
keeping the local copy consistent with what the processor reports.

Rules this service follows:
1. A mutating call never writes a status itself. After the processor
   answers (successfully or not) the subscription is re-read through sync.
2. Only sync writes processor-owned fields, and it never calls a
   mutating processor endpoint.
3. One mutating transition per subscription at a time (per company for
   create). Concurrent callers are rejected, syncs queue.
"""

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel

from app.domain.company import CompanySubscriptionStatus
from app.domain.subscription import (
    BLOCKING_CREATE_STATUSES,
    PaymentProvider,
    PlanChangeDirection,
    PlanKey,
    Subscription,
    SubscriptionStatus,
    TransitionAction,
    can_transition,
    classify_plan_change,
    get_plan,
    grants_access,
    apply_processor_state,
    paid_through,
)
from app.infrastructure.db.repositories.company_repository import CompanyRepository
from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from app.infrastructure.exceptions import (
    MissingExternalReferenceError,
    NotFoundError,
    SubscriptionStateError,
    TransitionInProgressError,
    ValidationError,
)
from app.infrastructure.payments.gateway import PaymentGateway
from app.infrastructure.services.transition_locks import TransitionLockRegistry

logger = logging.getLogger(__name__)


# Key = subscription status, value = denormalized status stored on the company
COMPANY_STATUS_MAP = {
    SubscriptionStatus.ACTIVE: CompanySubscriptionStatus.ACTIVE,
    SubscriptionStatus.SUSPENDED: CompanySubscriptionStatus.PAUSED,
    SubscriptionStatus.CANCELLED: CompanySubscriptionStatus.CANCELED,
    SubscriptionStatus.EXPIRED: CompanySubscriptionStatus.EXPIRED,
}


class TransitionOutcome(BaseModel):
    """Result of a lifecycle operation."""
    action: TransitionAction
    subscription: Subscription
    plan_change: Optional[PlanChangeDirection] = None
    no_op: bool = False


class ScheduledCheckReport(BaseModel):
    """Summary of one scheduled subscription check."""
    synced: int = 0
    failed: int = 0
    expired: int = 0


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionLifecycleService:
    """
    Orchestrates subscription transitions.

    Collaborators are injected so tests can swap the processor and the
    repositories for mocks.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        subscriptions: SubscriptionRepository,
        companies: CompanyRepository,
        locks: TransitionLockRegistry,
    ):
        self.gateway = gateway
        self.subscriptions = subscriptions
        self.companies = companies
        self.locks = locks

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_current(self, company_id: str) -> Optional[Subscription]:
        """Governing (most recently created) subscription of a company."""
        return await self.subscriptions.get_governing_for_company(company_id)

    async def _load(self, subscription_id: str) -> Subscription:
        subscription = await self.subscriptions.get_by_id(subscription_id)
        if subscription is None:
            raise NotFoundError(
                f"Subscription {subscription_id} not found",
                operation="get",
                table="subscriptions",
            )
        return subscription

    # =========================================================================
    # Create
    # =========================================================================

    async def create(
        self,
        company_id: str,
        plan_key: PlanKey,
        card_token: str,
        payer_email: str,
    ) -> TransitionOutcome:
        """
        Subscribe a company to a plan.

        The processor is called exactly once. The record is persisted as
        pending (or approval_pending) and then synced; a failing sync here
        is logged and the pending record is returned.

        Raises:
            ValidationError: unknown plan, empty token or email
            SubscriptionStateError: company already has a live subscription
            PaymentProcessorError: processor rejected the subscription (nothing persisted)
        """
        try:
            plan = get_plan(plan_key)
        except (KeyError, ValueError):
            raise ValidationError(f"Unknown plan: {plan_key}", details={"plan_key": str(plan_key)})
        if not card_token or not card_token.strip():
            raise ValidationError("Card token is required")
        if not payer_email or not payer_email.strip():
            raise ValidationError("Payer email is required")

        async with self.locks.exclusive(f"company:{company_id}"):
            current = await self.subscriptions.get_governing_for_company(company_id)
            if current is not None and current.status in BLOCKING_CREATE_STATUSES:
                raise SubscriptionStateError(
                    "Company already has a subscription in progress",
                    action=TransitionAction.CREATE.value,
                    current_status=current.status.value,
                )

            logger.info(f"[BILLING] create: company={company_id} plan={plan.key.value}")
            result = await self.gateway.create_subscription(
                company_id=company_id,
                plan_key=plan.key,
                card_token=card_token.strip(),
                payer_email=payer_email.strip(),
            )

            initial_status = (
                SubscriptionStatus.APPROVAL_PENDING
                if result.status == SubscriptionStatus.APPROVAL_PENDING
                else SubscriptionStatus.PENDING
            )
            record = await self.subscriptions.create(Subscription(
                company_id=company_id,
                payment_provider=PaymentProvider(self.gateway.provider),
                external_subscription_id=result.external_subscription_id,
                external_plan_id=result.external_plan_id,
                plan_key=plan.key,
                plan_name=plan.name,
                amount=plan.amount,
                currency=plan.currency,
                status=initial_status,
                subscriber_email=payer_email.strip(),
            ))

            try:
                record = await self._sync_unlocked(record)
            except Exception as e:
                logger.error(
                    f"[BILLING] sync after create failed for {record.id}; "
                    f"keeping {record.status.value} record: {e}"
                )

        return TransitionOutcome(action=TransitionAction.CREATE, subscription=record)

    # =========================================================================
    # Management Transitions
    # =========================================================================

    async def _transition(
        self,
        subscription_id: str,
        action: TransitionAction,
        call: Callable[[Subscription], Awaitable[object]],
        plan_change: Optional[Callable[[Subscription], PlanChangeDirection]] = None,
    ) -> TransitionOutcome:
        """
        Run one mutating processor call followed by a sync.

        ``call`` receives the loaded subscription and performs the processor
        request; its return value is informational only.
        """
        async with self.locks.exclusive(subscription_id):
            subscription = await self._load(subscription_id)

            if action == TransitionAction.CANCEL and subscription.status == SubscriptionStatus.CANCELLED:
                logger.info(f"[BILLING] cancel: {subscription_id} already cancelled, nothing to do")
                return TransitionOutcome(action=action, subscription=subscription, no_op=True)

            if not subscription.external_subscription_id:
                raise MissingExternalReferenceError(subscription_id, action.value)

            if not can_transition(subscription.status, action):
                raise SubscriptionStateError(
                    f"Cannot {action.value.replace('_', ' ')} a {subscription.status.value} subscription",
                    action=action.value,
                    current_status=subscription.status.value,
                )

            direction = plan_change(subscription) if plan_change else None

            logger.info(f"[BILLING] {action.value}: subscription={subscription_id}")
            try:
                await call(subscription)
            except Exception:
                logger.error(f"[BILLING] {action.value} failed for {subscription_id}; re-reading processor state")
                try:
                    await self._sync_unlocked(subscription)
                except Exception as sync_error:
                    logger.error(f"[BILLING] sync after failed {action.value} also failed: {sync_error}")
                raise

            try:
                synced = await self._sync_unlocked(subscription)
            except Exception as e:
                logger.error(
                    f"[BILLING] {action.value} accepted by processor but sync failed "
                    f"for {subscription_id}: {e}"
                )
                synced = subscription

        return TransitionOutcome(action=action, subscription=synced, plan_change=direction)

    async def change_plan(self, subscription_id: str, new_plan_key: PlanKey) -> TransitionOutcome:
        """Switch plan from the next billing date. No proration, no refund."""
        try:
            new_plan = get_plan(new_plan_key)
        except (KeyError, ValueError):
            raise ValidationError(f"Unknown plan: {new_plan_key}", details={"plan_key": str(new_plan_key)})

        def classify(subscription: Subscription) -> PlanChangeDirection:
            if subscription.plan_key == new_plan.key:
                raise ValidationError(
                    "New plan must differ from the current plan",
                    details={"plan_key": new_plan.key.value},
                )
            return classify_plan_change(subscription.amount, new_plan.amount)

        return await self._transition(
            subscription_id,
            TransitionAction.CHANGE_PLAN,
            lambda s: self.gateway.change_plan(s.external_subscription_id, new_plan.key),
            plan_change=classify,
        )

    async def change_card(self, subscription_id: str, card_token: str) -> TransitionOutcome:
        """Replace the card of record."""
        if not card_token or not card_token.strip():
            raise ValidationError("Card token is required")

        return await self._transition(
            subscription_id,
            TransitionAction.CHANGE_CARD,
            lambda s: self.gateway.change_card(s.external_subscription_id, card_token.strip()),
        )

    async def cancel(self, subscription_id: str, reason: Optional[str] = None) -> TransitionOutcome:
        """Cancel renewals. Access continues through the paid period."""
        return await self._transition(
            subscription_id,
            TransitionAction.CANCEL,
            lambda s: self.gateway.cancel(s.external_subscription_id, reason),
        )

    async def pause(self, subscription_id: str) -> TransitionOutcome:
        """Suspend billing and access until the subscription is reactivated."""
        return await self._transition(
            subscription_id,
            TransitionAction.PAUSE,
            lambda s: self.gateway.pause(s.external_subscription_id),
        )

    async def reactivate(self, subscription_id: str) -> TransitionOutcome:
        """
        Resume a suspended subscription.

        Raises:
            MandateInvalidError: the processor can no longer charge this
                subscription; the caller should create a new one
        """
        return await self._transition(
            subscription_id,
            TransitionAction.REACTIVATE,
            lambda s: self.gateway.reactivate(s.external_subscription_id),
        )

    # =========================================================================
    # Sync
    # =========================================================================

    async def sync(self, subscription_id: str) -> TransitionOutcome:
        """Refresh a subscription from the processor, waiting for any in-flight transition."""
        async with self.locks.queued(subscription_id):
            subscription = await self._load(subscription_id)
            synced = await self._sync_unlocked(subscription)
        return TransitionOutcome(action=TransitionAction.SYNC, subscription=synced)

    async def _sync_unlocked(self, subscription: Subscription) -> Subscription:
        if not subscription.external_subscription_id:
            raise MissingExternalReferenceError(subscription.id, TransitionAction.SYNC.value)

        state = await self.gateway.get_subscription_status(subscription.external_subscription_id)
        updated = apply_processor_state(subscription, state, observed_at=_now())
        saved = await self.subscriptions.update(updated)

        if saved.status != subscription.status:
            logger.info(
                f"[BILLING] sync: {saved.id} {subscription.status.value} -> {saved.status.value}"
            )

        await self._refresh_company_billing(saved)
        return saved

    async def _refresh_company_billing(self, subscription: Subscription) -> None:
        """Mirror the governing subscription onto the company's access flags."""
        governing = await self.subscriptions.get_governing_for_company(subscription.company_id)
        if governing is not None and governing.id != subscription.id:
            logger.debug(f"Skipping company update: {subscription.id} is not the governing subscription")
            return

        await self.companies.update_billing(
            subscription.company_id,
            is_subscribed=grants_access(subscription, _now()),
            subscription_status=COMPANY_STATUS_MAP.get(subscription.status),
            selected_plan=subscription.plan_key.value,
            renewal_date=paid_through(subscription),
        )

    # =========================================================================
    # Scheduled Check
    # =========================================================================

    async def expire_lapsed(self, now: Optional[datetime] = None) -> int:
        """
        Expire cancelled subscriptions whose paid period has ended.

        Returns:
            Number of subscriptions moved to expired
        """
        now = now or _now()
        expired = 0

        for candidate in await self.subscriptions.list_cancelled_past_period(now):
            try:
                async with self.locks.exclusive(candidate.id):
                    # A sync may have landed since the listing
                    subscription = await self.subscriptions.get_by_id(candidate.id)
                    if subscription is None or subscription.status != SubscriptionStatus.CANCELLED:
                        continue
                    if grants_access(subscription, now):
                        continue
                    lapsed = subscription.model_copy(update={"status": SubscriptionStatus.EXPIRED})
                    saved = await self.subscriptions.update(lapsed)
                    await self._refresh_company_billing(saved)
            except TransitionInProgressError:
                logger.info(f"[CRON] {candidate.id} busy, will expire on the next run")
                continue

            expired += 1
            logger.info(
                f"[CRON] Expired {saved.id} for company {saved.company_id}, "
                f"paid through {paid_through(saved)}"
            )

        return expired

    async def run_scheduled_check(self, now: Optional[datetime] = None) -> ScheduledCheckReport:
        """
        Sync active subscriptions past their billing date, then expire lapsed ones.

        A failure on one subscription is logged and does not stop the run.
        """
        now = now or _now()
        report = ScheduledCheckReport()

        for subscription in await self.subscriptions.list_due_for_sync(now):
            try:
                await self.sync(subscription.id)
                report.synced += 1
            except Exception as e:
                report.failed += 1
                logger.error(f"[CRON] Sync failed for {subscription.id}: {e}")

        report.expired = await self.expire_lapsed(now)

        logger.info(
            f"[CRON] Subscription check done: synced={report.synced} "
            f"failed={report.failed} expired={report.expired}"
        )
        return report


# =============================================================================
# Singleton Instance (Dependency Injection Ready)
# =============================================================================

_service_instance: Optional[SubscriptionLifecycleService] = None


def get_subscription_lifecycle_service() -> SubscriptionLifecycleService:
    """Get or create the lifecycle service wired to the configured processor."""
    global _service_instance

    if _service_instance is None:
        from app.infrastructure.db.repositories import (
            get_company_repository,
            get_subscription_repository,
        )
        from app.infrastructure.payments import get_payment_gateway
        from app.infrastructure.services.transition_locks import get_transition_locks

        _service_instance = SubscriptionLifecycleService(
            gateway=get_payment_gateway(),
            subscriptions=get_subscription_repository(),
            companies=get_company_repository(),
            locks=get_transition_locks(),
        )

    return _service_instance
