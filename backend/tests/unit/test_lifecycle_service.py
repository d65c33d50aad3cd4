"""
Unit tests for SubscriptionLifecycleService.

The processor and both repositories are mocks; the lock registry is real
so concurrency rules are exercised end to end.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import httpx
import pytest

from app.domain.company import CompanySubscriptionStatus
from app.domain.subscription import (
    PaymentProvider,
    PlanChangeDirection,
    PlanKey,
    ProcessorCreateResult,
    SubscriptionStatus,
    TransitionAction,
    grants_access,
)
from app.infrastructure.exceptions import (
    MandateInvalidError,
    MissingExternalReferenceError,
    NotFoundError,
    PaymentProcessorError,
    SubscriptionStateError,
    TransitionInProgressError,
    UnknownProcessorStatusError,
    ValidationError,
)
from app.infrastructure.payments.mercadopago_service import MercadoPagoService
from app.infrastructure.services.subscription_lifecycle_service import (
    SubscriptionLifecycleService,
)
from app.infrastructure.services.transition_locks import TransitionLockRegistry
from tests.factories import COMPANY_ID, SUBSCRIPTION_ID, make_state, make_subscription


@pytest.fixture
def locks():
    return TransitionLockRegistry()


@pytest.fixture
def service(mock_gateway, mock_subscription_repo, mock_company_repo, locks):
    return SubscriptionLifecycleService(
        gateway=mock_gateway,
        subscriptions=mock_subscription_repo,
        companies=mock_company_repo,
        locks=locks,
    )


def use_subscription(repo, subscription):
    """Point every lookup of the repo mock at ``subscription``."""
    repo.get_by_id.return_value = subscription
    repo.get_governing_for_company.return_value = subscription


# =============================================================================
# Create
# =============================================================================

class TestCreate:

    @pytest.mark.asyncio
    async def test_creates_pending_record_then_syncs(self, service, mock_gateway, mock_subscription_repo):
        mock_subscription_repo.get_governing_for_company.return_value = None
        mock_gateway.create_subscription.return_value = ProcessorCreateResult(
            external_subscription_id="sub_new",
            status=SubscriptionStatus.PENDING,
        )

        outcome = await service.create(COMPANY_ID, PlanKey.BASIC, "tok_visa", "admin@escuela.edu.ar")

        mock_gateway.create_subscription.assert_awaited_once()
        created = mock_subscription_repo.create.await_args.args[0]
        assert created.status == SubscriptionStatus.PENDING
        assert created.external_subscription_id == "sub_new"
        assert created.plan_name == "Basic"
        assert created.subscriber_email == "admin@escuela.edu.ar"

        assert outcome.action == TransitionAction.CREATE
        assert outcome.subscription.status == SubscriptionStatus.ACTIVE
        assert outcome.subscription.activated_at is not None

    @pytest.mark.parametrize("status", [
        SubscriptionStatus.PENDING,
        SubscriptionStatus.APPROVAL_PENDING,
        SubscriptionStatus.ACTIVE,
    ])
    @pytest.mark.asyncio
    async def test_blocked_by_live_subscription(self, service, mock_gateway, mock_subscription_repo, status):
        use_subscription(mock_subscription_repo, make_subscription(status=status))

        with pytest.raises(SubscriptionStateError):
            await service.create(COMPANY_ID, PlanKey.BASIC, "tok_visa", "admin@escuela.edu.ar")

        mock_gateway.create_subscription.assert_not_awaited()
        mock_subscription_repo.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_allowed_after_cancellation(self, service, mock_gateway, mock_subscription_repo):
        use_subscription(mock_subscription_repo, make_subscription(status=SubscriptionStatus.CANCELLED))
        mock_gateway.create_subscription.return_value = ProcessorCreateResult(
            external_subscription_id="sub_new",
            status=SubscriptionStatus.PENDING,
        )

        await service.create(COMPANY_ID, PlanKey.PREMIUM, "tok_visa", "admin@escuela.edu.ar")

        mock_subscription_repo.create.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_approval_pending_kept_when_sync_fails(self, service, mock_gateway, mock_subscription_repo):
        mock_subscription_repo.get_governing_for_company.return_value = None
        mock_gateway.create_subscription.return_value = ProcessorCreateResult(
            external_subscription_id="sub_new",
            status=SubscriptionStatus.APPROVAL_PENDING,
        )
        mock_gateway.get_subscription_status.side_effect = PaymentProcessorError("timeout")

        outcome = await service.create(COMPANY_ID, PlanKey.BASIC, "tok_visa", "admin@escuela.edu.ar")

        assert outcome.subscription.status == SubscriptionStatus.APPROVAL_PENDING
        assert outcome.subscription.id == SUBSCRIPTION_ID

    @pytest.mark.asyncio
    async def test_processor_rejection_persists_nothing(self, service, mock_gateway, mock_subscription_repo):
        mock_subscription_repo.get_governing_for_company.return_value = None
        mock_gateway.create_subscription.side_effect = PaymentProcessorError("Your card was declined.")

        with pytest.raises(PaymentProcessorError, match="declined"):
            await service.create(COMPANY_ID, PlanKey.BASIC, "tok_visa", "admin@escuela.edu.ar")

        mock_subscription_repo.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_validation(self, service, mock_gateway):
        with pytest.raises(ValidationError):
            await service.create(COMPANY_ID, "enterprise", "tok_visa", "admin@escuela.edu.ar")
        with pytest.raises(ValidationError):
            await service.create(COMPANY_ID, PlanKey.BASIC, "  ", "admin@escuela.edu.ar")
        with pytest.raises(ValidationError):
            await service.create(COMPANY_ID, PlanKey.BASIC, "tok_visa", "")

        mock_gateway.create_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_concurrent_create_for_company_rejected(self, service, locks):
        async with locks.exclusive(f"company:{COMPANY_ID}"):
            with pytest.raises(TransitionInProgressError):
                await service.create(COMPANY_ID, PlanKey.BASIC, "tok_visa", "admin@escuela.edu.ar")


# =============================================================================
# Management Transitions
# =============================================================================

class TestTransitions:

    @pytest.mark.asyncio
    async def test_change_plan_upgrade(self, service, mock_gateway):
        outcome = await service.change_plan(SUBSCRIPTION_ID, PlanKey.PREMIUM)

        mock_gateway.change_plan.assert_awaited_once_with("sub_123", PlanKey.PREMIUM)
        assert outcome.plan_change == PlanChangeDirection.UPGRADE
        assert outcome.action == TransitionAction.CHANGE_PLAN

    @pytest.mark.asyncio
    async def test_change_plan_downgrade(self, service):
        outcome = await service.change_plan(SUBSCRIPTION_ID, PlanKey.BASIC)
        assert outcome.plan_change == PlanChangeDirection.DOWNGRADE

    @pytest.mark.asyncio
    async def test_change_plan_to_same_plan(self, service, mock_gateway):
        with pytest.raises(ValidationError):
            await service.change_plan(SUBSCRIPTION_ID, PlanKey.STANDARD)
        mock_gateway.change_plan.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_change_plan_leaves_subscription_unchanged(
        self, service, mock_gateway, mock_subscription_repo, subscription,
    ):
        before = subscription.model_copy(deep=True)
        mock_gateway.change_plan.side_effect = PaymentProcessorError("plan change rejected")
        mock_gateway.get_subscription_status.return_value = make_state(
            next_billing_time=subscription.next_billing_time,
            amount=subscription.amount,
        )

        with pytest.raises(PaymentProcessorError, match="plan change rejected"):
            await service.change_plan(SUBSCRIPTION_ID, PlanKey.PREMIUM)

        assert subscription == before

        resynced = mock_subscription_repo.update.await_args.args[0]
        assert resynced.status == before.status
        assert resynced.plan_key == before.plan_key
        assert resynced.amount == before.amount
        assert resynced.next_billing_time == before.next_billing_time

    @pytest.mark.asyncio
    async def test_change_card(self, service, mock_gateway):
        await service.change_card(SUBSCRIPTION_ID, " tok_master ")
        mock_gateway.change_card.assert_awaited_once_with("sub_123", "tok_master")

    @pytest.mark.asyncio
    async def test_cancel_then_sync(self, service, mock_gateway, mock_subscription_repo):
        mock_gateway.get_subscription_status.return_value = make_state(
            status=SubscriptionStatus.CANCELLED,
        )

        outcome = await service.cancel(SUBSCRIPTION_ID, reason="closing school")

        mock_gateway.cancel.assert_awaited_once_with("sub_123", "closing school")
        mock_gateway.get_subscription_status.assert_awaited_once_with("sub_123")
        assert outcome.subscription.status == SubscriptionStatus.CANCELLED
        assert outcome.subscription.cancelled_at is not None
        mock_subscription_repo.update.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_pause_then_sync(self, service, mock_gateway, mock_company_repo):
        mock_gateway.get_subscription_status.return_value = make_state(status=SubscriptionStatus.SUSPENDED)

        outcome = await service.pause(SUBSCRIPTION_ID)

        mock_gateway.pause.assert_awaited_once_with("sub_123")
        assert outcome.action == TransitionAction.PAUSE
        assert outcome.subscription.status == SubscriptionStatus.SUSPENDED
        assert outcome.subscription.suspended_at is not None
        kwargs = mock_company_repo.update_billing.await_args.kwargs
        assert kwargs["is_subscribed"] is False
        assert kwargs["subscription_status"] == CompanySubscriptionStatus.PAUSED

    @pytest.mark.asyncio
    async def test_pause_requires_active(self, service, mock_gateway, mock_subscription_repo):
        use_subscription(mock_subscription_repo, make_subscription(status=SubscriptionStatus.SUSPENDED))

        with pytest.raises(SubscriptionStateError):
            await service.pause(SUBSCRIPTION_ID)

        mock_gateway.pause.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_already_cancelled_is_noop(self, service, mock_gateway, mock_subscription_repo):
        use_subscription(
            mock_subscription_repo,
            make_subscription(status=SubscriptionStatus.CANCELLED, external_subscription_id=None),
        )

        outcome = await service.cancel(SUBSCRIPTION_ID)

        assert outcome.no_op is True
        mock_gateway.cancel.assert_not_awaited()
        mock_gateway.get_subscription_status.assert_not_awaited()
        mock_subscription_repo.update.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_external_id_fails_before_network(self, service, mock_gateway, mock_subscription_repo):
        use_subscription(mock_subscription_repo, make_subscription(external_subscription_id=None))

        with pytest.raises(MissingExternalReferenceError):
            await service.change_card(SUBSCRIPTION_ID, "tok_master")

        mock_gateway.change_card.assert_not_awaited()
        mock_gateway.get_subscription_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disallowed_transition(self, service, mock_gateway, mock_subscription_repo):
        use_subscription(mock_subscription_repo, make_subscription(status=SubscriptionStatus.SUSPENDED))

        with pytest.raises(SubscriptionStateError) as exc_info:
            await service.change_plan(SUBSCRIPTION_ID, PlanKey.PREMIUM)

        assert exc_info.value.details["current_status"] == "suspended"
        mock_gateway.change_plan.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, service, mock_subscription_repo):
        mock_subscription_repo.get_by_id.return_value = None

        with pytest.raises(NotFoundError):
            await service.reactivate(SUBSCRIPTION_ID)

    @pytest.mark.asyncio
    async def test_processor_failure_resyncs_and_reraises(self, service, mock_gateway, mock_subscription_repo):
        use_subscription(mock_subscription_repo, make_subscription(status=SubscriptionStatus.SUSPENDED))
        mock_gateway.reactivate.side_effect = MandateInvalidError("Card no longer valid")
        mock_gateway.get_subscription_status.return_value = make_state(status=SubscriptionStatus.SUSPENDED)

        with pytest.raises(MandateInvalidError):
            await service.reactivate(SUBSCRIPTION_ID)

        mock_gateway.get_subscription_status.assert_awaited_once()
        mock_subscription_repo.update.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_original_error_survives_failed_resync(self, service, mock_gateway):
        mock_gateway.change_card.side_effect = PaymentProcessorError("card rejected")
        mock_gateway.get_subscription_status.side_effect = PaymentProcessorError("processor down")

        with pytest.raises(PaymentProcessorError, match="card rejected"):
            await service.change_card(SUBSCRIPTION_ID, "tok_master")

    @pytest.mark.asyncio
    async def test_sync_failure_after_success_returns_loaded_record(
        self, service, mock_gateway, mock_subscription_repo, subscription,
    ):
        mock_gateway.get_subscription_status.side_effect = PaymentProcessorError("processor down")

        outcome = await service.change_card(SUBSCRIPTION_ID, "tok_master")

        mock_gateway.change_card.assert_awaited_once()
        assert outcome.subscription == subscription
        mock_subscription_repo.update.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_concurrent_transition_rejected(self, service, mock_gateway, locks):
        release = asyncio.Event()

        async def slow_change_card(*args):
            await release.wait()

        mock_gateway.change_card.side_effect = slow_change_card

        first = asyncio.create_task(service.change_card(SUBSCRIPTION_ID, "tok_master"))
        await asyncio.sleep(0.01)
        assert locks.is_locked(SUBSCRIPTION_ID)

        with pytest.raises(TransitionInProgressError):
            await service.cancel(SUBSCRIPTION_ID)

        release.set()
        await first
        mock_gateway.cancel.assert_not_awaited()


class TestMercadoPagoCancel:
    """Cancel through the real MercadoPago gateway over a mock transport."""

    @pytest.mark.asyncio
    async def test_access_kept_through_paid_period(self, mock_subscription_repo, mock_company_repo, locks):
        paid_until = datetime.now(timezone.utc) + timedelta(days=20)
        use_subscription(mock_subscription_repo, make_subscription(
            payment_provider=PaymentProvider.MERCADOPAGO,
            external_subscription_id="pre_123",
            next_billing_time=paid_until,
        ))
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request.method)
            # A cancelled preapproval no longer reports a next payment date
            return httpx.Response(200, json={
                "id": "pre_123",
                "status": "cancelled",
                "auto_recurring": {"transaction_amount": 49000, "currency_id": "ARS"},
            })

        gateway = MercadoPagoService(
            access_token="TEST-token",
            base_url="https://api.mercadopago.test",
            plan_ids={},
            transport=httpx.MockTransport(handler),
        )
        service = SubscriptionLifecycleService(
            gateway=gateway,
            subscriptions=mock_subscription_repo,
            companies=mock_company_repo,
            locks=locks,
        )

        outcome = await service.cancel(SUBSCRIPTION_ID)

        assert requests == ["PUT", "GET"]
        synced = outcome.subscription
        assert synced.status == SubscriptionStatus.CANCELLED
        assert synced.next_billing_time is None
        assert synced.current_period_end == paid_until
        assert grants_access(synced) is True

        kwargs = mock_company_repo.update_billing.await_args.kwargs
        assert kwargs["is_subscribed"] is True
        assert kwargs["subscription_status"] == CompanySubscriptionStatus.CANCELED
        assert kwargs["renewal_date"] == paid_until


# =============================================================================
# Sync
# =============================================================================

class TestSync:

    @pytest.mark.asyncio
    async def test_sync_waits_for_transition(self, service, mock_gateway):
        release = asyncio.Event()

        async def slow_change_card(*args):
            await release.wait()

        mock_gateway.change_card.side_effect = slow_change_card

        transition = asyncio.create_task(service.change_card(SUBSCRIPTION_ID, "tok_master"))
        await asyncio.sleep(0.01)
        syncing = asyncio.create_task(service.sync(SUBSCRIPTION_ID))
        await asyncio.sleep(0.01)

        assert not syncing.done()
        mock_gateway.get_subscription_status.assert_not_awaited()

        release.set()
        _, synced = await asyncio.gather(transition, syncing)

        assert synced.action == TransitionAction.SYNC
        assert mock_gateway.get_subscription_status.await_count == 2

    @pytest.mark.asyncio
    async def test_unknown_status_leaves_record_untouched(self, service, mock_gateway, mock_subscription_repo, mock_company_repo):
        mock_gateway.get_subscription_status.side_effect = UnknownProcessorStatusError("on_hold", provider="stripe")

        with pytest.raises(UnknownProcessorStatusError):
            await service.sync(SUBSCRIPTION_ID)

        mock_subscription_repo.update.assert_not_awaited()
        mock_company_repo.update_billing.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sync_without_external_id(self, service, mock_subscription_repo, mock_gateway):
        use_subscription(mock_subscription_repo, make_subscription(external_subscription_id=None))

        with pytest.raises(MissingExternalReferenceError):
            await service.sync(SUBSCRIPTION_ID)

        mock_gateway.get_subscription_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_company_mirrors_cancelled_subscription(self, service, mock_gateway, mock_company_repo):
        renewal = datetime.now(timezone.utc) + timedelta(days=12)
        mock_gateway.get_subscription_status.return_value = make_state(
            status=SubscriptionStatus.CANCELLED,
            next_billing_time=renewal,
        )

        await service.sync(SUBSCRIPTION_ID)

        mock_company_repo.update_billing.assert_awaited_once_with(
            COMPANY_ID,
            is_subscribed=True,
            subscription_status=CompanySubscriptionStatus.CANCELED,
            selected_plan="standard",
            renewal_date=renewal,
        )

    @pytest.mark.asyncio
    async def test_company_loses_access_on_suspension(self, service, mock_gateway, mock_company_repo):
        mock_gateway.get_subscription_status.return_value = make_state(status=SubscriptionStatus.SUSPENDED)

        await service.sync(SUBSCRIPTION_ID)

        kwargs = mock_company_repo.update_billing.await_args.kwargs
        assert kwargs["is_subscribed"] is False
        assert kwargs["subscription_status"] == CompanySubscriptionStatus.PAUSED

    @pytest.mark.asyncio
    async def test_older_subscription_does_not_touch_company(
        self, service, mock_subscription_repo, mock_company_repo,
    ):
        mock_subscription_repo.get_governing_for_company.return_value = make_subscription(
            id="33333333-3333-3333-3333-333333333333",
        )

        await service.sync(SUBSCRIPTION_ID)

        mock_subscription_repo.update.assert_awaited_once()
        mock_company_repo.update_billing.assert_not_awaited()


# =============================================================================
# Scheduled Check
# =============================================================================

class TestScheduledCheck:

    @pytest.mark.asyncio
    async def test_expire_lapsed(self, service, mock_subscription_repo, mock_company_repo):
        now = datetime.now(timezone.utc)
        lapsed = make_subscription(
            status=SubscriptionStatus.CANCELLED,
            next_billing_time=now - timedelta(days=1),
        )
        use_subscription(mock_subscription_repo, lapsed)
        mock_subscription_repo.list_cancelled_past_period.return_value = [lapsed]

        expired = await service.expire_lapsed(now)

        assert expired == 1
        saved = mock_subscription_repo.update.await_args.args[0]
        assert saved.status == SubscriptionStatus.EXPIRED
        kwargs = mock_company_repo.update_billing.await_args.kwargs
        assert kwargs["is_subscribed"] is False
        assert kwargs["subscription_status"] == CompanySubscriptionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_expire_writes_record_reloaded_under_lock(self, service, mock_subscription_repo):
        now = datetime.now(timezone.utc)
        listed = make_subscription(
            status=SubscriptionStatus.CANCELLED,
            next_billing_time=now - timedelta(days=1),
            card_last_four="4242",
        )
        fresh = listed.model_copy(update={"payment_method_brand": "master", "card_last_four": "1111"})
        mock_subscription_repo.list_cancelled_past_period.return_value = [listed]
        use_subscription(mock_subscription_repo, fresh)

        assert await service.expire_lapsed(now) == 1

        mock_subscription_repo.get_by_id.assert_awaited_once_with(SUBSCRIPTION_ID)
        saved = mock_subscription_repo.update.await_args.args[0]
        assert saved.status == SubscriptionStatus.EXPIRED
        assert saved.card_last_four == "1111"
        assert saved.payment_method_brand == "master"

    @pytest.mark.parametrize("changes", [
        {"status": SubscriptionStatus.ACTIVE},
        {"next_billing_time": datetime.now(timezone.utc) + timedelta(days=5)},
    ])
    @pytest.mark.asyncio
    async def test_expire_skips_record_changed_since_listing(
        self, service, mock_subscription_repo, mock_company_repo, changes,
    ):
        now = datetime.now(timezone.utc)
        listed = make_subscription(
            status=SubscriptionStatus.CANCELLED,
            next_billing_time=now - timedelta(days=1),
        )
        mock_subscription_repo.list_cancelled_past_period.return_value = [listed]
        use_subscription(mock_subscription_repo, listed.model_copy(update=changes))

        assert await service.expire_lapsed(now) == 0

        mock_subscription_repo.update.assert_not_awaited()
        mock_company_repo.update_billing.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expire_skips_deleted_record(self, service, mock_subscription_repo):
        listed = make_subscription(status=SubscriptionStatus.CANCELLED, next_billing_time=None)
        mock_subscription_repo.list_cancelled_past_period.return_value = [listed]
        mock_subscription_repo.get_by_id.return_value = None

        assert await service.expire_lapsed() == 0
        mock_subscription_repo.update.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expire_skips_busy_subscription(self, service, mock_subscription_repo, locks):
        lapsed = make_subscription(status=SubscriptionStatus.CANCELLED, next_billing_time=None)
        mock_subscription_repo.list_cancelled_past_period.return_value = [lapsed]

        async with locks.exclusive(SUBSCRIPTION_ID):
            expired = await service.expire_lapsed()

        assert expired == 0
        mock_subscription_repo.update.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_run_continues_past_failures(self, service, mock_gateway, mock_subscription_repo):
        mock_subscription_repo.list_due_for_sync.return_value = [
            make_subscription(),
            make_subscription(),
        ]
        mock_gateway.get_subscription_status.side_effect = [
            make_state(),
            PaymentProcessorError("processor down"),
        ]

        report = await service.run_scheduled_check()

        assert report.synced == 1
        assert report.failed == 1
        assert report.expired == 0
        mock_subscription_repo.list_cancelled_past_period.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_get_current(self, service, mock_subscription_repo, subscription):
        assert await service.get_current(COMPANY_ID) == subscription
        mock_subscription_repo.get_governing_for_company.assert_awaited_once_with(COMPANY_ID)
