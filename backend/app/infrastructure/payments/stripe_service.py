"""
Stripe Payment Service

Infrastructure gateway for Stripe Billing.
Creates card-token subscriptions and manages them in place:

- Plan changes swap the item price without proration (effective next cycle)
- Cancellation is at period end so paid access is preserved
- Status is always read back from Stripe, never assumed
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
import stripe
from stripe import StripeError

from app.config.settings import get_settings
from app.domain.subscription import (
    PaymentProvider,
    PlanKey,
    ProcessorCreateResult,
    ProcessorSubscriptionState,
    ProcessorTransitionResult,
    SubscriptionStatus,
    TransitionAction,
)
from app.infrastructure.exceptions import (
    ConfigurationError,
    MandateInvalidError,
    PaymentProcessorError,
)
from app.infrastructure.payments.gateway import PaymentGateway


logger = logging.getLogger(__name__)


def _to_dict(obj: Any) -> dict:
    """StripeObject is not a dict subclass in recent SDKs."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class StripeService(PaymentGateway):
    """
    Stripe payment processing service.

    SDK calls are blocking and made inline, like the rest of the Stripe
    integration. Every StripeError is re-raised as PaymentProcessorError
    carrying Stripe's user-facing message.
    """

    provider = PaymentProvider.STRIPE

    STATUS_MAP = {
        "incomplete": SubscriptionStatus.APPROVAL_PENDING,
        "active": SubscriptionStatus.ACTIVE,
        "trialing": SubscriptionStatus.ACTIVE,
        "past_due": SubscriptionStatus.SUSPENDED,
        "unpaid": SubscriptionStatus.SUSPENDED,
        "paused": SubscriptionStatus.SUSPENDED,
        "canceled": SubscriptionStatus.CANCELLED,
        "incomplete_expired": SubscriptionStatus.EXPIRED,
    }

    def __init__(
        self,
        api_key: Optional[str] = None,
        price_ids: Optional[dict[str, Optional[str]]] = None,
    ):
        """Initialize Stripe with API key and price ids from settings."""
        settings = get_settings()
        self._api_key = api_key or settings.stripe_secret_key
        self._price_ids = price_ids if price_ids is not None else settings.stripe_price_ids

        if self._api_key:
            stripe.api_key = self._api_key

    def _get_price_id(self, plan_key: PlanKey) -> str:
        """Get Stripe Price ID for a plan."""
        price_id = self._price_ids.get(PlanKey(plan_key).value)

        if not price_id:
            raise ConfigurationError(
                f"No Stripe price configured for plan {PlanKey(plan_key).value}",
                missing_keys=[f"STRIPE_PRICE_ID_{PlanKey(plan_key).value.upper()}"],
            )

        return price_id

    def _plan_for_price(self, price_id: Optional[str]) -> Optional[PlanKey]:
        for key, configured in self._price_ids.items():
            if configured and configured == price_id:
                return PlanKey(key)
        return None

    def _error(self, e: StripeError, operation: str) -> PaymentProcessorError:
        logger.error(f"Stripe {operation} failed: {e}")
        return PaymentProcessorError(
            e.user_message or str(e),
            provider=self.provider.value,
            operation=operation,
            status_code=getattr(e, "http_status", None),
            original_error=e,
        )

    # =========================================================================
    # Subscription Creation
    # =========================================================================

    async def create_subscription(
        self,
        company_id: str,
        plan_key: PlanKey,
        card_token: str,
        payer_email: str,
    ) -> ProcessorCreateResult:
        """
        Create a customer from the card token and subscribe it to the plan price.

        Args:
            company_id: Internal company ID (stored in metadata)
            plan_key: Plan to purchase
            card_token: Stripe card token (tok_...)
            payer_email: Customer email for receipts

        Returns:
            ProcessorCreateResult with the Stripe subscription id
        """
        price_id = self._get_price_id(plan_key)

        try:
            customer = _to_dict(stripe.Customer.create(
                email=payer_email,
                source=card_token,
                metadata={"company_id": company_id},
            ))
            subscription = _to_dict(stripe.Subscription.create(
                customer=customer["id"],
                items=[{"price": price_id}],
                payment_behavior="allow_incomplete",
                metadata={
                    "company_id": company_id,
                    "plan_key": PlanKey(plan_key).value,
                },
            ))
        except StripeError as e:
            raise self._error(e, "create_subscription")

        logger.info(
            f"Created Stripe subscription {subscription['id']} for company {company_id}, "
            f"plan={PlanKey(plan_key).value}, status={subscription.get('status')}"
        )
        return ProcessorCreateResult(
            external_subscription_id=subscription["id"],
            status=self._map_subscription_status(subscription),
            external_plan_id=price_id,
        )

    # =========================================================================
    # Subscription Management
    # =========================================================================

    async def change_plan(
        self,
        external_subscription_id: str,
        new_plan_key: PlanKey,
    ) -> ProcessorTransitionResult:
        """Swap the subscription item price without proration."""
        price_id = self._get_price_id(new_plan_key)

        try:
            current = _to_dict(stripe.Subscription.retrieve(external_subscription_id))
            items = _to_dict(current.get("items")).get("data") or []
            if not items:
                raise PaymentProcessorError(
                    "Subscription has no billable items",
                    provider=self.provider.value,
                    operation="change_plan",
                )
            stripe.Subscription.modify(
                external_subscription_id,
                items=[{"id": _to_dict(items[0])["id"], "price": price_id}],
                proration_behavior="none",
                metadata={"plan_key": PlanKey(new_plan_key).value},
            )
        except StripeError as e:
            raise self._error(e, "change_plan")

        logger.info(
            f"Changed plan of {external_subscription_id} to {PlanKey(new_plan_key).value}"
        )
        return ProcessorTransitionResult(
            external_subscription_id=external_subscription_id,
            action=TransitionAction.CHANGE_PLAN,
        )

    async def change_card(
        self,
        external_subscription_id: str,
        card_token: str,
    ) -> ProcessorTransitionResult:
        """Attach a new card to the customer and make it the subscription default."""
        try:
            current = _to_dict(stripe.Subscription.retrieve(external_subscription_id))
            card = _to_dict(stripe.Customer.create_source(current["customer"], source=card_token))
            stripe.Subscription.modify(external_subscription_id, default_source=card["id"])
        except StripeError as e:
            raise self._error(e, "change_card")

        logger.info(f"Replaced card of {external_subscription_id}")
        return ProcessorTransitionResult(
            external_subscription_id=external_subscription_id,
            action=TransitionAction.CHANGE_CARD,
        )

    async def cancel(
        self,
        external_subscription_id: str,
        reason: Optional[str] = None,
    ) -> ProcessorTransitionResult:
        """Cancel at period end."""
        metadata = {"cancel_reason": reason} if reason else {}
        try:
            stripe.Subscription.modify(
                external_subscription_id,
                cancel_at_period_end=True,
                metadata=metadata,
            )
        except StripeError as e:
            raise self._error(e, "cancel")

        logger.info(f"Cancelled subscription {external_subscription_id} at period end")
        return ProcessorTransitionResult(
            external_subscription_id=external_subscription_id,
            action=TransitionAction.CANCEL,
        )

    async def pause(self, external_subscription_id: str) -> ProcessorTransitionResult:
        """Pause collection; invoices raised while paused are voided."""
        try:
            stripe.Subscription.modify(
                external_subscription_id,
                pause_collection={"behavior": "void"},
            )
        except StripeError as e:
            raise self._error(e, "pause")

        logger.info(f"Paused collection on {external_subscription_id}")
        return ProcessorTransitionResult(
            external_subscription_id=external_subscription_id,
            action=TransitionAction.PAUSE,
        )

    async def reactivate(self, external_subscription_id: str) -> ProcessorTransitionResult:
        """
        Resume a suspended subscription.

        Paused subscriptions are resumed (or have collection switched back
        on); past-due ones get their open invoice paid. A declined card or a terminated subscription means
        the mandate is gone and a new subscription is required.
        """
        try:
            current = _to_dict(stripe.Subscription.retrieve(external_subscription_id))
            status = current.get("status")

            if status in ("canceled", "incomplete_expired"):
                raise MandateInvalidError(
                    "Subscription can no longer be reactivated. Please subscribe again.",
                    provider=self.provider.value,
                    operation="reactivate",
                )

            if current.get("pause_collection"):
                stripe.Subscription.modify(external_subscription_id, pause_collection="")
            elif status == "paused":
                stripe.Subscription.resume(external_subscription_id)
            elif status in ("past_due", "unpaid"):
                invoice = current.get("latest_invoice")
                invoice_id = invoice if isinstance(invoice, str) else _to_dict(invoice).get("id")
                if not invoice_id:
                    raise MandateInvalidError(
                        "No outstanding invoice to settle for this subscription",
                        provider=self.provider.value,
                        operation="reactivate",
                    )
                stripe.Invoice.pay(invoice_id)
        except stripe.CardError as e:
            logger.warning(f"Card declined reactivating {external_subscription_id}: {e}")
            raise MandateInvalidError(
                e.user_message or "Card declined",
                provider=self.provider.value,
                operation="reactivate",
                status_code=getattr(e, "http_status", None),
                original_error=e,
            )
        except StripeError as e:
            raise self._error(e, "reactivate")

        logger.info(f"Reactivated subscription {external_subscription_id}")
        return ProcessorTransitionResult(
            external_subscription_id=external_subscription_id,
            action=TransitionAction.REACTIVATE,
        )

    # =========================================================================
    # Subscription Queries
    # =========================================================================

    def _map_subscription_status(self, subscription: dict) -> SubscriptionStatus:
        status = self.map_status(subscription.get("status"))
        if status == SubscriptionStatus.ACTIVE and subscription.get("cancel_at_period_end"):
            return SubscriptionStatus.CANCELLED
        if status == SubscriptionStatus.ACTIVE and subscription.get("pause_collection"):
            return SubscriptionStatus.SUSPENDED
        return status

    async def get_subscription_status(
        self,
        external_subscription_id: str,
    ) -> ProcessorSubscriptionState:
        """
        Retrieve the subscription with its card and latest invoice.

        Returns:
            ProcessorSubscriptionState mapped into domain vocabulary
        """
        try:
            subscription = _to_dict(stripe.Subscription.retrieve(
                external_subscription_id,
                expand=["default_source", "default_payment_method", "latest_invoice"],
            ))
        except StripeError as e:
            raise self._error(e, "get_subscription_status")

        status = self._map_subscription_status(subscription)

        items = _to_dict(subscription.get("items")).get("data") or []
        item = _to_dict(items[0]) if items else {}
        price = _to_dict(item.get("price"))

        # Billing periods moved from the subscription to its items in newer API versions
        period_start = _timestamp(subscription.get("current_period_start") or item.get("current_period_start"))
        period_end = _timestamp(subscription.get("current_period_end") or item.get("current_period_end"))

        brand, last_four = None, None
        payment_method = _to_dict(subscription.get("default_payment_method"))
        source = _to_dict(subscription.get("default_source"))
        if payment_method.get("card"):
            card = _to_dict(payment_method["card"])
            brand, last_four = card.get("brand"), card.get("last4")
        elif source:
            brand, last_four = source.get("brand"), source.get("last4")

        invoice = _to_dict(subscription.get("latest_invoice")) if not isinstance(
            subscription.get("latest_invoice"), str
        ) else {}
        failed_attempts = invoice.get("attempt_count", 0) if invoice.get("status") == "open" else 0

        unit_amount = price.get("unit_amount")
        renews = status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.SUSPENDED)

        return ProcessorSubscriptionState(
            external_subscription_id=subscription["id"],
            status=status,
            next_billing_time=period_end if renews else None,
            current_period_start=period_start,
            current_period_end=period_end,
            payment_method_brand=brand,
            card_last_four=last_four,
            plan_key=self._plan_for_price(price.get("id")),
            amount=Decimal(unit_amount) / 100 if unit_amount is not None else None,
            currency=price["currency"].upper() if price.get("currency") else None,
            failed_payments_count=failed_attempts,
        )
