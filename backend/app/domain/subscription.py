"""
Subscription Domain Models

Domain models for subscription management following Clean Architecture.
Enums, DTOs, and domain entities for the billing bounded context.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""
    PENDING = "pending"
    APPROVAL_PENDING = "approval_pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PaymentProvider(str, Enum):
    """Supported payment processors."""
    STRIPE = "stripe"
    MERCADOPAGO = "mercadopago"


class PlanKey(str, Enum):
    """Purchasable plans."""
    BASIC = "basic"
    STANDARD = "standard"
    PREMIUM = "premium"


class TransitionAction(str, Enum):
    """Operations of the subscription lifecycle."""
    CREATE = "create"
    CHANGE_PLAN = "change_plan"
    CHANGE_CARD = "change_card"
    CANCEL = "cancel"
    PAUSE = "pause"
    REACTIVATE = "reactivate"
    SYNC = "sync"


class PlanChangeDirection(str, Enum):
    """Classification of a plan change by price."""
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    LATERAL = "lateral"


class PaymentTransactionStatus(str, Enum):
    """Settlement status of a processor charge."""
    COMPLETED = "completed"
    PENDING = "pending"
    REFUNDED = "refunded"
    FAILED = "failed"


# Statuses in which a company already holds a live billing relationship
# and must not open a second one.
BLOCKING_CREATE_STATUSES = frozenset({
    SubscriptionStatus.PENDING,
    SubscriptionStatus.APPROVAL_PENDING,
    SubscriptionStatus.ACTIVE,
})

TERMINAL_STATUSES = frozenset({
    SubscriptionStatus.CANCELLED,
    SubscriptionStatus.EXPIRED,
})

# Key = action, value = statuses from which the action may be submitted.
VALID_TRANSITIONS: dict[TransitionAction, frozenset[SubscriptionStatus]] = {
    TransitionAction.CHANGE_PLAN: frozenset({SubscriptionStatus.ACTIVE}),
    TransitionAction.CHANGE_CARD: frozenset({SubscriptionStatus.ACTIVE}),
    TransitionAction.CANCEL: frozenset({SubscriptionStatus.ACTIVE}),
    TransitionAction.PAUSE: frozenset({SubscriptionStatus.ACTIVE}),
    TransitionAction.REACTIVATE: frozenset({SubscriptionStatus.SUSPENDED}),
}


# =============================================================================
# Domain Entities
# =============================================================================

class PlanDefinition(BaseModel):
    """A purchasable plan with its numeric recurring price."""
    key: PlanKey
    name: str
    amount: Decimal
    currency: str = "ARS"


class Subscription(BaseModel):
    """
    Core subscription domain entity.

    Temporal fields are populated only once the matching transition has
    been observed through a processor sync.
    """
    model_config = ConfigDict(from_attributes=True)

    id: Optional[str] = None
    company_id: str
    payment_provider: PaymentProvider = PaymentProvider.STRIPE
    external_subscription_id: Optional[str] = None
    external_plan_id: Optional[str] = None
    plan_key: PlanKey
    plan_name: str
    amount: Decimal
    currency: str = "ARS"
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    subscriber_email: Optional[str] = None
    payment_method_brand: Optional[str] = None
    card_last_four: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    next_billing_time: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    suspended_at: Optional[datetime] = None
    failed_payments_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PaymentTransaction(BaseModel):
    """Processor-created charge record. Read-only for this service."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    subscription_id: Optional[str] = None
    company_id: str
    external_transaction_id: Optional[str] = None
    gross_amount: Decimal
    fee_amount: Optional[Decimal] = None
    net_amount: Optional[Decimal] = None
    currency: str = "ARS"
    status: PaymentTransactionStatus
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


# =============================================================================
# Processor Boundary Types
# =============================================================================

class ProcessorCreateResult(BaseModel):
    """Processor answer to a subscription creation."""
    external_subscription_id: str
    status: SubscriptionStatus
    external_plan_id: Optional[str] = None


class ProcessorTransitionResult(BaseModel):
    """Processor answer to a management action. Informational only."""
    external_subscription_id: str
    action: TransitionAction
    status: Optional[SubscriptionStatus] = None


class ProcessorSubscriptionState(BaseModel):
    """Authoritative subscription state as reported by the processor."""
    external_subscription_id: str
    status: SubscriptionStatus
    next_billing_time: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    payment_method_brand: Optional[str] = None
    card_last_four: Optional[str] = None
    plan_key: Optional[PlanKey] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    failed_payments_count: Optional[int] = None


# =============================================================================
# Request/Response DTOs
# =============================================================================

class CreateSubscriptionRequest(BaseModel):
    """Request DTO for subscribing with a tokenized card."""
    plan_key: PlanKey = Field(..., description="Plan to purchase")
    card_token: str = Field(..., min_length=1, description="Processor card token")
    payer_email: str = Field(..., min_length=3, description="Billing email")


class ChangePlanRequest(BaseModel):
    """Request DTO for a deferred plan change."""
    new_plan_key: PlanKey


class ChangeCardRequest(BaseModel):
    """Request DTO for replacing the card of record."""
    card_token: str = Field(..., min_length=1)


class CancelRequest(BaseModel):
    """Request DTO for cancellation."""
    reason: Optional[str] = Field(default=None, max_length=500)


class SubscriptionResponse(BaseModel):
    """Response DTO for a subscription."""
    id: str
    status: SubscriptionStatus
    plan_key: PlanKey
    plan_name: str
    amount: Decimal
    currency: str
    payment_provider: PaymentProvider
    external_subscription_id: Optional[str] = None
    payment_method_brand: Optional[str] = None
    card_last_four: Optional[str] = None
    next_billing_time: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    suspended_at: Optional[datetime] = None
    failed_payments_count: int = 0
    grants_access: bool = Field(description="Whether this subscription currently grants access")


class TransitionResponse(BaseModel):
    """Response DTO for a lifecycle transition."""
    action: TransitionAction
    subscription: SubscriptionResponse
    plan_change: Optional[PlanChangeDirection] = None
    no_op: bool = False


class PlanResponse(BaseModel):
    """Pricing information for a single plan."""
    key: PlanKey
    name: str
    amount: Decimal
    currency: str


class PaymentTransactionResponse(BaseModel):
    """Display DTO for payment history."""
    id: str
    status: PaymentTransactionStatus
    gross_amount: Decimal
    net_amount: Optional[Decimal] = None
    currency: str
    paid_at: Optional[datetime] = None
    paid_at_display: str


# =============================================================================
# Plan Catalog (Business Logic)
# =============================================================================

PLAN_CATALOG: dict[PlanKey, PlanDefinition] = {
    PlanKey.BASIC: PlanDefinition(key=PlanKey.BASIC, name="Basic", amount=Decimal("25000")),
    PlanKey.STANDARD: PlanDefinition(key=PlanKey.STANDARD, name="Standard", amount=Decimal("49000")),
    PlanKey.PREMIUM: PlanDefinition(key=PlanKey.PREMIUM, name="Premium", amount=Decimal("89000")),
}


def get_plan(plan_key: PlanKey) -> PlanDefinition:
    """Look up a plan definition. Raises KeyError for unknown keys."""
    return PLAN_CATALOG[PlanKey(plan_key)]


def plan_for_amount(amount: Decimal) -> Optional[PlanDefinition]:
    """Reverse lookup used when a processor reports only the charged amount."""
    for plan in PLAN_CATALOG.values():
        if plan.amount == Decimal(amount):
            return plan
    return None


def classify_plan_change(current_amount: Decimal, new_amount: Decimal) -> PlanChangeDirection:
    """Upgrade/downgrade by numeric price, never by display string."""
    current = Decimal(current_amount)
    new = Decimal(new_amount)
    if new > current:
        return PlanChangeDirection.UPGRADE
    if new < current:
        return PlanChangeDirection.DOWNGRADE
    return PlanChangeDirection.LATERAL


def can_transition(status: SubscriptionStatus, action: TransitionAction) -> bool:
    """Whether ``action`` may be submitted from ``status``."""
    allowed = VALID_TRANSITIONS.get(action)
    return allowed is not None and status in allowed


def paid_through(subscription: Subscription) -> Optional[datetime]:
    """End of the period the company has already paid for."""
    return subscription.next_billing_time or subscription.current_period_end


def grants_access(subscription: Optional[Subscription], now: Optional[datetime] = None) -> bool:
    """
    Whether a subscription entitles its company to the product.

    Active subscriptions do. Cancelled ones keep access until the end of
    the paid period; every other status does not.
    """
    if subscription is None:
        return False
    if subscription.status == SubscriptionStatus.ACTIVE:
        return True
    if subscription.status != SubscriptionStatus.CANCELLED:
        return False

    until = paid_through(subscription)
    if until is None:
        return False
    if until.tzinfo is None:
        until = until.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now < until


def apply_processor_state(
    subscription: Subscription,
    state: ProcessorSubscriptionState,
    observed_at: Optional[datetime] = None,
) -> Subscription:
    """
    Overwrite processor-owned fields with the processor's report.

    Returns a new entity; the input is left untouched. Lifecycle timestamps
    are stamped the first time the matching status is observed.
    """
    observed_at = observed_at or datetime.now(timezone.utc)
    updates: dict = {
        "status": state.status,
        "next_billing_time": state.next_billing_time,
    }

    if state.current_period_start is not None:
        updates["current_period_start"] = state.current_period_start
    if state.current_period_end is not None:
        updates["current_period_end"] = state.current_period_end
    elif state.status == SubscriptionStatus.CANCELLED and state.next_billing_time is None:
        # Processors may drop the renewal date on cancel; the paid period still stands.
        updates["current_period_end"] = paid_through(subscription)
    if state.payment_method_brand is not None:
        updates["payment_method_brand"] = state.payment_method_brand
    if state.card_last_four is not None:
        updates["card_last_four"] = state.card_last_four
    if state.failed_payments_count is not None:
        updates["failed_payments_count"] = state.failed_payments_count

    if state.plan_key is not None and state.plan_key != subscription.plan_key:
        plan = get_plan(state.plan_key)
        updates["plan_key"] = plan.key
        updates["plan_name"] = plan.name
        updates["amount"] = state.amount if state.amount is not None else plan.amount
        updates["currency"] = state.currency or plan.currency
    elif state.amount is not None:
        updates["amount"] = state.amount

    if state.status == SubscriptionStatus.ACTIVE:
        if subscription.activated_at is None:
            updates["activated_at"] = observed_at
        updates["suspended_at"] = None
    elif state.status == SubscriptionStatus.SUSPENDED and subscription.suspended_at is None:
        updates["suspended_at"] = observed_at
    elif state.status == SubscriptionStatus.CANCELLED and subscription.cancelled_at is None:
        updates["cancelled_at"] = observed_at

    return subscription.model_copy(update=updates)
