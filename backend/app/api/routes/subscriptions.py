"""
Subscription API Routes

REST API endpoints for subscription management.
Every transition goes through SubscriptionLifecycleService; the response
always carries the subscription as last synced from the processor.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status

from app.api.dependencies import CurrentCompany, LifecycleServiceDep
from app.config.settings import get_settings
from app.domain.company import Company
from app.domain.dates import format_local
from app.domain.subscription import (
    PLAN_CATALOG,
    CancelRequest,
    ChangeCardRequest,
    ChangePlanRequest,
    CreateSubscriptionRequest,
    PaymentTransactionResponse,
    PlanResponse,
    Subscription,
    SubscriptionResponse,
    TransitionResponse,
    grants_access,
)
from app.infrastructure.db.dependencies import PaymentTransactionRepoDep, SubscriptionRepoDep
from app.infrastructure.services.subscription_lifecycle_service import TransitionOutcome


logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Helpers
# =============================================================================

def to_subscription_response(subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=subscription.id,
        status=subscription.status,
        plan_key=subscription.plan_key,
        plan_name=subscription.plan_name,
        amount=subscription.amount,
        currency=subscription.currency,
        payment_provider=subscription.payment_provider,
        external_subscription_id=subscription.external_subscription_id,
        payment_method_brand=subscription.payment_method_brand,
        card_last_four=subscription.card_last_four,
        next_billing_time=subscription.next_billing_time,
        current_period_end=subscription.current_period_end,
        activated_at=subscription.activated_at,
        cancelled_at=subscription.cancelled_at,
        suspended_at=subscription.suspended_at,
        failed_payments_count=subscription.failed_payments_count,
        grants_access=grants_access(subscription, datetime.now(timezone.utc)),
    )


def to_transition_response(outcome: TransitionOutcome) -> TransitionResponse:
    return TransitionResponse(
        action=outcome.action,
        subscription=to_subscription_response(outcome.subscription),
        plan_change=outcome.plan_change,
        no_op=outcome.no_op,
    )


async def get_owned_subscription(
    subscription_id: str,
    company: Company,
    repo: SubscriptionRepoDep,
) -> Subscription:
    """
    Load a subscription and check it belongs to the caller's company.

    Foreign subscriptions are reported as missing.
    """
    subscription = await repo.get_by_id(subscription_id)
    if subscription is None or subscription.company_id != company.id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Subscription not found",
        )
    return subscription


# =============================================================================
# Read Endpoints
# =============================================================================

@router.get("/subscriptions/plans", response_model=list[PlanResponse])
async def list_plans():
    """Purchasable plans with their monthly price."""
    return [
        PlanResponse(key=plan.key, name=plan.name, amount=plan.amount, currency=plan.currency)
        for plan in PLAN_CATALOG.values()
    ]


@router.get("/subscriptions/current", response_model=Optional[SubscriptionResponse])
async def get_current_subscription(company: CurrentCompany, service: LifecycleServiceDep):
    """Governing subscription of the caller's company, or null."""
    subscription = await service.get_current(company.id)
    if subscription is None:
        return None
    return to_subscription_response(subscription)


@router.get("/subscriptions/payments", response_model=list[PaymentTransactionResponse])
async def list_payments(
    company: CurrentCompany,
    repo: PaymentTransactionRepoDep,
    limit: int = Query(default=50, ge=1, le=200),
):
    """Payment history, newest first."""
    locale = get_settings().display_locale
    transactions = await repo.list_for_company(company.id, limit=limit)
    return [
        PaymentTransactionResponse(
            id=tx.id,
            status=tx.status,
            gross_amount=tx.gross_amount,
            net_amount=tx.net_amount,
            currency=tx.currency,
            paid_at=tx.paid_at,
            paid_at_display=format_local(tx.paid_at, locale),
        )
        for tx in transactions
    ]


# =============================================================================
# Transition Endpoints
# =============================================================================

@router.post(
    "/subscriptions",
    response_model=TransitionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_subscription(
    request: CreateSubscriptionRequest,
    company: CurrentCompany,
    service: LifecycleServiceDep,
):
    """
    Subscribe the caller's company with a tokenized card.

    The card is charged by the processor; the returned status reflects the
    processor's answer (pending until the charge is confirmed).
    """
    outcome = await service.create(
        company_id=company.id,
        plan_key=request.plan_key,
        card_token=request.card_token,
        payer_email=request.payer_email,
    )
    return to_transition_response(outcome)


@router.post("/subscriptions/{subscription_id}/change-plan", response_model=TransitionResponse)
async def change_plan(
    subscription_id: str,
    request: ChangePlanRequest,
    company: CurrentCompany,
    repo: SubscriptionRepoDep,
    service: LifecycleServiceDep,
):
    """Change plan from the next billing date. No proration."""
    await get_owned_subscription(subscription_id, company, repo)
    outcome = await service.change_plan(subscription_id, request.new_plan_key)
    return to_transition_response(outcome)


@router.post("/subscriptions/{subscription_id}/change-card", response_model=TransitionResponse)
async def change_card(
    subscription_id: str,
    request: ChangeCardRequest,
    company: CurrentCompany,
    repo: SubscriptionRepoDep,
    service: LifecycleServiceDep,
):
    await get_owned_subscription(subscription_id, company, repo)
    outcome = await service.change_card(subscription_id, request.card_token)
    return to_transition_response(outcome)


@router.post("/subscriptions/{subscription_id}/cancel", response_model=TransitionResponse)
async def cancel_subscription(
    subscription_id: str,
    company: CurrentCompany,
    repo: SubscriptionRepoDep,
    service: LifecycleServiceDep,
    request: Optional[CancelRequest] = None,
):
    """Stop renewals. Access continues until the end of the paid period."""
    await get_owned_subscription(subscription_id, company, repo)
    outcome = await service.cancel(subscription_id, reason=request.reason if request else None)
    return to_transition_response(outcome)


@router.post("/subscriptions/{subscription_id}/pause", response_model=TransitionResponse)
async def pause_subscription(
    subscription_id: str,
    company: CurrentCompany,
    repo: SubscriptionRepoDep,
    service: LifecycleServiceDep,
):
    """Suspend billing. Access is revoked until the subscription is reactivated."""
    await get_owned_subscription(subscription_id, company, repo)
    outcome = await service.pause(subscription_id)
    return to_transition_response(outcome)


@router.post("/subscriptions/{subscription_id}/reactivate", response_model=TransitionResponse)
async def reactivate_subscription(
    subscription_id: str,
    company: CurrentCompany,
    repo: SubscriptionRepoDep,
    service: LifecycleServiceDep,
):
    """
    Resume a suspended subscription.

    Responds 402 with MandateInvalidError when the processor can no longer
    charge it; the client should then start a new subscription.
    """
    await get_owned_subscription(subscription_id, company, repo)
    outcome = await service.reactivate(subscription_id)
    return to_transition_response(outcome)


@router.post("/subscriptions/{subscription_id}/sync", response_model=TransitionResponse)
async def sync_subscription(
    subscription_id: str,
    company: CurrentCompany,
    repo: SubscriptionRepoDep,
    service: LifecycleServiceDep,
):
    """Refresh from the processor (used after payment redirects)."""
    await get_owned_subscription(subscription_id, company, repo)
    outcome = await service.sync(subscription_id)
    return to_transition_response(outcome)
