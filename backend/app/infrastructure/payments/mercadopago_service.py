"""
MercadoPago Payment Service

Infrastructure gateway for MercadoPago recurring charges (preapprovals).

API Docs: https://www.mercadopago.com.ar/developers/en/reference/subscriptions

A preapproval created with a card token and status "authorized" is charged
immediately; management actions are PUT updates on the same resource.
"""

import calendar
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

import httpx

from app.config.settings import get_settings
from app.domain.subscription import (
    PaymentProvider,
    PlanKey,
    ProcessorCreateResult,
    ProcessorSubscriptionState,
    ProcessorTransitionResult,
    SubscriptionStatus,
    TransitionAction,
    get_plan,
    plan_for_amount,
)
from app.infrastructure.exceptions import MandateInvalidError, PaymentProcessorError
from app.infrastructure.payments.gateway import PaymentGateway

logger = logging.getLogger(__name__)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"[MP] Unparseable date from processor: {value!r}")
        return None


def _add_billing_interval(start: datetime, recurring: dict) -> datetime:
    """Advance ``start`` by one auto_recurring interval, clamping the day of month."""
    frequency = int(recurring.get("frequency") or 1)
    if recurring.get("frequency_type") == "days":
        return start + timedelta(days=frequency)
    month_index = start.month - 1 + frequency
    year, month = start.year + month_index // 12, month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def _period_end(data: dict, recurring: dict, summarized: dict) -> Optional[datetime]:
    """
    End of the period already charged.

    The next payment date closes the current period; once a preapproval is
    cancelled MercadoPago may omit it, so the period is rebuilt from the
    last charge.
    """
    next_payment = _parse_datetime(data.get("next_payment_date"))
    if next_payment is not None:
        return next_payment
    last_charged = _parse_datetime(summarized.get("last_charged_date"))
    if last_charged is None:
        return None
    return _add_billing_interval(last_charged, recurring)


def _failed_charges(summarized: dict) -> int:
    """Overdue charges are only counted while MercadoPago flags the preapproval red."""
    if summarized.get("semaphore") != "red":
        return 0
    return int(summarized.get("pending_charge_quantity") or 0)


class MercadoPagoService(PaymentGateway):
    """
    MercadoPago preapproval gateway over httpx.

    Each call opens a short-lived AsyncClient. Requests are not retried:
    a timeout or 5xx surfaces as PaymentProcessorError and the caller
    decides what to do.
    """

    provider = PaymentProvider.MERCADOPAGO

    STATUS_MAP = {
        "pending": SubscriptionStatus.PENDING,
        "authorized": SubscriptionStatus.ACTIVE,
        "paused": SubscriptionStatus.SUSPENDED,
        "cancelled": SubscriptionStatus.CANCELLED,
    }

    # Client errors on reactivation mean the card/mandate can no longer be charged
    MANDATE_ERROR_CODES = {400, 422}

    def __init__(
        self,
        access_token: Optional[str] = None,
        base_url: Optional[str] = None,
        plan_ids: Optional[dict[str, Optional[str]]] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.access_token = access_token or settings.mercadopago_access_token
        self.base_url = (base_url or settings.mercadopago_base_url).rstrip("/")
        self.plan_ids = plan_ids if plan_ids is not None else settings.mercadopago_plan_ids
        self.timeout = timeout if timeout is not None else settings.payment_timeout_seconds
        self._transport = transport

        if not self.access_token:
            logger.warning("MERCADOPAGO_ACCESS_TOKEN not configured")

    def _headers(self, idempotency_key: Optional[str] = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict[str, Any]:
        """Issue one request and return the decoded body."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(
                    method,
                    f"{self.base_url}{path}",
                    headers=self._headers(idempotency_key),
                    json=json,
                )
                response.raise_for_status()
                if response.status_code == 204 or not response.content:
                    return {}
                return response.json()

        except httpx.HTTPStatusError as e:
            try:
                body = e.response.json()
            except ValueError:
                body = {}
            message = body.get("message") or f"HTTP {e.response.status_code}"
            logger.error(f"[MP] {operation} failed: HTTP {e.response.status_code} {message}")
            raise PaymentProcessorError(
                message,
                provider=self.provider.value,
                operation=operation,
                status_code=e.response.status_code,
                original_error=e,
            )
        except httpx.HTTPError as e:
            logger.error(f"[MP] {operation} failed: {e}")
            raise PaymentProcessorError(
                "Payment processor unavailable. Please try again later.",
                provider=self.provider.value,
                operation=operation,
                original_error=e,
            )

    async def _update(
        self,
        external_subscription_id: str,
        body: dict,
        action: TransitionAction,
    ) -> ProcessorTransitionResult:
        data = await self._request(
            "PUT",
            f"/preapproval/{external_subscription_id}",
            operation=action.value,
            json=body,
            idempotency_key=f"mp-{action.value}-{external_subscription_id}-{uuid.uuid4()}",
        )
        raw_status = data.get("status")
        return ProcessorTransitionResult(
            external_subscription_id=external_subscription_id,
            action=action,
            status=self.STATUS_MAP.get(raw_status) if raw_status else None,
        )

    async def create_subscription(
        self,
        company_id: str,
        plan_key: PlanKey,
        card_token: str,
        payer_email: str,
    ) -> ProcessorCreateResult:
        plan = get_plan(plan_key)
        plan_id = self.plan_ids.get(plan.key.value)

        body = {
            "reason": f"Escuela Segura - Plan {plan.name}",
            "external_reference": company_id,
            "payer_email": payer_email,
            "card_token_id": card_token,
            "auto_recurring": {
                "frequency": 1,
                "frequency_type": "months",
                "transaction_amount": float(plan.amount),
                "currency_id": plan.currency,
            },
            "status": "authorized",
        }
        if plan_id:
            body["preapproval_plan_id"] = plan_id

        data = await self._request(
            "POST",
            "/preapproval",
            operation="create_subscription",
            json=body,
            idempotency_key=f"mp-sub-{company_id}-{plan.key.value}-{uuid.uuid4()}",
        )

        logger.info(
            f"[MP] Created preapproval {data.get('id')} for company {company_id}, "
            f"status={data.get('status')}"
        )
        return ProcessorCreateResult(
            external_subscription_id=str(data["id"]),
            status=self.map_status(data.get("status")),
            external_plan_id=plan_id,
        )

    async def change_plan(
        self,
        external_subscription_id: str,
        new_plan_key: PlanKey,
    ) -> ProcessorTransitionResult:
        """New amount applies from the next charge."""
        plan = get_plan(new_plan_key)
        return await self._update(
            external_subscription_id,
            {
                "reason": f"Escuela Segura - Plan {plan.name}",
                "auto_recurring": {
                    "transaction_amount": float(plan.amount),
                    "currency_id": plan.currency,
                },
            },
            TransitionAction.CHANGE_PLAN,
        )

    async def change_card(
        self,
        external_subscription_id: str,
        card_token: str,
    ) -> ProcessorTransitionResult:
        return await self._update(
            external_subscription_id,
            {"card_token_id": card_token},
            TransitionAction.CHANGE_CARD,
        )

    async def cancel(
        self,
        external_subscription_id: str,
        reason: Optional[str] = None,
    ) -> ProcessorTransitionResult:
        return await self._update(
            external_subscription_id,
            {"status": "cancelled"},
            TransitionAction.CANCEL,
        )

    async def pause(self, external_subscription_id: str) -> ProcessorTransitionResult:
        return await self._update(
            external_subscription_id,
            {"status": "paused"},
            TransitionAction.PAUSE,
        )

    async def reactivate(self, external_subscription_id: str) -> ProcessorTransitionResult:
        """
        Re-authorize a paused preapproval.

        Cancelled preapprovals cannot be revived, and a rejected
        re-authorization means the card on file is no longer usable.
        """
        current = await self._request(
            "GET",
            f"/preapproval/{external_subscription_id}",
            operation="reactivate",
        )
        if current.get("status") == "cancelled":
            raise MandateInvalidError(
                "Subscription was cancelled and cannot be reactivated. Please subscribe again.",
                provider=self.provider.value,
                operation="reactivate",
            )

        try:
            return await self._update(
                external_subscription_id,
                {"status": "authorized"},
                TransitionAction.REACTIVATE,
            )
        except PaymentProcessorError as e:
            if e.status_code in self.MANDATE_ERROR_CODES:
                raise MandateInvalidError(
                    e.message,
                    provider=self.provider.value,
                    operation="reactivate",
                    status_code=e.status_code,
                    original_error=e.original_error,
                )
            raise

    async def _card_last_four(self, payer_id: Any, card_id: Any) -> Optional[str]:
        """Card details are best-effort; a lookup failure does not fail the sync."""
        if not payer_id or not card_id:
            return None
        try:
            card = await self._request(
                "GET",
                f"/v1/customers/{payer_id}/cards/{card_id}",
                operation="get_card",
            )
        except PaymentProcessorError:
            logger.warning(f"[MP] Card {card_id} lookup failed for payer {payer_id}")
            return None
        return card.get("last_four_digits")

    async def get_subscription_status(
        self,
        external_subscription_id: str,
    ) -> ProcessorSubscriptionState:
        data = await self._request(
            "GET",
            f"/preapproval/{external_subscription_id}",
            operation="get_subscription_status",
        )

        status = self.map_status(data.get("status"))
        recurring = data.get("auto_recurring") or {}
        summarized = data.get("summarized") or {}

        amount = recurring.get("transaction_amount")
        amount = Decimal(str(amount)) if amount is not None else None
        plan = plan_for_amount(amount) if amount is not None else None

        return ProcessorSubscriptionState(
            external_subscription_id=str(data.get("id", external_subscription_id)),
            status=status,
            next_billing_time=_parse_datetime(data.get("next_payment_date")),
            current_period_start=_parse_datetime(summarized.get("last_charged_date")),
            current_period_end=_period_end(data, recurring, summarized),
            payment_method_brand=data.get("payment_method_id"),
            card_last_four=await self._card_last_four(data.get("payer_id"), data.get("card_id")),
            plan_key=plan.key if plan else None,
            amount=amount,
            currency=recurring.get("currency_id"),
            failed_payments_count=_failed_charges(summarized),
        )
