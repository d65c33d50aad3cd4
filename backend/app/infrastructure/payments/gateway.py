"""
Payment Gateway Interface

Processor-agnostic boundary used by the subscription lifecycle service.
Implementations translate processor vocabulary into domain types and wrap
every SDK/HTTP failure into PaymentProcessorError. None of them retry.
"""

from abc import ABC, abstractmethod
from typing import Mapping, Optional

from app.domain.subscription import (
    PaymentProvider,
    PlanKey,
    ProcessorCreateResult,
    ProcessorSubscriptionState,
    ProcessorTransitionResult,
    SubscriptionStatus,
)
from app.infrastructure.exceptions import UnknownProcessorStatusError


class PaymentGateway(ABC):
    """Abstract payment processor."""

    provider: PaymentProvider

    # Key = raw processor status, value = domain status
    STATUS_MAP: Mapping[str, SubscriptionStatus] = {}

    def map_status(self, raw_status: Optional[str]) -> SubscriptionStatus:
        """Close a processor status string over SubscriptionStatus."""
        if raw_status is None or raw_status not in self.STATUS_MAP:
            raise UnknownProcessorStatusError(raw_status, provider=self.provider.value)
        return self.STATUS_MAP[raw_status]

    @abstractmethod
    async def create_subscription(
        self,
        company_id: str,
        plan_key: PlanKey,
        card_token: str,
        payer_email: str,
    ) -> ProcessorCreateResult:
        """Open a recurring subscription charged to the tokenized card."""
        ...

    @abstractmethod
    async def change_plan(
        self,
        external_subscription_id: str,
        new_plan_key: PlanKey,
    ) -> ProcessorTransitionResult:
        """Switch the recurring price, effective from the next billing date."""
        ...

    @abstractmethod
    async def change_card(
        self,
        external_subscription_id: str,
        card_token: str,
    ) -> ProcessorTransitionResult:
        """Replace the card of record. Plan and billing date are unchanged."""
        ...

    @abstractmethod
    async def cancel(
        self,
        external_subscription_id: str,
        reason: Optional[str] = None,
    ) -> ProcessorTransitionResult:
        """Stop renewals; access continues through the paid period."""
        ...

    @abstractmethod
    async def pause(self, external_subscription_id: str) -> ProcessorTransitionResult:
        """Suspend collection without cancelling; reversible through reactivate."""
        ...

    @abstractmethod
    async def reactivate(self, external_subscription_id: str) -> ProcessorTransitionResult:
        """Resume a suspended subscription. Raises MandateInvalidError when impossible."""
        ...

    @abstractmethod
    async def get_subscription_status(
        self,
        external_subscription_id: str,
    ) -> ProcessorSubscriptionState:
        """Read-only snapshot of the processor's view of the subscription."""
        ...
