"""
Company Repository

Reads companies for the access gate and writes the billing flags that
mirror the governing subscription.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlmodel import select

from app.domain.company import Company, CompanySubscriptionStatus
from app.infrastructure.db.database import get_session_context
from app.infrastructure.db.models.company import CompanyModel
from app.infrastructure.exceptions import NotFoundError


logger = logging.getLogger(__name__)


class CompanyRepository:
    """Repository for company data access."""

    async def get_by_id(self, company_id: str) -> Optional[Company]:
        async with get_session_context() as session:
            model = await session.get(CompanyModel, UUID(company_id))
            return self._to_domain(model) if model else None

    async def get_by_user_id(self, user_id: str) -> Optional[Company]:
        """
        Get the company owned by a user.

        Args:
            user_id: Auth user ID (JWT subject)

        Returns:
            Company domain model or None
        """
        try:
            user_uuid = UUID(user_id)
        except ValueError:
            return None

        async with get_session_context() as session:
            statement = select(CompanyModel).where(CompanyModel.user_id == user_uuid)
            result = await session.execute(statement)
            model = result.scalar_one_or_none()
            return self._to_domain(model) if model else None

    async def update_billing(
        self,
        company_id: str,
        is_subscribed: bool,
        subscription_status: Optional[CompanySubscriptionStatus],
        selected_plan: Optional[str],
        renewal_date: Optional[datetime],
    ) -> Company:
        """Overwrite the denormalized billing columns."""
        async with get_session_context() as session:
            model = await session.get(CompanyModel, UUID(company_id))
            if not model:
                raise NotFoundError(
                    f"Company {company_id} not found",
                    operation="update_billing",
                    table="companies",
                )

            if model.is_subscribed != is_subscribed:
                logger.info(f"Company {company_id} is_subscribed -> {is_subscribed}")

            model.is_subscribed = is_subscribed
            model.subscription_status = subscription_status.value if subscription_status else None
            model.selected_plan = selected_plan
            model.subscription_renewal_date = renewal_date
            model.updated_at = datetime.now(timezone.utc)

            await session.commit()
            await session.refresh(model)
            return self._to_domain(model)

    async def start_trial(self, company_id: str, trial_ends_at: datetime) -> Company:
        """
        Stamp the trial end on a company that never had one.

        Existing trial values are kept: trials are granted once.
        """
        async with get_session_context() as session:
            model = await session.get(CompanyModel, UUID(company_id))
            if not model:
                raise NotFoundError(
                    f"Company {company_id} not found",
                    operation="start_trial",
                    table="companies",
                )

            if model.trial_ends_at is None:
                model.trial_ends_at = trial_ends_at
                model.updated_at = datetime.now(timezone.utc)
                await session.commit()
                await session.refresh(model)
                logger.info(f"Started trial for company {company_id} until {trial_ends_at.isoformat()}")

            return self._to_domain(model)

    def _to_domain(self, model: CompanyModel) -> Company:
        return Company(
            id=str(model.id),
            user_id=str(model.user_id),
            name=model.name or "",
            is_subscribed=bool(model.is_subscribed),
            trial_ends_at=model.trial_ends_at,
            subscription_status=(
                CompanySubscriptionStatus(model.subscription_status)
                if model.subscription_status else None
            ),
            selected_plan=model.selected_plan,
            subscription_renewal_date=model.subscription_renewal_date,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


_company_repo_instance: Optional[CompanyRepository] = None


def get_company_repository() -> CompanyRepository:
    """Get or create company repository singleton."""
    global _company_repo_instance

    if _company_repo_instance is None:
        _company_repo_instance = CompanyRepository()

    return _company_repo_instance
