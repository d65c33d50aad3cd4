"""
Integration tests for the API endpoints.

Tests the full request/response cycle with repositories and the
lifecycle service replaced through dependency_overrides.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from app.api.dependencies import get_lifecycle_service
from app.domain.subscription import (
    PaymentTransaction,
    PaymentTransactionStatus,
    PlanChangeDirection,
    PlanKey,
    SubscriptionStatus,
    TransitionAction,
)
from app.infrastructure.db.dependencies import (
    get_company_repository,
    get_payment_transaction_repository,
    get_subscription_repository,
)
from app.infrastructure.exceptions import (
    MandateInvalidError,
    MissingExternalReferenceError,
    PaymentProcessorError,
    SubscriptionStateError,
    TransitionInProgressError,
    UnknownProcessorStatusError,
)
from app.infrastructure.services.subscription_lifecycle_service import TransitionOutcome
from tests.factories import COMPANY_ID, SUBSCRIPTION_ID, make_company, make_subscription


@pytest.fixture
def mock_service(subscription):
    service = MagicMock()
    outcome = TransitionOutcome(action=TransitionAction.SYNC, subscription=subscription)
    for name in ("create", "change_plan", "change_card", "cancel", "pause", "reactivate", "sync"):
        setattr(service, name, AsyncMock(return_value=outcome))
    service.get_current = AsyncMock(return_value=subscription)
    return service


@pytest.fixture
def mock_payment_repo():
    repo = MagicMock()
    repo.list_for_company = AsyncMock(return_value=[])
    return repo


@pytest.fixture
def wired(app, mock_company_repo, mock_subscription_repo, mock_payment_repo, mock_service):
    """Install every override; returns the mocks for assertions."""
    app.dependency_overrides[get_company_repository] = lambda: mock_company_repo
    app.dependency_overrides[get_subscription_repository] = lambda: mock_subscription_repo
    app.dependency_overrides[get_payment_transaction_repository] = lambda: mock_payment_repo
    app.dependency_overrides[get_lifecycle_service] = lambda: mock_service
    return app


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_root_endpoint(self, client: TestClient):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["message"] == "Escuela Segura API"

    def test_health_endpoint(self, client: TestClient):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "escuela-segura"}


# =============================================================================
# Access
# =============================================================================

class TestAccessEndpoints:

    def test_active_trial(self, client, wired, auth_headers):
        response = client.get("/api/access", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["company_id"] == COMPANY_ID
        assert data["has_access"] is True
        assert data["trial_status"] == "active"
        assert data["trial_days_remaining"] == 7

    def test_company_not_onboarded(self, client, wired, auth_headers, mock_company_repo):
        mock_company_repo.get_by_user_id.return_value = None

        response = client.get("/api/access", headers=auth_headers)

        assert response.status_code == 404
        assert "onboarding" in response.json()["detail"]

    def test_start_trial(self, client, wired, auth_headers, mock_company_repo):
        mock_company_repo.get_by_user_id.return_value = make_company(trial_ends_at=None)
        mock_company_repo.start_trial.return_value = make_company(
            trial_ends_at=datetime.now(timezone.utc) + timedelta(days=14),
        )

        response = client.post("/api/access/trial", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["trial_status"] == "active"
        company_id, ends_at = mock_company_repo.start_trial.await_args.args
        assert company_id == COMPANY_ID
        assert ends_at > datetime.now(timezone.utc) + timedelta(days=13)

    def test_start_trial_is_idempotent(self, client, wired, auth_headers, mock_company_repo):
        mock_company_repo.get_by_user_id.return_value = make_company(
            trial_ends_at=datetime.now(timezone.utc) - timedelta(days=1),
        )

        response = client.post("/api/access/trial", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["trial_status"] == "expired"
        mock_company_repo.start_trial.assert_not_awaited()


# =============================================================================
# Compliance
# =============================================================================

class TestComplianceEndpoints:

    def test_evaluate_records(self, client, wired, auth_headers):
        response = client.post("/api/compliance/evaluate", headers=auth_headers, json={
            "today": "2025-03-01",
            "records": [
                {"id": "c1", "kind": "certificate", "expiration_date": "2025-03-01"},
                {"id": "c2", "kind": "inspection", "expiration_date": "2025-03-11"},
                {"id": "c3", "kind": "event", "expiration_date": "2025-12-31"},
                {"id": "c4", "kind": "fire_extinguisher", "expiration_date": "unknown"},
            ],
        })

        assert response.status_code == 200
        data = response.json()
        statuses = {r["id"]: r["status"] for r in data["results"]}
        assert statuses == {"c1": "expired", "c2": "expiring", "c3": "valid", "c4": "expired"}
        assert data["counts"] == {"valid": 1, "expiring": 1, "expired": 2}

        c2 = data["results"][1]
        assert c2["days_until_expiration"] == 10
        assert c2["within_notification_window"] is True
        assert c2["expiration_display"] == "11/3/2025"
        assert c2["notice"]["urgent"] is True

    def test_custom_threshold(self, client, wired, auth_headers):
        response = client.post("/api/compliance/evaluate", headers=auth_headers, json={
            "today": "2025-03-01",
            "threshold_days": 5,
            "records": [{"id": "c2", "expiration_date": "2025-03-11"}],
        })

        assert response.json()["results"][0]["status"] == "valid"

    def test_expired_trial_blocked(self, client, wired, auth_headers, mock_company_repo):
        mock_company_repo.get_by_user_id.return_value = make_company(
            trial_ends_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        )

        response = client.post("/api/compliance/evaluate", headers=auth_headers, json={"records": []})

        assert response.status_code == 402
        body = response.json()
        assert body["error"] == "AccessDeniedError"
        assert body["details"]["trial_status"] == "expired"

    def test_subscriber_allowed_after_trial(self, client, wired, auth_headers, mock_company_repo):
        mock_company_repo.get_by_user_id.return_value = make_company(
            is_subscribed=True,
            trial_ends_at=datetime.now(timezone.utc) - timedelta(days=60),
        )

        response = client.post("/api/compliance/evaluate", headers=auth_headers, json={"records": []})

        assert response.status_code == 200

    def test_qr_expiration(self, client, wired, auth_headers):
        response = client.get(
            "/api/compliance/qr-expiration",
            headers=auth_headers,
            params={"extracted_date": "2020-02-29"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["expiration_date"] == "2021-03-01"
        assert data["status"] == "expired"

    def test_qr_expiration_unparseable(self, client, wired, auth_headers):
        response = client.get(
            "/api/compliance/qr-expiration",
            headers=auth_headers,
            params={"extracted_date": "sin fecha"},
        )

        data = response.json()
        assert data["expiration_date"] is None
        assert data["status"] == "expired"
        assert data["expiration_display"] == "-"


# =============================================================================
# Subscriptions
# =============================================================================

class TestSubscriptionReads:

    def test_plans_are_public(self, client):
        response = client.get("/api/subscriptions/plans")

        assert response.status_code == 200
        amounts = {p["key"]: Decimal(str(p["amount"])) for p in response.json()}
        assert amounts == {
            "basic": Decimal("25000"),
            "standard": Decimal("49000"),
            "premium": Decimal("89000"),
        }

    def test_current_subscription(self, client, wired, auth_headers, mock_service):
        response = client.get("/api/subscriptions/current", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == SUBSCRIPTION_ID
        assert data["grants_access"] is True
        mock_service.get_current.assert_awaited_once_with(COMPANY_ID)

    def test_no_subscription(self, client, wired, auth_headers, mock_service):
        mock_service.get_current.return_value = None

        response = client.get("/api/subscriptions/current", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() is None

    def test_payment_history(self, client, wired, auth_headers, mock_payment_repo):
        mock_payment_repo.list_for_company.return_value = [
            PaymentTransaction(
                id="tx-1",
                company_id=COMPANY_ID,
                gross_amount=Decimal("49000"),
                status=PaymentTransactionStatus.COMPLETED,
                paid_at=datetime(2025, 3, 12, 15, 0),
            ),
        ]

        response = client.get("/api/subscriptions/payments?limit=10", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()[0]["paid_at_display"] == "12/3/2025"
        mock_payment_repo.list_for_company.assert_awaited_once_with(COMPANY_ID, limit=10)

    def test_requires_auth(self, client, wired):
        response = client.get("/api/subscriptions/current")
        assert response.status_code == 401


class TestSubscriptionTransitions:

    def test_create(self, client, wired, auth_headers, mock_service):
        response = client.post("/api/subscriptions", headers=auth_headers, json={
            "plan_key": "basic",
            "card_token": "tok_visa",
            "payer_email": "admin@escuela.edu.ar",
        })

        assert response.status_code == 201
        mock_service.create.assert_awaited_once_with(
            company_id=COMPANY_ID,
            plan_key=PlanKey.BASIC,
            card_token="tok_visa",
            payer_email="admin@escuela.edu.ar",
        )

    def test_create_rejects_unknown_plan(self, client, wired, auth_headers, mock_service):
        response = client.post("/api/subscriptions", headers=auth_headers, json={
            "plan_key": "enterprise",
            "card_token": "tok_visa",
            "payer_email": "admin@escuela.edu.ar",
        })

        assert response.status_code == 422
        mock_service.create.assert_not_awaited()

    def test_change_plan_reports_direction(self, client, wired, auth_headers, mock_service, subscription):
        mock_service.change_plan.return_value = TransitionOutcome(
            action=TransitionAction.CHANGE_PLAN,
            subscription=subscription,
            plan_change=PlanChangeDirection.UPGRADE,
        )

        response = client.post(
            f"/api/subscriptions/{SUBSCRIPTION_ID}/change-plan",
            headers=auth_headers,
            json={"new_plan_key": "premium"},
        )

        assert response.status_code == 200
        assert response.json()["plan_change"] == "upgrade"
        mock_service.change_plan.assert_awaited_once_with(SUBSCRIPTION_ID, PlanKey.PREMIUM)

    def test_cancel_without_body(self, client, wired, auth_headers, mock_service):
        response = client.post(f"/api/subscriptions/{SUBSCRIPTION_ID}/cancel", headers=auth_headers)

        assert response.status_code == 200
        mock_service.cancel.assert_awaited_once_with(SUBSCRIPTION_ID, reason=None)

    def test_cancel_with_reason(self, client, wired, auth_headers, mock_service):
        client.post(
            f"/api/subscriptions/{SUBSCRIPTION_ID}/cancel",
            headers=auth_headers,
            json={"reason": "school closed"},
        )

        mock_service.cancel.assert_awaited_once_with(SUBSCRIPTION_ID, reason="school closed")

    def test_pause(self, client, wired, auth_headers, mock_service):
        suspended = make_subscription(status=SubscriptionStatus.SUSPENDED)
        mock_service.pause.return_value = TransitionOutcome(
            action=TransitionAction.PAUSE,
            subscription=suspended,
        )

        response = client.post(f"/api/subscriptions/{SUBSCRIPTION_ID}/pause", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["action"] == "pause"
        assert data["subscription"]["status"] == "suspended"
        mock_service.pause.assert_awaited_once_with(SUBSCRIPTION_ID)

    def test_foreign_subscription_not_found(
        self, client, wired, auth_headers, mock_service, mock_subscription_repo,
    ):
        mock_subscription_repo.get_by_id.return_value = make_subscription(
            company_id="99999999-9999-9999-9999-999999999999",
        )

        response = client.post(f"/api/subscriptions/{SUBSCRIPTION_ID}/sync", headers=auth_headers)

        assert response.status_code == 404
        mock_service.sync.assert_not_awaited()

    @pytest.mark.parametrize("error,status_code,name", [
        (SubscriptionStateError("Cannot cancel a suspended subscription"), 409, "SubscriptionStateError"),
        (TransitionInProgressError(SUBSCRIPTION_ID), 409, "TransitionInProgressError"),
        (MandateInvalidError("Card expired"), 402, "MandateInvalidError"),
        (PaymentProcessorError("Processor unavailable"), 402, "PaymentProcessorError"),
        (UnknownProcessorStatusError("frozen"), 402, "UnknownProcessorStatusError"),
        (MissingExternalReferenceError(SUBSCRIPTION_ID, "reactivate"), 400, "MissingExternalReferenceError"),
    ])
    def test_error_mapping(self, client, wired, auth_headers, mock_service, error, status_code, name):
        mock_service.reactivate.side_effect = error

        response = client.post(f"/api/subscriptions/{SUBSCRIPTION_ID}/reactivate", headers=auth_headers)

        assert response.status_code == status_code
        assert response.json()["error"] == name

    def test_suspended_subscription_shows_no_access(
        self, client, wired, auth_headers, mock_service,
    ):
        suspended = make_subscription(status=SubscriptionStatus.SUSPENDED)
        mock_service.sync.return_value = TransitionOutcome(
            action=TransitionAction.SYNC,
            subscription=suspended,
        )

        response = client.post(f"/api/subscriptions/{SUBSCRIPTION_ID}/sync", headers=auth_headers)

        data = response.json()
        assert data["action"] == "sync"
        assert data["subscription"]["status"] == "suspended"
        assert data["subscription"]["grants_access"] is False
