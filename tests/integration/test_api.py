"""
API Integration Tests for the Billing Dashboard API.

Tests the HTTP endpoints using FastAPI's TestClient against the mock gateway.
Covers:
- Health, readiness and metrics endpoints
- User registration and session authentication
- Direct debit contract lifecycle (create, verify, callback, recover, cancel)
- Default payment method selection and status summary
- Error envelopes
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from billing_api.app import app
from billing_api.config import ConfigurationError, get_settings
from billing_api.database import async_session_maker
from billing_api.models import Subscription
from billing_api.services.fake_gateway import FakeGatewayClient, mock_signature
from billing_api.services.gateway import get_gateway_client

settings = get_settings()


def contract_payload(**overrides) -> dict:
    expire_at = datetime.now(timezone.utc) + timedelta(days=90)
    payload = {
        "mobile": "09123456789",
        "national_id": "0480123456",
        "expire_at": expire_at.strftime("%Y-%m-%d %H:%M:%S"),
        "max_daily_count": 5,
        "max_monthly_count": 50,
        "max_amount": 50_000_000,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def gateway():
    return FakeGatewayClient()


@pytest.fixture
def client(gateway):
    """Test client whose gateway is a fresh in-process fake."""
    app.dependency_overrides[get_gateway_client] = lambda: gateway
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def auth(client):
    """Register a user and return the session headers."""
    email = f"user-{time.time_ns()}@example.com"
    response = client.post("/users", json={"email": email, "name": "Sara"})
    assert response.status_code == 201, response.text
    return {settings.session_header: response.json()["session_token"]}


def create_contract(client, auth) -> dict:
    response = client.post("/payment-methods/contracts", json=contract_payload(), headers=auth)
    assert response.status_code == 201, response.text
    return response.json()


def verify(client, auth, contract: dict, status: str = "OK"):
    return client.post(
        f"/payment-methods/contracts/{contract['contract_id']}/verify",
        json={"payman_authority": contract["payman_authority"], "status": status},
        headers=auth,
    )


def add_subscription(user_id: str, payment_method_id: str) -> None:
    async def _add():
        async with async_session_maker() as session:
            session.add(Subscription(
                user_id=user_id,
                payment_method_id=payment_method_id,
                product_name="Pro plan",
                status="active",
            ))
            await session.commit()

    asyncio.run(_add())


# =============================================================================
# HEALTH & ROOT ENDPOINT TESTS
# =============================================================================

class TestHealthEndpoints:
    """Tests for health check and root endpoints."""

    def test_health_check(self, client):
        """GET /health returns healthy status and the gateway mode."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "sqlite"
        assert data["gateway"] == "mock"

    def test_ready(self, client):
        response = client.get("/ready")
        assert response.status_code == 200
        assert response.json() == {"status": "ready"}

    def test_root_endpoint(self, client):
        data = client.get("/").json()
        assert data["name"] == "Billing Dashboard API"
        assert data["docs"] == "/docs"

    def test_metrics_exposes_contract_counters(self, client, auth):
        create_contract(client, auth)
        content = client.get("/metrics").text
        assert "contract_transitions_total" in content
        assert "gateway_requests_total" in content
        assert 'endpoint="/payment-methods/contracts"' in content

    def test_correlation_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Correlation-ID": "corr-123"})
        assert response.headers["X-Correlation-ID"] == "corr-123"


# =============================================================================
# AUTHENTICATION TESTS
# =============================================================================

class TestAuthentication:
    """Tests for session token handling."""

    def test_register_returns_token(self, client):
        response = client.post("/users", json={"email": f"new-{time.time_ns()}@example.com", "name": "Reza"})
        assert response.status_code == 201
        assert response.json()["session_token"].startswith("bd_")

    def test_duplicate_email_conflicts(self, client):
        email = f"dup-{time.time_ns()}@example.com"
        assert client.post("/users", json={"email": email, "name": "A"}).status_code == 201

        response = client.post("/users", json={"email": email.upper(), "name": "B"})
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "user_exists"

    def test_missing_token(self, client):
        response = client.get("/payment-methods")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthenticated"

    def test_invalid_token(self, client):
        response = client.get("/payment-methods", headers={settings.session_header: "bd_nope"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_session"

    def test_me(self, client, auth):
        response = client.get("/users/me", headers=auth)
        assert response.status_code == 200
        assert "session_token" not in response.json()


# =============================================================================
# CONTRACT LIFECYCLE TESTS
# =============================================================================

class TestContractLifecycle:
    """Tests for creating and verifying direct debit contracts."""

    def test_list_banks(self, client, auth):
        response = client.get("/payment-methods/contracts/banks", headers=auth)
        assert response.status_code == 200
        slugs = [bank["slug"] for bank in response.json()["banks"]]
        assert slugs == ["bmi", "mellat", "saman"]

    def test_create_contract(self, client, auth):
        response = client.post("/payment-methods/contracts", json=contract_payload(), headers=auth)

        assert response.status_code == 201
        data = response.json()
        assert data["payman_authority"].startswith("payman_mock_")
        assert data["signing_url_template"].endswith(f"/{data['payman_authority']}/{{bank_code}}")
        assert len(data["banks"]) == 3
        assert settings.contract_cookie_name in response.cookies

    def test_create_contract_validation_shape(self, client, auth):
        response = client.post(
            "/payment-methods/contracts",
            json=contract_payload(mobile="12345", expire_at="31/12/2027"),
            headers=auth,
        )
        assert response.status_code == 422
        fields = {error["field"] for error in response.json()["errors"]}
        assert "body.mobile" in fields
        assert "body.expire_at" in fields

    def test_create_contract_too_soon(self, client, auth):
        soon = (datetime.now(timezone.utc) + timedelta(days=5)).strftime("%Y-%m-%d %H:%M:%S")
        response = client.post("/payment-methods/contracts", json=contract_payload(expire_at=soon), headers=auth)
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "invalid_field"
        assert response.json()["error"]["field"] == "expire_at"

    def test_create_contract_over_bank_limits(self, client, auth):
        response = client.post(
            "/payment-methods/contracts",
            json=contract_payload(max_amount=900_000_000),
            headers=auth,
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "limit_exceeded"

    def test_create_contract_gateway_down(self, client, auth, gateway):
        gateway.failing.add("request_contract")
        response = client.post("/payment-methods/contracts", json=contract_payload(), headers=auth)
        assert response.status_code == 502
        assert response.json()["error"]["code"] == "upstream_unavailable"

    def test_verify_contract(self, client, auth):
        contract = create_contract(client, auth)

        response = verify(client, auth, contract)

        assert response.status_code == 200
        data = response.json()
        assert data["signature"] == mock_signature(contract["payman_authority"])
        assert data["idempotent"] is False
        method = data["payment_method"]
        assert method["id"] == contract["contract_id"]
        assert method["contract_status"] == "active"
        assert method["is_primary"] is True
        assert "contract_signature_encrypted" not in method

    def test_verify_twice_is_idempotent(self, client, auth):
        contract = create_contract(client, auth)
        first = verify(client, auth, contract).json()

        second = verify(client, auth, contract)

        assert second.status_code == 200
        assert second.json()["idempotent"] is True
        assert second.json()["payment_method"]["id"] == first["payment_method"]["id"]
        assert client.get("/payment-methods", headers=auth).json()["total"] == 1

    def test_verify_declined(self, client, auth):
        contract = create_contract(client, auth)
        response = verify(client, auth, contract, status="NOK")
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "signing_not_successful"

        status = client.get("/payment-methods/contracts/status", headers=auth).json()
        assert status["status"] == "invalid"
        assert status["needs_setup"] is True

    def test_verify_after_decline_is_rejected(self, client, auth, gateway):
        contract = create_contract(client, auth)
        verify(client, auth, contract, status="NOK")

        response = verify(client, auth, contract)

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "contract_not_active"
        assert gateway.calls_to("verify_contract") == []
        assert client.get("/payment-methods/contracts/status", headers=auth).json()["status"] == "invalid"

    def test_verify_malformed_signature_is_502(self, client, auth, gateway, monkeypatch):
        contract = create_contract(client, auth)

        async def short_signature(payman_authority):
            return "too-short"

        monkeypatch.setattr(gateway, "verify_contract", short_signature)

        response = verify(client, auth, contract)

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "upstream_unavailable"

    def test_verify_wrong_authority(self, client, auth):
        contract = create_contract(client, auth)
        contract["payman_authority"] = "payman_someone_else"
        response = verify(client, auth, contract)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "contract_not_found"

    def test_verify_other_users_contract(self, client, auth):
        contract = create_contract(client, auth)
        other = client.post("/users", json={"email": f"o-{time.time_ns()}@example.com", "name": "O"}).json()
        response = verify(client, {settings.session_header: other["session_token"]}, contract)
        assert response.status_code == 404


class TestCallback:
    """Tests for the public bank callback."""

    def test_callback_with_cookie_persists(self, client, auth):
        contract = create_contract(client, auth)

        response = client.get(
            "/payment-methods/contracts/callback",
            params={"payman_authority": contract["payman_authority"], "status": "OK"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["persisted"] is True
        assert data["payment_method_id"] == contract["contract_id"]
        assert "signature" not in data
        assert settings.contract_cookie_name not in client.cookies

    def test_callback_without_user_only_confirms(self, client, auth):
        contract = create_contract(client, auth)
        client.cookies.clear()

        data = client.get(
            "/payment-methods/contracts/callback",
            params={"payman_authority": contract["payman_authority"], "status": "OK"},
        ).json()

        assert data["success"] is True
        assert data["persisted"] is False
        status = client.get("/payment-methods/contracts/status", headers=auth).json()
        assert status["status"] == "pending"

    def test_callback_declined_is_200(self, client, auth):
        contract = create_contract(client, auth)
        response = client.get(
            "/payment-methods/contracts/callback",
            params={"payman_authority": contract["payman_authority"], "status": "NOK"},
        )
        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_callback_gateway_down_is_200(self, client, auth, gateway):
        contract = create_contract(client, auth)
        gateway.failing.add("verify_contract")
        response = client.get(
            "/payment-methods/contracts/callback",
            params={"payman_authority": contract["payman_authority"], "status": "OK"},
        )
        assert response.status_code == 200
        assert response.json()["success"] is False


class TestRecover:
    def test_recover_missing_payment_method(self, client, auth):
        response = client.post(
            "/payment-methods/contracts/recover",
            json={"payman_authority": "payman_lost_one"},
            headers=auth,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["recovered"] is True
        assert data["payment_method"]["contract_status"] == "active"

    def test_recover_existing_is_idempotent(self, client, auth):
        contract = create_contract(client, auth)
        verify(client, auth, contract)

        data = client.post(
            "/payment-methods/contracts/recover",
            json={"payman_authority": contract["payman_authority"]},
            headers=auth,
        ).json()

        assert data["recovered"] is False
        assert data["payment_method"]["id"] == contract["contract_id"]


class TestDefaultAndCancel:
    """Tests for choosing the default method and cancelling contracts."""

    def test_set_default(self, client, auth):
        first = create_contract(client, auth)
        verify(client, auth, first)
        second = create_contract(client, auth)
        verify(client, auth, second)

        response = client.patch(f"/payment-methods/{second['contract_id']}/default", headers=auth)

        assert response.status_code == 200
        data = response.json()
        assert data["changed"] is True
        assert data["previous_default_id"] == first["contract_id"]

        methods = client.get("/payment-methods", headers=auth).json()["items"]
        primaries = [m["id"] for m in methods if m["is_primary"]]
        assert primaries == [second["contract_id"]]

    def test_set_default_on_pending_contract(self, client, auth):
        contract = create_contract(client, auth)
        response = client.patch(f"/payment-methods/{contract['contract_id']}/default", headers=auth)
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "contract_not_active"

    def test_cancel_contract(self, client, auth, gateway):
        contract = create_contract(client, auth)
        verify(client, auth, contract)

        response = client.delete(f"/payment-methods/contracts/{contract['contract_id']}", headers=auth)

        assert response.status_code == 200
        assert response.json()["gateway_cancelled"] is True
        assert gateway.calls_to("cancel_contract") == [mock_signature(contract["payman_authority"])]
        assert client.get("/payment-methods", headers=auth).json()["total"] == 0

    def test_cancel_when_gateway_fails_still_deletes(self, client, auth, gateway):
        contract = create_contract(client, auth)
        verify(client, auth, contract)
        gateway.failing.add("cancel_contract")

        response = client.delete(f"/payment-methods/contracts/{contract['contract_id']}", headers=auth)

        assert response.status_code == 200
        assert response.json()["gateway_cancelled"] is False
        assert client.get("/payment-methods", headers=auth).json()["total"] == 0

    def test_cancel_with_active_subscription(self, client, auth):
        contract = create_contract(client, auth)
        verify(client, auth, contract)
        user_id = client.get("/users/me", headers=auth).json()["id"]
        add_subscription(user_id, contract["contract_id"])

        response = client.delete(f"/payment-methods/contracts/{contract['contract_id']}", headers=auth)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "active_subscriptions"

    def test_cancel_unknown(self, client, auth):
        response = client.delete("/payment-methods/contracts/does-not-exist", headers=auth)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "payment_method_not_found"


class TestContractStatus:
    def test_no_contract(self, client, auth):
        data = client.get("/payment-methods/contracts/status", headers=auth).json()
        assert data["status"] == "no_contract"
        assert data["can_make_payments"] is False
        assert data["needs_setup"] is True

    def test_active_contract(self, client, auth):
        contract = create_contract(client, auth)
        verify(client, auth, contract)

        data = client.get("/payment-methods/contracts/status", headers=auth).json()

        assert data["status"] == "active"
        assert data["can_make_payments"] is True
        assert data["contract_id"] == contract["contract_id"]


# =============================================================================
# STARTUP TESTS
# =============================================================================

class TestStartup:
    """Tests for startup configuration checks."""

    def test_missing_signature_secret_refuses_to_start(self, monkeypatch):
        monkeypatch.setattr(settings, "signature_secret", "")

        with pytest.raises(ConfigurationError, match="SIGNATURE_SECRET"):
            with TestClient(app):
                pass
