"""Shared fixtures for contract tests."""

import time

import pytest
from fastapi.testclient import TestClient

from billing_api.app import app
from billing_api.config import get_settings
from billing_api.services.fake_gateway import FakeGatewayClient
from billing_api.services.gateway import get_gateway_client


@pytest.fixture(scope="module")
def client():
    """TestClient for the FastAPI app, talking to the in-process gateway."""
    gateway = FakeGatewayClient()
    app.dependency_overrides[get_gateway_client] = lambda: gateway
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture(scope="module")
def openapi_schema(client):
    """Fetch and cache the OpenAPI schema."""
    response = client.get("/openapi.json")
    assert response.status_code == 200
    return response.json()


@pytest.fixture
def session_headers(client):
    """Register a fresh user and return its session headers."""
    response = client.post("/users", json={
        "email": f"contract-{time.time_ns()}@example.com",
        "name": "Contract Test",
    })
    assert response.status_code == 201
    return {get_settings().session_header: response.json()["session_token"]}
