"""Pytest configuration for conversion relay tests

WHAT: Shared fixtures for normalizer, service and HTTP endpoint tests
WHY: Keeps Stripe and Meta CAPI fully mocked so no test touches the network
REFERENCES:
    - capi_bridge/main.py: FastAPI application
    - capi_bridge/deps.py: Dependency injection
    - capi_bridge/services/meta_capi_service.py: httpx transport seam
    - capi_bridge/services/stripe_session_service.py: Stripe SDK seam
"""

import json
import os
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import patch

import httpx
import pytest
from fastapi.testclient import TestClient

# Set test environment before the app module reads settings
os.environ.setdefault("META_PIXEL_ID", "123456")
os.environ.setdefault("META_CAPI_ACCESS_TOKEN", "test-capi-token")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_123")

PIXEL_ID = "123456"
ACCESS_TOKEN = "test-capi-token"
STRIPE_KEY = "sk_test_123"
MIRROR_URL = "https://mirror.example.com/capi"


# ============================================================================
# Meta CAPI fake
# ============================================================================

class FakeGraphAPI:
    """Records requests sent to the Graph API and answers with a canned response."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.status_code = 200
        self.body: Optional[Dict[str, Any]] = {"events_received": 1, "fbtrace_id": "AbCdEfG"}
        self.fail_hosts: List[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host in self.fail_hosts:
            raise httpx.ConnectError("connection refused", request=request)
        self.requests.append(request)
        if request.url.host != "graph.facebook.com":
            return httpx.Response(200, json={"ok": True})
        if self.body is None:
            return httpx.Response(self.status_code)
        return httpx.Response(self.status_code, json=self.body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def graph_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.host == "graph.facebook.com"]

    def sent_payload(self, index: int = -1) -> Dict[str, Any]:
        return json.loads(self.graph_requests[index].content)

    def sent_event(self, index: int = -1) -> Dict[str, Any]:
        return self.sent_payload(index)["data"][0]


@pytest.fixture
def graph_api() -> FakeGraphAPI:
    return FakeGraphAPI()


@pytest.fixture
def capi_service(graph_api):
    from capi_bridge.services.meta_capi_service import MetaCAPIService

    return MetaCAPIService(
        pixel_id=PIXEL_ID,
        access_token=ACCESS_TOKEN,
        transport=graph_api.transport,
    )


# ============================================================================
# Stripe fakes
# ============================================================================

@pytest.fixture
def stripe_session_factory() -> Callable[..., Dict[str, Any]]:
    """Build a Checkout Session dict shaped like the expanded Stripe object."""

    def factory(**overrides) -> Dict[str, Any]:
        session = {
            "id": "cs_test_123",
            "object": "checkout.session",
            "amount_total": 2500,
            "currency": "usd",
            "payment_status": "paid",
            "payment_intent": {"id": "pi_123", "status": "succeeded"},
            "customer_details": {"email": "A@B.com", "name": "Ada Lovelace", "phone": None},
            "line_items": {
                "object": "list",
                "data": [
                    {"quantity": 1, "price": {"product": "p1", "unit_amount": 2500}},
                ],
            },
        }
        session.update(overrides)
        return session

    return factory


@pytest.fixture
def mock_stripe_retrieve(stripe_session_factory):
    """Patch stripe.checkout.Session.retrieve; defaults to a paid session."""
    with patch("capi_bridge.services.stripe_session_service.stripe.checkout.Session.retrieve") as retrieve:
        retrieve.return_value = stripe_session_factory()
        yield retrieve


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def service_factory(capi_service):
    """Build a ConversionService wired to the fakes, overridable per test."""
    from capi_bridge.services.conversion_service import ConversionService
    from capi_bridge.services.stripe_session_service import StripeSessionService

    def factory(**overrides):
        kwargs = {
            "pixel_id": PIXEL_ID,
            "access_token": ACCESS_TOKEN,
            "stripe_secret_key": STRIPE_KEY,
            "capi_service": capi_service,
            "session_service": StripeSessionService(secret_key=STRIPE_KEY),
        }
        kwargs.update(overrides)
        return ConversionService(**kwargs)

    return factory


@pytest.fixture
def make_client():
    """Create a TestClient whose conversion service is replaced by `service`."""
    from capi_bridge.deps import get_conversion_service
    from capi_bridge.main import create_app

    def factory(service) -> TestClient:
        test_app = create_app()
        test_app.dependency_overrides[get_conversion_service] = lambda: service
        return TestClient(test_app)

    return factory


@pytest.fixture
def client(make_client, service_factory) -> TestClient:
    return make_client(service_factory())
