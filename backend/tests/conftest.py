"""
Shared pytest fixtures for all tests.

This module provides common fixtures used across multiple test modules.
Individual test modules can override these fixtures if needed.

Factories
---------
Import factories directly from their modules:

    from tests.billing.factories import PlanFactory, SubscriptionFactory, InvoiceFactory

Example usage:

    @pytest.mark.django_db
    def test_something(owner_identity):
        plan = PlanFactory.create(code="OWNER_PRO", audience="owner")
        subscription = SubscriptionFactory.create(user_id=owner_identity.user_id, plan=plan)
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt
import pytest
from django.conf import settings
from django.http import HttpRequest
from django.test import Client, RequestFactory

from apps.core.auth import Audience, AuthContext

OWNER_USER_ID = "usr_owner_1"
TENANT_USER_ID = "usr_tenant_1"


def make_token(
    user_id: str,
    user_type: str = "owner",
    secret: str | None = None,
    expires_in: timedelta = timedelta(hours=1),
    **claims: Any,
) -> str:
    """
    Mint an identity token the way the upstream auth service does.

    Example:
        token = make_token("usr_1", "tenant")
        api_client.get("/api/v1/subscriptions", headers={"Authorization": f"Bearer {token}"})
    """
    payload = {
        "sub": user_id,
        "userType": user_type,
        "exp": datetime.now(UTC) + expires_in,
        **claims,
    }
    return jwt.encode(payload, secret or settings.AUTH_JWT_SECRET, algorithm="HS256")


def auth_headers(user_id: str, user_type: str = "owner") -> dict[str, str]:
    """Authorization header dict for the Django test client."""
    return {"Authorization": f"Bearer {make_token(user_id, user_type)}"}


class MockRequest(HttpRequest):
    """
    HttpRequest subclass for tests that allows setting auth attribute.

    Example:
        request = MockRequest()
        request.auth = AuthContext(user_id="usr_1", audience=Audience.OWNER)
    """

    auth: AuthContext


@pytest.fixture
def owner_identity() -> AuthContext:
    return AuthContext(user_id=OWNER_USER_ID, audience=Audience.OWNER)


@pytest.fixture
def tenant_identity() -> AuthContext:
    return AuthContext(user_id=TENANT_USER_ID, audience=Audience.TENANT)


@pytest.fixture
def owner_headers() -> dict[str, str]:
    return auth_headers(OWNER_USER_ID, "owner")


@pytest.fixture
def tenant_headers() -> dict[str, str]:
    return auth_headers(TENANT_USER_ID, "tenant")


@pytest.fixture
def request_factory() -> RequestFactory:
    """
    Django request factory for unit testing views.

    Use this when you need to test view functions directly without going through
    the full HTTP stack.
    """
    return RequestFactory()


@pytest.fixture
def api_client() -> Client:
    """
    Django test client for full HTTP request/response cycle tests.

    Use this when you need to test the complete HTTP flow including middleware,
    routing, and response handling.

    Example:
        def test_api_returns_200(api_client):
            response = api_client.get("/api/v1/health")
            assert response.status_code == 200
    """
    return Client()


@pytest.fixture
def authenticated_request(
    request_factory: RequestFactory,
    owner_identity: AuthContext,
) -> Callable[..., HttpRequest]:
    """
    Factory fixture for creating requests with an identity attached.

    Example:
        def test_endpoint(authenticated_request):
            request = authenticated_request(method="post", path="/api/v1/usage/consume")
            assert request.auth.user_id == "usr_owner_1"
    """

    def _make_request(
        identity: AuthContext | None = None,
        method: str = "get",
        path: str = "/",
        data: dict | None = None,
    ) -> HttpRequest:
        method_func = getattr(request_factory, method.lower())
        kwargs: dict[str, Any] = {}
        if data is not None:
            kwargs["data"] = data
            kwargs["content_type"] = "application/json"

        request = method_func(path, **kwargs)
        request.auth = identity or owner_identity
        return request

    return _make_request
