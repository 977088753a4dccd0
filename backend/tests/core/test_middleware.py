"""
Tests for RequestContextMiddleware.

Tests request id assignment, response header echo and log context cleanup.
"""

import uuid

import pytest
import structlog
from django.http import HttpRequest, HttpResponse

from apps.core.middleware import REQUEST_ID_HEADER, RequestContextMiddleware


@pytest.fixture
def captured() -> dict:
    return {}


@pytest.fixture
def middleware(captured: dict) -> RequestContextMiddleware:
    def get_response(request: HttpRequest) -> HttpResponse:
        captured["request_id"] = request.request_id
        captured["context"] = structlog.contextvars.get_contextvars()
        return HttpResponse("ok")

    return RequestContextMiddleware(get_response)


class TestRequestContextMiddleware:
    """Tests for RequestContextMiddleware."""

    def test_generates_request_id(self, middleware, captured, request_factory) -> None:
        response = middleware(request_factory.get("/api/v1/health"))

        request_id = captured["request_id"]
        assert uuid.UUID(request_id)
        assert response[REQUEST_ID_HEADER] == request_id

    def test_reuses_client_request_id(self, middleware, captured, request_factory) -> None:
        request = request_factory.get("/api/v1/health", headers={"X-Request-ID": "retry-42"})

        response = middleware(request)

        assert captured["request_id"] == "retry-42"
        assert response[REQUEST_ID_HEADER] == "retry-42"

    def test_rejects_oversized_request_id(self, middleware, captured, request_factory) -> None:
        request = request_factory.get("/api/v1/health", headers={"X-Request-ID": "x" * 500})

        middleware(request)

        assert captured["request_id"] != "x" * 500

    def test_binds_request_context(self, middleware, captured, request_factory) -> None:
        request = request_factory.post("/webhooks/razorpay/", REMOTE_ADDR="10.0.0.7")

        middleware(request)

        context = captured["context"]
        assert context["http.method"] == "POST"
        assert context["http.path"] == "/webhooks/razorpay/"
        assert context["network.client.ip"] == "10.0.0.7"

    def test_clears_context_after_response(self, middleware, request_factory) -> None:
        middleware(request_factory.get("/api/v1/health"))

        assert structlog.contextvars.get_contextvars() == {}


@pytest.mark.django_db
def test_request_id_in_envelope(api_client) -> None:
    response = api_client.get("/api/v1/catalog/plans", headers={"X-Request-ID": "req-abc"})

    assert response.json()["meta"] == {"requestId": "req-abc"}
    assert response[REQUEST_ID_HEADER] == "req-abc"
