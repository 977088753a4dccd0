"""
Core schemas - shared Pydantic models for API responses.

Success bodies are wrapped as {"data": ..., "meta": {"requestId": ...}} and
errors as {"error": {"code": ..., "message": ...}}.
"""

from typing import Any, Generic, TypeVar

from django.http import HttpRequest
from pydantic import BaseModel, Field

from apps.core.utils import get_request_id

T = TypeVar("T")


class ResponseMeta(BaseModel):
    """Metadata attached to every success response."""

    requestId: str  # noqa: N815


class Envelope(BaseModel, Generic[T]):
    """Standard success response wrapper."""

    data: T
    meta: ResponseMeta


class ErrorDetail(BaseModel):
    """Machine-readable error code with a human-readable message."""

    code: str = Field(..., description="Stable error code, e.g. 'PLAN_NOT_FOUND'")
    message: str = Field(..., description="Human-readable error message")


class ErrorResponse(BaseModel):
    """Standard error response format."""

    error: ErrorDetail

    model_config = {
        "json_schema_extra": {
            "example": {"error": {"code": "PLAN_NOT_FOUND", "message": "Subscription plan not found"}}
        }
    }


def envelope(request: HttpRequest, data: Any) -> dict[str, Any]:
    """Wrap response data in the success envelope."""
    return {"data": data, "meta": {"requestId": get_request_id(request)}}


def error_body(code: str, message: str) -> dict[str, Any]:
    """Build an error envelope body."""
    return {"error": {"code": code, "message": message}}
