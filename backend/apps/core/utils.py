"""
Core utility functions.
"""

from typing import cast, overload

from django.http import HttpRequest


@overload
def get_client_ip(request: HttpRequest) -> str | None: ...


@overload
def get_client_ip(request: HttpRequest, default: str) -> str: ...


def get_client_ip(request: HttpRequest, default: str | None = None) -> str | None:
    """
    Extract client IP from X-Forwarded-For or REMOTE_ADDR.

    Takes the first (original client) address from a proxy chain.
    """
    x_forwarded_for: str | None = request.META.get("HTTP_X_FORWARDED_FOR")
    if x_forwarded_for:
        return x_forwarded_for.split(",")[0].strip()
    remote_addr = cast(str | None, request.META.get("REMOTE_ADDR"))
    if remote_addr is not None:
        return remote_addr
    return default


def get_request_id(request: HttpRequest) -> str:
    """Request id assigned by RequestContextMiddleware ("unknown" outside it)."""
    return getattr(request, "request_id", None) or "unknown"
