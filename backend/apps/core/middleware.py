"""
Core middleware.
"""

import time
import uuid
from collections.abc import Callable

from django.http import HttpRequest, HttpResponse

from apps.core.logging import bind_contextvars, clear_contextvars, get_logger
from apps.core.utils import get_client_ip

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Upper bound for client supplied request ids
MAX_REQUEST_ID_LENGTH = 128


class RequestContextMiddleware:
    """
    Assigns a request id and binds request context for structured logging.

    A client-supplied X-Request-ID is reused so retries can be traced end to
    end; otherwise a UUID4 is generated. The id is exposed as
    ``request.request_id``, echoed in the response header and included in the
    ``meta.requestId`` field of API envelopes.
    """

    def __init__(self, get_response: Callable[[HttpRequest], HttpResponse]) -> None:
        self.get_response = get_response

    def __call__(self, request: HttpRequest) -> HttpResponse:
        clear_contextvars()

        request_id = request.headers.get(REQUEST_ID_HEADER, "").strip()
        if not request_id or len(request_id) > MAX_REQUEST_ID_LENGTH:
            request_id = str(uuid.uuid4())
        request.request_id = request_id  # type: ignore[attr-defined]

        bind_contextvars(
            request_id=request_id,
            **{
                "http.method": request.method,
                "http.path": request.path,
                "network.client.ip": get_client_ip(request),
            },
        )

        started = time.monotonic()
        try:
            response = self.get_response(request)
            response[REQUEST_ID_HEADER] = request_id
            logger.info(
                "request_completed",
                **{"http.status_code": response.status_code},
                duration_ms=(time.monotonic() - started) * 1000,
            )
            return response
        finally:
            clear_contextvars()
