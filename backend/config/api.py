"""
Django Ninja API configuration.
"""

from django.http import HttpRequest, HttpResponse
from ninja import NinjaAPI
from ninja.errors import AuthenticationError, HttpError, ValidationError

from apps.billing.api import catalog_router, payments_router
from apps.billing.api import router as subscriptions_router
from apps.core.exceptions import ApiError
from apps.core.logging import get_logger
from apps.core.schemas import error_body

logger = get_logger(__name__)

api = NinjaAPI(
    title="Rentals Billing API",
    version="1.0.0",
    description="Subscription plans, coupons, invoices and Razorpay payments for the rental marketplace.",
    openapi_extra={
        "info": {
            "contact": {"name": "API Support"},
        },
        "tags": [
            {
                "name": "catalog",
                "description": "Published subscription plans (public)",
            },
            {
                "name": "subscriptions",
                "description": "Subscription purchase, lifecycle, entitlements and usage",
            },
            {
                "name": "payments",
                "description": "Invoices and gateway checkout",
            },
            {
                "name": "health",
                "description": "Service health and readiness checks",
            },
        ],
        "components": {
            "securitySchemes": {
                "bearerAuth": {
                    "type": "http",
                    "scheme": "bearer",
                    "bearerFormat": "JWT",
                    "description": "Identity token issued by the marketplace auth service. Include as: Authorization: Bearer <token>",
                }
            }
        },
    },
)

# Register routers
api.add_router("", subscriptions_router)
api.add_router("/catalog", catalog_router)
api.add_router("/me", payments_router)


@api.exception_handler(ApiError)
def handle_api_error(request: HttpRequest, exc: ApiError) -> HttpResponse:
    if exc.status_code >= 500:
        logger.error("api_error", code=exc.code, error=exc.message)
    return api.create_response(request, error_body(exc.code, exc.message), status=exc.status_code)


@api.exception_handler(ValidationError)
def handle_validation_error(request: HttpRequest, exc: ValidationError) -> HttpResponse:
    details = []
    for error in exc.errors:
        location = ".".join(str(part) for part in error.get("loc", ()))
        details.append(f"{location}: {error.get('msg', 'invalid')}")
    message = "; ".join(details) or "Invalid request"
    return api.create_response(request, error_body("VALIDATION_ERROR", message), status=400)


@api.exception_handler(AuthenticationError)
def handle_authentication_error(request: HttpRequest, exc: AuthenticationError) -> HttpResponse:
    return api.create_response(request, error_body("UNAUTHORIZED", "Not authenticated"), status=401)


@api.exception_handler(HttpError)
def handle_http_error(request: HttpRequest, exc: HttpError) -> HttpResponse:
    code = {401: "UNAUTHORIZED", 403: "FORBIDDEN", 404: "NOT_FOUND"}.get(exc.status_code, "ERROR")
    return api.create_response(request, error_body(code, str(exc)), status=exc.status_code)


@api.exception_handler(Exception)
def handle_unexpected_error(request: HttpRequest, exc: Exception) -> HttpResponse:
    logger.exception("unhandled_api_error")
    return api.create_response(
        request, error_body("INTERNAL_ERROR", "Internal server error"), status=500
    )


@api.get("/health", tags=["health"], operation_id="healthCheck", summary="Health check")
def health_check(request: HttpRequest) -> dict:
    """Health check endpoint for load balancer."""
    return {"status": "ok"}
