"""
Billing error codes.

Each class maps one stable client-facing code onto the core error taxonomy.
"""

from apps.core.exceptions import Conflict, NotFound, UpstreamError, ValidationFailed


class PlanNotFound(NotFound):
    code = "PLAN_NOT_FOUND"
    default_message = "Subscription plan not found"


class InvalidAudience(ValidationFailed):
    code = "INVALID_AUDIENCE"
    default_message = "Plan is not available for this user type"


class ActiveSubscriptionExists(Conflict):
    code = "ACTIVE_SUBSCRIPTION_EXISTS"
    default_message = "An active subscription already exists"


class InvalidCoupon(ValidationFailed):
    code = "INVALID_COUPON"
    default_message = "Invalid or expired coupon"


class CouponLimitExceeded(ValidationFailed):
    code = "COUPON_LIMIT_EXCEEDED"
    default_message = "Coupon usage limit exceeded"


class UserCouponLimitExceeded(ValidationFailed):
    code = "USER_COUPON_LIMIT_EXCEEDED"
    default_message = "You have already used this coupon"


class SubscriptionNotFound(NotFound):
    code = "SUBSCRIPTION_NOT_FOUND"
    default_message = "Subscription not found"


class InvalidSubscriptionState(Conflict):
    code = "INVALID_SUBSCRIPTION_STATE"
    default_message = "Subscription cannot make this transition from its current status"


class NoActiveSubscription(NotFound):
    code = "NO_ACTIVE_SUBSCRIPTION"
    default_message = "No active subscription"


class InvoiceNotFound(NotFound):
    code = "INVOICE_NOT_FOUND"
    default_message = "Invoice not found"


class InvoiceNotPending(Conflict):
    code = "INVOICE_NOT_PENDING"
    default_message = "Invoice is not pending payment"


class PaymentNotFound(NotFound):
    code = "PAYMENT_NOT_FOUND"
    default_message = "Payment record not found"


class InvalidSignature(ValidationFailed):
    code = "INVALID_SIGNATURE"
    default_message = "Invalid signature"


class UnsupportedGateway(ValidationFailed):
    code = "UNSUPPORTED_GATEWAY"
    default_message = "Payment gateway is not supported"


class GatewayError(UpstreamError):
    code = "GATEWAY_ERROR"
    default_message = "Payment gateway request failed"
