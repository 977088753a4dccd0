"""
Razorpay webhook event schemas.

Known event types parse into their own model via a discriminated union on
the ``event`` field; anything else becomes an UnknownEvent, which is
acknowledged and ignored.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class PaymentEntity(BaseModel):
    """Razorpay payment object as embedded in webhook payloads."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(description="Payment id, e.g. 'pay_xxx'")
    order_id: str | None = Field(default=None, description="Order id, e.g. 'order_xxx'")
    amount: int | None = Field(default=None, description="Amount in paise")
    currency: str | None = None
    status: str | None = None
    error_code: str | None = None
    error_description: str | None = None


class SubscriptionEntity(BaseModel):
    """Razorpay subscription object as embedded in webhook payloads."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(description="Subscription id, e.g. 'sub_xxx'")
    status: str | None = None
    plan_id: str | None = None


class PaymentWrapper(BaseModel):
    entity: PaymentEntity


class SubscriptionWrapper(BaseModel):
    entity: SubscriptionEntity


class PaymentPayload(BaseModel):
    payment: PaymentWrapper


class SubscriptionPayload(BaseModel):
    subscription: SubscriptionWrapper
    payment: PaymentWrapper | None = None


class _RazorpayEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    account_id: str | None = None
    created_at: int | None = Field(default=None, description="Unix timestamp")


class PaymentAuthorized(_RazorpayEvent):
    event: Literal["payment.authorized"]
    payload: PaymentPayload

    @property
    def payment(self) -> PaymentEntity:
        return self.payload.payment.entity


class PaymentCaptured(_RazorpayEvent):
    event: Literal["payment.captured"]
    payload: PaymentPayload

    @property
    def payment(self) -> PaymentEntity:
        return self.payload.payment.entity


class PaymentFailed(_RazorpayEvent):
    event: Literal["payment.failed"]
    payload: PaymentPayload

    @property
    def payment(self) -> PaymentEntity:
        return self.payload.payment.entity

    @property
    def failure_reason(self) -> str:
        return self.payment.error_description or self.payment.error_code or "Payment failed"


class _SubscriptionEvent(_RazorpayEvent):
    payload: SubscriptionPayload

    @property
    def subscription(self) -> SubscriptionEntity:
        return self.payload.subscription.entity


class SubscriptionCharged(_SubscriptionEvent):
    event: Literal["subscription.charged"]


class SubscriptionPending(_SubscriptionEvent):
    event: Literal["subscription.pending"]


class SubscriptionHalted(_SubscriptionEvent):
    event: Literal["subscription.halted"]


class SubscriptionCancelled(_SubscriptionEvent):
    event: Literal["subscription.cancelled"]


class UnknownEvent(BaseModel):
    """Any event type this backend does not act on."""

    model_config = ConfigDict(extra="allow")

    event: str
    payload: dict[str, Any] = Field(default_factory=dict)


KnownEvent = Annotated[
    PaymentAuthorized
    | PaymentCaptured
    | PaymentFailed
    | SubscriptionCharged
    | SubscriptionPending
    | SubscriptionHalted
    | SubscriptionCancelled,
    Field(discriminator="event"),
]

GatewayEvent = (
    PaymentAuthorized
    | PaymentCaptured
    | PaymentFailed
    | SubscriptionCharged
    | SubscriptionPending
    | SubscriptionHalted
    | SubscriptionCancelled
    | UnknownEvent
)

KNOWN_EVENT_TYPES = frozenset(
    {
        "payment.authorized",
        "payment.captured",
        "payment.failed",
        "subscription.charged",
        "subscription.pending",
        "subscription.halted",
        "subscription.cancelled",
    }
)

_known_event_adapter: TypeAdapter = TypeAdapter(KnownEvent)


def parse_gateway_event(body: dict[str, Any]) -> GatewayEvent:
    """
    Parse a verified webhook body into a typed event.

    Raises:
        pydantic.ValidationError: If a known event type has a malformed payload
    """
    if body.get("event") in KNOWN_EVENT_TYPES:
        return _known_event_adapter.validate_python(body)
    return UnknownEvent.model_validate(body)


def entity_id(body: dict[str, Any]) -> str | None:
    """
    Id of the entity a raw webhook body is about, if any.

    Prefers the entity named by the event prefix (``payment`` for
    ``payment.captured``), then the first entity in the payload.
    """
    payload = body.get("payload")
    if not isinstance(payload, dict):
        return None
    prefix = str(body.get("event", "")).split(".", 1)[0]
    wrappers = [payload.get(prefix), *payload.values()]
    for wrapper in wrappers:
        if isinstance(wrapper, dict):
            entity = wrapper.get("entity")
            if isinstance(entity, dict) and entity.get("id"):
                return str(entity["id"])
    return None
