"""
Tests for Razorpay webhook event parsing.
"""

import pytest
from pydantic import ValidationError

from apps.billing.events import (
    PaymentCaptured,
    PaymentFailed,
    SubscriptionHalted,
    UnknownEvent,
    entity_id,
    parse_gateway_event,
)


def payment_body(event: str, **entity) -> dict:
    return {
        "entity": "event",
        "account_id": "acc_test",
        "event": event,
        "payload": {
            "payment": {
                "entity": {"id": "pay_abc", "order_id": "order_abc", "amount": 99950, **entity}
            }
        },
        "created_at": 1700000000,
    }


class TestParseGatewayEvent:
    """Tests for parse_gateway_event."""

    def test_payment_captured(self) -> None:
        event = parse_gateway_event(payment_body("payment.captured"))

        assert isinstance(event, PaymentCaptured)
        assert event.payment.id == "pay_abc"
        assert event.payment.order_id == "order_abc"
        assert event.payment.amount == 99950

    def test_payment_failed_reason(self) -> None:
        event = parse_gateway_event(
            payment_body("payment.failed", error_code="BAD_REQUEST_ERROR", error_description="Card declined")
        )

        assert isinstance(event, PaymentFailed)
        assert event.failure_reason == "Card declined"

    def test_payment_failed_default_reason(self) -> None:
        event = parse_gateway_event(payment_body("payment.failed"))

        assert event.failure_reason == "Payment failed"

    def test_subscription_event(self) -> None:
        event = parse_gateway_event(
            {
                "event": "subscription.halted",
                "payload": {"subscription": {"entity": {"id": "sub_abc", "status": "halted"}}},
            }
        )

        assert isinstance(event, SubscriptionHalted)
        assert event.subscription.id == "sub_abc"

    def test_unknown_event_type(self) -> None:
        event = parse_gateway_event({"event": "refund.processed", "payload": {"refund": {}}})

        assert isinstance(event, UnknownEvent)
        assert event.event == "refund.processed"

    def test_known_event_with_malformed_payload_raises(self) -> None:
        with pytest.raises(ValidationError):
            parse_gateway_event({"event": "payment.captured", "payload": {}})


class TestEntityId:
    """Tests for entity_id."""

    def test_prefers_entity_named_by_event(self) -> None:
        body = {
            "event": "subscription.charged",
            "payload": {
                "payment": {"entity": {"id": "pay_abc"}},
                "subscription": {"entity": {"id": "sub_abc"}},
            },
        }

        assert entity_id(body) == "sub_abc"

    def test_falls_back_to_first_entity(self) -> None:
        body = {"event": "order.paid", "payload": {"payment": {"entity": {"id": "pay_abc"}}}}

        assert entity_id(body) == "pay_abc"

    def test_no_payload(self) -> None:
        assert entity_id({"event": "payment.captured"}) is None
