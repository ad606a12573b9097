"""Stripe webhook signature validation and payload parsing.

Purpose:
- Validate webhook signature using Stripe-Signature header: HMAC-SHA256 over
  "{timestamp}.{raw body}", constant-time compare, 5 minute tolerance.
- Extract only the fields needed to record a booking payment.
- Never log payload or signature.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import stripe

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300

PAYMENT_SUCCEEDED_EVENTS = ("payment_intent.succeeded", "checkout.session.completed")


class InvalidSignatureError(Exception):
    """Webhook signature validation failed."""


class InvalidPayloadError(Exception):
    """Payload structure is invalid or missing required fields."""


@dataclass
class StripeWebhookEvent:
    """Minimal extracted data from a Stripe webhook event."""

    event_id: str
    event_type: str
    object_id: str | None
    booking_id: str | None = None
    payment_type: str | None = None
    amount_cents: int | None = None
    currency: str | None = None
    payment_reference: str | None = None  # PaymentIntent id, used for refunds
    paid: bool = False


def verify_and_extract(
    payload_bytes: bytes,
    signature_header: str,
    webhook_secret: str,
) -> StripeWebhookEvent:
    """Validate Stripe webhook signature and extract booking payment data.

    Args:
        payload_bytes: Raw request body bytes.
        signature_header: Value of Stripe-Signature header.
        webhook_secret: Webhook endpoint secret from Stripe.

    Returns:
        StripeWebhookEvent; payment fields are set only for payment events.

    Raises:
        InvalidSignatureError: If signature validation fails or is too old.
        InvalidPayloadError: If event structure is invalid.
    """
    try:
        event = stripe.Webhook.construct_event(
            payload_bytes,
            signature_header,
            webhook_secret,
            tolerance=SIGNATURE_TOLERANCE_SECONDS,
        )
    except stripe.SignatureVerificationError as e:
        logger.warning("stripe webhook signature verification failed")
        raise InvalidSignatureError("Invalid signature") from e
    except ValueError as e:
        logger.warning("stripe webhook payload parsing failed")
        raise InvalidPayloadError("Invalid payload") from e

    # Stripe objects are not dicts in current SDKs.
    event_data = _as_dict(event)
    event_id = event_data.get("id")
    event_type = event_data.get("type")

    if not event_id or not event_type:
        raise InvalidPayloadError("Missing event id or type")

    obj = _event_object(event_data)
    extracted = StripeWebhookEvent(
        event_id=event_id,
        event_type=event_type,
        object_id=obj.get("id"),
    )

    if event_type in PAYMENT_SUCCEEDED_EVENTS:
        _extract_payment(extracted, obj)

    return extracted


def _as_dict(value: Any) -> dict[str, Any]:
    if hasattr(value, "to_dict"):
        value = value.to_dict()
    return dict(value or {})


def _event_object(event: dict[str, Any]) -> dict[str, Any]:
    """Return data.object of a Stripe event as a plain dict.

    Args:
        event: Event converted with _as_dict.

    Returns:
        The event object, or an empty dict when absent.
    """
    data = _as_dict(event.get("data"))
    return _as_dict(data.get("object"))


def _extract_payment(extracted: StripeWebhookEvent, obj: dict[str, Any]) -> None:
    metadata = _as_dict(obj.get("metadata"))
    extracted.booking_id = metadata.get("booking_id")
    extracted.payment_type = metadata.get("payment_type")
    extracted.currency = obj.get("currency")

    if extracted.event_type == "payment_intent.succeeded":
        extracted.amount_cents = obj.get("amount_received") or obj.get("amount")
        extracted.payment_reference = obj.get("id")
        extracted.paid = obj.get("status") == "succeeded"
    else:
        # checkout.session.completed
        extracted.amount_cents = obj.get("amount_total")
        extracted.payment_reference = obj.get("payment_intent")
        extracted.paid = obj.get("payment_status") == "paid"
