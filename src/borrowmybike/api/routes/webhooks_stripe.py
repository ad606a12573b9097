"""Stripe webhook route - public endpoint for Stripe events.

Security rules:
- Validate Stripe-Signature on every request.
- Never log payload or signature header.
- Return 5xx if processing fails (so Stripe retries).
- The receipt is recorded only after processing succeeded.
"""

from __future__ import annotations

import os

from fastapi import APIRouter, Depends, Header, Request, Response

from borrowmybike.api.deps import get_gateway, get_ledger
from borrowmybike.domain.errors import PreconditionError
from borrowmybike.domain.ledger import LedgerStore, PaymentGateway
from borrowmybike.domain.money import CURRENCY
from borrowmybike.domain.payments import GatewayPayment, handle_payment_succeeded, is_booking_payment
from borrowmybike.observability.correlation import get_correlation_id
from borrowmybike.observability.logging import get_logger
from borrowmybike.observability.redaction import id_prefix, safe_log_context
from borrowmybike.stripe.webhook import (
    PAYMENT_SUCCEEDED_EVENTS,
    InvalidPayloadError,
    InvalidSignatureError,
    StripeWebhookEvent,
    verify_and_extract,
)

router = APIRouter(tags=["webhooks"])

logger = get_logger(__name__)

EVENT_SOURCE = "stripe"


def _get_webhook_secret() -> str:
    """Get Stripe webhook secret from environment."""
    secret = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    if not secret:
        raise RuntimeError("STRIPE_WEBHOOK_SECRET not configured")
    return secret


def _to_gateway_payment(event: StripeWebhookEvent) -> GatewayPayment | None:
    """Booking payment carried by the event, or None if it is not one of ours."""
    if event.event_type not in PAYMENT_SUCCEEDED_EVENTS or not event.paid:
        return None
    if not event.booking_id or not is_booking_payment(event.payment_type):
        return None
    reference = event.payment_reference or event.object_id
    if event.amount_cents is None or not reference:
        return None
    return GatewayPayment(
        booking_id=event.booking_id,
        payment_type=event.payment_type,
        amount_cents=event.amount_cents,
        currency=event.currency or CURRENCY,
        gateway_reference=reference,
    )


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(..., alias="Stripe-Signature"),
    ledger: LedgerStore = Depends(get_ledger),
    gateway: PaymentGateway = Depends(get_gateway),
) -> Response:
    """Receive Stripe webhook events.

    Returns:
        200 OK if processed, ignored or duplicate.
        400 Bad Request if signature or payload invalid.
        500 Internal Server Error if processing failed (Stripe retries).
    """
    correlation_id = get_correlation_id()

    try:
        payload_bytes = await request.body()
    except Exception:
        logger.warning(
            "failed to read request body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid body")

    try:
        webhook_secret = _get_webhook_secret()
    except RuntimeError:
        logger.error(
            "webhook secret not configured",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=500, content="server configuration error")

    try:
        event = verify_and_extract(payload_bytes, stripe_signature, webhook_secret)
    except InvalidSignatureError:
        return Response(status_code=400, content="invalid signature")
    except InvalidPayloadError:
        return Response(status_code=400, content="invalid payload")

    logger.info(
        "stripe webhook received",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                event_id_prefix=id_prefix(event.event_id),
                event_type=event.event_type,
            )
        },
    )

    if ledger.is_event_processed(EVENT_SOURCE, event.event_id):
        logger.info(
            "duplicate stripe event ignored",
            extra={"extra_fields": safe_log_context(event_id_prefix=id_prefix(event.event_id))},
        )
        return Response(status_code=200, content="duplicate")

    payment = _to_gateway_payment(event)
    if payment is None:
        ledger.record_processed_event(EVENT_SOURCE, event.event_id)
        return Response(status_code=200, content="ignored")

    try:
        result = handle_payment_succeeded(ledger, gateway, payment)
    except PreconditionError as exc:
        logger.warning(
            "stripe payment not applicable yet, asking for redelivery",
            extra={
                "extra_fields": safe_log_context(booking_id=payment.booking_id, error=str(exc))
            },
        )
        return Response(status_code=500, content="retry later")
    except Exception as exc:
        logger.error(
            "stripe payment processing failed",
            extra={
                "extra_fields": safe_log_context(
                    booking_id=payment.booking_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            },
        )
        return Response(status_code=500, content="processing failed")

    ledger.record_processed_event(EVENT_SOURCE, event.event_id)
    return Response(status_code=200, content=result["status"])
