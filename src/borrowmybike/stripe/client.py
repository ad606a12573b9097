"""Thin wrapper around Stripe SDK.

Purpose:
- Encapsulate Stripe API calls so domain code doesn't import stripe.* directly.
- Require an idempotency_key on every money-moving call.
- Translate Stripe errors into ExternalGatewayError, flagging the ones whose
  outcome is unknown.
- Never log full Stripe payloads (only IDs + correlation metadata).
"""

from __future__ import annotations

import logging
import os
from typing import Any

import stripe

from borrowmybike.domain.errors import ExternalGatewayError

logger = logging.getLogger(__name__)

# Outcome unknown: the request may have been applied
_AMBIGUOUS_ERRORS = (stripe.APIConnectionError, stripe.APIError, stripe.RateLimitError)

_PRODUCT_NAMES = {
    "borrower_booking_fee": "BorrowMyBike road test booking fee",
    "owner_deposit": "BorrowMyBike owner deposit",
}


class StripeClient:
    """Stripe-backed PaymentGateway.

    Usage:
        client = StripeClient()  # reads STRIPE_SECRET_KEY from env
        session = client.create_checkout_session(
            amount_cents=15000,
            currency="cad",
            idempotency_key="booking:abc123:borrower_booking_fee:checkout:15000",
            metadata={"booking_id": "abc123", "payment_type": "borrower_booking_fee"},
        )
        print(session["session_id"], session["url"])
    """

    def __init__(self, api_key: str | None = None) -> None:
        """Initialize the Stripe client.

        Args:
            api_key: Stripe secret key. Defaults to STRIPE_SECRET_KEY env var.

        Raises:
            RuntimeError: If no API key is provided or found in environment.
        """
        self._api_key = api_key or os.environ.get("STRIPE_SECRET_KEY")
        if not self._api_key:
            raise RuntimeError(
                "Stripe API key not provided. "
                "Set STRIPE_SECRET_KEY or pass api_key parameter."
            )

    def create_checkout_session(
        self,
        *,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> dict[str, Any]:
        """Create a Stripe Checkout Session for one booking payment.

        Metadata is copied onto the PaymentIntent so that
        ``payment_intent.succeeded`` events can be routed to the booking.

        Args:
            amount_cents: Amount in cents.
            currency: ISO currency code (e.g., "cad").
            idempotency_key: Stable key for this booking payment.
            metadata: booking_id and payment_type, copied to the PaymentIntent.
            success_url: Redirect URL on success. Defaults to STRIPE_SUCCESS_URL.
            cancel_url: Redirect URL on cancel. Defaults to STRIPE_CANCEL_URL.

        Returns:
            Dict with session_id, url, and status.

        Raises:
            ExternalGatewayError: Stripe rejected or failed the request.
        """
        client = stripe.StripeClient(self._api_key)
        metadata = metadata or {}

        default_success = os.environ.get(
            "STRIPE_SUCCESS_URL", "https://borrowmybike.ca/bookings/payment-success"
        )
        default_cancel = os.environ.get(
            "STRIPE_CANCEL_URL", "https://borrowmybike.ca/bookings/payment-cancelled"
        )

        params: dict[str, Any] = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "unit_amount": amount_cents,
                        "product_data": {
                            "name": _PRODUCT_NAMES.get(
                                metadata.get("payment_type", ""), "BorrowMyBike payment"
                            ),
                        },
                    },
                    "quantity": 1,
                }
            ],
            "success_url": success_url or default_success,
            "cancel_url": cancel_url or default_cancel,
        }
        if metadata:
            params["metadata"] = metadata
            params["payment_intent_data"] = {"metadata": metadata}

        try:
            session = client.v1.checkout.sessions.create(
                params=params,
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as exc:
            raise _gateway_error("checkout session", exc) from exc

        logger.info(
            "stripe_checkout_session_created",
            extra={
                "session_id": session.id,
                "booking_id": metadata.get("booking_id"),
            },
        )

        return {
            "session_id": session.id,
            "url": session.url,
            "status": session.status,
        }

    def refund(
        self,
        *,
        payment_reference: str,
        amount_cents: int,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Refund part or all of a PaymentIntent (``pi_``) or Charge (``ch_``).

        Args:
            payment_reference: PaymentIntent or Charge id of the original payment.
            amount_cents: Amount to refund in cents.
            idempotency_key: Stable key derived from the refund claim row.
            metadata: Optional metadata stored on the refund.

        Returns:
            Dict with refund_id, status and amount_cents.

        Raises:
            ExternalGatewayError: Stripe rejected or failed the request.
        """
        if not payment_reference:
            raise ExternalGatewayError("refund requires a payment reference")

        client = stripe.StripeClient(self._api_key)
        target = "charge" if payment_reference.startswith("ch_") else "payment_intent"
        params: dict[str, Any] = {target: payment_reference, "amount": amount_cents}
        if metadata:
            params["metadata"] = metadata

        try:
            refund = client.v1.refunds.create(
                params=params,
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as exc:
            raise _gateway_error("refund", exc) from exc

        logger.info(
            "stripe_refund_created",
            extra={
                "refund_id": refund.id,
                "booking_id": (metadata or {}).get("booking_id"),
            },
        )

        return {
            "refund_id": refund.id,
            "status": refund.status,
            "amount_cents": refund.amount,
        }


def _gateway_error(operation: str, exc: stripe.StripeError) -> ExternalGatewayError:
    ambiguous = isinstance(exc, _AMBIGUOUS_ERRORS)
    logger.warning(
        "stripe_request_failed",
        extra={
            "operation": operation,
            "error_type": type(exc).__name__,
            "ambiguous": ambiguous,
        },
    )
    return ExternalGatewayError(f"stripe {operation} failed: {type(exc).__name__}", ambiguous=ambiguous)
