"""Domain exceptions for the booking lifecycle.

Route handlers translate these into HTTP responses; domain code never
raises HTTPException directly.
"""

from __future__ import annotations

from typing import Any


class BookingValidationError(Exception):
    """Malformed input (unknown role, bad choice, missing field)."""


class PreconditionError(Exception):
    """Booking is in the wrong state or the action window is closed."""

    def __init__(self, message: str, *, window: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.window = window


class BookingNotFoundError(Exception):
    """Raised when the booking does not exist."""


class PaymentNotFoundError(Exception):
    """Raised when the payment row does not exist."""


class ForbiddenError(Exception):
    """Caller is not allowed to act on this booking."""


class SlotUnavailableError(Exception):
    """The bike is already booked for an overlapping slot."""


class AlreadyDone(Exception):
    """Idempotent no-op: the operation already happened.

    Carries the original result so the caller can answer 200 with it.
    """

    def __init__(self, message: str, *, result: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.result = result or {}


class ExternalGatewayError(Exception):
    """Payment gateway call failed or was rejected.

    ``ambiguous`` is set when the outcome is unknown (network error, gateway
    5xx): the call may have taken effect, so the claim row must be kept and
    retried with the same idempotency key rather than replaced by a credit.
    """

    def __init__(self, message: str, *, ambiguous: bool = False) -> None:
        super().__init__(message)
        self.ambiguous = ambiguous


class InsufficientCreditError(Exception):
    """Available credits do not cover the requested amount."""


class UnclassifiableBookingError(Exception):
    """Booking flags match zero or several settlement scenarios."""

    def __init__(self, booking_id: str, matches: list[str]) -> None:
        super().__init__(
            f"Booking {booking_id} matched {len(matches)} settlement scenarios: {matches}"
        )
        self.booking_id = booking_id
        self.matches = matches


class LedgerIntegrityError(Exception):
    """A ledger write failed after money may already have moved."""


class SettlementIncompleteError(LedgerIntegrityError):
    """Settlement stopped part-way; names the steps that did complete."""

    def __init__(
        self,
        booking_id: str,
        *,
        completed_steps: list[str],
        failed_step: str,
        cause: str,
    ) -> None:
        super().__init__(
            f"Settlement of booking {booking_id} stopped at {failed_step}: {cause}"
        )
        self.booking_id = booking_id
        self.completed_steps = completed_steps
        self.failed_step = failed_step
        self.cause = cause

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": "settlement_incomplete",
            "booking_id": self.booking_id,
            "completed_steps": list(self.completed_steps),
            "failed_step": self.failed_step,
            "cause": self.cause,
        }
