"""Collaborator interfaces for the booking engine.

Domain services receive a LedgerStore and a PaymentGateway explicitly.
Production wires PostgresLedgerStore and StripeClient; tests substitute
in-memory fakes.

Every method that flips terminal state or consumes a credit is a
compare-and-swap at the storage layer and reports whether *this* call won.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from borrowmybike.domain.models import Booking, Credit, Payment, Role


@dataclass(frozen=True)
class CreditConsumption:
    """Result of consuming credits toward one payment."""

    applied_cents: int
    used_credit_ids: tuple[str, ...] = ()
    remainder_credit_id: str | None = None


@dataclass(frozen=True)
class Amounts:
    """Money movement totals for one booking, in cents."""

    refunded: int = 0
    credited: int = 0
    paid_out: int = 0
    platform_income: int = 0

    @property
    def total(self) -> int:
        return self.refunded + self.credited + self.paid_out + self.platform_income

    def __add__(self, other: "Amounts") -> "Amounts":
        return Amounts(
            refunded=self.refunded + other.refunded,
            credited=self.credited + other.credited,
            paid_out=self.paid_out + other.paid_out,
            platform_income=self.platform_income + other.platform_income,
        )

    def to_payload(self) -> dict[str, int]:
        return {
            "refunded": self.refunded,
            "credited": self.credited,
            "paid_out": self.paid_out,
            "platform_income": self.platform_income,
        }


class LedgerStore(Protocol):
    # Bookings

    def get_booking(self, booking_id: str) -> Booking | None: ...

    def create_pending_booking(
        self,
        *,
        bike_id: str,
        borrower_id: str,
        owner_id: str,
        scheduled_start: datetime,
        duration_minutes: int,
        now: datetime,
    ) -> Booking: ...

    def mark_paid(self, booking_id: str, role: Role) -> bool: ...

    def mark_checked_in(self, booking_id: str, role: Role, at: datetime) -> bool: ...

    def record_completion_confirmation(
        self, booking_id: str, role: Role, deposit_choice: str | None
    ) -> Booking | None: ...

    def mark_completed(self, booking_id: str) -> bool: ...

    def record_force_majeure_agreement(
        self, booking_id: str, role: Role, at: datetime
    ) -> Booking | None: ...

    def set_owner_deposit_choice(self, booking_id: str, choice: str) -> bool: ...

    def update_review_flags(self, booking_id: str, **flags: Any) -> Booking | None: ...

    def claim_cancellation(
        self, booking_id: str, cancelled_by: str, at: datetime, *, owner_deposit_paid: bool
    ) -> bool: ...

    def claim_settlement(self, booking_id: str, outcome: str, at: datetime) -> bool: ...

    def list_expirable_bookings(self, now: datetime, limit: int) -> list[Booking]: ...

    # Payments

    def get_payment(self, payment_id: str) -> Payment | None: ...

    def find_payment(self, booking_id: str, payment_type: str) -> Payment | None: ...

    def list_payments(self, booking_id: str) -> list[Payment]: ...

    def claim_payment(
        self,
        *,
        booking_id: str,
        user_id: str | None,
        payment_type: str,
        method: str,
        status: str,
        amount_cents: int,
        gateway_reference: str | None = None,
    ) -> tuple[Payment, bool]: ...

    def complete_payment(
        self,
        payment_id: str,
        *,
        status: str,
        amount_cents: int | None = None,
        refund_reference: str | None = None,
    ) -> bool: ...

    def discard_payment(self, payment_id: str) -> bool: ...

    def mark_payout_paid(
        self, payment_id: str, *, method: str, reference: str | None, at: datetime
    ) -> bool: ...

    # Credits

    def list_usable_credits(
        self, user_id: str, now: datetime, credit_types: tuple[str, ...] | None = None
    ) -> list[Credit]: ...

    def list_booking_credits(self, booking_id: str) -> list[Credit]: ...

    def find_issued_credit(
        self, origin_booking_id: str, user_id: str, credit_type: str
    ) -> Credit | None: ...

    def consume_credits(
        self,
        *,
        claim_payment_id: str,
        user_id: str,
        booking_id: str,
        amount_cents: int,
        now: datetime,
        credit_types: tuple[str, ...] | None = None,
        allow_partial: bool = False,
    ) -> CreditConsumption: ...

    def issue_credit(
        self,
        *,
        user_id: str,
        credit_type: str,
        amount_cents: int,
        origin_booking_id: str | None,
        reason: str,
        expires_at: datetime,
        split_from_credit_id: str | None = None,
    ) -> tuple[Credit, bool]: ...

    # Audit & webhook receipts

    def append_audit(
        self,
        booking_id: str,
        *,
        actor_role: str,
        actor_user_id: str | None,
        action: str,
        note: str | None = None,
    ) -> None: ...

    def is_event_processed(self, source: str, external_id: str) -> bool: ...

    def record_processed_event(self, source: str, external_id: str) -> bool: ...


class PaymentGateway(Protocol):
    def create_checkout_session(
        self,
        *,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> dict[str, Any]: ...

    def refund(
        self,
        *,
        payment_reference: str,
        amount_cents: int,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]: ...

