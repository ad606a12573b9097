"""PostgreSQL-backed LedgerStore.

Each method runs in its own short transaction (``txn()``); guards live in
the SQL of the repositories, so two processes racing on the same booking
see exactly one winner.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from psycopg2 import errors as pg_errors

from borrowmybike.domain.credits import plan_consumption, planned_total
from borrowmybike.domain.errors import (
    InsufficientCreditError,
    LedgerIntegrityError,
    SlotUnavailableError,
)
from borrowmybike.domain.ledger import CreditConsumption
from borrowmybike.domain.models import Booking, Credit, Payment, Role
from borrowmybike.domain.money import CURRENCY
from borrowmybike.domain.windows import ACCEPTANCE_CUTOFF_BEFORE_START, ACCEPTANCE_DURATION
from borrowmybike.infra.db import for_update, txn
from borrowmybike.infra.repositories import (
    bookings_repository,
    credits_repository,
    events_repository,
    payments_repository,
)
from borrowmybike.observability.correlation import get_correlation_id
from borrowmybike.observability.logging import get_logger
from borrowmybike.observability.redaction import safe_log_context

logger = get_logger(__name__)

_CONSUME_ATTEMPTS = 3


class _CreditTaken(Exception):
    """A planned credit was used by someone else between read and update."""


def _booking(row: dict[str, Any] | None) -> Booking | None:
    return Booking.from_row(row) if row is not None else None


class PostgresLedgerStore:
    # ── Bookings ──────────────────────────────────────────

    def get_booking(self, booking_id: str) -> Booking | None:
        try:
            with txn() as cur:
                return _booking(bookings_repository.get_booking(cur, booking_id))
        except pg_errors.InvalidTextRepresentation:
            # Not a UUID, so no such booking
            return None

    def create_pending_booking(
        self,
        *,
        bike_id: str,
        borrower_id: str,
        owner_id: str,
        scheduled_start: datetime,
        duration_minutes: int,
        now: datetime,
    ) -> Booking:
        try:
            with txn() as cur:
                row = bookings_repository.insert_pending_booking(
                    cur,
                    bike_id=bike_id,
                    borrower_id=borrower_id,
                    owner_id=owner_id,
                    scheduled_start=scheduled_start,
                    duration_minutes=duration_minutes,
                    now=now,
                )
        except pg_errors.ExclusionViolation:
            raise SlotUnavailableError(f"Bike {bike_id} is already booked for that time")
        return Booking.from_row(row)

    def mark_paid(self, booking_id: str, role: Role) -> bool:
        with txn() as cur:
            if role is Role.BORROWER:
                return bookings_repository.mark_borrower_paid(cur, booking_id)
            return bookings_repository.mark_owner_deposit_paid(cur, booking_id)

    def mark_checked_in(self, booking_id: str, role: Role, at: datetime) -> bool:
        with txn() as cur:
            return bookings_repository.mark_checked_in(cur, booking_id, role.value, at)

    def record_completion_confirmation(
        self, booking_id: str, role: Role, deposit_choice: str | None
    ) -> Booking | None:
        with txn() as cur:
            return _booking(
                bookings_repository.record_completion_confirmation(
                    cur, booking_id, role.value, deposit_choice
                )
            )

    def mark_completed(self, booking_id: str) -> bool:
        with txn() as cur:
            return bookings_repository.mark_completed(cur, booking_id)

    def record_force_majeure_agreement(
        self, booking_id: str, role: Role, at: datetime
    ) -> Booking | None:
        with txn() as cur:
            return _booking(
                bookings_repository.record_force_majeure_agreement(cur, booking_id, role.value, at)
            )

    def set_owner_deposit_choice(self, booking_id: str, choice: str) -> bool:
        with txn() as cur:
            return bookings_repository.set_owner_deposit_choice(cur, booking_id, choice)

    def update_review_flags(self, booking_id: str, **flags: Any) -> Booking | None:
        with txn() as cur:
            return _booking(bookings_repository.update_review_flags(cur, booking_id, flags))

    def claim_cancellation(
        self, booking_id: str, cancelled_by: str, at: datetime, *, owner_deposit_paid: bool
    ) -> bool:
        with txn() as cur:
            return bookings_repository.claim_cancellation(
                cur, booking_id, cancelled_by, at, owner_deposit_paid=owner_deposit_paid
            )

    def claim_settlement(self, booking_id: str, outcome: str, at: datetime) -> bool:
        with txn() as cur:
            return bookings_repository.claim_settlement(cur, booking_id, outcome, at)

    def list_expirable_bookings(self, now: datetime, limit: int) -> list[Booking]:
        with txn() as cur:
            rows = bookings_repository.list_expirable_bookings(
                cur,
                now=now,
                acceptance_duration=ACCEPTANCE_DURATION,
                cutoff_before_start=ACCEPTANCE_CUTOFF_BEFORE_START,
                limit=limit,
            )
        return [Booking.from_row(row) for row in rows]

    # ── Payments ──────────────────────────────────────────

    def get_payment(self, payment_id: str) -> Payment | None:
        try:
            with txn() as cur:
                row = payments_repository.get_payment(cur, payment_id)
        except pg_errors.InvalidTextRepresentation:
            return None
        return Payment.from_row(row) if row is not None else None

    def find_payment(self, booking_id: str, payment_type: str) -> Payment | None:
        with txn() as cur:
            row = payments_repository.find_payment(cur, booking_id, payment_type)
        return Payment.from_row(row) if row is not None else None

    def list_payments(self, booking_id: str) -> list[Payment]:
        with txn() as cur:
            rows = payments_repository.list_payments(cur, booking_id)
        return [Payment.from_row(row) for row in rows]

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
    ) -> tuple[Payment, bool]:
        with txn() as cur:
            row, created = payments_repository.insert_payment_if_absent(
                cur,
                booking_id=booking_id,
                user_id=user_id,
                payment_type=payment_type,
                method=method,
                status=status,
                amount_cents=amount_cents,
                currency=CURRENCY,
                gateway_reference=gateway_reference,
            )
        return Payment.from_row(row), created

    def complete_payment(
        self,
        payment_id: str,
        *,
        status: str,
        amount_cents: int | None = None,
        refund_reference: str | None = None,
    ) -> bool:
        with txn() as cur:
            return payments_repository.complete_payment(
                cur,
                payment_id=payment_id,
                status=status,
                amount_cents=amount_cents,
                refund_reference=refund_reference,
            )

    def discard_payment(self, payment_id: str) -> bool:
        with txn() as cur:
            return payments_repository.delete_initiated_payment(cur, payment_id)

    def mark_payout_paid(
        self, payment_id: str, *, method: str, reference: str | None, at: datetime
    ) -> bool:
        with txn() as cur:
            return payments_repository.mark_payout_paid(
                cur, payment_id=payment_id, method=method, reference=reference, at=at
            )

    # ── Credits ───────────────────────────────────────────

    def list_usable_credits(
        self, user_id: str, now: datetime, credit_types: tuple[str, ...] | None = None
    ) -> list[Credit]:
        with txn() as cur:
            rows = credits_repository.list_usable_credits(
                cur, user_id=user_id, now=now, credit_types=credit_types
            )
        return [Credit.from_row(row) for row in rows]

    def list_booking_credits(self, booking_id: str) -> list[Credit]:
        with txn() as cur:
            rows = credits_repository.list_booking_credits(cur, booking_id)
        return [Credit.from_row(row) for row in rows]

    def find_issued_credit(
        self, origin_booking_id: str, user_id: str, credit_type: str
    ) -> Credit | None:
        with txn() as cur:
            row = credits_repository.find_issued_credit(
                cur,
                origin_booking_id=origin_booking_id,
                user_id=user_id,
                credit_type=credit_type,
            )
        return Credit.from_row(row) if row is not None else None

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
    ) -> CreditConsumption:
        for attempt in range(1, _CONSUME_ATTEMPTS + 1):
            try:
                with txn() as cur:
                    return self._consume_once(
                        cur,
                        claim_payment_id=claim_payment_id,
                        user_id=user_id,
                        booking_id=booking_id,
                        amount_cents=amount_cents,
                        now=now,
                        credit_types=credit_types,
                        allow_partial=allow_partial,
                    )
            except _CreditTaken:
                logger.warning(
                    "credit taken concurrently, retrying",
                    extra={
                        "extra_fields": safe_log_context(booking_id=booking_id, attempt=attempt)
                    },
                )
        raise LedgerIntegrityError(
            f"could not consume credits for booking {booking_id} after {_CONSUME_ATTEMPTS} attempts"
        )

    def _consume_once(
        self,
        cur: Any,
        *,
        claim_payment_id: str,
        user_id: str,
        booking_id: str,
        amount_cents: int,
        now: datetime,
        credit_types: tuple[str, ...] | None,
        allow_partial: bool,
    ) -> CreditConsumption:
        # Serializes concurrent attempts for the same credit payment
        if not for_update(cur, "SELECT id FROM payments WHERE id = %s", (claim_payment_id,)):
            raise LedgerIntegrityError(f"credit payment claim {claim_payment_id} not found")

        earlier = credits_repository.list_consumed_by(cur, claim_payment_id)
        if earlier:
            return _earlier_consumption(cur, earlier)

        rows = credits_repository.list_usable_credits(
            cur, user_id=user_id, now=now, credit_types=credit_types, lock=True
        )
        plan = plan_consumption(
            [Credit.from_row(row) for row in rows],
            amount_cents,
            now=now,
            credit_types=credit_types,
        )
        applied = planned_total(plan)
        if applied < amount_cents and not allow_partial:
            raise InsufficientCreditError(
                f"credits cover {applied} of {amount_cents} cents"
            )

        used_ids: list[str] = []
        remainder_id: str | None = None
        for credit, take in plan:
            if not credits_repository.mark_used(
                cur,
                credit_id=credit.id,
                booking_id=booking_id,
                payment_id=claim_payment_id,
                at=now,
            ):
                raise _CreditTaken(credit.id)
            used_ids.append(credit.id)
            if take < credit.amount_cents:
                remainder, _ = credits_repository.insert_credit_if_absent(
                    cur,
                    user_id=credit.user_id,
                    credit_type=credit.credit_type,
                    amount_cents=credit.amount_cents - take,
                    origin_booking_id=credit.origin_booking_id,
                    reason=f"remainder of credit {credit.id}",
                    expires_at=credit.expires_at,
                    split_from_credit_id=credit.id,
                )
                remainder_id = str(remainder["id"])

        return CreditConsumption(
            applied_cents=applied,
            used_credit_ids=tuple(used_ids),
            remainder_credit_id=remainder_id,
        )

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
    ) -> tuple[Credit, bool]:
        with txn() as cur:
            row, created = credits_repository.insert_credit_if_absent(
                cur,
                user_id=user_id,
                credit_type=credit_type,
                amount_cents=amount_cents,
                origin_booking_id=origin_booking_id,
                reason=reason,
                expires_at=expires_at,
                split_from_credit_id=split_from_credit_id,
            )
        return Credit.from_row(row), created

    # ── Audit & webhook receipts ──────────────────────────

    def append_audit(
        self,
        booking_id: str,
        *,
        actor_role: str,
        actor_user_id: str | None,
        action: str,
        note: str | None = None,
    ) -> None:
        with txn() as cur:
            events_repository.insert_audit(
                cur,
                booking_id=booking_id,
                actor_role=actor_role,
                actor_user_id=actor_user_id,
                action=action,
                note=note,
                correlation_id=get_correlation_id() or None,
            )

    def is_event_processed(self, source: str, external_id: str) -> bool:
        with txn() as cur:
            return events_repository.is_event_processed(cur, source=source, external_id=external_id)

    def record_processed_event(self, source: str, external_id: str) -> bool:
        with txn() as cur:
            return events_repository.insert_processed_event(
                cur, source=source, external_id=external_id
            )


def _earlier_consumption(cur: Any, used_rows: list[dict[str, Any]]) -> CreditConsumption:
    used_ids = [str(row["id"]) for row in used_rows]
    remainders = credits_repository.list_remainders(cur, used_ids)
    applied = sum(row["amount_cents"] for row in used_rows) - sum(
        row["amount_cents"] for row in remainders
    )
    return CreditConsumption(
        applied_cents=applied,
        used_credit_ids=tuple(used_ids),
        remainder_credit_id=str(remainders[0]["id"]) if remainders else None,
    )
