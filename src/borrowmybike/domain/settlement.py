"""Settlement executor.

Turns a classified booking into its final money movement, then flips
``settled`` with a single guarded write. Each money leg is idempotent on
its own (unique per booking and type), so a settlement that stops part-way
can simply be run again; until it is, the failure names the legs that did
complete so an operator can see exactly where money stands.

Amounts per scenario (fee 150 + deposit 150, all must add up to 300):

    happy_path        owner payout 100, platform 50, deposit back 150
    owner_fault       fee back 150, platform 50 from deposit, deposit back 100
    borrower_fault    owner payout 100, platform 50, deposit back 150
    borrower_no_show  owner payout 100, platform 50, deposit back 150
    owner_no_show     borrower compensation 100, platform 50, fee back 150
    force_majeure     fee and deposit back as credit, nothing else
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from borrowmybike.domain.audit import SYSTEM_ACTOR, record_audit
from borrowmybike.domain.claims import record_ledger_entry
from borrowmybike.domain.classifier import (
    BookingState,
    BorrowerFault,
    BorrowerNoShow,
    ForceMajeure,
    HappyPath,
    OwnerFault,
    OwnerNoShow,
    STATE_TYPES,
    classify,
)
from borrowmybike.domain.errors import (
    BookingNotFoundError,
    PreconditionError,
    SettlementIncompleteError,
)
from borrowmybike.domain.funds import ledger_summary, return_funds
from borrowmybike.domain.ledger import Amounts, LedgerStore, PaymentGateway
from borrowmybike.domain.models import (
    Booking,
    CreditType,
    DepositChoice,
    PaymentStatus,
    PaymentType,
    Role,
)
from borrowmybike.domain.money import (
    BOOKING_FEE_CENTS,
    COMPENSATION_CENTS,
    OWNER_DEPOSIT_CENTS,
    PLATFORM_INCOME_CENTS,
)
from borrowmybike.infra.time import utc_now
from borrowmybike.observability.logging import get_logger
from borrowmybike.observability.redaction import safe_log_context

logger = get_logger(__name__)


@dataclass(frozen=True)
class SettlementResult:
    booking_id: str
    scenario: str
    amounts: Amounts
    already_settled: bool = False
    steps: tuple[str, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        return {
            "booking_id": self.booking_id,
            "scenario": self.scenario,
            "amounts": self.amounts.to_payload(),
            "already_settled": self.already_settled,
            "steps": list(self.steps),
        }


class StepRunner:
    """Runs money legs in order and remembers which ones finished."""

    def __init__(self, booking_id: str) -> None:
        self.booking_id = booking_id
        self.completed: list[str] = []

    def run(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            result = fn(*args, **kwargs)
        except Exception as exc:
            raise SettlementIncompleteError(
                self.booking_id,
                completed_steps=list(self.completed),
                failed_step=name,
                cause=str(exc),
            ) from exc
        self.completed.append(name)
        return result


class SettlementService:
    """Settles bookings against an injected ledger store and payment gateway."""

    def __init__(
        self,
        ledger: LedgerStore,
        gateway: PaymentGateway,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.ledger = ledger
        self.gateway = gateway
        self.clock = clock

    def settle(
        self,
        booking_id: str,
        *,
        actor_role: str = SYSTEM_ACTOR,
        actor_user_id: str | None = None,
    ) -> SettlementResult:
        """Settle a booking, or report how it was already settled.

        Raises:
            BookingNotFoundError: Unknown booking.
            PreconditionError: Cancelled, not fully paid, awaiting review, or
                nothing has happened yet that settles it.
            UnclassifiableBookingError: The flags match no single scenario.
            SettlementIncompleteError: A leg or the final write failed.
        """
        booking = self.ledger.get_booking(booking_id)
        if booking is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")

        if booking.settled:
            return self._already_settled(booking)
        if booking.cancelled:
            raise PreconditionError("cancelled bookings are not settled")
        if not booking.fully_paid:
            raise PreconditionError("both payments must be confirmed before settlement")
        if booking.needs_review:
            raise PreconditionError("booking is awaiting admin review")

        state = classify(booking)
        scenario = state.scenario.value
        steps = StepRunner(booking.id)
        now = self.clock()

        logger.info(
            "settlement started",
            extra={"extra_fields": safe_log_context(booking_id=booking.id, scenario=scenario)},
        )

        try:
            amounts = _HANDLERS[type(state)](self, state, steps, now)
            claimed = steps.run("mark_settled", self.ledger.claim_settlement, booking.id, scenario, now)
        except SettlementIncompleteError as exc:
            logger.error(
                "settlement incomplete",
                extra={
                    "extra_fields": safe_log_context(
                        booking_id=booking.id,
                        scenario=scenario,
                        completed_steps=",".join(exc.completed_steps),
                        failed_step=exc.failed_step,
                        cause=exc.cause,
                    )
                },
            )
            raise

        if not claimed:
            # A concurrent settle won the guarded write; report its outcome
            latest = self.ledger.get_booking(booking.id) or booking
            return self._already_settled(latest)

        record_audit(
            self.ledger,
            booking.id,
            action=f"settled:{scenario}",
            actor_role=actor_role,
            actor_user_id=actor_user_id,
            note=_describe(amounts),
        )
        logger.info(
            "settlement completed",
            extra={
                "extra_fields": safe_log_context(
                    booking_id=booking.id,
                    scenario=scenario,
                    refunded=amounts.refunded,
                    credited=amounts.credited,
                    paid_out=amounts.paid_out,
                    platform_income=amounts.platform_income,
                )
            },
        )
        return SettlementResult(
            booking_id=booking.id,
            scenario=scenario,
            amounts=amounts,
            steps=tuple(steps.completed),
        )

    def _already_settled(self, booking: Booking) -> SettlementResult:
        return SettlementResult(
            booking_id=booking.id,
            scenario=booking.settlement_outcome or "",
            amounts=ledger_summary(self.ledger, booking.id),
            already_settled=True,
        )

    # ── Money legs ─────────────────────────────────────────

    def _platform_income(self, booking: Booking, steps: StepRunner) -> Amounts:
        steps.run(
            "platform_income",
            record_ledger_entry,
            self.ledger,
            booking=booking,
            payment_type=PaymentType.PLATFORM_INCOME,
            user_id=None,
            amount_cents=PLATFORM_INCOME_CENTS,
            status=PaymentStatus.SUCCEEDED,
        )
        return Amounts(platform_income=PLATFORM_INCOME_CENTS)

    def _payout(self, booking: Booking, steps: StepRunner, payee: Role) -> Amounts:
        payment_type = (
            PaymentType.OWNER_PAYOUT if payee is Role.OWNER else PaymentType.BORROWER_COMPENSATION
        )
        steps.run(
            payment_type.value,
            record_ledger_entry,
            self.ledger,
            booking=booking,
            payment_type=payment_type,
            user_id=booking.user_id_for(payee),
            amount_cents=COMPENSATION_CENTS,
            status=PaymentStatus.PAYOUT_DUE,
        )
        return Amounts(paid_out=COMPENSATION_CENTS)

    def _return_fee(
        self, booking: Booking, steps: StepRunner, now: datetime, *, allow_refund: bool = True
    ) -> Amounts:
        return steps.run(
            "borrower_fee_returned",
            return_funds,
            self.ledger,
            self.gateway,
            booking=booking,
            role=Role.BORROWER,
            amount_cents=BOOKING_FEE_CENTS,
            credit_type=CreditType.REBOOK_CREDIT.value,
            reason="booking fee returned",
            now=now,
            allow_refund=allow_refund,
        )

    def _return_deposit(
        self,
        booking: Booking,
        steps: StepRunner,
        now: datetime,
        amount_cents: int = OWNER_DEPOSIT_CENTS,
        *,
        credit_only: bool = False,
    ) -> Amounts:
        # "keep" holds the deposit as credit toward the next listing
        wants_refund = booking.owner_deposit_choice == DepositChoice.REFUND.value
        return steps.run(
            "owner_deposit_returned",
            return_funds,
            self.ledger,
            self.gateway,
            booking=booking,
            role=Role.OWNER,
            amount_cents=amount_cents,
            credit_type=CreditType.OWNER_DEPOSIT_HELD.value,
            reason="owner deposit returned",
            now=now,
            allow_refund=wants_refund and not credit_only,
        )

    # ── Scenario handlers ──────────────────────────────────

    def _settle_happy_path(self, state: HappyPath, steps: StepRunner, now: datetime) -> Amounts:
        b = state.booking
        return (
            self._payout(b, steps, Role.OWNER)
            + self._platform_income(b, steps)
            + self._return_deposit(b, steps, now)
        )

    def _settle_owner_fault(self, state: OwnerFault, steps: StepRunner, now: datetime) -> Amounts:
        b = state.booking
        return (
            self._return_fee(b, steps, now)
            + self._platform_income(b, steps)
            + self._return_deposit(b, steps, now, OWNER_DEPOSIT_CENTS - PLATFORM_INCOME_CENTS)
        )

    def _settle_borrower_fault(
        self, state: BorrowerFault | BorrowerNoShow, steps: StepRunner, now: datetime
    ) -> Amounts:
        b = state.booking
        return (
            self._platform_income(b, steps)
            + self._payout(b, steps, Role.OWNER)
            + self._return_deposit(b, steps, now)
        )

    def _settle_owner_no_show(self, state: OwnerNoShow, steps: StepRunner, now: datetime) -> Amounts:
        b = state.booking
        return (
            self._platform_income(b, steps)
            + self._payout(b, steps, Role.BORROWER)
            + self._return_fee(b, steps, now)
        )

    def _settle_force_majeure(self, state: ForceMajeure, steps: StepRunner, now: datetime) -> Amounts:
        b = state.booking
        return self._return_fee(b, steps, now, allow_refund=False) + self._return_deposit(
            b, steps, now, credit_only=True
        )


_HANDLERS: dict[type, Callable[[SettlementService, BookingState, StepRunner, datetime], Amounts]] = {
    HappyPath: SettlementService._settle_happy_path,
    OwnerFault: SettlementService._settle_owner_fault,
    BorrowerFault: SettlementService._settle_borrower_fault,
    BorrowerNoShow: SettlementService._settle_borrower_fault,
    OwnerNoShow: SettlementService._settle_owner_no_show,
    ForceMajeure: SettlementService._settle_force_majeure,
}

if set(_HANDLERS) != set(STATE_TYPES):
    raise RuntimeError("every booking state needs a settlement handler")


def _describe(amounts: Amounts) -> str:
    return (
        f"refunded={amounts.refunded} credited={amounts.credited} "
        f"paid_out={amounts.paid_out} platform_income={amounts.platform_income}"
    )
