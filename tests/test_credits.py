"""Tests for credit consumption, splitting and credit-funded payments."""

import threading
from datetime import timedelta

import pytest

from borrowmybike.domain.bookings import pay_with_credit
from borrowmybike.domain.credits import (
    CREDIT_PREFERENCE,
    apply_credit_payment,
    available_balance,
    plan_consumption,
)
from borrowmybike.domain.errors import (
    AlreadyDone,
    InsufficientCreditError,
    LedgerIntegrityError,
    PreconditionError,
)
from borrowmybike.domain.funds import ledger_summary
from borrowmybike.domain.models import Role

from .fakes import START

NOW = START - timedelta(days=9)


class TestPlanConsumption:
    def test_oldest_expiry_first_and_only_last_is_partial(self, ledger):
        late = ledger.add_credit("u-1", 10000, expires_at=NOW + timedelta(days=10))
        soon = ledger.add_credit("u-1", 10000, expires_at=NOW + timedelta(days=2))

        plan = plan_consumption([late, soon], 15000, now=NOW)

        assert [(c.id, take) for c, take in plan] == [(soon.id, 10000), (late.id, 5000)]

    def test_skips_expired_and_used(self, ledger):
        expired = ledger.add_credit("u-1", 10000, expires_at=NOW - timedelta(seconds=1))
        used = ledger.add_credit("u-1", 10000, status="used")
        good = ledger.add_credit("u-1", 3000)

        plan = plan_consumption([expired, used, good], 15000, now=NOW)

        assert [c.id for c, _ in plan] == [good.id]

    def test_owner_prefers_held_deposit(self, ledger):
        rebook = ledger.add_credit("o-1", 15000, expires_at=NOW + timedelta(days=1))
        held = ledger.add_credit(
            "o-1", 15000, credit_type="owner_deposit_held", expires_at=NOW + timedelta(days=20)
        )

        plan = plan_consumption([rebook, held], 15000, now=NOW, credit_types=CREDIT_PREFERENCE[Role.OWNER])

        assert [c.id for c, _ in plan] == [held.id]

    def test_borrower_cannot_spend_owner_deposit_credit(self, ledger):
        held = ledger.add_credit("u-1", 15000, credit_type="owner_deposit_held")

        plan = plan_consumption([held], 15000, now=NOW, credit_types=CREDIT_PREFERENCE[Role.BORROWER])

        assert plan == []


class TestApplyCreditPayment:
    def test_leftover_is_reissued_as_new_credit(self, ledger):
        booking = ledger.add_booking()
        original = ledger.add_credit(booking.borrower_id, 20000)

        applied = apply_credit_payment(
            ledger, booking=booking, role=Role.BORROWER, amount_cents=15000, now=NOW
        )

        assert applied == 15000
        spent = ledger.credits[original.id]
        assert spent.status == "used"
        assert spent.used_on_booking_id == booking.id
        remainder = [c for c in ledger.credits.values() if c.split_from_credit_id == original.id]
        assert len(remainder) == 1
        assert remainder[0].amount_cents == 5000
        assert remainder[0].status == "available"
        assert remainder[0].expires_at == original.expires_at
        assert ledger.bookings[booking.id].borrower_paid
        payment = ledger.find_payment(booking.id, "borrower_credit_payment")
        assert payment.status == "succeeded"
        assert payment.amount_cents == 15000

    def test_insufficient_credit_spends_nothing(self, ledger):
        booking = ledger.add_booking()
        credit = ledger.add_credit(booking.borrower_id, 10000)

        with pytest.raises(InsufficientCreditError):
            apply_credit_payment(ledger, booking=booking, role=Role.BORROWER, amount_cents=15000, now=NOW)

        assert ledger.credits[credit.id].status == "available"
        assert ledger.find_payment(booking.id, "borrower_credit_payment") is None
        assert not ledger.bookings[booking.id].borrower_paid

    def test_partial_application_leaves_booking_unpaid(self, ledger):
        booking = ledger.add_booking()
        ledger.add_credit(booking.borrower_id, 10000)

        applied = apply_credit_payment(
            ledger, booking=booking, role=Role.BORROWER, amount_cents=15000, now=NOW, allow_partial=True
        )

        assert applied == 10000
        assert not ledger.bookings[booking.id].borrower_paid
        assert ledger.find_payment(booking.id, "borrower_credit_payment").amount_cents == 10000

    def test_no_usable_credit_with_partial_allowed(self, ledger):
        booking = ledger.add_booking()

        applied = apply_credit_payment(
            ledger, booking=booking, role=Role.BORROWER, amount_cents=15000, now=NOW, allow_partial=True
        )

        assert applied == 0
        assert ledger.find_payment(booking.id, "borrower_credit_payment") is None

    def test_second_application_is_already_done(self, ledger):
        booking = ledger.add_booking()
        ledger.add_credit(booking.borrower_id, 40000)
        apply_credit_payment(ledger, booking=booking, role=Role.BORROWER, amount_cents=15000, now=NOW)

        with pytest.raises(AlreadyDone) as exc_info:
            apply_credit_payment(ledger, booking=booking, role=Role.BORROWER, amount_cents=15000, now=NOW)

        assert exc_info.value.result["credit_applied"] == 15000
        assert available_balance(ledger, booking.borrower_id, NOW) == 25000

    def test_interrupted_attempt_returns_earlier_consumption(self, ledger):
        booking = ledger.add_booking()
        original = ledger.add_credit(booking.borrower_id, 20000)
        ledger.fail_next("complete_payment", RuntimeError("connection reset"))

        with pytest.raises(LedgerIntegrityError):
            apply_credit_payment(ledger, booking=booking, role=Role.BORROWER, amount_cents=15000, now=NOW)

        applied = apply_credit_payment(
            ledger, booking=booking, role=Role.BORROWER, amount_cents=15000, now=NOW
        )

        assert applied == 15000
        assert ledger.credits[original.id].status == "used"
        assert len([c for c in ledger.credits.values() if c.split_from_credit_id]) == 1
        assert available_balance(ledger, booking.borrower_id, NOW) == 5000

    def test_remainder_does_not_count_as_issued_by_the_booking(self, ledger):
        booking = ledger.add_booking()
        ledger.add_credit(booking.borrower_id, 20000, origin_booking_id=booking.id)
        apply_credit_payment(ledger, booking=booking, role=Role.BORROWER, amount_cents=15000, now=NOW)

        assert ledger_summary(ledger, booking.id).credited == 20000


class TestPayWithCredit:
    def test_borrower_pays_fee_from_credit(self, ledger):
        booking = ledger.add_booking()
        ledger.add_credit(booking.borrower_id, 15000)

        result = pay_with_credit(ledger, booking.id, role=Role.BORROWER, now=NOW)

        assert result == {"status": "paid", "amount": 15000}
        assert ledger.bookings[booking.id].borrower_paid

    def test_owner_accepts_with_held_deposit(self, ledger):
        booking = ledger.add_booking(borrower_paid=True, created_at=NOW - timedelta(hours=1))
        ledger.add_credit(booking.owner_id, 15000, credit_type="owner_deposit_held")

        pay_with_credit(ledger, booking.id, role=Role.OWNER, now=NOW)

        assert ledger.bookings[booking.id].owner_deposit_paid

    def test_owner_must_wait_for_borrower(self, ledger):
        booking = ledger.add_booking(created_at=NOW - timedelta(hours=1))
        ledger.add_credit(booking.owner_id, 15000)

        with pytest.raises(PreconditionError):
            pay_with_credit(ledger, booking.id, role=Role.OWNER, now=NOW)

    def test_owner_after_acceptance_deadline(self, ledger):
        booking = ledger.add_booking(borrower_paid=True, created_at=NOW - timedelta(hours=9))
        ledger.add_credit(booking.owner_id, 15000)

        with pytest.raises(PreconditionError) as exc_info:
            pay_with_credit(ledger, booking.id, role=Role.OWNER, now=NOW)
        assert exc_info.value.window["reason"] == "acceptance_window_closed"

    def test_already_paid(self, ledger):
        booking = ledger.add_booking(borrower_paid=True)
        with pytest.raises(AlreadyDone):
            pay_with_credit(ledger, booking.id, role=Role.BORROWER, now=NOW)

    def test_partial_credit_already_applied(self, ledger):
        booking = ledger.add_booking()
        ledger.add_payment(booking, "borrower_credit_payment", 5000)
        ledger.add_credit(booking.borrower_id, 15000)

        with pytest.raises(PreconditionError):
            pay_with_credit(ledger, booking.id, role=Role.BORROWER, now=NOW)

    def test_not_enough_credit(self, ledger):
        booking = ledger.add_booking()
        ledger.add_credit(booking.borrower_id, 14999)

        with pytest.raises(InsufficientCreditError):
            pay_with_credit(ledger, booking.id, role=Role.BORROWER, now=NOW)


def _pay_concurrently(ledger, bookings, amount_cents):
    """Apply borrower credit to each booking from its own thread, all released at once."""
    barrier = threading.Barrier(len(bookings))
    outcomes = {}

    def pay(booking):
        barrier.wait()
        try:
            outcomes[booking.id] = apply_credit_payment(
                ledger, booking=booking, role=Role.BORROWER, amount_cents=amount_cents, now=NOW
            )
        except Exception as exc:
            outcomes[booking.id] = exc

    threads = [threading.Thread(target=pay, args=(b,)) for b in bookings]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    return outcomes


class TestConcurrentConsumers:
    def test_one_credit_two_bookings(self, ledger):
        credit = ledger.add_credit("borrower-1", 15000)
        bookings = [ledger.add_booking(), ledger.add_booking(bike_id="bike-2")]

        outcomes = _pay_concurrently(ledger, bookings, 15000)

        winners = [bid for bid, outcome in outcomes.items() if outcome == 15000]
        losers = [bid for bid, outcome in outcomes.items() if isinstance(outcome, InsufficientCreditError)]
        assert len(winners) == 1 and len(losers) == 1
        stored = ledger.credits[credit.id]
        assert stored.status == "used"
        assert stored.used_on_booking_id == winners[0]
        assert ledger.bookings[winners[0]].borrower_paid
        assert not ledger.bookings[losers[0]].borrower_paid
        assert ledger.payments_of(losers[0], "borrower_credit_payment") == []
