"""Tests for owner acceptance and the expiry sweep."""

from datetime import timedelta

import pytest

from borrowmybike.domain.acceptance import accept, expire_unaccepted
from borrowmybike.domain.errors import AlreadyDone, PreconditionError
from borrowmybike.domain.models import Role
from borrowmybike.domain.money import BOOKING_FEE_CENTS

from .fakes import START

CREATED = START - timedelta(days=10)


def _requested(ledger, **overrides):
    overrides.setdefault("created_at", CREATED)
    booking = ledger.add_booking(borrower_paid=True, **overrides)
    ledger.add_payment(booking, "borrower_booking_fee", BOOKING_FEE_CENTS, reference="pi_fee")
    return booking


class TestAccept:
    def test_owner_credit_accepts_immediately(self, ledger, gateway):
        booking = _requested(ledger)
        ledger.add_credit(booking.owner_id, 15000, credit_type="owner_deposit_held")

        result = accept(ledger, gateway, booking.id, now=CREATED + timedelta(hours=1))

        assert result == {"status": "accepted", "checkout_url": None, "credit_applied": 15000}
        assert ledger.bookings[booking.id].owner_deposit_paid
        assert gateway.checkouts == []

    def test_without_credit_opens_checkout(self, ledger, gateway):
        booking = _requested(ledger)

        result = accept(ledger, gateway, booking.id, now=CREATED + timedelta(hours=1))

        assert result["status"] == "checkout_required"
        assert result["checkout_url"].startswith("https://")
        checkout = gateway.checkouts[0]
        assert checkout["amount_cents"] == 15000
        assert checkout["metadata"] == {"booking_id": booking.id, "payment_type": "owner_deposit"}
        assert not ledger.bookings[booking.id].owner_deposit_paid

    def test_use_credit_false_skips_credit(self, ledger, gateway):
        booking = _requested(ledger)
        ledger.add_credit(booking.owner_id, 15000)

        result = accept(ledger, gateway, booking.id, now=CREATED + timedelta(hours=1), use_credit=False)

        assert result["status"] == "checkout_required"

    def test_partial_credit_goes_to_checkout_for_full_amount(self, ledger, gateway):
        booking = _requested(ledger)
        ledger.add_credit(booking.owner_id, 5000)

        accept(ledger, gateway, booking.id, now=CREATED + timedelta(hours=1))

        assert gateway.checkouts[0]["amount_cents"] == 15000

    def test_after_deadline(self, ledger, gateway):
        booking = _requested(ledger)
        with pytest.raises(PreconditionError) as exc_info:
            accept(ledger, gateway, booking.id, now=CREATED + timedelta(hours=8, seconds=1))
        assert exc_info.value.window["reason"] == "acceptance_window_closed"

    def test_before_borrower_paid(self, ledger, gateway):
        booking = ledger.add_booking(created_at=CREATED)
        with pytest.raises(PreconditionError):
            accept(ledger, gateway, booking.id, now=CREATED + timedelta(hours=1))

    def test_already_accepted(self, ledger, gateway):
        booking = ledger.add_paid_booking()
        with pytest.raises(AlreadyDone) as exc_info:
            accept(ledger, gateway, booking.id, now=CREATED + timedelta(hours=1))
        assert exc_info.value.result == {"status": "already_accepted"}


class TestExpireUnaccepted:
    def test_expired_requests_become_rebook_credit(self, ledger, gateway):
        booking = _requested(ledger)

        result = expire_unaccepted(ledger, gateway, now=CREATED + timedelta(hours=9))

        assert result == {"expired": [booking.id], "failed": []}
        stored = ledger.bookings[booking.id]
        assert stored.cancelled
        assert stored.cancelled_by == "system_expired"
        credit = ledger.find_issued_credit(booking.id, booking.borrower_id, "rebook_credit")
        assert credit.amount_cents == BOOKING_FEE_CENTS

    def test_unpaid_requests_release_the_slot(self, ledger, gateway):
        booking = ledger.add_booking(created_at=CREATED)

        result = expire_unaccepted(ledger, gateway, now=CREATED + timedelta(hours=9))

        assert result["expired"] == [booking.id]
        assert ledger.list_booking_credits(booking.id) == []

    def test_booking_accepted_mid_sweep_is_skipped(self, ledger, gateway, monkeypatch):
        booking = _requested(ledger)
        real_claim = ledger.claim_cancellation

        def accept_then_claim(*args, **kwargs):
            ledger.mark_paid(booking.id, Role.OWNER)
            return real_claim(*args, **kwargs)

        monkeypatch.setattr(ledger, "claim_cancellation", accept_then_claim)

        result = expire_unaccepted(ledger, gateway, now=CREATED + timedelta(hours=9))

        assert result == {"expired": [], "failed": []}
        assert not ledger.bookings[booking.id].cancelled
        assert ledger.list_booking_credits(booking.id) == []

    def test_open_and_accepted_bookings_untouched(self, ledger, gateway):
        pending = _requested(ledger, created_at=CREATED + timedelta(hours=5))
        accepted = ledger.add_paid_booking(created_at=CREATED)

        result = expire_unaccepted(ledger, gateway, now=CREATED + timedelta(hours=9))

        assert result == {"expired": [], "failed": []}
        assert not ledger.bookings[pending.id].cancelled
        assert not ledger.bookings[accepted.id].cancelled

    def test_one_failure_does_not_stop_the_sweep(self, ledger, gateway):
        older = _requested(ledger, created_at=CREATED - timedelta(hours=1))
        newer = _requested(ledger, bike_id="bike-2")
        ledger.fail_next("claim_cancellation", RuntimeError("lock timeout"))

        result = expire_unaccepted(ledger, gateway, now=CREATED + timedelta(hours=9))

        assert result == {"expired": [newer.id], "failed": [older.id]}
        retry = expire_unaccepted(ledger, gateway, now=CREATED + timedelta(hours=10))
        assert retry["expired"] == [older.id]

    def test_limit(self, ledger, gateway):
        for i in range(3):
            _requested(ledger, bike_id=f"bike-{i}", created_at=CREATED + timedelta(minutes=i))

        result = expire_unaccepted(ledger, gateway, now=CREATED + timedelta(hours=9), limit=2)

        assert len(result["expired"]) == 2
