"""Tests for check-in, completion, no-show claims and examiner refusal."""

from datetime import timedelta

import pytest

from borrowmybike.domain.attendance import (
    check_in,
    claim_no_show,
    confirm_complete,
    report_examiner_refusal,
    set_owner_deposit_choice,
)
from borrowmybike.domain.errors import AlreadyDone, BookingValidationError, PreconditionError
from borrowmybike.domain.models import Role

from .fakes import START


class TestCheckIn:
    def test_within_window(self, ledger):
        booking = ledger.add_paid_booking()
        now = START - timedelta(minutes=10)

        result = check_in(ledger, booking.id, role=Role.BORROWER, now=now)

        assert result["ok"] is True
        stored = ledger.bookings[booking.id]
        assert stored.borrower_checked_in
        assert stored.borrower_checked_in_at == now
        assert not stored.owner_checked_in

    def test_too_early(self, ledger):
        booking = ledger.add_paid_booking()
        with pytest.raises(PreconditionError) as exc_info:
            check_in(ledger, booking.id, role=Role.OWNER, now=START - timedelta(minutes=16))
        assert exc_info.value.window["reason"] == "check_in_not_open"

    def test_too_late(self, ledger):
        booking = ledger.add_paid_booking()
        with pytest.raises(PreconditionError):
            check_in(ledger, booking.id, role=Role.OWNER, now=START + timedelta(minutes=61))

    def test_repeat_is_already_done(self, ledger):
        booking = ledger.add_paid_booking()
        first_at = START - timedelta(minutes=5)
        check_in(ledger, booking.id, role=Role.OWNER, now=first_at)

        with pytest.raises(AlreadyDone):
            check_in(ledger, booking.id, role=Role.OWNER, now=START)
        assert ledger.bookings[booking.id].owner_checked_in_at == first_at

    def test_unconfirmed_booking(self, ledger):
        booking = ledger.add_booking(borrower_paid=True)
        with pytest.raises(PreconditionError):
            check_in(ledger, booking.id, role=Role.BORROWER, now=START)

    def test_called_off_booking(self, ledger):
        booking = ledger.add_paid_booking(
            force_majeure_borrower_agreed_at=START - timedelta(hours=2),
            force_majeure_owner_agreed_at=START - timedelta(hours=1),
        )
        with pytest.raises(PreconditionError):
            check_in(ledger, booking.id, role=Role.BORROWER, now=START)


class TestConfirmComplete:
    def _checked_in(self, ledger, **overrides):
        return ledger.add_paid_booking(
            borrower_checked_in=True,
            borrower_checked_in_at=START,
            owner_checked_in=True,
            owner_checked_in_at=START,
            **overrides,
        )

    def test_waits_for_the_other_party(self, ledger, gateway):
        booking = self._checked_in(ledger)

        result = confirm_complete(ledger, gateway, booking.id, role=Role.BORROWER, now=START + timedelta(minutes=45))

        assert result == {"completed": False, "waiting_for": "owner"}
        assert not ledger.bookings[booking.id].completed

    def test_second_confirmation_settles_happy_path(self, ledger, gateway):
        booking = self._checked_in(ledger)
        now = START + timedelta(minutes=45)
        confirm_complete(ledger, gateway, booking.id, role=Role.BORROWER, now=now)

        result = confirm_complete(
            ledger, gateway, booking.id, role=Role.OWNER, now=now, deposit_choice="refund"
        )

        assert result["completed"] is True
        assert result["settlement"]["scenario"] == "happy_path"
        assert result["settlement"]["amounts"]["refunded"] == 15000
        stored = ledger.bookings[booking.id]
        assert stored.completed and stored.settled

    def test_pending_review_blocks_confirmation(self, ledger, gateway):
        booking = self._checked_in(ledger, needs_review=True, review_reason="examiner_refusal")

        with pytest.raises(PreconditionError):
            confirm_complete(ledger, gateway, booking.id, role=Role.OWNER, now=START + timedelta(minutes=45))

        stored = ledger.bookings[booking.id]
        assert not stored.owner_confirmed_complete
        assert not stored.completed and not stored.settled

    def test_before_twenty_minutes(self, ledger, gateway):
        booking = self._checked_in(ledger)
        with pytest.raises(PreconditionError):
            confirm_complete(ledger, gateway, booking.id, role=Role.OWNER, now=START + timedelta(minutes=19))

    def test_requires_both_check_ins(self, ledger, gateway):
        booking = ledger.add_paid_booking(owner_checked_in=True, owner_checked_in_at=START)
        with pytest.raises(PreconditionError):
            confirm_complete(ledger, gateway, booking.id, role=Role.OWNER, now=START + timedelta(hours=1))

    def test_borrower_cannot_pick_deposit_choice(self, ledger, gateway):
        booking = self._checked_in(ledger)
        with pytest.raises(BookingValidationError):
            confirm_complete(
                ledger, gateway, booking.id, role=Role.BORROWER,
                now=START + timedelta(hours=1), deposit_choice="refund",
            )

    def test_after_settlement_returns_outcome(self, ledger, gateway):
        booking = self._checked_in(ledger)
        now = START + timedelta(minutes=45)
        confirm_complete(ledger, gateway, booking.id, role=Role.BORROWER, now=now)
        confirm_complete(ledger, gateway, booking.id, role=Role.OWNER, now=now)

        again = confirm_complete(ledger, gateway, booking.id, role=Role.BORROWER, now=now)

        assert again["settlement"]["already_settled"] is True
        assert again["settlement"]["scenario"] == "happy_path"


class TestNoShow:
    def test_rejected_twenty_minutes_after_start(self, ledger, gateway):
        booking = ledger.add_paid_booking(borrower_checked_in=True, borrower_checked_in_at=START)
        with pytest.raises(PreconditionError) as exc_info:
            claim_no_show(
                ledger, gateway, booking.id, claimant_role=Role.BORROWER, now=START + timedelta(minutes=20)
            )
        assert exc_info.value.window["reason"] == "no_show_claim_not_open"
        assert not ledger.bookings[booking.id].settled

    def test_borrower_claims_owner_absent(self, ledger, gateway):
        booking = ledger.add_paid_booking(borrower_checked_in=True, borrower_checked_in_at=START)

        result = claim_no_show(
            ledger, gateway, booking.id, claimant_role=Role.BORROWER,
            now=START + timedelta(minutes=31), claimant_user_id=booking.borrower_id,
        )

        assert result["scenario"] == "owner_no_show"
        assert result["amounts"]["paid_out"] == 10000
        assert result["amounts"]["refunded"] == 15000
        assert ledger.bookings[booking.id].review_reason == "owner_no_show"

    def test_owner_claims_borrower_absent(self, ledger, gateway):
        booking = ledger.add_paid_booking(owner_checked_in=True, owner_checked_in_at=START)

        result = claim_no_show(
            ledger, gateway, booking.id, claimant_role=Role.OWNER, now=START + timedelta(minutes=31)
        )

        assert result["scenario"] == "borrower_no_show"
        payout = ledger.find_payment(booking.id, "owner_payout")
        assert payout.user_id == booking.owner_id

    def test_claimant_must_have_checked_in(self, ledger, gateway):
        booking = ledger.add_paid_booking()
        with pytest.raises(PreconditionError):
            claim_no_show(ledger, gateway, booking.id, claimant_role=Role.OWNER, now=START + timedelta(hours=1))

    def test_both_present_cannot_claim(self, ledger, gateway):
        booking = ledger.add_paid_booking(
            borrower_checked_in=True, borrower_checked_in_at=START,
            owner_checked_in=True, owner_checked_in_at=START,
        )
        with pytest.raises(PreconditionError):
            claim_no_show(ledger, gateway, booking.id, claimant_role=Role.OWNER, now=START + timedelta(hours=1))

    def test_repeat_claim_reports_settlement(self, ledger, gateway):
        booking = ledger.add_paid_booking(owner_checked_in=True, owner_checked_in_at=START)
        now = START + timedelta(minutes=40)
        claim_no_show(ledger, gateway, booking.id, claimant_role=Role.OWNER, now=now)

        again = claim_no_show(ledger, gateway, booking.id, claimant_role=Role.OWNER, now=now)

        assert again["already_settled"] is True
        assert again["scenario"] == "borrower_no_show"


class TestExaminerRefusal:
    def _present(self, ledger):
        return ledger.add_paid_booking(
            borrower_checked_in=True, borrower_checked_in_at=START,
            owner_checked_in=True, owner_checked_in_at=START,
        )

    def test_motorcycle_issue_flags_bike_invalid(self, ledger):
        booking = self._present(ledger)

        result = report_examiner_refusal(
            ledger, booking.id, role=Role.BORROWER, reason="motorcycle_issue",
            note="brake light out", now=START + timedelta(minutes=5),
        )

        assert result == {"needs_review": True, "reason": "motorcycle_issue", "bike_invalid": True}
        stored = ledger.bookings[booking.id]
        assert stored.needs_review
        assert stored.bike_invalid
        assert stored.review_reason == "examiner_refusal"
        assert stored.review_note == "motorcycle_issue: brake light out"

    def test_other_reason_only_flags_review(self, ledger):
        booking = self._present(ledger)

        report_examiner_refusal(ledger, booking.id, role=Role.OWNER, reason="borrower_issue", now=START)

        stored = ledger.bookings[booking.id]
        assert stored.needs_review
        assert not stored.bike_invalid

    def test_unknown_reason(self, ledger):
        booking = self._present(ledger)
        with pytest.raises(BookingValidationError):
            report_examiner_refusal(ledger, booking.id, role=Role.OWNER, reason="weather", now=START)

    def test_after_window(self, ledger):
        booking = self._present(ledger)
        with pytest.raises(PreconditionError):
            report_examiner_refusal(
                ledger, booking.id, role=Role.OWNER, reason="other", now=START + timedelta(minutes=11)
            )

    def test_second_report_is_already_done(self, ledger):
        booking = self._present(ledger)
        report_examiner_refusal(ledger, booking.id, role=Role.OWNER, reason="other", now=START)
        with pytest.raises(AlreadyDone):
            report_examiner_refusal(ledger, booking.id, role=Role.BORROWER, reason="other", now=START)


class TestDepositChoice:
    def test_set_before_settlement(self, ledger):
        booking = ledger.add_paid_booking()

        assert set_owner_deposit_choice(ledger, booking.id, choice="refund") == {
            "owner_deposit_choice": "refund"
        }
        assert ledger.bookings[booking.id].owner_deposit_choice == "refund"

    def test_locked_after_settlement(self, ledger):
        booking = ledger.add_paid_booking(settled=True, settlement_outcome="happy_path")
        with pytest.raises(PreconditionError):
            set_owner_deposit_choice(ledger, booking.id, choice="refund")

    def test_invalid_choice(self, ledger):
        booking = ledger.add_paid_booking()
        with pytest.raises(BookingValidationError):
            set_owner_deposit_choice(ledger, booking.id, choice="donate")
