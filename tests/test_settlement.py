"""Tests for SettlementService: money legs, conservation and idempotency."""

from datetime import timedelta

import pytest

from borrowmybike.domain.errors import (
    BookingNotFoundError,
    ExternalGatewayError,
    PreconditionError,
    SettlementIncompleteError,
)
from borrowmybike.domain.funds import ledger_summary
from borrowmybike.domain.money import BOOKING_FEE_CENTS, OWNER_DEPOSIT_CENTS
from borrowmybike.domain.settlement import SettlementService

from .fakes import START

NOW = START + timedelta(hours=2)
TOTAL_PAID = BOOKING_FEE_CENTS + OWNER_DEPOSIT_CENTS


@pytest.fixture
def service(ledger, gateway):
    return SettlementService(ledger, gateway, clock=lambda: NOW)


SCENARIO_FLAGS = {
    "happy_path": {"completed": True},
    "owner_fault": {"bike_invalid": True},
    "borrower_fault": {"review_reason": "borrower_fault"},
    "borrower_no_show": {"review_reason": "borrower_no_show"},
    "owner_no_show": {"review_reason": "owner_no_show"},
    "force_majeure": {
        "force_majeure_borrower_agreed_at": START - timedelta(hours=20),
        "force_majeure_owner_agreed_at": START - timedelta(hours=19),
    },
}


class TestConservation:
    @pytest.mark.parametrize("scenario", sorted(SCENARIO_FLAGS))
    def test_every_cent_is_accounted_for(self, ledger, service, scenario):
        booking = ledger.add_paid_booking(**SCENARIO_FLAGS[scenario])

        result = service.settle(booking.id)

        assert result.scenario == scenario
        assert result.amounts.total == TOTAL_PAID
        assert ledger_summary(ledger, booking.id) == result.amounts
        assert ledger.bookings[booking.id].settled
        assert ledger.bookings[booking.id].settlement_outcome == scenario


class TestScenarioAmounts:
    def test_happy_path_keeps_deposit_as_credit(self, ledger, gateway, service):
        booking = ledger.add_paid_booking(completed=True)

        amounts = service.settle(booking.id).amounts

        assert amounts.paid_out == 10000
        assert amounts.platform_income == 5000
        assert amounts.credited == 15000
        assert amounts.refunded == 0
        assert gateway.refunds == []
        payout = ledger.find_payment(booking.id, "owner_payout")
        assert payout.status == "payout_due"
        assert payout.user_id == booking.owner_id
        held = ledger.find_issued_credit(booking.id, booking.owner_id, "owner_deposit_held")
        assert held.amount_cents == 15000
        assert held.expires_at == NOW + timedelta(days=21)

    def test_happy_path_refunds_deposit_when_chosen(self, ledger, gateway, service):
        booking = ledger.add_paid_booking(completed=True, owner_deposit_choice="refund")

        amounts = service.settle(booking.id).amounts

        assert amounts.refunded == 15000
        assert amounts.credited == 0
        assert gateway.refunds[0]["payment_reference"] == "pi_owner"
        refund = ledger.find_payment(booking.id, "owner_deposit_refund")
        assert refund.status == "succeeded"
        assert refund.refund_reference == "re_test_1"

    def test_owner_fault_refunds_fee_and_keeps_commission_from_deposit(self, ledger, gateway, service):
        booking = ledger.add_paid_booking(bike_invalid=True)

        amounts = service.settle(booking.id).amounts

        assert amounts.refunded == 15000
        assert amounts.platform_income == 5000
        assert amounts.credited == 10000
        assert amounts.paid_out == 0
        assert gateway.refunds[0]["payment_reference"] == "pi_borrower"

    def test_owner_no_show_compensates_borrower(self, ledger, service):
        booking = ledger.add_paid_booking(treat_as_owner_no_show=True)

        amounts = service.settle(booking.id).amounts

        compensation = ledger.find_payment(booking.id, "borrower_compensation")
        assert compensation.user_id == booking.borrower_id
        assert compensation.amount_cents == 10000
        assert amounts.refunded == 15000
        assert amounts.platform_income == 5000

    def test_force_majeure_returns_everything_as_credit(self, ledger, gateway, service):
        booking = ledger.add_paid_booking(
            owner_deposit_choice="refund", **SCENARIO_FLAGS["force_majeure"]
        )

        amounts = service.settle(booking.id).amounts

        assert amounts.credited == TOTAL_PAID
        assert amounts.refunded == 0
        assert amounts.platform_income == 0
        assert gateway.refunds == []
        assert ledger.find_issued_credit(booking.id, booking.borrower_id, "rebook_credit")
        assert ledger.find_issued_credit(booking.id, booking.owner_id, "owner_deposit_held")

    def test_credit_funded_fee_comes_back_as_credit(self, ledger, gateway, service):
        booking = ledger.add_booking(borrower_paid=True, owner_deposit_paid=True, bike_invalid=True)
        ledger.add_payment(booking, "borrower_credit_payment", BOOKING_FEE_CENTS)
        ledger.add_payment(booking, "owner_deposit", OWNER_DEPOSIT_CENTS, reference="pi_owner")

        amounts = service.settle(booking.id).amounts

        assert gateway.refunds == []
        assert amounts.credited == 15000 + 10000
        assert amounts.total == TOTAL_PAID


class TestIdempotency:
    def test_second_settle_reports_first_outcome(self, ledger, gateway, service):
        booking = ledger.add_paid_booking(completed=True, owner_deposit_choice="refund")
        first = service.settle(booking.id)

        second = service.settle(booking.id)

        assert second.already_settled is True
        assert second.scenario == first.scenario
        assert second.amounts == first.amounts
        assert len(gateway.refunds) == 1
        assert len(ledger.payments_of(booking.id, "owner_payout")) == 1

    def test_audit_written_once(self, ledger, service):
        booking = ledger.add_paid_booking(completed=True)
        service.settle(booking.id)
        service.settle(booking.id)

        actions = [a["action"] for a in ledger.audit if a["booking_id"] == booking.id]
        assert actions == ["settled:happy_path"]

    def test_audit_failure_does_not_fail_settlement(self, ledger, service):
        booking = ledger.add_paid_booking(completed=True)
        ledger.fail_next("append_audit", RuntimeError("audit table locked"))

        result = service.settle(booking.id)

        assert result.already_settled is False
        assert ledger.bookings[booking.id].settled


class TestPreconditions:
    def test_unknown_booking(self, service):
        with pytest.raises(BookingNotFoundError):
            service.settle("missing")

    def test_unpaid_booking_never_settles(self, ledger, service):
        booking = ledger.add_booking(borrower_paid=True, completed=True)
        with pytest.raises(PreconditionError):
            service.settle(booking.id)
        assert not ledger.bookings[booking.id].settled

    def test_cancelled_booking(self, ledger, service):
        booking = ledger.add_paid_booking(cancelled=True, cancelled_by="borrower")
        with pytest.raises(PreconditionError):
            service.settle(booking.id)

    def test_under_review(self, ledger, service):
        booking = ledger.add_paid_booking(needs_review=True, review_reason="examiner_refusal")
        with pytest.raises(PreconditionError):
            service.settle(booking.id)


class TestPartialFailure:
    def test_final_write_failure_names_completed_steps(self, ledger, service):
        booking = ledger.add_paid_booking(completed=True)
        ledger.fail_next("claim_settlement", RuntimeError("connection reset"))

        with pytest.raises(SettlementIncompleteError) as exc_info:
            service.settle(booking.id)

        exc = exc_info.value
        assert exc.failed_step == "mark_settled"
        assert exc.completed_steps == ["owner_payout", "platform_income", "owner_deposit_returned"]
        assert exc.to_payload()["error"] == "settlement_incomplete"
        assert not ledger.bookings[booking.id].settled

    def test_rerun_after_failure_does_not_duplicate_legs(self, ledger, service):
        booking = ledger.add_paid_booking(completed=True)
        ledger.fail_next("claim_settlement", RuntimeError("connection reset"))
        with pytest.raises(SettlementIncompleteError):
            service.settle(booking.id)

        result = service.settle(booking.id)

        assert result.already_settled is False
        assert result.amounts.total == TOTAL_PAID
        assert len(ledger.payments_of(booking.id, "owner_payout")) == 1
        assert len(ledger.payments_of(booking.id, "platform_income")) == 1
        assert len(ledger.list_booking_credits(booking.id)) == 1

    def test_rejected_refund_falls_back_to_credit(self, ledger, gateway, service):
        booking = ledger.add_paid_booking(bike_invalid=True)
        gateway.refund_error = ExternalGatewayError("card account closed", ambiguous=False)

        amounts = service.settle(booking.id).amounts

        assert amounts.refunded == 0
        assert amounts.credited == 15000 + 10000
        assert ledger.find_payment(booking.id, "borrower_refund") is None
        credit = ledger.find_issued_credit(booking.id, booking.borrower_id, "rebook_credit")
        assert credit.amount_cents == 15000

    def test_unknown_refund_outcome_is_retried_not_credited(self, ledger, gateway, service):
        booking = ledger.add_paid_booking(bike_invalid=True)
        gateway.refund_error = ExternalGatewayError("timeout", ambiguous=True)

        with pytest.raises(SettlementIncompleteError) as exc_info:
            service.settle(booking.id)

        assert exc_info.value.failed_step == "borrower_fee_returned"
        claim = ledger.find_payment(booking.id, "borrower_refund")
        assert claim.status == "initiated"
        assert ledger.find_issued_credit(booking.id, booking.borrower_id, "rebook_credit") is None

        gateway.refund_error = None
        amounts = service.settle(booking.id).amounts

        assert amounts.refunded == 15000
        assert ledger.find_payment(booking.id, "borrower_refund").status == "succeeded"
        assert len(gateway.refunds) == 1
