"""Tests for the booking action windows."""

from datetime import datetime, timedelta, timezone

import pytest

from borrowmybike.domain.windows import (
    CancellationTier,
    acceptance_deadline,
    acceptance_window,
    cancellation_tier,
    check_in_window,
    completion_window,
    examiner_refusal_window,
    force_majeure_window,
    no_show_window,
)

START = datetime(2026, 11, 20, 15, 0, tzinfo=timezone.utc)


class TestAcceptance:
    def test_deadline_is_eight_hours_after_request(self):
        created = START - timedelta(days=3)
        assert acceptance_deadline(created, START) == created + timedelta(hours=8)

    def test_deadline_capped_before_start(self):
        created = START - timedelta(hours=2)
        assert acceptance_deadline(created, START) == START - timedelta(minutes=15)

    def test_open_until_deadline_inclusive(self):
        created = START - timedelta(days=3)
        deadline = created + timedelta(hours=8)
        assert acceptance_window(created, START, deadline).allowed
        late = acceptance_window(created, START, deadline + timedelta(seconds=1))
        assert not late.allowed
        assert late.reason == "acceptance_window_closed"
        assert late.closes_at == deadline


class TestCheckIn:
    @pytest.mark.parametrize(
        "offset,allowed",
        [
            (timedelta(minutes=-16), False),
            (timedelta(minutes=-15), True),
            (timedelta(0), True),
            (timedelta(minutes=60), True),
            (timedelta(minutes=61), False),
        ],
    )
    def test_bounds(self, offset, allowed):
        assert check_in_window(START, START + offset).allowed is allowed

    def test_payload_carries_bounds(self):
        payload = check_in_window(START, START - timedelta(hours=1)).to_payload()
        assert payload["allowed"] is False
        assert payload["reason"] == "check_in_not_open"
        assert payload["opens_at"] == (START - timedelta(minutes=15)).isoformat()
        assert payload["closes_at"] == (START + timedelta(minutes=60)).isoformat()


class TestCompletion:
    def test_requires_both_check_ins(self):
        decision = completion_window(START, True, False, START + timedelta(hours=1))
        assert not decision.allowed
        assert decision.reason == "both_parties_must_check_in"

    def test_opens_twenty_minutes_after_start(self):
        assert not completion_window(START, True, True, START + timedelta(minutes=19)).allowed
        assert completion_window(START, True, True, START + timedelta(minutes=20)).allowed


class TestNoShow:
    def test_rejected_at_twenty_minutes(self):
        decision = no_show_window(START, True, False, START + timedelta(minutes=20))
        assert not decision.allowed
        assert decision.reason == "no_show_claim_not_open"

    def test_allowed_at_thirty_one_minutes(self):
        assert no_show_window(START, True, False, START + timedelta(minutes=31)).allowed

    def test_claimant_must_be_checked_in(self):
        decision = no_show_window(START, False, False, START + timedelta(minutes=31))
        assert decision.reason == "claimant_not_checked_in"

    def test_other_party_present(self):
        decision = no_show_window(START, True, True, START + timedelta(minutes=31))
        assert decision.reason == "other_party_checked_in"


class TestForceMajeure:
    def test_rejected_more_than_a_day_out(self):
        assert not force_majeure_window(START, False, False, START - timedelta(hours=25)).allowed

    def test_allowed_within_a_day(self):
        assert force_majeure_window(START, False, False, START - timedelta(hours=23)).allowed

    def test_closed_at_start(self):
        decision = force_majeure_window(START, False, False, START)
        assert decision.reason == "force_majeure_closed"

    def test_closed_after_any_check_in(self):
        decision = force_majeure_window(START, False, True, START - timedelta(minutes=10))
        assert decision.reason == "party_already_checked_in"


class TestCancellationTier:
    def test_ten_days_out_is_early(self):
        assert cancellation_tier(START, START - timedelta(days=10)) is CancellationTier.EARLY

    def test_exactly_five_days_is_late(self):
        assert cancellation_tier(START, START - timedelta(days=5)) is CancellationTier.LATE

    def test_three_days_out_is_late(self):
        assert cancellation_tier(START, START - timedelta(days=3)) is CancellationTier.LATE


class TestExaminerRefusal:
    def test_window(self):
        assert not examiner_refusal_window(START, True, True, START - timedelta(minutes=1)).allowed
        assert examiner_refusal_window(START, True, True, START + timedelta(minutes=10)).allowed
        assert not examiner_refusal_window(START, True, True, START + timedelta(minutes=11)).allowed

    def test_requires_both_present(self):
        assert not examiner_refusal_window(START, True, False, START + timedelta(minutes=5)).allowed
