"""Time-window policy for booking actions.

Every predicate is pure: it takes the relevant booking timestamps plus
``now`` and returns a WindowDecision carrying the bounds, so handlers can
enforce the rule and the UI can render "opens at / closes at" from the same
answer. Nothing here reads the clock.

One rule set only:
- acceptance: 8h after creation, capped at 15 min before start
- check-in: start - 15 min .. start + 60 min (inclusive)
- completion: from start + 20 min, both parties checked in
- no-show claim: from start + 30 min, claimant in, other party not
- force majeure: start - 24h <= now < start, nobody checked in
- cancellation: "early" when more than 5 days before start
- examiner refusal: start .. start + 10 min, both parties checked in
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

ACCEPTANCE_DURATION = timedelta(hours=8)
ACCEPTANCE_CUTOFF_BEFORE_START = timedelta(minutes=15)

CHECK_IN_OPENS_BEFORE_START = timedelta(minutes=15)
CHECK_IN_CLOSES_AFTER_START = timedelta(minutes=60)

COMPLETION_OPENS_AFTER_START = timedelta(minutes=20)

NO_SHOW_OPENS_AFTER_START = timedelta(minutes=30)

FORCE_MAJEURE_OPENS_BEFORE_START = timedelta(hours=24)

EARLY_CANCELLATION_THRESHOLD = timedelta(days=5)

EXAMINER_REFUSAL_CLOSES_AFTER_START = timedelta(minutes=10)


class CancellationTier(str, Enum):
    EARLY = "early"
    LATE = "late"


@dataclass(frozen=True)
class WindowDecision:
    """Outcome of a window check plus the bounds it was checked against."""

    allowed: bool
    reason: str
    opens_at: datetime | None = None
    closes_at: datetime | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "opens_at": self.opens_at.isoformat() if self.opens_at else None,
            "closes_at": self.closes_at.isoformat() if self.closes_at else None,
        }


def acceptance_deadline(created_at: datetime, scheduled_start: datetime) -> datetime:
    """Latest instant the owner may pay the deposit."""
    return min(
        created_at + ACCEPTANCE_DURATION,
        scheduled_start - ACCEPTANCE_CUTOFF_BEFORE_START,
    )


def acceptance_window(
    created_at: datetime, scheduled_start: datetime, now: datetime
) -> WindowDecision:
    deadline = acceptance_deadline(created_at, scheduled_start)
    if now > deadline:
        return WindowDecision(False, "acceptance_window_closed", created_at, deadline)
    return WindowDecision(True, "open", created_at, deadline)


def check_in_window(scheduled_start: datetime, now: datetime) -> WindowDecision:
    opens_at = scheduled_start - CHECK_IN_OPENS_BEFORE_START
    closes_at = scheduled_start + CHECK_IN_CLOSES_AFTER_START
    if now < opens_at:
        return WindowDecision(False, "check_in_not_open", opens_at, closes_at)
    if now > closes_at:
        return WindowDecision(False, "check_in_closed", opens_at, closes_at)
    return WindowDecision(True, "open", opens_at, closes_at)


def completion_window(
    scheduled_start: datetime,
    borrower_checked_in: bool,
    owner_checked_in: bool,
    now: datetime,
) -> WindowDecision:
    opens_at = scheduled_start + COMPLETION_OPENS_AFTER_START
    if not (borrower_checked_in and owner_checked_in):
        return WindowDecision(False, "both_parties_must_check_in", opens_at)
    if now < opens_at:
        return WindowDecision(False, "completion_not_open", opens_at)
    return WindowDecision(True, "open", opens_at)


def no_show_window(
    scheduled_start: datetime,
    claimant_checked_in: bool,
    other_checked_in: bool,
    now: datetime,
) -> WindowDecision:
    """A no-show claim needs the claimant present and the other party absent."""
    opens_at = scheduled_start + NO_SHOW_OPENS_AFTER_START
    if now < opens_at:
        return WindowDecision(False, "no_show_claim_not_open", opens_at)
    if not claimant_checked_in:
        return WindowDecision(False, "claimant_not_checked_in", opens_at)
    if other_checked_in:
        return WindowDecision(False, "other_party_checked_in", opens_at)
    return WindowDecision(True, "open", opens_at)


def force_majeure_window(
    scheduled_start: datetime,
    borrower_checked_in: bool,
    owner_checked_in: bool,
    now: datetime,
) -> WindowDecision:
    """Closes for good at start time or on the first check-in."""
    opens_at = scheduled_start - FORCE_MAJEURE_OPENS_BEFORE_START
    if borrower_checked_in or owner_checked_in:
        return WindowDecision(False, "party_already_checked_in", opens_at, scheduled_start)
    if now < opens_at:
        return WindowDecision(False, "force_majeure_not_open", opens_at, scheduled_start)
    if now >= scheduled_start:
        return WindowDecision(False, "force_majeure_closed", opens_at, scheduled_start)
    return WindowDecision(True, "open", opens_at, scheduled_start)


def cancellation_tier(scheduled_start: datetime, at: datetime) -> CancellationTier:
    """Classify a cancellation made at ``at``. Exactly 5 days out is late."""
    if scheduled_start - at > EARLY_CANCELLATION_THRESHOLD:
        return CancellationTier.EARLY
    return CancellationTier.LATE


def examiner_refusal_window(
    scheduled_start: datetime,
    borrower_checked_in: bool,
    owner_checked_in: bool,
    now: datetime,
) -> WindowDecision:
    closes_at = scheduled_start + EXAMINER_REFUSAL_CLOSES_AFTER_START
    if not (borrower_checked_in and owner_checked_in):
        return WindowDecision(False, "both_parties_must_check_in", scheduled_start, closes_at)
    if now < scheduled_start:
        return WindowDecision(False, "examiner_refusal_not_open", scheduled_start, closes_at)
    if now > closes_at:
        return WindowDecision(False, "examiner_refusal_closed", scheduled_start, closes_at)
    return WindowDecision(True, "open", scheduled_start, closes_at)
