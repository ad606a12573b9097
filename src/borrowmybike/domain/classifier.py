"""Settlement classifier: booking flags -> exactly one terminal scenario.

A booking is loaded into the closed union ``BookingState``. Each scenario
has one predicate; classification evaluates all of them and insists on a
single match. Two matches, or a settle-worthy signal that matches nothing,
is a defect in the flags and is raised, never defaulted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, ClassVar, Union

from borrowmybike.domain.errors import PreconditionError, UnclassifiableBookingError
from borrowmybike.domain.models import Booking, Scenario
from borrowmybike.observability.logging import get_logger
from borrowmybike.observability.redaction import safe_log_context

logger = get_logger(__name__)

BORROWER_FAULT = "borrower_fault"
BORROWER_NO_SHOW = "borrower_no_show"
OWNER_NO_SHOW = "owner_no_show"
EXAMINER_REFUSAL = "examiner_refusal"

_FAULT_REASONS = {BORROWER_FAULT, BORROWER_NO_SHOW, OWNER_NO_SHOW}


@dataclass(frozen=True)
class HappyPath:
    scenario: ClassVar[Scenario] = Scenario.HAPPY_PATH
    booking: Booking


@dataclass(frozen=True)
class OwnerFault:
    scenario: ClassVar[Scenario] = Scenario.OWNER_FAULT
    booking: Booking


@dataclass(frozen=True)
class BorrowerFault:
    scenario: ClassVar[Scenario] = Scenario.BORROWER_FAULT
    booking: Booking


@dataclass(frozen=True)
class BorrowerNoShow:
    scenario: ClassVar[Scenario] = Scenario.BORROWER_NO_SHOW
    booking: Booking


@dataclass(frozen=True)
class OwnerNoShow:
    scenario: ClassVar[Scenario] = Scenario.OWNER_NO_SHOW
    booking: Booking


@dataclass(frozen=True)
class ForceMajeure:
    scenario: ClassVar[Scenario] = Scenario.FORCE_MAJEURE
    booking: Booking


BookingState = Union[HappyPath, OwnerFault, BorrowerFault, BorrowerNoShow, OwnerNoShow, ForceMajeure]

STATE_TYPES: tuple[type, ...] = (
    HappyPath,
    OwnerFault,
    BorrowerFault,
    BorrowerNoShow,
    OwnerNoShow,
    ForceMajeure,
)


def _has_fault_flag(b: Booking) -> bool:
    return (
        b.bike_invalid
        or b.review_reason in _FAULT_REASONS
        or b.treat_as_borrower_no_show
        or b.treat_as_owner_no_show
    )


def _is_happy_path(b: Booking) -> bool:
    return b.completed and not b.cancelled and not b.needs_review and not _has_fault_flag(b)


def _is_owner_fault(b: Booking) -> bool:
    return b.bike_invalid


def _is_borrower_fault(b: Booking) -> bool:
    return b.review_reason == BORROWER_FAULT and not b.completed and not b.cancelled


def _is_borrower_no_show(b: Booking) -> bool:
    return b.review_reason == BORROWER_NO_SHOW or b.treat_as_borrower_no_show


def _is_owner_no_show(b: Booking) -> bool:
    return b.review_reason == OWNER_NO_SHOW or b.treat_as_owner_no_show


def _is_force_majeure(b: Booking) -> bool:
    borrower_at = b.force_majeure_borrower_agreed_at
    owner_at = b.force_majeure_owner_agreed_at
    if borrower_at is None or owner_at is None:
        return False
    agreed_at = max(borrower_at, owner_at)
    if agreed_at >= b.scheduled_start:
        return False
    for checked_in, checked_in_at in (
        (b.borrower_checked_in, b.borrower_checked_in_at),
        (b.owner_checked_in, b.owner_checked_in_at),
    ):
        if checked_in and (checked_in_at is None or checked_in_at <= agreed_at):
            return False
    return True


_PREDICATES: dict[type, Callable[[Booking], bool]] = {
    HappyPath: _is_happy_path,
    OwnerFault: _is_owner_fault,
    BorrowerFault: _is_borrower_fault,
    BorrowerNoShow: _is_borrower_no_show,
    OwnerNoShow: _is_owner_no_show,
    ForceMajeure: _is_force_majeure,
}

if set(_PREDICATES) != set(STATE_TYPES):
    raise RuntimeError("every booking state needs exactly one predicate")


def _has_terminal_signal(b: Booking) -> bool:
    both_agreed = (
        b.force_majeure_borrower_agreed_at is not None
        and b.force_majeure_owner_agreed_at is not None
    )
    return b.completed or _has_fault_flag(b) or both_agreed


def classify(booking: Booking) -> BookingState:
    """Map a fully-paid, unsettled, uncancelled booking to its scenario.

    Raises:
        PreconditionError: Nothing has happened yet that settles the booking.
        UnclassifiableBookingError: Zero or several scenarios match despite a
            terminal signal being present.
    """
    matches = [cls for cls, predicate in _PREDICATES.items() if predicate(booking)]

    if len(matches) == 1:
        return matches[0](booking)

    if not matches and not _has_terminal_signal(booking):
        raise PreconditionError("booking is not ready to settle")

    names = [cls.scenario.value for cls in matches]
    logger.error(
        "booking matches no single settlement scenario",
        extra={
            "extra_fields": safe_log_context(
                booking_id=booking.id,
                matches=",".join(names) or "none",
                completed=booking.completed,
                needs_review=booking.needs_review,
                review_reason=booking.review_reason,
                bike_invalid=booking.bike_invalid,
            )
        },
    )
    raise UnclassifiableBookingError(booking.id, names)
