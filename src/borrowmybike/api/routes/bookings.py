"""Booking endpoints for borrowers and owners.

The caller's role (borrower or owner) is derived from booking membership;
each action states which role may perform it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

from fastapi import APIRouter, Depends, Header, Path
from pydantic import BaseModel, Field

from borrowmybike.api.auth import CurrentUser, get_current_user
from borrowmybike.api.deps import get_clock, get_gateway, get_ledger
from borrowmybike.api.errors import call_domain
from borrowmybike.domain.acceptance import accept
from borrowmybike.domain.attendance import (
    check_in,
    claim_no_show,
    confirm_complete,
    report_examiner_refusal,
    set_owner_deposit_choice,
)
from borrowmybike.domain.bookings import (
    create_booking,
    get_booking_ledger,
    get_booking_or_raise,
    pay_with_credit,
    require_party,
    start_checkout,
)
from borrowmybike.domain.cancellation import cancel_booking
from borrowmybike.domain.force_majeure import agree_force_majeure
from borrowmybike.domain.ledger import LedgerStore, PaymentGateway
from borrowmybike.domain.models import CancelledBy, Role
from borrowmybike.infra.db import txn
from borrowmybike.infra.repositories import events_repository
from borrowmybike.infra.time import as_utc
from borrowmybike.observability.correlation import get_correlation_id
from borrowmybike.observability.logging import get_logger
from borrowmybike.observability.redaction import safe_log_context


class CreateBookingRequest(BaseModel):
    """Request body for creating a booking (the caller is the borrower)."""

    bike_id: str
    owner_id: str
    scheduled_start: datetime
    duration_minutes: int = Field(60, gt=0)
    use_credit: bool = True


class AcceptRequest(BaseModel):
    use_credit: bool = True


class CompleteRequest(BaseModel):
    deposit_choice: str | None = None


class ExaminerRefusalRequest(BaseModel):
    reason: str
    note: str | None = None


class DepositChoiceRequest(BaseModel):
    choice: str


router = APIRouter(prefix="/bookings", tags=["bookings"])

logger = get_logger(__name__)

_CREATE_ENDPOINT = "bookings:create"


def _get_replay(idempotency_key: str, endpoint: str) -> dict[str, Any] | None:
    with txn() as cur:
        found = events_repository.get_idempotent_response(
            cur, idempotency_key=idempotency_key, endpoint=endpoint
        )
    return found[1] if found is not None else None


def _save_replay(
    idempotency_key: str, endpoint: str, user_id: str, body: dict[str, Any]
) -> None:
    with txn() as cur:
        events_repository.insert_idempotent_response(
            cur,
            idempotency_key=idempotency_key,
            endpoint=endpoint,
            user_id=user_id,
            response_code=200,
            response_body=body,
        )


def _caller_role(
    ledger: LedgerStore, booking_id: str, user: CurrentUser, role: Role | None = None
) -> Role:
    booking = get_booking_or_raise(ledger, booking_id)
    return require_party(booking, user.id, role)


@router.post("")
def create_booking_action(
    body: CreateBookingRequest,
    user: CurrentUser = Depends(get_current_user),
    ledger: LedgerStore = Depends(get_ledger),
    gateway: PaymentGateway = Depends(get_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
) -> dict:
    """Request a road-test slot on a bike and start paying the booking fee.

    With an Idempotency-Key header, a retried request returns the first
    response instead of creating a second booking.
    """
    endpoint = f"{_CREATE_ENDPOINT}:{user.id}"
    if idempotency_key:
        replay = _get_replay(idempotency_key, endpoint)
        if replay is not None:
            logger.info(
                "idempotent replay for create booking",
                extra={
                    "extra_fields": safe_log_context(
                        correlationId=get_correlation_id(),
                        idempotency_key=idempotency_key,
                    )
                },
            )
            return replay

    result = call_domain(
        create_booking,
        ledger,
        gateway,
        bike_id=body.bike_id,
        owner_id=body.owner_id,
        borrower_id=user.id,
        scheduled_start=as_utc(body.scheduled_start),
        duration_minutes=body.duration_minutes,
        use_credit=body.use_credit,
        now=clock(),
    )

    if idempotency_key:
        _save_replay(idempotency_key, endpoint, user.id, result)
    return result


@router.get("/{booking_id}")
def get_booking_action(
    booking_id: str = Path(..., description="Booking UUID"),
    user: CurrentUser = Depends(get_current_user),
    ledger: LedgerStore = Depends(get_ledger),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    """Booking with its payments, credits, money totals and action windows."""

    def _read() -> dict[str, Any]:
        if not user.is_admin:
            _caller_role(ledger, booking_id, user)
        return get_booking_ledger(ledger, booking_id, clock())

    return call_domain(_read)


@router.post("/{booking_id}/actions/pay")
def pay_action(
    booking_id: str = Path(..., description="Booking UUID"),
    user: CurrentUser = Depends(get_current_user),
    ledger: LedgerStore = Depends(get_ledger),
    gateway: PaymentGateway = Depends(get_gateway),
) -> dict:
    """Open (or reopen) a checkout for whatever the caller still owes."""

    def _pay() -> dict[str, Any]:
        booking = get_booking_or_raise(ledger, booking_id)
        role = require_party(booking, user.id)
        session = start_checkout(ledger, gateway, booking=booking, role=role)
        return {"status": "checkout_required", "checkout_url": session["url"]}

    return call_domain(_pay)


@router.post("/{booking_id}/actions/accept")
def accept_action(
    body: AcceptRequest | None = None,
    booking_id: str = Path(..., description="Booking UUID"),
    user: CurrentUser = Depends(get_current_user),
    ledger: LedgerStore = Depends(get_ledger),
    gateway: PaymentGateway = Depends(get_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    """Owner accepts the request by paying the deposit (credit first)."""
    call_domain(_caller_role, ledger, booking_id, user, Role.OWNER)
    use_credit = body.use_credit if body is not None else True
    return call_domain(accept, ledger, gateway, booking_id, now=clock(), use_credit=use_credit)


@router.post("/{booking_id}/actions/apply-credit")
def apply_credit_action(
    booking_id: str = Path(..., description="Booking UUID"),
    user: CurrentUser = Depends(get_current_user),
    ledger: LedgerStore = Depends(get_ledger),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    """Pay the caller's booking fee or deposit entirely from credits."""
    role = call_domain(_caller_role, ledger, booking_id, user)
    return call_domain(pay_with_credit, ledger, booking_id, role=role, now=clock())


@router.post("/{booking_id}/actions/check-in")
def check_in_action(
    booking_id: str = Path(..., description="Booking UUID"),
    user: CurrentUser = Depends(get_current_user),
    ledger: LedgerStore = Depends(get_ledger),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    role = call_domain(_caller_role, ledger, booking_id, user)
    return call_domain(check_in, ledger, booking_id, role=role, now=clock())


@router.post("/{booking_id}/actions/complete")
def complete_action(
    body: CompleteRequest | None = None,
    booking_id: str = Path(..., description="Booking UUID"),
    user: CurrentUser = Depends(get_current_user),
    ledger: LedgerStore = Depends(get_ledger),
    gateway: PaymentGateway = Depends(get_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    """Confirm the road test happened; settles once both parties confirm."""
    role = call_domain(_caller_role, ledger, booking_id, user)
    return call_domain(
        confirm_complete,
        ledger,
        gateway,
        booking_id,
        role=role,
        now=clock(),
        deposit_choice=body.deposit_choice if body is not None else None,
    )


@router.post("/{booking_id}/actions/cancel")
def cancel_action(
    booking_id: str = Path(..., description="Booking UUID"),
    user: CurrentUser = Depends(get_current_user),
    ledger: LedgerStore = Depends(get_ledger),
    gateway: PaymentGateway = Depends(get_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    """Cancel as the caller's party; the refund tier depends on notice given."""
    role = call_domain(_caller_role, ledger, booking_id, user)
    return call_domain(
        cancel_booking,
        ledger,
        gateway,
        booking_id,
        cancelled_by=CancelledBy(role.value),
        now=clock(),
        actor_user_id=user.id,
    )


@router.post("/{booking_id}/actions/no-show")
def no_show_action(
    booking_id: str = Path(..., description="Booking UUID"),
    user: CurrentUser = Depends(get_current_user),
    ledger: LedgerStore = Depends(get_ledger),
    gateway: PaymentGateway = Depends(get_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    """Claim the other party did not show up, then settle."""
    role = call_domain(_caller_role, ledger, booking_id, user)
    return call_domain(
        claim_no_show,
        ledger,
        gateway,
        booking_id,
        claimant_role=role,
        now=clock(),
        claimant_user_id=user.id,
    )


@router.post("/{booking_id}/actions/force-majeure")
def force_majeure_action(
    booking_id: str = Path(..., description="Booking UUID"),
    user: CurrentUser = Depends(get_current_user),
    ledger: LedgerStore = Depends(get_ledger),
    gateway: PaymentGateway = Depends(get_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    role = call_domain(_caller_role, ledger, booking_id, user)
    return call_domain(
        agree_force_majeure, ledger, gateway, booking_id, role=role, now=clock(), user_id=user.id
    )


@router.post("/{booking_id}/actions/examiner-refusal")
def examiner_refusal_action(
    body: ExaminerRefusalRequest,
    booking_id: str = Path(..., description="Booking UUID"),
    user: CurrentUser = Depends(get_current_user),
    ledger: LedgerStore = Depends(get_ledger),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    """Report that the examiner refused the test; an admin reviews it."""
    role = call_domain(_caller_role, ledger, booking_id, user)
    return call_domain(
        report_examiner_refusal,
        ledger,
        booking_id,
        role=role,
        reason=body.reason,
        note=body.note,
        now=clock(),
        user_id=user.id,
    )


@router.post("/{booking_id}/actions/deposit-choice")
def deposit_choice_action(
    body: DepositChoiceRequest,
    booking_id: str = Path(..., description="Booking UUID"),
    user: CurrentUser = Depends(get_current_user),
    ledger: LedgerStore = Depends(get_ledger),
) -> dict:
    """Owner chooses whether the deposit comes back as refund or credit."""
    call_domain(_caller_role, ledger, booking_id, user, Role.OWNER)
    return call_domain(set_owner_deposit_choice, ledger, booking_id, choice=body.choice)