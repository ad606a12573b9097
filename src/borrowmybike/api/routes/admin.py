"""Operator endpoints: dispute resolution and manual payout bookkeeping.

All routes require an authenticated user with ``users.is_admin``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable

from fastapi import APIRouter, Depends, Path
from pydantic import BaseModel

from borrowmybike.api.auth import CurrentUser
from borrowmybike.api.deps import get_clock, get_gateway, get_ledger
from borrowmybike.api.errors import call_domain
from borrowmybike.api.rbac import require_admin
from borrowmybike.domain.ledger import LedgerStore, PaymentGateway
from borrowmybike.domain.payouts import mark_payout_paid
from borrowmybike.domain.review import resolve_no_show, resolve_review


class ResolveReviewRequest(BaseModel):
    """approve_settle | owner_fault | borrower_fault | reject_clear_flags"""

    decision: str
    note: str | None = None


class ResolveNoShowRequest(BaseModel):
    no_show_party: str
    note: str | None = None


class MarkPayoutPaidRequest(BaseModel):
    method: str
    reference: str | None = None


router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/bookings/{booking_id}/resolve-review")
def resolve_review_action(
    body: ResolveReviewRequest,
    booking_id: str = Path(..., description="Booking UUID"),
    admin: CurrentUser = Depends(require_admin),
    ledger: LedgerStore = Depends(get_ledger),
    gateway: PaymentGateway = Depends(get_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    return call_domain(
        resolve_review,
        ledger,
        gateway,
        booking_id,
        decision=body.decision,
        now=clock(),
        admin_user_id=admin.id,
        note=body.note,
    )


@router.post("/bookings/{booking_id}/resolve-no-show")
def resolve_no_show_action(
    body: ResolveNoShowRequest,
    booking_id: str = Path(..., description="Booking UUID"),
    admin: CurrentUser = Depends(require_admin),
    ledger: LedgerStore = Depends(get_ledger),
    gateway: PaymentGateway = Depends(get_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    return call_domain(
        resolve_no_show,
        ledger,
        gateway,
        booking_id,
        no_show_party=body.no_show_party,
        now=clock(),
        admin_user_id=admin.id,
        note=body.note,
    )


@router.post("/payouts/{payment_id}/mark-paid")
def mark_payout_paid_action(
    body: MarkPayoutPaidRequest,
    payment_id: str = Path(..., description="Payment UUID"),
    admin: CurrentUser = Depends(require_admin),
    ledger: LedgerStore = Depends(get_ledger),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    """Record that an owner payout or borrower compensation was sent."""
    return call_domain(
        mark_payout_paid,
        ledger,
        payment_id,
        method=body.method,
        reference=body.reference,
        now=clock(),
        admin_user_id=admin.id,
    )
