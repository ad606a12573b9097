"""Explicit settlement trigger.

Settlement normally runs as a side effect of completion, no-show claims,
force majeure or admin decisions; this endpoint lets a participant or an
admin retry one that stopped part-way.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

from fastapi import APIRouter, Depends, Path

from borrowmybike.api.auth import CurrentUser, get_current_user
from borrowmybike.api.deps import get_clock, get_gateway, get_ledger
from borrowmybike.api.errors import call_domain
from borrowmybike.domain.audit import ADMIN_ACTOR
from borrowmybike.domain.bookings import get_booking_or_raise, require_party
from borrowmybike.domain.ledger import LedgerStore, PaymentGateway
from borrowmybike.domain.settlement import SettlementService

router = APIRouter(prefix="/settlements", tags=["settlements"])


@router.post("/{booking_id}")
def settle_action(
    booking_id: str = Path(..., description="Booking UUID"),
    user: CurrentUser = Depends(get_current_user),
    ledger: LedgerStore = Depends(get_ledger),
    gateway: PaymentGateway = Depends(get_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    """Settle the booking, or return how it was already settled."""

    def _settle() -> dict[str, Any]:
        booking = get_booking_or_raise(ledger, booking_id)
        if user.is_admin and booking.role_of(user.id) is None:
            actor_role = ADMIN_ACTOR
        else:
            actor_role = require_party(booking, user.id).value
        result = SettlementService(ledger, gateway, clock=clock).settle(
            booking.id, actor_role=actor_role, actor_user_id=user.id
        )
        return result.to_payload()

    return call_domain(_settle)
