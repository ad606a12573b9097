"""Worker task: expire booking requests the owner never accepted.

Invoked periodically by Cloud Scheduler on the worker service; each call
re-evaluates every pending request against the clock.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable

from fastapi import APIRouter, Depends, Query

from borrowmybike.api.deps import get_clock, get_gateway, get_ledger
from borrowmybike.api.task_auth import require_task_auth
from borrowmybike.domain.acceptance import expire_unaccepted
from borrowmybike.domain.ledger import LedgerStore, PaymentGateway

router = APIRouter(prefix="/tasks/bookings", tags=["tasks"])


@router.post("/expire", dependencies=[Depends(require_task_auth)])
def expire_bookings_task(
    limit: int = Query(100, ge=1, le=1000),
    ledger: LedgerStore = Depends(get_ledger),
    gateway: PaymentGateway = Depends(get_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    """Cancel unaccepted requests past their deadline.

    Returns:
        {"expired": [booking ids], "failed": [booking ids]}
    """
    return expire_unaccepted(ledger, gateway, now=clock(), limit=limit)
