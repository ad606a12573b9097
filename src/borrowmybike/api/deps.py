"""Collaborators injected into route handlers.

Tests replace these with ``app.dependency_overrides``.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable

from borrowmybike.domain.ledger import LedgerStore, PaymentGateway
from borrowmybike.infra.ledger_store import PostgresLedgerStore
from borrowmybike.infra.time import utc_now
from borrowmybike.stripe.client import StripeClient

_ledger: LedgerStore | None = None
_gateway: PaymentGateway | None = None
_lock = threading.Lock()


def get_ledger() -> LedgerStore:
    global _ledger
    with _lock:
        if _ledger is None:
            _ledger = PostgresLedgerStore()
        return _ledger


def get_gateway() -> PaymentGateway:
    """Stripe client, created on first use so STRIPE_SECRET_KEY is read lazily."""
    global _gateway
    with _lock:
        if _gateway is None:
            _gateway = StripeClient()
        return _gateway


def get_clock() -> Callable[[], datetime]:
    return utc_now
