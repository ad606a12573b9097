"""Fixed amounts for bookings, deposits and settlements.

All amounts are integer cents in CURRENCY.
"""

from __future__ import annotations

from datetime import timedelta

CURRENCY = "cad"

BOOKING_FEE_CENTS = 15000
OWNER_DEPOSIT_CENTS = 15000
COMPENSATION_CENTS = 10000
PLATFORM_INCOME_CENTS = 5000
REBOOK_CREDIT_CENTS = 15000

# Early cancellation: canceller gets this share of their own payment back
EARLY_CANCEL_REFUND_PERCENT = 75

CREDIT_VALIDITY = timedelta(days=21)


def early_cancellation_split(amount_cents: int) -> tuple[int, int]:
    """Split a canceller's payment into (returned, retained) cents.

    Rounds the returned share down so the sum always equals the input.
    """
    returned = amount_cents * EARLY_CANCEL_REFUND_PERCENT // 100
    return returned, amount_cents - returned


def format_cents(amount_cents: int) -> str:
    """Human-readable amount for audit notes, e.g. '112.50 CAD'."""
    return f"{amount_cents // 100}.{amount_cents % 100:02d} {CURRENCY.upper()}"
