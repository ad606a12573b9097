"""Booking, payment and credit records plus their enums.

Records are frozen dataclasses loaded from column-keyed rows; stores
return fresh instances after every write.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from borrowmybike.infra.time import as_utc


# ── Enums ─────────────────────────────────────────────────


class Role(str, Enum):
    BORROWER = "borrower"
    OWNER = "owner"

    @property
    def other(self) -> "Role":
        return Role.OWNER if self is Role.BORROWER else Role.BORROWER


class CancelledBy(str, Enum):
    BORROWER = "borrower"
    OWNER = "owner"
    SYSTEM_EXPIRED = "system_expired"


class PaymentType(str, Enum):
    BORROWER_BOOKING_FEE = "borrower_booking_fee"
    OWNER_DEPOSIT = "owner_deposit"
    BORROWER_CREDIT_PAYMENT = "borrower_credit_payment"
    OWNER_CREDIT_PAYMENT = "owner_credit_payment"
    OWNER_PAYOUT = "owner_payout"
    BORROWER_COMPENSATION = "borrower_compensation"
    PLATFORM_INCOME = "platform_income"
    BORROWER_REFUND = "borrower_refund"
    OWNER_DEPOSIT_REFUND = "owner_deposit_refund"


class PaymentMethod(str, Enum):
    GATEWAY = "gateway"
    CREDIT = "credit"
    LEDGER = "ledger"


class PaymentStatus(str, Enum):
    INITIATED = "initiated"
    SUCCEEDED = "succeeded"
    PAYOUT_DUE = "payout_due"
    PAID = "paid"
    FAILED = "failed"


class CreditType(str, Enum):
    REBOOK_CREDIT = "rebook_credit"
    OWNER_DEPOSIT_HELD = "owner_deposit_held"
    CANCEL_REFUND_CREDIT = "cancel_refund_credit"


class CreditStatus(str, Enum):
    AVAILABLE = "available"
    USED = "used"


class DepositChoice(str, Enum):
    KEEP = "keep"
    REFUND = "refund"


class Scenario(str, Enum):
    HAPPY_PATH = "happy_path"
    OWNER_FAULT = "owner_fault"
    BORROWER_FAULT = "borrower_fault"
    BORROWER_NO_SHOW = "borrower_no_show"
    OWNER_NO_SHOW = "owner_no_show"
    FORCE_MAJEURE = "force_majeure"


# Inbound payment legs per party: gateway-funded and credit-funded
GATEWAY_PAYMENT_TYPE = {
    Role.BORROWER: PaymentType.BORROWER_BOOKING_FEE,
    Role.OWNER: PaymentType.OWNER_DEPOSIT,
}
CREDIT_PAYMENT_TYPE = {
    Role.BORROWER: PaymentType.BORROWER_CREDIT_PAYMENT,
    Role.OWNER: PaymentType.OWNER_CREDIT_PAYMENT,
}
REFUND_PAYMENT_TYPE = {
    Role.BORROWER: PaymentType.BORROWER_REFUND,
    Role.OWNER: PaymentType.OWNER_DEPOSIT_REFUND,
}


def _load(cls: type, row: dict[str, Any], timestamps: tuple[str, ...]) -> Any:
    names = {f.name for f in fields(cls)}
    values = {k: v for k, v in row.items() if k in names}
    for key in timestamps:
        if key in values:
            values[key] = as_utc(values[key])
    for key, value in list(values.items()):
        if key.endswith("_id") or key == "id":
            values[key] = str(value) if value is not None else None
    return cls(**values)


# ── Records ───────────────────────────────────────────────


@dataclass(frozen=True)
class Booking:
    id: str
    bike_id: str
    borrower_id: str
    owner_id: str
    scheduled_start: datetime
    created_at: datetime
    duration_minutes: int = 60
    borrower_paid: bool = False
    owner_deposit_paid: bool = False
    borrower_checked_in: bool = False
    borrower_checked_in_at: datetime | None = None
    owner_checked_in: bool = False
    owner_checked_in_at: datetime | None = None
    borrower_confirmed_complete: bool = False
    owner_confirmed_complete: bool = False
    completed: bool = False
    cancelled: bool = False
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None
    settled: bool = False
    settled_at: datetime | None = None
    settlement_outcome: str | None = None
    needs_review: bool = False
    review_reason: str | None = None
    review_note: str | None = None
    bike_invalid: bool = False
    treat_as_borrower_no_show: bool = False
    treat_as_owner_no_show: bool = False
    owner_deposit_choice: str = DepositChoice.KEEP.value
    force_majeure_borrower_agreed_at: datetime | None = None
    force_majeure_owner_agreed_at: datetime | None = None

    _TIMESTAMPS = (
        "scheduled_start",
        "created_at",
        "borrower_checked_in_at",
        "owner_checked_in_at",
        "cancelled_at",
        "settled_at",
        "force_majeure_borrower_agreed_at",
        "force_majeure_owner_agreed_at",
    )

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Booking":
        return _load(cls, row, cls._TIMESTAMPS)

    @property
    def scheduled_end(self) -> datetime:
        return self.scheduled_start + timedelta(minutes=self.duration_minutes)

    @property
    def fully_paid(self) -> bool:
        return self.borrower_paid and self.owner_deposit_paid

    def user_id_for(self, role: Role) -> str:
        return self.borrower_id if role is Role.BORROWER else self.owner_id

    def role_of(self, user_id: str) -> Role | None:
        """Return the caller's party role, or None for outsiders."""
        if user_id == self.borrower_id:
            return Role.BORROWER
        if user_id == self.owner_id:
            return Role.OWNER
        return None

    def is_checked_in(self, role: Role) -> bool:
        if role is Role.BORROWER:
            return self.borrower_checked_in
        return self.owner_checked_in

    def agreed_force_majeure_at(self, role: Role) -> datetime | None:
        if role is Role.BORROWER:
            return self.force_majeure_borrower_agreed_at
        return self.force_majeure_owner_agreed_at

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            payload[f.name] = value.isoformat() if isinstance(value, datetime) else value
        return payload


@dataclass(frozen=True)
class Payment:
    id: str
    booking_id: str
    user_id: str | None
    type: str
    method: str
    status: str
    amount_cents: int
    currency: str
    gateway_reference: str | None = None
    refund_reference: str | None = None
    payout_method: str | None = None
    payout_reference: str | None = None
    paid_at: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Payment":
        return _load(cls, row, ("paid_at", "created_at"))

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "method": self.method,
            "status": self.status,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "gateway_reference": self.gateway_reference,
            "refund_reference": self.refund_reference,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }


@dataclass(frozen=True)
class Credit:
    id: str
    user_id: str
    credit_type: str
    amount_cents: int
    status: str
    origin_booking_id: str | None
    expires_at: datetime
    used_on_booking_id: str | None = None
    used_at: datetime | None = None
    split_from_credit_id: str | None = None
    reason: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Credit":
        return _load(cls, row, ("expires_at", "used_at", "created_at"))

    def is_usable(self, now: datetime) -> bool:
        return self.status == CreditStatus.AVAILABLE.value and self.expires_at > now

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "credit_type": self.credit_type,
            "amount_cents": self.amount_cents,
            "status": self.status,
            "origin_booking_id": self.origin_booking_id,
            "used_on_booking_id": self.used_on_booking_id,
            "expires_at": self.expires_at.isoformat(),
        }
