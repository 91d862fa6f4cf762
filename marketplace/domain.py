"""
Domain values shared by the ledger core.

- ``to_money`` is the single rounding rule: every amount is quantized to
  two decimal places (half-up) before it is compared or stored.
- Bookings are handed out as a tagged variant, ``ConfirmedBooking`` or
  ``CancelledBooking``, so cancellation data only exists on the variant
  that can have it.
- ``authorize_cancellation`` returns a ``CancelDecision`` instead of a bare
  boolean so callers can report *why* a cancellation was refused.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from marketplace.models import Booking, BookingStatus, UserRole

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Return *value* as a ``Decimal`` rounded to cents."""
    if isinstance(value, float):
        # str() avoids binary float artefacts such as 0.1 + 0.2.
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Booking variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _BookingFields:
    id: int
    client_id: int
    client_name: str
    service_id: int
    service_name: str
    provider_id: int
    provider_name: str
    amount: Decimal
    created_at: datetime

    status = BookingStatus.CONFIRMED

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["amount"] = str(self.amount)
        data["created_at"] = self.created_at.isoformat() if self.created_at else None
        return data


@dataclass(frozen=True)
class ConfirmedBooking(_BookingFields):
    status = BookingStatus.CONFIRMED


@dataclass(frozen=True)
class CancelledBooking(_BookingFields):
    cancelled_at: datetime
    cancellation_reason: Optional[str] = None

    status = BookingStatus.CANCELLED

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["cancelled_at"] = self.cancelled_at.isoformat() if self.cancelled_at else None
        return data


BookingView = Union[ConfirmedBooking, CancelledBooking]


def booking_from_row(row: Booking) -> BookingView:
    """Convert a persisted ``Booking`` row into the matching variant."""
    common = dict(
        id=row.id,
        client_id=row.client_id,
        client_name=row.client_name,
        service_id=row.service_id,
        service_name=row.service_name,
        provider_id=row.provider_id,
        provider_name=row.provider_name,
        amount=to_money(row.amount),
        created_at=row.created_at,
    )
    if row.status == BookingStatus.CANCELLED:
        return CancelledBooking(
            **common,
            cancelled_at=row.cancelled_at,
            cancellation_reason=row.cancellation_reason,
        )
    return ConfirmedBooking(**common)


# ---------------------------------------------------------------------------
# Cancellation capability
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CancelDecision:
    allowed: bool
    party: Optional[UserRole] = None
    reason: str = ""


def authorize_cancellation(booking: BookingView, user_id: int, role: UserRole) -> CancelDecision:
    """
    Decide whether *user_id* acting as *role* may cancel *booking*.

    Only the booking's own client or its own provider qualify; the role
    claim has to match the side of the booking the user id appears on.
    State (confirmed vs cancelled) is checked separately by the caller.
    """
    if role is UserRole.CLIENT and booking.client_id == user_id:
        return CancelDecision(allowed=True, party=UserRole.CLIENT)
    if role is UserRole.PROVIDER and booking.provider_id == user_id:
        return CancelDecision(allowed=True, party=UserRole.PROVIDER)
    return CancelDecision(
        allowed=False,
        reason="You do not have permission to cancel this booking",
    )
