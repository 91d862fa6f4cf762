from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace.database import Base

# Two decimal places, large enough for BOOKING_MAX_AMOUNT and running balances.
Money = Numeric(12, 2)


class UserRole(str, enum.Enum):
    CLIENT = "client"
    PROVIDER = "provider"
    ADMIN = "admin"


class BookingStatus(str, enum.Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class EntryDirection(str, enum.Enum):
    DEBIT = "debit"
    CREDIT = "credit"


def _enum_column(enum_cls: type[enum.Enum]) -> Enum:
    # Persist the lowercase value, not the member name.
    return Enum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
    )


# ---------------------------------------------------------------------------
# User (one account per user: account id == user id)
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_users_balance_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    full_name: Mapped[str] = mapped_column(String(150), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(_enum_column(UserRole), nullable=False)
    balance: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )

    services: Mapped[List["Service"]] = relationship(
        "Service", back_populates="provider", lazy="noload"
    )


# ---------------------------------------------------------------------------
# Service (catalog entry offered by a provider)
# ---------------------------------------------------------------------------
class Service(Base):
    __tablename__ = "services"

    __table_args__ = (
        CheckConstraint("price > 0", name="ck_services_price_positive"),
        # Active catalog listing sorted by date
        Index("ix_services_is_active_created_at", "is_active", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )

    provider_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id"), nullable=False, index=True
    )

    # lazy="noload" enforces explicit eager loading in services
    provider: Mapped["User"] = relationship("User", back_populates="services", lazy="noload")


# ---------------------------------------------------------------------------
# Booking
# ---------------------------------------------------------------------------
class Booking(Base):
    __tablename__ = "bookings"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_bookings_amount_positive"),
        # A confirmed booking carries no cancellation data; a cancelled one has a timestamp.
        CheckConstraint(
            "(status = 'confirmed' AND cancelled_at IS NULL AND cancellation_reason IS NULL)"
            " OR (status = 'cancelled' AND cancelled_at IS NOT NULL)",
            name="ck_bookings_cancellation_consistent",
        ),
        # Per-user history views
        Index("ix_bookings_client_id_created_at", "client_id", "created_at"),
        Index("ix_bookings_provider_id_created_at", "provider_id", "created_at"),
        Index("ix_bookings_status_created_at", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    client_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    client_name: Mapped[str] = mapped_column(String(150), nullable=False)
    service_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("services.id"), nullable=False, index=True
    )
    service_name: Mapped[str] = mapped_column(String(200), nullable=False)
    provider_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    provider_name: Mapped[str] = mapped_column(String(150), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        _enum_column(BookingStatus), nullable=False, default=BookingStatus.CONFIRMED
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)


# ---------------------------------------------------------------------------
# LedgerEntry (append-only; no updated_at)
# ---------------------------------------------------------------------------
class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_ledger_entries_amount_positive"),
        # Account history, most recent first
        Index("ix_ledger_entries_account_id_created_at", "account_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    booking_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("bookings.id"), nullable=True, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    direction: Mapped[EntryDirection] = mapped_column(_enum_column(EntryDirection), nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(Money, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Money, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
