from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from marketplace.config import settings
from marketplace.models import BookingStatus, EntryDirection, UserRole

_MAX_AMOUNT = Decimal(str(settings.BOOKING_MAX_AMOUNT))


# --- User ---

class UserPublic(BaseModel):
    id: int
    full_name: str
    role: UserRole
    is_active: bool
    created_at: datetime | None = None


class UserResponse(UserPublic):
    email: str
    balance: Decimal


class UserActiveUpdate(BaseModel):
    is_active: bool


class BalanceResponse(BaseModel):
    user_id: int
    balance: Decimal


class TopUpRequest(BaseModel):
    amount: Decimal = Field(gt=0, le=_MAX_AMOUNT, decimal_places=2)
    description: str = Field("Balance top-up", max_length=200)


# --- Auth ---

class UserRegister(BaseModel):
    full_name: str = Field(min_length=1, max_length=150)
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(min_length=8, max_length=72)
    role: UserRole

    @field_validator("password")
    @classmethod
    def _fits_bcrypt(cls, value: str) -> str:
        # bcrypt only reads the first 72 bytes.
        if len(value.encode("utf-8")) > 72:
            raise ValueError("password must be at most 72 bytes")
        return value


class UserLogin(BaseModel):
    email: str = Field(max_length=255)
    password: str = Field(max_length=72)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


# --- Ledger ---

class LedgerEntryResponse(BaseModel):
    id: int
    account_id: int
    booking_id: int | None
    amount: Decimal
    direction: EntryDirection
    description: str
    balance_before: Decimal
    balance_after: Decimal
    timestamp: datetime | None


# --- Service catalog ---

class ServiceBase(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str = Field("", max_length=2000)
    price: Decimal = Field(gt=0, le=_MAX_AMOUNT, decimal_places=2)


class ServiceCreate(ServiceBase):
    pass


class ServiceUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=200)
    description: str | None = Field(None, max_length=2000)
    price: Decimal | None = Field(None, gt=0, le=_MAX_AMOUNT, decimal_places=2)
    is_active: bool | None = None


class ServiceResponse(ServiceBase):
    id: int
    provider_id: int
    provider_name: str | None = None
    is_active: bool
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


# --- Booking ---

class BookingCreate(BaseModel):
    service_id: int = Field(gt=0)


class BookingCancel(BaseModel):
    cancellation_reason: str | None = Field(
        None, max_length=settings.CANCELLATION_REASON_MAX_LENGTH
    )


class BookingResponse(BaseModel):
    id: int
    client_id: int
    client_name: str
    service_id: int
    service_name: str
    provider_id: int
    provider_name: str
    amount: Decimal
    status: BookingStatus
    created_at: datetime
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None


class BookingFilters(BaseModel):
    """Query-side filters for booking history; all predicates are optional."""

    start_date: datetime | None = None
    end_date: datetime | None = None
    status: BookingStatus | None = None
    client_id: int | None = None
    provider_id: int | None = None
    service_id: int | None = None
    min_amount: Decimal | None = Field(None, ge=0)
    max_amount: Decimal | None = Field(None, ge=0)
    sort_by: Literal["created_at", "amount", "status"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"
    limit: int = Field(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE)
    offset: int = Field(0, ge=0)

    @model_validator(mode="after")
    def _check_ranges(self) -> "BookingFilters":
        if (
            self.min_amount is not None
            and self.max_amount is not None
            and self.min_amount > self.max_amount
        ):
            raise ValueError("min_amount cannot be greater than max_amount")
        if (
            self.start_date is not None
            and self.end_date is not None
            and self.start_date > self.end_date
        ):
            raise ValueError("start_date cannot be after end_date")
        return self


class BookingPage(BaseModel):
    items: list[dict]
    total: int
    has_more: bool
    limit: int
    offset: int


class BookingStats(BaseModel):
    total_bookings: int
    confirmed_bookings: int
    cancelled_bookings: int
    total_revenue: Decimal
    average_booking_amount: Decimal
    cancellation_rate: float


class UserBookingSummary(BaseModel):
    user_id: int
    role: UserRole
    total_bookings: int
    confirmed_bookings: int
    cancelled_bookings: int
    total_amount: Decimal
    recent_bookings: list[dict] = []


# --- Pagination ---

class PaginatedResponse(BaseModel):
    items: list  # Will be typed in router
    total: int
    page: int
    page_size: int
    pages: int


# --- Metrics ---

class MetricsResponse(BaseModel):
    total_users: int
    total_services: int
    total_ledger_entries: int
    bookings: BookingStats
    cache_info: dict = {}
