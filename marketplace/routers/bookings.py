from datetime import datetime
from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.database import get_db
from marketplace.dependencies import get_booking_manager, get_current_principal, require_role
from marketplace.models import BookingStatus, UserRole
from marketplace.schemas import BookingCancel, BookingCreate, BookingFilters, BookingPage, BookingResponse
from marketplace.security import Principal
from marketplace.services import booking_query
from marketplace.services.booking_manager import BookingManager

router = APIRouter(prefix="/api/v1/bookings", tags=["bookings"])


def _own_side(principal: Principal) -> dict:
    """Restrict a query to the caller's side of their bookings."""
    if principal.role is UserRole.CLIENT:
        return {"client_id": principal.user_id}
    return {"provider_id": principal.user_id}


@router.post("", status_code=201, response_model=BookingResponse)
async def create_booking(
    data: BookingCreate,
    principal: Principal = Depends(require_role(UserRole.CLIENT)),
    manager: BookingManager = Depends(get_booking_manager),
):
    booking = await manager.create(principal.user_id, data.service_id)
    return booking.to_dict()


@router.put("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: int,
    data: BookingCancel | None = None,
    principal: Principal = Depends(get_current_principal),
    manager: BookingManager = Depends(get_booking_manager),
):
    reason = data.cancellation_reason if data else None
    booking = await manager.cancel(booking_id, principal.user_id, principal.role, reason)
    return booking.to_dict()


@router.get("/my", response_model=BookingPage)
async def my_bookings(
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    filters = BookingFilters(limit=limit, offset=offset, **_own_side(principal))
    return await booking_query.search_bookings(db, filters)


@router.get("/history", response_model=BookingPage)
async def booking_history(
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    status: BookingStatus | None = None,
    service_id: int | None = None,
    min_amount: Decimal | None = Query(None, ge=0),
    max_amount: Decimal | None = Query(None, ge=0),
    sort_by: Literal["created_at", "amount", "status"] = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    try:
        filters = BookingFilters(
            start_date=start_date,
            end_date=end_date,
            status=status,
            service_id=service_id,
            min_amount=min_amount,
            max_amount=max_amount,
            sort_by=sort_by,
            sort_order=sort_order,
            limit=limit,
            offset=offset,
            **_own_side(principal),
        )
    except ValidationError as exc:
        raise HTTPException(
            status_code=422,
            detail=[{"loc": e["loc"], "msg": e["msg"]} for e in exc.errors()],
        )
    return await booking_query.search_bookings(db, filters)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: int,
    principal: Principal = Depends(get_current_principal),
    manager: BookingManager = Depends(get_booking_manager),
):
    booking = await manager.get(booking_id)
    if principal.user_id not in (booking.client_id, booking.provider_id):
        raise HTTPException(status_code=403, detail="You are not a party to this booking")
    return booking.to_dict()
