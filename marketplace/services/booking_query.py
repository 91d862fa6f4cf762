"""
Booking query layer: read-side filtering, sorting and pagination.

Predicate placement
-------------------
Every predicate of ``BookingFilters`` (client / provider / service /
status equality, created_at range, amount range) is pushed down into the
SQL WHERE clause, and sorting plus LIMIT/OFFSET run in the database.
Nothing is filtered in memory, so page boundaries are computed over the
same row set the COUNT sees.

The order is made total by appending ``Booking.id`` to every sort, which
keeps offset slices disjoint for identical filters.

Known limitation: COUNT and the page SELECT are two statements without a
shared snapshot, so a booking created or cancelled between them (or
between two page requests) can shift rows across pages.
"""
import logging
from decimal import Decimal

from sqlalchemy import asc, case, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.domain import booking_from_row, to_money
from marketplace.models import Booking, BookingStatus, UserRole
from marketplace.schemas import BookingFilters, BookingPage, BookingStats, UserBookingSummary

logger = logging.getLogger(__name__)

# Columns that are safe to sort by; guards against arbitrary attribute access.
_SORTABLE_COLUMNS: frozenset[str] = frozenset({"created_at", "amount", "status"})


def _resolve_sort_column(sort_by: str):
    if sort_by in _SORTABLE_COLUMNS:
        return getattr(Booking, sort_by)
    return Booking.created_at


def _where_clauses(filters: BookingFilters) -> list:
    clauses = []
    if filters.client_id is not None:
        clauses.append(Booking.client_id == filters.client_id)
    if filters.provider_id is not None:
        clauses.append(Booking.provider_id == filters.provider_id)
    if filters.service_id is not None:
        clauses.append(Booking.service_id == filters.service_id)
    if filters.status is not None:
        clauses.append(Booking.status == filters.status)
    if filters.start_date is not None:
        clauses.append(Booking.created_at >= filters.start_date)
    if filters.end_date is not None:
        clauses.append(Booking.created_at <= filters.end_date)
    if filters.min_amount is not None:
        clauses.append(Booking.amount >= to_money(filters.min_amount))
    if filters.max_amount is not None:
        clauses.append(Booking.amount <= to_money(filters.max_amount))
    return clauses


async def search_bookings(db: AsyncSession, filters: BookingFilters) -> BookingPage:
    """
    Return one page of bookings matching *filters* plus the total count.

    Two SQL statements are issued: COUNT over the filtered set, then the
    sorted page with LIMIT/OFFSET.
    """
    clauses = _where_clauses(filters)

    count_q = select(func.count()).select_from(Booking).where(*clauses)
    total: int = (await db.execute(count_q)).scalar_one()

    sort_col = _resolve_sort_column(filters.sort_by)
    direction = desc if filters.sort_order == "desc" else asc
    page_q = (
        select(Booking)
        .where(*clauses)
        .order_by(direction(sort_col), direction(Booking.id))
        .offset(filters.offset)
        .limit(filters.limit)
    )
    rows = (await db.execute(page_q)).scalars().all()

    items = [booking_from_row(r).to_dict() for r in rows]
    return BookingPage(
        items=items,
        total=total,
        has_more=filters.offset + len(items) < total,
        limit=filters.limit,
        offset=filters.offset,
    )


async def booking_stats(db: AsyncSession, filters: BookingFilters | None = None) -> BookingStats:
    """
    Aggregate counts and amounts over the bookings matching *filters*.

    Revenue only counts confirmed bookings (cancelled ones were refunded).
    """
    clauses = _where_clauses(filters) if filters is not None else []
    confirmed = Booking.status == BookingStatus.CONFIRMED
    q = select(
        func.count(),
        func.coalesce(func.sum(case((confirmed, 1), else_=0)), 0),
        func.coalesce(func.sum(case((confirmed, Booking.amount), else_=0)), 0),
        func.coalesce(func.sum(Booking.amount), 0),
    ).select_from(Booking).where(*clauses)
    total, confirmed_count, revenue, gross = (await db.execute(q)).one()

    total = int(total)
    confirmed_count = int(confirmed_count)
    cancelled_count = total - confirmed_count
    return BookingStats(
        total_bookings=total,
        confirmed_bookings=confirmed_count,
        cancelled_bookings=cancelled_count,
        total_revenue=to_money(revenue),
        average_booking_amount=to_money(Decimal(str(gross)) / total) if total else to_money(0),
        cancellation_rate=round(cancelled_count / total * 100, 2) if total else 0.0,
    )


async def user_booking_summary(
    db: AsyncSession, user_id: int, role: UserRole, recent_limit: int = 5
) -> UserBookingSummary:
    """
    Summarise a user's bookings from their side of the ledger.

    ``total_amount`` is negative for clients (money spent) and positive
    for providers (money earned), counting confirmed bookings only.
    """
    filters = BookingFilters(
        client_id=user_id if role is UserRole.CLIENT else None,
        provider_id=user_id if role is not UserRole.CLIENT else None,
        limit=recent_limit,
    )
    stats = await booking_stats(db, filters)
    recent = await search_bookings(db, filters)
    total_amount = stats.total_revenue
    if role is UserRole.CLIENT and total_amount:
        total_amount = -total_amount
    return UserBookingSummary(
        user_id=user_id,
        role=role,
        total_bookings=stats.total_bookings,
        confirmed_bookings=stats.confirmed_bookings,
        cancelled_bookings=stats.cancelled_bookings,
        total_amount=total_amount,
        recent_bookings=recent.items,
    )
