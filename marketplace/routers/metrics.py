from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.cache import cache
from marketplace.database import get_db
from marketplace.models import LedgerEntry, Service, User
from marketplace.schemas import MetricsResponse
from marketplace.services import booking_query

router = APIRouter(prefix="/api/v1/metrics", tags=["metrics"])


@router.get("", response_model=MetricsResponse)
async def get_metrics(db: AsyncSession = Depends(get_db)):

    total_users = (await db.execute(select(func.count()).select_from(User))).scalar_one()

    total_services = (
        await db.execute(select(func.count()).select_from(Service).where(Service.is_active.is_(True)))
    ).scalar_one()

    total_entries = (await db.execute(select(func.count()).select_from(LedgerEntry))).scalar_one()

    return MetricsResponse(
        total_users=total_users,
        total_services=total_services,
        total_ledger_entries=total_entries,
        bookings=await booking_query.booking_stats(db),
        cache_info=cache.stats,
    )
