"""
Catalog service: CRUD for the services providers offer.

Design notes
------------
- List/detail reads go through the cache-aside pattern (Redis, falling
  back to the database).  Cache keys encode every dimension that affects
  the result; every write invalidates the list cache and the detail key.
- The provider is eager-loaded with ``joinedload`` to avoid N+1 queries
  when the list view needs ``provider_name``.
- Changing a price never touches existing bookings: a booking copies the
  price at creation time.
- Service functions flush but do not commit; the transaction boundary is
  owned by the ``get_db`` dependency in the router layer.
"""
import logging
import math

from sqlalchemy import asc, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from marketplace.cache import cache
from marketplace.config import settings
from marketplace.domain import to_money
from marketplace.errors import InactiveError, NotFoundError, UnauthorizedError
from marketplace.models import Service, User, UserRole
from marketplace.schemas import PaginatedResponse, ServiceCreate, ServiceUpdate

logger = logging.getLogger(__name__)

_SORTABLE_COLUMNS: frozenset[str] = frozenset({"created_at", "price", "name"})


def _resolve_sort_column(sort_by: str):
    """Return the column for *sort_by*, falling back to ``created_at``."""
    if sort_by in _SORTABLE_COLUMNS:
        return getattr(Service, sort_by)
    return Service.created_at


def _service_to_dict(service: Service) -> dict:
    return {
        "id": service.id,
        "name": service.name,
        "description": service.description,
        "price": str(to_money(service.price)),
        "provider_id": service.provider_id,
        "provider_name": service.provider.full_name if service.provider else None,
        "is_active": service.is_active,
        "created_at": service.created_at.isoformat() if service.created_at else None,
    }


async def _load_service(db: AsyncSession, service_id: int) -> Service | None:
    q = (
        select(Service)
        .where(Service.id == service_id)
        .options(joinedload(Service.provider))
        .execution_options(populate_existing=True)
    )
    return (await db.execute(q)).unique().scalar_one_or_none()


async def _require_owner(db: AsyncSession, service_id: int, provider_id: int) -> Service:
    service = await _load_service(db, service_id)
    if service is None:
        raise NotFoundError(f"Service {service_id} not found", service_id=service_id)
    if service.provider_id != provider_id:
        raise UnauthorizedError(
            "You can only modify your own services", service_id=service_id, user_id=provider_id
        )
    return service


# ---------------------------------------------------------------------------
# Public service functions
# ---------------------------------------------------------------------------

async def get_services(
    db: AsyncSession,
    page: int = 1,
    page_size: int = 20,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    provider_id: int | None = None,
) -> PaginatedResponse:
    """Return a paginated list of active services, cached in Redis."""

    async def load() -> dict:
        clauses = [Service.is_active.is_(True)]
        if provider_id is not None:
            clauses.append(Service.provider_id == provider_id)

        total: int = (
            await db.execute(select(func.count()).select_from(Service).where(*clauses))
        ).scalar_one()

        sort_col = _resolve_sort_column(sort_by)
        order_expr = desc(sort_col) if sort_order == "desc" else asc(sort_col)
        q = (
            select(Service)
            .where(*clauses)
            .options(joinedload(Service.provider))
            .order_by(order_expr, Service.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        services = (await db.execute(q)).unique().scalars().all()
        return PaginatedResponse(
            items=[_service_to_dict(s) for s in services],
            total=total,
            page=page,
            page_size=page_size,
            pages=math.ceil(total / page_size) if total > 0 else 0,
        ).model_dump(mode="json")

    key = cache.list_key(page, page_size, sort_by, sort_order, provider_id)
    data = await cache.get_or_load(key, load, ttl=settings.CACHE_TTL_LIST)
    return PaginatedResponse(**data)


async def get_service(db: AsyncSession, service_id: int) -> dict | None:
    """Return the detail dict for *service_id*, or None when it does not exist."""

    async def load() -> dict | None:
        service = await _load_service(db, service_id)
        return _service_to_dict(service) if service is not None else None

    return await cache.get_or_load(
        cache.detail_key(service_id), load, ttl=settings.CACHE_TTL_DETAIL
    )


async def create_service(db: AsyncSession, provider_id: int, data: ServiceCreate) -> dict:
    """Create a service owned by *provider_id* (must be an active provider)."""
    provider = await db.get(User, provider_id)
    if provider is None:
        raise NotFoundError(f"Provider {provider_id} not found", provider_id=provider_id)
    if provider.role != UserRole.PROVIDER:
        raise UnauthorizedError("Only providers can create services", user_id=provider_id)
    if not provider.is_active:
        raise InactiveError("Provider account is not active", provider_id=provider_id)

    service = Service(
        name=data.name.strip(),
        description=data.description.strip(),
        price=to_money(data.price),
        provider_id=provider_id,
        is_active=True,
    )
    db.add(service)
    await db.flush()

    await cache.invalidate()
    logger.info("Service %s created by provider %s at %s", service.id, provider_id, service.price)
    return _service_to_dict(await _load_service(db, service.id))


async def update_service(
    db: AsyncSession, service_id: int, provider_id: int, data: ServiceUpdate
) -> dict:
    """
    Partially update a service owned by *provider_id*.

    Only fields explicitly set in the payload are modified.
    """
    service = await _require_owner(db, service_id, provider_id)
    for field, value in data.model_dump(exclude_unset=True).items():
        if value is None:
            continue
        if field == "price":
            value = to_money(value)
        setattr(service, field, value)
    await db.flush()

    await cache.invalidate(service_id)
    return _service_to_dict(await _load_service(db, service_id))


async def deactivate_service(db: AsyncSession, service_id: int, provider_id: int) -> None:
    """
    Deactivate (soft-delete) a service.  Bookings reference services, so
    rows are never removed; existing bookings stay cancellable.
    """
    service = await _require_owner(db, service_id, provider_id)
    service.is_active = False
    await db.flush()
    await cache.invalidate(service_id)
