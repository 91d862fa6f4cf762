from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.database import get_db
from marketplace.dependencies import PaginationParams, require_role
from marketplace.models import UserRole
from marketplace.schemas import PaginatedResponse, ServiceCreate, ServiceResponse, ServiceUpdate
from marketplace.security import Principal
from marketplace.services import catalog_service

router = APIRouter(prefix="/api/v1/services", tags=["services"])


@router.get("", response_model=PaginatedResponse)
async def list_services(
    pagination: PaginationParams = Depends(),
    provider_id: int | None = Query(None, description="Only services of this provider."),
    db: AsyncSession = Depends(get_db),
):
    return await catalog_service.get_services(
        db,
        pagination.page,
        pagination.page_size,
        pagination.sort_by,
        pagination.sort_order,
        provider_id=provider_id,
    )


@router.get("/{service_id}", response_model=ServiceResponse)
async def get_service(service_id: int, db: AsyncSession = Depends(get_db)):
    service = await catalog_service.get_service(db, service_id)
    if not service:
        raise HTTPException(status_code=404, detail="Service not found")
    return service


@router.post("", status_code=201, response_model=ServiceResponse)
async def create_service(
    data: ServiceCreate,
    principal: Principal = Depends(require_role(UserRole.PROVIDER)),
    db: AsyncSession = Depends(get_db),
):
    return await catalog_service.create_service(db, principal.user_id, data)


@router.put("/{service_id}", response_model=ServiceResponse)
async def update_service(
    service_id: int,
    data: ServiceUpdate,
    principal: Principal = Depends(require_role(UserRole.PROVIDER)),
    db: AsyncSession = Depends(get_db),
):
    return await catalog_service.update_service(db, service_id, principal.user_id, data)


@router.delete("/{service_id}", status_code=204)
async def deactivate_service(
    service_id: int,
    principal: Principal = Depends(require_role(UserRole.PROVIDER)),
    db: AsyncSession = Depends(get_db),
):
    await catalog_service.deactivate_service(db, service_id, principal.user_id)
