"""
Admin endpoints: the full user directory, account activation and funding.

Top-ups are the only way new money enters the ledger, so they are limited
to admins; every one is recorded as a credit entry like any other leg.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.database import get_db
from marketplace.dependencies import get_transfer_engine, require_role
from marketplace.models import UserRole
from marketplace.schemas import BalanceResponse, TopUpRequest, UserActiveUpdate, UserResponse
from marketplace.security import Principal
from marketplace.services import user_service
from marketplace.services.transfer_engine import TransferEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])

require_admin = require_role(UserRole.ADMIN)


@router.get("/users", response_model=list[UserResponse])
async def list_users(
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await user_service.get_users(db, private=True)


@router.get("/users/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: int,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    user = await user_service.get_user(db, user_id, private=True)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.put("/users/{user_id}/active", response_model=UserResponse)
async def set_active(
    user_id: int,
    data: UserActiveUpdate,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if user_id == principal.user_id and not data.is_active:
        raise HTTPException(status_code=400, detail="Admins cannot deactivate themselves")
    user = await user_service.set_active(db, user_id, data.is_active)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("Admin %s set user %s active=%s", principal.user_id, user_id, data.is_active)
    return user


@router.post("/users/{user_id}/top-up", response_model=BalanceResponse)
async def top_up(
    user_id: int,
    data: TopUpRequest,
    principal: Principal = Depends(require_admin),
    transfers: TransferEngine = Depends(get_transfer_engine),
):
    result = await transfers.top_up(user_id, data.amount, data.description)
    logger.info("Admin %s funded account %s with %s", principal.user_id, user_id, data.amount)
    return BalanceResponse(user_id=user_id, balance=result.balance_after)
