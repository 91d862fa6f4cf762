from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.database import get_db
from marketplace.dependencies import get_current_principal, get_transfer_engine
from marketplace.schemas import (
    BalanceResponse,
    LedgerEntryResponse,
    UserBookingSummary,
    UserPublic,
    UserResponse,
)
from marketplace.security import Principal
from marketplace.services import booking_query, user_service
from marketplace.services.ledger_recorder import entry_to_dict
from marketplace.services.transfer_engine import TransferEngine

router = APIRouter(prefix="/api/v1/users", tags=["users"])


@router.get("", response_model=list[UserPublic])
async def list_users(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    return await user_service.get_users(db)


@router.get("/me", response_model=UserResponse)
async def get_profile(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    user = await user_service.get_user(db, principal.user_id, private=True)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.get("/me/balance", response_model=BalanceResponse)
async def get_balance(
    principal: Principal = Depends(get_current_principal),
    transfers: TransferEngine = Depends(get_transfer_engine),
    db: AsyncSession = Depends(get_db),
):
    balance = await transfers.accounts.read_balance(db, principal.user_id)
    return BalanceResponse(user_id=principal.user_id, balance=balance)


@router.get("/me/ledger", response_model=list[LedgerEntryResponse])
async def get_ledger(
    limit: int = Query(settings.LEDGER_HISTORY_LIMIT, ge=1, le=settings.MAX_PAGE_SIZE),
    principal: Principal = Depends(get_current_principal),
    transfers: TransferEngine = Depends(get_transfer_engine),
    db: AsyncSession = Depends(get_db),
):
    return [entry_to_dict(e) async for e in transfers.ledger.history(db, principal.user_id, limit)]


@router.get("/me/summary", response_model=UserBookingSummary)
async def get_summary(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    return await booking_query.user_booking_summary(db, principal.user_id, principal.role)


@router.get("/{user_id}", response_model=UserPublic)
async def get_user(
    user_id: int,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    user = await user_service.get_user(db, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user
