from fastapi import Depends, HTTPException, Query, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace.atomic import TransactionRunner
from marketplace.config import settings
from marketplace.database import get_session_factory
from marketplace.models import UserRole
from marketplace.security import Principal, decode_access_token
from marketplace.services.booking_manager import BookingManager
from marketplace.services.transfer_engine import TransferEngine

bearer_scheme = HTTPBearer(auto_error=False)


class PaginationParams:
    """
    Reusable FastAPI dependency that parses and validates pagination /
    sorting query parameters for the service catalog.

    Attributes
    ----------
    page:
        1-based page number (minimum 1).
    page_size:
        Number of items per page, clamped to ``settings.MAX_PAGE_SIZE``.
    sort_by:
        Column name to sort by; validated by the service layer.
    sort_order:
        ``"asc"`` or ``"desc"`` (enforced by the regex pattern).
    """

    def __init__(
        self,
        page: int = Query(1, ge=1, description="Page number (1-based)."),
        page_size: int = Query(
            settings.DEFAULT_PAGE_SIZE,
            ge=1,
            le=100,
            description="Number of items returned per page (max 100).",
        ),
        sort_by: str = Query("created_at", description="Column name to sort results by."),
        sort_order: str = Query(
            "desc", pattern="^(asc|desc)$", description="Sort direction: 'asc' or 'desc'."
        ),
    ) -> None:
        self.page = page
        self.page_size = min(page_size, settings.MAX_PAGE_SIZE)
        self.sort_by = sort_by
        self.sort_order = sort_order

    @property
    def offset(self) -> int:
        """SQL OFFSET value computed from the current page and page size."""
        return (self.page - 1) * self.page_size


# ---------------------------------------------------------------------------
# Caller identity
# ---------------------------------------------------------------------------

async def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Principal:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    principal = decode_access_token(credentials.credentials)
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal


def require_role(role: UserRole):
    """Dependency factory restricting an endpoint to one role."""

    async def _checker(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role is not role:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Only {role.value}s can perform this action",
            )
        return principal

    return _checker


# ---------------------------------------------------------------------------
# Ledger core wiring (explicit construction, no module-level singletons)
# ---------------------------------------------------------------------------

def get_transaction_runner(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> TransactionRunner:
    return TransactionRunner(session_factory)


def get_transfer_engine(
    runner: TransactionRunner = Depends(get_transaction_runner),
) -> TransferEngine:
    return TransferEngine(runner)


def get_booking_manager(
    runner: TransactionRunner = Depends(get_transaction_runner),
    transfers: TransferEngine = Depends(get_transfer_engine),
) -> BookingManager:
    return BookingManager(runner, transfers)
