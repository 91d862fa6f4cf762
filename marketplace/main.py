import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from marketplace.cache import cache
from marketplace.config import settings
from marketplace.errors import ConflictError, LedgerError
from marketplace.middleware import TimingMiddleware
from marketplace.routers import admin, auth, bookings, metrics, services, users

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    configure_logging()
    try:
        await cache.connect()
    except Exception as exc:
        logger.warning("Cache unavailable, continuing without Redis: %s", exc)
    yield
    # Shutdown
    await cache.disconnect()


app = FastAPI(
    title="Booking Ledger API",
    description="Service marketplace with an atomic multi-party balance ledger",
    version="1.0.0",
    lifespan=lifespan,
)

# Middleware
app.add_middleware(TimingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error mapping
@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    headers = {"Retry-After": "1"} if isinstance(exc, ConflictError) else None
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "VALIDATION_ERROR", "message": str(exc), "details": {}},
    )


# Routers
app.include_router(auth.router)
app.include_router(users.router)
app.include_router(services.router)
app.include_router(bookings.router)
app.include_router(metrics.router)
app.include_router(admin.router)


@app.get("/health")
async def health():
    return {"status": "healthy", "version": "1.0.0"}
