"""
Atomic units for ledger-touching operations.

Design notes
------------
- ``AtomicContext`` is the explicit handle every mutating call of the
  Account Store, Ledger Recorder and booking writes requires.  Holding one
  proves the caller is inside a unit opened by ``TransactionRunner``; a
  context that outlives its unit refuses further use.
- One unit == one session == one database transaction.  The runner owns
  begin / commit / rollback; nothing below it commits.
- PostgreSQL units request SERIALIZABLE isolation.  Correctness does not
  depend on it: the Account Store also guards every debit with a
  conditional UPDATE, so weaker isolation cannot produce a lost update.
- The unit body is bounded by ``TRANSACTION_TIMEOUT_SECONDS``.  Once the
  body has finished the commit runs as its own task; a cancelled caller
  waits for it to finish and never rolls a started commit back.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace.config import settings
from marketplace.errors import ConflictError, LedgerError, StorageFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

# serialization_failure, deadlock_detected, lock_not_available
_RETRIABLE_SQLSTATES: frozenset[str] = frozenset({"40001", "40P01", "55P03"})


class AtomicContext:
    """Handle on the session of one open atomic unit."""

    __slots__ = ("_session", "_open")

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._open = True

    @property
    def session(self) -> AsyncSession:
        if not self._open:
            raise RuntimeError("AtomicContext used after its unit finished")
        return self._session

    @property
    def is_open(self) -> bool:
        return self._open

    def close(self) -> None:
        self._open = False


def translate_db_error(exc: SQLAlchemyError) -> LedgerError:
    """Map a driver error to ``ConflictError`` (contention) or ``StorageFailure``."""
    if isinstance(exc, DBAPIError):
        orig = exc.orig
        sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        if sqlstate in _RETRIABLE_SQLSTATES:
            return ConflictError("Transaction conflicted with a concurrent update", sqlstate=sqlstate)
        # SQLite reports writer contention as an OperationalError.
        if "database is locked" in str(orig):
            return ConflictError("Database is locked by a concurrent transaction")
    return StorageFailure(f"Storage error: {exc.__class__.__name__}", cause=str(exc))


class TransactionRunner:
    """
    Opens atomic units on a session factory.

    ``run(work)`` calls ``work(ctx)`` inside a fresh transaction and
    commits on success.  Any exception rolls the whole unit back, so a
    failed unit leaves no balance change, ledger entry or booking write.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timeout: Optional[float] = None,
        isolation_level: str = "SERIALIZABLE",
    ) -> None:
        self._session_factory = session_factory
        self._timeout = timeout if timeout is not None else settings.TRANSACTION_TIMEOUT_SECONDS
        self._isolation_level = isolation_level

    async def run(self, work: Callable[[AtomicContext], Awaitable[T]]) -> T:
        async with self._session_factory() as session:
            ctx = AtomicContext(session)
            commit: Optional[asyncio.Task] = None
            try:
                await self._begin(session)
                result = await asyncio.wait_for(self._execute(work, ctx), timeout=self._timeout)
                ctx.close()
                commit = asyncio.ensure_future(session.commit())
                await asyncio.shield(commit)
            except asyncio.CancelledError:
                ctx.close()
                if commit is None:
                    await session.rollback()
                else:
                    # The commit is already on the wire: let it land, never roll it back.
                    await self._settle(commit)
                raise
            except asyncio.TimeoutError as exc:
                ctx.close()
                await session.rollback()
                logger.warning("Atomic unit exceeded %.1fs, rolled back", self._timeout)
                raise ConflictError(
                    "Transaction could not complete in time", timeout=self._timeout
                ) from exc
            except LedgerError:
                ctx.close()
                await session.rollback()
                raise
            except SQLAlchemyError as exc:
                ctx.close()
                await session.rollback()
                error = translate_db_error(exc)
                logger.warning("Atomic unit failed: %s (%s)", error.code, exc.__class__.__name__)
                raise error from exc
            except BaseException:
                ctx.close()
                if commit is None or commit.done():
                    await session.rollback()
                raise
            return result

    @staticmethod
    async def _settle(commit: asyncio.Task) -> None:
        """Wait for an in-flight commit to finish, absorbing repeated cancellation."""
        while not commit.done():
            try:
                await asyncio.wait({commit})
            except asyncio.CancelledError:
                continue
        if commit.cancelled():
            return
        exc = commit.exception()
        if exc is None:
            logger.info("Caller cancelled during commit; unit committed")
        else:
            logger.warning("Commit failed after caller cancelled: %s", exc.__class__.__name__)

    @asynccontextmanager
    async def read(self) -> AsyncIterator[AsyncSession]:
        """Yield a session for read-only work (fast-fail checks, queries)."""
        async with self._session_factory() as session:
            try:
                yield session
            except SQLAlchemyError as exc:
                raise translate_db_error(exc) from exc

    async def _begin(self, session: AsyncSession) -> None:
        if session.get_bind().dialect.name == "postgresql":
            await session.connection(execution_options={"isolation_level": self._isolation_level})

    @staticmethod
    async def _execute(work: Callable[[AtomicContext], Awaitable[T]], ctx: AtomicContext) -> T:
        result = await work(ctx)
        # Surface constraint violations inside the timed body, not at commit.
        await ctx.session.flush()
        return result
