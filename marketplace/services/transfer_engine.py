"""
Balance Transfer Engine: all-or-nothing multi-account balance moves.

Design notes
------------
- A ``TransferOperation`` is an in-memory descriptor: an ordered list of
  ``BalanceLeg`` values plus the booking they belong to.  It is never
  persisted; its effects are the balance changes and the ledger entries.
- ``execute`` first applies every leg through the Account Store, then
  writes one ledger entry per leg, all inside one ``AtomicContext``.  The
  first failing leg raises; the unit rolls back, so neither balance
  changes nor entries of that attempt survive.
- Leg amounts are validated strictly positive when the leg is built.  A
  zero or negative amount is a programming error (``ValueError``), not a
  business failure.
- Legs are applied in the order given.  The booking helpers put the debit
  first so an insufficient balance is always attributed to the paying
  side.
- The engine knows nothing about bookings beyond carrying ``booking_id``
  onto the ledger entries.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.atomic import AtomicContext, TransactionRunner
from marketplace.domain import to_money
from marketplace.errors import LedgerError, NotFoundError
from marketplace.models import EntryDirection
from marketplace.services.account_store import AccountStore
from marketplace.services.ledger_recorder import LedgerRecorder

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Descriptors
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BalanceLeg:
    """One (account, signed amount, description) component of a transfer."""

    account_id: int
    amount: Decimal
    description: str

    def __post_init__(self) -> None:
        amount = to_money(self.amount)
        if amount == 0:
            raise ValueError("Balance leg amount must be non-zero")
        object.__setattr__(self, "amount", amount)

    @classmethod
    def debit(cls, account_id: int, amount, description: str) -> "BalanceLeg":
        return cls(account_id, -_positive(amount), description)

    @classmethod
    def credit(cls, account_id: int, amount, description: str) -> "BalanceLeg":
        return cls(account_id, _positive(amount), description)

    @property
    def direction(self) -> EntryDirection:
        return EntryDirection.DEBIT if self.amount < 0 else EntryDirection.CREDIT


@dataclass(frozen=True)
class TransferOperation:
    legs: tuple[BalanceLeg, ...]
    booking_id: Optional[int] = None
    description: str = ""

    def __post_init__(self) -> None:
        if not self.legs:
            raise ValueError("A transfer needs at least one leg")
        object.__setattr__(self, "legs", tuple(self.legs))


@dataclass(frozen=True)
class LegResult:
    account_id: int
    success: bool
    balance_before: Decimal
    balance_after: Decimal
    entry_id: Optional[int] = None


@dataclass(frozen=True)
class BalanceCheck:
    is_valid: bool
    current_balance: Decimal
    required_amount: Decimal
    shortfall: Optional[Decimal] = None
    error: Optional[str] = field(default=None)


def _positive(amount) -> Decimal:
    value = to_money(amount)
    if value <= 0:
        raise ValueError(f"Leg amount must be strictly positive, got {value}")
    return value


# ---------------------------------------------------------------------------
# Canonical booking leg-sets
# ---------------------------------------------------------------------------

def payment_operation(
    client_id: int, provider_id: int, amount, booking_id: int, service_name: str
) -> TransferOperation:
    """Client debit + provider credit for a new booking."""
    return TransferOperation(
        legs=(
            BalanceLeg.debit(client_id, amount, f"Payment for service: {service_name}"),
            BalanceLeg.credit(provider_id, amount, f"Payment received for service: {service_name}"),
        ),
        booking_id=booking_id,
        description=f"Booking payment for service: {service_name} ({booking_id})",
    )


def refund_operation(
    client_id: int, provider_id: int, amount, booking_id: int, service_name: str
) -> TransferOperation:
    """Provider debit + client credit reversing a booking, always the full amount."""
    return TransferOperation(
        legs=(
            BalanceLeg.debit(provider_id, amount, f"Refund issued for cancelled booking: {service_name}"),
            BalanceLeg.credit(client_id, amount, f"Refund for cancelled booking: {service_name}"),
        ),
        booking_id=booking_id,
        description=f"Refund for cancelled booking: {service_name} ({booking_id})",
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class TransferEngine:

    def __init__(
        self,
        runner: TransactionRunner,
        accounts: Optional[AccountStore] = None,
        ledger: Optional[LedgerRecorder] = None,
    ) -> None:
        self._runner = runner
        self.accounts = accounts or AccountStore()
        self.ledger = ledger or LedgerRecorder()

    async def execute(
        self, operation: TransferOperation, ctx: Optional[AtomicContext] = None
    ) -> list[LegResult]:
        """
        Apply every leg of *operation* as one atomic unit.

        With *ctx* the legs join the caller's unit (booking create/cancel);
        without it the engine opens and commits its own.
        """
        if ctx is None:
            return await self._runner.run(lambda unit: self._apply(operation, unit))
        return await self._apply(operation, ctx)

    async def _apply(self, operation: TransferOperation, ctx: AtomicContext) -> list[LegResult]:
        changes = []
        for index, leg in enumerate(operation.legs):
            try:
                change = await self.accounts.apply_delta(ctx, leg.account_id, leg.amount)
            except LedgerError as exc:
                exc.details.setdefault("leg_index", index)
                exc.details.setdefault("account_id", leg.account_id)
                logger.warning(
                    "Transfer leg %d failed for booking %s: %s",
                    index, operation.booking_id, exc.code,
                )
                raise
            changes.append(change)

        results = []
        for leg, change in zip(operation.legs, changes):
            entry_id = await self.ledger.record(
                ctx,
                account_id=leg.account_id,
                booking_id=operation.booking_id,
                amount=abs(leg.amount),
                direction=leg.direction,
                description=leg.description,
                balance_before=change.balance_before,
                balance_after=change.balance_after,
            )
            results.append(
                LegResult(
                    account_id=leg.account_id,
                    success=True,
                    balance_before=change.balance_before,
                    balance_after=change.balance_after,
                    entry_id=entry_id,
                )
            )
        return results

    # ------------------------------------------------------------------
    # Standalone operations
    # ------------------------------------------------------------------

    async def verify_balance(
        self, session: AsyncSession, account_id: int, required_amount
    ) -> BalanceCheck:
        """Read-only affordability check; never a substitute for ``execute``."""
        required = to_money(required_amount)
        account = await self.accounts.get_account(session, account_id)
        current = to_money(account.balance)
        if not account.is_active:
            return BalanceCheck(False, current, required, error="User account is inactive")
        if current < required:
            return BalanceCheck(False, current, required, shortfall=required - current,
                                error="Insufficient balance")
        return BalanceCheck(True, current, required)

    async def top_up(self, account_id: int, amount, description: str = "Balance top-up") -> LegResult:
        """Credit *account_id* in its own unit (funding outside any booking)."""
        [result] = await self.execute(
            TransferOperation(legs=(BalanceLeg.credit(account_id, amount, description),))
        )
        logger.info("Account %s topped up by %s", account_id, to_money(amount))
        return result

    async def compensate(self, entry_id: int) -> LegResult:
        """
        Record the reverse of ledger entry *entry_id* as a new entry.

        History is never edited; the compensating leg carries the original
        booking id and a ``Rollback:`` description.
        """
        async def work(ctx: AtomicContext) -> list[LegResult]:
            original = await self.ledger.get_entry(ctx.session, entry_id)
            if original is None:
                raise NotFoundError(f"Ledger entry {entry_id} not found", entry_id=entry_id)
            description = f"Rollback: {original.description}"
            if EntryDirection(original.direction) is EntryDirection.DEBIT:
                leg = BalanceLeg.credit(original.account_id, original.amount, description)
            else:
                leg = BalanceLeg.debit(original.account_id, original.amount, description)
            operation = TransferOperation(legs=(leg,), booking_id=original.booking_id)
            return await self._apply(operation, ctx)

        [result] = await self._runner.run(work)
        logger.info("Ledger entry %s compensated by entry %s", entry_id, result.entry_id)
        return result
