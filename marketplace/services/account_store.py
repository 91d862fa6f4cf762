"""
Account Store: current balance of each account (one account per user).

Balances are only ever changed through ``apply_delta``, which requires an
``AtomicContext`` and never opens or commits a transaction itself, so the
change composes with the booking write of the caller's unit.

``apply_delta`` is a compare-and-set: the row is locked (``FOR UPDATE``)
to report existence / activity precisely, then changed with a
conditional ``UPDATE ... WHERE balance + delta >= 0``.  The condition is
evaluated against the committed row at write time, so two concurrent
debits can never both pass on a balance that only covers one of them.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.atomic import AtomicContext
from marketplace.domain import to_money
from marketplace.errors import InactiveError, InsufficientFundsError, NotFoundError
from marketplace.models import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BalanceChange:
    account_id: int
    balance_before: Decimal
    balance_after: Decimal


class AccountStore:
    """Account lookup and conditional balance adjustment."""

    async def get_account(self, session: AsyncSession, account_id: int) -> User:
        """
        Return the ``User`` row backing *account_id* (role, active flag,
        balance).  Raises ``NotFoundError`` when it does not exist.
        """
        user = await session.get(User, account_id, populate_existing=True)
        if user is None:
            raise NotFoundError(f"Account {account_id} not found", account_id=account_id)
        return user

    async def read_balance(self, session: AsyncSession, account_id: int) -> Decimal:
        user = await self.get_account(session, account_id)
        if not user.is_active:
            raise NotFoundError(f"Account {account_id} is deactivated", account_id=account_id)
        return to_money(user.balance)

    async def apply_delta(
        self, ctx: AtomicContext, account_id: int, signed_amount: Decimal
    ) -> BalanceChange:
        """
        Add *signed_amount* to the balance of *account_id* inside *ctx*.

        Raises ``NotFoundError``, ``InactiveError`` or
        ``InsufficientFundsError``; the caller's unit is expected to roll
        back on any of them.
        """
        if not isinstance(ctx, AtomicContext):
            raise TypeError("apply_delta requires an AtomicContext")
        session = ctx.session
        delta = to_money(signed_amount)

        locked = await session.execute(
            select(User.id, User.is_active, User.balance)
            .where(User.id == account_id)
            .with_for_update()
        )
        row = locked.one_or_none()
        if row is None:
            raise NotFoundError(f"Account {account_id} not found", account_id=account_id)
        if not row.is_active:
            raise InactiveError(f"Account {account_id} is inactive", account_id=account_id)

        result = await session.execute(
            update(User)
            .where(
                User.id == account_id,
                User.is_active.is_(True),
                User.balance + delta >= 0,
            )
            .values(balance=User.balance + delta, updated_at=func.now())
            .returning(User.balance)
            .execution_options(synchronize_session=False)
        )
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            current = to_money(row.balance)
            logger.warning(
                "Debit rejected for account %s: balance %s, delta %s", account_id, current, delta
            )
            raise InsufficientFundsError(
                f"Insufficient balance. Current: {current}, Required: {-delta}",
                account_id=account_id,
                current_balance=current,
                required_amount=-delta,
            )

        after = to_money(new_balance)
        return BalanceChange(account_id=account_id, balance_before=to_money(after - delta), balance_after=after)
