"""
Ledger Recorder: append-only audit trail of balance changes.

One entry is written per transfer leg, inside the same atomic unit as the
balance change it describes, so a committed entry always matches a
committed balance.  There is deliberately no update or delete: a
correction is a new compensating entry (see ``TransferEngine.compensate``).
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncIterator, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.atomic import AtomicContext
from marketplace.domain import to_money
from marketplace.models import EntryDirection, LedgerEntry


def entry_to_dict(entry: LedgerEntry) -> dict:
    return {
        "id": entry.id,
        "account_id": entry.account_id,
        "booking_id": entry.booking_id,
        "amount": str(to_money(entry.amount)),
        "direction": EntryDirection(entry.direction).value,
        "description": entry.description,
        "balance_before": str(to_money(entry.balance_before)),
        "balance_after": str(to_money(entry.balance_after)),
        "timestamp": entry.created_at.isoformat() if entry.created_at else None,
    }


class LedgerRecorder:

    async def record(
        self,
        ctx: AtomicContext,
        account_id: int,
        booking_id: Optional[int],
        amount: Decimal,
        direction: EntryDirection,
        description: str,
        balance_before: Decimal,
        balance_after: Decimal,
    ) -> int:
        """Append one entry and return its id.  Storage errors propagate."""
        if not isinstance(ctx, AtomicContext):
            raise TypeError("record requires an AtomicContext")
        entry = LedgerEntry(
            account_id=account_id,
            booking_id=booking_id,
            amount=to_money(abs(amount)),
            direction=direction,
            description=description[:255],
            balance_before=to_money(balance_before),
            balance_after=to_money(balance_after),
            created_at=datetime.now(timezone.utc),
        )
        session = ctx.session
        session.add(entry)
        await session.flush()
        return entry.id

    async def history(
        self, session: AsyncSession, account_id: int, limit: int = 50
    ) -> AsyncIterator[LedgerEntry]:
        """Yield entries for *account_id*, most recent first."""
        q = (
            select(LedgerEntry)
            .where(LedgerEntry.account_id == account_id)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
            .limit(limit)
        )
        result = await session.execute(q)
        for entry in result.scalars():
            yield entry

    async def get_entry(self, session: AsyncSession, entry_id: int) -> Optional[LedgerEntry]:
        return await session.get(LedgerEntry, entry_id)
