"""
Booking lifecycle tests: create and cancel with the money movement they
carry, including the failure paths that must leave no trace.

Concurrency is simulated by injecting the competing write into the unit
(a drained balance, a stale booking read) rather than racing two tasks on
the single shared SQLite connection. Real concurrent races run against
PostgreSQL in test_postgres_concurrency.py.
"""
from decimal import Decimal

import pytest
from sqlalchemy import update

from marketplace.atomic import AtomicContext
from marketplace.domain import CancelledBooking, ConfirmedBooking
from marketplace.errors import (
    InactiveError,
    InsufficientFundsError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
)
from marketplace.models import Booking, BookingStatus, EntryDirection, LedgerEntry, Service, User, UserRole
from marketplace.services.account_store import AccountStore
from marketplace.services.booking_manager import BookingManager, clean_reason
from marketplace.services.transfer_engine import TransferEngine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _parties(make_user, make_service, client_balance="100.00", price="40.00"):
    client = await make_user(role=UserRole.CLIENT, balance=client_balance, full_name="Alice Client")
    provider = await make_user(role=UserRole.PROVIDER, full_name="Bob Provider")
    service = await make_service(provider, price=price, name="Haircut")
    return client, provider, service


class DrainingAccountStore(AccountStore):
    """Empties one account inside the unit right before its debit is applied."""

    def __init__(self, victim_id: int) -> None:
        self.victim_id = victim_id

    async def apply_delta(self, ctx: AtomicContext, account_id: int, signed_amount: Decimal):
        if account_id == self.victim_id and signed_amount < 0:
            await ctx.session.execute(
                update(User).where(User.id == account_id).values(balance=Decimal("0.00"))
            )
        return await super().apply_delta(ctx, account_id, signed_amount)


# ---------------------------------------------------------------------------
# create
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_booking_moves_price(manager, make_user, make_service, committed):
    client, provider, service = await _parties(make_user, make_service)

    booking = await manager.create(client.id, service.id)

    assert isinstance(booking, ConfirmedBooking)
    assert booking.status is BookingStatus.CONFIRMED
    assert booking.amount == Decimal("40.00")
    assert booking.client_name == "Alice Client"
    assert booking.provider_name == "Bob Provider"
    assert booking.service_name == "Haircut"
    assert await committed.balance(client.id) == Decimal("60.00")
    assert await committed.balance(provider.id) == Decimal("40.00")

    entries = await committed.entries()
    assert [(e.account_id, e.direction, e.description) for e in entries] == [
        (client.id, EntryDirection.DEBIT, "Payment for service: Haircut"),
        (provider.id, EntryDirection.CREDIT, "Payment received for service: Haircut"),
    ]
    assert all(e.booking_id == booking.id for e in entries)


@pytest.mark.asyncio
async def test_create_booking_with_exact_balance(manager, make_user, make_service, committed):
    client, _, service = await _parties(make_user, make_service, client_balance="40.00")
    await manager.create(client.id, service.id)
    assert await committed.balance(client.id) == Decimal("0.00")


@pytest.mark.asyncio
async def test_create_booking_insufficient_funds(manager, make_user, make_service, committed):
    client, provider, service = await _parties(make_user, make_service, client_balance="10.00")

    with pytest.raises(InsufficientFundsError) as exc_info:
        await manager.create(client.id, service.id)

    assert exc_info.value.details["current_balance"] == Decimal("10.00")
    assert exc_info.value.details["required_amount"] == Decimal("40.00")
    assert await committed.balance(client.id) == Decimal("10.00")
    assert await committed.balance(provider.id) == Decimal("0.00")
    assert await committed.count(Booking) == 0
    assert await committed.count(LedgerEntry) == 0


@pytest.mark.asyncio
async def test_balance_drained_inside_unit_leaves_no_trace(
    runner, make_user, make_service, committed
):
    client, provider, service = await _parties(make_user, make_service)
    transfers = TransferEngine(runner, accounts=DrainingAccountStore(client.id))
    manager = BookingManager(runner, transfers)

    with pytest.raises(InsufficientFundsError):
        await manager.create(client.id, service.id)

    assert await committed.count(Booking) == 0
    assert await committed.count(LedgerEntry) == 0
    assert await committed.balance(client.id) == Decimal("100.00")
    assert await committed.balance(provider.id) == Decimal("0.00")


@pytest.mark.asyncio
async def test_only_clients_can_book(manager, make_user, make_service, committed):
    _, provider, service = await _parties(make_user, make_service)
    other_provider = await make_user(role=UserRole.PROVIDER, balance="100.00")

    with pytest.raises(UnauthorizedError, match="Only clients can create bookings"):
        await manager.create(other_provider.id, service.id)
    assert await committed.count(Booking) == 0


@pytest.mark.asyncio
async def test_create_booking_missing_parties(manager, make_user, make_service):
    client, _, service = await _parties(make_user, make_service)

    with pytest.raises(NotFoundError):
        await manager.create(9999, service.id)
    with pytest.raises(NotFoundError):
        await manager.create(client.id, 9999)


@pytest.mark.asyncio
async def test_create_booking_inactive_service(manager, make_user, make_service, committed):
    client = await make_user(balance="100.00")
    provider = await make_user(role=UserRole.PROVIDER)
    service = await make_service(provider, is_active=False)

    with pytest.raises(InactiveError, match="Service is not active"):
        await manager.create(client.id, service.id)
    assert await committed.balance(client.id) == Decimal("100.00")


@pytest.mark.asyncio
async def test_create_booking_inactive_provider(manager, make_user, make_service, committed):
    client = await make_user(balance="100.00")
    provider = await make_user(role=UserRole.PROVIDER, is_active=False)
    service = await make_service(provider)

    with pytest.raises(InactiveError):
        await manager.create(client.id, service.id)
    assert await committed.count(Booking) == 0


@pytest.mark.asyncio
async def test_create_booking_inactive_client(manager, make_user, make_service):
    client = await make_user(balance="100.00", is_active=False)
    provider = await make_user(role=UserRole.PROVIDER)
    service = await make_service(provider)

    with pytest.raises(InactiveError):
        await manager.create(client.id, service.id)


@pytest.mark.asyncio
async def test_price_change_does_not_touch_existing_booking(
    manager, make_user, make_service, db_session, committed
):
    client, provider, service = await _parties(make_user, make_service)
    booking = await manager.create(client.id, service.id)

    await db_session.execute(update(Service).where(Service.id == service.id).values(price=Decimal("55.00")))
    await db_session.commit()

    stored = await manager.get(booking.id)
    assert stored.amount == Decimal("40.00")

    await manager.cancel(booking.id, client.id, UserRole.CLIENT)
    assert await committed.balance(client.id) == Decimal("100.00")
    assert await committed.balance(provider.id) == Decimal("0.00")


# ---------------------------------------------------------------------------
# cancel
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_end_to_end_book_and_cancel(manager, make_user, make_service, committed):
    client, provider, service = await _parties(make_user, make_service)

    booking = await manager.create(client.id, service.id)
    cancelled = await manager.cancel(booking.id, client.id, UserRole.CLIENT, "  schedule conflict  ")

    assert isinstance(cancelled, CancelledBooking)
    assert cancelled.status is BookingStatus.CANCELLED
    assert cancelled.cancelled_at is not None
    assert cancelled.cancellation_reason == "schedule conflict"
    assert await committed.balance(client.id) == Decimal("100.00")
    assert await committed.balance(provider.id) == Decimal("0.00")

    entries = await committed.entries()
    assert len(entries) == 4
    assert [e.description for e in entries[2:]] == [
        "Refund issued for cancelled booking: Haircut",
        "Refund for cancelled booking: Haircut",
    ]
    assert [e.account_id for e in entries[2:]] == [provider.id, client.id]


@pytest.mark.asyncio
async def test_provider_can_cancel(manager, make_user, make_service, committed):
    client, provider, service = await _parties(make_user, make_service)
    booking = await manager.create(client.id, service.id)

    cancelled = await manager.cancel(booking.id, provider.id, "provider")

    assert cancelled.cancellation_reason is None
    assert await committed.balance(client.id) == Decimal("100.00")


@pytest.mark.asyncio
async def test_cancel_twice_is_invalid_state(manager, make_user, make_service, committed):
    client, provider, service = await _parties(make_user, make_service)
    booking = await manager.create(client.id, service.id)
    await manager.cancel(booking.id, client.id, UserRole.CLIENT)

    with pytest.raises(InvalidStateError):
        await manager.cancel(booking.id, client.id, UserRole.CLIENT)

    assert await committed.balance(client.id) == Decimal("100.00")
    assert await committed.count(LedgerEntry) == 4


@pytest.mark.asyncio
async def test_cancel_with_stale_read_refunds_once(
    manager, make_user, make_service, committed, monkeypatch
):
    client, _, service = await _parties(make_user, make_service)
    booking = await manager.create(client.id, service.id)
    stale = await manager.get(booking.id)
    await manager.cancel(booking.id, client.id, UserRole.CLIENT)

    async def stale_get(booking_id):
        return stale

    monkeypatch.setattr(manager, "get", stale_get)
    with pytest.raises(InvalidStateError, match="already cancelled"):
        await manager.cancel(booking.id, client.id, UserRole.CLIENT)

    assert await committed.balance(client.id) == Decimal("100.00")
    assert await committed.count(LedgerEntry) == 4


@pytest.mark.asyncio
async def test_cancel_by_stranger_is_unauthorized(manager, make_user, make_service, committed):
    client, provider, service = await _parties(make_user, make_service)
    booking = await manager.create(client.id, service.id)
    stranger = await make_user(role=UserRole.CLIENT)

    with pytest.raises(UnauthorizedError):
        await manager.cancel(booking.id, stranger.id, UserRole.CLIENT)
    # Right user id, wrong side of the booking.
    with pytest.raises(UnauthorizedError):
        await manager.cancel(booking.id, client.id, UserRole.PROVIDER)
    with pytest.raises(UnauthorizedError):
        await manager.cancel(booking.id, client.id, UserRole.ADMIN)
    with pytest.raises(UnauthorizedError):
        await manager.cancel(booking.id, client.id, "owner")

    assert (await manager.get(booking.id)).status is BookingStatus.CONFIRMED
    assert await committed.balance(client.id) == Decimal("60.00")


@pytest.mark.asyncio
async def test_cancel_unknown_booking(manager, make_user):
    client = await make_user()
    with pytest.raises(NotFoundError):
        await manager.cancel(4242, client.id, UserRole.CLIENT)


@pytest.mark.asyncio
async def test_refund_fails_when_provider_spent_funds(
    manager, make_user, make_service, db_session, committed
):
    client, provider, service = await _parties(make_user, make_service)
    booking = await manager.create(client.id, service.id)

    await db_session.execute(update(User).where(User.id == provider.id).values(balance=Decimal("5.00")))
    await db_session.commit()

    with pytest.raises(InsufficientFundsError):
        await manager.cancel(booking.id, provider.id, UserRole.PROVIDER)

    assert (await manager.get(booking.id)).status is BookingStatus.CONFIRMED
    assert await committed.balance(client.id) == Decimal("60.00")
    assert await committed.balance(provider.id) == Decimal("5.00")
    assert await committed.count(LedgerEntry) == 2


@pytest.mark.asyncio
async def test_money_is_conserved(manager, make_user, make_service, committed):
    client_a = await make_user(balance="100.00")
    client_b = await make_user(balance="75.00")
    provider = await make_user(role=UserRole.PROVIDER, balance="10.00")
    cheap = await make_service(provider, price="15.50", name="Trim")
    pricey = await make_service(provider, price="60.00", name="Colour")
    ids = (client_a.id, client_b.id, provider.id)

    async def total():
        return sum([await committed.balance(i) for i in ids], Decimal("0"))

    before = await total()
    first = await manager.create(client_a.id, cheap.id)
    await manager.create(client_a.id, pricey.id)
    await manager.create(client_b.id, pricey.id)
    await manager.cancel(first.id, provider.id, UserRole.PROVIDER)
    with pytest.raises(InsufficientFundsError):
        await manager.create(client_b.id, pricey.id)

    assert await total() == before
    assert await committed.balance(client_a.id) == Decimal("40.00")
    assert await committed.balance(client_b.id) == Decimal("15.00")
    assert await committed.balance(provider.id) == Decimal("130.00")


# ---------------------------------------------------------------------------
# Cancellation reasons
# ---------------------------------------------------------------------------

def test_clean_reason():
    assert clean_reason(None) is None
    assert clean_reason("   ") is None
    assert clean_reason(" late ") == "late"
    assert clean_reason("x" * 500) == "x" * 500
    with pytest.raises(ValueError):
        clean_reason("x" * 501)


@pytest.mark.asyncio
async def test_overlong_reason_rejected_before_any_write(manager, make_user, make_service, committed):
    client, _, service = await _parties(make_user, make_service)
    booking = await manager.create(client.id, service.id)

    with pytest.raises(ValueError):
        await manager.cancel(booking.id, client.id, UserRole.CLIENT, "x" * 501)
    assert (await manager.get(booking.id)).status is BookingStatus.CONFIRMED
