"""
Booking Lifecycle Manager: confirmed -> cancelled, with money attached.

Design notes
------------
- ``create`` and ``cancel`` each run as exactly one atomic unit holding
  the booking write *and* the corresponding transfer (payment or refund).
  Either both commit or neither does.
- Validation before the unit (existence, roles, activity, affordability)
  is a fast-fail that never writes.  It is not what prevents double
  spending: a concurrent debit between that check and the unit is caught
  by the Account Store's conditional update, which rolls the booking back.
- Inside the unit the client, service and provider are re-read so the
  price and names copied onto the booking are a snapshot of that unit.
- ``cancel`` flips the status with ``UPDATE ... WHERE status = 'confirmed'``;
  a concurrent second cancel updates zero rows and fails with
  ``InvalidStateError`` instead of refunding twice.
- Refunds are always the full booking amount; there is no fee policy.
- All collaborators are injected; the manager holds no global state.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Union

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.atomic import AtomicContext, TransactionRunner
from marketplace.config import settings
from marketplace.domain import (
    BookingView,
    CancelledBooking,
    ConfirmedBooking,
    authorize_cancellation,
    booking_from_row,
    to_money,
)
from marketplace.errors import (
    InactiveError,
    InsufficientFundsError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
)
from marketplace.models import Booking, BookingStatus, Service, User, UserRole
from marketplace.services.account_store import AccountStore
from marketplace.services.transfer_engine import TransferEngine, payment_operation, refund_operation

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clean_reason(reason: Optional[str]) -> Optional[str]:
    """Strip a cancellation reason; blank becomes None, overlong is rejected."""
    if reason is None:
        return None
    reason = reason.strip()
    if not reason:
        return None
    if len(reason) > settings.CANCELLATION_REASON_MAX_LENGTH:
        raise ValueError(
            f"Cancellation reason must not exceed {settings.CANCELLATION_REASON_MAX_LENGTH} characters"
        )
    return reason


class BookingManager:

    def __init__(
        self,
        runner: TransactionRunner,
        transfers: TransferEngine,
        accounts: Optional[AccountStore] = None,
    ) -> None:
        self._runner = runner
        self._transfers = transfers
        self._accounts = accounts or transfers.accounts

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, booking_id: int) -> BookingView:
        async with self._runner.read() as session:
            row = await session.get(Booking, booking_id)
            if row is None:
                raise NotFoundError(f"Booking {booking_id} not found", booking_id=booking_id)
            return booking_from_row(row)

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    async def create(self, client_id: int, service_id: int) -> ConfirmedBooking:
        """
        Book *service_id* for *client_id*, moving the service price from
        the client's balance to the provider's.
        """
        async with self._runner.read() as session:
            client, service, provider = await self._load_parties(session, client_id, service_id)
            self._validate_creation(client, service, provider, check_balance=True)

        async def work(ctx: AtomicContext) -> ConfirmedBooking:
            session = ctx.session
            client, service, provider = await self._load_parties(session, client_id, service_id)
            self._validate_creation(client, service, provider, check_balance=False)

            amount = to_money(service.price)
            row = Booking(
                client_id=client.id,
                client_name=client.full_name,
                service_id=service.id,
                service_name=service.name,
                provider_id=provider.id,
                provider_name=provider.full_name,
                amount=amount,
                status=BookingStatus.CONFIRMED,
                created_at=_utcnow(),
            )
            session.add(row)
            await session.flush()

            await self._transfers.execute(
                payment_operation(client.id, provider.id, amount, row.id, service.name), ctx
            )
            return booking_from_row(row)

        booking = await self._runner.run(work)
        logger.info(
            "Booking %s created: client=%s provider=%s service=%s amount=%s",
            booking.id, booking.client_id, booking.provider_id, booking.service_id, booking.amount,
        )
        return booking

    async def _load_parties(
        self, session: AsyncSession, client_id: int, service_id: int
    ) -> tuple[User, Service, User]:
        try:
            client = await self._accounts.get_account(session, client_id)
        except NotFoundError:
            raise NotFoundError(f"Client {client_id} not found", client_id=client_id) from None
        service = await session.get(Service, service_id, populate_existing=True)
        if service is None:
            raise NotFoundError(f"Service {service_id} not found", service_id=service_id)
        try:
            provider = await self._accounts.get_account(session, service.provider_id)
        except NotFoundError:
            raise NotFoundError(
                f"Provider of service {service_id} not found", provider_id=service.provider_id
            ) from None
        return client, service, provider

    @staticmethod
    def _validate_creation(client: User, service: Service, provider: User, check_balance: bool) -> None:
        if client.role != UserRole.CLIENT:
            raise UnauthorizedError("Only clients can create bookings", user_id=client.id)
        if not client.is_active:
            raise InactiveError("Client account is not active", client_id=client.id)
        if not service.is_active:
            raise InactiveError("Service is not active", service_id=service.id)
        if not provider.is_active:
            raise InactiveError("Service provider is not active", provider_id=provider.id)
        price = to_money(service.price)
        if check_balance and to_money(client.balance) < price:
            logger.warning(
                "Booking rejected for client %s: balance %s < price %s",
                client.id, to_money(client.balance), price,
            )
            raise InsufficientFundsError(
                "Insufficient balance to complete booking",
                account_id=client.id,
                current_balance=to_money(client.balance),
                required_amount=price,
            )

    # ------------------------------------------------------------------
    # cancel
    # ------------------------------------------------------------------

    async def cancel(
        self,
        booking_id: int,
        user_id: int,
        user_role: Union[UserRole, str],
        reason: Optional[str] = None,
    ) -> CancelledBooking:
        """
        Cancel a confirmed booking on behalf of its client or provider and
        refund the full amount to the client.
        """
        try:
            role = UserRole(user_role)
        except ValueError:
            raise UnauthorizedError("Invalid user role", role=user_role) from None
        reason = clean_reason(reason)

        booking = await self.get(booking_id)
        decision = authorize_cancellation(booking, user_id, role)
        if not decision.allowed:
            logger.warning("User %s refused cancellation of booking %s", user_id, booking_id)
            raise UnauthorizedError(decision.reason, booking_id=booking_id, user_id=user_id)
        if booking.status is not BookingStatus.CONFIRMED:
            raise InvalidStateError(
                "Only confirmed bookings can be cancelled",
                booking_id=booking_id,
                status=booking.status.value,
            )

        async def work(ctx: AtomicContext) -> CancelledBooking:
            session = ctx.session
            flipped = await session.execute(
                update(Booking)
                .where(Booking.id == booking_id, Booking.status == BookingStatus.CONFIRMED)
                .values(
                    status=BookingStatus.CANCELLED,
                    cancelled_at=_utcnow(),
                    cancellation_reason=reason,
                )
                .returning(Booking.id)
                .execution_options(synchronize_session=False)
            )
            if flipped.scalar_one_or_none() is None:
                raise InvalidStateError(
                    "Booking was already cancelled", booking_id=booking_id, status="cancelled"
                )
            row = await session.get(Booking, booking_id, populate_existing=True)

            await self._transfers.execute(
                refund_operation(row.client_id, row.provider_id, row.amount, row.id, row.service_name),
                ctx,
            )
            return booking_from_row(row)

        cancelled = await self._runner.run(work)
        logger.info(
            "Booking %s cancelled by %s %s; refunded %s",
            booking_id, decision.party.value, user_id, cancelled.amount,
        )
        return cancelled
