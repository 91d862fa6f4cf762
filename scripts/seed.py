"""Database seeder for local development of the booking ledger."""
import argparse
import asyncio
import random
import time
from decimal import Decimal

from marketplace.atomic import TransactionRunner
from marketplace.database import Base, async_session, engine
from marketplace.errors import InsufficientFundsError
from marketplace.models import Service, User, UserRole
from marketplace.security import create_access_token, get_password_hash
from marketplace.services.booking_manager import BookingManager
from marketplace.services.transfer_engine import TransferEngine

SEED_PASSWORD = "password123"

SERVICE_NAMES = ["Haircut", "Massage", "Yoga class", "Guitar lesson", "Dog walking",
                 "House cleaning", "Tax advice", "Photo shoot", "Personal training"]


async def seed(small: bool = False):
    num_providers = 3 if small else 20
    num_clients = 10 if small else 200
    num_bookings = 20 if small else 2000

    print(f"Seeding: {num_providers} providers, {num_clients} clients, ~{num_bookings} bookings")
    start = time.perf_counter()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    # Users and services go in directly; every balance change below goes
    # through the transfer engine so the ledger explains each balance.
    # One hash shared by every seeded account keeps seeding fast.
    hashed = get_password_hash(SEED_PASSWORD)
    async with async_session() as session:
        admin = User(full_name="Admin", email="admin@example.com", role=UserRole.ADMIN,
                     hashed_password=hashed)
        providers = [
            User(full_name=f"Provider {i}", email=f"provider_{i:04d}@example.com",
                 role=UserRole.PROVIDER, hashed_password=hashed)
            for i in range(num_providers)
        ]
        clients = [
            User(full_name=f"Client {i}", email=f"client_{i:04d}@example.com",
                 role=UserRole.CLIENT, hashed_password=hashed)
            for i in range(num_clients)
        ]
        session.add_all([admin] + providers + clients)
        await session.flush()

        services = []
        for provider in providers:
            for name in random.sample(SERVICE_NAMES, k=3):
                services.append(Service(
                    name=name,
                    description=f"{name} by {provider.full_name}",
                    price=Decimal(random.randint(10, 150)),
                    provider_id=provider.id,
                ))
        session.add_all(services)
        await session.commit()
        print(f"  Created {len(providers) + len(clients) + 1} users, {len(services)} services")

    runner = TransactionRunner(async_session)
    transfers = TransferEngine(runner)
    manager = BookingManager(runner, transfers)

    for client in clients:
        await transfers.top_up(client.id, Decimal(random.randint(50, 500)), "Opening balance")
    print(f"  Funded {len(clients)} client balances")

    created = cancelled = rejected = 0
    for _ in range(num_bookings):
        client = random.choice(clients)
        try:
            booking = await manager.create(client.id, random.choice(services).id)
        except InsufficientFundsError:
            rejected += 1
            continue
        created += 1
        if random.random() < 0.15:
            await manager.cancel(booking.id, client.id, UserRole.CLIENT, "Seeded cancellation")
            cancelled += 1

    elapsed = time.perf_counter() - start
    print(f"\nSeeding complete in {elapsed:.1f}s")
    print(f"  Bookings: {created} ({cancelled} cancelled, {rejected} rejected for funds)")
    print(f"  Client token:   {create_access_token(clients[0].id, UserRole.CLIENT)}")
    print(f"  Provider token: {create_access_token(providers[0].id, UserRole.PROVIDER)}")
    print(f"  Admin token:    {create_access_token(admin.id, UserRole.ADMIN)}")
    print(f"  All seeded accounts use the password {SEED_PASSWORD!r}")


def main():
    parser = argparse.ArgumentParser(description="Seed the booking ledger database")
    parser.add_argument("--small", action="store_true", help="Use small dataset (20 bookings)")
    args = parser.parse_args()
    asyncio.run(seed(small=args.small))


if __name__ == "__main__":
    main()
