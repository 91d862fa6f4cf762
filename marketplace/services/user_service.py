"""
User service: directory operations for users (who are also accounts).

Balances are never written here: a new user starts at 0.00 and every
later change goes through the transfer engine so it lands in the ledger.
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.domain import to_money
from marketplace.models import User
from marketplace.schemas import UserRegister
from marketplace.security import get_password_hash


def user_to_dict(user: User, private: bool = False) -> dict:
    """
    Serialise a User ORM instance to a plain dict.

    The public view is what other users may see; ``private`` adds the
    email and balance for the owner and for admins.
    """
    data = {
        "id": user.id,
        "full_name": user.full_name,
        "role": user.role.value,
        "is_active": user.is_active,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }
    if private:
        data["email"] = user.email
        data["balance"] = str(to_money(user.balance))
    return data


async def get_users(db: AsyncSession, private: bool = False) -> list[dict]:
    """Return all users ordered by creation date (newest first)."""
    q = select(User).order_by(User.created_at.desc(), User.id.desc())
    result = await db.execute(q)
    return [user_to_dict(u, private) for u in result.scalars().all()]


async def get_user(db: AsyncSession, user_id: int, private: bool = False) -> dict | None:
    """Return the profile dict for *user_id*, or None when it does not exist."""
    user = await db.get(User, user_id)
    if user is None:
        return None
    return user_to_dict(user, private)


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(select(User).where(User.email == email.strip().lower()))
    return result.scalar_one_or_none()


async def create_user(db: AsyncSession, data: UserRegister) -> User:
    """
    Create a new user with a zero balance and a hashed password.

    Email uniqueness is enforced at the database level; the router is
    responsible for translating integrity errors into 409 responses.
    """
    user = User(
        full_name=data.full_name.strip(),
        email=data.email.strip().lower(),
        hashed_password=get_password_hash(data.password),
        role=data.role,
        is_active=True,
    )
    db.add(user)
    await db.flush()
    await db.refresh(user)
    return user


async def set_active(db: AsyncSession, user_id: int, is_active: bool) -> dict | None:
    """Activate or deactivate a user; returns None when it does not exist."""
    user = await db.get(User, user_id)
    if user is None:
        return None
    user.is_active = is_active
    await db.flush()
    await db.refresh(user)
    return user_to_dict(user, private=True)
