from dataclasses import dataclass
from typing import Optional
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import Driver, User, UserRole, Vendor


@dataclass(frozen=True)
class Actor:
    """Who is acting on an order, with the profile ids ownership checks need."""
    user_id: uuid.UUID
    role: UserRole
    vendor_id: Optional[uuid.UUID] = None
    driver_id: Optional[uuid.UUID] = None


async def resolve_actor(session: AsyncSession, user_id: uuid.UUID, role: Optional[str] = None) -> Actor:
    """Build an Actor, falling back to the stored role when none is given."""
    if role is None:
        result = await session.execute(select(User.role).where(User.id == user_id))
        role = result.scalar_one_or_none() or UserRole.CUSTOMER.value

    vendor_id = (
        await session.execute(select(Vendor.id).where(Vendor.user_id == user_id))
    ).scalar_one_or_none()
    driver_id = (
        await session.execute(select(Driver.id).where(Driver.user_id == user_id))
    ).scalar_one_or_none()

    return Actor(user_id=user_id, role=UserRole(role), vendor_id=vendor_id, driver_id=driver_id)
