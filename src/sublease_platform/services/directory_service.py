"""Read-only lookups against the property/user directory.

The agreement engine trusts this data but never writes it.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sublease_platform.domain.exceptions import NotFoundError
from sublease_platform.domain.models import Property, User


class DirectoryService:
    """Property and user lookups used by the agreement service."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user(self, user_id: str) -> User:
        result = await self.db.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if not user or not user.is_active:
            raise NotFoundError(f"User {user_id} not found")
        return user

    async def find_user(self, user_id: Optional[str]) -> Optional[User]:
        if not user_id:
            return None
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_property(self, property_id: str, active_only: bool = False) -> Property:
        """Load a property. *active_only* also rejects listings that were taken down.

        Agreements already under way keep working against their property
        whatever its listing state.
        """
        result = await self.db.execute(select(Property).where(Property.id == property_id))
        prop = result.scalar_one_or_none()
        if not prop or (active_only and not prop.is_active):
            raise NotFoundError(f"Property {property_id} not found")
        return prop

    async def get_rent_cents(self, property_id: str) -> Optional[int]:
        """Listed monthly rent for a property, or None if the listing has none."""
        prop = await self.get_property(property_id)
        return prop.rent_cents
