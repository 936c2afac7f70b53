"""
JournalRepository - read access to a user's trading journal
"""

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database_models import AuthUser, ContactMessage, Edge, TradeLog, MacroLog


class JournalRepository:
    """Journal queries for the backup job, public share pages and the contact form."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user_by_email(self, email: str) -> Optional[AuthUser]:
        result = await self.db.execute(
            select(AuthUser).where(AuthUser.email == email.lower())
        )
        return result.scalar_one_or_none()

    async def list_edges(self, user_id: str) -> List[Edge]:
        result = await self.db.execute(
            select(Edge).where(Edge.user_id == user_id).order_by(Edge.created_at.asc())
        )
        return list(result.scalars().all())

    async def list_logs(self, user_id: str) -> List[TradeLog]:
        result = await self.db.execute(
            select(TradeLog).where(TradeLog.user_id == user_id).order_by(TradeLog.date.desc())
        )
        return list(result.scalars().all())

    async def list_macro_logs(self, user_id: str) -> List[MacroLog]:
        result = await self.db.execute(
            select(MacroLog).where(MacroLog.user_id == user_id).order_by(MacroLog.date.desc())
        )
        return list(result.scalars().all())

    async def get_public_edge(self, slug: str) -> Optional[Edge]:
        result = await self.db.execute(
            select(Edge).where(Edge.public_slug == slug, Edge.is_public.is_(True))
        )
        return result.scalar_one_or_none()

    async def add_contact_message(self, name: str, email: str, message: str) -> ContactMessage:
        contact = ContactMessage(name=name, email=email, message=message)
        self.db.add(contact)
        await self.db.flush()
        return contact
