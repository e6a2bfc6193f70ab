import logging
from typing import Iterable, List, Optional
from aiogram import Bot
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rental.database.models import (
    Notification, User, UserRole, House, Room, Contract, ContractUser, ContractStatus
)


class NotificationService:
    """
    Fire-and-forget notifications.

    Rows are written to ``notifications`` and, when a Telegram bot is
    attached and the user has a ``tg_id``, pushed as a chat message too.
    Callers invoke this only after their own commit; failures are logged
    and never propagate.
    """

    def __init__(self, bot: Optional[Bot] = None):
        self.bot = bot

    async def create(
        self,
        session: AsyncSession,
        user_id: int,
        type: str,
        content: str,
        url: Optional[str] = None,
    ) -> Optional[Notification]:
        try:
            async with session.begin_nested():
                notification = Notification(user_id=user_id, type=type, content=content, url=url)
                session.add(notification)
            await session.commit()
        except Exception as e:
            logging.warning(f"Failed to store notification for user {user_id}: {e}")
            return None

        await self._push(session, [user_id], content)
        return notification

    async def create_bulk(
        self,
        session: AsyncSession,
        user_ids: Iterable[int],
        type: str,
        content: str,
        url: Optional[str] = None,
    ) -> int:
        user_ids = sorted(set(user_ids))
        if not user_ids:
            return 0
        try:
            async with session.begin_nested():
                session.add_all([
                    Notification(user_id=uid, type=type, content=content, url=url)
                    for uid in user_ids
                ])
            await session.commit()
        except Exception as e:
            logging.warning(f"Failed to store notifications for users {user_ids}: {e}")
            return 0

        await self._push(session, user_ids, content)
        return len(user_ids)

    async def notify_room_tenants(
        self, session: AsyncSession, room_id: int, type: str, content: str, url: Optional[str] = None
    ) -> int:
        """Tenants on the room's active contracts"""
        try:
            user_ids = await get_room_tenant_ids(session, room_id)
        except Exception as e:
            logging.warning(f"Failed to resolve tenants of room {room_id}: {e}")
            return 0
        return await self.create_bulk(session, user_ids, type, content, url)

    async def notify_contract_tenants(
        self, session: AsyncSession, contract_id: int, type: str, content: str, url: Optional[str] = None
    ) -> int:
        try:
            result = await session.execute(
                select(ContractUser.user_id).where(ContractUser.contract_id == contract_id)
            )
            user_ids = list(result.scalars().all())
        except Exception as e:
            logging.warning(f"Failed to resolve tenants of contract {contract_id}: {e}")
            return 0
        return await self.create_bulk(session, user_ids, type, content, url)

    async def notify_house_manager(
        self, session: AsyncSession, room_id: int, type: str, content: str, url: Optional[str] = None
    ) -> Optional[Notification]:
        """Manager of the house that owns the room, if any"""
        try:
            stmt = (
                select(House.manager_id)
                .join(Room, Room.house_id == House.id)
                .where(Room.id == room_id)
            )
            result = await session.execute(stmt)
            manager_id = result.scalar_one_or_none()
        except Exception as e:
            logging.warning(f"Failed to resolve manager of room {room_id}: {e}")
            return None
        if not manager_id:
            return None
        return await self.create(session, manager_id, type, content, url)

    async def notify_all_admins(
        self, session: AsyncSession, type: str, content: str, url: Optional[str] = None
    ) -> int:
        try:
            result = await session.execute(
                select(User.id).where(
                    User.role == UserRole.admin.value,
                    User.is_active == True,
                    User.deleted_at.is_(None),
                )
            )
            user_ids = list(result.scalars().all())
        except Exception as e:
            logging.warning(f"Failed to resolve admins: {e}")
            return 0
        return await self.create_bulk(session, user_ids, type, content, url)

    async def _push(self, session: AsyncSession, user_ids: List[int], text: str):
        if not self.bot:
            return
        try:
            result = await session.execute(
                select(User.tg_id).where(User.id.in_(user_ids), User.tg_id.is_not(None))
            )
            chat_ids = list(result.scalars().all())
        except Exception as e:
            logging.warning(f"Failed to resolve chat ids for {user_ids}: {e}")
            return
        for chat_id in chat_ids:
            try:
                await self.bot.send_message(chat_id, text)
                logging.info(f"Notification sent to {chat_id}")
            except Exception as e:
                logging.warning(f"Failed to push notification to {chat_id}: {e}")


async def get_room_tenant_ids(session: AsyncSession, room_id: int) -> List[int]:
    """Users on the room's active contracts, lowest id first"""
    stmt = (
        select(ContractUser.user_id)
        .join(Contract, Contract.id == ContractUser.contract_id)
        .where(
            Contract.room_id == room_id,
            Contract.status == ContractStatus.active.value,
            Contract.deleted_at.is_(None),
        )
        .distinct()
        .order_by(ContractUser.user_id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


notification_service = NotificationService()

def setup_notifications(bot: Bot):
    notification_service.bot = bot
