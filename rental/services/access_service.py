from typing import List, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rental.database.models import (
    User, UserRole, House, Room, Contract, ContractUser, Invoice
)
from rental.errors import AccessDenied, NotFound


def is_admin(user: User) -> bool:
    return user.role == UserRole.admin.value


def is_manager(user: User) -> bool:
    return user.role == UserRole.manager.value


def is_tenant(user: User) -> bool:
    return user.role == UserRole.tenant.value


async def get_room(session: AsyncSession, room_id: int, lock: bool = False) -> Room:
    stmt = select(Room).where(Room.id == room_id, Room.deleted_at.is_(None))
    if lock:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    room = result.scalar_one_or_none()
    if not room:
        raise NotFound(f"Room {room_id} not found")
    return room


async def get_house_manager_id(session: AsyncSession, room_id: int) -> Optional[int]:
    stmt = (
        select(House.manager_id)
        .join(Room, Room.house_id == House.id)
        .where(Room.id == room_id)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_managed_house_ids(session: AsyncSession, user: User) -> List[int]:
    stmt = select(House.id).where(House.manager_id == user.id, House.deleted_at.is_(None))
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def is_authorized_for_room(session: AsyncSession, user: User, room_id: int) -> bool:
    """Admin, or manager of the house owning the room"""
    if is_admin(user):
        return True
    if not is_manager(user):
        return False
    return await get_house_manager_id(session, room_id) == user.id


async def require_room_manager(session: AsyncSession, user: User, room_id: int) -> None:
    if not await is_authorized_for_room(session, user, room_id):
        raise AccessDenied(f"User {user.id} may not manage room {room_id}")


async def is_room_tenant(session: AsyncSession, user_id: int, room_id: int) -> bool:
    """Tenant listed on any (non-deleted) contract of the room"""
    stmt = (
        select(ContractUser.id)
        .join(Contract, Contract.id == ContractUser.contract_id)
        .where(
            ContractUser.user_id == user_id,
            Contract.room_id == room_id,
            Contract.deleted_at.is_(None),
        )
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


async def can_access_invoice(session: AsyncSession, user: User, invoice: Invoice) -> bool:
    if await is_authorized_for_room(session, user, invoice.room_id):
        return True
    if is_tenant(user):
        return await is_room_tenant(session, user.id, invoice.room_id)
    return False


async def can_manage_invoice(session: AsyncSession, user: User, invoice: Invoice) -> bool:
    return await is_authorized_for_room(session, user, invoice.room_id)


async def get_tenant_room_ids(session: AsyncSession, user_id: int) -> List[int]:
    stmt = (
        select(Contract.room_id)
        .join(ContractUser, ContractUser.contract_id == Contract.id)
        .where(ContractUser.user_id == user_id, Contract.deleted_at.is_(None))
        .distinct()
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_tenant_invoice_ids(session: AsyncSession, user_id: int) -> List[int]:
    """Invoices of every room the tenant has a contract on"""
    room_ids = await get_tenant_room_ids(session, user_id)
    if not room_ids:
        return []
    stmt = select(Invoice.id).where(Invoice.room_id.in_(room_ids), Invoice.deleted_at.is_(None))
    result = await session.execute(stmt)
    return list(result.scalars().all())
