"""
Contract lifecycle and room status synchronisation.

A room holds at most one active contract. Every path that changes a
contract status or a room status goes through this module so the two
stay consistent:

- contract activated  -> room used, other active contracts on the room expired
- contract leaves active / deleted -> room available once no active contract remains
- room -> available   -> active contracts expired
- room -> maintenance (or any other non-used status) -> active contracts terminated

The room-driven cascade is best-effort: failures are logged and reported
in ``RoomStatusChange.warnings``, the room update itself still commits.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import List, Optional, Sequence

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from rental.config import config
from rental.database.models import (
    User, UserRole, Room, RoomStatus, Contract, ContractUser, ContractStatus,
    Invoice, InvoiceItem, InvoiceType, ItemSource, PaymentStatus
)
from rental.errors import AccessDenied, ConflictError, NotFound, ValidationFailed
from rental.schemas.validation import ContractCreate, ContractUpdate, validate_input
from rental.services.access_service import (
    get_room, is_authorized_for_room, require_room_manager, is_tenant, get_managed_house_ids, is_manager
)
from rental.services.notification_service import notification_service
from rental.utils.formatting import add_months, months_between, format_date, now_utc

DEFAULT_RENEW_MONTHS = 6

# Fields that stay editable once a contract is terminated or expired
AUDIT_FIELDS = {"termination_reason", "deposit_status"}


@dataclass
class RoomStatusChange:
    room: Room
    old_status: str
    new_status: str
    affected_contract_ids: List[int] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class SweepResult:
    expired_ids: List[int] = field(default_factory=list)
    renewed_ids: List[int] = field(default_factory=list)


def resolve_time_renew(start_date: date, end_date: date, time_renew: Optional[int]) -> int:
    """Renewal interval in months: explicit value, else contract length, else 6"""
    if time_renew and time_renew > 0:
        return time_renew
    months = months_between(start_date, end_date)
    return months if months > 0 else DEFAULT_RENEW_MONTHS


async def _load_contract(session: AsyncSession, contract_id: int, lock: bool = False) -> Contract:
    stmt = (
        select(Contract)
        .where(Contract.id == contract_id, Contract.deleted_at.is_(None))
        .options(selectinload(Contract.contract_users))
        .execution_options(populate_existing=True)
    )
    if lock:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    contract = result.scalar_one_or_none()
    if not contract:
        raise NotFound(f"Contract {contract_id} not found")
    return contract


async def _lock_rooms(session: AsyncSession, room_ids) -> List[Room]:
    """Lock room rows in id order"""
    return [await get_room(session, room_id, lock=True) for room_id in sorted(set(room_ids))]


async def _lock_contract(session: AsyncSession, contract: Contract, new_room_id: Optional[int] = None) -> Contract:
    """
    Lock the contract's room (and the room it moves to), then the contract.

    Rooms are always locked before contracts, on every path that takes both.
    """
    room_ids = {contract.room_id}
    if new_room_id is not None:
        room_ids.add(new_room_id)
    await _lock_rooms(session, room_ids)

    room_id = contract.room_id
    contract = await _load_contract(session, contract.id, lock=True)
    if contract.room_id != room_id:
        raise ConflictError(f"Contract {contract.id} was moved to another room meanwhile, retry")
    return contract


async def _is_party(session: AsyncSession, user_id: int, contract_id: int) -> bool:
    result = await session.execute(
        select(ContractUser.id).where(
            ContractUser.contract_id == contract_id, ContractUser.user_id == user_id
        )
    )
    return result.scalar_one_or_none() is not None


async def _require_contract_manager(session: AsyncSession, user: User, contract: Contract):
    """Managers/admins pass; a tenant party gets AccessDenied, anyone else NotFound"""
    if await is_authorized_for_room(session, user, contract.room_id):
        return
    if is_tenant(user) and await _is_party(session, user.id, contract.id):
        raise AccessDenied(f"User {user.id} may only read contract {contract.id}")
    raise NotFound(f"Contract {contract.id} not found")


async def _check_tenants(session: AsyncSession, user_ids: Sequence[int]):
    result = await session.execute(
        select(User.id).where(
            User.id.in_(user_ids),
            User.role == UserRole.tenant.value,
            User.deleted_at.is_(None),
        )
    )
    found = set(result.scalars().all())
    missing = [uid for uid in user_ids if uid not in found]
    if missing:
        raise ValidationFailed(
            "Contract parties must be existing tenants",
            {"user_ids": f"Not tenants: {', '.join(str(m) for m in missing)}"},
        )


async def _active_contracts(
    session: AsyncSession, room_id: int, exclude_id: Optional[int] = None, lock: bool = False
) -> List[Contract]:
    stmt = select(Contract).where(
        Contract.room_id == room_id,
        Contract.status == ContractStatus.active.value,
        Contract.deleted_at.is_(None),
    )
    if exclude_id is not None:
        stmt = stmt.where(Contract.id != exclude_id)
    if lock:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt.order_by(Contract.id))
    return list(result.scalars().all())


async def _activate(session: AsyncSession, contract: Contract, acting_user_id: Optional[int]) -> List[int]:
    """
    Make ``contract`` the only active contract of its room.

    Locks the room row, expires every other active contract on it and
    marks the room used. Caller commits.

    Returns:
        Ids of contracts that were superseded
    """
    room = await get_room(session, contract.room_id, lock=True)

    superseded = []
    for other in await _active_contracts(session, room.id, exclude_id=contract.id, lock=True):
        other.status = ContractStatus.expired.value
        other.termination_reason = f"Superseded by contract #{contract.id}"
        other.updated_by = acting_user_id
        superseded.append(other.id)
        logging.info(f"Contract {other.id} expired, superseded by contract {contract.id} on room {room.id}")

    contract.status = ContractStatus.active.value
    room.status = RoomStatus.used.value
    room.updated_by = acting_user_id
    await session.flush()
    return superseded


async def _release_room(
    session: AsyncSession, room_id: int, exclude_id: int, acting_user_id: Optional[int]
) -> bool:
    """Room back to available when no other active contract remains"""
    if await _active_contracts(session, room_id, exclude_id=exclude_id):
        return False
    room = await get_room(session, room_id, lock=True)
    if room.status != RoomStatus.used.value:
        return False
    room.status = RoomStatus.available.value
    room.updated_by = acting_user_id
    logging.info(f"Room {room_id} released, no active contract left")
    return True


async def _create_initial_invoice(session: AsyncSession, contract: Contract) -> Optional[Invoice]:
    """Deposit + first month rent invoice for a freshly activated contract"""
    rent_until = add_months(contract.start_date, 1) - timedelta(days=1)
    lines = [
        (contract.deposit_amount, f"Deposit for contract #{contract.id}"),
        (
            contract.monthly_price,
            f"First month rent ({format_date(contract.start_date)} - {format_date(rent_until)})",
        ),
    ]
    lines = [(amount, text) for amount, text in lines if amount > 0]
    if not lines:
        return None

    invoice = Invoice(
        room_id=contract.room_id,
        invoice_type=InvoiceType.custom.value,
        total_amount=sum(amount for amount, _ in lines),
        month=contract.start_date.month,
        year=contract.start_date.year,
        description=f"Initial invoice for contract #{contract.id}",
        created_by=contract.created_by,
        updated_by=contract.created_by,
        payment_method_id=config.TRANSFER_PAYMENT_METHOD_ID,
        payment_status=PaymentStatus.pending.value,
    )
    session.add(invoice)
    await session.flush()
    for amount, text in lines:
        session.add(InvoiceItem(
            invoice_id=invoice.id,
            source_type=ItemSource.manual.value,
            amount=amount,
            description=text,
        ))
    await session.flush()
    return invoice


async def create_contract(session: AsyncSession, acting_user: User, data) -> Contract:
    """
    Create a contract and, when it starts active, activate it.

    Activation supersedes any other active contract on the room. The
    initial invoice and the notifications are best-effort.

    Raises:
        ValidationFailed, NotFound, AccessDenied
    """
    data = validate_input(ContractCreate, data)
    if data.status not in (ContractStatus.draft, ContractStatus.active):
        raise ValidationFailed("New contracts start as draft or active", {"status": "Must be draft or active"})

    room = await get_room(session, data.room_id, lock=True)
    if not await is_authorized_for_room(session, acting_user, room.id):
        raise AccessDenied(f"User {acting_user.id} may not create contracts for room {room.id}")
    await _check_tenants(session, data.user_ids)

    time_renew = data.time_renew
    if data.auto_renew or time_renew is None:
        time_renew = resolve_time_renew(data.start_date, data.end_date, data.time_renew)

    contract = Contract(
        room_id=room.id,
        start_date=data.start_date,
        end_date=data.end_date,
        monthly_price=data.monthly_price,
        deposit_amount=data.deposit_amount,
        notice_period=data.notice_period,
        deposit_status=data.deposit_status.value,
        termination_reason=data.termination_reason,
        status=ContractStatus.draft.value,
        auto_renew=data.auto_renew,
        time_renew=time_renew,
        created_by=acting_user.id,
        updated_by=acting_user.id,
    )
    contract.contract_users = [ContractUser(user_id=uid) for uid in data.user_ids]
    session.add(contract)
    await session.flush()

    activated = data.status == ContractStatus.active
    invoice = None
    if activated:
        await _activate(session, contract, acting_user.id)
        try:
            async with session.begin_nested():
                invoice = await _create_initial_invoice(session, contract)
            if invoice:
                logging.info(f"Initial invoice {invoice.id} created for contract {contract.id}")
        except Exception as e:
            invoice = None
            logging.error(f"Failed to create initial invoice for contract {contract.id}: {e}")
    else:
        contract.status = data.status.value

    await session.commit()
    logging.info(f"Contract {contract.id} created on room {room.id} with status {contract.status}")

    if activated:
        await _notify_contract_created(session, contract, room, invoice)

    return await _load_contract(session, contract.id)


async def _notify_contract_created(session, contract: Contract, room: Room, invoice: Optional[Invoice]):
    await notification_service.notify_room_tenants(
        session, room.id, "contract",
        f"Your rental contract for room {room.room_number} has been created.",
        f"/contracts/{contract.id}",
    )
    await notification_service.notify_house_manager(
        session, room.id, "contract",
        f"A new contract was created for room {room.room_number}.",
        f"/contracts/{contract.id}",
    )
    if invoice:
        await notification_service.notify_room_tenants(
            session, room.id, "invoice",
            f"A new invoice was issued for room {room.room_number}.",
            f"/invoices/{invoice.id}",
        )


async def activate_contract(session: AsyncSession, acting_user: User, contract_id: int) -> Contract:
    """Draft -> active, superseding whatever is active on the room"""
    return await update_contract(session, acting_user, contract_id, {"status": ContractStatus.active.value})


async def update_contract(session: AsyncSession, acting_user: User, contract_id: int, data) -> Contract:
    """
    Update a contract and apply the status transition rules.

    Terminated and expired contracts only accept audit fields
    (termination reason, deposit status).
    """
    data = validate_input(ContractUpdate, data)
    contract = await _load_contract(session, contract_id)
    await _require_contract_manager(session, acting_user, contract)
    contract = await _lock_contract(session, contract, data.room_id)

    changes = data.model_dump(exclude_unset=True)
    old_status = contract.status
    old_room_id = contract.room_id

    if old_status in (ContractStatus.terminated.value, ContractStatus.expired.value):
        locked = sorted(set(changes) - AUDIT_FIELDS)
        if locked:
            raise ValidationFailed(
                f"Contract {contract.id} is {old_status} and can no longer change",
                {name: "Read-only" for name in locked},
            )

    new_room_id = data.room_id if data.room_id is not None else old_room_id
    if new_room_id != old_room_id:
        if not await is_authorized_for_room(session, acting_user, new_room_id):
            raise AccessDenied(f"User {acting_user.id} may not move contracts to room {new_room_id}")

    start_date = changes.get("start_date", contract.start_date)
    end_date = changes.get("end_date", contract.end_date)
    if end_date <= start_date:
        raise ValidationFailed("Invalid contract period", {"end_date": "end_date must be after start_date"})

    if data.user_ids is not None:
        await _check_tenants(session, data.user_ids)
        if data.user_ids != contract.tenant_ids:
            contract.contract_users.clear()
            await session.flush()
            for uid in data.user_ids:
                contract.contract_users.append(ContractUser(user_id=uid))

    for name in ("start_date", "end_date", "monthly_price", "deposit_amount", "notice_period",
                 "auto_renew", "termination_reason"):
        if name in changes:
            setattr(contract, name, changes[name])
    if data.deposit_status is not None:
        contract.deposit_status = data.deposit_status.value
    contract.room_id = new_room_id

    if data.time_renew is not None:
        contract.time_renew = data.time_renew
    elif contract.auto_renew and not contract.time_renew:
        contract.time_renew = resolve_time_renew(start_date, end_date, None)

    contract.updated_by = acting_user.id
    new_status = data.status.value if data.status is not None else old_status
    await session.flush()

    if new_status == ContractStatus.active.value:
        if old_status != ContractStatus.active.value or new_room_id != old_room_id:
            await _activate(session, contract, acting_user.id)
        if old_status == ContractStatus.active.value and new_room_id != old_room_id:
            await _release_room(session, old_room_id, contract.id, acting_user.id)
    else:
        contract.status = new_status
        if new_status in (ContractStatus.terminated.value, ContractStatus.expired.value) \
                and not contract.termination_reason:
            contract.termination_reason = f"Contract {new_status} by user {acting_user.id}"
        await session.flush()
        if old_status == ContractStatus.active.value:
            await _release_room(session, old_room_id, contract.id, acting_user.id)

    await session.commit()
    logging.info(f"Contract {contract.id} updated: {old_status} -> {contract.status}")
    return await _load_contract(session, contract.id)


async def delete_contract(session: AsyncSession, acting_user: User, contract_id: int) -> None:
    contract = await _load_contract(session, contract_id)
    await _require_contract_manager(session, acting_user, contract)
    contract = await _lock_contract(session, contract)

    contract.deleted_at = now_utc()
    contract.updated_by = acting_user.id
    await session.flush()
    if contract.status == ContractStatus.active.value:
        await _release_room(session, contract.room_id, contract.id, acting_user.id)

    await session.commit()
    logging.info(f"Contract {contract.id} deleted by user {acting_user.id}")

    await notification_service.notify_contract_tenants(
        session, contract.id, "contract",
        f"Contract #{contract.id} has been removed.",
        "/contracts",
    )


async def get_contract(session: AsyncSession, acting_user: User, contract_id: int) -> Contract:
    contract = await _load_contract(session, contract_id)
    if await is_authorized_for_room(session, acting_user, contract.room_id):
        return contract
    if is_tenant(acting_user) and acting_user.id in contract.tenant_ids:
        return contract
    raise NotFound(f"Contract {contract_id} not found")


async def list_contracts(
    session: AsyncSession,
    acting_user: User,
    status: Optional[str] = None,
    room_id: Optional[int] = None,
    house_id: Optional[int] = None,
) -> List[Contract]:
    stmt = (
        select(Contract)
        .where(Contract.deleted_at.is_(None))
        .options(selectinload(Contract.contract_users))
        .order_by(Contract.id.desc())
    )
    if is_tenant(acting_user):
        stmt = stmt.join(ContractUser, ContractUser.contract_id == Contract.id) \
            .where(ContractUser.user_id == acting_user.id)
    elif is_manager(acting_user):
        house_ids = await get_managed_house_ids(session, acting_user)
        stmt = stmt.join(Room, Room.id == Contract.room_id).where(Room.house_id.in_(house_ids))
    elif acting_user.role != UserRole.admin.value:
        return []

    if status:
        stmt = stmt.where(Contract.status == status)
    if room_id:
        stmt = stmt.where(Contract.room_id == room_id)
    if house_id:
        stmt = stmt.where(Contract.room_id.in_(select(Room.id).where(Room.house_id == house_id)))

    result = await session.execute(stmt)
    return list(result.scalars().unique().all())


async def get_available_tenants(session: AsyncSession, acting_user: User, room_id: int) -> List[User]:
    """Tenants without an active contract, candidates for a new contract on the room"""
    if is_tenant(acting_user):
        raise AccessDenied("Tenants cannot list available tenants")
    await get_room(session, room_id)
    await require_room_manager(session, acting_user, room_id)

    busy = (
        select(ContractUser.user_id)
        .join(Contract, Contract.id == ContractUser.contract_id)
        .where(Contract.status == ContractStatus.active.value, Contract.deleted_at.is_(None))
    )
    stmt = (
        select(User)
        .where(
            User.role == UserRole.tenant.value,
            User.is_active == True,
            User.deleted_at.is_(None),
            User.id.not_in(busy),
        )
        .order_by(User.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


# Room -> contract cascade

async def _cascade_room_status(session: AsyncSession, room: Room, new_status: str) -> List[int]:
    """Expire or terminate the room's active contracts to follow its new status"""
    if new_status == RoomStatus.available.value:
        target, reason = ContractStatus.expired.value, "Room changed to available"
    elif new_status != RoomStatus.used.value:
        target, reason = ContractStatus.terminated.value, f"Room changed to {new_status}"
    else:
        return []

    affected = []
    for contract in await _active_contracts(session, room.id, lock=True):
        contract.status = target
        contract.termination_reason = reason
        # Audit trail keeps the contract's creator, not whoever changed the room
        contract.updated_by = contract.created_by
        affected.append(contract.id)
        logging.info(f"Contract {contract.id} {target}: {reason}")
    await session.flush()
    return affected


async def change_room_status(
    session: AsyncSession, acting_user: User, room_id: int, new_status
) -> RoomStatusChange:
    """
    Change a room's status and cascade to its active contracts.

    The cascade runs in a savepoint: if it fails the error is logged and
    returned in ``warnings`` while the room update still commits.
    """
    try:
        new_status = RoomStatus(new_status).value
    except ValueError:
        raise ValidationFailed("Unknown room status", {"status": f"Invalid value: {new_status}"})
    room = await get_room(session, room_id, lock=True)
    await require_room_manager(session, acting_user, room.id)

    change = RoomStatusChange(room=room, old_status=room.status, new_status=new_status)
    if room.status == new_status:
        return change

    room_number = room.room_number
    room.status = new_status
    room.updated_by = acting_user.id
    await session.flush()

    try:
        async with session.begin_nested():
            change.affected_contract_ids = await _cascade_room_status(session, room, new_status)
    except Exception as e:
        logging.error(f"Room {room_id} -> {new_status}: failed to update active contracts: {e}")
        change.warnings.append(f"Active contracts of room {room_id} were not updated: {e}")

    await session.commit()
    logging.info(f"Room {room_id} status {change.old_status} -> {new_status}")

    for contract_id in change.affected_contract_ids:
        await notification_service.notify_contract_tenants(
            session, contract_id, "contract",
            f"Contract #{contract_id} ended: room {room_number} is now {new_status}.",
            f"/contracts/{contract_id}",
        )
    return change


# Scheduled jobs

async def expire_outdated_contracts(session: AsyncSession, today: Optional[date] = None) -> SweepResult:
    """
    Daily sweep over active contracts past their end date.

    Auto-renewing contracts are extended by ``time_renew`` months (derived
    and stored when missing); the rest expire and release their room.
    Runs as one transaction.
    """
    today = today or date.today()
    result = SweepResult()

    outdated = (
        Contract.status == ContractStatus.active.value,
        Contract.end_date < today,
        Contract.deleted_at.is_(None),
    )
    try:
        room_ids = list((await session.execute(
            select(Contract.room_id).where(*outdated).distinct()
        )).scalars().all())
        await _lock_rooms(session, room_ids)

        stmt = (
            select(Contract)
            .where(*outdated, Contract.room_id.in_(room_ids))
            .order_by(Contract.id)
            .with_for_update()
        )
        contracts = list((await session.execute(stmt)).scalars().all())

        expired_rooms = {}
        for contract in contracts:
            if contract.auto_renew:
                months = resolve_time_renew(contract.start_date, contract.end_date, contract.time_renew)
                contract.time_renew = months
                # Step from the original end date so month-end contracts stay on month end
                original_end, shift = contract.end_date, 0
                while contract.end_date < today:
                    shift += months
                    contract.end_date = add_months(original_end, shift)
                contract.updated_by = config.SYSTEM_USER_ID
                result.renewed_ids.append(contract.id)
                logging.info(f"Contract {contract.id} renewed until {contract.end_date}")
            else:
                contract.status = ContractStatus.expired.value
                contract.termination_reason = "Contract expired"
                contract.updated_by = config.SYSTEM_USER_ID
                expired_rooms[contract.room_id] = contract.id
                result.expired_ids.append(contract.id)
                logging.info(f"Contract {contract.id} expired (end date {contract.end_date})")

        await session.flush()
        for room_id, contract_id in expired_rooms.items():
            await _release_room(session, room_id, contract_id, config.SYSTEM_USER_ID)

        await session.commit()
    except Exception as e:
        await session.rollback()
        logging.error(f"Contract sweep failed, nothing applied: {e}")
        raise

    logging.info(f"Contract sweep: {len(result.expired_ids)} expired, {len(result.renewed_ids)} renewed")
    return result


async def notify_expiring_contracts(
    session: AsyncSession, today: Optional[date] = None, days: Optional[Sequence[int]] = None
) -> int:
    """Remind tenants and the house manager N days before a contract ends"""
    today = today or date.today()
    days = days or config.EXPIRY_NOTICE_DAYS
    notified = 0

    for d in days:
        target = today + timedelta(days=d)
        stmt = (
            select(Contract)
            .where(
                Contract.status == ContractStatus.active.value,
                Contract.end_date == target,
                Contract.deleted_at.is_(None),
            )
            .options(
                selectinload(Contract.room),
                selectinload(Contract.users),
            )
        )
        contracts = (await session.execute(stmt)).scalars().all()
        for contract in contracts:
            room_number = contract.room.room_number
            ends = format_date(contract.end_date)
            if contract.auto_renew:
                tenant_text = (f"Your contract for room {room_number} renews automatically in {d} days ({ends}). "
                               f"Contact the manager if you do not want to renew.")
            else:
                tenant_text = (f"Your contract for room {room_number} ends in {d} days ({ends}). "
                               f"Contact the manager to extend it.")
            names = ", ".join(u.name for u in contract.users)
            verb = "renews automatically" if contract.auto_renew else "ends"
            manager_text = f"Contract for room {room_number} ({names}) {verb} in {d} days ({ends})."

            await notification_service.notify_contract_tenants(
                session, contract.id, "contract", tenant_text, f"/contracts/{contract.id}"
            )
            await notification_service.notify_house_manager(
                session, contract.room_id, "contract", manager_text, f"/contracts/{contract.id}"
            )
            notified += 1

    logging.info(f"Expiry reminders sent for {notified} contracts")
    return notified


async def count_active_contracts(session: AsyncSession, room_id: int) -> int:
    result = await session.execute(
        select(func.count(Contract.id)).where(
            Contract.room_id == room_id,
            Contract.status == ContractStatus.active.value,
            Contract.deleted_at.is_(None),
        )
    )
    return result.scalar() or 0
