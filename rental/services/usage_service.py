"""
Monthly service usage and invoice reconciliation.

For one room and period the manager submits meter readings / flat usage
per room service. Usage rows are upserted on (room_service_id, month,
year) and exactly one service-usage invoice of the period is kept in
step with them. Manual invoice items are never touched here.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from rental.config import config
from rental.database.models import (
    User, Room, RoomStatus, RoomService, RoomServiceStatus, ServiceUsage,
    Invoice, InvoiceItem, InvoiceType, ItemSource, PaymentStatus
)
from rental.errors import AccessDenied, ConflictError, ValidationFailed
from rental.schemas.validation import UsageSaveRequest, validate_input
from rental.services.access_service import (
    get_room, is_authorized_for_room, is_tenant, is_manager, get_managed_house_ids
)
from rental.services.invoice_service import (
    find_service_invoice, finalize_invoice, generate_transaction_code, get_items,
    load_invoice, remove_service_usages
)
from rental.services.notification_service import notification_service
from rental.utils.formatting import format_period, previous_period


@dataclass
class RoomServiceLine:
    room_service_id: int
    service_id: int
    service_name: str
    unit: Optional[str]
    is_metered: bool
    is_fixed: bool
    price: int
    start_meter: Optional[Decimal]
    end_meter: Optional[Decimal]
    usage_value: Optional[Decimal]
    price_used: Optional[int]
    has_usage: bool

    @property
    def can_edit(self) -> bool:
        return not self.has_usage


@dataclass
class RoomServicesView:
    room: Room
    month: int
    year: int
    services: List[RoomServiceLine]
    invoice_id: Optional[int] = None

    @property
    def has_invoice(self) -> bool:
        return self.invoice_id is not None


@dataclass
class RoomUpdateStatus:
    room: Room
    needs_update: bool


@dataclass
class RoomsNeedingUpdate:
    rooms: List[RoomUpdateStatus]
    total_with_services: int


@dataclass
class UsageSaveResult:
    saved_usages: List[ServiceUsage] = field(default_factory=list)
    invoice: Optional[Invoice] = None
    created_invoice: bool = False
    updated_invoice: bool = False
    invoice_deleted: bool = False

    @property
    def count(self) -> int:
        return len(self.saved_usages)


async def _active_room_services(session: AsyncSession, room_id: int) -> List[RoomService]:
    stmt = (
        select(RoomService)
        .where(
            RoomService.room_id == room_id,
            RoomService.status == RoomServiceStatus.active.value,
            RoomService.deleted_at.is_(None),
        )
        .options(selectinload(RoomService.service))
        .order_by(RoomService.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def _usages_for_period(
    session: AsyncSession, room_service_ids: List[int], month: int, year: int
) -> Dict[int, ServiceUsage]:
    if not room_service_ids:
        return {}
    stmt = select(ServiceUsage).where(
        ServiceUsage.room_service_id.in_(room_service_ids),
        ServiceUsage.month == month,
        ServiceUsage.year == year,
    )
    result = await session.execute(stmt)
    return {usage.room_service_id: usage for usage in result.scalars().all()}


async def get_room_services(
    session: AsyncSession, acting_user: User, room_id: int, month: int, year: int
) -> RoomServicesView:
    """
    Active services of a room for a period, ready for meter entry.

    A metered service without a reading this period starts from the
    previous period's end meter (0 when there is none).
    """
    room = await get_room(session, room_id)
    if not await is_authorized_for_room(session, acting_user, room.id):
        raise AccessDenied(f"User {acting_user.id} may not manage services of room {room_id}")

    room_services = await _active_room_services(session, room.id)
    ids = [rs.id for rs in room_services]
    current = await _usages_for_period(session, ids, month, year)
    prev_month, prev_year = previous_period(month, year)
    previous = await _usages_for_period(session, ids, prev_month, prev_year)

    lines = []
    for rs in room_services:
        usage = current.get(rs.id)
        seed = None
        if rs.service.is_metered:
            prev = previous.get(rs.id)
            seed = prev.end_meter if prev and prev.end_meter is not None else Decimal("0")
        lines.append(RoomServiceLine(
            room_service_id=rs.id,
            service_id=rs.service_id,
            service_name=rs.service.name,
            unit=rs.service.unit,
            is_metered=rs.service.is_metered,
            is_fixed=rs.is_fixed,
            price=rs.unit_price,
            start_meter=usage.start_meter if usage else seed,
            end_meter=usage.end_meter if usage else None,
            usage_value=usage.usage_value if usage else None,
            price_used=usage.price_used if usage else rs.unit_price,
            has_usage=usage is not None,
        ))

    invoice = await find_service_invoice(session, room.id, month, year)
    return RoomServicesView(
        room=room, month=month, year=year, services=lines,
        invoice_id=invoice.id if invoice else None,
    )


async def get_rooms_needing_update(
    session: AsyncSession,
    acting_user: User,
    month: int,
    year: int,
    house_id: Optional[int] = None,
    show_all: bool = False,
) -> RoomsNeedingUpdate:
    """Occupied rooms with services; flagged when no active service has usage for the period"""
    if is_tenant(acting_user):
        raise AccessDenied("Tenants cannot manage monthly services")

    stmt = (
        select(Room)
        .where(Room.status == RoomStatus.used.value, Room.deleted_at.is_(None))
        .options(selectinload(Room.house))
        .order_by(Room.id)
    )
    if is_manager(acting_user):
        stmt = stmt.where(Room.house_id.in_(await get_managed_house_ids(session, acting_user)))
    if house_id:
        stmt = stmt.where(Room.house_id == house_id)
    rooms = list((await session.execute(stmt)).scalars().all())
    if not rooms:
        return RoomsNeedingUpdate(rooms=[], total_with_services=0)

    room_ids = [room.id for room in rooms]
    with_services = set((await session.execute(
        select(RoomService.room_id).where(
            RoomService.room_id.in_(room_ids), RoomService.deleted_at.is_(None)
        ).distinct()
    )).scalars().all())
    with_usage = set((await session.execute(
        select(RoomService.room_id)
        .join(ServiceUsage, ServiceUsage.room_service_id == RoomService.id)
        .where(
            RoomService.room_id.in_(room_ids),
            RoomService.status == RoomServiceStatus.active.value,
            RoomService.deleted_at.is_(None),
            ServiceUsage.month == month,
            ServiceUsage.year == year,
        )
        .distinct()
    )).scalars().all())

    flagged = [
        RoomUpdateStatus(room=room, needs_update=room.id not in with_usage)
        for room in rooms if room.id in with_services
    ]
    if not show_all:
        flagged = [entry for entry in flagged if entry.needs_update]
    return RoomsNeedingUpdate(rooms=flagged, total_with_services=len(with_services))


async def _rebuild_service_items(
    session: AsyncSession, invoice: Invoice, saved: List[ServiceUsage], names: Dict[int, str],
    month: int, year: int
):
    """One service item per saved usage row; existing items are reused by usage id"""
    existing = await get_items(session, invoice.id, ItemSource.service_usage.value)
    by_usage = {item.service_usage_id: item for item in existing}
    saved_ids = {usage.id for usage in saved}

    for item in existing:
        if item.service_usage_id not in saved_ids:
            await session.delete(item)

    period = format_period(month, year)
    for usage in saved:
        description = f"{names[usage.room_service_id]} charge for {period}"
        item = by_usage.get(usage.id)
        if item:
            item.amount = usage.price_used
            item.description = description
        else:
            session.add(InvoiceItem(
                invoice_id=invoice.id,
                source_type=ItemSource.service_usage.value,
                service_usage_id=usage.id,
                amount=usage.price_used,
                description=description,
            ))
    await session.flush()


async def save_room_service_usage(session: AsyncSession, acting_user: User, request) -> UsageSaveResult:
    """
    Save a room's monthly usage and reconcile its service invoice.

    Algorithm:
    1. Validate every entry first (service belongs to the room and is
       active, start meter <= end meter); one bad entry rejects the batch
    2. Delete usage rows of explicitly unchecked services, with their items
    3. usage_value > 0 upserts the usage row, 0 deletes it (and its items)
    4. Resolve the period invoice: reuse when ``update_invoice`` is set,
       create one when there is none and something was saved
    5. Rebuild the invoice's service items from the saved rows
    6. Re-derive totals from persisted items; an invoice left empty is deleted

    Everything runs in one transaction, rolled back on any error.

    Raises:
        ValidationFailed, AccessDenied, NotFound, ConflictError
    """
    data = validate_input(UsageSaveRequest, request)
    month, year = data.month, data.year

    room = await get_room(session, data.room_id)
    if not await is_authorized_for_room(session, acting_user, room.id):
        raise AccessDenied(f"User {acting_user.id} may not update services of room {room.id}")

    result = UsageSaveResult()
    try:
        invoice = await find_service_invoice(session, room.id, month, year, lock=True)

        room_services = {rs.id: rs for rs in await _active_room_services(session, room.id)}
        names = {rs_id: rs.service.name for rs_id, rs in room_services.items()}

        for index, entry in enumerate(data.services):
            rs = room_services.get(entry.room_service_id)
            if rs is None:
                raise ValidationFailed(
                    f"Service {entry.room_service_id} is not an active service of room {room.id}",
                    {f"services.{index}.room_service_id": "Not an active service of this room"},
                )
            if entry.start_meter is not None and entry.end_meter is not None \
                    and entry.start_meter > entry.end_meter:
                raise ValidationFailed(
                    f"End meter must be greater than or equal to start meter for service: {rs.service.name}",
                    {f"services.{index}.end_meter": "Must be >= start_meter"},
                )

        # Unchecked services (any status, but only this room's)
        removals = []
        if data.unchecked_services:
            owned = set((await session.execute(
                select(RoomService.id).where(
                    RoomService.room_id == room.id, RoomService.id.in_(data.unchecked_services)
                )
            )).scalars().all())
            removals.extend((await _usages_for_period(session, list(owned), month, year)).values())
        touched = await remove_service_usages(session, removals)

        current = await _usages_for_period(session, list(room_services), month, year)
        saved, zeroed = [], []
        for entry in data.services:
            usage = current.get(entry.room_service_id)
            if entry.usage_value > 0:
                if usage is None:
                    usage = ServiceUsage(room_service_id=entry.room_service_id, month=month, year=year)
                    session.add(usage)
                    current[entry.room_service_id] = usage
                usage.start_meter = entry.start_meter
                usage.end_meter = entry.end_meter
                usage.usage_value = entry.usage_value
                usage.price_used = entry.price_used
                usage.description = entry.description
                if usage not in saved:
                    saved.append(usage)
            elif usage is not None:
                # Zero usage means not applicable this period
                zeroed.append(current.pop(entry.room_service_id))
                if usage in saved:
                    saved.remove(usage)
        await session.flush()
        touched |= await remove_service_usages(session, zeroed)

        rebuild = False
        if invoice is None:
            if saved:
                invoice = Invoice(
                    room_id=room.id,
                    invoice_type=InvoiceType.service_usage.value,
                    total_amount=sum(usage.price_used for usage in saved),
                    month=month,
                    year=year,
                    description=f"Service invoice {format_period(month, year)}",
                    created_by=acting_user.id,
                    updated_by=acting_user.id,
                    payment_method_id=config.TRANSFER_PAYMENT_METHOD_ID,
                    payment_status=PaymentStatus.pending.value,
                    transaction_code=generate_transaction_code(),
                )
                session.add(invoice)
                await session.flush()
                result.created_invoice = True
                rebuild = True
        elif data.update_invoice:
            result.updated_invoice = True
            rebuild = True

        if rebuild:
            await _rebuild_service_items(session, invoice, saved, names, month, year)
            touched.add(invoice.id)

        # Re-derive every invoice that gained or lost items
        for invoice_id in sorted(touched):
            target = (await session.execute(
                select(Invoice).where(Invoice.id == invoice_id, Invoice.deleted_at.is_(None))
            )).scalar_one_or_none()
            if target is None:
                continue
            alive = await finalize_invoice(session, target, acting_user.id)
            if not alive and invoice is not None and target.id == invoice.id:
                result.invoice_deleted = True

        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        logging.warning(f"Concurrent usage save for room {data.room_id} {month}/{year}: {e}")
        raise ConflictError(
            f"Services of room {data.room_id} for {month}/{year} were saved concurrently, retry"
        ) from e
    except Exception:
        await session.rollback()
        raise

    result.saved_usages = saved
    logging.info(
        f"Saved {len(saved)} usage rows for room {room.id} {month}/{year}"
        f" (invoice {invoice.id if invoice else None}, created={result.created_invoice})"
    )

    if invoice is not None and not result.invoice_deleted:
        result.invoice = await load_invoice(session, invoice.id)

    if result.created_invoice and result.invoice is not None:
        await notification_service.notify_room_tenants(
            session, room.id, "invoice",
            f"The service invoice for {format_period(month, year)} has been issued.",
            f"/invoices/{invoice.id}",
        )
    return result
