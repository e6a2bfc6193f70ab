"""
Invoice editing and bookkeeping.

Invariant kept by every write path: ``invoice.total_amount`` equals the
sum of its items, re-derived from the persisted rows. An invoice left
without items is deleted and the caller receives ``InvoiceDeleted``.
"""
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Iterable, List, Optional, Union

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from rental.config import config
from rental.database.models import (
    User, Invoice, InvoiceItem, InvoiceType, ItemSource, PaymentStatus, ServiceUsage, Room
)
from rental.errors import AccessDenied, ConflictError, NotFound, ValidationFailed
from rental.schemas.validation import (
    InvoiceCreate, InvoiceUpdate, PaymentStatusUpdate, validate_input
)
from rental.services.access_service import (
    get_room, can_access_invoice, can_manage_invoice, is_authorized_for_room,
    is_tenant, is_manager, get_managed_house_ids, get_tenant_room_ids
)
from rental.services.notification_service import notification_service
from rental.utils.formatting import now_utc


@dataclass
class InvoiceDeleted:
    """Returned instead of an invoice when an edit removed its last item"""
    invoice_id: int
    deleted: bool = True


def generate_transaction_code() -> str:
    return f"INV-{secrets.token_hex(4).upper()}-{int(time.time())}"


async def load_invoice(
    session: AsyncSession, invoice_id: int, lock: bool = False, with_items: bool = True
) -> Invoice:
    stmt = (
        select(Invoice)
        .where(Invoice.id == invoice_id, Invoice.deleted_at.is_(None))
        .execution_options(populate_existing=True)
    )
    if with_items:
        stmt = stmt.options(selectinload(Invoice.items))
    if lock:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    invoice = result.scalar_one_or_none()
    if not invoice:
        raise NotFound(f"Invoice {invoice_id} not found")
    return invoice


async def find_service_invoice(
    session: AsyncSession, room_id: int, month: int, year: int, lock: bool = False
) -> Optional[Invoice]:
    """The live service-usage invoice of a room for a period, if any"""
    stmt = select(Invoice).where(
        Invoice.room_id == room_id,
        Invoice.month == month,
        Invoice.year == year,
        Invoice.invoice_type == InvoiceType.service_usage.value,
        Invoice.deleted_at.is_(None),
    )
    if lock:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_items(session: AsyncSession, invoice_id: int, source_type: Optional[str] = None) -> List[InvoiceItem]:
    stmt = select(InvoiceItem).where(InvoiceItem.invoice_id == invoice_id)
    if source_type:
        stmt = stmt.where(InvoiceItem.source_type == source_type)
    result = await session.execute(stmt.order_by(InvoiceItem.id))
    return list(result.scalars().all())


async def count_items(session: AsyncSession, invoice_id: int) -> int:
    result = await session.execute(
        select(func.count(InvoiceItem.id)).where(InvoiceItem.invoice_id == invoice_id)
    )
    return result.scalar() or 0


async def recalculate_total(session: AsyncSession, invoice: Invoice) -> int:
    """Re-derive total_amount from the persisted items"""
    await session.flush()
    result = await session.execute(
        select(func.coalesce(func.sum(InvoiceItem.amount), 0)).where(InvoiceItem.invoice_id == invoice.id)
    )
    invoice.total_amount = int(result.scalar() or 0)
    return invoice.total_amount


async def finalize_invoice(session: AsyncSession, invoice: Invoice, acting_user_id: Optional[int]) -> bool:
    """
    Recompute the total, or delete the invoice if no item is left.

    Returns:
        False when the invoice was deleted
    """
    await session.flush()
    if await count_items(session, invoice.id) == 0:
        invoice.deleted_at = now_utc()
        invoice.total_amount = 0
        invoice.updated_by = acting_user_id
        logging.info(f"Invoice {invoice.id} has no items left, deleted")
        return False
    await recalculate_total(session, invoice)
    invoice.updated_by = acting_user_id
    return True


async def remove_service_usages(session: AsyncSession, usages: Iterable[ServiceUsage]) -> set:
    """
    Delete usage rows together with the invoice items that bill them.

    Returns:
        Ids of invoices that lost items (totals need re-deriving)
    """
    touched = set()
    for usage in usages:
        result = await session.execute(
            select(InvoiceItem).where(InvoiceItem.service_usage_id == usage.id)
        )
        for item in result.scalars().all():
            touched.add(item.invoice_id)
            await session.delete(item)
        await session.delete(usage)
    await session.flush()
    return touched


async def _deny_or_hide(session: AsyncSession, user: User, invoice: Invoice):
    if await can_access_invoice(session, user, invoice):
        raise AccessDenied(f"User {user.id} may not modify invoice {invoice.id}")
    raise NotFound(f"Invoice {invoice.id} not found")


async def create_invoice(session: AsyncSession, acting_user: User, data) -> Invoice:
    """
    Create an invoice with at least one item; total is the sum of items.

    Raises:
        ConflictError: a service-usage invoice already exists for the period
    """
    data = validate_input(InvoiceCreate, data)
    room = await get_room(session, data.room_id)
    if not await is_authorized_for_room(session, acting_user, room.id):
        raise AccessDenied(f"User {acting_user.id} may not bill room {room.id}")

    is_service = data.invoice_type == InvoiceType.service_usage
    if is_service:
        if data.month is None or data.year is None:
            raise ValidationFailed("Service invoices need a period", {"month": "Required", "year": "Required"})
        if await find_service_invoice(session, room.id, data.month, data.year):
            raise ConflictError(
                f"Room {room.id} already has a service invoice for {data.month}/{data.year}"
            )

    invoice = Invoice(
        room_id=room.id,
        invoice_type=data.invoice_type.value,
        total_amount=sum(item.amount for item in data.items),
        month=data.month,
        year=data.year,
        description=data.description,
        payment_method_id=data.payment_method_id or config.TRANSFER_PAYMENT_METHOD_ID,
        payment_status=data.payment_status.value,
        created_by=acting_user.id,
        updated_by=acting_user.id,
    )
    invoice.items = [
        InvoiceItem(source_type=ItemSource.manual.value, amount=item.amount, description=item.description)
        for item in data.items
    ]
    session.add(invoice)
    try:
        await session.flush()
    except IntegrityError as e:
        await session.rollback()
        raise ConflictError(
            f"Room {data.room_id} already has a service invoice for {data.month}/{data.year}"
        ) from e

    await session.commit()
    logging.info(f"Invoice {invoice.id} created for room {room.id}, total {invoice.total_amount}")

    await notification_service.notify_room_tenants(
        session, room.id, "invoice",
        f"A new invoice was issued for room {room.room_number}.",
        f"/invoices/{invoice.id}",
    )
    return await load_invoice(session, invoice.id)


async def get_invoice(session: AsyncSession, acting_user: User, invoice_id: int) -> Invoice:
    invoice = await load_invoice(session, invoice_id)
    if not await can_access_invoice(session, acting_user, invoice):
        raise NotFound(f"Invoice {invoice_id} not found")
    return invoice


async def list_invoices(
    session: AsyncSession,
    acting_user: User,
    room_id: Optional[int] = None,
    payment_status: Optional[str] = None,
    month: Optional[int] = None,
    year: Optional[int] = None,
    invoice_type: Optional[str] = None,
) -> List[Invoice]:
    stmt = (
        select(Invoice)
        .where(Invoice.deleted_at.is_(None))
        .options(selectinload(Invoice.items))
        .order_by(Invoice.id.desc())
    )
    if is_tenant(acting_user):
        stmt = stmt.where(Invoice.room_id.in_(await get_tenant_room_ids(session, acting_user.id)))
    elif is_manager(acting_user):
        house_ids = await get_managed_house_ids(session, acting_user)
        stmt = stmt.where(Invoice.room_id.in_(select(Room.id).where(Room.house_id.in_(house_ids))))

    if room_id:
        stmt = stmt.where(Invoice.room_id == room_id)
    if payment_status:
        stmt = stmt.where(Invoice.payment_status == payment_status)
    if month:
        stmt = stmt.where(Invoice.month == month)
    if year:
        stmt = stmt.where(Invoice.year == year)
    if invoice_type:
        stmt = stmt.where(Invoice.invoice_type == invoice_type)

    result = await session.execute(stmt)
    return list(result.scalars().all())


async def update_invoice(
    session: AsyncSession, acting_user: User, invoice_id: int, data
) -> Union[Invoice, InvoiceDeleted]:
    """
    Edit an invoice.

    Manual items are diffed against the submitted list: items whose id is
    missing are deleted, listed ones updated, id-less ones created.
    Service-usage items are left to reconciliation, except for the usage
    rows named in ``deleted_service_usage_ids`` which are removed together
    with their items. A non-completed payment status clears the payment
    date and transaction code.

    Returns:
        The updated invoice, or InvoiceDeleted when no item remains
    """
    data = validate_input(InvoiceUpdate, data)
    invoice = await load_invoice(session, invoice_id, lock=True, with_items=False)
    if not await can_manage_invoice(session, acting_user, invoice):
        await _deny_or_hide(session, acting_user, invoice)

    changes = data.model_dump(exclude_unset=True)
    if "description" in changes:
        invoice.description = data.description
    if data.payment_method_id is not None:
        invoice.payment_method_id = data.payment_method_id

    if data.payment_status is not None:
        invoice.payment_status = data.payment_status.value
        if data.payment_status == PaymentStatus.completed:
            invoice.payment_date = data.payment_date or invoice.payment_date or now_utc()
            invoice.transaction_code = data.transaction_code or invoice.transaction_code or generate_transaction_code()
        else:
            invoice.payment_date = None
            invoice.transaction_code = None
    else:
        if data.payment_date is not None:
            invoice.payment_date = data.payment_date
        if data.transaction_code is not None:
            invoice.transaction_code = data.transaction_code

    if data.items is not None:
        all_items = await get_items(session, invoice.id)
        manual = {item.id: item for item in all_items if item.source_type == ItemSource.manual.value}
        own_ids = {item.id for item in all_items}
        foreign = sorted(i.id for i in data.items if i.id is not None and i.id not in own_ids)
        if foreign:
            raise ValidationFailed(
                f"Items do not belong to invoice {invoice.id}",
                {"items": f"Unknown item ids: {', '.join(str(f) for f in foreign)}"},
            )

        submitted = {i.id: i for i in data.items if i.id is not None}
        for item_id, item in manual.items():
            if item_id not in submitted:
                await session.delete(item)
            else:
                item.amount = submitted[item_id].amount
                item.description = submitted[item_id].description
        for new_item in data.items:
            if new_item.id is None:
                session.add(InvoiceItem(
                    invoice_id=invoice.id,
                    source_type=ItemSource.manual.value,
                    amount=new_item.amount,
                    description=new_item.description,
                ))

    if data.deleted_service_usage_ids:
        result = await session.execute(
            select(ServiceUsage)
            .join(InvoiceItem, InvoiceItem.service_usage_id == ServiceUsage.id)
            .where(
                InvoiceItem.invoice_id == invoice.id,
                ServiceUsage.id.in_(data.deleted_service_usage_ids),
            )
        )
        usages = list(result.scalars().unique().all())
        unknown = set(data.deleted_service_usage_ids) - {u.id for u in usages}
        if unknown:
            raise ValidationFailed(
                f"Usage records are not billed on invoice {invoice.id}",
                {"deleted_service_usage_ids": ", ".join(str(u) for u in sorted(unknown))},
            )
        await remove_service_usages(session, usages)

    alive = await finalize_invoice(session, invoice, acting_user.id)
    await session.commit()

    if not alive:
        return InvoiceDeleted(invoice_id=invoice.id)
    logging.info(f"Invoice {invoice.id} updated by user {acting_user.id}, total {invoice.total_amount}")
    return await load_invoice(session, invoice.id)


async def delete_invoice(session: AsyncSession, acting_user: User, invoice_id: int) -> InvoiceDeleted:
    invoice = await load_invoice(session, invoice_id, lock=True, with_items=False)
    if not await can_manage_invoice(session, acting_user, invoice):
        await _deny_or_hide(session, acting_user, invoice)

    invoice.deleted_at = now_utc()
    invoice.updated_by = acting_user.id
    await session.commit()
    logging.info(f"Invoice {invoice.id} deleted by user {acting_user.id}")
    return InvoiceDeleted(invoice_id=invoice.id)


async def update_payment_status(session: AsyncSession, acting_user: User, invoice_id: int, data) -> Invoice:
    """
    Manager/admin sets the payment method and status of an invoice.

    A completed payment needs a payment date and gets a transaction code
    if it has none; tenants of the room are notified.
    """
    data = validate_input(PaymentStatusUpdate, data)
    invoice = await load_invoice(session, invoice_id, lock=True, with_items=False)
    if not await can_manage_invoice(session, acting_user, invoice):
        await _deny_or_hide(session, acting_user, invoice)

    invoice.payment_method_id = data.payment_method_id
    invoice.payment_status = data.payment_status.value
    invoice.payment_date = data.payment_date
    if data.transaction_code:
        invoice.transaction_code = data.transaction_code
    elif not invoice.transaction_code:
        invoice.transaction_code = generate_transaction_code()
    invoice.updated_by = acting_user.id

    await session.commit()
    logging.info(f"Invoice {invoice.id} payment status -> {invoice.payment_status}")

    if data.payment_status == PaymentStatus.completed:
        await notification_service.notify_room_tenants(
            session, invoice.room_id, "invoice",
            f"Invoice #{invoice.id} has been paid.",
            f"/invoices/{invoice.id}",
        )
    return await load_invoice(session, invoice.id)
