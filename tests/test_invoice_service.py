import pytest
from datetime import datetime, timezone

from sqlalchemy import select, func

from rental.database.models import Invoice, InvoiceItem, ItemSource, PaymentStatus, ServiceUsage
from rental.errors import AccessDenied, NotFound, ValidationFailed
from rental.services.invoice_service import (
    InvoiceDeleted, create_invoice, get_invoice, list_invoices, update_invoice,
    delete_invoice, update_payment_status
)
from rental.services.usage_service import save_room_service_usage


async def items_total(session, invoice_id):
    return await session.scalar(
        select(func.coalesce(func.sum(InvoiceItem.amount), 0)).where(InvoiceItem.invoice_id == invoice_id)
    )


@pytest.mark.asyncio
async def test_create_invoice_totals_items(async_session, world):
    invoice = await create_invoice(async_session, world.manager, {
        "room_id": world.room.id,
        "description": "Repairs",
        "items": [{"amount": 150_000, "description": "Door lock"}, {"amount": 50_000, "description": "Bulb"}],
    })

    assert invoice.total_amount == 200_000
    assert [i.source_type for i in invoice.items] == [ItemSource.manual.value] * 2
    assert invoice.payment_status == PaymentStatus.pending.value
    assert await items_total(async_session, invoice.id) == invoice.total_amount


@pytest.mark.asyncio
async def test_create_invoice_needs_items_and_manager(async_session, world):
    with pytest.raises(ValidationFailed):
        await create_invoice(async_session, world.manager, {"room_id": world.room.id, "items": []})
    with pytest.raises(AccessDenied):
        await create_invoice(async_session, world.other_manager, {
            "room_id": world.room.id, "items": [{"amount": 1}],
        })


@pytest.mark.asyncio
async def test_manual_items_are_diffed(async_session, world, factory):
    invoice = await factory.invoice(world.room, [100, 200])
    keep, drop = invoice.items

    updated = await update_invoice(async_session, world.manager, invoice.id, {
        "items": [{"id": keep.id, "amount": 300, "description": "Updated"}, {"amount": 50, "description": "New"}],
    })

    assert sorted(i.amount for i in updated.items) == [50, 300]
    assert drop.id not in [i.id for i in updated.items]
    assert keep.id in [i.id for i in updated.items]
    assert updated.total_amount == 350
    assert await items_total(async_session, invoice.id) == 350


@pytest.mark.asyncio
async def test_removing_last_item_deletes_invoice(async_session, world, factory):
    invoice = await factory.invoice(world.room, [100])

    result = await update_invoice(async_session, world.manager, invoice.id, {"items": []})

    assert isinstance(result, InvoiceDeleted)
    assert result.deleted
    assert result.invoice_id == invoice.id
    with pytest.raises(NotFound):
        await get_invoice(async_session, world.manager, invoice.id)


@pytest.mark.asyncio
async def test_foreign_item_ids_are_rejected(async_session, world, factory):
    invoice = await factory.invoice(world.room, [100])
    other = await factory.invoice(world.room, [200])
    invoice_id, foreign_id = invoice.id, other.items[0].id

    with pytest.raises(ValidationFailed) as exc:
        await update_invoice(async_session, world.manager, invoice_id, {"items": [{"id": foreign_id, "amount": 1}]})
    assert "items" in exc.value.fields


@pytest.mark.asyncio
async def test_deleting_billed_usage_from_invoice(async_session, world, factory):
    electricity = await factory.service("Electricity", 3500, is_metered=True)
    water = await factory.service("Water", 80_000)
    elec_rs = await factory.room_service(world.room, electricity)
    water_rs = await factory.room_service(world.room, water)
    saved = await save_room_service_usage(async_session, world.manager, {
        "room_id": world.room.id, "month": 12, "year": 2025,
        "services": [
            {"room_service_id": elec_rs.id, "start_meter": 0, "end_meter": 10, "usage_value": 10, "price_used": 35_000},
            {"room_service_id": water_rs.id, "usage_value": 1, "price_used": 80_000},
        ],
    })
    water_usage = next(u for u in saved.saved_usages if u.room_service_id == water_rs.id)

    updated = await update_invoice(
        async_session, world.manager, saved.invoice.id, {"deleted_service_usage_ids": [water_usage.id]}
    )

    assert updated.total_amount == 35_000
    assert [i.amount for i in updated.items] == [35_000]
    assert await async_session.scalar(
        select(func.count(ServiceUsage.id)).where(ServiceUsage.room_service_id == water_rs.id)
    ) == 0


@pytest.mark.asyncio
async def test_usage_not_on_invoice_cannot_be_deleted(async_session, world, factory):
    invoice = await factory.invoice(world.room, [100])
    invoice_id = invoice.id

    with pytest.raises(ValidationFailed):
        await update_invoice(async_session, world.manager, invoice_id, {"deleted_service_usage_ids": [42]})


@pytest.mark.asyncio
async def test_reopening_payment_clears_payment_fields(async_session, world, factory):
    invoice = await factory.invoice(world.room, [100])
    paid_at = datetime(2026, 2, 1, 9, 30, tzinfo=timezone.utc)

    paid = await update_payment_status(async_session, world.manager, invoice.id, {
        "payment_method_id": 2, "payment_status": "completed", "payment_date": paid_at,
    })
    assert paid.payment_status == PaymentStatus.completed.value
    assert paid.payment_date is not None
    assert paid.transaction_code.startswith("INV-")

    reopened = await update_invoice(async_session, world.manager, invoice.id, {"payment_status": "pending"})
    assert reopened.payment_status == PaymentStatus.pending.value
    assert reopened.payment_date is None
    assert reopened.transaction_code is None


@pytest.mark.asyncio
async def test_completed_status_needs_payment_date(async_session, world, factory):
    invoice = await factory.invoice(world.room, [100])

    with pytest.raises(ValidationFailed) as exc:
        await update_payment_status(async_session, world.manager, invoice.id, {
            "payment_method_id": 2, "payment_status": "completed",
        })
    assert exc.value.kind == "validation"


@pytest.mark.asyncio
async def test_tenant_sees_but_cannot_edit(async_session, world, factory):
    await factory.contract(world.room, [world.tenant])
    invoice = await factory.invoice(world.room, [100])

    assert (await get_invoice(async_session, world.tenant, invoice.id)).id == invoice.id
    with pytest.raises(AccessDenied):
        await update_invoice(async_session, world.tenant, invoice.id, {"description": "Paid already"})
    with pytest.raises(AccessDenied):
        await delete_invoice(async_session, world.tenant, invoice.id)

    # No contract on the room: the invoice does not exist for them
    with pytest.raises(NotFound):
        await get_invoice(async_session, world.tenant2, invoice.id)
    with pytest.raises(NotFound):
        await update_invoice(async_session, world.other_manager, invoice.id, {"description": "x"})


@pytest.mark.asyncio
async def test_delete_invoice_is_soft(async_session, world, factory):
    invoice = await factory.invoice(world.room, [100])

    result = await delete_invoice(async_session, world.manager, invoice.id)

    assert result == InvoiceDeleted(invoice_id=invoice.id)
    row = (await async_session.execute(select(Invoice).where(Invoice.id == invoice.id))).scalar_one()
    assert row.deleted_at is not None
    assert await list_invoices(async_session, world.manager) == []


@pytest.mark.asyncio
async def test_list_invoices_by_role(async_session, world, factory):
    await factory.contract(world.room, [world.tenant])
    mine = await factory.invoice(world.room, [100])
    foreign = await factory.invoice(world.foreign_room, [200], status=PaymentStatus.completed)

    assert [i.id for i in await list_invoices(async_session, world.tenant)] == [mine.id]
    assert [i.id for i in await list_invoices(async_session, world.manager)] == [mine.id]
    assert {i.id for i in await list_invoices(async_session, world.admin)} == {mine.id, foreign.id}
    assert [i.id for i in await list_invoices(async_session, world.admin, payment_status="completed")] == [foreign.id]
    assert await list_invoices(async_session, world.tenant2) == []
