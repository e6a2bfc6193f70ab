import pytest
from datetime import date

from sqlalchemy import event, select, func

from rental.database.models import (
    Room, Contract, ContractStatus, Invoice, Notification, RoomStatus
)
from rental.errors import AccessDenied, NotFound, ValidationFailed
from rental.services import contract_service
from rental.services.contract_service import (
    create_contract, activate_contract, update_contract, delete_contract,
    get_contract, list_contracts, get_available_tenants, change_room_status,
    expire_outdated_contracts, notify_expiring_contracts, count_active_contracts,
    resolve_time_renew
)


def contract_input(room, tenants, **overrides):
    data = {
        "room_id": room.id,
        "user_ids": [t.id for t in tenants],
        "start_date": date(2026, 1, 1),
        "end_date": date(2026, 12, 31),
        "monthly_price": 3_000_000,
        "deposit_amount": 3_000_000,
        "status": "active",
    }
    data.update(overrides)
    return data


@pytest.mark.asyncio
async def test_create_active_contract_occupies_room(async_session, world, reload):
    """Room without contract becomes used once an active contract is created"""
    contract = await create_contract(async_session, world.manager, contract_input(world.room, [world.tenant]))

    room = await reload(Room, world.room.id)
    assert contract.status == ContractStatus.active.value
    assert room.status == RoomStatus.used.value
    assert contract.tenant_ids == [world.tenant.id]
    assert contract.created_by == world.manager.id


@pytest.mark.asyncio
async def test_create_contract_issues_initial_invoice(async_session, world):
    """Deposit + first month rent on one invoice, tenants notified"""
    contract = await create_contract(async_session, world.manager, contract_input(world.room, [world.tenant]))

    invoices = (await async_session.execute(
        select(Invoice).where(Invoice.room_id == world.room.id)
    )).scalars().all()
    assert len(invoices) == 1
    assert invoices[0].total_amount == 6_000_000
    assert invoices[0].description == f"Initial invoice for contract #{contract.id}"

    count = await async_session.scalar(
        select(func.count(Notification.id)).where(Notification.user_id == world.tenant.id)
    )
    assert count == 2  # contract + invoice


@pytest.mark.asyncio
async def test_initial_invoice_skips_zero_amounts(async_session, world):
    await create_contract(
        async_session, world.manager,
        contract_input(world.room, [world.tenant], deposit_amount=0, monthly_price=0)
    )

    count = await async_session.scalar(select(func.count(Invoice.id)).where(Invoice.room_id == world.room.id))
    assert count == 0


@pytest.mark.asyncio
async def test_second_active_contract_supersedes_first(async_session, world, reload):
    """Only one active contract per room: the older one expires"""
    c1 = await create_contract(async_session, world.manager, contract_input(world.room, [world.tenant]))
    c2 = await create_contract(async_session, world.admin, contract_input(world.room, [world.tenant2]))

    c1 = await reload(Contract, c1.id)
    room = await reload(Room, world.room.id)
    assert c1.status == ContractStatus.expired.value
    assert c1.termination_reason == f"Superseded by contract #{c2.id}"
    assert c2.status == ContractStatus.active.value
    assert room.status == RoomStatus.used.value
    assert await count_active_contracts(async_session, world.room.id) == 1


@pytest.mark.asyncio
async def test_draft_contract_leaves_room_alone(async_session, world, reload):
    draft = await create_contract(
        async_session, world.manager, contract_input(world.room, [world.tenant], status="draft")
    )
    assert draft.status == ContractStatus.draft.value
    assert (await reload(Room, world.room.id)).status == RoomStatus.available.value

    active = await activate_contract(async_session, world.manager, draft.id)
    assert active.status == ContractStatus.active.value
    assert (await reload(Room, world.room.id)).status == RoomStatus.used.value


@pytest.mark.asyncio
async def test_create_contract_rejects_bad_input(async_session, world):
    with pytest.raises(ValidationFailed) as exc:
        await create_contract(
            async_session, world.manager,
            contract_input(world.room, [world.tenant], end_date=date(2025, 12, 1))
        )
    assert exc.value.kind == "validation"

    with pytest.raises(ValidationFailed):
        await create_contract(async_session, world.manager, contract_input(world.room, [world.manager]))

    with pytest.raises(ValidationFailed):
        await create_contract(
            async_session, world.manager, contract_input(world.room, [world.tenant], status="expired")
        )


@pytest.mark.asyncio
async def test_create_contract_requires_room_manager(async_session, world):
    with pytest.raises(AccessDenied):
        await create_contract(async_session, world.other_manager, contract_input(world.room, [world.tenant]))

    with pytest.raises(NotFound):
        await create_contract(async_session, world.manager, contract_input(world.room, [world.tenant], room_id=9999))


@pytest.mark.asyncio
async def test_terminate_releases_room(async_session, world, reload):
    contract = await create_contract(async_session, world.manager, contract_input(world.room, [world.tenant]))

    updated = await update_contract(async_session, world.manager, contract.id, {"status": "terminated"})

    assert updated.status == ContractStatus.terminated.value
    assert updated.termination_reason
    assert (await reload(Room, world.room.id)).status == RoomStatus.available.value


@pytest.mark.asyncio
async def test_closed_contract_accepts_only_audit_fields(async_session, world):
    contract = await create_contract(async_session, world.manager, contract_input(world.room, [world.tenant]))
    await update_contract(async_session, world.manager, contract.id, {"status": "expired"})

    with pytest.raises(ValidationFailed) as exc:
        await update_contract(async_session, world.manager, contract.id, {"monthly_price": 1})
    assert "monthly_price" in exc.value.fields

    updated = await update_contract(
        async_session, world.manager, contract.id,
        {"termination_reason": "Moved out early", "deposit_status": "refunded"}
    )
    assert updated.termination_reason == "Moved out early"
    assert updated.deposit_status == "refunded"


@pytest.mark.asyncio
async def test_update_replaces_tenants(async_session, world):
    contract = await create_contract(async_session, world.manager, contract_input(world.room, [world.tenant]))

    updated = await update_contract(
        async_session, world.manager, contract.id, {"user_ids": [world.tenant2.id, world.tenant.id]}
    )
    assert updated.tenant_ids == [world.tenant.id, world.tenant2.id]

    updated = await update_contract(async_session, world.manager, contract.id, {"user_ids": [world.tenant2.id]})
    assert updated.tenant_ids == [world.tenant2.id]


@pytest.mark.asyncio
async def test_moving_active_contract_frees_old_room(async_session, world, reload):
    contract = await create_contract(async_session, world.manager, contract_input(world.room, [world.tenant]))

    moved = await update_contract(async_session, world.manager, contract.id, {"room_id": world.room2.id})

    assert moved.room_id == world.room2.id
    assert (await reload(Room, world.room.id)).status == RoomStatus.available.value
    assert (await reload(Room, world.room2.id)).status == RoomStatus.used.value


@pytest.mark.asyncio
async def test_delete_contract_releases_room(async_session, world, reload):
    contract = await create_contract(async_session, world.manager, contract_input(world.room, [world.tenant]))

    await delete_contract(async_session, world.manager, contract.id)

    assert (await reload(Room, world.room.id)).status == RoomStatus.available.value
    with pytest.raises(NotFound):
        await get_contract(async_session, world.manager, contract.id)


@pytest.mark.asyncio
async def test_contract_visibility(async_session, world):
    contract = await create_contract(async_session, world.manager, contract_input(world.room, [world.tenant]))

    assert (await get_contract(async_session, world.tenant, contract.id)).id == contract.id
    with pytest.raises(NotFound):
        await get_contract(async_session, world.tenant2, contract.id)
    with pytest.raises(NotFound):
        await get_contract(async_session, world.other_manager, contract.id)

    # A party may read but not edit
    with pytest.raises(AccessDenied):
        await update_contract(async_session, world.tenant, contract.id, {"monthly_price": 1})
    with pytest.raises(NotFound):
        await update_contract(async_session, world.other_manager, contract.id, {"monthly_price": 1})


@pytest.mark.asyncio
async def test_list_contracts_by_role(async_session, world):
    mine = await create_contract(async_session, world.manager, contract_input(world.room, [world.tenant]))
    other = await create_contract(
        async_session, world.other_manager, contract_input(world.foreign_room, [world.tenant2])
    )

    assert [c.id for c in await list_contracts(async_session, world.tenant)] == [mine.id]
    assert [c.id for c in await list_contracts(async_session, world.manager)] == [mine.id]
    assert {c.id for c in await list_contracts(async_session, world.admin)} == {mine.id, other.id}
    assert await list_contracts(async_session, world.admin, status="expired") == []


@pytest.mark.asyncio
async def test_available_tenants_excludes_active_parties(async_session, world):
    await create_contract(async_session, world.manager, contract_input(world.room, [world.tenant]))

    tenants = await get_available_tenants(async_session, world.manager, world.room2.id)
    assert [t.id for t in tenants] == [world.tenant2.id]

    with pytest.raises(AccessDenied):
        await get_available_tenants(async_session, world.tenant, world.room2.id)


# Room -> contract cascade

@pytest.mark.asyncio
async def test_room_maintenance_terminates_contract(async_session, world, reload):
    """Cascaded contracts keep their creator as updated_by, not whoever changed the room"""
    contract = await create_contract(async_session, world.admin, contract_input(world.room, [world.tenant]))

    change = await change_room_status(async_session, world.manager, world.room.id, "maintenance")

    contract = await reload(Contract, contract.id)
    assert change.affected_contract_ids == [contract.id]
    assert change.warnings == []
    assert contract.status == ContractStatus.terminated.value
    assert contract.termination_reason == "Room changed to maintenance"
    assert contract.updated_by == world.admin.id
    assert contract.created_by == world.admin.id


@pytest.mark.asyncio
async def test_room_available_expires_contract(async_session, world, reload):
    contract = await create_contract(async_session, world.manager, contract_input(world.room, [world.tenant]))

    await change_room_status(async_session, world.admin, world.room.id, RoomStatus.available)

    assert (await reload(Contract, contract.id)).status == ContractStatus.expired.value


@pytest.mark.asyncio
async def test_room_cascade_failure_is_reported(async_session, world, reload, monkeypatch):
    """Room update commits even when its contracts cannot follow"""
    contract = await create_contract(async_session, world.manager, contract_input(world.room, [world.tenant]))

    async def broken(*args, **kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(contract_service, "_cascade_room_status", broken)
    change = await change_room_status(async_session, world.manager, world.room.id, "maintenance")

    assert change.affected_contract_ids == []
    assert len(change.warnings) == 1
    assert "database is locked" in change.warnings[0]
    assert (await reload(Room, world.room.id)).status == RoomStatus.maintenance.value
    assert (await reload(Contract, contract.id)).status == ContractStatus.active.value


@pytest.mark.asyncio
async def test_room_status_validation(async_session, world):
    with pytest.raises(ValidationFailed):
        await change_room_status(async_session, world.manager, world.room.id, "demolished")
    with pytest.raises(AccessDenied):
        await change_room_status(async_session, world.other_manager, world.room.id, "maintenance")


# Daily sweep

@pytest.mark.asyncio
async def test_sweep_expires_and_renews(async_session, world, reload):
    ending = await create_contract(
        async_session, world.manager,
        contract_input(world.room, [world.tenant], end_date=date(2026, 1, 31))
    )
    renewing = await create_contract(
        async_session, world.manager,
        contract_input(world.room2, [world.tenant2], end_date=date(2026, 3, 31), auto_renew=True, time_renew=3)
    )

    result = await expire_outdated_contracts(async_session, today=date(2026, 4, 5))

    assert result.expired_ids == [ending.id]
    assert result.renewed_ids == [renewing.id]

    ending = await reload(Contract, ending.id)
    assert ending.status == ContractStatus.expired.value
    assert ending.termination_reason == "Contract expired"
    assert (await reload(Room, world.room.id)).status == RoomStatus.available.value

    renewing = await reload(Contract, renewing.id)
    assert renewing.status == ContractStatus.active.value
    assert renewing.end_date == date(2026, 6, 30)
    assert (await reload(Room, world.room2.id)).status == RoomStatus.used.value


@pytest.mark.asyncio
async def test_sweep_renews_until_current(async_session, world, reload):
    contract = await create_contract(
        async_session, world.manager,
        contract_input(world.room, [world.tenant], end_date=date(2026, 1, 31), auto_renew=True, time_renew=1)
    )

    await expire_outdated_contracts(async_session, today=date(2026, 5, 15))

    assert (await reload(Contract, contract.id)).end_date == date(2026, 5, 31)


@pytest.mark.asyncio
async def test_sweep_ignores_current_contracts(async_session, world):
    await create_contract(async_session, world.manager, contract_input(world.room, [world.tenant]))

    result = await expire_outdated_contracts(async_session, today=date(2026, 6, 1))

    assert result.expired_ids == []
    assert result.renewed_ids == []


@pytest.mark.asyncio
async def test_expiry_reminders(async_session, world):
    await create_contract(
        async_session, world.manager,
        contract_input(world.room, [world.tenant], end_date=date(2026, 3, 8))
    )

    notified = await notify_expiring_contracts(async_session, today=date(2026, 3, 1), days=[7])

    assert notified == 1
    texts = (await async_session.execute(
        select(Notification.content).where(Notification.user_id == world.tenant.id)
    )).scalars().all()
    assert any("ends in 7 days" in text for text in texts)
    manager_texts = (await async_session.execute(
        select(Notification.content).where(Notification.user_id == world.manager.id)
    )).scalars().all()
    assert any("Tenant An" in text for text in manager_texts)


def test_resolve_time_renew():
    assert resolve_time_renew(date(2026, 1, 1), date(2026, 12, 31), 4) == 4
    assert resolve_time_renew(date(2026, 1, 1), date(2026, 7, 1), None) == 6
    assert resolve_time_renew(date(2026, 1, 1), date(2026, 7, 1), 0) == 6
    assert resolve_time_renew(date(2026, 1, 10), date(2026, 1, 20), None) == 6
    assert resolve_time_renew(date(2026, 1, 1), date(2026, 4, 1), None) == 3


# Row lock order: rooms before contracts on every path

@pytest.fixture
def row_locks(async_session):
    """Tables of the SELECT ... FOR UPDATE statements, in the order issued"""
    locks = []

    def record(state):
        if state.is_select and state.statement._for_update_arg is not None:
            locks.append(state.statement.column_descriptions[0]["entity"].__tablename__)

    event.listen(async_session.sync_session, "do_orm_execute", record)
    yield locks
    event.remove(async_session.sync_session, "do_orm_execute", record)


@pytest.mark.asyncio
async def test_update_locks_room_before_contract(async_session, world, row_locks):
    draft = await create_contract(
        async_session, world.manager, contract_input(world.room, [world.tenant], status="draft")
    )
    row_locks.clear()

    await activate_contract(async_session, world.manager, draft.id)

    assert row_locks[0] == "rooms"
    assert "contracts" in row_locks


@pytest.mark.asyncio
async def test_move_locks_both_rooms_first(async_session, world, row_locks):
    contract = await create_contract(async_session, world.manager, contract_input(world.room, [world.tenant]))
    row_locks.clear()

    await update_contract(async_session, world.manager, contract.id, {"room_id": world.room2.id})

    assert row_locks[:3] == ["rooms", "rooms", "contracts"]


@pytest.mark.asyncio
async def test_delete_and_room_change_lock_rooms_first(async_session, world, row_locks):
    first = await create_contract(async_session, world.manager, contract_input(world.room, [world.tenant]))
    await create_contract(async_session, world.manager, contract_input(world.room2, [world.tenant2]))
    row_locks.clear()

    await delete_contract(async_session, world.manager, first.id)
    deleted = list(row_locks)
    row_locks.clear()
    await change_room_status(async_session, world.manager, world.room2.id, "maintenance")

    assert deleted[:2] == ["rooms", "contracts"]
    assert row_locks == ["rooms", "contracts"]


@pytest.mark.asyncio
async def test_sweep_locks_rooms_before_contracts(async_session, world, row_locks):
    await create_contract(
        async_session, world.manager, contract_input(world.room, [world.tenant], end_date=date(2026, 1, 31))
    )
    await create_contract(
        async_session, world.manager, contract_input(world.room2, [world.tenant2], end_date=date(2026, 1, 31))
    )
    row_locks.clear()

    result = await expire_outdated_contracts(async_session, today=date(2026, 2, 1))

    assert len(result.expired_ids) == 2
    first_contract = row_locks.index("contracts")
    assert row_locks[:first_contract] == ["rooms", "rooms"]
