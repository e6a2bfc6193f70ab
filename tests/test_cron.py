import pytest
from datetime import date

from sqlalchemy import select

from rental.cron import daily_contract_job
from rental.database.models import Contract, ContractStatus, Notification, Room, RoomStatus


@pytest.mark.asyncio
async def test_daily_contract_job(async_session, session_factory, world, factory):
    world.room.status = RoomStatus.used.value
    await async_session.commit()
    contract = await factory.contract(world.room, [world.tenant], end_date=date(2026, 1, 31))

    await daily_contract_job(today=date(2026, 2, 1), session_factory=session_factory)

    status = await async_session.scalar(select(Contract.status).where(Contract.id == contract.id))
    room_status = await async_session.scalar(select(Room.status).where(Room.id == world.room.id))
    assert status == ContractStatus.expired.value
    assert room_status == RoomStatus.available.value


@pytest.mark.asyncio
async def test_daily_contract_job_sends_reminders(async_session, session_factory, world, factory):
    await factory.contract(world.room, [world.tenant], end_date=date(2026, 3, 31))

    await daily_contract_job(today=date(2026, 3, 1), session_factory=session_factory)

    contents = (await async_session.execute(
        select(Notification.content).where(Notification.user_id == world.tenant.id)
    )).scalars().all()
    assert contents == ["Your contract for room 101 ends in 30 days (31/03/2026). Contact the manager to extend it."]


@pytest.mark.asyncio
async def test_failed_sweep_alerts_admins(async_session, session_factory, world, monkeypatch):
    async def broken_sweep(session, today):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr("rental.cron.expire_outdated_contracts", broken_sweep)

    await daily_contract_job(today=date(2026, 2, 1), session_factory=session_factory)

    contents = (await async_session.execute(
        select(Notification.content).where(Notification.user_id == world.admin.id)
    )).scalars().all()
    assert contents == ["The daily contract sweep for 2026-02-01 failed: database unavailable"]
