from dataclasses import dataclass
from datetime import date
from typing import List, Optional

import pytest_asyncio
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from rental.config import config
from rental.database.core import Base
from rental.database.models import (
    User, UserRole, House, Room, RoomStatus, Service, RoomService,
    Contract, ContractUser, ContractStatus, Invoice, InvoiceItem, InvoiceType,
    ItemSource, PaymentStatus
)
from seed_defaults import seed_payment_methods


@pytest_asyncio.fixture
async def engine():
    # Use in-memory SQLite for tests
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")

    # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs nest inside a real transaction
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def async_session(session_factory):
    async with session_factory() as session:
        yield session


class Factory:
    """Direct inserts for test setup, bypassing the services"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _save(self, obj):
        self.session.add(obj)
        await self.session.commit()
        return obj

    async def payment_methods(self):
        await seed_payment_methods(self.session)

    async def user(self, name: str, role: UserRole = UserRole.tenant, tg_id: Optional[int] = None) -> User:
        return await self._save(User(name=name, role=role.value, tg_id=tg_id, is_active=True))

    async def house(self, manager: Optional[User] = None, name: str = "Green House") -> House:
        return await self._save(House(name=name, address="12 Le Loi", manager_id=manager.id if manager else None))

    async def room(self, house: House, number: str = "101", status: RoomStatus = RoomStatus.available) -> Room:
        return await self._save(Room(
            house_id=house.id, room_number=number, capacity=2, base_price=3_000_000, status=status.value
        ))

    async def service(self, name: str, price: int, is_metered: bool = False, unit: Optional[str] = None) -> Service:
        return await self._save(Service(name=name, default_price=price, is_metered=is_metered, unit=unit))

    async def room_service(self, room: Room, service: Service, price: Optional[int] = None) -> RoomService:
        return await self._save(RoomService(room_id=room.id, service_id=service.id, price=price))

    async def contract(
        self,
        room: Room,
        tenants: List[User],
        status: ContractStatus = ContractStatus.active,
        start_date: date = date(2026, 1, 1),
        end_date: date = date(2026, 12, 31),
        auto_renew: bool = False,
        time_renew: Optional[int] = None,
    ) -> Contract:
        contract = Contract(
            room_id=room.id,
            start_date=start_date,
            end_date=end_date,
            monthly_price=3_000_000,
            deposit_amount=3_000_000,
            status=status.value,
            auto_renew=auto_renew,
            time_renew=time_renew,
        )
        contract.contract_users = [ContractUser(user_id=t.id) for t in tenants]
        return await self._save(contract)

    async def invoice(
        self,
        room: Room,
        amounts: List[int],
        status: PaymentStatus = PaymentStatus.pending,
        transaction_code: Optional[str] = None,
        invoice_type: InvoiceType = InvoiceType.custom,
        month: Optional[int] = None,
        year: Optional[int] = None,
        description: Optional[str] = None,
    ) -> Invoice:
        invoice = Invoice(
            room_id=room.id,
            invoice_type=invoice_type.value,
            total_amount=sum(amounts),
            month=month,
            year=year,
            description=description,
            payment_method_id=config.TRANSFER_PAYMENT_METHOD_ID,
            payment_status=status.value,
            transaction_code=transaction_code,
        )
        invoice.items = [
            InvoiceItem(source_type=ItemSource.manual.value, amount=a, description=f"Line {i + 1}")
            for i, a in enumerate(amounts)
        ]
        return await self._save(invoice)


@pytest_asyncio.fixture
async def factory(async_session):
    return Factory(async_session)


@dataclass
class World:
    admin: User
    manager: User
    other_manager: User
    tenant: User
    tenant2: User
    house: House
    other_house: House
    room: Room
    room2: Room
    foreign_room: Room


@pytest_asyncio.fixture
async def world(factory):
    """Admin, two managers with one house each, two tenants, three rooms"""
    await factory.payment_methods()
    admin = await factory.user("Admin", UserRole.admin)
    manager = await factory.user("Manager Minh", UserRole.manager)
    other_manager = await factory.user("Manager Lan", UserRole.manager)
    tenant = await factory.user("Tenant An", tg_id=1001)
    tenant2 = await factory.user("Tenant Binh")
    house = await factory.house(manager)
    other_house = await factory.house(other_manager, name="Blue House")
    return World(
        admin=admin,
        manager=manager,
        other_manager=other_manager,
        tenant=tenant,
        tenant2=tenant2,
        house=house,
        other_house=other_house,
        room=await factory.room(house, "101"),
        room2=await factory.room(house, "102"),
        foreign_room=await factory.room(other_house, "201"),
    )


@pytest_asyncio.fixture
async def reload(async_session):
    """Fresh copy of a row, bypassing whatever the identity map holds"""
    async def _reload(model, obj_id: int):
        result = await async_session.execute(
            select(model).where(model.id == obj_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
    return _reload
