import enum
from datetime import datetime, date
from decimal import Decimal
from typing import Optional, List
from sqlalchemy import BigInteger, String, Boolean, ForeignKey, Integer, Numeric, DateTime, Text, DATE, UniqueConstraint, Index, text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from rental.database.core import Base

# Enums
class UserRole(str, enum.Enum):
    admin = "admin"
    manager = "manager"
    tenant = "tenant"

class HouseStatus(str, enum.Enum):
    active = "active"
    inactive = "inactive"

class RoomStatus(str, enum.Enum):
    available = "available"
    used = "used"
    maintenance = "maintenance"

class RoomServiceStatus(str, enum.Enum):
    active = "active"
    inactive = "inactive"

class ContractStatus(str, enum.Enum):
    draft = "draft"
    active = "active"
    terminated = "terminated"
    expired = "expired"

class DepositStatus(str, enum.Enum):
    held = "held"
    refunded = "refunded"
    partial = "partial"

class InvoiceType(str, enum.Enum):
    custom = "custom"
    service_usage = "service_usage"

class PaymentStatus(str, enum.Enum):
    pending = "pending"
    waiting = "waiting"
    completed = "completed"
    failed = "failed"
    refunded = "refunded"

class ItemSource(str, enum.Enum):
    manual = "manual"
    service_usage = "service_usage"


# 3.1 User
class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    email: Mapped[Optional[str]] = mapped_column(String, unique=True, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String)
    tg_id: Mapped[Optional[int]] = mapped_column(BigInteger, unique=True, index=True, nullable=True)
    role: Mapped[UserRole] = mapped_column(String, default=UserRole.tenant.value)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


# 3.2 House
class House(Base):
    __tablename__ = "houses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    address: Mapped[Optional[str]] = mapped_column(String)
    manager_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    status: Mapped[HouseStatus] = mapped_column(String, default=HouseStatus.active.value)
    description: Mapped[Optional[str]] = mapped_column(Text)

    created_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    manager: Mapped[Optional["User"]] = relationship()
    rooms: Mapped[List["Room"]] = relationship(back_populates="house")


# 3.3 Room
class Room(Base):
    __tablename__ = "rooms"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    house_id: Mapped[int] = mapped_column(ForeignKey("houses.id", ondelete="CASCADE"), index=True)
    room_number: Mapped[str] = mapped_column(String)
    capacity: Mapped[int] = mapped_column(Integer, default=1)
    base_price: Mapped[int] = mapped_column(Integer, default=0)
    description: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[RoomStatus] = mapped_column(String, default=RoomStatus.available.value)

    created_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    house: Mapped["House"] = relationship(back_populates="rooms")
    contracts: Mapped[List["Contract"]] = relationship(back_populates="room")
    room_services: Mapped[List["RoomService"]] = relationship(back_populates="room")


# 3.4 Service (utility type)
class Service(Base):
    __tablename__ = "services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String, unique=True)
    default_price: Mapped[int] = mapped_column(Integer, default=0)
    unit: Mapped[Optional[str]] = mapped_column(String)  # kWh, m3, month
    is_metered: Mapped[bool] = mapped_column(Boolean, default=False)
    description: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# 3.5 RoomService
class RoomService(Base):
    __tablename__ = "room_services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    room_id: Mapped[int] = mapped_column(ForeignKey("rooms.id", ondelete="CASCADE"), index=True)
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id", ondelete="CASCADE"))
    price: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # None = service default
    is_fixed: Mapped[bool] = mapped_column(Boolean, default=False)
    effective_date: Mapped[Optional[date]] = mapped_column(DATE, nullable=True)
    status: Mapped[RoomServiceStatus] = mapped_column(String, default=RoomServiceStatus.active.value)
    description: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    room: Mapped["Room"] = relationship(back_populates="room_services")
    service: Mapped["Service"] = relationship()
    usages: Mapped[List["ServiceUsage"]] = relationship(back_populates="room_service")

    @property
    def unit_price(self) -> int:
        """Room-specific price, falling back to the service default (needs `service` loaded)"""
        if self.price is not None:
            return self.price
        return self.service.default_price


# 3.6 ServiceUsage (one row per room service and period)
class ServiceUsage(Base):
    __tablename__ = "service_usage"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    room_service_id: Mapped[int] = mapped_column(ForeignKey("room_services.id", ondelete="CASCADE"), index=True)
    start_meter: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    end_meter: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    usage_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    price_used: Mapped[int] = mapped_column(Integer, default=0)
    month: Mapped[int] = mapped_column(Integer)
    year: Mapped[int] = mapped_column(Integer)
    description: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('room_service_id', 'month', 'year', name='uq_service_usage_period'),
    )

    room_service: Mapped["RoomService"] = relationship(back_populates="usages")


# 3.7 Contract
class Contract(Base):
    __tablename__ = "contracts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    room_id: Mapped[int] = mapped_column(ForeignKey("rooms.id", ondelete="CASCADE"), index=True)
    start_date: Mapped[date] = mapped_column(DATE)
    end_date: Mapped[date] = mapped_column(DATE)
    monthly_price: Mapped[int] = mapped_column(Integer, default=0)
    deposit_amount: Mapped[int] = mapped_column(Integer, default=0)
    notice_period: Mapped[int] = mapped_column(Integer, default=30)  # days
    deposit_status: Mapped[DepositStatus] = mapped_column(String, default=DepositStatus.held.value)
    termination_reason: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[ContractStatus] = mapped_column(String, default=ContractStatus.active.value, index=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, default=False)
    time_renew: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # months

    created_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    room: Mapped["Room"] = relationship(back_populates="contracts")
    contract_users: Mapped[List["ContractUser"]] = relationship(
        back_populates="contract", cascade="all, delete-orphan", order_by="ContractUser.user_id"
    )
    # Tenants ordered by user id: the first one is the primary tenant
    users: Mapped[List["User"]] = relationship(
        secondary="contract_users", order_by="User.id", viewonly=True
    )

    @property
    def tenant_ids(self) -> List[int]:
        return [link.user_id for link in self.contract_users]


# 3.7.1 ContractUser (tenants of a contract)
class ContractUser(Base):
    __tablename__ = "contract_users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    contract_id: Mapped[int] = mapped_column(ForeignKey("contracts.id", ondelete="CASCADE"))
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint('contract_id', 'user_id', name='uq_contract_user'),
    )

    contract: Mapped["Contract"] = relationship(back_populates="contract_users")
    user: Mapped["User"] = relationship()


# 3.8 PaymentMethod
class PaymentMethod(Base):
    __tablename__ = "payment_methods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="active")


# 3.9 Invoice
class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    room_id: Mapped[int] = mapped_column(ForeignKey("rooms.id", ondelete="CASCADE"), index=True)
    invoice_type: Mapped[InvoiceType] = mapped_column(String, default=InvoiceType.custom.value)
    total_amount: Mapped[int] = mapped_column(Integer, default=0)
    month: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text)

    payment_method_id: Mapped[Optional[int]] = mapped_column(ForeignKey("payment_methods.id", ondelete="SET NULL"), nullable=True)
    transaction_code: Mapped[Optional[str]] = mapped_column(String, index=True, nullable=True)
    payment_status: Mapped[PaymentStatus] = mapped_column(String, default=PaymentStatus.pending.value)
    payment_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # One live service-usage invoice per room and period
        Index(
            'uq_invoice_service_period', 'room_id', 'month', 'year',
            unique=True,
            sqlite_where=text("invoice_type = 'service_usage' AND deleted_at IS NULL"),
            postgresql_where=text("invoice_type = 'service_usage' AND deleted_at IS NULL"),
        ),
    )

    room: Mapped["Room"] = relationship()
    payment_method: Mapped[Optional["PaymentMethod"]] = relationship()
    items: Mapped[List["InvoiceItem"]] = relationship(
        back_populates="invoice", cascade="all, delete-orphan", order_by="InvoiceItem.id"
    )


# 3.10 InvoiceItem
class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id", ondelete="CASCADE"), index=True)
    source_type: Mapped[ItemSource] = mapped_column(String, default=ItemSource.manual.value)
    service_usage_id: Mapped[Optional[int]] = mapped_column(ForeignKey("service_usage.id", ondelete="SET NULL"), nullable=True, index=True)
    amount: Mapped[int] = mapped_column(Integer, default=0)
    description: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    invoice: Mapped["Invoice"] = relationship(back_populates="items")
    service_usage: Mapped[Optional["ServiceUsage"]] = relationship()


# 3.11 Notification
class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    type: Mapped[str] = mapped_column(String)  # contract, invoice, invoice_cash_payment, ...
    content: Mapped[str] = mapped_column(Text)
    url: Mapped[Optional[str]] = mapped_column(String)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
