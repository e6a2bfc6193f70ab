from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, Field, field_validator, model_validator, ValidationError

from rental.database.models import ContractStatus, DepositStatus, InvoiceType, PaymentStatus
from rental.errors import ValidationFailed

ModelT = TypeVar("ModelT", bound=BaseModel)


def validate_input(model_cls: Type[ModelT], data: Union[ModelT, dict]) -> ModelT:
    """Accept a ready model or a raw dict; raise ValidationFailed with field detail"""
    if isinstance(data, model_cls):
        return data
    try:
        return model_cls.model_validate(data)
    except ValidationError as e:
        raise ValidationFailed.from_pydantic(e) from e


def _to_decimal(v):
    if v is None or isinstance(v, Decimal):
        return v
    if isinstance(v, str):
        v = v.replace(',', '.').replace(' ', '')
        if not v:
            return None
    try:
        return Decimal(str(v))
    except InvalidOperation:
        raise ValueError("Must be a number")


# Contracts

class ContractCreate(BaseModel):
    room_id: int
    user_ids: List[int] = Field(min_length=1, description="Tenants, at least one")
    start_date: date
    end_date: date
    monthly_price: int = Field(ge=0)
    deposit_amount: int = Field(default=0, ge=0)
    notice_period: int = Field(default=30, ge=0)
    deposit_status: DepositStatus = DepositStatus.held
    status: ContractStatus = ContractStatus.active
    auto_renew: bool = False
    time_renew: Optional[int] = Field(default=None, ge=1)
    termination_reason: Optional[str] = None

    @field_validator('user_ids')
    def unique_users(cls, v):
        return sorted(set(v))

    @model_validator(mode='after')
    def check_dates(self):
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class ContractUpdate(BaseModel):
    room_id: Optional[int] = None
    user_ids: Optional[List[int]] = Field(default=None, min_length=1)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    monthly_price: Optional[int] = Field(default=None, ge=0)
    deposit_amount: Optional[int] = Field(default=None, ge=0)
    notice_period: Optional[int] = Field(default=None, ge=0)
    deposit_status: Optional[DepositStatus] = None
    status: Optional[ContractStatus] = None
    auto_renew: Optional[bool] = None
    time_renew: Optional[int] = Field(default=None, ge=1)
    termination_reason: Optional[str] = None

    @field_validator('user_ids')
    def unique_users(cls, v):
        return sorted(set(v)) if v is not None else v


# Monthly service usage

class UsageEntry(BaseModel):
    room_service_id: int
    start_meter: Optional[Decimal] = Field(default=None, ge=0)
    end_meter: Optional[Decimal] = Field(default=None, ge=0)
    usage_value: Decimal = Field(ge=0)
    price_used: int = Field(ge=0)
    description: Optional[str] = None

    @field_validator('start_meter', 'end_meter', 'usage_value', mode='before')
    def parse_decimal(cls, v):
        return _to_decimal(v)


class UsageSaveRequest(BaseModel):
    room_id: int
    month: int = Field(ge=1, le=12)
    year: int = Field(ge=2000, le=2100)
    services: List[UsageEntry]
    update_invoice: bool = True
    unchecked_services: List[int] = Field(default_factory=list)


# Invoices

class InvoiceItemIn(BaseModel):
    id: Optional[int] = None
    amount: int = Field(ge=0)
    description: Optional[str] = None


class InvoiceCreate(BaseModel):
    room_id: int
    invoice_type: InvoiceType = InvoiceType.custom
    month: Optional[int] = Field(default=None, ge=1, le=12)
    year: Optional[int] = Field(default=None, ge=2000, le=2100)
    description: Optional[str] = None
    payment_method_id: Optional[int] = None
    payment_status: PaymentStatus = PaymentStatus.pending
    items: List[InvoiceItemIn] = Field(min_length=1)


class InvoiceUpdate(BaseModel):
    description: Optional[str] = None
    payment_method_id: Optional[int] = None
    payment_status: Optional[PaymentStatus] = None
    payment_date: Optional[datetime] = None
    transaction_code: Optional[str] = None
    items: Optional[List[InvoiceItemIn]] = None
    deleted_service_usage_ids: List[int] = Field(default_factory=list)


class PaymentStatusUpdate(BaseModel):
    payment_method_id: int
    payment_status: PaymentStatus
    payment_date: Optional[datetime] = None
    transaction_code: Optional[str] = None

    @model_validator(mode='after')
    def date_required_when_completed(self):
        if self.payment_status == PaymentStatus.completed and self.payment_date is None:
            raise ValueError("payment_date is required for a completed payment")
        return self


# Payments

class PaymentRequest(BaseModel):
    invoice_ids: List[int] = Field(min_length=1)


class CashPaymentRequest(BaseModel):
    invoice_ids: List[int] = Field(min_length=1)
    payment_method_id: int
    description: Optional[str] = None


class WebhookPayload(BaseModel):
    code: str
    desc: Optional[str] = None
    success: Optional[bool] = None
    data: dict
    signature: str
