"""
Payment reconciliation.

Bridges the gateway's authoritative order status into invoice payment
fields. Invoices paid through the gateway carry ``INV-<orderCode>`` as
transaction code; both the user-initiated verification and the gateway
webhook end up in ``settle_order``, which only flips invoices that are
not completed yet, so replays and races are no-ops.

Cash payments are a separate, human-confirmed path: the tenant reports
the payment (invoices go to ``waiting``) and a manager confirms it.
"""
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rental.config import config
from rental.database.models import User, Invoice, PaymentStatus
from rental.errors import AccessDenied, NotFound, ValidationFailed
from rental.schemas.validation import (
    PaymentRequest, CashPaymentRequest, WebhookPayload, validate_input
)
from rental.services.access_service import (
    is_tenant, can_access_invoice, can_manage_invoice, get_tenant_invoice_ids
)
from rental.services.notification_service import notification_service
from rental.services.payos_client import PayOSClient, PayOSError, new_order_code
from rental.utils.formatting import format_amount, now_utc

GATEWAY_PAID = "PAID"


class PaymentOutcome(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass
class PaymentResult:
    status: PaymentOutcome
    message: str
    order_code: Optional[Union[int, str]] = None
    invoice_ids: List[int] = field(default_factory=list)
    room_id: Optional[int] = None
    nothing_to_update: bool = False

    @property
    def ok(self) -> bool:
        return self.status == PaymentOutcome.SUCCESS


@dataclass
class PaymentCheckout:
    checkout_url: str
    order_code: int
    transaction_code: str
    amount: int
    invoice_ids: List[int]
    qr_code: Optional[str] = None


@dataclass
class CashPaymentResult:
    invoices: List[Invoice]
    total_amount: int
    notification_sent: bool


def transaction_code_for(order_code) -> str:
    return f"INV-{order_code}"


def append_payment_description(current: Optional[str], note: str) -> str:
    """Keep the invoice's own description and replace any previous payment note"""
    current = (current or "").strip()
    if " - " in current:
        current = current[:current.index(" - ")]
    if not current:
        return note
    return f"{current} - {note}"


async def _lock_invoices(session: AsyncSession, invoice_ids: List[int]) -> List[Invoice]:
    stmt = (
        select(Invoice)
        .where(Invoice.id.in_(invoice_ids), Invoice.deleted_at.is_(None))
        .order_by(Invoice.id)
        .with_for_update()
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def create_payment(
    session: AsyncSession, acting_user: User, data, gateway: Optional[PayOSClient] = None
) -> PaymentCheckout:
    """
    Open a gateway checkout for the unpaid invoices among ``invoice_ids``.

    Every invoice in the order gets the same ``INV-<orderCode>`` code.

    Raises:
        AccessDenied: tenant paying someone else's invoice
        ValidationFailed: nothing left to pay or zero total
        PayOSError: gateway refused or unreachable
    """
    data = validate_input(PaymentRequest, data)
    invoice_ids = sorted(set(data.invoice_ids))

    if is_tenant(acting_user):
        own = set(await get_tenant_invoice_ids(session, acting_user.id))
        if any(invoice_id not in own for invoice_id in invoice_ids):
            raise AccessDenied("Tenants can only pay their own invoices")

    invoices = await _lock_invoices(session, invoice_ids)
    if len(invoices) != len(invoice_ids):
        raise NotFound("One or more invoices do not exist")
    if not is_tenant(acting_user):
        for invoice in invoices:
            if not await can_access_invoice(session, acting_user, invoice):
                raise NotFound(f"Invoice {invoice.id} not found")

    payable = [inv for inv in invoices if inv.payment_status != PaymentStatus.completed.value]
    if not payable:
        raise ValidationFailed("No unpaid invoices to pay", {"invoice_ids": "All invoices are already paid"})
    amount = sum(inv.total_amount for inv in payable)
    if amount <= 0:
        raise ValidationFailed("Payment amount must be positive", {"invoice_ids": "Total is zero"})

    gateway = gateway or PayOSClient.from_config()
    order_code = new_order_code()
    code = transaction_code_for(order_code)
    for invoice in payable:
        invoice.transaction_code = code
        invoice.payment_method_id = config.TRANSFER_PAYMENT_METHOD_ID
    paid_ids = [inv.id for inv in payable]
    await session.commit()

    ids_param = ",".join(str(i) for i in paid_ids)
    link = await gateway.create_payment_link(
        amount=amount,
        order_code=order_code,
        description="Invoice payment",
        return_url=f"{config.FRONTEND_URL}/invoice-payment?success=true&orderCode={order_code}&invoice_ids={ids_param}",
        cancel_url=f"{config.FRONTEND_URL}/invoice-payment?cancel=true&orderCode={order_code}",
    )
    logging.info(f"Checkout {order_code} opened for invoices {paid_ids}, amount {amount}")
    return PaymentCheckout(
        checkout_url=link.checkout_url,
        order_code=order_code,
        transaction_code=code,
        amount=amount,
        invoice_ids=paid_ids,
        qr_code=link.qr_code,
    )


async def settle_order(session: AsyncSession, order_code, source: str = "verification") -> PaymentResult:
    """
    Mark every not-yet-completed invoice of the order as paid, atomically.

    Already completed invoices are skipped, so a second call returns
    SUCCESS with ``nothing_to_update`` and sends nothing. Any error rolls
    the whole order back and yields FAILED.
    """
    code = transaction_code_for(order_code)
    try:
        stmt = (
            select(Invoice)
            .where(
                Invoice.transaction_code == code,
                Invoice.payment_status != PaymentStatus.completed.value,
                Invoice.deleted_at.is_(None),
            )
            .order_by(Invoice.id)
            .with_for_update()
        )
        invoices = list((await session.execute(stmt)).scalars().all())
        if not invoices:
            return PaymentResult(
                status=PaymentOutcome.SUCCESS,
                message="No invoices to update",
                order_code=order_code,
                nothing_to_update=True,
            )

        paid_at = now_utc()
        for invoice in invoices:
            invoice.payment_status = PaymentStatus.completed.value
            invoice.payment_date = paid_at
        invoice_ids = [inv.id for inv in invoices]
        room_ids = sorted({inv.room_id for inv in invoices})
        await session.commit()
    except Exception as e:
        await session.rollback()
        logging.error(f"Settling order {order_code} ({source}) failed, rolled back: {e}")
        return PaymentResult(
            status=PaymentOutcome.FAILED,
            message="Payment could not be recorded",
            order_code=order_code,
        )

    logging.info(f"Order {order_code} settled via {source}: invoices {invoice_ids}")
    result = PaymentResult(
        status=PaymentOutcome.SUCCESS,
        message="Payment successful",
        order_code=order_code,
        invoice_ids=invoice_ids,
        room_id=room_ids[0],
    )
    await _notify_paid(session, invoice_ids, room_ids)
    return result


async def _notify_paid(session: AsyncSession, invoice_ids: List[int], room_ids: List[int]):
    if len(invoice_ids) > 1:
        text = f"Invoices #{', '.join(str(i) for i in invoice_ids)} have been paid."
    else:
        text = f"Invoice #{invoice_ids[0]} has been paid."
    for room_id in room_ids:
        await notification_service.notify_room_tenants(
            session, room_id, "invoice", text, f"/invoices/{invoice_ids[0]}"
        )
        await notification_service.notify_house_manager(
            session, room_id, "invoice",
            f"Tenants paid {len(invoice_ids)} invoice(s) through PayOS.",
            f"/invoices?room_id={room_id}&payment_status=completed",
        )


async def verify_payment(
    session: AsyncSession, order_code, gateway: Optional[PayOSClient] = None, cancel: bool = False
) -> PaymentResult:
    """
    Confirm an order against the gateway, never against client flags.

    Only a PAID status from the gateway settles invoices; anything else,
    including timeouts, is a FAILED result with no invoice touched.
    """
    if not order_code:
        return PaymentResult(status=PaymentOutcome.FAILED, message="Missing order code")
    if cancel:
        return PaymentResult(
            status=PaymentOutcome.CANCELLED, message="Payment was cancelled", order_code=order_code
        )

    try:
        gateway = gateway or PayOSClient.from_config()
        info = await gateway.get_payment_info(order_code)
    except (PayOSError, ValueError) as e:
        logging.error(f"Gateway lookup for order {order_code} failed: {e}")
        return PaymentResult(
            status=PaymentOutcome.FAILED,
            message="Could not verify the payment with the gateway",
            order_code=order_code,
        )

    status = info.get("status") if isinstance(info, dict) else None
    if status is None:
        return PaymentResult(
            status=PaymentOutcome.FAILED,
            message="Could not verify the payment with the gateway",
            order_code=order_code,
        )
    if status != GATEWAY_PAID:
        logging.info(f"Order {order_code} not paid yet (gateway status {status})")
        return PaymentResult(
            status=PaymentOutcome.FAILED,
            message="Payment not completed",
            order_code=order_code,
        )

    return await settle_order(session, order_code, source="verification")


async def handle_webhook(session: AsyncSession, payload: dict, gateway: Optional[PayOSClient] = None) -> PaymentResult:
    """Signed gateway push; converges on the same guarded update as verification"""
    try:
        validate_input(WebhookPayload, payload)
        gateway = gateway or PayOSClient.from_config()
        data = gateway.verify_webhook_data(payload)
    except (PayOSError, ValueError) as e:
        logging.warning(f"Rejected PayOS webhook: {e}")
        return PaymentResult(status=PaymentOutcome.FAILED, message="Invalid webhook")

    order_code = data.get("orderCode")
    if data.get("code") != "00":
        logging.info(f"Webhook for order {order_code} reports code {data.get('code')}, ignored")
        return PaymentResult(status=PaymentOutcome.FAILED, message="Payment not completed", order_code=order_code)
    if not order_code:
        logging.error(f"Webhook without orderCode: {data}")
        return PaymentResult(status=PaymentOutcome.FAILED, message="Missing order code")

    return await settle_order(session, order_code, source="webhook")


async def request_cash_payment(session: AsyncSession, acting_user: User, data) -> CashPaymentResult:
    """
    Tenant reports paying cash: invoices go to ``waiting`` until a manager
    confirms them with ``confirm_cash_payment``.
    """
    data = validate_input(CashPaymentRequest, data)
    if not is_tenant(acting_user):
        raise AccessDenied("Only tenants can report cash payments")
    if data.payment_method_id != config.CASH_PAYMENT_METHOD_ID:
        raise ValidationFailed(
            "Only the cash payment method is accepted",
            {"payment_method_id": f"Must be {config.CASH_PAYMENT_METHOD_ID}"},
        )

    invoice_ids = sorted(set(data.invoice_ids))
    own = set(await get_tenant_invoice_ids(session, acting_user.id))
    if any(invoice_id not in own for invoice_id in invoice_ids):
        raise AccessDenied("Tenants can only pay their own invoices")

    invoices = await _lock_invoices(session, invoice_ids)
    for invoice in invoices:
        if invoice.payment_status == PaymentStatus.completed.value:
            raise ValidationFailed(f"Invoice #{invoice.id} is already paid", {"invoice_ids": str(invoice.id)})
        if invoice.payment_status == PaymentStatus.waiting.value:
            raise ValidationFailed(
                f"Invoice #{invoice.id} is already waiting for confirmation", {"invoice_ids": str(invoice.id)}
            )

    note = data.description or "Cash payment"
    stamp = int(time.time())
    for invoice in invoices:
        invoice.payment_method_id = data.payment_method_id
        invoice.transaction_code = f"CASH-{invoice.id}-{stamp}"
        invoice.payment_status = PaymentStatus.waiting.value
        invoice.description = append_payment_description(invoice.description, note)
        invoice.updated_by = acting_user.id
    total = sum(inv.total_amount for inv in invoices)
    room_ids = sorted({inv.room_id for inv in invoices})
    await session.commit()
    logging.info(f"Tenant {acting_user.id} reported cash payment for invoices {[i.id for i in invoices]}")

    sent = False
    for room_id in room_ids:
        notified = await notification_service.notify_house_manager(
            session, room_id, "invoice_cash_payment",
            f"Tenant {acting_user.name} reported a cash payment for {len(invoices)} invoice(s), "
            f"total {format_amount(total)}. Please confirm once the money is received.",
            f"/invoices?payment_status=waiting&payment_method_id={data.payment_method_id}",
        )
        sent = sent or notified is not None
    await notification_service.create(
        session, acting_user.id, "invoice_cash_payment",
        "Your cash payment was sent to the manager for confirmation.",
        "/tenant-payments",
    )
    return CashPaymentResult(invoices=invoices, total_amount=total, notification_sent=sent)


async def confirm_cash_payment(session: AsyncSession, acting_user: User, invoice_ids: List[int]) -> List[Invoice]:
    """Manager/admin confirms cash received for invoices in ``waiting``"""
    if not invoice_ids:
        raise ValidationFailed("No invoices given", {"invoice_ids": "At least one invoice is required"})
    invoice_ids = sorted(set(invoice_ids))
    invoices = await _lock_invoices(session, invoice_ids)
    if len(invoices) != len(invoice_ids):
        raise NotFound("One or more invoices do not exist")

    for invoice in invoices:
        if not await can_manage_invoice(session, acting_user, invoice):
            if await can_access_invoice(session, acting_user, invoice):
                raise AccessDenied(f"User {acting_user.id} may not confirm invoice {invoice.id}")
            raise NotFound(f"Invoice {invoice.id} not found")
        if invoice.payment_status != PaymentStatus.waiting.value:
            raise ValidationFailed(
                f"Invoice #{invoice.id} is not waiting for a cash confirmation",
                {"invoice_ids": str(invoice.id)},
            )

    paid_at = now_utc()
    for invoice in invoices:
        invoice.payment_status = PaymentStatus.completed.value
        invoice.payment_date = paid_at
        invoice.updated_by = acting_user.id
    room_ids = sorted({inv.room_id for inv in invoices})
    await session.commit()
    logging.info(f"User {acting_user.id} confirmed cash for invoices {invoice_ids}")

    for room_id in room_ids:
        await notification_service.notify_room_tenants(
            session, room_id, "invoice",
            "Your cash payment has been confirmed.",
            "/tenant-payments",
        )
    return invoices
