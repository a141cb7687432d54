"""
Order service — checkout, order lookup, fulfillment status and cancellation.

Stock is reserved at checkout and restored on cancellation through
services.inventory_service. The paid fields are only ever written by
mark_paid(), which the reconciliation service calls after a payment resolves.
"""

import json
import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db_models import Order, OrderItem, Product, User
from domain.constants import PAYMENT_METHOD_PAYSTACK
from domain.enums import CANCELLABLE_ORDER_STATUSES, OrderStatus, UserRole
from domain.errors import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    OrderNotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from domain.responses import iso_timestamp
from services import inventory_service
from services.gateway_client import ChargeStatus

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


def _money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(_CENT)


def is_admin(user: User) -> bool:
    return user.role == UserRole.ADMIN.value


async def get_order(db: AsyncSession, order_id: int) -> Order | None:
    res = await db.execute(
        select(Order)
        .where(Order.id == order_id)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def create_order(
    db: AsyncSession,
    *,
    user_id: int,
    items: list[dict],
    shipping_address: dict | None = None,
    tax_price=0,
    shipping_price=0,
) -> Order:
    """
    Create an order and reserve stock for every line.

    items: [{product_id:int, quantity:int}]

    Unit prices are captured from the catalogue at order time. If any line
    cannot be reserved the whole checkout is rolled back.
    """
    if not items:
        raise ValidationError("No order items provided")

    # Merge repeated lines for the same product
    quantities: dict[int, int] = {}
    for i in items:
        pid = int(i["product_id"])
        qty = int(i.get("quantity", 1))
        if qty <= 0:
            raise ValidationError("Quantity must be positive", field="quantity")
        quantities[pid] = quantities.get(pid, 0) + qty

    res = await db.execute(select(Product).where(Product.id.in_(list(quantities))))
    products = {p.id: p for p in res.scalars().all()}

    order_items: list[OrderItem] = []
    items_price = Decimal("0")
    for pid, qty in quantities.items():
        p = products.get(pid)
        if not p or not p.active:
            raise NotFoundError("Product", str(pid))
        unit_price = _money(p.price)
        items_price += unit_price * qty
        order_items.append(
            OrderItem(product_id=pid, name=p.name, quantity=qty, unit_price=unit_price)
        )

    for it in order_items:
        if not await inventory_service.reserve(db, product_id=it.product_id, quantity=it.quantity):
            await db.rollback()
            raise InsufficientStockError(it.name, details={"product_id": it.product_id})

    tax = _money(tax_price)
    shipping = _money(shipping_price)
    order = Order(
        user_id=user_id,
        shipping_address=json.dumps(shipping_address) if shipping_address else None,
        items_price=items_price.quantize(_CENT),
        tax_price=tax,
        shipping_price=shipping,
        total_price=(items_price + tax + shipping).quantize(_CENT),
        paid=False,
        status=OrderStatus.PENDING.value,
        items=order_items,
    )
    db.add(order)
    await db.commit()

    logger.info(f"Order {order.id} created for user {user_id} (total {order.total_price})")
    return order


async def get_order_for_viewer(db: AsyncSession, *, order_id: int, user: User) -> Order:
    order = await get_order(db, order_id)
    if not order:
        raise OrderNotFoundError(order_id)
    if order.user_id != user.id and not is_admin(user):
        raise PermissionDeniedError("Not authorized to view this order")
    return order


async def list_orders(
    db: AsyncSession,
    *,
    user_id: int | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[Order], int]:
    """Newest-first page of orders; user_id=None lists every order (admin)."""
    filters = [Order.user_id == user_id] if user_id is not None else []

    total_res = await db.execute(select(func.count(Order.id)).where(*filters))
    total = total_res.scalar() or 0

    res = await db.execute(
        select(Order)
        .where(*filters)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    )
    return list(res.scalars().all()), total


async def cancel_order(db: AsyncSession, *, order_id: int, user: User) -> Order:
    """
    Cancel a pending/processing order and put its stock back.

    The status flip is a conditional UPDATE, so only one caller can win and
    stock is restored exactly once.
    """
    order = await get_order(db, order_id)
    if not order:
        raise OrderNotFoundError(order_id)
    if order.user_id != user.id and not is_admin(user):
        raise PermissionDeniedError("Not authorized to cancel this order")
    if order.status not in CANCELLABLE_ORDER_STATUSES:
        raise ConflictError(f"Cannot cancel order in status '{order.status}'")

    now = datetime.utcnow()
    result = await db.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.status.in_(CANCELLABLE_ORDER_STATUSES),
        )
        .values(status=OrderStatus.CANCELLED.value, cancelled_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise ConflictError("Order status changed while cancelling; retry")

    for item in order.items:
        await inventory_service.restore(db, product_id=item.product_id, quantity=item.quantity)

    await db.commit()

    if order.paid:
        logger.warning(f"Paid order {order_id} cancelled; refund must be issued manually")
    logger.info(f"Order {order_id} cancelled, stock restored for {len(order.items)} line(s)")
    return await get_order(db, order_id)


async def update_order_status(db: AsyncSession, *, order_id: int, status: str, user: User) -> Order:
    """Admin fulfillment update. Cancellation goes through cancel_order()."""
    try:
        new_status = OrderStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown order status '{status}'", field="status")

    if new_status is OrderStatus.CANCELLED:
        return await cancel_order(db, order_id=order_id, user=user)

    order = await get_order(db, order_id)
    if not order:
        raise OrderNotFoundError(order_id)

    now = datetime.utcnow()
    values = {"status": new_status.value, "updated_at": now}
    if new_status is OrderStatus.DELIVERED:
        values["delivered_at"] = now

    result = await db.execute(
        update(Order)
        .where(Order.id == order_id, Order.status != OrderStatus.CANCELLED.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise ConflictError("Cancelled orders cannot change status")

    await db.commit()
    return await get_order(db, order_id)


async def mark_paid(
    db: AsyncSession,
    *,
    order_id: int,
    reference: str,
    paid_at: datetime,
    verdict: ChargeStatus,
) -> bool:
    """
    Set the paid fields of an order if it is not paid yet.

    Runs inside the caller's transaction. Returns True if this call flipped
    the order to paid; False if it was already paid or does not exist.
    """
    payment_result = {
        "id": verdict.gateway_id,
        "status": verdict.status,
        "updateTime": verdict.paid_at_raw,
        "emailAddress": verdict.customer_email,
    }
    result = await db.execute(
        update(Order)
        .where(Order.id == order_id, Order.paid == False)
        .values(
            paid=True,
            paid_at=paid_at,
            payment_method=PAYMENT_METHOD_PAYSTACK,
            payment_reference=reference,
            payment_result=json.dumps(payment_result),
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return True

    exists = await db.execute(select(Order.id).where(Order.id == order_id))
    if exists.scalar_one_or_none() is None:
        logger.error(
            f"INTERNAL INCONSISTENCY: payment {reference} resolved as success "
            f"but order {order_id} does not exist"
        )
    else:
        logger.info(f"Order {order_id} already paid; payment {reference} left order untouched")
    return False


def serialize_order(order: Order) -> dict:
    try:
        payment_result = json.loads(order.payment_result) if order.payment_result else None
    except ValueError:
        payment_result = None
    try:
        shipping_address = json.loads(order.shipping_address) if order.shipping_address else None
    except ValueError:
        shipping_address = None

    return {
        "id": order.id,
        "userId": order.user_id,
        "items": [
            {
                "productId": it.product_id,
                "name": it.name,
                "quantity": it.quantity,
                "unitPrice": float(it.unit_price),
            }
            for it in order.items
        ],
        "shippingAddress": shipping_address,
        "itemsPrice": float(order.items_price),
        "taxPrice": float(order.tax_price),
        "shippingPrice": float(order.shipping_price),
        "totalPrice": float(order.total_price),
        "paid": order.paid,
        "paidAt": iso_timestamp(order.paid_at),
        "paymentMethod": order.payment_method,
        "paymentReference": order.payment_reference,
        "paymentResult": payment_result,
        "status": order.status,
        "deliveredAt": iso_timestamp(order.delivered_at),
        "cancelledAt": iso_timestamp(order.cancelled_at),
        "createdAt": iso_timestamp(order.created_at),
    }
