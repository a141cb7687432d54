"""
Order endpoints — checkout, lookup, cancellation and fulfillment status.

Paid fields are not writable here; they change only when a payment
resolves (see services/reconciliation_service.py).
"""

import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from db_models import User
from deps import Pagination, get_current_user, pagination_params, require_admin
from domain.responses import paginated_response, success_response
from models import CreateOrderRequest, UpdateOrderStatusRequest
from services import order_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("")
async def create_order(
    req: CreateOrderRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    order = await order_service.create_order(
        db,
        user_id=user.id,
        items=[{"product_id": i.product_id, "quantity": i.quantity} for i in req.items],
        shipping_address=req.shipping_address,
        tax_price=req.tax_price,
        shipping_price=req.shipping_price,
    )
    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content=success_response(
            data={"order": order_service.serialize_order(order)},
            message="Order created",
        ),
    )


@router.get("")
async def list_my_orders(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    paging: Pagination = Depends(pagination_params),
):
    orders, total = await order_service.list_orders(db, user_id=user.id, **paging)
    return paginated_response(
        [order_service.serialize_order(o) for o in orders],
        page=paging["page"],
        limit=paging["limit"],
        total=total,
    )


@router.get("/all")
async def list_all_orders(
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    paging: Pagination = Depends(pagination_params),
):
    orders, total = await order_service.list_orders(db, **paging)
    return paginated_response(
        [order_service.serialize_order(o) for o in orders],
        page=paging["page"],
        limit=paging["limit"],
        total=total,
    )


@router.get("/{order_id}")
async def get_order(
    order_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    order = await order_service.get_order_for_viewer(db, order_id=order_id, user=user)
    return success_response(data={"order": order_service.serialize_order(order)})


@router.put("/{order_id}/cancel")
async def cancel_order(
    order_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    order = await order_service.cancel_order(db, order_id=order_id, user=user)
    return success_response(
        data={"order": order_service.serialize_order(order)},
        message="Order cancelled",
    )


@router.put("/{order_id}/status")
async def update_order_status(
    order_id: int,
    req: UpdateOrderStatusRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    order = await order_service.update_order_status(
        db,
        order_id=order_id,
        status=req.status,
        user=admin,
    )
    return success_response(data={"order": order_service.serialize_order(order)})
