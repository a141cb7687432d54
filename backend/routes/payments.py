"""
Payment endpoints — initialization, verification, gateway webhook, history.

Endpoints:
    POST /payments/initialize           — start (or return) the payment for an order
    GET  /payments/verify/{reference}   — poll the gateway and reconcile
    POST /payments/webhook              — signed gateway notification (no auth)
    GET  /payments/history              — caller's payments
    GET  /payments/fees                 — gateway fee estimate
    GET  /payments/admin/all            — every payment (admin)
    GET  /payments/{reference}          — one payment (owner or admin)
"""
import logging
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from db_models import User
from deps import (
    Pagination,
    PaymentFilters,
    get_current_user,
    get_gateway,
    pagination_params,
    payment_filter_params,
    require_admin,
)
from domain.errors import ValidationError
from domain.responses import StandardErrorResponse, paginated_response, success_response
from middleware.rate_limit import rate_limit
from models import InitializePaymentRequest
from services import payment_ledger, reconciliation_service
from services.gateway_client import PaystackClient, calculate_fees
from services.order_service import is_admin

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/payments",
    tags=["payments"],
    responses={
        400: {"model": StandardErrorResponse},
        403: {"model": StandardErrorResponse},
        404: {"model": StandardErrorResponse},
    },
)


@router.post("/initialize")
async def initialize_payment(
    req: InitializePaymentRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: PaystackClient = Depends(get_gateway),
    _rate=Depends(rate_limit(
        max_requests=settings.payment_init_rate_limit,
        window_seconds=settings.payment_init_rate_window_seconds,
    )),
):
    """
    Initialize payment for an order.

    201 when a new charge was started, 200 when an existing pending payment
    for the order is returned unchanged.
    """
    payment, created = await reconciliation_service.initialize_payment(
        db,
        gateway,
        order_id=req.order_id,
        user_id=user.id,
        email=req.email,
        currency=req.currency,
        metadata=req.metadata,
        callback_url=str(req.callback_url) if req.callback_url else None,
    )

    body = success_response(
        data={
            "payment": payment_ledger.serialize_payment(payment),
            "authorizationUrl": payment.authorization_url,
            "accessCode": payment.access_code,
            "reference": payment.reference,
        },
        message="Payment initialized successfully" if created else "Payment already initialized",
    )
    return JSONResponse(
        status_code=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        content=body,
    )


@router.get("/verify/{reference}")
async def verify_payment(
    reference: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: PaystackClient = Depends(get_gateway),
):
    """Poll the gateway for a payment's outcome and reconcile it."""
    if not 10 <= len(reference) <= 100:
        raise ValidationError("Invalid reference format", field="reference")

    payment = await reconciliation_service.verify_payment(
        db,
        gateway,
        reference=reference,
        user_id=user.id,
    )
    return success_response(
        data={"payment": payment_ledger.serialize_payment(payment)},
        message=f"Payment {payment.status}",
    )


@router.post("/webhook")
async def paystack_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: PaystackClient = Depends(get_gateway),
):
    """
    Paystack webhook callback.

    The signature is verified over the raw body before anything is parsed.
    Any signed notification is acknowledged with 200, including ones for
    references this system does not know.
    """
    body = await request.body()
    signature = request.headers.get(settings.webhook_signature_header)

    result = await reconciliation_service.handle_notification(
        db,
        gateway,
        raw_body=body,
        signature=signature,
    )
    return success_response(data=result, message="Webhook processed")


@router.get("/history")
async def payment_history(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    paging: Pagination = Depends(pagination_params),
    filters: PaymentFilters = Depends(payment_filter_params),
):
    """The caller's payments, newest first."""
    payments, total = await payment_ledger.list_payments(
        db,
        user_id=user.id,
        **filters,
        **paging,
    )
    return paginated_response(
        [payment_ledger.serialize_payment(p) for p in payments],
        page=paging["page"],
        limit=paging["limit"],
        total=total,
    )


@router.get("/fees")
async def fee_estimate(
    amount: Decimal = Query(..., gt=0, decimal_places=2),
    currency: str = Query(None, pattern="^(NGN|GHS|ZAR|USD)$"),
):
    """Estimate the gateway fee for an amount in major units."""
    fees = calculate_fees(amount, currency or settings.default_currency)
    return success_response(
        data={
            "amount": float(fees["amount"]),
            "fee": float(fees["fee"]),
            "total": float(fees["total"]),
            "currency": fees["currency"],
        }
    )


@router.get("/admin/all")
async def all_payments(
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    paging: Pagination = Depends(pagination_params),
    filters: PaymentFilters = Depends(payment_filter_params),
):
    """Every payment in the ledger, including raw gateway payloads (admin only)."""
    payments, total = await payment_ledger.list_payments(db, **filters, **paging)
    return paginated_response(
        [payment_ledger.serialize_payment(p, include_raw=True) for p in payments],
        page=paging["page"],
        limit=paging["limit"],
        total=total,
    )


@router.get("/{reference}")
async def get_payment(
    reference: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """A single payment, visible to its owner or an admin."""
    payment = await payment_ledger.get_payment_for_viewer(db, reference=reference, user=user)
    return success_response(
        data={"payment": payment_ledger.serialize_payment(payment, include_raw=is_admin(user))}
    )
