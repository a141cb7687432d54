"""
Payment ledger — persistence for charge attempts.

The ledger is the single source of truth for "has this reference been
resolved yet". Rows are inserted once in "pending" and resolved once via a
conditional UPDATE (WHERE status = 'pending'); a zero row count means another
caller already resolved the reference.
"""

import json
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db_models import Payment, User
from domain.constants import KNOWN_CHANNELS, REFERENCE_PREFIX, REFERENCE_RANDOM_BYTES
from domain.enums import ACTIVE_PAYMENT_STATUSES, PaymentStatus, UserRole
from domain.errors import PaymentNotFoundError, PermissionDeniedError
from domain.responses import iso_timestamp
from services.gateway_client import ChargeStatus

logger = logging.getLogger(__name__)


def generate_reference(order_id: int) -> str:
    """
    Build a unique, unguessable reference for a new charge.

    Format: ORDER-<order id>-<ns timestamp>-<16 hex chars>
    """
    return (
        f"{REFERENCE_PREFIX}-{order_id}-{time.time_ns()}-"
        f"{secrets.token_hex(REFERENCE_RANDOM_BYTES)}"
    )


def parse_gateway_timestamp(raw: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 gateway timestamp into naive UTC (DB convention)."""
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable gateway timestamp: {raw!r}")
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


async def get_by_reference(db: AsyncSession, reference: str) -> Payment | None:
    """Load a payment, always re-reading the row from the database."""
    res = await db.execute(
        select(Payment)
        .where(Payment.reference == reference)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def get_payment_for_viewer(db: AsyncSession, *, reference: str, user: User) -> Payment:
    """Load a payment its owner or an admin may see."""
    payment = await get_by_reference(db, reference)
    if payment is None:
        raise PaymentNotFoundError(reference)
    if payment.user_id != user.id and user.role != UserRole.ADMIN.value:
        raise PermissionDeniedError("Not authorized to view this payment")
    return payment


async def get_active_for_order(db: AsyncSession, order_id: int) -> Payment | None:
    """The pending-or-successful payment for an order, if any."""
    res = await db.execute(
        select(Payment)
        .where(
            Payment.order_id == order_id,
            Payment.status.in_(ACTIVE_PAYMENT_STATUSES),
        )
        .order_by(Payment.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


def new_pending_payment(
    *,
    reference: str,
    user_id: int,
    order_id: int,
    amount,
    currency: str,
    authorization_url: str,
    access_code: str,
    metadata: dict,
    raw_payload: str,
) -> Payment:
    return Payment(
        reference=reference,
        user_id=user_id,
        order_id=order_id,
        amount=amount,
        currency=currency,
        status=PaymentStatus.PENDING.value,
        authorization_url=authorization_url,
        access_code=access_code,
        metadata_json=json.dumps(metadata, default=str),
        gateway_payload=raw_payload,
    )


async def apply_verdict(
    db: AsyncSession,
    *,
    reference: str,
    status: PaymentStatus,
    verdict: ChargeStatus,
    gateway_message: Optional[str],
    paid_at: Optional[datetime],
) -> bool:
    """
    Move a pending payment to a terminal status.

    Returns True if this call performed the transition, False if the row was
    no longer pending (already resolved by someone else).
    """
    values = {
        "status": status.value,
        "gateway_message": (gateway_message or "")[:255] or None,
        "gateway_payload": verdict.raw_payload or None,
        "channel": verdict.channel,
        "payment_method": verdict.channel if verdict.channel in KNOWN_CHANNELS else None,
        "customer_email": verdict.customer_email,
        "updated_at": datetime.utcnow(),
    }
    if status is PaymentStatus.SUCCESS:
        values["paid_at"] = paid_at

    result = await db.execute(
        update(Payment)
        .where(
            Payment.reference == reference,
            Payment.status == PaymentStatus.PENDING.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def list_payments(
    db: AsyncSession,
    *,
    user_id: int | None = None,
    status: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[Payment], int]:
    """Newest-first page of payments plus the total matching count."""
    filters = []
    if user_id is not None:
        filters.append(Payment.user_id == user_id)
    if status:
        filters.append(Payment.status == status)
    if start_date:
        filters.append(Payment.created_at >= start_date)
    if end_date:
        filters.append(Payment.created_at <= end_date)

    total_res = await db.execute(select(func.count(Payment.id)).where(*filters))
    total = total_res.scalar() or 0

    res = await db.execute(
        select(Payment)
        .where(*filters)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    )
    return list(res.scalars().all()), total


def serialize_payment(payment: Payment, include_raw: bool = False) -> dict:
    """
    Client-facing view of a ledger row.

    The verbatim gateway payload is only included for admins.
    """
    try:
        metadata = json.loads(payment.metadata_json) if payment.metadata_json else {}
    except ValueError:
        metadata = {}

    view = {
        "id": payment.id,
        "reference": payment.reference,
        "orderId": payment.order_id,
        "userId": payment.user_id,
        "amount": float(payment.amount),
        "currency": payment.currency,
        "status": payment.status,
        "channel": payment.channel,
        "paymentMethod": payment.payment_method,
        "gatewayMessage": payment.gateway_message,
        "authorizationUrl": payment.authorization_url,
        "accessCode": payment.access_code,
        "metadata": metadata,
        "paidAt": iso_timestamp(payment.paid_at),
        "createdAt": iso_timestamp(payment.created_at),
        "updatedAt": iso_timestamp(payment.updated_at),
    }
    if include_raw:
        view["gatewayPayload"] = payment.gateway_payload
    return view
