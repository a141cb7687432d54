"""
Reconciliation service — the order/payment state machine.

Handles:
    1. initialize_payment()  — one pending ledger row per order payment intent
    2. resolve_payment()     — apply a gateway verdict exactly once
    3. verify_payment()      — client polling → gateway fetch → resolve
    4. handle_notification() — signed webhook → resolve

Payment states: pending → success | failed | abandoned (all terminal).

Polling and webhooks converge on resolve_payment(), which runs under a
per-reference lock and writes through conditional UPDATEs, so duplicate or
out-of-order deliveries are no-ops once a reference is terminal.
"""
import json
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db_models import Payment
from domain.constants import EVENT_CHARGE_FAILED, EVENT_CHARGE_SUCCESS
from domain.enums import TERMINAL_PAYMENT_STATUSES, OrderStatus, PaymentStatus
from domain.errors import (
    AlreadyPaidError,
    ConflictError,
    GatewayError,
    InvalidSignatureError,
    NotFoundError,
    OrderNotFoundError,
    PaymentInitFailedError,
    PaymentNotFoundError,
    PermissionDeniedError,
    ValidationError,
    VerificationFailedError,
)
from services import order_service, payment_ledger
from services.gateway_client import ChargeStatus, PaystackClient, from_minor_units, to_minor_units
from services.keyed_lock import order_locks, payment_locks

logger = logging.getLogger(__name__)


# Gateway status → ledger status. Anything not listed (ongoing, pending,
# processing, queued, send_otp, ...) means the charge is still in flight.
_VERDICT_STATUS_MAP = {
    "success": PaymentStatus.SUCCESS,
    "failed": PaymentStatus.FAILED,
    "reversed": PaymentStatus.FAILED,
    "abandoned": PaymentStatus.ABANDONED,
}


def map_verdict_status(gateway_status: str | None) -> PaymentStatus | None:
    return _VERDICT_STATUS_MAP.get((gateway_status or "").lower())


def is_terminal(payment: Payment) -> bool:
    return payment.status in TERMINAL_PAYMENT_STATUSES


def _amount_mismatch(payment: Payment, verdict: ChargeStatus) -> str | None:
    """Describe why a success verdict disagrees with the ledger, or None."""
    if verdict.amount_minor is not None:
        expected = to_minor_units(payment.amount)
        if verdict.amount_minor != expected:
            return (
                f"Amount mismatch: gateway charged {from_minor_units(verdict.amount_minor)}, "
                f"ledger expects {payment.amount}"
            )
    if verdict.currency and verdict.currency.upper() != payment.currency:
        return f"Currency mismatch: gateway charged {verdict.currency}, ledger expects {payment.currency}"
    return None


# ════════════════════════════════════════════════════════════════════
# Initialize
# ════════════════════════════════════════════════════════════════════


async def initialize_payment(
    db: AsyncSession,
    gateway: PaystackClient,
    *,
    order_id: int,
    user_id: int,
    email: str,
    currency: Optional[str] = None,
    metadata: Optional[dict] = None,
    callback_url: Optional[str] = None,
) -> tuple[Payment, bool]:
    """
    Start (or return) the payment for an order.

    Returns:
        (payment, created) — created is False when an existing pending
        payment was returned unchanged.

    Raises:
        OrderNotFoundError, PermissionDeniedError, AlreadyPaidError,
        ConflictError (cancelled order), ValidationError (unsupported currency),
        PaymentInitFailedError
    """
    currency = (currency or settings.default_currency).upper()
    if currency not in settings.supported_currencies_list:
        raise ValidationError(
            f"Currency must be one of {', '.join(settings.supported_currencies_list)}",
            field="currency",
        )

    async with order_locks.hold(order_id):
        order = await order_service.get_order(db, order_id)
        if not order:
            raise OrderNotFoundError(order_id)
        if order.user_id != user_id:
            raise PermissionDeniedError("Not authorized to pay for this order")
        if order.paid:
            raise AlreadyPaidError(order_id)
        if order.status == OrderStatus.CANCELLED.value:
            raise ConflictError(f"Order {order_id} is cancelled and cannot be paid")

        existing = await payment_ledger.get_active_for_order(db, order_id)
        if existing:
            if existing.status == PaymentStatus.SUCCESS.value:
                raise AlreadyPaidError(order_id)
            logger.info(f"Returning existing pending payment {existing.reference} for order {order_id}")
            return existing, False

        reference = payment_ledger.generate_reference(order_id)
        charge_metadata = {
            **(metadata or {}),
            "order_id": order_id,
            "user_id": user_id,
        }

        try:
            charge = await gateway.start_charge(
                email=email,
                amount=order.total_price,
                reference=reference,
                currency=currency,
                metadata=charge_metadata,
                callback_url=callback_url or settings.default_callback_url,
            )
        except GatewayError as e:
            logger.error(f"Payment init failed for order {order_id} ({reference}): {e.message}")
            raise PaymentInitFailedError(details={"reason": e.message})

        payment = payment_ledger.new_pending_payment(
            reference=reference,
            user_id=user_id,
            order_id=order_id,
            amount=order.total_price,
            currency=currency,
            authorization_url=charge.authorization_url,
            access_code=charge.access_code,
            metadata=charge_metadata,
            raw_payload=charge.raw_payload,
        )
        db.add(payment)
        try:
            await db.commit()
        except IntegrityError:
            # Another process won the partial unique index on (order_id, active status)
            await db.rollback()
            winner = await payment_ledger.get_active_for_order(db, order_id)
            if winner is None:
                raise
            logger.warning(
                f"Concurrent initialization for order {order_id}: discarded {reference}, "
                f"keeping {winner.reference}"
            )
            if winner.status == PaymentStatus.SUCCESS.value:
                raise AlreadyPaidError(order_id)
            return winner, False

        logger.info(f"Payment {reference} initialized for order {order_id} ({order.total_price} {currency})")
        return payment, True


# ════════════════════════════════════════════════════════════════════
# Resolve
# ════════════════════════════════════════════════════════════════════


async def resolve_payment(db: AsyncSession, reference: str, verdict: ChargeStatus) -> Payment:
    """
    Apply a gateway verdict to the ledger and the order, exactly once.

    Terminal payments are returned unchanged. In-flight verdicts leave the
    payment pending. The payment row and the order's paid fields are
    committed in one transaction.

    Raises:
        PaymentNotFoundError: no ledger row for the reference
    """
    async with payment_locks.hold(reference):
        try:
            return await _resolve_locked(db, reference, verdict)
        except Exception:
            await db.rollback()
            raise


async def _resolve_locked(db: AsyncSession, reference: str, verdict: ChargeStatus) -> Payment:
    payment = await payment_ledger.get_by_reference(db, reference)
    if payment is None:
        raise PaymentNotFoundError(reference)

    if is_terminal(payment):
        logger.info(f"Payment {reference} already {payment.status}; verdict '{verdict.status}' ignored")
        return payment

    target = map_verdict_status(verdict.status)
    if target is None:
        logger.info(f"Payment {reference} still in flight at gateway (status '{verdict.status}')")
        return payment

    message = verdict.gateway_message
    if target is PaymentStatus.SUCCESS and settings.enforce_amount_match:
        mismatch = _amount_mismatch(payment, verdict)
        if mismatch:
            logger.error(f"Payment {reference} NOT applied to order {payment.order_id}: {mismatch}")
            target = PaymentStatus.FAILED
            message = mismatch

    paid_at = None
    if target is PaymentStatus.SUCCESS:
        paid_at = payment_ledger.parse_gateway_timestamp(verdict.paid_at_raw) or datetime.utcnow()

    won = await payment_ledger.apply_verdict(
        db,
        reference=reference,
        status=target,
        verdict=verdict,
        gateway_message=message,
        paid_at=paid_at,
    )
    if not won:
        await db.rollback()
        logger.info(f"Payment {reference} was resolved concurrently; returning stored state")
        return await payment_ledger.get_by_reference(db, reference)

    if target is PaymentStatus.SUCCESS:
        await order_service.mark_paid(
            db,
            order_id=payment.order_id,
            reference=reference,
            paid_at=paid_at,
            verdict=verdict,
        )

    await db.commit()
    await db.refresh(payment)
    logger.info(f"Payment {reference} resolved: pending → {payment.status}")
    return payment


# ════════════════════════════════════════════════════════════════════
# Polling
# ════════════════════════════════════════════════════════════════════


async def verify_payment(
    db: AsyncSession,
    gateway: PaystackClient,
    *,
    reference: str,
    user_id: int,
) -> Payment:
    """
    Client-initiated verification.

    A gateway failure raises VerificationFailedError and leaves the payment
    untouched; a transport error is not evidence that the charge failed.
    """
    payment = await payment_ledger.get_by_reference(db, reference)
    if payment is None:
        raise PaymentNotFoundError(reference)
    if payment.user_id != user_id:
        raise PermissionDeniedError("Not authorized to verify this payment")
    if is_terminal(payment):
        return payment

    try:
        verdict = await gateway.fetch_charge_status(reference)
    except (GatewayError, NotFoundError) as e:
        logger.warning(f"Verification of {reference} failed at gateway: {e.message}")
        raise VerificationFailedError(details={"reason": e.message})

    return await resolve_payment(db, reference, verdict)


# ════════════════════════════════════════════════════════════════════
# Webhook
# ════════════════════════════════════════════════════════════════════


def _parse_notification(raw_body: bytes) -> tuple[str, dict]:
    try:
        body = json.loads(raw_body)
    except ValueError:
        raise ValidationError("Invalid webhook payload: body is not JSON")
    if not isinstance(body, dict):
        raise ValidationError("Invalid webhook payload: expected an object")
    event = body.get("event")
    data = body.get("data")
    if not isinstance(event, str) or not event or not isinstance(data, dict):
        raise ValidationError("Invalid webhook payload: 'event' and 'data' are required")
    return event, data


async def handle_notification(
    db: AsyncSession,
    gateway: PaystackClient,
    *,
    raw_body: bytes,
    signature: Optional[str],
) -> dict:
    """
    Process a gateway webhook.

    The signature is checked before the body is parsed. Once it passes,
    every outcome is acknowledged (returned, not raised) so the gateway stops
    redelivering: unknown references, unhandled events and processing errors
    are logged only.

    Raises:
        InvalidSignatureError: signature missing or wrong (no state change)
        ValidationError: body is not {event, data}
    """
    if not gateway.verify_notification_signature(raw_body, signature):
        logger.warning("Invalid webhook signature received")
        raise InvalidSignatureError()

    event, data = _parse_notification(raw_body)
    logger.info(f"Webhook received: {event} - reference: {data.get('reference')}")

    if event not in (EVENT_CHARGE_SUCCESS, EVENT_CHARGE_FAILED):
        logger.info(f"Unhandled webhook event: {event}")
        return {"status": "ignored", "event": event, "reason": "unhandled_event"}

    verdict = ChargeStatus.from_charge_data(data, raw_payload=raw_body.decode("utf-8", errors="replace"))
    if not verdict.status:
        verdict.status = "success" if event == EVENT_CHARGE_SUCCESS else "failed"
    if not verdict.reference:
        logger.warning(f"Webhook {event} without a reference; ignored")
        return {"status": "ignored", "event": event, "reason": "missing_reference"}

    try:
        payment = await resolve_payment(db, verdict.reference, verdict)
    except PaymentNotFoundError:
        logger.warning(f"Payment not found for webhook reference: {verdict.reference}")
        return {"status": "ignored", "event": event, "reason": "unknown_reference"}
    except Exception as e:
        logger.error(f"Webhook {event} for {verdict.reference} failed: {e}", exc_info=True)
        return {"status": "error_logged", "event": event, "reference": verdict.reference}

    return {
        "status": "processed",
        "event": event,
        "reference": payment.reference,
        "paymentStatus": payment.status,
    }
