"""
Tests for POST /payments/webhook and handle_notification().

Tests: signature gate, unknown references, unhandled events, malformed
bodies, webhook/poll convergence.
"""
import os, sys
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import json

import pytest

from config import settings
from domain.errors import InvalidSignatureError, ValidationError
from services import order_service, payment_ledger, reconciliation_service
from services.gateway_client import sign_payload


async def _pending_payment(db, gateway, order):
    payment, _ = await reconciliation_service.initialize_payment(
        db, gateway, order_id=order.id, user_id=order.user_id, email="ada@example.com",
    )
    return payment


class TestWebhookSignature:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, client, db_session, fake_gateway, sample_order):
        payment = await _pending_payment(db_session, fake_gateway, sample_order)
        body = json.dumps({"event": "charge.success", "data": {"reference": payment.reference}})

        response = await client.post("/payments/webhook", content=body)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalidsignature"
        stored = await payment_ledger.get_by_reference(db_session, payment.reference)
        assert stored.status == "pending"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_bad_signature_rejected_without_state_change(
        self, client, db_session, fake_gateway, sample_order, signed_webhook
    ):
        payment = await _pending_payment(db_session, fake_gateway, sample_order)
        body, headers = signed_webhook(
            "charge.success", {"reference": payment.reference, "status": "success"}, secret="wrong-secret",
        )

        response = await client.post("/payments/webhook", content=body, headers=headers)

        assert response.status_code == 400
        stored = await payment_ledger.get_by_reference(db_session, payment.reference)
        assert stored.status == "pending"
        order = await order_service.get_order(db_session, sample_order.id)
        assert order.paid is False

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_signature_checked_before_parsing(self, client):
        """A garbage body with no valid signature is a signature failure, not a parse failure."""
        response = await client.post(
            "/payments/webhook",
            content=b"not json at all",
            headers={settings.webhook_signature_header: "00" * 64},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalidsignature"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_non_ascii_signature_header_rejected(self, client, db_session, fake_gateway, sample_order):
        payment = await _pending_payment(db_session, fake_gateway, sample_order)
        body = json.dumps({"event": "charge.success", "data": {"reference": payment.reference}})

        response = await client.post(
            "/payments/webhook",
            content=body,
            headers={settings.webhook_signature_header: b"\xe9" * 128},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalidsignature"
        stored = await payment_ledger.get_by_reference(db_session, payment.reference)
        assert stored.status == "pending"


class TestWebhookProcessing:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_charge_success_marks_order_paid(
        self, client, db_session, fake_gateway, sample_order, signed_webhook
    ):
        payment = await _pending_payment(db_session, fake_gateway, sample_order)
        body, headers = signed_webhook("charge.success", {
            "id": 302961,
            "reference": payment.reference,
            "status": "success",
            "amount": 550000,
            "currency": "NGN",
            "channel": "bank_transfer",
            "paid_at": "2024-05-01T10:00:00.000Z",
            "customer": {"email": "ada@example.com"},
        })

        response = await client.post("/payments/webhook", content=body, headers=headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "processed"
        assert data["paymentStatus"] == "success"

        stored = await payment_ledger.get_by_reference(db_session, payment.reference)
        assert stored.status == "success"
        assert stored.gateway_payload == body.decode()
        order = await order_service.get_order(db_session, sample_order.id)
        assert order.paid is True

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(
        self, client, db_session, fake_gateway, sample_order, signed_webhook
    ):
        payment = await _pending_payment(db_session, fake_gateway, sample_order)
        body, headers = signed_webhook("charge.success", {
            "reference": payment.reference, "status": "success", "paid_at": "2024-05-01T10:00:00Z",
        })

        first = await client.post("/payments/webhook", content=body, headers=headers)
        second = await client.post("/payments/webhook", content=body, headers=headers)

        assert first.status_code == 200
        assert second.status_code == 200
        order = await order_service.get_order(db_session, sample_order.id)
        assert order.paid is True
        assert order.payment_reference == payment.reference

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_charge_failed_event_without_status(
        self, client, db_session, fake_gateway, sample_order, signed_webhook
    ):
        payment = await _pending_payment(db_session, fake_gateway, sample_order)
        body, headers = signed_webhook("charge.failed", {
            "reference": payment.reference, "gateway_response": "Insufficient funds",
        })

        response = await client.post("/payments/webhook", content=body, headers=headers)

        assert response.status_code == 200
        stored = await payment_ledger.get_by_reference(db_session, payment.reference)
        assert stored.status == "failed"
        assert stored.gateway_message == "Insufficient funds"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_unknown_reference_acknowledged(self, client, signed_webhook):
        body, headers = signed_webhook("charge.success", {
            "reference": "ORDER-404-0-deadbeefdeadbeef", "status": "success",
        })

        response = await client.post("/payments/webhook", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["data"]["reason"] == "unknown_reference"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_unhandled_event_acknowledged(self, client, signed_webhook):
        body, headers = signed_webhook("transfer.success", {"reference": "TRF-1"})

        response = await client.post("/payments/webhook", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["data"] == {
            "status": "ignored", "event": "transfer.success", "reason": "unhandled_event",
        }

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_malformed_signed_body_is_400(self, client):
        body = b'{"data": {"reference": "ORDER-1"}}'
        headers = {settings.webhook_signature_header: sign_payload("sk_test_storefront_pytest_secret", body)}

        response = await client.post("/payments/webhook", content=body, headers=headers)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_amount_mismatch_is_acknowledged_but_not_applied(
        self, client, db_session, fake_gateway, sample_order, signed_webhook
    ):
        payment = await _pending_payment(db_session, fake_gateway, sample_order)
        body, headers = signed_webhook("charge.success", {
            "reference": payment.reference, "status": "success", "amount": 100, "currency": "NGN",
        })

        response = await client.post("/payments/webhook", content=body, headers=headers)

        assert response.status_code == 200
        stored = await payment_ledger.get_by_reference(db_session, payment.reference)
        assert stored.status == "failed"
        order = await order_service.get_order(db_session, sample_order.id)
        assert order.paid is False


class TestWebhookPollConvergence:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_poll_after_webhook_skips_gateway(
        self, db_session, fake_gateway, sample_order, signed_webhook
    ):
        payment = await _pending_payment(db_session, fake_gateway, sample_order)
        body, headers = signed_webhook("charge.success", {"reference": payment.reference, "status": "success"})

        result = await reconciliation_service.handle_notification(
            db_session, fake_gateway,
            raw_body=body, signature=headers[settings.webhook_signature_header],
        )
        assert result["status"] == "processed"

        verified = await reconciliation_service.verify_payment(
            db_session, fake_gateway, reference=payment.reference, user_id=sample_order.user_id,
        )
        assert verified.status == "success"
        assert fake_gateway.fetch_calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_late_failure_after_polled_success(
        self, db_session, fake_gateway, sample_order, signed_webhook
    ):
        payment = await _pending_payment(db_session, fake_gateway, sample_order)
        fake_gateway.set_verdict(payment.reference, "success")
        await reconciliation_service.verify_payment(
            db_session, fake_gateway, reference=payment.reference, user_id=sample_order.user_id,
        )

        body, headers = signed_webhook("charge.failed", {"reference": payment.reference, "status": "failed"})
        result = await reconciliation_service.handle_notification(
            db_session, fake_gateway,
            raw_body=body, signature=headers[settings.webhook_signature_header],
        )

        assert result["paymentStatus"] == "success"
        order = await order_service.get_order(db_session, sample_order.id)
        assert order.paid is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_service_raises_on_bad_signature(self, db_session, fake_gateway):
        with pytest.raises(InvalidSignatureError):
            await reconciliation_service.handle_notification(
                db_session, fake_gateway, raw_body=b"{}", signature="abc",
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [b"[]", b'{"event": "charge.success"}', b'{"event": "", "data": {}}'])
    async def test_service_rejects_malformed_payload(self, db_session, fake_gateway, raw):
        with pytest.raises(ValidationError):
            await reconciliation_service.handle_notification(
                db_session, fake_gateway,
                raw_body=raw, signature=sign_payload("sk_test_storefront_pytest_secret", raw),
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_reference_is_ignored(self, db_session, fake_gateway, signed_webhook):
        body, headers = signed_webhook("charge.success", {"status": "success"})
        result = await reconciliation_service.handle_notification(
            db_session, fake_gateway,
            raw_body=body, signature=headers[settings.webhook_signature_header],
        )
        assert result["reason"] == "missing_reference"
