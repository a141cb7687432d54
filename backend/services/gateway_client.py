"""
Paystack gateway client.

Translates domain calls into Paystack REST calls:
    1. start_charge()                  → POST /transaction/initialize
    2. fetch_charge_status()           → GET  /transaction/verify/{reference}
    3. verify_notification_signature() → HMAC-SHA512 over the raw webhook body

Also owns currency-unit conversion (major ↔ minor units) and the published
fee schedule.

Security notes:
    - Signature verification FAILS CLOSED when no secret is configured
    - Every request is bounded by settings.gateway_timeout_seconds
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import httpx

from config import settings
from domain.errors import (
    GatewayRejectedError,
    GatewayUnavailableError,
    ReferenceNotFoundError,
)

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


# ════════════════════════════════════════════════════════════════════
# Value objects
# ════════════════════════════════════════════════════════════════════


@dataclass
class ChargeInit:
    """Result of a successfully started charge."""
    authorization_url: str
    access_code: str
    reference: str
    raw_payload: str = ""


@dataclass
class ChargeStatus:
    """
    A gateway verdict for one charge reference.

    Built either from the verify endpoint (polling) or from the `data`
    object of a signed webhook. Only the typed fields are used for
    decisions; raw_payload is kept verbatim for audit.
    """
    reference: str
    status: str
    channel: Optional[str] = None
    gateway_message: Optional[str] = None
    paid_at_raw: Optional[str] = None
    customer_email: Optional[str] = None
    amount_minor: Optional[int] = None
    currency: Optional[str] = None
    gateway_id: Optional[str] = None
    raw_payload: str = ""

    @classmethod
    def from_charge_data(cls, data: dict, raw_payload: str = "") -> "ChargeStatus":
        customer = data.get("customer") or {}
        amount = data.get("amount")
        try:
            amount_minor = int(amount) if amount is not None else None
        except (TypeError, ValueError):
            amount_minor = None
        gateway_id = data.get("id")
        return cls(
            reference=str(data.get("reference") or ""),
            status=str(data.get("status") or "").lower(),
            channel=data.get("channel"),
            gateway_message=data.get("gateway_response") or data.get("message"),
            paid_at_raw=data.get("paid_at") or data.get("paidAt"),
            customer_email=customer.get("email") if isinstance(customer, dict) else None,
            amount_minor=amount_minor,
            currency=(data.get("currency") or None),
            gateway_id=str(gateway_id) if gateway_id is not None else None,
            raw_payload=raw_payload,
        )


# ════════════════════════════════════════════════════════════════════
# Currency helpers
# ════════════════════════════════════════════════════════════════════


def to_minor_units(amount) -> int:
    """
    Convert a major-unit amount (naira, cedi, rand, dollar) to kobo/pesewas/cents.

    Multiplies by 100 and rounds half-up to an integer. Exact for any amount
    already expressed to 2 decimal places.
    """
    value = Decimal(str(amount)) * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount_minor: int) -> Decimal:
    """Convert kobo/pesewas/cents back to a 2-dp major-unit Decimal."""
    return (Decimal(int(amount_minor)) / 100).quantize(_CENT)


# Paystack published pricing: (percentage, cap, flat fee)
_FEE_SCHEDULE = {
    "NGN": (Decimal("0.015"), Decimal("2000"), Decimal("0")),
    "GHS": (Decimal("0.0195"), None, Decimal("0")),
    "ZAR": (Decimal("0.029"), None, Decimal("0")),
    "USD": (Decimal("0.039"), None, Decimal("0.50")),
}
_DEFAULT_FEE = (Decimal("0.015"), None, Decimal("0"))


def calculate_fees(amount, currency: str = "NGN") -> dict:
    """
    Estimate the gateway fee for a charge.

    Returns:
        dict: {amount, fee, total, currency} with 2-dp Decimals
    """
    amount = Decimal(str(amount))
    percentage, cap, flat = _FEE_SCHEDULE.get(currency.upper(), _DEFAULT_FEE)

    fee = amount * percentage + flat
    if cap is not None and fee > cap:
        fee = cap

    fee = fee.quantize(_CENT, rounding=ROUND_HALF_UP)
    return {
        "amount": amount.quantize(_CENT, rounding=ROUND_HALF_UP),
        "fee": fee,
        "total": (amount + fee).quantize(_CENT, rounding=ROUND_HALF_UP),
        "currency": currency.upper(),
    }


# ════════════════════════════════════════════════════════════════════
# Client
# ════════════════════════════════════════════════════════════════════


class PaystackClient:
    """Thin async adapter over the Paystack transaction API."""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str = "",
        base_url: str = "https://api.paystack.co",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret or secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> dict:
        if not self.secret_key:
            raise GatewayRejectedError(
                "Payment gateway is not configured (PAYSTACK_SECRET_KEY missing)."
            )
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, payload: Optional[dict] = None) -> httpx.Response:
        headers = self._headers()
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            logger.error(f"Paystack {method} {path} timed out after {self.timeout}s: {e}")
            raise GatewayUnavailableError("Payment gateway timed out")
        except httpx.HTTPError as e:
            logger.error(f"Paystack {method} {path} transport error: {e}")
            raise GatewayUnavailableError("Payment gateway unreachable")

        if response.status_code >= 500:
            logger.error(f"Paystack {method} {path} → {response.status_code}")
            raise GatewayUnavailableError(
                f"Payment gateway error ({response.status_code})",
                details={"status_code": response.status_code},
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            body = response.json()
        except ValueError:
            raise GatewayUnavailableError("Payment gateway returned a non-JSON response")
        if not isinstance(body, dict):
            raise GatewayUnavailableError("Payment gateway returned an unexpected response")
        return body

    async def start_charge(
        self,
        *,
        email: str,
        amount,
        reference: str,
        currency: str,
        metadata: Optional[dict] = None,
        callback_url: Optional[str] = None,
    ) -> ChargeInit:
        """
        Start a charge and return the hosted checkout URL.

        Raises:
            GatewayUnavailableError: transport error, timeout or 5xx
            GatewayRejectedError: 4xx or a `status: false` body
        """
        payload = {
            "email": email,
            "amount": to_minor_units(amount),
            "reference": reference,
            "currency": currency,
            "metadata": metadata or {},
        }
        if callback_url:
            payload["callback_url"] = callback_url

        response = await self._request("POST", "/transaction/initialize", payload)
        body = self._json(response)

        if response.status_code >= 400 or not body.get("status"):
            message = body.get("message") or "Charge rejected by gateway"
            logger.warning(f"Paystack rejected charge {reference}: {message}")
            raise GatewayRejectedError(message, details={"status_code": response.status_code})

        data = body.get("data") or {}
        if not data.get("authorization_url"):
            raise GatewayRejectedError("Gateway response is missing authorization_url")

        logger.info(f"Payment initialized with gateway: {reference}")
        return ChargeInit(
            authorization_url=data["authorization_url"],
            access_code=data.get("access_code", ""),
            reference=data.get("reference") or reference,
            raw_payload=response.text,
        )

    async def fetch_charge_status(self, reference: str) -> ChargeStatus:
        """
        Fetch the gateway's current verdict for a reference.

        Raises:
            GatewayUnavailableError: transport error, timeout or 5xx
            ReferenceNotFoundError: the gateway does not know the reference
        """
        response = await self._request("GET", f"/transaction/verify/{reference}")
        body = self._json(response)

        if response.status_code == 404:
            raise ReferenceNotFoundError(reference)
        if response.status_code >= 400 or not body.get("status"):
            message = body.get("message") or "Verification rejected by gateway"
            if "not found" in message.lower():
                raise ReferenceNotFoundError(reference)
            raise GatewayRejectedError(message, details={"status_code": response.status_code})

        data = body.get("data") or {}
        verdict = ChargeStatus.from_charge_data(data, raw_payload=response.text)
        if not verdict.reference:
            verdict.reference = reference

        logger.info(f"Payment verified with gateway: {reference} - status: {verdict.status}")
        return verdict

    def verify_notification_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """
        Check a webhook's HMAC-SHA512 signature over the exact raw body.

        FAILS CLOSED when the secret is not configured.
        """
        if not self.webhook_secret:
            logger.error(
                "Webhook secret not configured — rejecting webhook. "
                "Set PAYSTACK_WEBHOOK_SECRET or PAYSTACK_SECRET_KEY in .env."
            )
            return False

        if not signature:
            logger.warning("Webhook received without signature header")
            return False

        expected = hmac.new(
            self.webhook_secret.encode("utf-8"),
            raw_body,
            hashlib.sha512,
        ).hexdigest()

        # compare_digest rejects non-ASCII str; header values can carry latin-1 bytes
        presented = signature.strip().lower().encode("utf-8", errors="replace")
        return hmac.compare_digest(expected.encode("ascii"), presented)


def sign_payload(secret: str, raw_body: bytes) -> str:
    """Compute the signature Paystack would send for raw_body."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def build_gateway_client() -> PaystackClient:
    return PaystackClient(
        secret_key=settings.paystack_secret_key,
        webhook_secret=settings.webhook_secret,
        base_url=settings.paystack_base_url,
        timeout=settings.gateway_timeout_seconds,
    )

