"""
Pydantic models for request validation.
"""
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, HttpUrl


class ApiBase(BaseModel):
    """Shared base — allows construction by Python name or alias."""
    model_config = ConfigDict(populate_by_name=True)


# ── Payment Models ──────────────────────────────────────────────────

class InitializePaymentRequest(ApiBase):
    """Request body for POST /payments/initialize."""
    order_id: int = Field(..., alias="orderId", gt=0)
    email: EmailStr
    currency: Optional[str] = Field(
        default=None,
        pattern="^(NGN|GHS|ZAR|USD)$",
        description="Defaults to DEFAULT_CURRENCY",
    )
    metadata: Optional[dict] = None
    callback_url: Optional[HttpUrl] = None


# ── Order Models ────────────────────────────────────────────────────

class OrderItemRequest(ApiBase):
    product_id: int = Field(..., alias="productId", gt=0)
    quantity: int = Field(1, ge=1, le=100)


class CreateOrderRequest(ApiBase):
    """Request body for POST /orders."""
    items: List[OrderItemRequest] = Field(..., alias="orderItems", min_length=1)
    shipping_address: Optional[dict] = Field(default=None, alias="shippingAddress")
    tax_price: Decimal = Field(Decimal("0"), alias="taxPrice", ge=0, decimal_places=2)
    shipping_price: Decimal = Field(Decimal("0"), alias="shippingPrice", ge=0, decimal_places=2)


class UpdateOrderStatusRequest(ApiBase):
    status: str = Field(..., pattern="^(pending|processing|shipped|delivered|cancelled)$")
