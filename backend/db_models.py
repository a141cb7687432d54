"""
SQLAlchemy ORM models for the Storefront Payments API.

Tables:
    users        — account owners (role "user" or "admin")
    products     — sellable items with a stock counter
    orders       — commercial state of a checkout (paid flag, fulfillment status)
    order_items  — line items with the unit price captured at order time
    payments     — the payment ledger: one row per charge attempt
"""
from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, Numeric, ForeignKey,
    CheckConstraint, Index, text,
)
from sqlalchemy.orm import relationship

from database import Base


class User(Base):
    """Accounts that own orders and payments."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=True)
    role = Column(String(20), nullable=False, default="user")  # "user" | "admin"
    created_at = Column(DateTime, default=datetime.utcnow)


class Product(Base):
    """Catalogue entry; stock is owned by services/inventory_service.py."""
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
    )


class Order(Base):
    """
    Commercial state of a checkout.

    paid / paid_at / payment_* are written only by the reconciliation service.
    status is written by order management (status update, cancel).
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    shipping_address = Column(Text, nullable=True)  # JSON object

    items_price = Column(Numeric(12, 2), nullable=False, default=0)
    tax_price = Column(Numeric(12, 2), nullable=False, default=0)
    shipping_price = Column(Numeric(12, 2), nullable=False, default=0)
    total_price = Column(Numeric(12, 2), nullable=False, default=0)

    paid = Column(Boolean, nullable=False, default=False)
    paid_at = Column(DateTime, nullable=True)
    payment_method = Column(String(30), nullable=True)
    payment_reference = Column(String(100), nullable=True, index=True)
    payment_result = Column(Text, nullable=True)  # JSON snapshot of the gateway verdict

    status = Column(String(20), nullable=False, default="pending", index=True)
    delivered_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = relationship(
        "OrderItem",
        back_populates="order",
        lazy="selectin",
        order_by="OrderItem.id",
    )

    __table_args__ = (
        # For user order history: filter by user_id, order by created_at DESC
        Index("ix_orders_user_created", "user_id", "created_at"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")


class Payment(Base):
    """
    Payment ledger — one row per charge attempt.

    Lifecycle:
        1. initialize → row created in "pending" after the gateway accepted the charge
        2. verify (poll) or webhook (push) → resolved once to success / failed / abandoned
        3. terminal rows are never updated again
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reference = Column(String(100), unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="NGN")
    status = Column(String(20), nullable=False, default="pending", index=True)

    # Extracted from the gateway payload; the only fields the state machine reads
    channel = Column(String(30), nullable=True)
    payment_method = Column(String(30), nullable=True)
    gateway_message = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)
    authorization_url = Column(Text, nullable=True)
    access_code = Column(String(100), nullable=True)
    metadata_json = Column("metadata", Text, nullable=True)

    # Verbatim gateway body kept for audit and disputes; never parsed for decisions
    gateway_payload = Column(Text, nullable=True)

    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payments_amount_non_negative"),
        # At most one pending-or-successful payment per order
        Index(
            "uq_payments_order_active",
            "order_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'success')"),
            postgresql_where=text("status IN ('pending', 'success')"),
        ),
        # For payment history: filter by user_id, order by created_at DESC
        Index("ix_payments_user_created", "user_id", "created_at"),
        Index("ix_payments_status_created", "status", "created_at"),
    )
