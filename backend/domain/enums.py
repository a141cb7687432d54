"""
Domain enums for orders and payments.
"""

from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    ABANDONED = "abandoned"


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


# Orders may only be cancelled before they leave the warehouse
CANCELLABLE_ORDER_STATUSES = (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value)

TERMINAL_PAYMENT_STATUSES = (
    PaymentStatus.SUCCESS.value,
    PaymentStatus.FAILED.value,
    PaymentStatus.ABANDONED.value,
)

# A payment in one of these states blocks a new initialization for its order
ACTIVE_PAYMENT_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.SUCCESS.value)
