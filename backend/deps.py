"""
Shared FastAPI dependencies.

Centralizes common dependencies so routers import from a single place
(DB session, current user, admin guard, pagination, payment gateway).
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, TypedDict

from fastapi import Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from db_models import User
from domain.enums import PaymentStatus, UserRole
from domain.errors import PermissionDeniedError, UnauthorizedError, ValidationError
from middleware.auth import require_token_subject
from services.gateway_client import PaystackClient, build_gateway_client


class Pagination(TypedDict):
    page: int
    limit: int


class PaymentFilters(TypedDict):
    status: Optional[str]
    start_date: Optional[datetime]
    end_date: Optional[datetime]


def pagination_params(
    page: int = Query(1, ge=1, le=100_000),
    limit: int = Query(10, ge=1, le=100),
) -> Pagination:
    return {"page": page, "limit": limit}


def payment_filter_params(
    status: Optional[PaymentStatus] = Query(None),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
) -> PaymentFilters:
    if start_date and end_date and end_date < start_date:
        raise ValidationError("endDate must not be before startDate", field="endDate")
    return {
        "status": status.value if status else None,
        "start_date": start_date,
        "end_date": end_date,
    }


async def get_current_user(
    user_id: int = Depends(require_token_subject),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Resolve the bearer token's subject to a User row (401 if it no longer exists)."""
    user = await db.get(User, user_id)
    if not user:
        raise UnauthorizedError("User for this access token no longer exists.")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != UserRole.ADMIN.value:
        raise PermissionDeniedError("Admin role required for this endpoint.")
    return user


_gateway: PaystackClient | None = None


def get_gateway() -> PaystackClient:
    """Gateway client built once from settings (overridden in tests)."""
    global _gateway
    if _gateway is None:
        _gateway = build_gateway_client()
    return _gateway
