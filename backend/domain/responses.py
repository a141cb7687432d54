"""
Standard API response models and helpers for consistent response formatting.

All endpoints should use these helpers to ensure consistent response envelopes:
- Success: { "success": true, "message": "...", "data": <payload>, "meta": {...} }
- Error: { "success": false, "error": { "code": "...", "message": "...", "details": {...} } }
"""
import math
from datetime import datetime, timezone
from typing import Any
from pydantic import BaseModel, Field


class ErrorDetail(BaseModel):
    """Standard error detail structure."""
    code: str = Field(..., description="Error code (e.g., 'notfound', 'validation')")
    message: str = Field(..., description="Human-readable error message")
    details: dict[str, Any] | None = Field(default=None, description="Additional error context")


class StandardErrorResponse(BaseModel):
    """Standard error response envelope."""
    success: bool = Field(False, description="Always false for errors")
    error: ErrorDetail = Field(..., description="Error details")


def success_response(data: Any, meta: dict[str, Any] | None = None, message: str | None = None) -> dict[str, Any]:
    """
    Create a standardized success response.

    Args:
        data: The response payload
        meta: Optional metadata (pagination, timestamps, etc.)
        message: Optional human-readable summary

    Returns:
        dict: { "success": true, "message": <message>, "data": <data>, "meta": <meta> }
    """
    response = {"success": True, "data": data}
    if message:
        response["message"] = message
    if meta:
        response["meta"] = meta
    return response


def paginated_response(
    items: list[Any],
    page: int,
    limit: int,
    total: int | None = None,
    message: str | None = None,
) -> dict[str, Any]:
    """
    Create a standardized page-numbered response.

    Returns:
        dict: { "success": true, "data": <items>, "meta": { "page", "limit", "total", "pages", "hasMore" } }
    """
    if total is None:
        total = len(items)

    meta = {
        "page": page,
        "limit": limit,
        "results": len(items),
        "total": total,
        "pages": math.ceil(total / limit) if limit else 0,
        "hasMore": page * limit < total,
    }

    return success_response(data=items, meta=meta, message=message)


def iso_timestamp(dt: datetime | None) -> str | None:
    """Render a stored timestamp as ISO-8601 UTC with a trailing 'Z'.

    Columns hold naive UTC; aware values are converted first.
    """
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.isoformat() + "Z"
