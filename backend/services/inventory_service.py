"""
Inventory adjuster — stock reservation at checkout, restoration on cancel.

Both operations are single conditional UPDATEs so concurrent checkouts can
never drive stock below zero. Callers own the surrounding transaction.
"""

import logging

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from db_models import Product

logger = logging.getLogger(__name__)


async def reserve(db: AsyncSession, *, product_id: int, quantity: int) -> bool:
    """Decrement stock by quantity if enough is available. Returns False otherwise."""
    result = await db.execute(
        update(Product)
        .where(
            Product.id == product_id,
            Product.active == True,
            Product.stock >= quantity,
        )
        .values(stock=Product.stock - quantity)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def restore(db: AsyncSession, *, product_id: int, quantity: int) -> None:
    """Return quantity units to stock. Missing products are logged and skipped."""
    result = await db.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(stock=Product.stock + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.warning(f"Stock restore skipped: product {product_id} no longer exists")
