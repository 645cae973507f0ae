"""
Session helpers shared by the RBAC stores.

Every statement goes through _exec/_commit so persistence failures surface as
StoreFailureError with the original exception chained.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import StoreFailureError

logger = logging.getLogger(__name__)


async def _exec(db: AsyncSession, stmt):
    try:
        return await db.execute(stmt)
    except SQLAlchemyError as e:
        logger.error(f"RBAC store query failed: {e}")
        raise StoreFailureError(f"Persistence query failed: {e.__class__.__name__}") from e


async def _flush(db: AsyncSession) -> None:
    try:
        await db.flush()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"RBAC store flush failed: {e}")
        raise StoreFailureError(f"Persistence write failed: {e.__class__.__name__}") from e


async def _commit(db: AsyncSession) -> None:
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"RBAC store commit failed: {e}")
        raise StoreFailureError(f"Persistence write failed: {e.__class__.__name__}") from e
