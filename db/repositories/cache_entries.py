"""Cache entry repository: keyed reads, upserts and deletes."""
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import func

from db.models import CacheEntry

logger = logging.getLogger(__name__)


async def get_value(session: AsyncSession, key: str) -> Optional[Any]:
    """Return the stored value for key, or None if missing or expired."""
    now = datetime.now(timezone.utc)
    result = await session.execute(
        select(CacheEntry.value)
        .where(CacheEntry.key == key)
        .where((CacheEntry.expires_at.is_(None)) | (CacheEntry.expires_at > now))
    )
    return result.scalar_one_or_none()


async def upsert(
    session: AsyncSession,
    key: str,
    value: Any,
    expires_at: Optional[datetime] = None,
) -> CacheEntry:
    """Insert or overwrite the entry for key (last write wins)."""
    stmt = (
        pg_insert(CacheEntry)
        .values(key=key, value=value, expires_at=expires_at)
        .on_conflict_do_update(
            index_elements=["key"],
            set_={"value": value, "expires_at": expires_at, "updated_at": func.now()},
        )
        .returning(CacheEntry)
    )
    result = await session.execute(stmt, execution_options={"populate_existing": True})
    await session.flush()
    return result.scalar_one()


async def delete_key(session: AsyncSession, key: str) -> int:
    """Delete the entry for key. Returns the number of rows removed."""
    result = await session.execute(delete(CacheEntry).where(CacheEntry.key == key))
    await session.flush()
    return result.rowcount or 0

