"""SQLAlchemy 2.0 ORM models for the Close.io sync cache.

Covers 1 table in the sync schema:
  - sync.cache_entries: identity links (platform id -> Close.io id),
    cached reference data and the incoming poll watermark
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    pass


class CacheEntry(Base):
    """sync.cache_entries: key/value store backing DatabaseCache."""

    __tablename__ = "cache_entries"
    __table_args__ = ({"schema": "sync"},)

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
