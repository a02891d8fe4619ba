"""
Database models.
SQLAlchemy 2.0+ declarative mapping.
"""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from marketsync.utils import utc_now


class Base(AsyncAttrs, DeclarativeBase):
    """Base class of all models."""

    pass


class EnrichmentCacheDB(Base):
    """Last enrichment result per (account, resource type, resource id)."""

    __tablename__ = "enrichment_cache"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(20), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    is_listing: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    record_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    partial: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    stored_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    ttl_seconds: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "account_id", "resource_type", "resource_id", name="uq_enrichment_key"
        ),
        Index("idx_enrichment_account_stored", "account_id", "stored_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<EnrichmentCache(account={self.account_id}, "
            f"{self.resource_type}={self.resource_id}, stored_at={self.stored_at})>"
        )


class SyncWatermarkDB(Base):
    """Outcome of the last background synchronization pass per account and type."""

    __tablename__ = "sync_watermarks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(20), nullable=False)
    last_synced_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    record_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("account_id", "resource_type", name="uq_watermark_account_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<SyncWatermark(account={self.account_id}, type={self.resource_type}, "
            f"count={self.record_count})>"
        )
