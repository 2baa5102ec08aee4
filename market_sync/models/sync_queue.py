"""
Sync queue table: one job per (style_id, provider).
"""
import enum
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Text,
    TIMESTAMP,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from market_sync.models.base import Base
from market_sync.models.catalog import StyleCatalog


class SyncProvider(str, enum.Enum):
    """Marketplaces a style can be synced from."""
    STOCKX = "stockx"
    ALIAS = "alias"

    def __str__(self):
        return self.value


class SyncJobStatus(str, enum.Enum):
    """Lifecycle of a sync job."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self):
        return self.value


class SyncJob(Base):
    """A queued market-data sync for one style on one provider."""

    __tablename__ = "inventory_v4_sync_queue"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    style_id: Mapped[str] = mapped_column(
        Text,
        ForeignKey(StyleCatalog.style_id, ondelete="CASCADE"),
        nullable=False,
        comment="Style id (SKU) to sync",
    )
    provider: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="stockx | alias",
    )
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=SyncJobStatus.PENDING.value,
        server_default=SyncJobStatus.PENDING.value,
        comment="pending | processing | completed | failed",
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
        comment="Number of times the job has been claimed",
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=3,
        server_default=text("3"),
    )
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
    )
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
        comment="Job is not claimable before this time",
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint("style_id", "provider", name="uq_sync_queue_style_provider"),
        CheckConstraint("provider IN ('stockx', 'alias')", name="ck_sync_queue_provider"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_sync_queue_status",
        ),
        Index(
            "idx_sync_queue_pending",
            "provider",
            "created_at",
            postgresql_where=text("status = 'pending'"),
        ),
        Index(
            "idx_sync_queue_processing",
            "last_attempt_at",
            postgresql_where=text("status = 'processing'"),
        ),
        Index("idx_sync_queue_style", "style_id"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "style_id": self.style_id,
            "provider": self.provider,
            "status": self.status,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self) -> str:
        return f"<SyncJob {self.id} {self.style_id}/{self.provider} {self.status}>"
