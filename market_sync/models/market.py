"""
Provider-agnostic market snapshots used for cross-marketplace comparison.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Index,
    Integer,
    Numeric,
    Text,
    TIMESTAMP,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from market_sync.models.base import Base


class MasterMarketData(Base):
    """
    One normalized price snapshot for a provider, product, size, currency and region.

    Prices are stored in major units of `currency_code`.
    """

    __tablename__ = "master_market_data"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    provider: Mapped[str] = mapped_column(Text, nullable=False)
    provider_source: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="stockx_market_data | alias_availabilities | alias_availabilities_consigned",
    )
    provider_product_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    provider_variant_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    sku: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    size_key: Mapped[str] = mapped_column(Text, nullable=False)
    size_numeric: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 2), nullable=True)
    size_system: Mapped[Optional[str]] = mapped_column(Text, nullable=True, default="US")

    currency_code: Mapped[str] = mapped_column(Text, nullable=False)
    region_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    lowest_ask: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4), nullable=True)
    highest_bid: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4), nullable=True)
    last_sale_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4), nullable=True)
    global_indicator_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4), nullable=True)
    spread_absolute: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4), nullable=True)
    spread_percentage: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 3), nullable=True)

    ask_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    bid_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    sales_last_72h: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    sales_last_30d: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    is_flex: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    is_consigned: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )

    snapshot_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    ingested_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
    raw_response_excerpt: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONB, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "provider IN ('stockx', 'alias')",
            name="ck_master_market_data_provider",
        ),
        UniqueConstraint(
            "provider",
            "provider_source",
            "provider_product_id",
            "provider_variant_id",
            "size_key",
            "currency_code",
            "region_code",
            "snapshot_at",
            name="uq_master_market_data_snapshot",
            postgresql_nulls_not_distinct=True,
        ),
        Index("idx_master_market_data_sku_latest", "sku", text("snapshot_at DESC")),
        Index("idx_master_market_data_provider_product", "provider", "provider_product_id"),
    )

    def to_dict(self) -> Dict[str, Any]:
        def _num(value):
            return float(value) if value is not None else None

        return {
            "provider": self.provider,
            "provider_source": self.provider_source,
            "provider_product_id": self.provider_product_id,
            "provider_variant_id": self.provider_variant_id,
            "sku": self.sku,
            "size_key": self.size_key,
            "size_numeric": _num(self.size_numeric),
            "size_system": self.size_system,
            "currency_code": self.currency_code,
            "region_code": self.region_code,
            "lowest_ask": _num(self.lowest_ask),
            "highest_bid": _num(self.highest_bid),
            "last_sale_price": _num(self.last_sale_price),
            "global_indicator_price": _num(self.global_indicator_price),
            "spread_absolute": _num(self.spread_absolute),
            "spread_percentage": _num(self.spread_percentage),
            "sales_last_72h": self.sales_last_72h,
            "sales_last_30d": self.sales_last_30d,
            "is_flex": self.is_flex,
            "is_consigned": self.is_consigned,
            "snapshot_at": self.snapshot_at.isoformat() if self.snapshot_at else None,
        }
