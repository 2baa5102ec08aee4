"""
StockX catalog and market data tables.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    ForeignKey,
    Numeric,
    Text,
    TIMESTAMP,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from market_sync.models.base import Base, TimestampMixin


class StockxProduct(TimestampMixin, Base):
    """StockX product (global catalog, shared by all styles)."""

    __tablename__ = "inventory_v4_stockx_products"

    stockx_product_id: Mapped[str] = mapped_column(Text, primary_key=True)
    brand: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    style_id: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        index=True,
        comment="SKU as reported by StockX",
    )
    product_type: Mapped[str] = mapped_column(Text, nullable=False)
    url_key: Mapped[str] = mapped_column(Text, nullable=False)
    colorway: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    gender: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    release_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    retail_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    is_flex_eligible: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    is_direct_eligible: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )


class StockxVariant(TimestampMixin, Base):
    """A size of a StockX product."""

    __tablename__ = "inventory_v4_stockx_variants"

    stockx_variant_id: Mapped[str] = mapped_column(Text, primary_key=True)
    stockx_product_id: Mapped[str] = mapped_column(
        Text,
        ForeignKey("inventory_v4_stockx_products.stockx_product_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    variant_name: Mapped[str] = mapped_column(Text, nullable=False)
    variant_value: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Size value, e.g. '10.5'",
    )
    size_chart: Mapped[Dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    gtins: Mapped[List[Any]] = mapped_column(
        JSONB, nullable=False, default=list, server_default=text("'[]'::jsonb")
    )
    is_flex_eligible: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    is_direct_eligible: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )


class StockxMarketData(Base):
    """Latest market data per variant and currency (24h TTL)."""

    __tablename__ = "inventory_v4_stockx_market_data"

    stockx_variant_id: Mapped[str] = mapped_column(
        Text,
        ForeignKey("inventory_v4_stockx_variants.stockx_variant_id", ondelete="CASCADE"),
        primary_key=True,
    )
    currency_code: Mapped[str] = mapped_column(Text, primary_key=True, default="GBP")
    highest_bid: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    lowest_ask: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    flex_lowest_ask: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    earn_more: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    sell_faster: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    standard_market_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    flex_market_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    direct_market_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("now() + interval '24 hours'"),
        nullable=False,
    )


class StockxPriceHistory(Base):
    """Daily price snapshot per variant and currency."""

    __tablename__ = "inventory_v4_stockx_price_history"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    stockx_variant_id: Mapped[str] = mapped_column(
        Text,
        ForeignKey("inventory_v4_stockx_variants.stockx_variant_id", ondelete="CASCADE"),
        nullable=False,
    )
    currency_code: Mapped[str] = mapped_column(Text, nullable=False, default="GBP")
    highest_bid: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    lowest_ask: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False, index=True
    )

    __table_args__ = (
        UniqueConstraint(
            "stockx_variant_id",
            "currency_code",
            "snapshot_date",
            name="uq_stockx_price_history_daily",
        ),
    )
