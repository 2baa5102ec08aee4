"""
Alias (GOAT) catalog and market data tables.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    ForeignKey,
    Integer,
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


class AliasProduct(TimestampMixin, Base):
    """Alias catalog item."""

    __tablename__ = "inventory_v4_alias_products"

    alias_catalog_id: Mapped[str] = mapped_column(Text, primary_key=True)
    brand: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    nickname: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sku: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        index=True,
        comment="SKU as reported by Alias (may contain a space instead of a dash)",
    )
    colorway: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    gender: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    product_category: Mapped[str] = mapped_column(Text, nullable=False)
    product_type: Mapped[str] = mapped_column(Text, nullable=False)
    release_date: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    retail_price_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    size_unit: Mapped[str] = mapped_column(Text, nullable=False)
    allowed_sizes: Mapped[List[Any]] = mapped_column(
        JSONB, nullable=False, default=list, server_default=text("'[]'::jsonb")
    )
    minimum_listing_price_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    maximum_listing_price_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    main_picture_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    requested_pictures: Mapped[Optional[List[Any]]] = mapped_column(
        JSONB, nullable=True, default=list
    )
    requires_listing_pictures: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    resellable: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )


class AliasVariant(TimestampMixin, Base):
    """A size of an Alias product, per region and consignment state."""

    __tablename__ = "inventory_v4_alias_variants"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    alias_catalog_id: Mapped[str] = mapped_column(
        Text,
        ForeignKey("inventory_v4_alias_products.alias_catalog_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    size_value: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    size_display: Mapped[str] = mapped_column(Text, nullable=False)
    size_unit: Mapped[str] = mapped_column(Text, nullable=False)
    consigned: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    region_id: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="1",
        server_default="1",
        comment="1 = US, 2 = EU, 3 = UK",
    )

    __table_args__ = (
        UniqueConstraint(
            "alias_catalog_id",
            "size_value",
            "consigned",
            "region_id",
            name="alias_variants_unique",
        ),
    )


class AliasMarketData(Base):
    """Latest market data per Alias variant (prices in USD major units)."""

    __tablename__ = "inventory_v4_alias_market_data"

    alias_variant_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("inventory_v4_alias_variants.id", ondelete="CASCADE"),
        primary_key=True,
    )
    lowest_ask: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    highest_bid: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    last_sale_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    global_indicator_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    currency_code: Mapped[str] = mapped_column(
        Text, nullable=False, default="USD", server_default="USD"
    )
    sales_last_72h: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    sales_last_30d: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("now() + interval '24 hours'"),
        nullable=False,
    )


class AliasPriceHistory(Base):
    """Price snapshot appended on every Alias market data refresh."""

    __tablename__ = "inventory_v4_alias_price_history"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    alias_variant_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("inventory_v4_alias_variants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    currency_code: Mapped[str] = mapped_column(Text, nullable=False, default="USD")
    lowest_ask: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    highest_bid: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    last_sale_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    global_indicator_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False, index=True
    )


class AliasSalesHistory(Base):
    """Individual completed sales captured from recent_sales."""

    __tablename__ = "inventory_v4_alias_sales_history"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    alias_catalog_id: Mapped[str] = mapped_column(
        Text,
        ForeignKey("inventory_v4_alias_products.alias_catalog_id", ondelete="CASCADE"),
        nullable=False,
    )
    size_value: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    purchased_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    consigned: Mapped[bool] = mapped_column(Boolean, nullable=False)
    region_id: Mapped[str] = mapped_column(Text, nullable=False, default="1")
    currency_code: Mapped[str] = mapped_column(Text, nullable=False, default="USD")
    recorded_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False, index=True
    )

    __table_args__ = (
        UniqueConstraint(
            "alias_catalog_id",
            "size_value",
            "price",
            "purchased_at",
            name="uq_alias_sales_history_natural",
        ),
    )
