"""
Style catalog: one row per SKU, linking it to each marketplace's product id.
"""
from datetime import date
from typing import Optional

from sqlalchemy import Date, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from market_sync.models.base import Base, TimestampMixin


class StyleCatalog(TimestampMixin, Base):
    """Canonical product metadata keyed by style id (SKU)."""

    __tablename__ = "inventory_v4_style_catalog"

    style_id: Mapped[str] = mapped_column(
        Text,
        primary_key=True,
        comment="Normalized SKU (upper-case), e.g. DD1391-100",
    )
    brand: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    nickname: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    colorway: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    gender: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    product_category: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    release_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    retail_price_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    primary_image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    stockx_product_id: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        index=True,
        comment="StockX product UUID, set after the first successful StockX sync",
    )
    stockx_url_key: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="StockX product slug",
    )
    alias_catalog_id: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        index=True,
        comment="Alias catalog id; Alias jobs cannot run without it",
    )

    def is_mapped(self, provider: str) -> bool:
        """Whether the style carries an id for the given provider."""
        if provider == "stockx":
            return bool(self.stockx_url_key or self.stockx_product_id)
        if provider == "alias":
            return bool(self.alias_catalog_id)
        return False

    def __repr__(self) -> str:
        return f"<StyleCatalog {self.style_id}>"
