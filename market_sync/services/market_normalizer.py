"""
Normalization of provider payloads into master_market_data rows.

StockX reports prices as strings in major units ("27" is 27.00). Alias
reports prices as strings in cents ("14500" is 145.00) and uses "0" for
"no price". Both end up as Decimal major units here.
"""
import logging
import re
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from market_sync.core.prometheus_metrics import market_rows_written_total
from market_sync.models.market import MasterMarketData

logger = logging.getLogger(__name__)

STOCKX_SOURCE = "stockx_market_data"
ALIAS_SOURCE = "alias_availabilities"
ALIAS_CONSIGNED_SOURCE = "alias_availabilities_consigned"

ALIAS_CURRENCY = "USD"
ALIAS_NEW_CONDITION = "PRODUCT_CONDITION_NEW"
ALIAS_GOOD_PACKAGING = "PACKAGING_CONDITION_GOOD_CONDITION"

_ALIAS_REGIONS = {
    "1": "US",
    "2": "EU",
    "3": "UK",
}

_CENT = Decimal("0.01")

DEDUP_KEY_FIELDS = (
    "provider",
    "provider_source",
    "provider_product_id",
    "provider_variant_id",
    "size_key",
    "currency_code",
    "region_code",
)


def parse_major_price(value: Any) -> Optional[Decimal]:
    """Parse a StockX price string in major units. Empty or unparsable values are None."""
    if value is None or value == "":
        return None
    try:
        price = Decimal(str(value))
    except InvalidOperation:
        return None
    if not price.is_finite():
        return None
    return price.quantize(_CENT, rounding=ROUND_HALF_UP)


def parse_cents_price(value: Any) -> Optional[Decimal]:
    """Parse an Alias cents string into major units. "0", empty and garbage are None."""
    if value is None or value == "" or str(value) == "0":
        return None
    try:
        cents = Decimal(str(value))
    except InvalidOperation:
        return None
    if not cents.is_finite() or cents == 0:
        return None
    return (cents / 100).quantize(_CENT, rounding=ROUND_HALF_UP)


def parse_cents_int(value: Any) -> Optional[int]:
    """Parse an Alias cents string as an integer (retail/listing limits)."""
    if value is None or value == "" or str(value) == "0":
        return None
    try:
        return int(str(value))
    except ValueError:
        return None


def parse_size_numeric(size: Any) -> Optional[Decimal]:
    """
    Extract the numeric part of a size label.

    "10.5" -> 10.5, "W 8" -> 8, "XL" -> None.
    """
    if size is None:
        return None
    if isinstance(size, (int, float, Decimal)):
        return Decimal(str(size))
    cleaned = re.sub(r"[^0-9.]", "", str(size))
    if not cleaned:
        return None
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def size_match_key(size: Any) -> Optional[Decimal]:
    """Size value normalized for set membership (10 == 10.0 == "10")."""
    value = parse_size_numeric(size)
    if value is None:
        return None
    return value.quantize(_CENT)


def alias_region(region_id: Optional[str]) -> Tuple[str, str]:
    """Map an Alias region id to (currency_code, region_code). Alias prices are always USD."""
    return ALIAS_CURRENCY, _ALIAS_REGIONS.get(str(region_id) if region_id else "", "global")


def compute_spread(
    lowest_ask: Optional[Decimal],
    highest_bid: Optional[Decimal],
) -> Tuple[Optional[Decimal], Optional[Decimal]]:
    """Absolute spread and spread as a percentage of the ask."""
    if lowest_ask is None or highest_bid is None:
        return None, None
    absolute = lowest_ask - highest_bid
    if lowest_ask <= 0:
        return absolute, None
    percentage = (absolute / lowest_ask * 100).quantize(Decimal("0.001"), rounding=ROUND_HALF_UP)
    return absolute, percentage


def is_standard_alias_variant(variant: Dict[str, Any]) -> bool:
    """NEW product in GOOD packaging, the only condition synced."""
    return (
        variant.get("product_condition") == ALIAS_NEW_CONDITION
        and variant.get("packaging_condition") == ALIAS_GOOD_PACKAGING
    )


def has_actionable_prices(availability: Optional[Dict[str, Any]]) -> bool:
    """At least one of ask, bid or last sale is a nonzero price."""
    if not availability:
        return False
    return any(
        parse_cents_price(availability.get(field)) is not None
        for field in (
            "lowest_listing_price_cents",
            "highest_offer_price_cents",
            "last_sold_listing_price_cents",
        )
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def stockx_master_row(
    market_data: Dict[str, Any],
    product_id: str,
    sku: Optional[str],
    size_key: str,
    snapshot_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Build a master_market_data row from a StockX market-data response."""
    lowest_ask = parse_major_price(market_data.get("lowestAskAmount"))
    highest_bid = parse_major_price(market_data.get("highestBidAmount"))
    spread_absolute, spread_percentage = compute_spread(lowest_ask, highest_bid)

    return {
        "provider": "stockx",
        "provider_source": STOCKX_SOURCE,
        "provider_product_id": product_id,
        "provider_variant_id": market_data.get("variantId"),
        "sku": sku,
        "size_key": size_key or "Unknown",
        "size_numeric": parse_size_numeric(size_key),
        "size_system": "US",
        "currency_code": market_data.get("currencyCode") or "GBP",
        "region_code": None,
        "lowest_ask": lowest_ask,
        "highest_bid": highest_bid,
        "last_sale_price": None,
        "global_indicator_price": None,
        "spread_absolute": spread_absolute,
        "spread_percentage": spread_percentage,
        "ask_count": None,
        "bid_count": None,
        "sales_last_72h": None,
        "sales_last_30d": None,
        "is_flex": False,
        "is_consigned": False,
        "snapshot_at": snapshot_at or _utcnow(),
        "raw_response_excerpt": {
            "lowestAskAmount": market_data.get("lowestAskAmount"),
            "highestBidAmount": market_data.get("highestBidAmount"),
            "flexLowestAskAmount": market_data.get("flexLowestAskAmount"),
            "sellFasterAmount": market_data.get("sellFasterAmount"),
            "earnMoreAmount": market_data.get("earnMoreAmount"),
        },
    }


def alias_master_rows(
    variants: Iterable[Dict[str, Any]],
    catalog_id: str,
    region_id: str,
    sku: Optional[str],
    allowed_sizes: Optional[set] = None,
    consigned: bool = False,
    snapshot_at: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """
    Build master_market_data rows from an Alias availabilities response.

    Only standard-condition variants with availability data are kept; when
    `allowed_sizes` is given, sizes outside it are dropped.
    """
    currency_code, region_code = alias_region(region_id)
    snapshot_at = snapshot_at or _utcnow()
    source = ALIAS_CONSIGNED_SOURCE if consigned else ALIAS_SOURCE
    rows = []

    for variant in variants:
        if not is_standard_alias_variant(variant):
            continue
        if bool(variant.get("consigned", False)) != consigned:
            continue
        availability = variant.get("availability")
        if not availability:
            continue
        if allowed_sizes is not None and size_match_key(variant.get("size")) not in allowed_sizes:
            continue

        lowest_ask = parse_cents_price(availability.get("lowest_listing_price_cents"))
        highest_bid = parse_cents_price(availability.get("highest_offer_price_cents"))
        spread_absolute, spread_percentage = compute_spread(lowest_ask, highest_bid)
        size_key = str(variant.get("size"))

        rows.append({
            "provider": "alias",
            "provider_source": source,
            "provider_product_id": catalog_id,
            "provider_variant_id": None,
            "sku": sku,
            "size_key": size_key,
            "size_numeric": parse_size_numeric(size_key),
            "size_system": (variant.get("size_unit") or "US").replace("SIZE_UNIT_", ""),
            "currency_code": currency_code,
            "region_code": region_code,
            "lowest_ask": lowest_ask,
            "highest_bid": highest_bid,
            "last_sale_price": parse_cents_price(availability.get("last_sold_listing_price_cents")),
            "global_indicator_price": parse_cents_price(availability.get("global_indicator_price_cents")),
            "spread_absolute": spread_absolute,
            "spread_percentage": spread_percentage,
            "ask_count": availability.get("number_of_listings"),
            "bid_count": availability.get("number_of_offers"),
            "sales_last_72h": None,
            "sales_last_30d": None,
            "is_flex": False,
            "is_consigned": consigned,
            "snapshot_at": snapshot_at,
            "raw_response_excerpt": {
                "size": variant.get("size"),
                "size_unit": variant.get("size_unit"),
                "consigned": variant.get("consigned"),
                "lowest_listing_price_cents": availability.get("lowest_listing_price_cents"),
                "highest_offer_price_cents": availability.get("highest_offer_price_cents"),
                "last_sold_listing_price_cents": availability.get("last_sold_listing_price_cents"),
                "global_indicator_price_cents": availability.get("global_indicator_price_cents"),
            },
        })

    return rows


def dedupe_master_rows(rows: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Keep the first row per natural key (snapshot time excluded)."""
    unique: Dict[tuple, Dict[str, Any]] = {}
    for row in rows:
        key = tuple(row.get(field) for field in DEDUP_KEY_FIELDS)
        unique.setdefault(key, row)
    return list(unique.values())


async def upsert_master_rows(session: AsyncSession, rows: List[Dict[str, Any]]) -> int:
    """
    Upsert normalized rows into master_market_data.

    Returns:
        Number of rows written
    """
    rows = dedupe_master_rows(rows)
    if not rows:
        return 0

    stmt = insert(MasterMarketData).values(rows)
    update_columns = {
        column: stmt.excluded[column]
        for column in (
            "sku",
            "size_numeric",
            "size_system",
            "lowest_ask",
            "highest_bid",
            "last_sale_price",
            "global_indicator_price",
            "spread_absolute",
            "spread_percentage",
            "ask_count",
            "bid_count",
            "is_flex",
            "is_consigned",
            "raw_response_excerpt",
        )
    }
    stmt = stmt.on_conflict_do_update(
        constraint="uq_master_market_data_snapshot",
        set_=update_columns,
    )
    await session.execute(stmt)

    provider = rows[0]["provider"]
    market_rows_written_total.labels(provider=provider, table="master_market_data").inc(len(rows))
    logger.debug(f"Upserted {len(rows)} master_market_data rows for {provider}")
    return len(rows)
