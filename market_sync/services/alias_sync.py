"""
Alias sync: catalog item, per-region variants, market data and sales history.

Alias availabilities are fetched for every configured region, once for
non-consigned and once for consigned listings. Only NEW product in GOOD
packaging is kept, and only sizes the catalog lists in `allowed_sizes`.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import func, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from market_sync.core.config import get_settings
from market_sync.core.exceptions import MarketSyncError
from market_sync.core.prometheus_metrics import market_rows_written_total
from market_sync.models.alias import (
    AliasMarketData,
    AliasPriceHistory,
    AliasProduct,
    AliasSalesHistory,
    AliasVariant,
)
from market_sync.models.catalog import StyleCatalog
from market_sync.services.alias_client import AliasClient
from market_sync.services.market_normalizer import (
    ALIAS_CURRENCY,
    alias_master_rows,
    has_actionable_prices,
    is_standard_alias_variant,
    parse_cents_int,
    parse_cents_price,
    size_match_key,
    upsert_master_rows,
)
from market_sync.services.sync_result import SyncResult, min_required

settings = get_settings()
logger = logging.getLogger(__name__)

VariantKey = Tuple[Decimal, bool, str]


@asynccontextmanager
async def _client_scope(client: Optional[AliasClient]) -> AsyncIterator[AliasClient]:
    if client is not None:
        yield client
        return
    async with AliasClient() as owned:
        yield owned


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def variant_key(size: Any, consigned: bool, region_id: str) -> Optional[VariantKey]:
    """Key matching an API variant to its stored row: size, consigned, region."""
    size_value = size_match_key(size)
    if size_value is None:
        return None
    return size_value, bool(consigned), str(region_id)


def style_id_from_alias_sku(sku: Optional[str]) -> Optional[str]:
    """Alias reports some SKUs with a space where the catalog has a dash."""
    if not sku:
        return None
    return sku.strip().upper().replace(" ", "-")


def allowed_size_set(allowed_sizes: Optional[Iterable[Any]]) -> Set[Decimal]:
    sizes = set()
    for entry in allowed_sizes or []:
        value = entry.get("value") if isinstance(entry, dict) else entry
        key = size_match_key(value)
        if key is not None:
            sizes.add(key)
    return sizes


def product_row_from_catalog(response: Dict[str, Any]) -> Dict[str, Any]:
    """Map a catalog response onto inventory_v4_alias_products."""
    item = response["catalog_item"]
    return {
        "alias_catalog_id": item["catalog_id"],
        "brand": item.get("brand") or "",
        "name": item.get("name") or "",
        "nickname": item.get("nickname") or None,
        "sku": item.get("sku") or "",
        "colorway": item.get("colorway") or None,
        "gender": item.get("gender") or None,
        "product_category": item.get("product_category") or "",
        "product_type": item.get("product_type") or "",
        "release_date": _parse_timestamp(item.get("release_date")),
        "retail_price_cents": parse_cents_int(item.get("retail_price_cents")),
        "size_unit": item.get("size_unit") or "US",
        "allowed_sizes": item.get("allowed_sizes") or [],
        "minimum_listing_price_cents": parse_cents_int(item.get("minimum_listing_price_cents")),
        "maximum_listing_price_cents": parse_cents_int(item.get("maximum_listing_price_cents")),
        "main_picture_url": item.get("main_picture_url") or None,
        "requested_pictures": item.get("requested_pictures") or [],
        "requires_listing_pictures": bool(item.get("requires_listing_pictures", False)),
        "resellable": item.get("resellable") is not False,
    }


def variant_rows_from_availabilities(
    catalog_id: str,
    region_id: str,
    size_unit: str,
    variants: Iterable[Dict[str, Any]],
    allowed_sizes: Set[Decimal],
) -> List[Dict[str, Any]]:
    """Standard-condition variants whose size is allowed, as variant rows."""
    rows = []
    dropped = []
    for variant in variants:
        if not is_standard_alias_variant(variant):
            continue
        size_value = size_match_key(variant.get("size"))
        if size_value is None or size_value not in allowed_sizes:
            dropped.append(str(variant.get("size")))
            continue
        rows.append({
            "alias_catalog_id": catalog_id,
            "size_value": size_value,
            "size_display": str(variant.get("size")),
            "size_unit": size_unit,
            "consigned": bool(variant.get("consigned", False)),
            "region_id": str(region_id),
        })

    if dropped:
        logger.debug(
            f"Alias region {region_id}: dropped {len(dropped)} sizes not in allowed_sizes: "
            f"{', '.join(dropped[:10])}"
        )
    return rows


def market_data_values(availability: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "lowest_ask": parse_cents_price(availability.get("lowest_listing_price_cents")),
        "highest_bid": parse_cents_price(availability.get("highest_offer_price_cents")),
        "last_sale_price": parse_cents_price(availability.get("last_sold_listing_price_cents")),
        "global_indicator_price": parse_cents_price(availability.get("global_indicator_price_cents")),
        "currency_code": ALIAS_CURRENCY,
    }


def calculate_sales_volume(
    sales: Iterable[Dict[str, Any]],
    consigned: Optional[bool] = None,
    now: Optional[datetime] = None,
) -> Tuple[int, int]:
    """Count sales in the last 72 hours and 30 days, optionally for one consignment state."""
    now = now or datetime.now(timezone.utc)
    sales_72h = 0
    sales_30d = 0
    for sale in sales:
        if consigned is not None and bool(sale.get("consigned", False)) != consigned:
            continue
        purchased_at = _parse_timestamp(sale.get("purchased_at"))
        if purchased_at is None:
            continue
        age = now - purchased_at
        if age <= timedelta(hours=72):
            sales_72h += 1
            sales_30d += 1
        elif age <= timedelta(days=30):
            sales_30d += 1
    return sales_72h, sales_30d


def sales_history_rows(catalog_id: str, region_id: str, sales: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    rows = []
    for sale in sales:
        size_value = size_match_key(sale.get("size"))
        purchased_at = _parse_timestamp(sale.get("purchased_at"))
        if size_value is None or purchased_at is None:
            continue
        rows.append({
            "alias_catalog_id": catalog_id,
            "size_value": size_value,
            "price": parse_cents_price(sale.get("price_cents")) or Decimal("0"),
            "purchased_at": purchased_at,
            "consigned": bool(sale.get("consigned", False)),
            "region_id": str(region_id),
            "currency_code": ALIAS_CURRENCY,
        })
    return rows


async def _upsert_product(session: AsyncSession, row: Dict[str, Any]) -> None:
    stmt = insert(AliasProduct).values(**row)
    stmt = stmt.on_conflict_do_update(
        index_elements=[AliasProduct.alias_catalog_id],
        set_={**{k: stmt.excluded[k] for k in row if k != "alias_catalog_id"}, "updated_at": func.now()},
    )
    await session.execute(stmt)


async def _upsert_variants(session: AsyncSession, rows: List[Dict[str, Any]]) -> Dict[VariantKey, int]:
    """Upsert variants and return their ids keyed by (size, consigned, region)."""
    unique: Dict[VariantKey, Dict[str, Any]] = {}
    for row in rows:
        unique.setdefault((row["size_value"], row["consigned"], row["region_id"]), row)

    stmt = insert(AliasVariant).values(list(unique.values()))
    stmt = stmt.on_conflict_do_update(
        constraint="alias_variants_unique",
        set_={
            "size_display": stmt.excluded.size_display,
            "size_unit": stmt.excluded.size_unit,
            "updated_at": func.now(),
        },
    ).returning(AliasVariant.id, AliasVariant.size_value, AliasVariant.consigned, AliasVariant.region_id)

    result = await session.execute(stmt)
    return {
        variant_key(size_value, consigned, region_id): variant_id
        for variant_id, size_value, consigned, region_id in result.all()
    }


async def _store_market_data(session: AsyncSession, variant_id: int, values: Dict[str, Any]) -> None:
    """Upsert latest market data and append a price-history snapshot."""
    expires_at = func.now() + timedelta(hours=settings.MARKET_DATA_TTL_HOURS)
    stmt = insert(AliasMarketData).values(
        alias_variant_id=variant_id, **values, updated_at=func.now(), expires_at=expires_at
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[AliasMarketData.alias_variant_id],
        set_={**{k: stmt.excluded[k] for k in values}, "updated_at": func.now(), "expires_at": expires_at},
    )
    await session.execute(stmt)
    await session.execute(insert(AliasPriceHistory).values(alias_variant_id=variant_id, **values))
    market_rows_written_total.labels(provider="alias", table="alias_market_data").inc()


async def _insert_sales_history(session: AsyncSession, rows: List[Dict[str, Any]]) -> int:
    if not rows:
        return 0
    stmt = (
        insert(AliasSalesHistory)
        .values(rows)
        .on_conflict_do_nothing(constraint="uq_alias_sales_history_natural")
        .returning(AliasSalesHistory.id)
    )
    result = await session.execute(stmt)
    inserted = len(result.scalars().all())
    market_rows_written_total.labels(provider="alias", table="alias_sales_history").inc(inserted)
    return inserted


async def link_style_catalog(
    session: AsyncSession,
    style_id: str,
    catalog_id: str,
    product_row: Dict[str, Any],
) -> bool:
    """Set alias_catalog_id on the style and fill in missing image, brand and name."""
    style = await session.get(StyleCatalog, style_id)
    if style is None:
        logger.info(f"SKU {style_id} not in style catalog, skipping Alias link")
        return False

    style.alias_catalog_id = catalog_id
    if not style.primary_image_url and product_row.get("main_picture_url"):
        style.primary_image_url = product_row["main_picture_url"]
    if not style.brand and product_row.get("brand"):
        style.brand = product_row["brand"]
    if not style.name and product_row.get("name"):
        style.name = product_row["name"]

    await session.flush()
    logger.info(f"Linked style {style_id} to Alias catalog {catalog_id}")
    return True


async def _sync_sales(
    session: AsyncSession,
    alias: AliasClient,
    catalog_id: str,
    variant_rows: List[Dict[str, Any]],
    variant_ids: Dict[VariantKey, int],
    result: SyncResult,
) -> None:
    """Fetch recent sales per size and region; store them and the 72h/30d volumes."""
    pairs = sorted({(row["size_display"], row["region_id"]) for row in variant_rows})
    for size, region_id in pairs:
        try:
            sales = await alias.get_recent_sales(catalog_id, size, region_id)
        except MarketSyncError as e:
            result.add_error("sales_history", e.detail, size=size, region=region_id)
            continue
        await asyncio.sleep(alias.pacing_delay)
        if not sales:
            continue

        result.sales_records_inserted += await _insert_sales_history(
            session, sales_history_rows(catalog_id, region_id, sales)
        )

        for consigned in (False, True):
            variant_id = variant_ids.get(variant_key(size, consigned, region_id))
            if variant_id is None:
                continue
            sales_72h, sales_30d = calculate_sales_volume(sales, consigned=consigned)
            await session.execute(
                update(AliasMarketData)
                .where(AliasMarketData.alias_variant_id == variant_id)
                .values(sales_last_72h=sales_72h, sales_last_30d=sales_30d, updated_at=func.now())
            )


async def sync_alias_product(
    session: AsyncSession,
    catalog_id: str,
    style_id: Optional[str] = None,
    regions: Optional[List[str]] = None,
    fetch_sales: Optional[bool] = None,
    client: Optional[AliasClient] = None,
) -> SyncResult:
    """
    Sync one Alias catalog item across regions.

    Args:
        session: Database session (caller commits)
        catalog_id: Alias catalog id
        style_id: Style to link; defaults to the SKU Alias reports
        regions: Region ids in priority order (defaults to ALIAS_REGIONS)
        fetch_sales: Fetch recent sales (defaults to ALIAS_RECENT_SALES_ENABLED)
        client: Optional client to reuse

    Returns:
        SyncResult; success when market data was stored for enough variants
    """
    regions = regions or settings.alias_regions
    if fetch_sales is None:
        fetch_sales = settings.ALIAS_RECENT_SALES_ENABLED

    result = SyncResult(provider="alias", product_id=catalog_id)
    stage = "catalog_fetch"

    async with _client_scope(client) as alias:
        try:
            product_row = product_row_from_catalog(await alias.get_catalog(catalog_id))
            await _upsert_product(session, product_row)

            link_to = style_id or style_id_from_alias_sku(product_row["sku"])
            if link_to:
                await link_style_catalog(session, link_to, catalog_id, product_row)
            await asyncio.sleep(alias.pacing_delay)

            stage = "availabilities"
            allowed_sizes = allowed_size_set(product_row["allowed_sizes"])
            payloads: List[Tuple[str, bool, List[Dict[str, Any]]]] = []
            for region_id in regions:
                try:
                    non_consigned, consigned = await asyncio.gather(
                        alias.get_availabilities(catalog_id, region_id, consigned=False),
                        alias.get_availabilities(catalog_id, region_id, consigned=True),
                    )
                except MarketSyncError as e:
                    result.add_error("availabilities", e.detail, region=region_id)
                    continue
                payloads.append((region_id, False, non_consigned))
                payloads.append((region_id, True, consigned))
                await asyncio.sleep(alias.pacing_delay)

            stage = "variants"
            variant_rows = []
            for region_id, _, variants in payloads:
                variant_rows.extend(
                    variant_rows_from_availabilities(
                        catalog_id, region_id, product_row["size_unit"], variants, allowed_sizes
                    )
                )
            if not variant_rows:
                result.add_error("variants", "No variants found across all regions")
                return result

            variant_ids = await _upsert_variants(session, variant_rows)
            result.variants_synced = len(variant_ids)

            stage = "market_data"
            sku = style_id or style_id_from_alias_sku(product_row["sku"])
            master_rows = []
            stored: Set[int] = set()
            for region_id, consigned, variants in payloads:
                for variant in variants:
                    if not is_standard_alias_variant(variant):
                        continue
                    if size_match_key(variant.get("size")) not in allowed_sizes:
                        continue
                    availability = variant.get("availability")
                    if not has_actionable_prices(availability):
                        continue
                    variant_id = variant_ids.get(
                        variant_key(variant.get("size"), variant.get("consigned", False), region_id)
                    )
                    if variant_id is None or variant_id in stored:
                        continue

                    await _store_market_data(session, variant_id, market_data_values(availability))
                    stored.add(variant_id)
                    result.market_data_refreshed += 1
                    result.price_snapshots_inserted += 1

                master_rows.extend(
                    alias_master_rows(
                        variants, catalog_id, region_id, sku,
                        allowed_sizes=allowed_sizes, consigned=consigned,
                    )
                )

            result.master_rows_written = await upsert_master_rows(session, master_rows)

            if fetch_sales:
                stage = "sales_history"
                await _sync_sales(session, alias, catalog_id, variant_rows, variant_ids, result)

            result.success = result.market_data_refreshed >= min_required(result.variants_synced)
        except MarketSyncError as e:
            result.add_error(stage, e.detail)

    logger.info(
        f"Alias sync {catalog_id}: {result.market_data_refreshed}/{result.variants_synced} "
        f"variants with market data, {len(result.errors)} errors"
    )
    return result
