"""
StockX sync: catalog, variants and multi-currency market data.

Products and variants form a global catalog shared by every style. Market
data is refreshed per variant and currency with a 24h expiry, GBP also
appends one price-history row per variant per day, and every market-data
response is mirrored into master_market_data.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from market_sync.core.config import get_settings
from market_sync.core.exceptions import MarketSyncError
from market_sync.core.prometheus_metrics import market_rows_written_total
from market_sync.models.catalog import StyleCatalog
from market_sync.models.stockx import (
    StockxMarketData,
    StockxPriceHistory,
    StockxProduct,
    StockxVariant,
)
from market_sync.services.market_normalizer import (
    parse_major_price,
    stockx_master_row,
    upsert_master_rows,
)
from market_sync.services.stockx_client import StockxClient
from market_sync.services.sync_result import SyncResult, min_required

settings = get_settings()
logger = logging.getLogger(__name__)

PRIMARY_CURRENCY = "GBP"
STOCKX_IMAGE_URL = (
    "https://images.stockx.com/images/{url_key}.jpg"
    "?fit=fill&bg=FFFFFF&w=700&h=500&fm=webp&auto=compress&trim=color&q=90"
)


@asynccontextmanager
async def _client_scope(client: Optional[StockxClient]) -> AsyncIterator[StockxClient]:
    """Use the caller's client, or open (and close) a new one."""
    if client is not None:
        yield client
        return
    async with StockxClient() as owned:
        yield owned


def _parse_release_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def is_rate_limited_error(message: str) -> bool:
    return "429" in message or "rate limit" in message.lower()


def product_row_from_details(details: Dict[str, Any]) -> Dict[str, Any]:
    """Map a product details response onto inventory_v4_stockx_products."""
    attributes = details.get("productAttributes") or {}
    retail_price = attributes.get("retailPrice")
    return {
        "stockx_product_id": details["productId"],
        "brand": details.get("brand") or "",
        "title": details.get("title") or "",
        "style_id": details.get("styleId") or "",
        "product_type": details.get("productType") or "",
        "url_key": details.get("urlKey") or "",
        "colorway": attributes.get("colorway") or None,
        "gender": attributes.get("gender") or None,
        "release_date": _parse_release_date(attributes.get("releaseDate")),
        "retail_price": parse_major_price(retail_price) if retail_price else None,
        "is_flex_eligible": bool(details.get("isFlexEligible", False)),
        "is_direct_eligible": bool(details.get("isDirectEligible", False)),
    }


def variant_rows_from_response(product_id: str, variants: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "stockx_variant_id": variant["variantId"],
            "stockx_product_id": product_id,
            "variant_name": variant.get("variantName") or "",
            "variant_value": str(variant.get("variantValue") or ""),
            "size_chart": variant.get("sizeChart") or {},
            "gtins": variant.get("gtins") or [],
            "is_flex_eligible": bool(variant.get("isFlexEligible", False)),
            "is_direct_eligible": bool(variant.get("isDirectEligible", False)),
        }
        for variant in variants
        if variant.get("variantId")
    ]


def market_data_row(response: Dict[str, Any], variant_id: str, currency_code: str) -> Dict[str, Any]:
    """Map a market-data response onto inventory_v4_stockx_market_data."""
    return {
        "stockx_variant_id": variant_id,
        "currency_code": response.get("currencyCode") or currency_code,
        "highest_bid": parse_major_price(response.get("highestBidAmount")),
        "lowest_ask": parse_major_price(response.get("lowestAskAmount")),
        "flex_lowest_ask": parse_major_price(response.get("flexLowestAskAmount")),
        "earn_more": parse_major_price(response.get("earnMoreAmount")),
        "sell_faster": parse_major_price(response.get("sellFasterAmount")),
        "standard_market_data": response.get("standardMarketData"),
        "flex_market_data": response.get("flexMarketData"),
        "direct_market_data": response.get("directMarketData"),
    }


async def _upsert_product(session: AsyncSession, row: Dict[str, Any]) -> None:
    stmt = insert(StockxProduct).values(**row)
    stmt = stmt.on_conflict_do_update(
        index_elements=[StockxProduct.stockx_product_id],
        set_={**{k: stmt.excluded[k] for k in row if k != "stockx_product_id"}, "updated_at": func.now()},
    )
    await session.execute(stmt)


async def _upsert_variants(session: AsyncSession, rows: List[Dict[str, Any]]) -> None:
    if not rows:
        return
    stmt = insert(StockxVariant).values(rows)
    stmt = stmt.on_conflict_do_update(
        index_elements=[StockxVariant.stockx_variant_id],
        set_={
            **{k: stmt.excluded[k] for k in rows[0] if k != "stockx_variant_id"},
            "updated_at": func.now(),
        },
    )
    await session.execute(stmt)


async def _store_market_data(
    session: AsyncSession,
    row: Dict[str, Any],
    append_history: bool,
) -> None:
    """Upsert latest market data and, for the primary currency, the daily snapshot."""
    expires_at = func.now() + timedelta(hours=settings.MARKET_DATA_TTL_HOURS)
    stmt = insert(StockxMarketData).values(**row, updated_at=func.now(), expires_at=expires_at)
    stmt = stmt.on_conflict_do_update(
        index_elements=[StockxMarketData.stockx_variant_id, StockxMarketData.currency_code],
        set_={
            **{k: stmt.excluded[k] for k in row if k not in ("stockx_variant_id", "currency_code")},
            "updated_at": func.now(),
            "expires_at": expires_at,
        },
    )
    await session.execute(stmt)
    market_rows_written_total.labels(provider="stockx", table="stockx_market_data").inc()

    if not append_history:
        return

    history = insert(StockxPriceHistory).values(
        stockx_variant_id=row["stockx_variant_id"],
        currency_code=row["currency_code"],
        highest_bid=row["highest_bid"],
        lowest_ask=row["lowest_ask"],
        snapshot_date=datetime.now(timezone.utc).date(),
        recorded_at=func.now(),
    )
    history = history.on_conflict_do_update(
        constraint="uq_stockx_price_history_daily",
        set_={
            "highest_bid": history.excluded.highest_bid,
            "lowest_ask": history.excluded.lowest_ask,
            "recorded_at": func.now(),
        },
    )
    await session.execute(history)
    market_rows_written_total.labels(provider="stockx", table="stockx_price_history").inc()


async def link_style_catalog(
    session: AsyncSession,
    sku: str,
    product_id: str,
    product_row: Dict[str, Any],
) -> bool:
    """
    Point the style catalog entry at the StockX product and fill in missing
    image, brand and name. Returns False when the SKU is not catalogued.
    """
    style = await session.get(StyleCatalog, sku)
    if style is None:
        logger.info(f"SKU {sku} not in style catalog, skipping StockX link")
        return False

    style.stockx_product_id = product_id
    style.stockx_url_key = product_row.get("url_key") or style.stockx_url_key
    if not style.primary_image_url and product_row.get("url_key"):
        style.primary_image_url = STOCKX_IMAGE_URL.format(url_key=product_row["url_key"])
    if not style.brand and product_row.get("brand"):
        style.brand = product_row["brand"]
    if not style.name and product_row.get("title"):
        style.name = product_row["title"]

    await session.flush()
    logger.info(f"Linked style {sku} to StockX product {product_id}")
    return True


async def _fetch_staggered(
    client: StockxClient,
    product_id: str,
    variant_id: str,
    currency: str,
    delay: float,
) -> Dict[str, Any]:
    if delay:
        await asyncio.sleep(delay)
    return await client.get_market_data(product_id, variant_id, currency)


async def refresh_market_data(
    session: AsyncSession,
    client: StockxClient,
    product_id: str,
    sku: Optional[str],
    variants: List[Dict[str, Any]],
    result: SyncResult,
) -> None:
    """
    Fetch market data for every variant and currency.

    Variants are fetched in concurrent batches whose request starts are
    staggered by the StockX rate-limit delay; results are written in order.
    Success requires primary-currency data for enough variants.
    """
    batch_size = settings.STOCKX_VARIANT_BATCH_SIZE
    stagger = settings.STOCKX_RATE_LIMIT_MS / 1000
    currencies = settings.stockx_currencies
    primary_refreshed = 0
    master_rows = []

    for start in range(0, len(variants), batch_size):
        batch = variants[start:start + batch_size]

        for currency in currencies:
            responses = await asyncio.gather(
                *(
                    _fetch_staggered(client, product_id, variant["stockx_variant_id"], currency, idx * stagger)
                    for idx, variant in enumerate(batch)
                ),
                return_exceptions=True,
            )

            for variant, response in zip(batch, responses):
                variant_id = variant["stockx_variant_id"]
                size = variant["variant_value"]

                if isinstance(response, Exception):
                    message = response.detail if isinstance(response, MarketSyncError) else str(response)
                    rate_limited = is_rate_limited_error(message)
                    if rate_limited:
                        result.rate_limited += 1
                        logger.warning(
                            f"StockX rate limited: product={product_id} variant={variant_id} "
                            f"size={size} currency={currency}"
                        )
                    result.add_error(
                        "market_data",
                        f"[{currency}]{' [RATE LIMITED]' if rate_limited else ''} {message}",
                        variant_id=variant_id,
                        size=size,
                    )
                    continue
                if isinstance(response, BaseException):
                    raise response

                row = market_data_row(response, variant_id, currency)
                await _store_market_data(session, row, append_history=currency == PRIMARY_CURRENCY)
                master_rows.append(
                    stockx_master_row({**response, "variantId": variant_id, "currencyCode": row["currency_code"]},
                                      product_id, sku, size)
                )

                result.market_data_refreshed += 1
                if currency == PRIMARY_CURRENCY:
                    primary_refreshed += 1
                    result.price_snapshots_inserted += 1

    result.master_rows_written = await upsert_master_rows(session, master_rows)

    if result.rate_limited:
        logger.warning(
            f"StockX rate limited {result.rate_limited}/"
            f"{result.market_data_refreshed + result.rate_limited} requests for product {product_id}"
        )

    result.success = primary_refreshed >= min_required(len(variants))


async def full_sync_stockx_product(
    session: AsyncSession,
    sku: str,
    client: Optional[StockxClient] = None,
) -> SyncResult:
    """
    First sync of a SKU: search, product details, style link, variants, market data.
    """
    result = SyncResult(provider="stockx")
    stage = "catalog_search"

    async with _client_scope(client) as stockx:
        try:
            product_id = await stockx.find_product_id(sku)
            result.product_id = product_id
            await asyncio.sleep(settings.STOCKX_RATE_LIMIT_MS / 1000)

            stage = "product_details"
            product_row = product_row_from_details(await stockx.get_product(product_id))
            await _upsert_product(session, product_row)
            await link_style_catalog(session, sku, product_id, product_row)
            await asyncio.sleep(settings.STOCKX_RATE_LIMIT_MS / 1000)

            stage = "variants"
            variant_rows = variant_rows_from_response(product_id, await stockx.get_variants(product_id))
            await _upsert_variants(session, variant_rows)
            result.variants_synced = len(variant_rows)
            if not variant_rows:
                result.add_error("variants", "Product has no variants")
                return result

            stage = "market_data"
            await refresh_market_data(session, stockx, product_id, sku, variant_rows, result)
        except MarketSyncError as e:
            result.add_error(stage, e.detail)

    return result


async def _load_variants(session: AsyncSession, product_id: str) -> List[Dict[str, Any]]:
    rows = await session.execute(
        select(StockxVariant.stockx_variant_id, StockxVariant.variant_value)
        .where(StockxVariant.stockx_product_id == product_id)
        .order_by(StockxVariant.stockx_variant_id)
    )
    return [
        {"stockx_variant_id": variant_id, "variant_value": value}
        for variant_id, value in rows.all()
    ]


async def refresh_stockx_product(
    session: AsyncSession,
    product_id: str,
    sku: Optional[str] = None,
    client: Optional[StockxClient] = None,
) -> SyncResult:
    """Refresh market data for a product whose catalog and variants are already stored."""
    result = SyncResult(provider="stockx", product_id=product_id)

    variants = await _load_variants(session, product_id)
    result.variants_synced = len(variants)
    if not variants:
        result.add_error("variants", "No variants found for product")
        return result

    async with _client_scope(client) as stockx:
        try:
            await refresh_market_data(session, stockx, product_id, sku, variants, result)
        except MarketSyncError as e:
            result.add_error("market_data", e.detail)

    return result


async def sync_stockx_product_by_sku(
    session: AsyncSession,
    sku: str,
    client: Optional[StockxClient] = None,
) -> SyncResult:
    """Refresh the product when it is already stored, otherwise run a full sync."""
    existing = await session.execute(
        select(StockxProduct.stockx_product_id).where(StockxProduct.style_id == sku).limit(1)
    )
    product_id = existing.scalar_one_or_none()

    if product_id is None:
        logger.info(f"StockX full sync for {sku}")
        return await full_sync_stockx_product(session, sku, client=client)

    logger.info(f"StockX refresh for {sku} (product {product_id})")
    return await refresh_stockx_product(session, product_id, sku=sku, client=client)


async def find_stale_stockx_products(
    session: AsyncSession,
    max_age_hours: int,
    limit: int,
) -> List[Dict[str, Any]]:
    """Products whose newest market data is older than `max_age_hours` (or missing), oldest first."""
    latest = (
        select(
            StockxVariant.stockx_product_id.label("product_id"),
            func.max(StockxMarketData.updated_at).label("latest_update"),
        )
        .join(StockxMarketData, StockxMarketData.stockx_variant_id == StockxVariant.stockx_variant_id)
        .group_by(StockxVariant.stockx_product_id)
        .subquery()
    )
    cutoff = func.now() - timedelta(hours=max_age_hours)
    rows = await session.execute(
        select(StockxProduct.stockx_product_id, StockxProduct.style_id, latest.c.latest_update)
        .outerjoin(latest, latest.c.product_id == StockxProduct.stockx_product_id)
        .where(or_(latest.c.latest_update.is_(None), latest.c.latest_update < cutoff))
        .order_by(latest.c.latest_update.asc().nulls_first())
        .limit(limit)
    )
    return [
        {"product_id": product_id, "style_id": style_id, "latest_update": latest_update}
        for product_id, style_id, latest_update in rows.all()
    ]


async def refresh_stale_stockx_products(
    session: AsyncSession,
    max_age_hours: Optional[int] = None,
    limit: Optional[int] = None,
    client: Optional[StockxClient] = None,
) -> Dict[str, Any]:
    """
    Refresh the StockX products with the oldest market data.

    Each product is committed on its own so one failure does not roll back
    the others.

    Returns:
        {"checked", "refreshed", "failed", "results": [...]}
    """
    max_age_hours = settings.STOCKX_STALE_HOURS if max_age_hours is None else max_age_hours
    limit = limit or settings.STOCKX_REFRESH_LIMIT

    stale = await find_stale_stockx_products(session, max_age_hours, limit)
    summary: Dict[str, Any] = {"checked": len(stale), "refreshed": 0, "failed": 0, "results": []}
    if not stale:
        logger.info("No stale StockX products to refresh")
        return summary

    async with _client_scope(client) as stockx:
        for product in stale:
            result = await refresh_stockx_product(
                session, product["product_id"], sku=product["style_id"], client=stockx
            )
            await session.commit()

            summary["refreshed" if result.success else "failed"] += 1
            summary["results"].append({
                "productId": product["product_id"],
                "styleId": product["style_id"],
                "success": result.success,
                "marketDataRefreshed": result.market_data_refreshed,
                "errors": len(result.errors),
            })

    logger.info(
        f"Stale StockX refresh: {summary['refreshed']} refreshed, "
        f"{summary['failed']} failed of {summary['checked']}"
    )
    return summary
