"""
Unit tests for the Alias sync flow.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from market_sync.core.exceptions import ProviderAPIError
from market_sync.services.alias_sync import (
    allowed_size_set,
    calculate_sales_volume,
    product_row_from_catalog,
    sales_history_rows,
    style_id_from_alias_sku,
    sync_alias_product,
    variant_rows_from_availabilities,
)
from market_sync.services.market_normalizer import ALIAS_GOOD_PACKAGING, ALIAS_NEW_CONDITION

CATALOG = {
    "catalog_item": {
        "catalog_id": "air-jordan-1-cat",
        "brand": "Nike",
        "name": "Air Jordan 1 High",
        "sku": "DZ5485 612",
        "product_category": "PRODUCT_CATEGORY_SHOES",
        "product_type": "sneakers",
        "size_unit": "SIZE_UNIT_US",
        "retail_price_cents": "18000",
        "release_date": "2023-11-18T00:00:00Z",
        "main_picture_url": "https://img.example/aj1.png",
        "allowed_sizes": [
            {"value": 10, "display_name": "10", "us_size_equivalent": 10},
            {"value": 10.5, "display_name": "10.5", "us_size_equivalent": 10.5},
        ],
    }
}


def _variant(size, consigned=False, ask="25000", bid="20000"):
    return {
        "size": size,
        "product_condition": ALIAS_NEW_CONDITION,
        "packaging_condition": ALIAS_GOOD_PACKAGING,
        "consigned": consigned,
        "availability": {
            "lowest_listing_price_cents": ask,
            "highest_offer_price_cents": bid,
            "last_sold_listing_price_cents": "0",
            "global_indicator_price_cents": "0",
        },
    }


def _fake_variant_ids(session, rows):
    return {
        (row["size_value"], row["consigned"], row["region_id"]): index
        for index, row in enumerate(rows, start=1)
    }


@pytest.fixture
def patched_writes():
    with patch("market_sync.services.alias_sync._upsert_product", new_callable=AsyncMock) as upsert_product, \
            patch("market_sync.services.alias_sync._upsert_variants", new_callable=AsyncMock) as upsert_variants, \
            patch("market_sync.services.alias_sync._store_market_data", new_callable=AsyncMock) as store, \
            patch("market_sync.services.alias_sync.upsert_master_rows", new_callable=AsyncMock) as master, \
            patch("market_sync.services.alias_sync.link_style_catalog", new_callable=AsyncMock) as link:
        upsert_variants.side_effect = _fake_variant_ids
        master.side_effect = lambda session, rows: len(rows)
        yield {
            "upsert_product": upsert_product,
            "upsert_variants": upsert_variants,
            "store": store,
            "master": master,
            "link": link,
        }


def test_style_id_from_alias_sku():
    assert style_id_from_alias_sku("dz5485 612") == "DZ5485-612"
    assert style_id_from_alias_sku("") is None


def test_allowed_size_set():
    assert allowed_size_set(CATALOG["catalog_item"]["allowed_sizes"]) == {Decimal("10.00"), Decimal("10.50")}
    assert allowed_size_set(None) == set()


def test_product_row_from_catalog():
    row = product_row_from_catalog(CATALOG)

    assert row["alias_catalog_id"] == "air-jordan-1-cat"
    assert row["retail_price_cents"] == 18000
    assert row["release_date"] == datetime(2023, 11, 18, tzinfo=timezone.utc)
    assert row["resellable"] is True


def test_variant_rows_drop_sizes_outside_allowed():
    variants = [_variant("10"), _variant("12"), dict(_variant("10.5"), product_condition="PRODUCT_CONDITION_USED")]

    rows = variant_rows_from_availabilities(
        "cat-1", "3", "SIZE_UNIT_US", variants, {Decimal("10.00"), Decimal("10.50")}
    )

    assert [(row["size_value"], row["region_id"]) for row in rows] == [(Decimal("10.00"), "3")]


def test_calculate_sales_volume():
    now = datetime(2026, 3, 10, tzinfo=timezone.utc)
    sales = [
        {"purchased_at": (now - timedelta(hours=10)).isoformat(), "consigned": False},
        {"purchased_at": (now - timedelta(days=5)).isoformat().replace("+00:00", "Z"), "consigned": False},
        {"purchased_at": (now - timedelta(days=40)).isoformat(), "consigned": False},
        {"purchased_at": (now - timedelta(hours=1)).isoformat(), "consigned": True},
        {"purchased_at": None, "consigned": False},
    ]

    assert calculate_sales_volume(sales, consigned=False, now=now) == (1, 2)
    assert calculate_sales_volume(sales, consigned=True, now=now) == (1, 1)
    assert calculate_sales_volume(sales, now=now) == (2, 3)


def test_sales_history_rows():
    rows = sales_history_rows("cat-1", "2", [
        {"size": "10", "price_cents": "21000", "purchased_at": "2026-03-01T10:00:00Z", "consigned": True},
        {"size": "10", "price_cents": "21000", "purchased_at": None},
    ])

    assert len(rows) == 1
    assert rows[0]["price"] == Decimal("210.00")
    assert rows[0]["region_id"] == "2"


async def test_sync_alias_product_success(mock_session, mock_alias_client, patched_writes):
    mock_alias_client.get_catalog.return_value = CATALOG

    async def availabilities(catalog_id, region_id, consigned=None):
        if consigned:
            return [_variant("10", consigned=True)]
        return [_variant("10"), _variant("10.5"), _variant("12")]

    mock_alias_client.get_availabilities.side_effect = availabilities

    result = await sync_alias_product(
        mock_session, "air-jordan-1-cat", regions=["3"], fetch_sales=False, client=mock_alias_client
    )

    assert result.success is True
    assert result.variants_synced == 3
    assert result.market_data_refreshed == 3
    assert result.master_rows_written == 3
    assert result.errors == []
    patched_writes["link"].assert_awaited_once()
    assert patched_writes["link"].await_args.args[1] == "DZ5485-612"


async def test_sync_alias_product_needs_half_the_variants(mock_session, mock_alias_client, patched_writes):
    mock_alias_client.get_catalog.return_value = CATALOG

    async def availabilities(catalog_id, region_id, consigned=None):
        if consigned:
            return [_variant("10", consigned=True, ask="0", bid="0")]
        return [_variant("10"), _variant("10.5", ask="0", bid="0")]

    mock_alias_client.get_availabilities.side_effect = availabilities

    result = await sync_alias_product(
        mock_session, "air-jordan-1-cat", regions=["3"], fetch_sales=False, client=mock_alias_client
    )

    assert result.variants_synced == 3
    assert result.market_data_refreshed == 1
    assert result.success is False


async def test_sync_alias_product_region_errors_are_not_fatal(mock_session, mock_alias_client, patched_writes):
    mock_alias_client.get_catalog.return_value = CATALOG

    async def availabilities(catalog_id, region_id, consigned=None):
        if region_id == "2":
            raise ProviderAPIError("Alias API error: 503 Service Unavailable", provider="alias")
        return [] if consigned else [_variant("10"), _variant("10.5")]

    mock_alias_client.get_availabilities.side_effect = availabilities

    result = await sync_alias_product(
        mock_session, "air-jordan-1-cat", regions=["3", "2"], fetch_sales=False, client=mock_alias_client
    )

    assert result.success is True
    assert len(result.errors) == 1
    assert result.errors[0].stage == "availabilities"
    assert result.errors[0].region == "2"


async def test_sync_alias_product_without_variants_fails(mock_session, mock_alias_client, patched_writes):
    mock_alias_client.get_catalog.return_value = CATALOG
    mock_alias_client.get_availabilities.return_value = []

    result = await sync_alias_product(
        mock_session, "air-jordan-1-cat", regions=["3"], fetch_sales=False, client=mock_alias_client
    )

    assert result.success is False
    assert result.error_summary() == "[variants] No variants found across all regions"
    patched_writes["upsert_variants"].assert_not_awaited()


async def test_sync_alias_product_catalog_error(mock_session, mock_alias_client, patched_writes):
    mock_alias_client.get_catalog.side_effect = ProviderAPIError(
        "Invalid catalog response for missing-cat", provider="alias"
    )

    result = await sync_alias_product(mock_session, "missing-cat", regions=["3"], client=mock_alias_client)

    assert result.success is False
    assert result.errors[0].stage == "catalog_fetch"
