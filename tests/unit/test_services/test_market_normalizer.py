"""
Unit tests for market data normalization.
"""
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from market_sync.services.market_normalizer import (
    ALIAS_CONSIGNED_SOURCE,
    ALIAS_GOOD_PACKAGING,
    ALIAS_NEW_CONDITION,
    ALIAS_SOURCE,
    STOCKX_SOURCE,
    alias_master_rows,
    alias_region,
    compute_spread,
    dedupe_master_rows,
    has_actionable_prices,
    parse_cents_price,
    parse_major_price,
    parse_size_numeric,
    size_match_key,
    stockx_master_row,
)

SNAPSHOT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _alias_variant(size, consigned=False, ask="25000", bid="20000", condition=ALIAS_NEW_CONDITION):
    return {
        "size": size,
        "product_condition": condition,
        "packaging_condition": ALIAS_GOOD_PACKAGING,
        "consigned": consigned,
        "availability": {
            "lowest_listing_price_cents": ask,
            "highest_offer_price_cents": bid,
            "last_sold_listing_price_cents": "0",
            "global_indicator_price_cents": "23000",
        },
    }


@pytest.mark.parametrize(
    "value, expected",
    [("150", Decimal("150.00")), ("149.995", Decimal("150.00")), ("", None), (None, None), ("n/a", None)],
)
def test_parse_major_price(value, expected):
    assert parse_major_price(value) == expected


@pytest.mark.parametrize(
    "value, expected",
    [("12550", Decimal("125.50")), ("0", None), ("", None), (None, None), ("abc", None), (9900, Decimal("99.00"))],
)
def test_parse_cents_price(value, expected):
    assert parse_cents_price(value) == expected


def test_size_parsing():
    assert parse_size_numeric("10.5") == Decimal("10.5")
    assert parse_size_numeric("W 8") == Decimal("8")
    assert parse_size_numeric("XL") is None
    assert size_match_key("10") == size_match_key(10.0) == Decimal("10.00")


@pytest.mark.parametrize(
    "region_id, expected",
    [("1", ("USD", "US")), ("2", ("USD", "EU")), ("3", ("USD", "UK")), ("9", ("USD", "global")), (None, ("USD", "global"))],
)
def test_alias_region(region_id, expected):
    assert alias_region(region_id) == expected


def test_compute_spread():
    assert compute_spread(Decimal("200"), Decimal("150")) == (Decimal("50"), Decimal("25.000"))
    assert compute_spread(None, Decimal("150")) == (None, None)
    assert compute_spread(Decimal("0"), Decimal("0")) == (Decimal("0"), None)


def test_has_actionable_prices():
    assert has_actionable_prices({"lowest_listing_price_cents": "1000"})
    assert not has_actionable_prices({"lowest_listing_price_cents": "0", "highest_offer_price_cents": "0"})
    assert not has_actionable_prices(None)


def test_stockx_master_row():
    row = stockx_master_row(
        {"variantId": "v-1", "currencyCode": "EUR", "lowestAskAmount": "200", "highestBidAmount": "150"},
        product_id="prod-1",
        sku="DD1391-100",
        size_key="10.5",
        snapshot_at=SNAPSHOT,
    )

    assert row["provider"] == "stockx"
    assert row["provider_source"] == STOCKX_SOURCE
    assert row["currency_code"] == "EUR"
    assert row["size_numeric"] == Decimal("10.5")
    assert row["spread_absolute"] == Decimal("50.00")
    assert row["snapshot_at"] == SNAPSHOT


def test_alias_master_rows_filters_variants():
    variants = [
        _alias_variant("10"),
        _alias_variant("10.5", consigned=True),
        _alias_variant("11", condition="PRODUCT_CONDITION_USED"),
        _alias_variant("15"),
    ]

    rows = alias_master_rows(
        variants, "cat-1", "3", "DD1391-100",
        allowed_sizes={Decimal("10.00"), Decimal("10.50"), Decimal("11.00")},
        snapshot_at=SNAPSHOT,
    )

    assert [row["size_key"] for row in rows] == ["10"]
    row = rows[0]
    assert row["provider_source"] == ALIAS_SOURCE
    assert row["region_code"] == "UK"
    assert row["currency_code"] == "USD"
    assert row["lowest_ask"] == Decimal("250.00")
    assert row["last_sale_price"] is None


def test_alias_master_rows_consigned_source():
    rows = alias_master_rows([_alias_variant("10", consigned=True)], "cat-1", "1", None, consigned=True)
    assert rows[0]["provider_source"] == ALIAS_CONSIGNED_SOURCE
    assert rows[0]["is_consigned"] is True


def test_dedupe_master_rows_keeps_first():
    first = {"provider": "alias", "size_key": "10", "currency_code": "USD", "lowest_ask": 1}
    second = dict(first, lowest_ask=2)
    other = dict(first, size_key="11")

    assert dedupe_master_rows([first, second, other]) == [first, other]
