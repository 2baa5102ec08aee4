"""
Read endpoints for normalized market data.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from market_sync.api.dependencies import get_current_user_id
from market_sync.api.v1.schemas import MarketDataResponse, MarketRowResponse
from market_sync.core.database import get_db_session
from market_sync.core.validators import normalize_style_id, validate_provider
from market_sync.models.market import MasterMarketData

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/market", tags=["market"])

_LATEST_KEY = (
    MasterMarketData.provider,
    MasterMarketData.provider_source,
    MasterMarketData.size_key,
    MasterMarketData.currency_code,
    MasterMarketData.region_code,
)


@router.get("/{sku}", response_model=MarketDataResponse)
async def get_market_data(
    sku: str,
    provider: Optional[str] = None,
    currency: Optional[str] = None,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> MarketDataResponse:
    """
    Latest normalized snapshot per provider, source, size, currency and region.

    Args:
        sku: Style id
        provider: Optional stockx or alias filter
        currency: Optional currency code filter (GBP, EUR, USD)
    """
    sku = normalize_style_id(sku, field_name="sku")
    provider = validate_provider(provider)

    stmt = (
        select(MasterMarketData)
        .where(MasterMarketData.sku == sku)
        .distinct(*_LATEST_KEY)
        .order_by(*_LATEST_KEY, MasterMarketData.snapshot_at.desc())
    )
    if provider:
        stmt = stmt.where(MasterMarketData.provider == provider)
    if currency:
        stmt = stmt.where(MasterMarketData.currency_code == currency.strip().upper())

    rows = (await session.execute(stmt)).scalars().all()
    return MarketDataResponse(
        sku=sku,
        rows=[MarketRowResponse.model_validate(row) for row in rows],
    )
