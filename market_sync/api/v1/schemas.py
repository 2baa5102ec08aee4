"""
Pydantic schemas for API request/response models.

Responses use camelCase keys (the web application's convention); fields are
snake_case with aliases.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from market_sync.core.validators import PROVIDERS


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


# Request Schemas

class BatchStatusRequest(CamelModel):
    """Request schema for bulk status lookups."""

    style_ids: List[str] = Field(
        ...,
        alias="styleIds",
        min_length=1,
        description="Style ids (SKUs) to look up",
        examples=[["DD1391-100", "FD9082-102"]],
    )


class EnqueueRequest(CamelModel):
    """Request schema for queueing a sync job."""

    style_id: str = Field(
        ...,
        alias="styleId",
        description="Style id (SKU) to sync",
        examples=["DD1391-100"],
    )
    provider: Optional[str] = Field(
        None,
        description="stockx or alias; both (Alias only when mapped) when omitted",
        examples=["stockx"],
    )

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: Optional[str]) -> Optional[str]:
        """Validate provider name."""
        if v is None:
            return v
        v = v.strip().lower()
        if v not in PROVIDERS:
            raise ValueError(f"provider must be one of: {', '.join(PROVIDERS)}")
        return v


# Response Schemas

class ProviderSyncStatus(CamelModel):
    status: str = Field(..., description="pending | processing | completed | failed | not_mapped")
    attempts: int = 0
    last_error: Optional[str] = Field(None, alias="lastError")
    next_retry_at: Optional[datetime] = Field(None, alias="nextRetryAt")


class StyleSyncStatusResponse(CamelModel):
    """Sync status of one style across providers."""

    style_id: str = Field(..., alias="styleId")
    stockx: ProviderSyncStatus
    alias: ProviderSyncStatus
    overall: str = Field(
        ...,
        description="syncing | ready | partial | failed | not_mapped",
        examples=["ready"],
    )


class BatchStatusResponse(CamelModel):
    statuses: Dict[str, StyleSyncStatusResponse]


class RetrySyncResponse(CamelModel):
    style_id: str = Field(..., alias="styleId")
    jobs_created: int = Field(..., alias="jobsCreated")
    errors: List[str] = Field(default_factory=list)


class EnqueueResponse(CamelModel):
    style_id: str = Field(..., alias="styleId")
    job_ids: Dict[str, int] = Field(..., alias="jobIds")


class QueueStatsResponse(CamelModel):
    """Job counts per provider and status, plus due and stale counts."""

    providers: Dict[str, Dict[str, int]] = Field(
        ...,
        examples=[{"stockx": {"pending": 4, "processing": 1, "completed": 120, "failed": 2, "due": 3, "stale": 0}}],
    )


class BatchErrorResponse(CamelModel):
    job_id: int = Field(..., alias="jobId")
    style_id: str = Field(..., alias="styleId")
    provider: str
    error: str


class ProcessBatchResponse(CamelModel):
    processed: int
    successful: int
    failed: int
    recovered: int = 0
    errors: List[BatchErrorResponse] = Field(default_factory=list)


class RecoverResponse(CamelModel):
    recovered: int


class StaleRefreshResponse(CamelModel):
    checked: int
    refreshed: int
    failed: int
    results: List[Dict[str, Any]] = Field(default_factory=list)


class MarketRowResponse(CamelModel):
    """One normalized market data row."""

    provider: str
    provider_source: str = Field(..., alias="providerSource")
    provider_product_id: Optional[str] = Field(None, alias="providerProductId")
    provider_variant_id: Optional[str] = Field(None, alias="providerVariantId")
    size_key: str = Field(..., alias="sizeKey")
    size_numeric: Optional[Decimal] = Field(None, alias="sizeNumeric")
    currency_code: str = Field(..., alias="currencyCode")
    region_code: Optional[str] = Field(None, alias="regionCode")
    lowest_ask: Optional[Decimal] = Field(None, alias="lowestAsk")
    highest_bid: Optional[Decimal] = Field(None, alias="highestBid")
    last_sale_price: Optional[Decimal] = Field(None, alias="lastSalePrice")
    spread_absolute: Optional[Decimal] = Field(None, alias="spreadAbsolute")
    spread_percentage: Optional[Decimal] = Field(None, alias="spreadPercentage")
    is_flex: bool = Field(False, alias="isFlex")
    is_consigned: bool = Field(False, alias="isConsigned")
    snapshot_at: datetime = Field(..., alias="snapshotAt")


class MarketDataResponse(CamelModel):
    sku: str
    rows: List[MarketRowResponse]
