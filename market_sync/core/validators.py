"""
Input validators for Market Sync.

Normalization and validation of style ids, providers and batch sizes.
"""
import re
from typing import Iterable, List, Optional

from market_sync.core.exceptions import ValidationError
from market_sync.models.sync_queue import SyncProvider

PROVIDERS = tuple(p.value for p in SyncProvider)

MAX_STYLE_ID_LENGTH = 64
MAX_BATCH_STATUS_SIZE = 200

_STYLE_ID_RE = re.compile(r"^[A-Z0-9][A-Z0-9 ._/-]*$")


def normalize_style_id(value: Optional[str], field_name: str = "style_id") -> str:
    """
    Normalize a style id (SKU): trimmed and upper-cased.

    Raises:
        ValidationError: If the value is empty, too long, or has invalid characters
    """
    if value is None or not str(value).strip():
        raise ValidationError(
            detail=f"{field_name} is required",
            field=field_name,
            value=value,
        )

    normalized = str(value).strip().upper()

    if len(normalized) > MAX_STYLE_ID_LENGTH:
        raise ValidationError(
            detail=f"{field_name} must be at most {MAX_STYLE_ID_LENGTH} characters",
            field=field_name,
            value=value,
        )

    if not _STYLE_ID_RE.match(normalized):
        raise ValidationError(
            detail=f"{field_name} contains invalid characters",
            field=field_name,
            value=value,
        )

    return normalized


def normalize_style_ids(values: Iterable[str]) -> List[str]:
    """Normalize and de-duplicate style ids, keeping input order."""
    seen = set()
    result = []
    for value in values:
        style_id = normalize_style_id(value)
        if style_id not in seen:
            seen.add(style_id)
            result.append(style_id)

    if len(result) > MAX_BATCH_STATUS_SIZE:
        raise ValidationError(
            detail=f"At most {MAX_BATCH_STATUS_SIZE} style ids per request",
            field="style_ids",
            value=len(result),
        )
    return result


def validate_provider(value: Optional[str], allow_none: bool = True) -> Optional[str]:
    """
    Validate a provider name.

    Raises:
        ValidationError: If the provider is unknown (or missing when required)
    """
    if value is None:
        if allow_none:
            return None
        raise ValidationError(detail="provider is required", field="provider")

    provider = value.strip().lower()
    if provider not in PROVIDERS:
        raise ValidationError(
            detail=f"provider must be one of: {', '.join(PROVIDERS)}",
            field="provider",
            value=value,
        )
    return provider


def validate_batch_limit(value: int, maximum: int = 100) -> int:
    """Validate a claim batch size."""
    if not isinstance(value, int) or isinstance(value, bool) or value < 1 or value > maximum:
        raise ValidationError(
            detail=f"limit must be an integer between 1 and {maximum}",
            field="limit",
            value=value,
        )
    return value
