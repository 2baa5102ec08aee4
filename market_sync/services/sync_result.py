"""
Outcome of a provider sync: counts plus the per-stage errors collected on the way.
"""
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class SyncError:
    stage: str
    error: str
    variant_id: Optional[str] = None
    size: Optional[str] = None
    region: Optional[str] = None


@dataclass
class SyncResult:
    provider: str
    success: bool = False
    product_id: Optional[str] = None
    variants_synced: int = 0
    market_data_refreshed: int = 0
    price_snapshots_inserted: int = 0
    sales_records_inserted: int = 0
    master_rows_written: int = 0
    rate_limited: int = 0
    errors: List[SyncError] = field(default_factory=list)

    def add_error(self, stage: str, error: str, **details: Optional[str]) -> None:
        self.errors.append(SyncError(stage=stage, error=error, **details))

    def error_summary(self) -> str:
        """All errors joined into one line (stored as the job's last_error)."""
        if not self.errors:
            return "Sync failed without error details"
        return "; ".join(f"[{e.stage}] {e.error}" for e in self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def min_required(total: int) -> int:
    """Successful refreshes needed: all of them below 4 variants, otherwise half."""
    return total if total < 4 else math.ceil(total * 0.5)
