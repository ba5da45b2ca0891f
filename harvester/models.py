"""
Core data models for the harvest engine.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# A raw record is whatever the upstream hands back: scalars, sequences and
# nested mappings, never mutated by the engine.
RawRecord = Mapping[str, Any]
Scalar = Union[None, str, int, float, bool]
FlatRow = Dict[str, Scalar]
Cursor = Union[str, int, Dict[str, Any]]
IdentityKey = Tuple[Scalar, ...]

# Filled into rows for columns a record does not carry.
ABSENT = None

SCALAR_TYPES = (str, int, float, bool, type(None))


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class HarvestStatus(str, Enum):
    COMPLETE = "Complete"
    LIMIT_REACHED = "LimitReached"
    PARTIAL_PAGE_LIMIT = "PartialPageLimit"
    CANCELLED = "Cancelled"


class Page(BaseModel):
    """One upstream response: records plus the cursor for the next call.

    ``next_cursor is None`` means the upstream has nothing more.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    records: List[Any] = Field(default_factory=list)
    next_cursor: Optional[Cursor] = None

    @property
    def done(self) -> bool:
        return self.next_cursor is None

    @classmethod
    def coerce(cls, value: Any) -> "Page":
        """Accept a ``Page`` or a ``(records, next_cursor)`` tuple."""
        if isinstance(value, Page):
            return value
        if isinstance(value, tuple) and len(value) == 2:
            records, next_cursor = value
            return cls(records=list(records or []), next_cursor=next_cursor)
        raise TypeError(f"fetch must return Page or (records, next_cursor), got {type(value).__name__}")


class BackoffPolicy(BaseModel):
    """Exponential backoff shared by throttling and transient failures."""
    base_delay: float = Field(default=1.0, gt=0)
    max_delay: float = Field(default=60.0, gt=0)
    max_retries: int = Field(default=5, ge=0)
    jitter: float = Field(default=0.0, ge=0)

    @model_validator(mode="after")
    def _ceiling_above_base(self) -> "BackoffPolicy":
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        return self

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based): doubles up to the ceiling."""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)


class HarvestConfig(BaseModel):
    """Validated knobs for one harvest run."""
    breakdown_fields: Tuple[str, ...] = ()
    identity_fields: Tuple[str, ...] = ("id",)
    limit: Optional[int] = Field(default=None, ge=1)
    max_pages: int = Field(default=10, ge=1)
    min_delay: float = Field(default=0.0, ge=0)
    fetch_timeout: Optional[float] = Field(default=None, gt=0)
    magnitude_fields: Tuple[str, ...] = ()
    magnitude_errors: str = "raise"
    percentage_fields: Tuple[str, ...] = ()
    allow_duplicates: bool = False
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)

    @field_validator("breakdown_fields", "identity_fields", "magnitude_fields", "percentage_fields", mode="before")
    @classmethod
    def _listify(cls, v: Any) -> Any:
        if isinstance(v, str):
            return (v,)
        return v

    @field_validator("identity_fields")
    @classmethod
    def _non_empty_identity(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        if not v:
            raise ValueError("at least one identity field is required")
        return v

    @field_validator("magnitude_errors")
    @classmethod
    def _known_policy(cls, v: str) -> str:
        if v not in ("raise", "skip", "null"):
            raise ValueError("magnitude_errors must be one of 'raise', 'skip', 'null'")
        return v


class HarvestSession(BaseModel):
    """State of one harvest: accumulated rows, dedup set, cursor and counters."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = "harvest"
    identity_fields: Tuple[str, ...] = ()
    rows: List[FlatRow] = Field(default_factory=list)
    seen_keys: Set[IdentityKey] = Field(default_factory=set)
    cursor: Optional[Cursor] = None
    pages_fetched: int = 0
    records_seen: int = 0
    records_accepted: int = 0
    duplicates_dropped: int = 0
    backoff_delays: List[float] = Field(default_factory=list)
    violations: List[Dict[str, Any]] = Field(default_factory=list)
    status: Optional[HarvestStatus] = None
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None

    @property
    def record_count(self) -> int:
        """Distinct records (identity keys) accepted so far."""
        return self.records_accepted

    @property
    def finalized(self) -> bool:
        return self.status is not None

    @property
    def columns(self) -> List[str]:
        cols: Dict[str, None] = {}
        for row in self.rows:
            for key in row:
                cols.setdefault(key, None)
        return list(cols)

    def finalize(self, status: HarvestStatus) -> "HarvestSession":
        self.status = status
        self.finished_at = _utcnow()
        return self

    def to_frame(self):
        """Return rows as a pandas DataFrame with the full column set."""
        import pandas as pd

        return pd.DataFrame(self.rows, columns=self.columns)

    def summary(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value if self.status else None,
            "rows": len(self.rows),
            "records": self.record_count,
            "pages": self.pages_fetched,
            "duplicates_dropped": self.duplicates_dropped,
            "backoffs": len(self.backoff_delays),
            "cursor": self.cursor,
        }
