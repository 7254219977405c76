"""Market data models shared by every layer"""

from datetime import date
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class FetchStatus(str, Enum):
    OK = "ok"
    TRANSIENT = "transient"          # network / timeout / rate limit, worth retrying
    INSUFFICIENT = "insufficient"    # short history, zero baseline volume, missing fields
    NOT_FOUND = "not_found"          # unknown symbol or provider unavailable


class DimensionStatus(str, Enum):
    MET = "met"
    CLOSE = "close"
    FAR = "far"


class SetupTier(str, Enum):
    FULL = "full"
    CLOSE = "close"
    NONE = "none"


class MarketRecord(BaseModel):
    """
    Per-symbol snapshot produced by exactly one provider per run.

    Optional fields are None when the fetched history is too short for the
    indicator; that is a normal outcome, not an error.
    """

    model_config = ConfigDict(frozen=True)

    symbol: str
    last_price: float
    price_change: float              # last-period % change
    current_volume: float
    avg_volume: float                # baseline, excludes the latest period
    rvol: float
    source: str = ""

    sma21: Optional[float] = None
    sma50: Optional[float] = None
    sma200: Optional[float] = None
    rsi: Optional[float] = None

    peak: Optional[float] = None
    peak_source: Optional[str] = None   # e.g. "1y" history or "52w" provider high
    pct_from_peak: Optional[float] = None
    months_in_consolidation: Optional[float] = None

    near_sma21: bool = False
    near_sma21_close: bool = False
    near_peak: bool = False
    near_peak_close: bool = False
    in_consolidation_window: bool = False
    in_consolidation_close: bool = False

    @property
    def is_bullish(self) -> bool:
        return self.price_change >= 0


class FetchOutcome(BaseModel):
    """Result of one adapter call: a record, or the reason there is none."""

    status: FetchStatus
    record: Optional[MarketRecord] = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.status == FetchStatus.OK and self.record is not None

    @classmethod
    def success(cls, record: MarketRecord) -> "FetchOutcome":
        return cls(status=FetchStatus.OK, record=record)

    @classmethod
    def transient(cls, reason: str) -> "FetchOutcome":
        return cls(status=FetchStatus.TRANSIENT, reason=reason)

    @classmethod
    def insufficient(cls, reason: str) -> "FetchOutcome":
        return cls(status=FetchStatus.INSUFFICIENT, reason=reason)

    @classmethod
    def not_found(cls, reason: str) -> "FetchOutcome":
        return cls(status=FetchStatus.NOT_FOUND, reason=reason)


class SetupStatus(BaseModel):
    """Per-dimension evaluation; None marks a dimension skipped for lack of data."""

    model_config = ConfigDict(frozen=True)

    trend: Optional[DimensionStatus] = None
    peak: Optional[DimensionStatus] = None
    base: Optional[DimensionStatus] = None
    tier: SetupTier = SetupTier.NONE


class AcquisitionResult(BaseModel):
    records: List[MarketRecord] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)


class RankedSignals(BaseModel):
    signals: List[MarketRecord] = Field(default_factory=list)
    volume_without_price: List[MarketRecord] = Field(default_factory=list)
    tiers: Dict[str, SetupTier] = Field(default_factory=dict)


class ScanResult(BaseModel):
    scan_date: date = Field(default_factory=date.today)
    total_scanned: int = 0
    signals: List[MarketRecord] = Field(default_factory=list)
    volume_without_price: List[MarketRecord] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    tiers: Dict[str, SetupTier] = Field(default_factory=dict)
    execution_time_ms: int = 0
    skipped: bool = False
    message: str = ""

    @property
    def records_found(self) -> int:
        return self.total_scanned - len(self.failed)
