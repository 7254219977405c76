"""
Volume Radar configuration
Service settings come from environment variables / .env; every scan runs
against an immutable, validated ScanConfig built from those settings.
"""

from functools import lru_cache
from typing import List

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class VolumeRadarSettings(BaseSettings):
    """Service configuration"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Service ───────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8002)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── RVOL thresholds ───────────────────────────────────
    MIN_RVOL: float = Field(default=2.0)
    TOP_N: int = Field(default=15)
    PRICE_CHANGE_THRESHOLD: float = Field(default=2.0)

    # ── Consolidation setup thresholds ────────────────────
    SMA_TOUCH_THRESHOLD_PCT: float = Field(default=3.0)
    SMA_CLOSE_THRESHOLD_PCT: float = Field(default=5.0)
    ATH_THRESHOLD_PCT: float = Field(default=20.0)
    ATH_CLOSE_THRESHOLD_PCT: float = Field(default=25.0)
    CONSOLIDATION_MIN_MONTHS: float = Field(default=6.0)
    CONSOLIDATION_MAX_MONTHS: float = Field(default=36.0)
    CONSOLIDATION_CLOSE_MIN_MONTHS: float = Field(default=4.0)
    RVOL_DOMINANCE_GAP: float = Field(default=0.5)
    PEAK_TOUCH_PCT: float = Field(default=98.0)

    # ── Retry / rate limiting ─────────────────────────────
    MAX_RETRIES: int = Field(default=3)
    RETRY_BASE_DELAY_MS: int = Field(default=2000)
    CONCURRENCY_LIMIT: int = Field(default=3)
    INTER_REQUEST_DELAY_MS: int = Field(default=500)
    REQUEST_JITTER_MS: int = Field(default=500)

    # ── Data sources ──────────────────────────────────────
    PROVIDER_ORDER: str = Field(default="yahoo,yfinance,twelvedata")
    HISTORY_RANGE: str = Field(default="1y")
    REQUEST_TIMEOUT: float = Field(default=10.0)   # seconds, per HTTP call
    YAHOO_CHART_URL: str = Field(default="https://query1.finance.yahoo.com/v8/finance/chart")
    TWELVE_DATA_URL: str = Field(default="https://api.twelvedata.com")
    TWELVE_DATA_API_KEY: str = Field(default="")

    # ── Run control ───────────────────────────────────────
    FORCE_SCAN: bool = Field(default=False)

    # ── Logging ───────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")

    @property
    def provider_names(self) -> List[str]:
        return [p.strip().lower() for p in self.PROVIDER_ORDER.split(",") if p.strip()]


class ScanConfig(BaseModel):
    """Run-scoped scan parameters, validated before acquisition starts."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # ranking
    min_relative_volume: float = Field(default=2.0, ge=0)
    top_n: int = Field(default=15, gt=0)
    price_change_threshold: float = Field(default=2.0, ge=0)
    rvol_dominance_gap: float = Field(default=0.5, ge=0)

    # classification
    sma_touch_threshold_pct: float = Field(default=3.0, ge=0)
    sma_close_threshold_pct: float = Field(default=5.0, ge=0)
    ath_threshold_pct: float = Field(default=20.0, ge=0)
    ath_close_threshold_pct: float = Field(default=25.0, ge=0)
    consolidation_min_months: float = Field(default=6.0, ge=0)
    consolidation_max_months: float = Field(default=36.0, ge=0)
    consolidation_close_min_months: float = Field(default=4.0, ge=0)

    # indicators
    peak_touch_pct: float = Field(default=98.0, gt=0, le=100)
    peak_lookback: int = Field(default=252, gt=1)
    volume_lookback: int = Field(default=63, ge=4)
    rsi_periods: int = Field(default=14, gt=0)

    # acquisition
    max_retries: int = Field(default=3, ge=1)
    retry_base_delay_ms: int = Field(default=2000, ge=0)
    concurrency_limit: int = Field(default=3, ge=1)
    inter_request_delay_ms: int = Field(default=500, ge=0)
    request_jitter_ms: int = Field(default=500, ge=0)

    @model_validator(mode="after")
    def _check_bands(self) -> "ScanConfig":
        if self.sma_touch_threshold_pct > self.sma_close_threshold_pct:
            raise ValueError("sma_touch_threshold_pct must not exceed sma_close_threshold_pct")
        if self.ath_threshold_pct > self.ath_close_threshold_pct:
            raise ValueError("ath_threshold_pct must not exceed ath_close_threshold_pct")
        if not (
            self.consolidation_close_min_months
            <= self.consolidation_min_months
            <= self.consolidation_max_months
        ):
            raise ValueError(
                "consolidation months must satisfy close_min <= min <= max"
            )
        return self

    @classmethod
    def from_settings(cls, s: "VolumeRadarSettings" = None, /, **overrides) -> "ScanConfig":
        """
        Build a ScanConfig from service settings, applying per-run overrides.

        `s` is positional-only so every keyword is treated as a config field.
        """
        s = s or get_settings()
        values = {
            "min_relative_volume": s.MIN_RVOL,
            "top_n": s.TOP_N,
            "price_change_threshold": s.PRICE_CHANGE_THRESHOLD,
            "rvol_dominance_gap": s.RVOL_DOMINANCE_GAP,
            "sma_touch_threshold_pct": s.SMA_TOUCH_THRESHOLD_PCT,
            "sma_close_threshold_pct": s.SMA_CLOSE_THRESHOLD_PCT,
            "ath_threshold_pct": s.ATH_THRESHOLD_PCT,
            "ath_close_threshold_pct": s.ATH_CLOSE_THRESHOLD_PCT,
            "consolidation_min_months": s.CONSOLIDATION_MIN_MONTHS,
            "consolidation_max_months": s.CONSOLIDATION_MAX_MONTHS,
            "consolidation_close_min_months": s.CONSOLIDATION_CLOSE_MIN_MONTHS,
            "peak_touch_pct": s.PEAK_TOUCH_PCT,
            "max_retries": s.MAX_RETRIES,
            "retry_base_delay_ms": s.RETRY_BASE_DELAY_MS,
            "concurrency_limit": s.CONCURRENCY_LIMIT,
            "inter_request_delay_ms": s.INTER_REQUEST_DELAY_MS,
            "request_jitter_ms": s.REQUEST_JITTER_MS,
        }
        values.update(overrides)
        return cls(**values)


@lru_cache
def get_settings() -> VolumeRadarSettings:
    """Global settings (singleton)"""
    return VolumeRadarSettings()


settings = get_settings()
