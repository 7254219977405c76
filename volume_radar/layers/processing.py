"""
Layer – Data processing
Cleans provider bars into a standard frame and turns it into a MarketRecord.
All adapters go through here so RVOL and indicators are computed one way.
"""

import logging
from typing import Any, Dict, List, Optional, Union

import pandas as pd

from volume_radar.config import ScanConfig
from volume_radar.layers.analysis import TRADING_DAYS_PER_MONTH, get_analysis_layer
from volume_radar.models.market import FetchOutcome, MarketRecord

logger = logging.getLogger(__name__)

MIN_VOLUME_POINTS = 5
MIN_CLOSE_POINTS = 2

_SMA_WINDOWS = (21, 50, 200)


class ProcessingLayer:
    """Normalisation + record construction"""

    def __init__(self):
        self._analysis = get_analysis_layer()

    def normalize_bars(self, bars: Union[List[Dict[str, Any]], pd.DataFrame]) -> pd.DataFrame:
        """
        Standardise raw bars into a frame with columns date, close, volume

        Rows with a missing close or volume are dropped together so the two
        series stay index-aligned; output is oldest-first.
        """
        if bars is None:
            return pd.DataFrame(columns=["date", "close", "volume"])
        df = bars.copy() if isinstance(bars, pd.DataFrame) else pd.DataFrame(bars)
        if df.empty or not {"close", "volume"}.issubset(df.columns):
            return pd.DataFrame(columns=["date", "close", "volume"])

        for col in ("close", "volume"):
            df[col] = pd.to_numeric(df[col], errors="coerce")
        df = df.dropna(subset=["close", "volume"])

        if "date" in df.columns:
            df["date"] = pd.to_datetime(df["date"], errors="coerce", utc=True)
            df = df.dropna(subset=["date"])
            df = df.drop_duplicates(subset=["date"], keep="last").sort_values("date")
        else:
            df["date"] = pd.NaT

        return df[["date", "close", "volume"]].reset_index(drop=True)

    # ── Record construction ───────────────────────────────

    def build_record(
        self,
        symbol: str,
        bars: pd.DataFrame,
        config: ScanConfig,
        source: str,
        peak_source: str = "",
    ) -> FetchOutcome:
        """Compute RVOL, % change and indicators; insufficient data yields no record."""
        closes = bars["close"] if "close" in bars.columns else pd.Series(dtype=float)
        volumes = bars["volume"] if "volume" in bars.columns else pd.Series(dtype=float)

        if len(volumes) < MIN_VOLUME_POINTS:
            return FetchOutcome.insufficient(f"{len(volumes)} volume points")
        if len(closes) < MIN_CLOSE_POINTS:
            return FetchOutcome.insufficient(f"{len(closes)} close points")

        current_volume = float(volumes.iloc[-1])
        baseline = volumes.iloc[:-1].iloc[-config.volume_lookback:]
        avg_volume = float(baseline.mean())
        if not avg_volume > 0:
            return FetchOutcome.insufficient("zero baseline volume")

        last_price = float(closes.iloc[-1])
        prev_close = float(closes.iloc[-2])
        if prev_close <= 0:
            return FetchOutcome.insufficient("non-positive previous close")

        fields: Dict[str, Any] = {
            "symbol": symbol,
            "last_price": last_price,
            "price_change": (last_price - prev_close) / prev_close * 100,
            "current_volume": current_volume,
            "avg_volume": avg_volume,
            "rvol": current_volume / avg_volume,
            "source": source,
        }
        for n in _SMA_WINDOWS:
            fields[f"sma{n}"] = self._analysis.moving_average(closes, n)
        fields["rsi"] = self._analysis.rsi(closes, config.rsi_periods)

        peak = self._analysis.peak_metrics(closes, config.peak_lookback, config.peak_touch_pct)
        if peak is not None:
            fields["peak"] = peak.peak
            fields["peak_source"] = peak_source or None
            fields["pct_from_peak"] = peak.pct_from_peak
            fields["months_in_consolidation"] = peak.months_since_peak

        fields.update(self.derive_flags(fields, config))
        return FetchOutcome.success(MarketRecord(**fields))

    def merge_indicators(
        self,
        record: MarketRecord,
        indicators: Dict[str, Optional[float]],
        config: ScanConfig,
        peak_source: str = "52w",
        history_points: Optional[int] = None,
    ) -> MarketRecord:
        """
        Fill indicators the local history could not produce

        Moving averages and RSI only replace None fields. A supplied period
        high replaces the local peak when there is none or when it is higher,
        and distance from peak is recomputed from it. If no local close came
        within peak_touch_pct of that high, the base is taken to span the
        whole local window (history_points bars).
        """
        fields = record.model_dump()
        changed = False
        for key in ("sma21", "sma50", "sma200", "rsi"):
            value = indicators.get(key)
            if fields.get(key) is None and value is not None:
                fields[key] = float(value)
                changed = True

        high = indicators.get("peak")
        local_peak = fields.get("peak")
        if high is not None and high > 0 and (local_peak is None or high > local_peak):
            fields["peak"] = float(high)
            fields["peak_source"] = peak_source
            fields["pct_from_peak"] = (record.last_price - high) / high * 100
            touched_locally = local_peak is not None and local_peak >= high * config.peak_touch_pct / 100
            if history_points and not touched_locally:
                fields["months_in_consolidation"] = (history_points - 1) / TRADING_DAYS_PER_MONTH
            changed = True

        if not changed:
            return record
        fields.update(self.derive_flags(fields, config))
        return MarketRecord(**fields)

    def derive_flags(self, fields: Dict[str, Any], config: ScanConfig) -> Dict[str, bool]:
        """Proximity booleans stored on the record for downstream consumers."""
        price = fields["last_price"]
        sma21 = fields.get("sma21")
        pct_from_peak = fields.get("pct_from_peak")
        months = fields.get("months_in_consolidation")

        near_sma = self._analysis.is_near(price, sma21, config.sma_touch_threshold_pct)
        near_peak = pct_from_peak is not None and abs(pct_from_peak) <= config.ath_threshold_pct
        in_window = (
            months is not None
            and config.consolidation_min_months <= months <= config.consolidation_max_months
        )
        return {
            "near_sma21": near_sma,
            "near_sma21_close": not near_sma
            and self._analysis.is_near(price, sma21, config.sma_close_threshold_pct),
            "near_peak": near_peak,
            "near_peak_close": not near_peak
            and pct_from_peak is not None
            and abs(pct_from_peak) <= config.ath_close_threshold_pct,
            "in_consolidation_window": in_window,
            "in_consolidation_close": not in_window
            and months is not None
            and config.consolidation_close_min_months <= months < config.consolidation_min_months,
        }


# ── Module-level singleton ────────────────────────────────
_processor: Optional[ProcessingLayer] = None


def get_processing_layer() -> ProcessingLayer:
    global _processor
    if _processor is None:
        _processor = ProcessingLayer()
    return _processor
