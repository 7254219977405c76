"""
Layer – Technical analysis
Pure indicator functions over oldest-first numeric series: SMA, Wilder RSI,
peak / consolidation metrics and proximity checks.

Every function returns None (or False for proximity) when the series is too
short, never raises.
"""

import logging
import math
from typing import NamedTuple, Optional, Sequence, Union

import pandas as pd

logger = logging.getLogger(__name__)

TRADING_DAYS_PER_MONTH = 21

Numeric = Union[Sequence[float], pd.Series]


class PeakMetrics(NamedTuple):
    peak: float
    pct_from_peak: float
    months_since_peak: float


def _as_series(series: Numeric) -> pd.Series:
    """Coerce to a float Series, dropping missing points, positional index."""
    if series is None:
        return pd.Series(dtype=float)
    s = pd.to_numeric(pd.Series(series), errors="coerce")
    return s.dropna().reset_index(drop=True).astype(float)


class AnalysisLayer:
    """Indicator library used by every provider adapter"""

    # ── Moving average ────────────────────────────────────

    def moving_average(self, series: Numeric, n: int) -> Optional[float]:
        """Mean of the last n points; None if fewer than n exist."""
        s = _as_series(series)
        if n < 1 or len(s) < n:
            return None
        return float(s.iloc[-n:].mean())

    # ── RSI ───────────────────────────────────────────────

    def rsi(self, series: Numeric, periods: int = 14) -> Optional[float]:
        """
        Relative Strength Index with Wilder smoothing.

        Seeds average gain/loss with the simple mean of the first `periods`
        deltas, then applies avg = (avg * (periods - 1) + current) / periods
        to every later delta.
        """
        s = _as_series(series)
        if periods < 1 or len(s) < periods + 1:
            return None

        delta = s.diff().iloc[1:]
        gains = delta.clip(lower=0)
        losses = (-delta).clip(lower=0)

        avg_gain = self._wilder(gains, periods)
        avg_loss = self._wilder(losses, periods)

        if avg_loss == 0:
            return 100.0
        rs = avg_gain / avg_loss
        value = 100 - 100 / (1 + rs)
        return float(min(100.0, max(0.0, value)))

    @staticmethod
    def _wilder(values: pd.Series, periods: int) -> float:
        seed = values.iloc[:periods].mean()
        rest = values.iloc[periods:]
        if rest.empty:
            return float(seed)
        # ewm(alpha=1/n, adjust=False) is exactly Wilder's recurrence once seeded
        chain = pd.concat([pd.Series([seed]), rest], ignore_index=True)
        return float(chain.ewm(alpha=1.0 / periods, adjust=False).mean().iloc[-1])

    # ── Peak & consolidation ──────────────────────────────

    def peak_metrics(
        self,
        series: Numeric,
        lookback: int = 252,
        touch_pct: float = 98.0,
    ) -> Optional[PeakMetrics]:
        """
        Highest close over the trailing window and how long price has been
        consolidating below it.

        The touch index is the most recent close within touch_pct% of the
        peak; months are counted from there to the latest close.
        """
        s = _as_series(series)
        if s.empty or lookback < 1:
            return None
        window = s.iloc[-lookback:].reset_index(drop=True)
        peak = float(window.max())
        if peak <= 0:
            return None

        latest = float(window.iloc[-1])
        pct_from_peak = (latest - peak) / peak * 100

        threshold = peak * touch_pct / 100
        touched = window.index[(window >= threshold).to_numpy()]
        touch_index = int(touched[-1]) if len(touched) else len(window) - 1

        months = (len(window) - 1 - touch_index) / TRADING_DAYS_PER_MONTH
        return PeakMetrics(peak=peak, pct_from_peak=pct_from_peak, months_since_peak=months)

    # ── Proximity ─────────────────────────────────────────

    def pct_distance(self, price: float, reference: Optional[float]) -> Optional[float]:
        """Absolute distance of price from reference, as % of reference."""
        if reference is None or price is None:
            return None
        if math.isnan(reference) or reference <= 0:
            return None
        return abs(price - reference) / reference * 100

    def is_near(self, price: float, reference: Optional[float], threshold_pct: float) -> bool:
        dist = self.pct_distance(price, reference)
        return dist is not None and dist <= threshold_pct


# ── Module-level singleton ────────────────────────────────
_analysis: Optional[AnalysisLayer] = None


def get_analysis_layer() -> AnalysisLayer:
    global _analysis
    if _analysis is None:
        _analysis = AnalysisLayer()
    return _analysis
