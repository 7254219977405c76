"""
Layer – Setup classification
Scores a record against the consolidation setup: price near its 21-period
average, close to the period high, and basing for 6–36 months.
"""

import logging
from typing import Optional

from volume_radar.config import ScanConfig
from volume_radar.layers.analysis import get_analysis_layer
from volume_radar.models.market import DimensionStatus, MarketRecord, SetupStatus, SetupTier

logger = logging.getLogger(__name__)

_TIER_RANK = {SetupTier.FULL: 2, SetupTier.CLOSE: 1, SetupTier.NONE: 0}


def tier_rank(tier: SetupTier) -> int:
    return _TIER_RANK[tier]


def _banded(value: Optional[float], met: float, close: float) -> Optional[DimensionStatus]:
    if value is None:
        return None
    if value <= met:
        return DimensionStatus.MET
    if value <= close:
        return DimensionStatus.CLOSE
    return DimensionStatus.FAR


class ClassificationLayer:

    def __init__(self):
        self._analysis = get_analysis_layer()

    def trend_status(self, record: MarketRecord, config: ScanConfig) -> Optional[DimensionStatus]:
        distance = self._analysis.pct_distance(record.last_price, record.sma21)
        return _banded(distance, config.sma_touch_threshold_pct, config.sma_close_threshold_pct)

    def peak_status(self, record: MarketRecord, config: ScanConfig) -> Optional[DimensionStatus]:
        if record.pct_from_peak is None:
            return None
        return _banded(
            abs(record.pct_from_peak), config.ath_threshold_pct, config.ath_close_threshold_pct
        )

    def base_status(self, record: MarketRecord, config: ScanConfig) -> Optional[DimensionStatus]:
        months = record.months_in_consolidation
        if months is None:
            return None
        if config.consolidation_min_months <= months <= config.consolidation_max_months:
            return DimensionStatus.MET
        if config.consolidation_close_min_months <= months < config.consolidation_min_months:
            return DimensionStatus.CLOSE
        return DimensionStatus.FAR

    def classify(self, record: MarketRecord, config: ScanConfig) -> SetupStatus:
        """
        full  – all three dimensions met
        close – nothing far, at least one dimension evaluated, not full
        none  – any dimension far, or nothing could be evaluated

        A record with no evaluable dimension is none rather than close: a
        setup needs at least one positive signal.
        """
        dims = (
            self.trend_status(record, config),
            self.peak_status(record, config),
            self.base_status(record, config),
        )
        evaluated = [d for d in dims if d is not None]

        if len(evaluated) == 3 and all(d == DimensionStatus.MET for d in evaluated):
            tier = SetupTier.FULL
        elif evaluated and DimensionStatus.FAR not in evaluated:
            tier = SetupTier.CLOSE
        else:
            tier = SetupTier.NONE

        return SetupStatus(trend=dims[0], peak=dims[1], base=dims[2], tier=tier)


# ── Module-level singleton ────────────────────────────────
_classifier: Optional[ClassificationLayer] = None


def get_classification_layer() -> ClassificationLayer:
    global _classifier
    if _classifier is None:
        _classifier = ClassificationLayer()
    return _classifier


def classify(record: MarketRecord, config: ScanConfig) -> SetupStatus:
    return get_classification_layer().classify(record, config)
