"""
Layer – Ranking & filtering
Keeps records with RVOL above the minimum, ranks them (RVOL first, setup
tier breaks near-ties), truncates to the top N and extracts the
"volume without price" subset.
"""

import logging
from typing import Dict, List, Optional

from volume_radar.config import ScanConfig
from volume_radar.layers.classification import get_classification_layer, tier_rank
from volume_radar.models.market import MarketRecord, RankedSignals, SetupTier

logger = logging.getLogger(__name__)


class RankingLayer:

    def __init__(self):
        self._classifier = get_classification_layer()

    def compare(
        self,
        a: MarketRecord,
        b: MarketRecord,
        tiers: Dict[str, SetupTier],
        gap: float,
    ) -> int:
        """Negative when a ranks ahead of b."""
        rvol_diff = b.rvol - a.rvol
        if abs(rvol_diff) >= gap:
            return 1 if rvol_diff > 0 else -1
        boost = tier_rank(tiers[b.symbol]) - tier_rank(tiers[a.symbol])
        if boost:
            return boost
        if rvol_diff:
            return 1 if rvol_diff > 0 else -1
        return 0

    def rank(
        self,
        records: List[MarketRecord],
        tiers: Dict[str, SetupTier],
        gap: float,
    ) -> List[MarketRecord]:
        """
        Insertion sort with adjacent comparisons only

        The near-tie rule is not transitive; adjacent insertion keeps every
        consecutive pair in comparator order. Input is pre-ordered by
        (RVOL desc, symbol) so the result does not depend on fetch order.
        """
        ordered: List[MarketRecord] = []
        for record in sorted(records, key=lambda r: (-r.rvol, r.symbol)):
            pos = len(ordered)
            while pos > 0 and self.compare(record, ordered[pos - 1], tiers, gap) < 0:
                pos -= 1
            ordered.insert(pos, record)
        return ordered

    def rank_and_filter(
        self,
        records: List[MarketRecord],
        config: ScanConfig,
    ) -> RankedSignals:
        high_rvol = [r for r in records if r.rvol >= config.min_relative_volume]
        logger.info(f"Found {len(high_rvol)} symbols with RVOL >= {config.min_relative_volume}")

        tiers = {r.symbol: self._classifier.classify(r, config).tier for r in high_rvol}
        ranked = self.rank(high_rvol, tiers, config.rvol_dominance_gap)

        full_count = sum(1 for t in tiers.values() if t == SetupTier.FULL)
        close_or_better = sum(1 for t in tiers.values() if t != SetupTier.NONE)
        if close_or_better:
            logger.info(
                f"Identified {close_or_better} close consolidation setup(s), {full_count} of them full"
            )

        signals = ranked[: config.top_n]

        # silent accumulation / distribution: heavy volume, flat price
        volume_without_price = [
            r for r in ranked if abs(r.price_change) < config.price_change_threshold
        ]
        if volume_without_price:
            logger.info(
                f'Identified {len(volume_without_price)} "volume without price" symbols '
                f"(|change| < {config.price_change_threshold}%)"
            )

        return RankedSignals(
            signals=signals,
            volume_without_price=volume_without_price,
            tiers=tiers,
        )


# ── Module-level singleton ────────────────────────────────
_ranking: Optional[RankingLayer] = None


def get_ranking_layer() -> RankingLayer:
    global _ranking
    if _ranking is None:
        _ranking = RankingLayer()
    return _ranking


def rank_and_filter(records: List[MarketRecord], config: ScanConfig) -> RankedSignals:
    return get_ranking_layer().rank_and_filter(records, config)
