"""
Scan service
Runs one batch pass for an explicit watchlist:
acquisition → classification → ranking
"""

import logging
import time
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from pydantic import BaseModel

from volume_radar.config import ScanConfig, settings
from volume_radar.layers.acquisition import get_acquisition_layer
from volume_radar.layers.providers import MarketDataProvider
from volume_radar.layers.ranking import get_ranking_layer
from volume_radar.models.market import ScanResult

logger = logging.getLogger(__name__)

_CLOSE_HOUR_UTC = 21


class MarketStatus(BaseModel):
    is_open: bool
    exchange: str = "NYSE/NASDAQ"
    current_time: datetime
    message: str = ""


def check_market_status(now: Optional[datetime] = None) -> MarketStatus:
    """Weekends count as closed; weekday runs before the US close only warn."""
    now = now or datetime.now(tz=timezone.utc)
    if now.weekday() >= 5:
        return MarketStatus(is_open=False, current_time=now, message="Market closed (weekend)")
    if now.hour < _CLOSE_HOUR_UTC:
        logger.warning(f"Running before market close ({_CLOSE_HOUR_UTC}:00 UTC). Data may be incomplete.")
    return MarketStatus(is_open=True, current_time=now)


def normalize_watchlist(symbols: Iterable[str]) -> List[str]:
    """Trim, upper-case, drop blanks and duplicates (first occurrence wins)."""
    seen = set()
    result = []
    for raw in symbols or []:
        symbol = str(raw).strip().upper()
        if symbol and symbol not in seen:
            seen.add(symbol)
            result.append(symbol)
    if not result:
        raise ValueError("Watchlist must contain at least one ticker")
    return result


class ScanService:
    """Daily volume scan"""

    def __init__(self, providers: Optional[List[MarketDataProvider]] = None):
        self._acq = get_acquisition_layer()
        self._ranking = get_ranking_layer()
        self._providers = providers

    async def run(
        self,
        symbols: Iterable[str],
        config: Optional[ScanConfig] = None,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> ScanResult:
        """
        Scan a watchlist once

        Args:
            symbols: watchlist, normalised before use
            config: run configuration, defaults to environment settings
            force: scan even when the market is closed
            now: clock override for the market-status check

        Raises:
            ValueError / ValidationError: empty watchlist or invalid config
        """
        started = time.monotonic()
        tickers = normalize_watchlist(symbols)
        config = config or ScanConfig.from_settings()

        status = check_market_status(now)
        if not status.is_open:
            if not (force or settings.FORCE_SCAN):
                logger.info(f"{status.message}, no scan performed")
                return ScanResult(
                    scan_date=status.current_time.date(),
                    total_scanned=0,
                    skipped=True,
                    message=status.message,
                )
            logger.info(f"{status.message} - forcing scan using last available data")

        logger.info(f"📋 Scanning {len(tickers)} tickers")
        acquired = await self._acq.acquire(tickers, config, self._providers)
        ranked = self._ranking.rank_and_filter(acquired.records, config)

        message = ""
        if not acquired.records:
            message = "No stock data available, check provider status"
            logger.error(message)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"✅ Scan done in {elapsed_ms / 1000:.1f}s | scanned: {len(acquired.records)} | "
            f"signals: {len(ranked.signals)} | silent: {len(ranked.volume_without_price)} | "
            f"failed: {len(acquired.failed)}"
        )
        return ScanResult(
            scan_date=status.current_time.date(),
            total_scanned=len(tickers),
            signals=ranked.signals,
            volume_without_price=ranked.volume_without_price,
            failed=acquired.failed,
            tiers=ranked.tiers,
            execution_time_ms=elapsed_ms,
            message=message,
        )


# ── Module-level singleton ────────────────────────────────
_scan_service: Optional[ScanService] = None


def get_scan_service() -> ScanService:
    global _scan_service
    if _scan_service is None:
        _scan_service = ScanService()
    return _scan_service
