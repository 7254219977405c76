"""
Layer – Data acquisition
Fetches one MarketRecord per symbol by walking the provider list in
priority order, retrying transient failures with exponential backoff, and
bounding how many symbols are in flight at once.

Per symbol:  Pending → Trying(provider_i) → Success | NextProvider | Exhausted
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, List, Optional, Sequence

from volume_radar.config import ScanConfig
from volume_radar.layers.providers import MarketDataProvider, build_providers
from volume_radar.layers.retry import RetryPolicy
from volume_radar.models.market import (
    AcquisitionResult,
    FetchOutcome,
    FetchStatus,
    MarketRecord,
)

logger = logging.getLogger(__name__)


def _is_transient(outcome: FetchOutcome) -> bool:
    return outcome.status == FetchStatus.TRANSIENT


class AcquisitionLayer:
    """Acquisition orchestrator: provider fallback + retry + concurrency cap"""

    def __init__(
        self,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ):
        self._sleep = sleep
        self._jitter = jitter

    async def acquire(
        self,
        symbols: Sequence[str],
        config: ScanConfig,
        providers: Optional[List[MarketDataProvider]] = None,
    ) -> AcquisitionResult:
        """
        Fetch every symbol; symbols no provider could serve land in `failed`

        Args:
            symbols: resolved, de-duplicated watchlist
            config: validated run configuration
            providers: adapters in priority order, defaults to PROVIDER_ORDER

        Raises:
            ValueError: empty symbol list or no usable provider
        """
        if not symbols:
            raise ValueError("symbol list is empty")
        if providers is None:
            providers = build_providers(config)
        if not providers:
            raise ValueError("no data providers configured")

        policy = RetryPolicy(
            max_attempts=config.max_retries,
            base_delay=config.retry_base_delay_ms / 1000,
            sleep=self._sleep,
        )
        semaphore = asyncio.Semaphore(config.concurrency_limit)
        total = len(symbols)
        logger.info(
            f"Fetching {total} symbols via {[p.name for p in providers]} "
            f"(max {config.concurrency_limit} concurrent)"
        )

        async def worker(index: int, symbol: str) -> Optional[MarketRecord]:
            async with semaphore:
                try:
                    record = await self._acquire_symbol(symbol, providers, policy, config)
                except Exception as exc:
                    logger.error(f"[{index}/{total}] {symbol} aborted: {exc}", exc_info=True)
                    return None
            if record is not None:
                logger.info(f"[{index}/{total}] {symbol} ✓ {record.source} (RVOL {record.rvol:.2f})")
            else:
                logger.warning(f"[{index}/{total}] {symbol} ✗ no provider returned usable data")
            return record

        results = await asyncio.gather(
            *(worker(i, symbol) for i, symbol in enumerate(symbols, start=1))
        )

        records = [r for r in results if r is not None]
        failed = [s for s, r in zip(symbols, results) if r is None]
        logger.info(f"Fetched data for {len(records)}/{total} symbols, {len(failed)} failed")
        return AcquisitionResult(records=records, failed=failed)

    async def _acquire_symbol(
        self,
        symbol: str,
        providers: List[MarketDataProvider],
        policy: RetryPolicy,
        config: ScanConfig,
    ) -> Optional[MarketRecord]:
        for provider in providers:
            outcome = await policy.run(
                lambda: self._call(provider, symbol, config),
                should_retry=_is_transient,
                context=f"{provider.name} {symbol}",
            )
            if outcome.ok:
                return outcome.record
            logger.debug(f"{provider.name} {symbol}: {outcome.status.value} ({outcome.reason})")
        return None

    async def _call(
        self, provider: MarketDataProvider, symbol: str, config: ScanConfig
    ) -> FetchOutcome:
        try:
            outcome = await provider.fetch(symbol)
        except Exception as exc:
            logger.warning(f"{provider.name} {symbol} raised {exc.__class__.__name__}: {exc}")
            outcome = FetchOutcome.transient(str(exc))
        await self._pace(config)
        return outcome

    async def _pace(self, config: ScanConfig) -> None:
        delay_ms = config.inter_request_delay_ms + self._jitter() * config.request_jitter_ms
        if delay_ms > 0:
            await self._sleep(delay_ms / 1000)


# ── Module-level singleton ────────────────────────────────
_acquisition: Optional[AcquisitionLayer] = None


def get_acquisition_layer() -> AcquisitionLayer:
    global _acquisition
    if _acquisition is None:
        _acquisition = AcquisitionLayer()
    return _acquisition


async def acquire(
    symbols: Sequence[str],
    config: ScanConfig,
    providers: Optional[List[MarketDataProvider]] = None,
) -> AcquisitionResult:
    return await get_acquisition_layer().acquire(symbols, config, providers)
