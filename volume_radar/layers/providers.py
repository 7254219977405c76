"""
Layer – Market data providers
One adapter per data source (Yahoo chart / yfinance / Twelve Data). Each
turns a symbol's daily bars into a MarketRecord via the processing layer,
or reports why it could not, and never raises.

Failure taxonomy used by the orchestrator's retry policy:
  transient     network errors, timeouts, HTTP 429 / 5xx, provider rate limits
  insufficient  short history, zero baseline volume, missing fields
  not_found     unknown symbol, empty history, adapter not configured
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
import pandas as pd
import yfinance as yf

from volume_radar.config import ScanConfig, VolumeRadarSettings, get_settings
from volume_radar.layers.processing import get_processing_layer
from volume_radar.models.market import FetchOutcome, FetchStatus, MarketRecord

logger = logging.getLogger(__name__)

_HEADERS = {"User-Agent": "Mozilla/5.0 (compatible; volume-radar/1.0)"}
_TWELVE_OUTPUT_SIZE = 300


class ProviderError(Exception):
    """Payload-level failure raised inside an adapter and mapped to a FetchOutcome."""

    def __init__(self, status: FetchStatus, reason: str):
        super().__init__(reason)
        self.status = status
        self.reason = reason

    def to_outcome(self) -> FetchOutcome:
        return FetchOutcome(status=self.status, reason=self.reason)


def classify_http_status(code: int) -> FetchStatus:
    if code == 429 or code >= 500:
        return FetchStatus.TRANSIENT
    return FetchStatus.NOT_FOUND


class MarketDataProvider(ABC):
    """Base adapter: subclasses only fetch raw bars"""

    name: str = ""

    def __init__(
        self,
        config: ScanConfig,
        settings: Optional[VolumeRadarSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
        supplement: Optional["TwelveDataIndicatorSupplement"] = None,
    ):
        self._config = config
        self._settings = settings or get_settings()
        self._client = client
        self._supplement = supplement
        self._proc = get_processing_layer()

    @abstractmethod
    async def _fetch_bars(self, symbol: str) -> Tuple[Any, str]:
        """Return (raw bars, peak source label)."""

    async def fetch(self, symbol: str) -> FetchOutcome:
        try:
            raw, peak_source = await self._fetch_bars(symbol)
        except ProviderError as exc:
            return exc.to_outcome()
        except httpx.HTTPStatusError as exc:
            code = exc.response.status_code
            return FetchOutcome(status=classify_http_status(code), reason=f"HTTP {code}")
        except httpx.TimeoutException as exc:
            return FetchOutcome.transient(f"timeout: {exc.__class__.__name__}")
        except httpx.TransportError as exc:
            return FetchOutcome.transient(f"network error: {exc}")
        except Exception as exc:
            logger.warning(f"{self.name} {symbol} unexpected error: {exc}")
            return FetchOutcome.transient(f"unexpected error: {exc}")

        bars = self._proc.normalize_bars(raw)
        if bars.empty:
            return FetchOutcome.not_found("empty history")

        outcome = self._proc.build_record(symbol, bars, self._config, self.name, peak_source)
        if outcome.ok and self._supplement is not None:
            record = await self._supplement.fill(outcome.record, self._config, history_points=len(bars))
            return FetchOutcome.success(record)
        return outcome

    async def _get_json(self, url: str, params: Dict[str, Any]) -> Any:
        if self._client is not None:
            resp = await self._client.get(url, params=params, headers=_HEADERS)
            resp.raise_for_status()
            return resp.json()
        async with httpx.AsyncClient(timeout=self._settings.REQUEST_TIMEOUT) as client:
            resp = await client.get(url, params=params, headers=_HEADERS)
            resp.raise_for_status()
            return resp.json()


# ── Yahoo chart API ───────────────────────────────────────

class YahooChartProvider(MarketDataProvider):
    """Daily bars from the Yahoo v8 chart endpoint"""

    name = "yahoo"

    async def _fetch_bars(self, symbol: str) -> Tuple[List[Dict[str, Any]], str]:
        url = f"{self._settings.YAHOO_CHART_URL.rstrip('/')}/{symbol}"
        params = {"range": self._settings.HISTORY_RANGE, "interval": "1d"}
        payload = await self._get_json(url, params)

        chart = (payload or {}).get("chart") or {}
        if chart.get("error"):
            raise ProviderError(FetchStatus.NOT_FOUND, str(chart["error"].get("description", "")))
        results = chart.get("result") or []
        if not results:
            raise ProviderError(FetchStatus.NOT_FOUND, "no chart result")

        result = results[0]
        timestamps = result.get("timestamp") or []
        quotes = (result.get("indicators") or {}).get("quote") or [{}]
        closes = quotes[0].get("close") or []
        volumes = quotes[0].get("volume") or []
        if not timestamps:
            return [], self._settings.HISTORY_RANGE
        if len(closes) != len(timestamps) or len(volumes) != len(timestamps):
            raise ProviderError(FetchStatus.INSUFFICIENT, "misaligned close/volume arrays")

        bars = [
            {"date": pd.Timestamp(ts, unit="s"), "close": c, "volume": v}
            for ts, c, v in zip(timestamps, closes, volumes)
        ]
        return bars, self._settings.HISTORY_RANGE


# ── yfinance ──────────────────────────────────────────────

class YFinanceProvider(MarketDataProvider):
    """Daily bars through the yfinance library (blocking, run in a worker thread)"""

    name = "yfinance"

    def _history(self, symbol: str) -> pd.DataFrame:
        ticker = yf.Ticker(symbol)
        return ticker.history(period=self._settings.HISTORY_RANGE, interval="1d", auto_adjust=False)

    async def _fetch_bars(self, symbol: str) -> Tuple[pd.DataFrame, str]:
        df = await asyncio.to_thread(self._history, symbol)
        if df is None or df.empty:
            raise ProviderError(FetchStatus.NOT_FOUND, "no yfinance history")
        df = df.reset_index()
        date_col = "Date" if "Date" in df.columns else df.columns[0]
        if "Close" not in df.columns or "Volume" not in df.columns:
            raise ProviderError(FetchStatus.INSUFFICIENT, "missing Close/Volume columns")
        bars = df.rename(columns={date_col: "date", "Close": "close", "Volume": "volume"})
        return bars[["date", "close", "volume"]], self._settings.HISTORY_RANGE


# ── Twelve Data ───────────────────────────────────────────

def _twelve_payload_error(payload: Any) -> Optional[ProviderError]:
    """Twelve Data reports errors with HTTP 200 and status=error."""
    if not isinstance(payload, dict) or payload.get("status") != "error":
        return None
    code = int(payload.get("code") or 0)
    message = str(payload.get("message", "provider error"))
    return ProviderError(classify_http_status(code) if code else FetchStatus.TRANSIENT, message)


class TwelveDataProvider(MarketDataProvider):
    """Daily bars from the Twelve Data time_series endpoint (requires API key)"""

    name = "twelvedata"

    async def _fetch_bars(self, symbol: str) -> Tuple[List[Dict[str, Any]], str]:
        api_key = self._settings.TWELVE_DATA_API_KEY
        if not api_key:
            raise ProviderError(FetchStatus.NOT_FOUND, "TWELVE_DATA_API_KEY not configured")
        payload = await self._get_json(
            f"{self._settings.TWELVE_DATA_URL.rstrip('/')}/time_series",
            {
                "symbol": symbol,
                "interval": "1day",
                "outputsize": _TWELVE_OUTPUT_SIZE,
                "apikey": api_key,
            },
        )
        error = _twelve_payload_error(payload)
        if error is not None:
            raise error
        values = payload.get("values") or []
        bars = [
            {"date": v.get("datetime"), "close": v.get("close"), "volume": v.get("volume")}
            for v in values
        ]
        return bars, f"{_TWELVE_OUTPUT_SIZE}d"


class TwelveDataIndicatorSupplement:
    """
    Fills indicators that local history could not produce (SMA 21/50/200,
    RSI) and checks the 52-week high when the local window is shorter than
    the peak lookback. Any failure leaves the local value in place.

    Requests are paced with the run's inter_request_delay_ms + jitter, the
    same budget the orchestrator applies between provider calls.
    """

    def __init__(
        self,
        settings: Optional[VolumeRadarSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ):
        self._settings = settings or get_settings()
        self._client = client
        self._sleep = sleep
        self._jitter = jitter
        self._proc = get_processing_layer()

    @property
    def enabled(self) -> bool:
        return bool(self._settings.TWELVE_DATA_API_KEY)

    async def fill(
        self,
        record: MarketRecord,
        config: ScanConfig,
        history_points: Optional[int] = None,
    ) -> MarketRecord:
        if not self.enabled:
            return record

        requests = []
        for n in (21, 50, 200):
            if getattr(record, f"sma{n}") is None:
                requests.append((f"sma{n}", "sma", {"time_period": n}, "sma"))
        if record.rsi is None:
            requests.append(("rsi", "rsi", {"time_period": config.rsi_periods}, "rsi"))
        short_window = history_points is not None and history_points < config.peak_lookback
        if record.peak is None or short_window:
            requests.append(("peak", "quote", {}, None))
        if not requests:
            return record

        found: Dict[str, Optional[float]] = {}
        for i, (key, endpoint, extra, field) in enumerate(requests):
            if i:
                await self._pace(config)
            try:
                found[key] = await self._fetch_value(record.symbol, endpoint, extra, field)
            except Exception as exc:
                logger.debug(f"supplement {endpoint} for {record.symbol} failed, keeping local values: {exc}")
        return self._proc.merge_indicators(record, found, config, history_points=history_points)

    async def _pace(self, config: ScanConfig) -> None:
        delay_ms = config.inter_request_delay_ms + self._jitter() * config.request_jitter_ms
        if delay_ms > 0:
            await self._sleep(delay_ms / 1000)

    async def _fetch_value(
        self, symbol: str, endpoint: str, extra: Dict[str, Any], field: Optional[str]
    ) -> Optional[float]:
        params = {
            "symbol": symbol,
            "interval": "1day",
            "apikey": self._settings.TWELVE_DATA_API_KEY,
            **extra,
        }
        if endpoint != "quote":
            params["outputsize"] = 1
        url = f"{self._settings.TWELVE_DATA_URL.rstrip('/')}/{endpoint}"
        if self._client is not None:
            resp = await self._client.get(url, params=params)
        else:
            async with httpx.AsyncClient(timeout=self._settings.REQUEST_TIMEOUT) as client:
                resp = await client.get(url, params=params)
        resp.raise_for_status()
        payload = resp.json()
        error = _twelve_payload_error(payload)
        if error is not None:
            raise error

        if endpoint == "quote":
            high = (payload.get("fifty_two_week") or {}).get("high")
            return float(high) if high not in (None, "") else None
        values = payload.get("values") or []
        if not values or values[0].get(field) in (None, ""):
            return None
        return float(values[0][field])


# ── Registry ──────────────────────────────────────────────

PROVIDER_REGISTRY = {
    YahooChartProvider.name: YahooChartProvider,
    YFinanceProvider.name: YFinanceProvider,
    TwelveDataProvider.name: TwelveDataProvider,
}


def build_providers(
    config: ScanConfig,
    settings: Optional[VolumeRadarSettings] = None,
    names: Optional[List[str]] = None,
) -> List[MarketDataProvider]:
    """Instantiate adapters in priority order; unknown names are skipped."""
    settings = settings or get_settings()
    supplement = TwelveDataIndicatorSupplement(settings)
    providers: List[MarketDataProvider] = []
    for name in names or settings.provider_names:
        cls = PROVIDER_REGISTRY.get(name)
        if cls is None:
            logger.warning(f"Unknown data provider '{name}', skipping")
            continue
        # the Twelve Data adapter already has every indicator it can get
        extra = None if cls is TwelveDataProvider or not supplement.enabled else supplement
        providers.append(cls(config, settings=settings, supplement=extra))
    return providers
