"""
Acquisition tests

Coverage:
  - retry policy (attempt cap, exponential backoff)
  - orchestrator (provider fallback, retry routing, concurrency cap, failed list)
  - provider adapters over mocked HTTP (Yahoo chart / Twelve Data) and patched yfinance
  - Twelve Data indicator supplement
  - scan service (watchlist normalisation, market status, end-to-end run)
"""

import asyncio
import os
import sys
from collections import defaultdict
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import httpx
import pandas as pd
import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from volume_radar.config import ScanConfig, VolumeRadarSettings
from volume_radar.layers.acquisition import AcquisitionLayer
from volume_radar.layers.providers import (
    TwelveDataIndicatorSupplement,
    TwelveDataProvider,
    YahooChartProvider,
    YFinanceProvider,
    build_providers,
)
from volume_radar.layers.retry import RetryPolicy, exponential_backoff
from volume_radar.models.market import FetchOutcome, FetchStatus, MarketRecord


# ─────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────

FAST = ScanConfig(inter_request_delay_ms=0, request_jitter_ms=0, retry_base_delay_ms=2000)


def _record(symbol: str, rvol: float = 3.0, source: str = "fake") -> MarketRecord:
    return MarketRecord(
        symbol=symbol,
        last_price=100.0,
        price_change=1.0,
        current_volume=rvol * 1000,
        avg_volume=1000,
        rvol=rvol,
        source=source,
    )


class ScriptedProvider:
    """Returns queued outcomes per symbol; the last one repeats."""

    def __init__(self, name: str, script=None, default: FetchOutcome = None, delay: float = 0.0):
        self.name = name
        self._script = {k: list(v) for k, v in (script or {}).items()}
        self._default = default or FetchOutcome.not_found("unknown")
        self._delay = delay
        self.calls = defaultdict(int)
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch(self, symbol: str) -> FetchOutcome:
        self.calls[symbol] += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self._delay)
        finally:
            self.in_flight -= 1
        queue = self._script.get(symbol)
        if not queue:
            return self._default
        return queue.pop(0) if len(queue) > 1 else queue[0]


class RaisingProvider:
    name = "raising"

    async def fetch(self, symbol: str) -> FetchOutcome:
        raise RuntimeError("adapter bug")


def _acquire(symbols, providers, config=FAST):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    layer = AcquisitionLayer(sleep=fake_sleep, jitter=lambda: 0.0)
    result = asyncio.run(layer.acquire(symbols, config, providers))
    return result, sleeps


def _chart_payload(closes, volumes):
    return {
        "chart": {
            "result": [{
                "meta": {"symbol": "AAPL"},
                "timestamp": [1_700_000_000 + i * 86_400 for i in range(len(closes))],
                "indicators": {"quote": [{"close": closes, "volume": volumes}]},
            }],
            "error": None,
        }
    }


def _run_provider(cls, handler, symbol="AAPL", settings=None, config=None, with_supplement=False, sleeps=None):
    settings = settings or VolumeRadarSettings()
    sleeps = [] if sleeps is None else sleeps

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    async def _go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            supplement = None
            if with_supplement:
                supplement = TwelveDataIndicatorSupplement(
                    settings, client=client, sleep=fake_sleep, jitter=lambda: 0.0
                )
            provider = cls(config or ScanConfig(), settings=settings, client=client, supplement=supplement)
            return await provider.fetch(symbol)

    return asyncio.run(_go())


# ─────────────────────────────────────────────────────────
# 1. Retry policy
# ─────────────────────────────────────────────────────────

class TestRetryPolicy:
    def test_backoff_doubles(self):
        backoff = exponential_backoff(2.0)
        assert [backoff(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_stops_at_max_attempts(self):
        calls, sleeps = [], []

        async def op():
            calls.append(1)
            return "fail"

        async def fake_sleep(s):
            sleeps.append(s)

        policy = RetryPolicy(max_attempts=3, base_delay=1.0, sleep=fake_sleep)
        result = asyncio.run(policy.run(op, should_retry=lambda r: r == "fail"))
        assert result == "fail" and len(calls) == 3
        assert sleeps == [1.0, 2.0]

    def test_returns_first_acceptable(self):
        results = iter(["fail", "ok", "fail"])

        async def op():
            return next(results)

        async def fake_sleep(s):
            pass

        policy = RetryPolicy(max_attempts=5, base_delay=0, sleep=fake_sleep)
        assert asyncio.run(policy.run(op, should_retry=lambda r: r == "fail")) == "ok"


# ─────────────────────────────────────────────────────────
# 2. Orchestrator
# ─────────────────────────────────────────────────────────

class TestAcquisitionLayer:
    def test_first_success_wins(self):
        first = ScriptedProvider("first", {"AAPL": [FetchOutcome.success(_record("AAPL", source="first"))]})
        second = ScriptedProvider("second", {"AAPL": [FetchOutcome.success(_record("AAPL", source="second"))]})
        result, _ = _acquire(["AAPL"], [first, second])
        assert [r.source for r in result.records] == ["first"]
        assert second.calls["AAPL"] == 0 and result.failed == []

    def test_transient_retried_then_next_provider(self):
        flaky = ScriptedProvider("flaky", default=FetchOutcome.transient("HTTP 429"))
        backup = ScriptedProvider("backup", {"AAPL": [FetchOutcome.success(_record("AAPL", source="backup"))]})
        result, sleeps = _acquire(["AAPL"], [flaky, backup])
        assert flaky.calls["AAPL"] == FAST.max_retries
        assert sleeps == [2.0, 4.0]
        assert result.records[0].source == "backup"

    def test_transient_recovers(self):
        provider = ScriptedProvider("p", {"AAPL": [
            FetchOutcome.transient("timeout"),
            FetchOutcome.success(_record("AAPL")),
        ]})
        result, sleeps = _acquire(["AAPL"], [provider])
        assert provider.calls["AAPL"] == 2 and sleeps == [2.0]
        assert len(result.records) == 1

    @pytest.mark.parametrize("outcome", [
        FetchOutcome.not_found("404"),
        FetchOutcome.insufficient("zero baseline volume"),
    ])
    def test_no_retry_for_structural_failures(self, outcome):
        first = ScriptedProvider("first", default=outcome)
        second = ScriptedProvider("second", {"AAPL": [FetchOutcome.success(_record("AAPL"))]})
        result, sleeps = _acquire(["AAPL"], [first, second])
        assert first.calls["AAPL"] == 1 and sleeps == []
        assert len(result.records) == 1

    def test_exhausted_symbols_are_failed(self):
        providers = [
            ScriptedProvider("a", default=FetchOutcome.transient("down")),
            ScriptedProvider("b", default=FetchOutcome.not_found("unknown")),
        ]
        ok = ScriptedProvider("c", {"MSFT": [FetchOutcome.success(_record("MSFT"))]})
        result, _ = _acquire(["ZZZ", "MSFT", "YYY"], providers + [ok])
        assert [r.symbol for r in result.records] == ["MSFT"]
        assert result.failed == ["ZZZ", "YYY"]
        assert all(n <= FAST.max_retries for n in providers[0].calls.values())

    def test_raising_provider_does_not_escape(self):
        backup = ScriptedProvider("backup", {"AAPL": [FetchOutcome.success(_record("AAPL"))]})
        result, _ = _acquire(["AAPL", "TSLA"], [RaisingProvider(), backup])
        assert [r.symbol for r in result.records] == ["AAPL"]
        assert result.failed == ["TSLA"]

    def test_concurrency_cap(self):
        symbols = [f"S{i}" for i in range(10)]
        provider = ScriptedProvider(
            "slow",
            {s: [FetchOutcome.success(_record(s))] for s in symbols},
            delay=0.01,
        )
        config = ScanConfig(concurrency_limit=3, inter_request_delay_ms=0, request_jitter_ms=0)
        result, _ = _acquire(symbols, [provider], config)
        assert len(result.records) == 10
        assert provider.max_in_flight == 3

    def test_pacing_between_requests(self):
        provider = ScriptedProvider("p", {"AAPL": [FetchOutcome.success(_record("AAPL"))]})
        config = ScanConfig(inter_request_delay_ms=500, request_jitter_ms=500)
        _, sleeps = _acquire(["AAPL"], [provider], config)
        assert sleeps == [0.5]

    def test_empty_symbols_rejected(self):
        with pytest.raises(ValueError):
            _acquire([], [ScriptedProvider("p")])

    def test_no_providers_rejected(self):
        with pytest.raises(ValueError):
            _acquire(["AAPL"], [])


# ─────────────────────────────────────────────────────────
# 3. Yahoo chart adapter
# ─────────────────────────────────────────────────────────

class TestYahooChartProvider:
    def test_success(self):
        def handler(request):
            assert request.url.path.endswith("/AAPL")
            assert request.url.params["interval"] == "1d"
            return httpx.Response(200, json=_chart_payload(
                [10, 10, 10, 10, None, 11], [100, 100, 100, 100, 999, 300]
            ))

        outcome = _run_provider(YahooChartProvider, handler)
        assert outcome.ok
        r = outcome.record
        assert r.source == "yahoo" and r.symbol == "AAPL"
        assert r.rvol == pytest.approx(3.0)
        assert r.price_change == pytest.approx(10.0)

    @pytest.mark.parametrize("code, expected", [
        (404, FetchStatus.NOT_FOUND),
        (429, FetchStatus.TRANSIENT),
        (503, FetchStatus.TRANSIENT),
    ])
    def test_http_errors(self, code, expected):
        outcome = _run_provider(YahooChartProvider, lambda request: httpx.Response(code, json={}))
        assert outcome.status == expected and outcome.record is None

    def test_chart_error_payload(self):
        payload = {"chart": {"result": None, "error": {"code": "Not Found", "description": "delisted"}}}
        outcome = _run_provider(YahooChartProvider, lambda request: httpx.Response(200, json=payload))
        assert outcome.status == FetchStatus.NOT_FOUND

    def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        assert _run_provider(YahooChartProvider, handler).status == FetchStatus.TRANSIENT

    def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        assert _run_provider(YahooChartProvider, handler).status == FetchStatus.TRANSIENT

    def test_short_history_insufficient(self):
        payload = _chart_payload([10, 11, 12], [100, 100, 100])
        outcome = _run_provider(YahooChartProvider, lambda request: httpx.Response(200, json=payload))
        assert outcome.status == FetchStatus.INSUFFICIENT

    def test_zero_baseline_volume(self):
        payload = _chart_payload([10] * 6, [0, 0, 0, 0, 0, 5000])
        outcome = _run_provider(YahooChartProvider, lambda request: httpx.Response(200, json=payload))
        assert outcome.status == FetchStatus.INSUFFICIENT and outcome.record is None

    def test_empty_history_not_found(self):
        payload = _chart_payload([], [])
        outcome = _run_provider(YahooChartProvider, lambda request: httpx.Response(200, json=payload))
        assert outcome.status == FetchStatus.NOT_FOUND


# ─────────────────────────────────────────────────────────
# 4. Twelve Data adapter + indicator supplement
# ─────────────────────────────────────────────────────────

def _twelve_values(closes, volumes):
    # newest first, string-typed, as the API returns them
    n = len(closes)
    return [
        {"datetime": f"2024-03-{n - i:02d}", "close": str(closes[n - 1 - i]), "volume": str(volumes[n - 1 - i])}
        for i in range(n)
    ]


class TestTwelveData:
    KEYED = VolumeRadarSettings(TWELVE_DATA_API_KEY="test-key")

    def test_disabled_without_key(self):
        def handler(request):
            raise AssertionError("no request expected")

        outcome = _run_provider(TwelveDataProvider, handler, settings=VolumeRadarSettings(TWELVE_DATA_API_KEY=""))
        assert outcome.status == FetchStatus.NOT_FOUND

    def test_time_series(self):
        def handler(request):
            assert request.url.path == "/time_series"
            assert request.url.params["apikey"] == "test-key"
            return httpx.Response(200, json={
                "status": "ok",
                "values": _twelve_values([10, 10, 10, 10, 12], [200, 200, 200, 200, 500]),
            })

        outcome = _run_provider(TwelveDataProvider, handler, settings=self.KEYED)
        assert outcome.ok
        assert outcome.record.rvol == pytest.approx(2.5)
        assert outcome.record.price_change == pytest.approx(20.0)
        assert outcome.record.source == "twelvedata"

    @pytest.mark.parametrize("code, expected", [
        (404, FetchStatus.NOT_FOUND),
        (429, FetchStatus.TRANSIENT),
    ])
    def test_payload_errors(self, code, expected):
        payload = {"status": "error", "code": code, "message": "nope"}
        outcome = _run_provider(
            TwelveDataProvider, lambda request: httpx.Response(200, json=payload), settings=self.KEYED
        )
        assert outcome.status == expected

    def test_supplement_fills_missing_smas(self):
        closes = [float(50 + i % 5) for i in range(30)]

        def handler(request):
            if request.url.host == "api.twelvedata.com":
                if request.url.path == "/quote":
                    return httpx.Response(200, json={"fifty_two_week": {"high": "50.0"}})
                assert request.url.path == "/sma"
                period = request.url.params["time_period"]
                return httpx.Response(200, json={"values": [{"sma": {"50": "111.0", "200": "222.0"}[period]}]})
            return httpx.Response(200, json=_chart_payload(closes, [1000] * 30))

        outcome = _run_provider(YahooChartProvider, handler, settings=self.KEYED, with_supplement=True)
        r = outcome.record
        assert r.sma21 == pytest.approx(sum(closes[-21:]) / 21)
        assert r.sma50 == 111.0 and r.sma200 == 222.0
        # a lower 52-week high leaves the local peak in place
        assert r.peak == 54.0 and r.peak_source == "1y"

    def test_short_history_takes_higher_52_week_high(self):
        paths = []

        def handler(request):
            if request.url.host == "api.twelvedata.com":
                paths.append(request.url.path)
                if request.url.path == "/quote":
                    return httpx.Response(200, json={"fifty_two_week": {"high": "20.0"}})
                return httpx.Response(200, json={"values": []})
            return httpx.Response(200, json=_chart_payload([10.0] * 6, [100] * 5 + [300]))

        outcome = _run_provider(YahooChartProvider, handler, settings=self.KEYED, with_supplement=True)
        r = outcome.record
        assert paths == ["/sma", "/sma", "/sma", "/rsi", "/quote"]
        assert r.peak == 20.0 and r.peak_source == "52w"
        assert r.pct_from_peak == pytest.approx(-50.0)
        assert r.months_in_consolidation == pytest.approx(5 / 21)
        assert r.near_peak is False and r.near_peak_close is False

    def test_52_week_high_within_touch_band_keeps_local_base(self):
        closes = [10.0, 10.0, 9.0, 9.0, 9.0, 9.0]

        def handler(request):
            if request.url.host == "api.twelvedata.com":
                if request.url.path == "/quote":
                    return httpx.Response(200, json={"fifty_two_week": {"high": "10.1"}})
                return httpx.Response(200, json={"values": []})
            return httpx.Response(200, json=_chart_payload(closes, [100] * 6))

        outcome = _run_provider(YahooChartProvider, handler, settings=self.KEYED, with_supplement=True)
        r = outcome.record
        assert r.peak == 10.1 and r.peak_source == "52w"
        assert r.months_in_consolidation == pytest.approx(4 / 21)

    def test_full_lookback_skips_quote(self):
        paths = []
        config = ScanConfig(peak_lookback=30)

        def handler(request):
            if request.url.host == "api.twelvedata.com":
                paths.append(request.url.path)
                return httpx.Response(200, json={"values": []})
            return httpx.Response(200, json=_chart_payload([20.0] * 30, [1000] * 30))

        _run_provider(YahooChartProvider, handler, settings=self.KEYED, config=config, with_supplement=True)
        assert "/quote" not in paths

    def test_supplement_requests_are_paced(self):
        sleeps = []
        config = ScanConfig(inter_request_delay_ms=250, request_jitter_ms=0)

        def handler(request):
            if request.url.host == "api.twelvedata.com":
                return httpx.Response(200, json={"values": []})
            return httpx.Response(200, json=_chart_payload([10.0] * 6, [100] * 6))

        _run_provider(
            YahooChartProvider, handler, settings=self.KEYED, config=config,
            with_supplement=True, sleeps=sleeps,
        )
        # five requests, paced between each
        assert sleeps == [0.25] * 4

    def test_supplement_failure_keeps_local_record(self):
        def handler(request):
            if request.url.host == "api.twelvedata.com":
                return httpx.Response(500)
            return httpx.Response(200, json=_chart_payload([20.0] * 30, [1000] * 30))

        outcome = _run_provider(YahooChartProvider, handler, settings=self.KEYED, with_supplement=True)
        assert outcome.ok
        assert outcome.record.sma21 == pytest.approx(20.0) and outcome.record.sma50 is None

    def test_supplement_52_week_high(self):
        record = MarketRecord(
            symbol="NEW", last_price=100.0, price_change=0.5,
            current_volume=2000, avg_volume=1000, rvol=2.0,
            sma21=99.0, sma50=98.0, sma200=97.0, rsi=55.0,
        )

        def handler(request):
            assert request.url.path == "/quote"
            return httpx.Response(200, json={"fifty_two_week": {"high": "125.0"}})

        async def _go():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                supplement = TwelveDataIndicatorSupplement(self.KEYED, client=client)
                return await supplement.fill(record, ScanConfig())

        filled = asyncio.run(_go())
        assert filled.peak == 125.0 and filled.peak_source == "52w"
        assert filled.pct_from_peak == pytest.approx(-20.0)
        assert filled.months_in_consolidation is None


# ─────────────────────────────────────────────────────────
# 5. yfinance adapter
# ─────────────────────────────────────────────────────────

class TestYFinanceProvider:
    def _run(self, history):
        ticker = MagicMock()
        if isinstance(history, Exception):
            ticker.history.side_effect = history
        else:
            ticker.history.return_value = history
        with patch("volume_radar.layers.providers.yf.Ticker", return_value=ticker):
            provider = YFinanceProvider(ScanConfig(), settings=VolumeRadarSettings())
            return asyncio.run(provider.fetch("AAPL"))

    def test_success(self):
        idx = pd.date_range("2024-01-01", periods=6, freq="D", name="Date")
        df = pd.DataFrame({"Close": [10, 10, 10, 10, 10, 9], "Volume": [100] * 5 + [400]}, index=idx)
        outcome = self._run(df)
        assert outcome.ok and outcome.record.source == "yfinance"
        assert outcome.record.rvol == pytest.approx(4.0)
        assert outcome.record.price_change == pytest.approx(-10.0)

    def test_empty_history(self):
        assert self._run(pd.DataFrame()).status == FetchStatus.NOT_FOUND

    def test_library_error_is_transient(self):
        assert self._run(Exception("Too Many Requests")).status == FetchStatus.TRANSIENT


# ─────────────────────────────────────────────────────────
# 6. Provider registry
# ─────────────────────────────────────────────────────────

class TestBuildProviders:
    def test_order_and_unknown(self):
        providers = build_providers(ScanConfig(), VolumeRadarSettings(), names=["twelvedata", "bogus", "yahoo"])
        assert [p.name for p in providers] == ["twelvedata", "yahoo"]

    def test_supplement_only_with_key(self):
        plain = build_providers(ScanConfig(), VolumeRadarSettings(TWELVE_DATA_API_KEY=""))
        assert all(p._supplement is None for p in plain)
        keyed = build_providers(ScanConfig(), VolumeRadarSettings(TWELVE_DATA_API_KEY="k"))
        by_name = {p.name: p for p in keyed}
        assert by_name["yahoo"]._supplement is not None
        assert by_name["twelvedata"]._supplement is None


# ─────────────────────────────────────────────────────────
# 7. Scan service
# ─────────────────────────────────────────────────────────

class TestScanService:
    MONDAY = datetime(2024, 1, 8, 22, 0, tzinfo=timezone.utc)
    SATURDAY = datetime(2024, 1, 6, 22, 0, tzinfo=timezone.utc)

    def test_normalize_watchlist(self):
        from volume_radar.services.scan_service import normalize_watchlist
        assert normalize_watchlist([" aapl", "MSFT", "", "AAPL", "nvda "]) == ["AAPL", "MSFT", "NVDA"]
        with pytest.raises(ValueError):
            normalize_watchlist(["  "])

    def test_market_status(self):
        from volume_radar.services.scan_service import check_market_status
        assert check_market_status(self.MONDAY).is_open
        closed = check_market_status(self.SATURDAY)
        assert not closed.is_open and "weekend" in closed.message

    def _service(self):
        from volume_radar.services.scan_service import ScanService
        provider = ScriptedProvider("p", {
            "NVDA": [FetchOutcome.success(_record("NVDA", rvol=5.0))],
            "AAPL": [FetchOutcome.success(_record("AAPL", rvol=1.2))],
        })
        svc = ScanService(providers=[provider])
        svc._acq = AcquisitionLayer(sleep=lambda s: asyncio.sleep(0), jitter=lambda: 0.0)
        return svc, provider

    def test_weekend_skipped(self):
        svc, provider = self._service()
        result = asyncio.run(svc.run(["NVDA"], FAST, now=self.SATURDAY))
        assert result.skipped and result.signals == []
        assert provider.calls == {}

    def test_weekend_forced(self):
        svc, _ = self._service()
        result = asyncio.run(svc.run(["NVDA"], FAST, force=True, now=self.SATURDAY))
        assert not result.skipped and [r.symbol for r in result.signals] == ["NVDA"]

    def test_end_to_end(self):
        svc, _ = self._service()
        result = asyncio.run(svc.run(["nvda", "AAPL", "gone"], FAST, now=self.MONDAY))
        assert result.total_scanned == 3
        assert [r.symbol for r in result.signals] == ["NVDA"]
        assert result.failed == ["GONE"]
        assert result.records_found == 2

    def test_zero_records_flagged(self):
        svc, _ = self._service()
        result = asyncio.run(svc.run(["GONE"], FAST, now=self.MONDAY))
        assert result.failed == ["GONE"] and result.message
