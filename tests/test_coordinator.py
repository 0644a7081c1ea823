"""Tests for the download coordinator and the downloader entry point."""
import pytest
from datetime import date
from decimal import Decimal

from dataflow.ingestion.sources.base import DataSourceError
from schemas.market_data import Resolution, TickType
from toolbox.config.loader import DownloaderConfig
from toolbox.runtime.coordinator import DownloadCoordinator, UnitOfWork, iter_days
from toolbox.runtime.main import EXIT_CONFIG_ERROR, main, parse_date

from fakes import SYMBOL, InMemorySource, RecordingSink, quote, trade, utc

ITEMS = [
    trade(utc(12, 0, 10), 100, 2),
    trade(utc(12, 0, 40), 105, 3),
    quote(utc(12, 0, 20), 99, 101),
    trade(utc(9, 0, 0, day=2), 110, 1),
    quote(utc(9, 0, 5, day=2), 109, 111),
]


def make_config(**overrides) -> DownloaderConfig:
    values = dict(
        tickers=["ETH_USDT"],
        exchange="BINANCE",
        api_key="key",
        start_date=date(2019, 1, 1),
        end_date=date(2019, 1, 2),
        resolutions=[Resolution.MINUTE, Resolution.DAILY],
        download_batch_size=10,
        persist_batch_size=10,
        retry_delay=0,
    )
    values.update(overrides)
    return DownloaderConfig(**values)


class SourceFactory:
    """Hands out a new source per attempt, failing the first `failures` fetches"""

    def __init__(self, items, failures=0):
        self.items = items
        self.failures = failures
        self.sources = []

    def __call__(self, ticker):
        fail = 1 if len(self.sources) < self.failures else None
        source = InMemorySource(self.items, fail_on_call=fail)
        self.sources.append(source)
        return source


def test_unit_of_work_window():
    unit = UnitOfWork(SYMBOL, date(2019, 1, 1), TickType.TRADE)
    assert unit.start == utc(0)
    assert unit.end == utc(0, day=2)
    assert str(unit) == "ETHUSDT trade 2019-01-01"


def test_iter_days_is_inclusive():
    assert list(iter_days(date(2019, 1, 30), date(2019, 2, 1))) == [
        date(2019, 1, 30), date(2019, 1, 31), date(2019, 2, 1)
    ]
    assert list(iter_days(date(2019, 1, 2), date(2019, 1, 1))) == []


@pytest.mark.asyncio
async def test_runs_every_day_and_tick_type(sink):
    coordinator = DownloadCoordinator(make_config(), SourceFactory(ITEMS), sink, checkpoints=sink)

    outcomes = await coordinator.run()

    assert [(o.unit.day.day, o.unit.tick_type) for o in outcomes] == [
        (1, TickType.TRADE), (1, TickType.QUOTE), (2, TickType.TRADE), (2, TickType.QUOTE)
    ]
    assert all(o.succeeded and o.attempts == 1 for o in outcomes)
    assert [o.result.events for o in outcomes] == [2, 1, 1, 1]

    dailies = sink.bars(TickType.TRADE, Resolution.DAILY)
    assert [(b.symbol, b.time, b.volume) for b in dailies] == [
        (SYMBOL, utc(0), Decimal(5)),
        (SYMBOL, utc(0, day=2), Decimal(1)),
    ]
    assert all(c.complete for c in sink.checkpoints.values())
    assert len(sink.checkpoints) == 4


@pytest.mark.asyncio
async def test_complete_units_are_skipped(sink):
    config = make_config(end_date=date(2019, 1, 1))
    await sink.save_checkpoint(SYMBOL, TickType.TRADE, date(2019, 1, 1), utc(23), True)
    await sink.save_checkpoint(SYMBOL, TickType.QUOTE, date(2019, 1, 1), utc(12), False)

    outcomes = await DownloadCoordinator(config, SourceFactory(ITEMS), sink, checkpoints=sink).run()

    trade_outcome, quote_outcome = outcomes
    assert trade_outcome.skipped and trade_outcome.succeeded
    assert trade_outcome.attempts == 0
    # Incomplete units replay the whole day
    assert not quote_outcome.skipped
    assert quote_outcome.result.events == 1
    assert sink.bars(TickType.TRADE, Resolution.MINUTE) == []


@pytest.mark.asyncio
async def test_transient_failures_are_retried(sink, caplog):
    config = make_config(end_date=date(2019, 1, 1), retry_delay=0.01, max_attempts=3)
    factory = SourceFactory(ITEMS, failures=1)

    outcomes = await DownloadCoordinator(config, factory, sink, checkpoints=sink).run()

    assert all(o.succeeded for o in outcomes)
    assert sorted(o.attempts for o in outcomes) == [1, 2]
    assert len(factory.sources) == 3
    # Every attempt restarts the unit on the sink
    assert len(sink.units) == 3
    assert "Attempt 1/3" in caplog.text
    assert all(c.complete for c in sink.checkpoints.values())


@pytest.mark.asyncio
async def test_failed_unit_does_not_stop_the_others(sink):
    class FlakyQuotes(InMemorySource):
        async def fetch(self, tick_type, start, max_count, end=None):
            if tick_type is TickType.QUOTE:
                raise DataSourceError("quotes unavailable", status_code=500)
            return await super().fetch(tick_type, start, max_count, end)

    config = make_config(max_attempts=2)
    outcomes = await DownloadCoordinator(config, lambda ticker: FlakyQuotes(ITEMS), sink, checkpoints=sink).run()

    failed = [o for o in outcomes if not o.succeeded]
    assert [o.unit.tick_type for o in failed] == [TickType.QUOTE, TickType.QUOTE]
    assert all(o.attempts == 2 and isinstance(o.error, DataSourceError) for o in failed)
    assert len(sink.bars(TickType.TRADE, Resolution.DAILY)) == 2


@pytest.mark.asyncio
async def test_persist_failure_is_reported_for_the_unit():
    sink = RecordingSink(fail_on_call=1)
    config = make_config(end_date=date(2019, 1, 1), max_attempts=1)

    outcomes = await DownloadCoordinator(config, SourceFactory(ITEMS), sink, checkpoints=sink).run()

    assert sum(not o.succeeded for o in outcomes) == 1


def test_parse_date_formats():
    assert parse_date("20190101-00:00:00") == date(2019, 1, 1)
    assert parse_date("20190107") == date(2019, 1, 7)
    assert parse_date("2019-01-07") == date(2019, 1, 7)


def test_main_rejects_incomplete_configuration(monkeypatch):
    monkeypatch.delenv("COINAPI_API_KEY", raising=False)

    assert main(["--tickers", "ETH_USDT", "--exchange", "BINANCE"]) == EXIT_CONFIG_ERROR


def test_main_rejects_bad_dates():
    with pytest.raises(SystemExit):
        main(["--from-date", "yesterday"])
