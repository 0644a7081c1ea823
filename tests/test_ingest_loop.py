"""Tests for the ingest loop: batching, checkpoints, cursor and failures."""
import pytest
from decimal import Decimal

from dataflow.consolidation.aggregator_set import AggregatorSet
from dataflow.ingestion.loop import IngestLoop, IngestSettings, IngestState
from dataflow.ingestion.sources.base import DataSourceError
from dataflow.persistence.sink import PersistenceError
from schemas.market_data import Resolution, TickType

from fakes import SYMBOL, InMemorySource, RecordingSink, trade, utc

DAY_START = utc(0)
DAY_END = utc(0, day=2)

TRADES = [
    trade(utc(12, 0, 10), 100, 2),
    trade(utc(12, 0, 40), 105, 3),
    trade(utc(12, 1, 5), 95, 7),
    trade(utc(12, 1, 30), 96, 1),
    trade(utc(12, 2, 0), 97, 1),
]


def make_loop(source, sink, resolutions=(Resolution.MINUTE, Resolution.HOUR),
              download=2, persist=4, start=DAY_START, end=DAY_END, checkpoints=True):
    return IngestLoop(
        source=source,
        sink=sink,
        aggregators=AggregatorSet(TickType.TRADE, resolutions),
        symbol=SYMBOL,
        start=start,
        end=end,
        settings=IngestSettings(download_batch_size=download, persist_batch_size=persist),
        checkpoints=sink if checkpoints else None,
    )


@pytest.mark.asyncio
async def test_consumes_window_and_persists_every_bar(sink):
    source = InMemorySource(TRADES)
    loop = make_loop(source, sink)

    result = await loop.run()

    assert result.events == 5
    assert result.exhausted is True
    assert result.checkpoints == 2
    assert result.cursor == utc(12, 2)
    assert loop.state is IngestState.DONE

    minutes = sink.bars(TickType.TRADE, Resolution.MINUTE)
    assert [bar.time for bar in minutes] == [utc(12), utc(12, 1), utc(12, 2)]
    assert minutes[0].volume == Decimal(5)
    assert minutes[1].volume == Decimal(8)
    assert minutes[1].close == Decimal(96)

    [hour] = sink.bars(TickType.TRADE, Resolution.HOUR)
    assert hour.volume == Decimal(14)
    assert (hour.open, hour.high, hour.low, hour.close) == (
        Decimal(100), Decimal(105), Decimal(95), Decimal(97)
    )


@pytest.mark.asyncio
async def test_pages_resume_at_last_timestamp(sink):
    source = InMemorySource(TRADES)

    await make_loop(source, sink).run()

    starts = [call[1] for call in source.calls]
    assert starts == [DAY_START, utc(12, 0, 40), utc(12, 1, 30), utc(12, 2)]
    assert all(call[2] == 2 for call in source.calls)
    assert all(call[3] == DAY_END for call in source.calls)


@pytest.mark.asyncio
async def test_late_item_at_page_end_is_dispatched_once(sink):
    # The page ends on a trade older than the newest one it returned
    source = InMemorySource([
        trade(utc(12, 0, 0), 100), trade(utc(12, 0, 5), 101), trade(utc(12, 0, 3), 102), trade(utc(12, 0, 6), 103),
    ])

    result = await make_loop(source, sink, download=3, persist=3).run()

    assert result.events == 4
    assert [call[1] for call in source.calls] == [DAY_START, utc(12, 0, 5), utc(12, 0, 6)]
    [hour] = sink.bars(TickType.TRADE, Resolution.HOUR)
    assert hour.volume == Decimal(4)
    assert hour.tick_count == 4


@pytest.mark.asyncio
async def test_intermediate_checkpoint_keeps_buckets_open(sink):
    await make_loop(InMemorySource(TRADES), sink).run()

    first_minute, first_hour, second_minute, second_hour = sink.calls
    assert first_minute[0] is Resolution.MINUTE
    # Finished 12:00 bar plus the provisional 12:01 bar
    assert [bar.time for bar in first_minute[2]] == [utc(12), utc(12, 1)]
    assert first_minute[2][1].volume == Decimal(8)
    assert [bar.volume for bar in first_hour[2]] == [Decimal(13)]

    # The final pass rewrites 12:01 under the same bucket start
    assert [bar.time for bar in second_minute[2]] == [utc(12, 1), utc(12, 2)]
    assert [bar.volume for bar in second_hour[2]] == [Decimal(14)]


@pytest.mark.asyncio
async def test_checkpoints_mark_the_unit_complete(sink):
    result = await make_loop(InMemorySource(TRADES), sink).run()

    checkpoint = sink.checkpoints[(SYMBOL, TickType.TRADE, DAY_START.date())]
    assert checkpoint.complete is True
    assert checkpoint.cursor == utc(12, 2)
    assert result.bars_persisted == {Resolution.MINUTE: 4, Resolution.HOUR: 2}
    assert result.total_bars == 6


@pytest.mark.asyncio
async def test_intermediate_checkpoint_is_not_complete():
    class StopAfterFirstCheckpoint(RecordingSink):
        async def save_checkpoint(self, symbol, tick_type, day, cursor, complete):
            await super().save_checkpoint(symbol, tick_type, day, cursor, complete)
            if not complete:
                raise PersistenceError("connection lost")

    sink = StopAfterFirstCheckpoint()
    loop = make_loop(InMemorySource(TRADES), sink)

    with pytest.raises(PersistenceError):
        await loop.run()

    checkpoint = sink.checkpoints[(SYMBOL, TickType.TRADE, DAY_START.date())]
    assert checkpoint.complete is False
    assert checkpoint.cursor == utc(12, 1, 30)
    assert loop.cursor.committed is None


@pytest.mark.asyncio
async def test_persist_failure_leaves_cursor_uncommitted():
    sink = RecordingSink(fail_on_call=1)
    loop = make_loop(InMemorySource(TRADES), sink)

    with pytest.raises(PersistenceError):
        await loop.run()

    assert loop.cursor.position == utc(12, 1, 30)
    assert loop.cursor.committed is None
    assert sink.checkpoints == {}


@pytest.mark.asyncio
async def test_fetch_failure_propagates_after_committed_checkpoint(sink):
    source = InMemorySource(TRADES, fail_on_call=2)
    loop = make_loop(source, sink, download=2, persist=2)

    with pytest.raises(DataSourceError) as excinfo:
        await loop.run()

    assert excinfo.value.status_code == 503
    assert loop.cursor.committed == utc(12, 0, 40)
    assert sink.checkpoints[(SYMBOL, TickType.TRADE, DAY_START.date())].complete is False


@pytest.mark.asyncio
async def test_items_at_or_after_end_are_not_dispatched(sink):
    source = InMemorySource(TRADES, ignore_end=True)
    loop = make_loop(source, sink, download=10, persist=10, end=utc(12, 1))

    result = await loop.run()

    assert result.events == 2
    assert result.exhausted is False
    assert len(source.calls) == 1
    assert [bar.time for bar in sink.bars(TickType.TRADE, Resolution.MINUTE)] == [utc(12)]
    assert sink.bars(TickType.TRADE, Resolution.HOUR)[0].volume == Decimal(5)


@pytest.mark.asyncio
async def test_open_ended_window_runs_until_exhausted(sink):
    loop = make_loop(InMemorySource(TRADES), sink, end=None, checkpoints=False)

    result = await loop.run()

    assert result.exhausted is True
    assert result.events == 5
    assert sink.checkpoints == {}


@pytest.mark.asyncio
async def test_replay_overwrites_with_identical_bars(sink):
    await make_loop(InMemorySource(TRADES), sink).run()
    first = dict(sink.stored)

    await make_loop(InMemorySource(TRADES), sink).run()

    assert sink.stored == first


@pytest.mark.asyncio
async def test_provisional_daily_bar_is_replaced_by_final(sink):
    loop = make_loop(InMemorySource(TRADES), sink, resolutions=(Resolution.DAILY,), download=1, persist=1)

    await loop.run()

    daily_writes = [call[2][0].volume for call in sink.calls]
    assert daily_writes == [Decimal(2), Decimal(5), Decimal(12), Decimal(13), Decimal(14), Decimal(14)]
    [daily] = sink.bars(TickType.TRADE, Resolution.DAILY)
    assert daily.volume == Decimal(14)
    assert daily.tick_count == 5


@pytest.mark.asyncio
async def test_empty_window_is_still_checkpointed(sink):
    result = await make_loop(InMemorySource([]), sink).run()

    assert result.events == 0
    assert result.exhausted is True
    assert sink.calls == []
    checkpoint = sink.checkpoints[(SYMBOL, TickType.TRADE, DAY_START.date())]
    assert checkpoint.complete is True
    assert checkpoint.cursor == DAY_END


@pytest.mark.asyncio
async def test_loop_runs_only_once(sink):
    loop = make_loop(InMemorySource(TRADES), sink)
    await loop.run()

    with pytest.raises(RuntimeError):
        await loop.run()


@pytest.mark.parametrize("download, persist", [(0, 10), (10, 0), (1000, 1500), (10, 5)])
def test_settings_require_persist_multiple_of_download(download, persist):
    with pytest.raises(ValueError):
        IngestSettings(download_batch_size=download, persist_batch_size=persist)


def test_default_settings():
    settings = IngestSettings()
    assert settings.download_batch_size == 1000
    assert settings.persist_batch_size == 10000
