"""
Download Coordinator

Splits a download into units of work (symbol, UTC day, tick type) and runs
them through the ingest loop.

Trade and quote units of the same day run concurrently; days run in order.
A failed unit is reported and does not stop the other units.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Iterator, List, Optional

from dataflow.consolidation.aggregator_set import AggregatorSet
from dataflow.ingestion.loop import IngestLoop, IngestResult
from dataflow.ingestion.sources.base import DataSourceError, TickSource
from dataflow.persistence.sink import BarSink, CheckpointStore, PersistenceError
from schemas.market_data import TickType
from toolbox.config.loader import DownloaderConfig

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (DataSourceError, PersistenceError)


@dataclass(frozen=True)
class UnitOfWork:
    """One (symbol, day, tick type) ingest"""
    symbol: str
    day: date
    tick_type: TickType

    @property
    def start(self) -> datetime:
        return datetime.combine(self.day, time.min, tzinfo=timezone.utc)

    @property
    def end(self) -> datetime:
        return self.start + timedelta(days=1)

    def __str__(self) -> str:
        return f"{self.symbol} {self.tick_type.value} {self.day.isoformat()}"


@dataclass
class UnitOutcome:
    """How a unit of work ended"""
    unit: UnitOfWork
    result: Optional[IngestResult] = None
    error: Optional[Exception] = None
    attempts: int = 0
    skipped: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None


def iter_days(start: date, end: date) -> Iterator[date]:
    """Every day in [start, end]"""
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)


class DownloadCoordinator:
    """
    Coordinates the download of every configured ticker and day.

    Example usage:
        coordinator = DownloadCoordinator(
            config=config,
            source_factory=lambda ticker: CoinApiSource(...),
            sink=sink,
            checkpoints=sink,
        )
        outcomes = await coordinator.run()
    """

    def __init__(
        self,
        config: DownloaderConfig,
        source_factory: Callable[[str], TickSource],
        sink: BarSink,
        checkpoints: Optional[CheckpointStore] = None,
        symbol_for: Callable[[str], str] = lambda ticker: ticker.replace("_", "").upper(),
    ):
        """
        Args:
            config: Validated downloader settings
            source_factory: Creates the data source of one ticker, once per attempt
            sink: Destination of finished bars
            checkpoints: Optional store used to skip completed units
            symbol_for: Maps a configured ticker to the stored symbol
        """
        self.config = config
        self.source_factory = source_factory
        self.sink = sink
        self.checkpoints = checkpoints
        self.symbol_for = symbol_for

    async def run(self) -> List[UnitOutcome]:
        """Download every ticker over the configured date range"""
        outcomes: List[UnitOutcome] = []

        for ticker in self.config.tickers:
            for day in iter_days(self.config.start_date, self.config.end_date):
                logger.info(f"Downloading data for {ticker} on {day.isoformat()}")
                outcomes.extend(await self.run_day(ticker, day))

        failed = [o for o in outcomes if not o.succeeded]
        logger.info(
            f"Download finished: {len(outcomes)} units, "
            f"{sum(o.skipped for o in outcomes)} skipped, {len(failed)} failed"
        )
        return outcomes

    async def run_day(self, ticker: str, day: date) -> List[UnitOutcome]:
        """Run the trade and quote units of one day concurrently"""
        symbol = self.symbol_for(ticker)
        units = [UnitOfWork(symbol, day, tick_type) for tick_type in TickType]
        outcomes = await asyncio.gather(*(self.run_unit(unit, ticker) for unit in units))
        return list(outcomes)

    async def run_unit(self, unit: UnitOfWork, ticker: str) -> UnitOutcome:
        """
        Run one unit of work, retrying transient failures.

        Every attempt replays the whole day from a new source into fresh
        aggregators; upserts in the sink make the replay idempotent.
        """
        if self.checkpoints is not None:
            try:
                checkpoint = await self.checkpoints.load_checkpoint(unit.symbol, unit.tick_type, unit.day)
            except PersistenceError as e:
                logger.error(f"Cannot read checkpoint for {unit}: {e}")
                return UnitOutcome(unit=unit, error=e)
            if checkpoint is not None and checkpoint.complete:
                logger.info(f"Skipping {unit}: already complete (cursor {checkpoint.cursor.isoformat()})")
                return UnitOutcome(unit=unit, skipped=True)

        outcome = UnitOutcome(unit=unit)
        for attempt in range(1, self.config.max_attempts + 1):
            outcome.attempts = attempt
            loop = IngestLoop(
                source=self.source_factory(ticker),
                sink=self.sink,
                aggregators=AggregatorSet(unit.tick_type, self.config.resolutions),
                symbol=unit.symbol,
                start=unit.start,
                end=unit.end,
                settings=self.config.ingest_settings(),
                checkpoints=self.checkpoints,
            )

            try:
                outcome.result = await loop.run()
                outcome.error = None
                return outcome
            except RETRYABLE_ERRORS as e:
                outcome.error = e
                logger.warning(
                    f"Attempt {attempt}/{self.config.max_attempts} for {unit} failed "
                    f"after {loop.event_count} events: {e}"
                )
                if attempt < self.config.max_attempts:
                    await asyncio.sleep(self.config.retry_delay)

        logger.error(f"Giving up on {unit} after {outcome.attempts} attempts: {outcome.error}")
        return outcome
