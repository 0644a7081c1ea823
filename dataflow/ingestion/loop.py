"""
Ingest Loop

Drives one unit of work: pull batches from a data source, fan every item out
to an AggregatorSet, and periodically checkpoint finished bars to a sink.

    IDLE -> FETCHING_BATCH -> DISPATCHING -> (PERSISTING) -> FETCHING_BATCH ... -> DONE

The loop stops when the source is exhausted or the cursor reaches the end of
the unit's window, then persists one last time with every bucket closed.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from dataflow.consolidation.aggregator_set import AggregatorSet
from dataflow.ingestion.sources.base import TickSource
from dataflow.persistence.sink import BarSink, CheckpointStore
from schemas.market_data import Resolution, TickType

logger = logging.getLogger(__name__)


class IngestState(str, Enum):
    IDLE = "idle"
    FETCHING_BATCH = "fetching_batch"
    DISPATCHING = "dispatching"
    PERSISTING = "persisting"
    DONE = "done"


@dataclass
class IngestSettings:
    """Batch sizes of the ingest loop"""
    download_batch_size: int = 1000
    persist_batch_size: int = 10000

    def __post_init__(self):
        if self.download_batch_size <= 0:
            raise ValueError("download_batch_size must be positive")
        if self.persist_batch_size <= 0 or self.persist_batch_size % self.download_batch_size:
            raise ValueError(
                f"persist_batch_size ({self.persist_batch_size}) must be a positive multiple "
                f"of download_batch_size ({self.download_batch_size})"
            )


@dataclass
class Cursor:
    """
    Resume position of a unit of work.

    `position` is the latest time consumed and never moves backwards.
    `committed` is the position at the last successful checkpoint.
    """
    position: Optional[datetime] = None
    committed: Optional[datetime] = None

    def advance(self, time: datetime) -> None:
        if self.position is None or time > self.position:
            self.position = time

    def commit(self) -> None:
        self.committed = self.position


@dataclass
class IngestResult:
    """Summary of a finished unit of work"""
    symbol: str
    tick_type: TickType
    events: int
    checkpoints: int
    out_of_order: int
    cursor: Optional[datetime]
    exhausted: bool
    bars_persisted: Dict[Resolution, int] = field(default_factory=dict)

    @property
    def total_bars(self) -> int:
        return sum(self.bars_persisted.values())


class IngestLoop:
    """
    Runs one (symbol, tick type, window) unit of work.

    Example usage:
        loop = IngestLoop(
            source=source,
            sink=sink,
            aggregators=AggregatorSet(TickType.TRADE),
            symbol="ETHUSDT",
            start=day_start,
            end=day_end,
        )
        result = await loop.run()

    Fetch failures (DataSourceError) and sink failures (PersistenceError)
    propagate to the caller. The cursor is only committed once a checkpoint
    has been fully accepted by the sink.
    """

    def __init__(
        self,
        source: TickSource,
        sink: BarSink,
        aggregators: AggregatorSet,
        symbol: str,
        start: datetime,
        end: Optional[datetime] = None,
        settings: Optional[IngestSettings] = None,
        checkpoints: Optional[CheckpointStore] = None,
    ):
        self.source = source
        self.sink = sink
        self.aggregators = aggregators
        self.tick_type = aggregators.tick_type
        self.symbol = symbol
        self.start = start
        self.end = end
        self.settings = settings or IngestSettings()
        self.checkpoints = checkpoints

        self.state = IngestState.IDLE
        self.cursor = Cursor()
        self.event_count = 0
        self.checkpoint_count = 0
        self._bars_persisted: Dict[Resolution, int] = defaultdict(int)

    @property
    def unit(self) -> str:
        return f"{self.symbol} {self.tick_type.value} {self.start.date()}"

    def _reached_end(self) -> bool:
        return (
            self.end is not None
            and self.cursor.position is not None
            and self.cursor.position >= self.end
        )

    async def run(self) -> IngestResult:
        """Consume the window and persist every bar; returns a summary"""
        if self.state is not IngestState.IDLE:
            raise RuntimeError(f"Ingest loop for {self.unit} already ran")

        logger.info(f"Starting ingest for {self.unit}")
        await self.sink.begin_unit(self.symbol, self.tick_type)
        batch_size = self.settings.download_batch_size
        exhausted = False

        while not self._reached_end():
            self.state = IngestState.FETCHING_BATCH
            fetch_start = self.cursor.position or self.start
            batch = await self.source.fetch(self.tick_type, fetch_start, batch_size, end=self.end)

            if not batch:
                exhausted = True
                break

            logger.debug(f"Fetched {len(batch)} items for {self.unit} from {fetch_start.isoformat()}")

            self.state = IngestState.DISPATCHING
            for item in batch:
                if self.end is not None and item.time >= self.end:
                    # Belongs to the next unit of work
                    self.cursor.advance(item.time)
                    break

                self.aggregators.update(item)
                self.cursor.advance(item.time)
                self.event_count += 1

                if self.event_count % self.settings.persist_batch_size == 0:
                    await self._persist(final=False)
                    self.state = IngestState.DISPATCHING

        await self._persist(final=True)
        self.state = IngestState.DONE

        result = IngestResult(
            symbol=self.symbol,
            tick_type=self.tick_type,
            events=self.event_count,
            checkpoints=self.checkpoint_count,
            out_of_order=self.aggregators.out_of_order_count,
            cursor=self.cursor.committed,
            exhausted=exhausted,
            bars_persisted=dict(self._bars_persisted),
        )

        logger.info(
            f"Finished ingest for {self.unit}: {result.events} events, "
            f"{result.total_bars} bars, {result.checkpoints} checkpoints"
            + (f", {result.out_of_order} out-of-order" if result.out_of_order else "")
        )
        return result

    async def _persist(self, final: bool) -> None:
        """
        Hand finished bars to the sink and commit the cursor.

        Intermediate checkpoints keep open buckets open and write a provisional
        bar for each; the final checkpoint closes every bucket.
        """
        self.state = IngestState.PERSISTING

        if final:
            groups = self.aggregators.flush_all()
        else:
            groups = self.aggregators.snapshot_all()

        for resolution, bars in groups.items():
            if not bars:
                continue
            await self.sink.persist(resolution, self.tick_type, bars)
            self._bars_persisted[resolution] += len(bars)

        checkpoint_time = self.cursor.position
        if checkpoint_time is None and final:
            # Empty window: still mark the unit complete
            checkpoint_time = self.end or self.start

        if self.checkpoints is not None and checkpoint_time is not None:
            await self.checkpoints.save_checkpoint(
                self.symbol,
                self.tick_type,
                self.start.date(),
                checkpoint_time,
                final,
            )

        self.cursor.commit()
        self.checkpoint_count += 1

        logger.info(
            f"{'Final' if final else 'Intermediate'} checkpoint for {self.unit}: "
            f"{self.event_count} events, cursor "
            f"{self.cursor.committed.isoformat() if self.cursor.committed else '-'}"
        )
