"""
TimescaleDB Sink

Durable storage for consolidated bars and ingest checkpoints.

Tables:
- trade_bars          -> TradeBar rows keyed by (symbol, resolution, time, seq)
- quote_bars          -> QuoteBar rows keyed by (symbol, resolution, time, seq)
- ingest_checkpoints  -> one cursor per (symbol, tick_type, day)

Writes are upserts, so re-persisting a bucket overwrites the previous row
for the same bucket start instead of duplicating it.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import asyncpg

from schemas.market_data import Bar, QuoteBar, Resolution, TickType, TradeBar

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Bars or checkpoints could not be written durably"""


@dataclass
class Checkpoint:
    """Progress of one unit of work"""
    symbol: str
    tick_type: TickType
    day: date
    cursor: datetime
    complete: bool = False


class BarSink(Protocol):
    """Receives finished bars, grouped by resolution and tick type"""

    async def persist(self, resolution: Resolution, tick_type: TickType, bars: Sequence[Bar]) -> None:
        """
        Durably write bars; must be safe to call again for overlapping ranges.

        Raises:
            PersistenceError: If the bars could not be written
        """
        ...

    async def begin_unit(self, symbol: str, tick_type: TickType) -> None:
        """Called before a unit of work (re)starts streaming its window"""
        ...


class CheckpointStore(Protocol):
    """Keeps the resumable cursor of each unit of work"""

    async def load_checkpoint(self, symbol: str, tick_type: TickType, day: date) -> Optional[Checkpoint]:
        ...

    async def save_checkpoint(
        self, symbol: str, tick_type: TickType, day: date, cursor: datetime, complete: bool
    ) -> None:
        ...


SCHEMA = """
CREATE TABLE IF NOT EXISTS trade_bars (
    time        TIMESTAMPTZ NOT NULL,
    symbol      TEXT        NOT NULL,
    resolution  TEXT        NOT NULL,
    seq         INTEGER     NOT NULL DEFAULT 0,
    period      INTERVAL    NOT NULL,
    open        NUMERIC     NOT NULL,
    high        NUMERIC     NOT NULL,
    low         NUMERIC     NOT NULL,
    close       NUMERIC     NOT NULL,
    volume      NUMERIC     NOT NULL,
    tick_count  INTEGER     NOT NULL,
    PRIMARY KEY (symbol, resolution, time, seq)
);

CREATE TABLE IF NOT EXISTS quote_bars (
    time           TIMESTAMPTZ NOT NULL,
    symbol         TEXT        NOT NULL,
    resolution     TEXT        NOT NULL,
    seq            INTEGER     NOT NULL DEFAULT 0,
    period         INTERVAL    NOT NULL,
    bid_open       NUMERIC,
    bid_high       NUMERIC,
    bid_low        NUMERIC,
    bid_close      NUMERIC,
    ask_open       NUMERIC,
    ask_high       NUMERIC,
    ask_low        NUMERIC,
    ask_close      NUMERIC,
    last_bid_size  NUMERIC,
    last_ask_size  NUMERIC,
    tick_count     INTEGER     NOT NULL,
    PRIMARY KEY (symbol, resolution, time, seq)
);

CREATE TABLE IF NOT EXISTS ingest_checkpoints (
    symbol      TEXT        NOT NULL,
    tick_type   TEXT        NOT NULL,
    day         DATE        NOT NULL,
    cursor      TIMESTAMPTZ NOT NULL,
    complete    BOOLEAN     NOT NULL DEFAULT FALSE,
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (symbol, tick_type, day)
);
"""

INSERT_TRADE_BARS = """
INSERT INTO trade_bars (time, symbol, resolution, seq, period, open, high, low, close, volume, tick_count)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
ON CONFLICT (symbol, resolution, time, seq) DO UPDATE SET
    period = EXCLUDED.period,
    open = EXCLUDED.open,
    high = EXCLUDED.high,
    low = EXCLUDED.low,
    close = EXCLUDED.close,
    volume = EXCLUDED.volume,
    tick_count = EXCLUDED.tick_count
"""

INSERT_QUOTE_BARS = """
INSERT INTO quote_bars (
    time, symbol, resolution, seq, period,
    bid_open, bid_high, bid_low, bid_close,
    ask_open, ask_high, ask_low, ask_close,
    last_bid_size, last_ask_size, tick_count
)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
ON CONFLICT (symbol, resolution, time, seq) DO UPDATE SET
    period = EXCLUDED.period,
    bid_open = EXCLUDED.bid_open,
    bid_high = EXCLUDED.bid_high,
    bid_low = EXCLUDED.bid_low,
    bid_close = EXCLUDED.bid_close,
    ask_open = EXCLUDED.ask_open,
    ask_high = EXCLUDED.ask_high,
    ask_low = EXCLUDED.ask_low,
    ask_close = EXCLUDED.ask_close,
    last_bid_size = EXCLUDED.last_bid_size,
    last_ask_size = EXCLUDED.last_ask_size,
    tick_count = EXCLUDED.tick_count
"""

UPSERT_CHECKPOINT = """
INSERT INTO ingest_checkpoints (symbol, tick_type, day, cursor, complete, updated_at)
VALUES ($1, $2, $3, $4, $5, now())
ON CONFLICT (symbol, tick_type, day) DO UPDATE SET
    cursor = EXCLUDED.cursor,
    complete = EXCLUDED.complete,
    updated_at = now()
"""

SELECT_CHECKPOINT = """
SELECT symbol, tick_type, day, cursor, complete
FROM ingest_checkpoints
WHERE symbol = $1 AND tick_type = $2 AND day = $3
"""


def trade_bar_row(bar: TradeBar, resolution: Resolution, seq: int) -> tuple:
    return (
        bar.time,
        bar.symbol,
        resolution.value,
        seq,
        bar.period,
        bar.open,
        bar.high,
        bar.low,
        bar.close,
        bar.volume,
        bar.tick_count,
    )


def quote_bar_row(bar: QuoteBar, resolution: Resolution, seq: int) -> tuple:
    bid, ask = bar.bid, bar.ask
    return (
        bar.time,
        bar.symbol,
        resolution.value,
        seq,
        bar.period,
        bid.open if bid else None,
        bid.high if bid else None,
        bid.low if bid else None,
        bid.close if bid else None,
        ask.open if ask else None,
        ask.high if ask else None,
        ask.low if ask else None,
        ask.close if ask else None,
        bar.last_bid_size,
        bar.last_ask_size,
        bar.tick_count,
    )


class TickSequencer:
    """
    Numbers native bars that share a timestamp.

    Time resolutions always get seq 0. Tick bars get 0, 1, 2... for each run
    of equal timestamps, carried across persist calls so a run split by a
    checkpoint keeps counting. Numbering only moves on once a write has been
    committed, and a unit of work that replays its window starts from reset()
    so the replay produces the same keys as the first attempt.
    """

    def __init__(self):
        self._last: Dict[Tuple[str, TickType], Tuple[datetime, int]] = {}

    def number(self, resolution: Resolution, tick_type: TickType, bars: Sequence[Bar]) -> List[int]:
        if not resolution.is_native:
            return [0] * len(bars)

        last = dict(self._last)
        seqs = []
        for bar in bars:
            key = (bar.symbol, tick_type)
            previous = last.get(key)
            seq = previous[1] + 1 if previous is not None and previous[0] == bar.time else 0
            last[key] = (bar.time, seq)
            seqs.append(seq)
        return seqs

    def commit(self, resolution: Resolution, tick_type: TickType, bars: Sequence[Bar], seqs: Sequence[int]) -> None:
        """Record numbers handed out by a successful write"""
        if not resolution.is_native:
            return
        for bar, seq in zip(bars, seqs):
            self._last[(bar.symbol, tick_type)] = (bar.time, seq)

    def reset(self, symbol: str, tick_type: TickType) -> None:
        self._last.pop((symbol, tick_type), None)


class TimescaleBarSink:
    """
    Persists bars and checkpoints to TimescaleDB (or plain PostgreSQL).

    Features:
    - Batch upserts per resolution
    - Checkpoint table for resumable downloads
    - Failures raise PersistenceError instead of being retried silently
    """

    def __init__(
        self,
        db_url: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
        command_timeout: float = 60,
    ):
        self.db_url = db_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout = command_timeout

        self._pool: Optional[asyncpg.Pool] = None
        self._sequencer = TickSequencer()

        # Metrics
        self.bars_written = 0

    async def connect(self) -> None:
        """Connect to TimescaleDB and create tables if missing"""
        logger.info("Connecting to TimescaleDB...")

        try:
            self._pool = await asyncpg.create_pool(
                self.db_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout,
            )
            async with self._pool.acquire() as conn:
                await conn.execute(SCHEMA)
        except (OSError, asyncpg.PostgresError) as e:
            raise PersistenceError(f"Failed to connect to TimescaleDB: {e}") from e

        logger.info("Connected to TimescaleDB")

    async def close(self) -> None:
        """Close database connection"""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info(f"TimescaleDB connection closed ({self.bars_written} bars written)")

    async def persist(self, resolution: Resolution, tick_type: TickType, bars: Sequence[Bar]) -> None:
        """Upsert bars of one resolution and tick type"""
        if not bars:
            return

        seqs = self._sequencer.number(resolution, tick_type, bars)
        if tick_type is TickType.TRADE:
            query = INSERT_TRADE_BARS
            rows = [trade_bar_row(bar, resolution, seq) for bar, seq in zip(bars, seqs)]
        else:
            query = INSERT_QUOTE_BARS
            rows = [quote_bar_row(bar, resolution, seq) for bar, seq in zip(bars, seqs)]

        await self._execute_many(query, rows, f"{len(bars)} {tick_type.value} {resolution.value} bars")
        self._sequencer.commit(resolution, tick_type, bars, seqs)

        self.bars_written += len(bars)
        logger.debug(
            f"Persisted {len(bars)} {tick_type.value} {resolution.value} bars "
            f"(total: {self.bars_written})"
        )

    async def begin_unit(self, symbol: str, tick_type: TickType) -> None:
        self._sequencer.reset(symbol, tick_type)

    async def load_checkpoint(self, symbol: str, tick_type: TickType, day: date) -> Optional[Checkpoint]:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(SELECT_CHECKPOINT, symbol, tick_type.value, day)
        except (OSError, asyncpg.PostgresError) as e:
            raise PersistenceError(f"Failed to load checkpoint for {symbol} {tick_type.value} {day}: {e}") from e

        if row is None:
            return None
        return Checkpoint(
            symbol=row["symbol"],
            tick_type=TickType(row["tick_type"]),
            day=row["day"],
            cursor=row["cursor"],
            complete=row["complete"],
        )

    async def save_checkpoint(
        self, symbol: str, tick_type: TickType, day: date, cursor: datetime, complete: bool
    ) -> None:
        await self._execute_many(
            UPSERT_CHECKPOINT,
            [(symbol, tick_type.value, day, cursor, complete)],
            f"checkpoint {symbol} {tick_type.value} {day}",
        )

    async def _execute_many(self, query: str, rows: List[tuple], what: str) -> None:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.executemany(query, rows)
        except (OSError, asyncpg.PostgresError) as e:
            logger.error(f"Failed to persist {what}: {e}")
            raise PersistenceError(f"Failed to persist {what}: {e}") from e

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise PersistenceError("TimescaleDB sink is not connected")
        return self._pool
