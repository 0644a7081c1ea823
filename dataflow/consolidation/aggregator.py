"""
Bar Aggregator

Folds ticks (or finer bars) into bars of one resolution.

Each aggregator holds at most one open bucket. A bar is finalized when an
item for a later bucket arrives (roll-over) or when flush() forces it closed.
Finished bars wait in `pending` until the caller collects them.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Type, Union

from dataflow.consolidation.bucketing import bucket_start
from schemas.market_data import (
    Bar,
    DataPoint,
    Ohlc,
    QuoteBar,
    QuoteTick,
    Resolution,
    TickType,
    TradeBar,
    TradeTick,
)

logger = logging.getLogger(__name__)


class OhlcBuilder:
    """Running OHLC of a single price series"""

    def __init__(self):
        self.open: Optional[Decimal] = None
        self.high: Optional[Decimal] = None
        self.low: Optional[Decimal] = None
        self.close: Optional[Decimal] = None

    def add(self, open: Decimal, high: Decimal, low: Decimal, close: Decimal) -> None:
        if self.open is None:
            self.open = open
            self.high = high
            self.low = low

        self.high = max(self.high, high)
        self.low = min(self.low, low)
        self.close = close

    def add_price(self, price: Decimal) -> None:
        self.add(price, price, price, price)

    def is_empty(self) -> bool:
        return self.open is None

    def build(self) -> Optional[Ohlc]:
        if self.is_empty():
            return None
        return Ohlc(self.open, self.high, self.low, self.close)


class TradeBarBuilder:
    """Builds a trade bar from trade ticks or finer trade bars"""

    def __init__(self, symbol: str, resolution: Resolution, start_time: datetime):
        self.symbol = symbol
        self.resolution = resolution
        self.start_time = start_time
        self.prices = OhlcBuilder()
        self.volume = Decimal(0)
        self.tick_count = 0

    def add(self, item: Union[TradeTick, TradeBar]) -> None:
        if isinstance(item, TradeTick):
            self.prices.add_price(item.price)
            self.volume += item.size
            self.tick_count += 1
        else:
            self.prices.add(item.open, item.high, item.low, item.close)
            self.volume += item.volume
            self.tick_count += max(item.tick_count, 1)

    def is_empty(self) -> bool:
        return self.prices.is_empty()

    def build(self) -> TradeBar:
        if self.is_empty():
            raise ValueError("Cannot build empty trade bar")

        prices = self.prices
        return TradeBar(
            symbol=self.symbol,
            time=self.start_time,
            period=self.resolution.period,
            open=prices.open,
            high=prices.high,
            low=prices.low,
            close=prices.close,
            volume=self.volume,
            tick_count=self.tick_count,
        )


class QuoteBarBuilder:
    """
    Builds a quote bar from quote ticks or finer quote bars.

    Bid and ask are consolidated independently. A zero price leaves its
    side untouched.
    """

    def __init__(self, symbol: str, resolution: Resolution, start_time: datetime):
        self.symbol = symbol
        self.resolution = resolution
        self.start_time = start_time
        self.bid = OhlcBuilder()
        self.ask = OhlcBuilder()
        self.last_bid_size: Optional[Decimal] = None
        self.last_ask_size: Optional[Decimal] = None
        self.tick_count = 0

    def add(self, item: Union[QuoteTick, QuoteBar]) -> None:
        if isinstance(item, QuoteTick):
            if item.has_bid:
                self.bid.add_price(item.bid_price)
                self.last_bid_size = item.bid_size
            if item.has_ask:
                self.ask.add_price(item.ask_price)
                self.last_ask_size = item.ask_size
            self.tick_count += 1
            return

        if item.bid is not None:
            self.bid.add(item.bid.open, item.bid.high, item.bid.low, item.bid.close)
            if item.last_bid_size is not None:
                self.last_bid_size = item.last_bid_size
        if item.ask is not None:
            self.ask.add(item.ask.open, item.ask.high, item.ask.low, item.ask.close)
            if item.last_ask_size is not None:
                self.last_ask_size = item.last_ask_size
        self.tick_count += max(item.tick_count, 1)

    def is_empty(self) -> bool:
        return self.tick_count == 0

    def build(self) -> QuoteBar:
        if self.is_empty():
            raise ValueError("Cannot build empty quote bar")

        return QuoteBar(
            symbol=self.symbol,
            time=self.start_time,
            period=self.resolution.period,
            bid=self.bid.build(),
            ask=self.ask.build(),
            last_bid_size=self.last_bid_size,
            last_ask_size=self.last_ask_size,
            tick_count=self.tick_count,
        )


BarBuilder = Union[TradeBarBuilder, QuoteBarBuilder]

BUILDERS: Dict[TickType, Type] = {
    TickType.TRADE: TradeBarBuilder,
    TickType.QUOTE: QuoteBarBuilder,
}


class BarAggregator:
    """
    Consolidates one tick type into bars of one resolution.

    The native (tick) resolution turns every item into its own bar.

    Example usage:
        aggregator = BarAggregator(Resolution.MINUTE, TickType.TRADE)
        for tick in ticks:
            aggregator.update(tick)
        bars = aggregator.flush()
    """

    def __init__(self, resolution: Resolution, tick_type: TickType):
        self.resolution = resolution
        self.tick_type = tick_type
        self.out_of_order_count = 0

        self._builder_cls = BUILDERS[tick_type]
        self._builder: Optional[BarBuilder] = None
        self._pending: List[Bar] = []
        self._last_time: Optional[datetime] = None

    @property
    def current_bucket_start(self) -> Optional[datetime]:
        """Start of the open bucket, or None when nothing is open"""
        return self._builder.start_time if self._builder is not None else None

    @property
    def pending(self) -> List[Bar]:
        """Finished bars not yet collected (copy)"""
        return list(self._pending)

    def update(self, item: DataPoint) -> Optional[Bar]:
        """
        Fold one item into the aggregator.

        Returns the bar finalized by this call, if any. The bar is also
        queued in `pending` until the next flush().

        Raises:
            TypeError: If the item is of a different tick type
            ValueError: If the item is a bar coarser than this resolution
        """
        if item.tick_type is not self.tick_type:
            raise TypeError(
                f"{self.tick_type.value} aggregator cannot consume "
                f"{type(item).__name__}"
            )
        self._check_period(item)

        if self.resolution.is_native:
            return self._pass_through(item)

        start = bucket_start(item.time, self.resolution)

        # First item since the last flush
        if self._builder is None:
            self._open_bucket(start, item)
            return None

        current = self._builder.start_time

        if start == current:
            self._builder.add(item)
            return None

        if start > current:
            # Time has moved to a new bucket; empty buckets in between are skipped
            completed = self._builder.build()
            self._pending.append(completed)
            self._open_bucket(start, item)
            return completed

        self._record_out_of_order(item, current)
        self._builder.add(item)
        return None

    def flush(self) -> List[Bar]:
        """
        Close the open bucket (if any) and hand over every finished bar.

        Calling flush() again without an update in between returns [].
        """
        if self._builder is not None:
            self._pending.append(self._builder.build())
            self._builder = None

        bars = self._pending
        self._pending = []
        return bars

    def snapshot(self) -> List[Bar]:
        """
        Hand over every finished bar plus a provisional bar for the open bucket.

        Unlike flush(), the open bucket stays open and keeps accumulating; its
        final bar is emitted later for the same bucket start.
        """
        bars = self._pending
        self._pending = []
        if self._builder is not None:
            bars.append(self._builder.build())
        return bars

    def _open_bucket(self, start: datetime, item: DataPoint) -> None:
        self._builder = self._builder_cls(item.symbol, self.resolution, start)
        self._builder.add(item)

    def _pass_through(self, item: DataPoint) -> Bar:
        if self._last_time is not None and item.time < self._last_time:
            self._record_out_of_order(item, self._last_time)
        else:
            self._last_time = item.time

        builder = self._builder_cls(item.symbol, self.resolution, item.time)
        builder.add(item)
        bar = builder.build()
        self._pending.append(bar)
        return bar

    def _check_period(self, item: DataPoint) -> None:
        period = getattr(item, "period", None)
        if period is None or self.resolution.is_native:
            return
        if period > self.resolution.period:
            raise ValueError(
                f"Cannot consolidate {period} bars into {self.resolution.value} bars"
            )

    def _record_out_of_order(self, item: DataPoint, current: datetime) -> None:
        self.out_of_order_count += 1
        logger.warning(
            f"Out-of-order {self.tick_type.value} for {item.symbol} "
            f"({self.resolution.value}): {item.time.isoformat()} is before "
            f"{current.isoformat()}; folded into the open bucket"
        )
