"""
Aggregator Set

One BarAggregator per resolution for a single tick type. Every item is fanned
out to all members; results stay grouped per resolution.
"""

import logging
from typing import Dict, List, Sequence

from dataflow.consolidation.aggregator import BarAggregator
from schemas.market_data import Bar, DataPoint, Resolution, TickType

logger = logging.getLogger(__name__)

DEFAULT_RESOLUTIONS = (
    Resolution.TICK,
    Resolution.SECOND,
    Resolution.MINUTE,
    Resolution.HOUR,
    Resolution.DAILY,
)


class AggregatorSet:
    """
    Aggregators for one tick type, ordered from finest to coarsest resolution.

    Example usage:
        trades = AggregatorSet(TickType.TRADE)
        for tick in ticks:
            trades.update(tick)

        for resolution, bars in trades.flush_all().items():
            await sink.persist(resolution, TickType.TRADE, bars)
    """

    def __init__(self, tick_type: TickType, resolutions: Sequence[Resolution] = DEFAULT_RESOLUTIONS):
        """
        Args:
            tick_type: Tick type every member consumes
            resolutions: Distinct resolutions in coarsening order

        Raises:
            ValueError: If resolutions are empty, repeated or out of order
        """
        resolutions = [Resolution(r) for r in resolutions]
        if not resolutions:
            raise ValueError("At least one resolution is required")
        for finer, coarser in zip(resolutions, resolutions[1:]):
            if finer.period >= coarser.period:
                raise ValueError(
                    f"Resolutions must be distinct and ordered finest to coarsest, "
                    f"got {[r.value for r in resolutions]}"
                )

        self.tick_type = tick_type
        self.aggregators = [BarAggregator(r, tick_type) for r in resolutions]

        logger.debug(
            f"AggregatorSet initialized for {tick_type.value}: "
            f"{[r.value for r in resolutions]}"
        )

    @property
    def resolutions(self) -> List[Resolution]:
        return [a.resolution for a in self.aggregators]

    @property
    def out_of_order_count(self) -> int:
        return sum(a.out_of_order_count for a in self.aggregators)

    def update(self, item: DataPoint) -> List[Bar]:
        """Feed one item to every aggregator; returns the bars it finalized"""
        if item.tick_type is not self.tick_type:
            raise TypeError(
                f"{self.tick_type.value} aggregators cannot consume {type(item).__name__}"
            )

        completed = []
        for aggregator in self.aggregators:
            bar = aggregator.update(item)
            if bar is not None:
                completed.append(bar)
        return completed

    def flush_all(self) -> Dict[Resolution, List[Bar]]:
        """Close every open bucket and collect all finished bars per resolution"""
        return {a.resolution: a.flush() for a in self.aggregators}

    def snapshot_all(self) -> Dict[Resolution, List[Bar]]:
        """Collect finished bars plus provisional open-bucket bars per resolution"""
        return {a.resolution: a.snapshot() for a in self.aggregators}
