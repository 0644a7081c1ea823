"""
Publishing Sink

Wraps a durable sink and announces every persisted bar on NATS.
"""

import logging
from typing import Sequence

from dataflow.adapters.nats_client import NatsClient, Topics
from dataflow.persistence.sink import BarSink
from schemas.market_data import Bar, Resolution, TickType

logger = logging.getLogger(__name__)


class PublishingBarSink:
    """
    Persists through `inner`, then publishes the bars.

    Publishing happens only after the inner sink succeeded. A failed publish
    is logged and does not fail the persist: the bars are already durable.
    """

    def __init__(self, inner: BarSink, nats_client: NatsClient):
        self.inner = inner
        self.nats = nats_client
        self.bars_published = 0

    async def persist(self, resolution: Resolution, tick_type: TickType, bars: Sequence[Bar]) -> None:
        await self.inner.persist(resolution, tick_type, bars)

        for bar in bars:
            topic = Topics.bars(bar.symbol, tick_type, resolution)
            try:
                await self.nats.publish_json(topic, bar.to_json())
                self.bars_published += 1
            except Exception as e:
                logger.error(f"Failed to publish bar to {topic}: {e}")

    async def begin_unit(self, symbol: str, tick_type: TickType) -> None:
        await self.inner.begin_unit(symbol, tick_type)
