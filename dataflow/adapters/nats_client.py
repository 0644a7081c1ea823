"""
NATS Client Adapter

Async NATS publisher used to announce persisted bars to downstream consumers.
Publishing is fire-and-forget: a subscriber that is not listening simply
misses the bar, which stays queryable from the database.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import nats
from nats.aio.client import Client as NatsConnection

from schemas.market_data import Resolution, TickType

logger = logging.getLogger(__name__)

DEFAULT_SERVER = "nats://localhost:4222"
DEFAULT_CLIENT_NAME = "bar-consolidator"


@dataclass
class NatsConfig:
    """NATS connection configuration"""
    servers: list[str] = field(default_factory=lambda: [DEFAULT_SERVER])
    name: str = DEFAULT_CLIENT_NAME
    reconnect_time_wait: float = 2.0
    max_reconnect_attempts: int = 10
    connect_timeout: float = 5.0
    drain_timeout: float = 10.0

    @classmethod
    def from_env(cls, prefix: str = "NATS") -> "NatsConfig":
        """Read NATS_SERVERS (comma separated) and NATS_CLIENT_NAME"""
        servers = os.getenv(f"{prefix}_SERVERS", DEFAULT_SERVER)
        return cls(
            servers=[s.strip() for s in servers.split(",") if s.strip()],
            name=os.getenv(f"{prefix}_CLIENT_NAME", DEFAULT_CLIENT_NAME),
        )

    def connect_options(self) -> Dict[str, Any]:
        return {
            "servers": self.servers,
            "name": self.name,
            "reconnect_time_wait": self.reconnect_time_wait,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "connect_timeout": self.connect_timeout,
            "drain_timeout": self.drain_timeout,
        }


class NatsClient:
    """
    Publishes bar JSON on bars.{symbol}.{tick_type}.{resolution} subjects.

    Connection state is read from the underlying nats-py client, which keeps
    reconnecting in the background after a drop.
    """

    def __init__(self, config: Optional[NatsConfig] = None):
        self.config = config or NatsConfig()
        self._nc: Optional[NatsConnection] = None

    @property
    def is_connected(self) -> bool:
        return self._nc is not None and self._nc.is_connected

    async def connect(self) -> None:
        if self.is_connected:
            return

        self._nc = await nats.connect(
            error_cb=self._on_error,
            disconnected_cb=self._on_disconnected,
            reconnected_cb=self._on_reconnected,
            **self.config.connect_options(),
        )
        logger.info(f"Connected to NATS {self._nc.connected_url.netloc} as {self.config.name}")

    async def close(self) -> None:
        """Flush pending publishes and close; drain() closes the connection when done"""
        if self._nc is None:
            return
        nc, self._nc = self._nc, None
        if not nc.is_closed:
            await nc.drain()
        logger.info("NATS connection drained")

    async def publish(self, subject: str, data: bytes) -> None:
        """
        Publish one payload.

        Raises:
            RuntimeError: If connect() has not succeeded or the client was closed
        """
        if self._nc is None or self._nc.is_closed:
            raise RuntimeError("NATS client not connected")
        await self._nc.publish(subject, data)
        logger.debug(f"Published {len(data)} bytes to {subject}")

    async def publish_json(self, subject: str, data: str) -> None:
        await self.publish(subject, data.encode("utf-8"))

    async def _on_error(self, e: Exception) -> None:
        logger.error(f"NATS error: {e}")

    async def _on_disconnected(self) -> None:
        logger.warning("NATS disconnected")

    async def _on_reconnected(self) -> None:
        logger.info(f"NATS reconnected to {self._nc.connected_url.netloc}")


class Topics:
    """NATS subject builders"""

    @staticmethod
    def _sanitize(name: str) -> str:
        # Subject tokens must not contain separators or wildcards
        return "".join(c if c.isalnum() or c in "-_" else "_" for c in name)

    @staticmethod
    def bars(symbol: str, tick_type: TickType, resolution: Resolution) -> str:
        return f"bars.{Topics._sanitize(symbol)}.{tick_type.value}.{resolution.value}"
