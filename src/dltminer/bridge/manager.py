"""Bridge connection registry.

Relays share nothing except this registry: an id counter and the set of
live pairings, used for logging, /health and shutdown.
"""

import asyncio
import itertools

import structlog

from dltminer.bridge.relay import PoolRelay

logger = structlog.get_logger()


class ConnectionRegistry:
    """Tracks live relays. Single event loop, no locking."""

    def __init__(self) -> None:
        self._relays: dict[int, PoolRelay] = {}
        self._ids = itertools.count(1)
        self.total_connections = 0

    @property
    def connection_count(self) -> int:
        return len(self._relays)

    def next_id(self) -> int:
        """Allocate a connection id. Rejected upgrades consume one too."""
        self.total_connections += 1
        return next(self._ids)

    def add(self, relay: PoolRelay) -> None:
        self._relays[relay.conn_id] = relay
        logger.info("bridge_connected", conn_id=relay.conn_id, active=self.connection_count)

    def remove(self, conn_id: int) -> None:
        relay = self._relays.pop(conn_id, None)
        if relay is None:
            return
        logger.info(
            "bridge_disconnected",
            conn_id=conn_id,
            active=self.connection_count,
            up=relay.messages_up,
            down=relay.messages_down,
        )

    async def close_all(self) -> None:
        """Close every pairing (shutdown)."""
        relays = list(self._relays.values())
        await asyncio.gather(*(relay.close_pool() for relay in relays), return_exceptions=True)
        self._relays.clear()

    def get_stats(self) -> dict[str, int]:
        return {
            "connections": self.connection_count,
            "total_connections": self.total_connections,
        }
