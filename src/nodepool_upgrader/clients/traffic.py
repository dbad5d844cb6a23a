"""Traffic routing between blue and green node sets."""

from __future__ import annotations

from collections import deque
from typing import Protocol

import structlog

from nodepool_upgrader.models import NodeColor, NodePool

log = structlog.get_logger()

HISTORY_LIMIT = 256


class TrafficRouter(Protocol):
    """Shifts load between node colors. Calls must be idempotent."""

    async def serve_colors(self, pool: NodePool, colors: list[NodeColor]) -> None: ...


class LoggingTrafficRouter:
    """Records routing decisions for an externally managed load balancer.

    ``routes`` holds the colors each pool currently serves; ``history`` keeps the
    most recent changes across all pools, oldest first.
    """

    def __init__(self, history_limit: int = HISTORY_LIMIT) -> None:
        self.routes: dict[str, tuple[NodeColor, ...]] = {}
        self.history: deque[tuple[str, tuple[NodeColor, ...]]] = deque(maxlen=history_limit)

    async def serve_colors(self, pool: NodePool, colors: list[NodeColor]) -> None:
        served = tuple(colors)
        if self.routes.get(pool.pool_id) == served:
            return
        self.routes[pool.pool_id] = served
        self.history.append((pool.pool_id, served))
        log.info("traffic_routed", pool=pool.pool_id, colors=list(colors))
