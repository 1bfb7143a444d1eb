"""Authority-side node state: an idle-expiring registry plus change broadcast.

The registry holds the latest full state pushed by every agent together
with the token of that push. Entries that are neither read nor written
for ``idle_seconds`` are evicted, so a node whose agent went away stops
appearing in rendered manifests.

Every insert and every eviction is broadcast through the ChangeNotifier,
which the controller uses to re-render all templates.

All methods are synchronous and meant to be called from the event loop
thread; no caller-side locking is needed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

from .config import MIN_REFRESH_SECONDS
from .models import Node

logger = logging.getLogger(__name__)

DEFAULT_NOTIFIER_CAPACITY = 64


class ChangeNotifier:
    """Broadcast channel of "aggregate node state changed" events.

    Each subscriber gets its own bounded buffer. A subscriber that falls
    behind loses events, which is harmless: every event carries the same
    meaning and one pending event is enough to trigger a full re-render.
    """

    def __init__(self, capacity: int = DEFAULT_NOTIFIER_CAPACITY) -> None:
        self._capacity = capacity
        self._subscribers: set[asyncio.Queue[None]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def notify(self) -> None:
        """Publish one change event to every subscriber without blocking."""
        for queue in self._subscribers:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                logger.debug("Dropping state change event for lagging subscriber")

    async def changes(self) -> AsyncIterator[None]:
        """Yield once per change event until the iterator is closed."""
        queue: asyncio.Queue[None] = asyncio.Queue(maxsize=self._capacity)
        self._subscribers.add(queue)
        try:
            while True:
                await queue.get()
                yield None
        finally:
            self._subscribers.discard(queue)


@dataclass
class NodeRecord:
    """Registry entry: a full node snapshot and the token it was pushed with."""

    node: Node
    token: int
    last_access: float


class NodeRegistry:
    """Latest known state per node, evicted after an idle timeout."""

    def __init__(
        self,
        idle_seconds: float,
        notifier: ChangeNotifier | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._idle_seconds = idle_seconds
        self._notifier = notifier or ChangeNotifier()
        self._clock = clock
        self._records: dict[str, NodeRecord] = {}

    @property
    def notifier(self) -> ChangeNotifier:
        return self._notifier

    @property
    def idle_seconds(self) -> float:
        return self._idle_seconds

    @property
    def refresh_seconds(self) -> int:
        """Backoff advised to agents, so they re-validate before eviction."""
        return max(int(self._idle_seconds) // 2, MIN_REFRESH_SECONDS)

    def __len__(self) -> int:
        return len(self._records)

    def _is_expired(self, record: NodeRecord, now: float) -> bool:
        return now - record.last_access > self._idle_seconds

    def get(self, name: str) -> tuple[int, Node] | None:
        """Look up a node and reset its idle clock.

        Returns:
            Tuple of (token, node), or None if the node is unknown or expired.
        """
        now = self._clock()
        record = self._records.get(name)
        if record is None:
            return None
        if self._is_expired(record, now):
            self._evict(name)
            return None

        record.last_access = now
        return record.token, record.node

    def insert(self, node: Node, token: int) -> None:
        """Replace the entry for ``node.name`` and publish a change."""
        self._records[node.name] = NodeRecord(node=node, token=token, last_access=self._clock())
        logger.debug("Stored node state", extra={"node": node.name, "token": token})
        self._notifier.notify()

    def snapshot(self) -> list[Node]:
        """Point-in-time copy of all live nodes, sorted by name."""
        self.evict_expired()
        return [self._records[name].node for name in sorted(self._records)]

    def evict_expired(self) -> list[str]:
        """Drop every idle entry, publishing one change per evicted node."""
        now = self._clock()
        expired = [name for name, record in self._records.items() if self._is_expired(record, now)]
        for name in expired:
            self._evict(name)
        return expired

    def _evict(self, name: str) -> None:
        del self._records[name]
        logger.info("Evicted idle node", extra={"node": name})
        self._notifier.notify()

    async def run_expiry(self, interval: float = 1.0) -> None:
        """Evict idle entries periodically until cancelled."""
        while True:
            await asyncio.sleep(interval)
            self.evict_expired()
