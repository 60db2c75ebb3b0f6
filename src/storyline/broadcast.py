"""Subscriber registry and fan-out of frames to long-lived connections.

A :class:`Subscriber` is one open SSE connection backed by a bounded
queue.  The :class:`SubscriberRegistry` owns the set of open
subscribers and the :class:`Broadcaster` writes each frame to a
snapshot of that set, isolating failures per subscriber.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from contextlib import suppress
from enum import Enum

logger = logging.getLogger(__name__)

# sentinel returned by Subscriber.get() once the subscriber is closed
CLOSED = object()

DEFAULT_QUEUE_SIZE = 256


class SubscriberClosed(Exception):
    """Write attempted on a closed subscriber."""


class Health(Enum):
    HEALTHY = "healthy"
    FAILING = "failing"


class Subscriber:
    """One open output channel.

    Args:
        maxsize: Frames buffered before writes start failing.
        session: Key of the registry this subscriber belongs to.
    """

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE, session: str = "default"):
        self.id = uuid.uuid4().hex
        self.session = session
        self.health = Health.HEALTHY
        self.failures = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def alive(self) -> bool:
        return not self._closed

    def write(self, frame: dict) -> None:
        if self._closed:
            raise SubscriberClosed(self.id)
        self._queue.put_nowait(frame)

    async def get(self):
        if self._closed and self._queue.empty():
            return CLOSED
        return await self._queue.get()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # a full queue loses its oldest frame to make room for the sentinel
        while self._queue.full():
            self._queue.get_nowait()
        with suppress(asyncio.QueueFull):
            self._queue.put_nowait(CLOSED)

    def __repr__(self) -> str:
        return f"Subscriber(id={self.id!r}, session={self.session!r}, health={self.health.value})"


class SubscriberRegistry:
    """The set of open subscribers for one session key.

    Only :meth:`register` and :meth:`unregister` change membership.
    Iteration order is registration order.
    """

    def __init__(self, key: str = "default", on_empty=None):
        self.key = key
        self._subscribers: dict[str, Subscriber] = {}
        self._on_empty = on_empty

    def register(self, subscriber: Subscriber) -> None:
        self._subscribers[subscriber.id] = subscriber
        logger.info(f"Subscriber {subscriber.id} registered on {self.key} ({len(self)} open)")

    def unregister(self, subscriber: Subscriber) -> bool:
        removed = self._subscribers.pop(subscriber.id, None) is not None
        if removed:
            logger.info(f"Subscriber {subscriber.id} unregistered from {self.key} ({len(self)} open)")
            if not self._subscribers and self._on_empty is not None:
                self._on_empty(self)
        return removed

    def snapshot(self) -> list[Subscriber]:
        return list(self._subscribers.values())

    def __contains__(self, subscriber: Subscriber) -> bool:
        return subscriber.id in self._subscribers

    def __len__(self) -> int:
        return len(self._subscribers)

    def close_all(self) -> None:
        for subscriber in self.snapshot():
            subscriber.close()


class Broadcaster:
    """Writes frames to every subscriber registered at broadcast time.

    A failed write is logged and marks the subscriber FAILING; it never
    stops delivery to the others.  With ``eviction_threshold`` set, a
    subscriber is unregistered and closed after that many consecutive
    failed writes.  ``None`` keeps failing subscribers registered until
    their connection closes.

    Args:
        registry: Registry to fan out to.
        eviction_threshold: Consecutive failures before eviction.
    """

    def __init__(self, registry: SubscriberRegistry, eviction_threshold: int | None = 3):
        self._registry = registry
        self.eviction_threshold = eviction_threshold
        self.frames_sent = 0

    @property
    def registry(self) -> SubscriberRegistry:
        return self._registry

    async def broadcast(self, frame: dict) -> int:
        """Deliver ``frame`` and return how many subscribers accepted it."""
        delivered = 0
        for subscriber in self.registry.snapshot():
            if subscriber not in self.registry:
                # unregistered after the snapshot was taken
                continue
            try:
                result = subscriber.write(frame)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._record_failure(subscriber, e)
                continue
            subscriber.failures = 0
            subscriber.health = Health.HEALTHY
            delivered += 1
        self.frames_sent += 1
        return delivered

    def _record_failure(self, subscriber: Subscriber, error: Exception) -> None:
        subscriber.failures += 1
        subscriber.health = Health.FAILING
        logger.warning(
            f"Write to subscriber {subscriber.id} failed "
            f"({subscriber.failures} in a row): {type(error).__name__}: {error}"
        )
        if self.eviction_threshold is not None and subscriber.failures >= self.eviction_threshold:
            logger.warning(f"Evicting subscriber {subscriber.id}")
            self.registry.unregister(subscriber)
            subscriber.close()


class RegistryDirectory:
    """Session key to :class:`SubscriberRegistry`.

    A registry exists only while it has subscribers: it is created by
    :meth:`registry` and dropped when its last subscriber unregisters
    or is evicted.
    """

    def __init__(self, eviction_threshold: int | None = 3):
        self.eviction_threshold = eviction_threshold
        self._registries: dict[str, SubscriberRegistry] = {}

    def registry(self, key: str) -> SubscriberRegistry:
        """Return the registry for ``key``, creating it for a new subscriber."""
        reg = self._registries.get(key)
        if reg is None:
            reg = self._registries[key] = SubscriberRegistry(key, on_empty=self._discard)
        return reg

    def get(self, key: str) -> SubscriberRegistry | None:
        return self._registries.get(key)

    def _discard(self, reg: SubscriberRegistry) -> None:
        if self._registries.get(reg.key) is reg:
            del self._registries[reg.key]
            logger.debug(f"Dropped empty registry {reg.key}")

    def broadcaster(self, key: str) -> SessionBroadcaster:
        return SessionBroadcaster(self, key, eviction_threshold=self.eviction_threshold)

    def counts(self) -> dict[str, int]:
        return {k: len(r) for k, r in self._registries.items()}

    def close_all(self) -> None:
        for reg in list(self._registries.values()):
            reg.close_all()


class SessionBroadcaster(Broadcaster):
    """Broadcaster that looks up its session's registry on every frame.

    Subscribers that join after the broadcaster was made still receive
    later frames; with no registry for the session, frames reach nobody.
    """

    def __init__(self, directory: RegistryDirectory, key: str, eviction_threshold: int | None = 3):
        super().__init__(SubscriberRegistry(key), eviction_threshold=eviction_threshold)
        self.key = key
        self._directory = directory

    @property
    def registry(self) -> SubscriberRegistry:
        reg = self._directory.get(self.key)
        if reg is None:
            return self._registry
        return reg
