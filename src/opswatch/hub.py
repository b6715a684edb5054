"""Fan-out hub: broadcasts a running session's display lines to live viewers."""

import logging
import queue
import threading
from collections import deque

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 1000
SUBSCRIBER_HEADROOM = 64


class _End:
    def __repr__(self):
        return "END"


# Delivered once to each subscriber when the session finishes.
END = _End()


class Subscription:
    """One viewer's bounded line buffer.

    When the buffer is full the oldest line is dropped and counted, so a
    stalled viewer never holds up the publisher. ``finished`` becomes True
    once the end-of-session signal has been consumed.
    """

    def __init__(self, capacity: int):
        self.capacity = capacity
        self.dropped = 0
        self.finished = False
        self._items: deque[str] = deque()
        self._ended = False
        self._cond = threading.Condition()

    def _offer(self, line: str) -> None:
        with self._cond:
            if self._ended:
                return
            if len(self._items) >= self.capacity:
                self._items.popleft()
                self.dropped += 1
            self._items.append(line)
            self._cond.notify()

    def _end(self) -> None:
        with self._cond:
            self._ended = True
            self._cond.notify_all()

    def get(self, timeout: float | None = None):
        """Next line, or END once the session is over. Raises queue.Empty on timeout."""
        with self._cond:
            if not self._cond.wait_for(lambda: self._items or self._ended, timeout=timeout):
                raise queue.Empty
            if self._items:
                return self._items.popleft()
            self.finished = True
            return END

    def __iter__(self):
        while True:
            item = self.get()
            if item is END:
                return
            yield item

    @property
    def closed(self) -> bool:
        return self._ended


class FanoutHub:
    """Per-session broadcaster with a catch-up buffer for late subscribers."""

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE,
                 subscriber_capacity: int | None = None):
        self.buffer_size = buffer_size
        self.subscriber_capacity = subscriber_capacity or buffer_size + SUBSCRIBER_HEADROOM
        self._history: deque[str] = deque(maxlen=buffer_size)
        self._subscribers: list[Subscription] = []
        self._closed = False
        self._lock = threading.Lock()

    def subscribe(self) -> Subscription:
        """Subscribe, replaying buffered lines first.

        Subscribing to a closed hub yields the history followed by END.
        """
        with self._lock:
            sub = Subscription(self.subscriber_capacity)
            for line in self._history:
                sub._offer(line)
            if self._closed:
                sub._end()
            else:
                self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    def publish(self, line: str) -> bool:
        """Deliver to every subscriber without blocking. False once closed."""
        with self._lock:
            if self._closed:
                return False
            self._history.append(line)
            for sub in self._subscribers:
                sub._offer(line)
        return True

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            subs = list(self._subscribers)
            self._subscribers.clear()
        for sub in subs:
            sub._end()
        logger.debug("Hub closed with %d subscriber(s)", len(subs))

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)


class HubRegistry:
    """Maps running session ids to their hubs."""

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE):
        self.buffer_size = buffer_size
        self._hubs: dict[int, FanoutHub] = {}
        self._lock = threading.Lock()

    def create(self, session_id: int) -> FanoutHub:
        with self._lock:
            hub = FanoutHub(self.buffer_size)
            self._hubs[session_id] = hub
            return hub

    def get(self, session_id: int) -> FanoutHub | None:
        with self._lock:
            return self._hubs.get(session_id)

    def remove(self, session_id: int) -> None:
        with self._lock:
            self._hubs.pop(session_id, None)

    def is_active(self, session_id: int) -> bool:
        hub = self.get(session_id)
        return hub is not None and not hub.closed
