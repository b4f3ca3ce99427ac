"""
Deduplicating, rate-limited work queue.

Events are tracked by instance key. A key is never handed to two workers at
the same time, and a newer event for a key replaces the one still waiting,
so the latest known state always wins.
"""

import collections
import logging
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from .events import InstanceEvent

logger = logging.getLogger(__name__)

# Constants
MAX_RETRIES = 5
DEFAULT_BASE_DELAY = 0.005  # seconds
DEFAULT_MAX_DELAY = 1000  # seconds
DEFAULT_QPS = 10
DEFAULT_BURST = 100


class ItemExponentialFailureRateLimiter:
    """Per-item backoff: base_delay * 2**failures, capped at max_delay."""

    def __init__(self, base_delay: float = DEFAULT_BASE_DELAY, max_delay: float = DEFAULT_MAX_DELAY):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._lock = threading.Lock()
        self._failures: Dict[str, int] = {}

    def when(self, item: str) -> float:
        with self._lock:
            exp = self._failures.get(item, 0)
            self._failures[item] = exp + 1
        # 2**64 times any sane base is already past the cap
        if exp >= 64:
            return self.max_delay
        return min(self.base_delay * (2 ** exp), self.max_delay)

    def num_requeues(self, item: str) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: str):
        with self._lock:
            self._failures.pop(item, None)


class BucketRateLimiter:
    """Overall token bucket shared by all items."""

    def __init__(self, qps: float = DEFAULT_QPS, burst: int = DEFAULT_BURST, clock: Callable[[], float] = time.monotonic):
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens = float(burst)
        self._last = clock()

    def when(self, item: str) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(self.burst, self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def num_requeues(self, item: str) -> int:
        return 0

    def forget(self, item: str):
        pass


class MaxOfRateLimiter:
    """Uses the longest delay of all wrapped limiters."""

    def __init__(self, *limiters):
        self.limiters = limiters

    def when(self, item: str) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def num_requeues(self, item: str) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)

    def forget(self, item: str):
        for limiter in self.limiters:
            limiter.forget(item)


def default_controller_rate_limiter(base_delay: float = DEFAULT_BASE_DELAY, max_delay: float = DEFAULT_MAX_DELAY) -> MaxOfRateLimiter:
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay, max_delay),
        BucketRateLimiter(DEFAULT_QPS, DEFAULT_BURST),
    )


class RateLimitingQueue:
    """
    Work queue of InstanceEvents keyed by InstanceEvent.key.

    - add() replaces a waiting event for the same key instead of queueing a
      second one. If the key is being processed, the event is held back and
      queued again when the worker calls done().
    - get() blocks until an event is available, and returns (None, True)
      once the queue has been shut down and drained.
    - add_rate_limited() re-adds a failed event after the rate limiter's
      delay. A fresh add() for the key cancels that delayed retry.
    """

    def __init__(self, rate_limiter=None):
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()
        self._cond = threading.Condition()
        self._queue = collections.deque()
        self._dirty: Dict[str, InstanceEvent] = {}
        self._processing: Dict[str, InstanceEvent] = {}
        self._waiting: Dict[str, threading.Timer] = {}
        self._shutting_down = False

    def add(self, event: InstanceEvent):
        with self._cond:
            self._cancel_waiting(event.key)
            self._insert(event)

    def get(self) -> Tuple[Optional[InstanceEvent], bool]:
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                return None, True
            key = self._queue.popleft()
            event = self._dirty.pop(key)
            self._processing[key] = event
            return event, False

    def done(self, event: InstanceEvent):
        with self._cond:
            self._processing.pop(event.key, None)
            if event.key in self._dirty:
                self._queue.append(event.key)
                self._cond.notify()

    def add_after(self, event: InstanceEvent, delay: float):
        with self._cond:
            if self._shutting_down:
                return
            if delay <= 0:
                self._cancel_waiting(event.key)
                self._insert(event)
                return
            if event.key in self._dirty:
                logger.debug(f"Not delaying {event}, a newer event for the key is already queued")
                return
            self._cancel_waiting(event.key)
            timer = threading.Timer(delay, self._fire, args=(event,))
            timer.daemon = True
            self._waiting[event.key] = timer
            timer.start()

    def add_rate_limited(self, event: InstanceEvent):
        with self._cond:
            if event.key in self._dirty:
                logger.debug(f"Not retrying {event}, a newer event for the key is already queued")
                return
        self.add_after(event, self.rate_limiter.when(event.key))

    def forget(self, event: InstanceEvent):
        self.rate_limiter.forget(event.key)

    def num_requeues(self, event: InstanceEvent) -> int:
        return self.rate_limiter.num_requeues(event.key)

    def shut_down(self):
        with self._cond:
            self._shutting_down = True
            for timer in self._waiting.values():
                timer.cancel()
            self._waiting.clear()
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self):
        with self._cond:
            return len(self._queue)

    def _insert(self, event: InstanceEvent):
        if self._shutting_down:
            return
        already_dirty = event.key in self._dirty
        self._dirty[event.key] = event
        if already_dirty or event.key in self._processing:
            return
        self._queue.append(event.key)
        self._cond.notify()

    def _cancel_waiting(self, key: str):
        timer = self._waiting.pop(key, None)
        if timer is not None:
            timer.cancel()

    def _fire(self, event: InstanceEvent):
        with self._cond:
            # A timer that lost a race with cancel() must not add anything
            if self._waiting.get(event.key) is not threading.current_thread():
                return
            del self._waiting[event.key]
            self._insert(event)
