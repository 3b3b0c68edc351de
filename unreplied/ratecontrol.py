from __future__ import annotations

import random
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field

DEFAULT_BUCKETS: dict[str, tuple[int, float]] = {
    "api": (300, 60.0),
    "hub": (300, 60.0),
}

_THROTTLED = (429,)


@dataclass(frozen=True)
class _BucketConfig:
    limit: int
    window: float


@dataclass
class _BucketState:
    timestamps: deque[float] = field(default_factory=deque)
    failures: int = 0
    backoff_until: float = 0.0


class BaseRateController(ABC):
    @abstractmethod
    def wait_before_request(self, bucket: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def handle_response(self, bucket: str, status_code: int) -> None:
        raise NotImplementedError


class NullRateController(BaseRateController):
    def wait_before_request(self, bucket: str) -> None:
        pass

    def handle_response(self, bucket: str, status_code: int) -> None:
        pass


class SlidingWindowRateController(BaseRateController):
    """Per-bucket request quota over a sliding window, with backoff on 429.

    Safe to share between the walker's worker threads.
    """

    def __init__(
        self,
        buckets: dict[str, tuple[int, float]] | None = None,
        base_delay: float = 2.0,
        max_delay: float = 60.0,
        jitter_ratio: float = 0.5,
    ) -> None:
        buckets = buckets or DEFAULT_BUCKETS
        for name, (limit, window) in buckets.items():
            if limit <= 0 or window <= 0:
                raise ValueError(f"bucket {name}: limit and window must be > 0")

        self.base_delay = float(base_delay)
        self.max_delay = float(max_delay)
        self.jitter_ratio = float(jitter_ratio)

        self._config = {name: _BucketConfig(limit=l, window=w) for name, (l, w) in buckets.items()}
        self._state = {name: _BucketState() for name in buckets}
        self._lock = threading.RLock()
        self._random = random.Random()

        # Injectable for testing
        self._now = time.monotonic
        self._sleep = time.sleep

    def wait_before_request(self, bucket: str) -> None:
        while True:
            with self._lock:
                cfg = self._config[bucket]
                state = self._state[bucket]
                now = self._now()

                while state.timestamps and now - state.timestamps[0] >= cfg.window:
                    state.timestamps.popleft()

                wait = max(0.0, state.backoff_until - now)
                if len(state.timestamps) >= cfg.limit:
                    wait = max(wait, state.timestamps[0] + cfg.window - now)

                if wait <= 0:
                    state.timestamps.append(now)
                    return

            self._sleep(wait)

    def handle_response(self, bucket: str, status_code: int) -> None:
        with self._lock:
            state = self._state[bucket]
            if status_code in _THROTTLED:
                state.failures += 1
                base = min(self.base_delay * (2 ** (state.failures - 1)), self.max_delay)
                jitter = base * self.jitter_ratio * self._random.random()
                state.backoff_until = self._now() + base + jitter
            elif 200 <= status_code < 400:
                state.failures = 0
                state.backoff_until = 0.0
