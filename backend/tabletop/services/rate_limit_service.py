from dataclasses import dataclass
import threading
import time
from typing import Callable


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int
    reset_after_seconds: int


class RateLimitService:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._window_counters: dict[str, tuple[int, float]] = {}
        self._last_seen: dict[str, float] = {}
        self._lock = threading.Lock()

    def check(self, key: str, *, limit: int, window_seconds: int) -> RateLimitDecision:
        safe_limit = max(1, int(limit))
        safe_window = max(1, int(window_seconds))
        now_epoch = self._clock()
        with self._lock:
            stale_keys = [
                bucket_key
                for bucket_key, (_, reset_epoch) in self._window_counters.items()
                if now_epoch > reset_epoch + 1
            ]
            for stale_key in stale_keys:
                self._window_counters.pop(stale_key, None)

            bucket = int(now_epoch // safe_window)
            bucket_key = f"{key}:{bucket}"
            current_count, reset_epoch = self._window_counters.get(
                bucket_key,
                (0, float((bucket + 1) * safe_window)),
            )
            next_count = current_count + 1
            self._window_counters[bucket_key] = (next_count, reset_epoch)

        remaining = max(0, safe_limit - next_count)
        allowed = next_count <= safe_limit
        reset_seconds = max(1, int(reset_epoch - now_epoch))
        return RateLimitDecision(
            allowed=allowed,
            limit=safe_limit,
            remaining=remaining,
            retry_after_seconds=reset_seconds if not allowed else 0,
            reset_after_seconds=reset_seconds,
        )

    def allow_interval(self, key: str, min_interval_seconds: float) -> bool:
        """True when at least ``min_interval_seconds`` passed since the last allowed call."""
        if min_interval_seconds <= 0:
            return True
        now_epoch = self._clock()
        with self._lock:
            last = self._last_seen.get(key)
            if last is not None and now_epoch - last < min_interval_seconds:
                return False
            self._last_seen[key] = now_epoch
            return True

    def forget(self, key_prefix: str) -> None:
        with self._lock:
            for key in [key for key in self._last_seen if key.startswith(key_prefix)]:
                self._last_seen.pop(key, None)
