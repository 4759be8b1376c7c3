"""
Bounded-concurrency dispatcher for inference calls.

AIPool keeps at most `max_concurrency` calls in flight, queues the rest FIFO
and owns one adaptive backoff window shared by every caller of that pool.
All mutable pool state (in-flight count, queue, backoff deadline, rate-limit
streak, usage counters) is guarded by a single lock.
"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from scan_errors import FatalInferenceError, RateLimitedError, TransientNetworkError, classify_error, format_error

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# USD per million (input, output) tokens. Advisory only.
MODEL_PRICES_PER_MTOK: Dict[str, Tuple[float, float]] = {
    "google/gemini-3-pro-preview": (2.00, 12.00),
    "google/gemini-2.5-pro": (1.25, 10.00),
    "google/gemini-2.5-flash": (0.30, 2.50),
}

# Invoke contract: (prompt_text, image_bytes, response_schema, temperature) -> (result, usage)
InvokeFn = Callable[[str, bytes, Any, float], Tuple[Any, Optional[Dict[str, Any]]]]


@dataclass
class UsageStats:
    model: Optional[str] = None
    calls: int = 0
    failures: int = 0
    rate_limited: int = 0
    retries: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def estimated_cost_usd(self) -> float:
        price = MODEL_PRICES_PER_MTOK.get(self.model or "")
        if not price:
            return 0.0
        return round(self.prompt_tokens / 1e6 * price[0] + self.completion_tokens / 1e6 * price[1], 6)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "calls": self.calls,
            "failures": self.failures,
            "rate_limited": self.rate_limited,
            "retries": self.retries,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "estimated_cost_usd": self.estimated_cost_usd,
        }


@dataclass
class _PoolTask:
    operation: Callable[[], Any]
    future: Future
    enqueued_at: float = field(default=0.0)


class AIPool:
    """Concurrency limit, FIFO queue, global rate-limit backoff and per-call retries.

    `invoke` is only needed for generate_object(); submit() accepts any callable.
    `clock` and `sleep` are injectable so the retry policy can be tested
    without real waits.
    """

    def __init__(
        self,
        invoke: Optional[InvokeFn],
        max_concurrency: int,
        base_delay: float = 1.0,
        max_retries: int = 4,
        max_backoff: float = 60.0,
        max_rate_limit_waits: int = 20,
        name: str = "pool",
        model: Optional[str] = None,
        events: Any = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1 (got {max_concurrency})")
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1 (got {max_retries})")
        self._invoke = invoke
        self.max_concurrency = int(max_concurrency)
        self.base_delay = float(base_delay)
        self.max_retries = int(max_retries)
        self.max_backoff = float(max_backoff)
        self.max_rate_limit_waits = int(max_rate_limit_waits)
        self.name = name
        self.events = events
        self._clock = clock
        self._sleep = sleep

        self._lock = threading.Lock()
        self._queue: Deque[_PoolTask] = deque()
        self._in_flight = 0
        self._backoff_until = 0.0
        self._rate_limit_streak = 0
        self._timer: Optional[threading.Timer] = None
        self.max_in_flight_seen = 0
        self.usage = UsageStats(model=model)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def submit(self, operation: Callable[[], T]) -> "Future[T]":
        fut: Future = Future()
        with self._lock:
            self._queue.append(_PoolTask(operation, fut, self._clock()))
            queued = len(self._queue)
        if queued > 1:
            logger.debug("[%s] queued task (queue size: %d)", self.name, queued)
        self._pump()
        return fut

    def generate_object(self, prompt: str, image_bytes: bytes, schema: Any, temperature: float = 0.2) -> Future:
        """Submit one inference call under the retry policy; the Future holds the validated result."""
        if self._invoke is None:
            raise RuntimeError(f"pool {self.name!r} has no inference callable")
        return self.submit(lambda: self._call_with_retry(prompt, image_bytes, schema, temperature))

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "in_flight": self._in_flight,
                "queued": len(self._queue),
                "max_concurrency": self.max_concurrency,
                "backoff_active": self._clock() < self._backoff_until,
                "rate_limit_streak": self._rate_limit_streak,
                "max_in_flight_seen": self.max_in_flight_seen,
            }

    def usage_snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return self.usage.to_dict()

    @property
    def rate_limit_streak(self) -> int:
        with self._lock:
            return self._rate_limit_streak

    @property
    def backoff_until(self) -> float:
        with self._lock:
            return self._backoff_until

    def record_rate_limit(self) -> float:
        """Extend the global backoff window after a 429 and return the new deadline."""
        with self._lock:
            self._rate_limit_streak += 1
            self.usage.rate_limited += 1
            delay = min(self.base_delay * (2 ** self._rate_limit_streak), self.max_backoff)
            self._backoff_until = max(self._backoff_until, self._clock() + delay)
            streak = self._rate_limit_streak
            deadline = self._backoff_until
        logger.warning("[%s] rate limited, global backoff %.1fs (consecutive: %d)", self.name, delay, streak)
        if self.events is not None:
            self.events.emit({"type": "backoff", "pool": self.name, "delay": delay, "streak": streak})
        return deadline

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def _pump(self) -> None:
        to_start: List[_PoolTask] = []
        with self._lock:
            now = self._clock()
            while self._queue and self._in_flight < self.max_concurrency:
                if now < self._backoff_until:
                    self._schedule_wakeup(self._backoff_until - now)
                    break
                task = self._queue.popleft()
                self._in_flight += 1
                self.max_in_flight_seen = max(self.max_in_flight_seen, self._in_flight)
                to_start.append(task)
        for task in to_start:
            t = threading.Thread(target=self._run, args=(task,), name=f"{self.name}-task", daemon=True)
            t.start()

    def _schedule_wakeup(self, delay: float) -> None:
        # Caller holds the lock.
        if self._timer is not None and self._timer.is_alive():
            return
        self._timer = threading.Timer(max(0.0, delay), self._on_wakeup)
        self._timer.daemon = True
        self._timer.start()

    def _on_wakeup(self) -> None:
        with self._lock:
            self._timer = None
        self._pump()

    def _run(self, task: _PoolTask) -> None:
        if not task.future.set_running_or_notify_cancel():
            self._finish()
            return
        try:
            result = task.operation()
        except BaseException as exc:
            task.future.set_exception(exc)
        else:
            task.future.set_result(result)
        finally:
            self._finish()

    def _finish(self) -> None:
        with self._lock:
            self._in_flight -= 1
        self._pump()

    # ------------------------------------------------------------------
    # Retry policy
    # ------------------------------------------------------------------
    def _wait_for_backoff(self) -> None:
        with self._lock:
            remaining = self._backoff_until - self._clock()
        if remaining > 0:
            logger.debug("[%s] waiting for global backoff: %.2fs", self.name, remaining)
            self._sleep(remaining)

    def _call_with_retry(self, prompt: str, image_bytes: bytes, schema: Any, temperature: float) -> Any:
        attempts_used = 0
        rate_limit_waits = 0
        while True:
            with self._lock:
                self.usage.calls += 1
            try:
                result, usage = self._invoke(prompt, image_bytes, schema, temperature)
            except Exception as exc:
                err = classify_error(exc)
                with self._lock:
                    self.usage.failures += 1
                if isinstance(err, RateLimitedError):
                    rate_limit_waits += 1
                    if rate_limit_waits > self.max_rate_limit_waits:
                        raise err
                    self.record_rate_limit()
                    self._wait_for_backoff()
                    continue
                if isinstance(err, TransientNetworkError):
                    attempts_used += 1
                    if attempts_used >= self.max_retries:
                        raise err
                    delay = self.base_delay * (2 ** (attempts_used - 1))
                    logger.debug(
                        "[%s] retryable error, waiting %.1fs (attempt %d/%d): %s",
                        self.name, delay, attempts_used, self.max_retries, format_error(err),
                    )
                    with self._lock:
                        self.usage.retries += 1
                    self._sleep(delay)
                    continue
                if not isinstance(err, FatalInferenceError):
                    err = FatalInferenceError(str(err))
                raise err
            with self._lock:
                self._rate_limit_streak = 0
                if usage:
                    self.usage.prompt_tokens += int(usage.get("input_tokens") or usage.get("prompt_tokens") or 0)
                    self.usage.completion_tokens += int(usage.get("output_tokens") or usage.get("completion_tokens") or 0)
            return result


def run_all(callables: Sequence[Callable[[], T]], name: str = "sibling") -> List[T]:
    """Run sibling callables on plain threads; results come back in input order.

    These are orchestration threads that mostly wait on pool futures, so they
    must not take pool slots themselves. The first exception raised by any
    callable is re-raised after all of them have finished.
    """
    results: List[Any] = [None] * len(callables)
    errors: List[Optional[BaseException]] = [None] * len(callables)

    def runner(i: int, fn: Callable[[], T]) -> None:
        try:
            results[i] = fn()
        except BaseException as exc:
            errors[i] = exc

    threads = [
        threading.Thread(target=runner, args=(i, fn), name=f"{name}-{i}", daemon=True)
        for i, fn in enumerate(callables)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    for err in errors:
        if err is not None:
            raise err
    return results


def run_with_concurrency(items: Iterable[T], limit: int, fn: Callable[[T, int], R]) -> List[R]:
    """Map fn(item, index) over items with at most `limit` running at once; input order kept."""
    items = list(items)
    if not items:
        return []
    with ThreadPoolExecutor(max_workers=max(1, min(limit, len(items))), thread_name_prefix="kind") as ex:
        futures = [ex.submit(fn, item, i) for i, item in enumerate(items)]
        return [f.result() for f in futures]
