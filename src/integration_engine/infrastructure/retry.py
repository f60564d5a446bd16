"""Backoff helpers, cancellable waits and per-key locks shared by the orchestrator and pipeline."""
from __future__ import annotations
import logging
import random
import threading
from contextlib import contextmanager, ExitStack
from dataclasses import dataclass
from typing import Optional, Callable
from tenacity import Retrying, stop_after_attempt, wait_exponential_jitter, retry_if_exception_type, before_sleep_log
from integration_engine.errors import TransientAdapterError, JobCancelledError

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: float = 0.25  # +/- fraction of the computed delay


def backoff_delay(attempt: int, cfg: RetryConfig, rng: Optional[random.Random] = None) -> float:
    """Delay before retry number `attempt` (1-based): min(cap, base * exp^(attempt-1)) with jitter."""
    attempt = max(1, attempt)
    delay = min(cfg.base_delay * (cfg.exponential_base ** (attempt - 1)), cfg.max_delay)
    if cfg.jitter:
        r = (rng or random).uniform(-cfg.jitter, cfg.jitter)
        delay = min(cfg.max_delay, max(0.0, delay * (1 + r)))
    return delay


def cancellable_sleep(cancel: Optional[threading.Event]) -> Callable[[float], None]:
    """Sleep function for tenacity that aborts as soon as `cancel` is set."""
    def _sleep(seconds: float) -> None:
        if cancel is None:
            threading.Event().wait(seconds)
            return
        if cancel.wait(seconds):
            raise JobCancelledError("cancelled while waiting to retry")
    return _sleep


def adapter_retrying(cfg: RetryConfig, cancel: Optional[threading.Event] = None) -> Retrying:
    """Retry policy for adapter calls: transient errors only, exponential jittered waits."""
    return Retrying(
        stop=stop_after_attempt(cfg.max_attempts),
        wait=wait_exponential_jitter(initial=cfg.base_delay, max=cfg.max_delay, exp_base=cfg.exponential_base),
        retry=retry_if_exception_type(TransientAdapterError),
        sleep=cancellable_sleep(cancel),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


class KeyedLock:
    """One lock per key, dropped once nobody holds or waits for it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}  # key -> [lock, refcount]

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    @contextmanager
    def hold_many(self, keys):
        """Hold several keys at once, taken in sorted order so two holders cannot deadlock."""
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.hold(key))
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
