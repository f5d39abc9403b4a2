"""
SHIELDCORE Resilience

Retry support for the transient failures the core is exposed to: chain reads
during sync and, at the caller's discretion, proof generation.

Only the chain read path retries internally. Every other transient error
(ProverFailure, StaleProof, SyncInProgress) is surfaced to the caller, who
may retry unchanged. Errors derived from ``ShieldError`` are never retried by
the sync engine: a malformed log stays malformed however often it is read.

Usage
─────

    from shieldcore.resilience import RetryPolicy

    retry = RetryPolicy.for_chain_reads()
    logs = retry.execute(lambda: reader.get_logs(address, 100, 199))
"""

from __future__ import annotations

import functools
import random
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar

T = TypeVar("T")

RetryCallback = Callable[[int, Exception, float], None]


# ════════════════════════════════════════════════════════════════════════════
# BACKOFF
# ════════════════════════════════════════════════════════════════════════════


class BackoffStrategy(Enum):
    """How the delay grows between attempts ``n`` and ``n + 1``."""
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    EXPONENTIAL_JITTER = "exponential_jitter"


def _exponential(base: float, attempt: int) -> float:
    return base * (2 ** (attempt - 1))


_BACKOFF: Dict[BackoffStrategy, Callable[[float, int], float]] = {
    BackoffStrategy.FIXED: lambda base, attempt: base,
    BackoffStrategy.LINEAR: lambda base, attempt: base * attempt,
    BackoffStrategy.EXPONENTIAL: _exponential,
    BackoffStrategy.EXPONENTIAL_JITTER: _exponential,
}


# ════════════════════════════════════════════════════════════════════════════
# RETRY POLICY
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class RetryMetrics:
    """Counters across every ``execute`` call of one policy."""
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    retries_exhausted: int = 0
    total_retry_delay_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RetryExhaustedError(Exception):
    """Every attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Gave up after {attempts} attempts: {last_exception}")


class RetryPolicy:
    """
    Bounded retries with a configurable backoff.

    An exception listed in ``non_retryable_exceptions`` propagates at once,
    whatever ``retryable_exceptions`` says. The policy can also be used as a
    decorator:

        @RetryPolicy(max_attempts=3)
        def read_head():
            return reader.get_block_number()
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 60.0,
        backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER,
        jitter_factor: float = 0.5,
        retryable_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
        non_retryable_exceptions: Tuple[Type[BaseException], ...] = (),
        on_retry: Optional[RetryCallback] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if base_delay_seconds < 0 or max_delay_seconds < 0:
            raise ValueError("retry delays must be >= 0")
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.backoff_strategy = backoff_strategy
        self.jitter_factor = jitter_factor
        self.retryable_exceptions = retryable_exceptions
        self.non_retryable_exceptions = non_retryable_exceptions
        self.on_retry = on_retry
        self._metrics = RetryMetrics()
        self._lock = threading.Lock()

    @classmethod
    def for_chain_reads(cls, on_retry: Optional[RetryCallback] = None) -> "RetryPolicy":
        """Policy for ``ChainReader`` calls, sized from the ``sync`` config section."""
        from shieldcore.config import get_config
        from shieldcore.errors import ShieldError

        sync = get_config().sync
        return cls(
            max_attempts=sync.max_read_attempts.get(),
            base_delay_seconds=sync.retry_base_delay_seconds.get(),
            max_delay_seconds=30.0,
            non_retryable_exceptions=(ShieldError,),
            on_retry=on_retry,
        )

    @property
    def metrics(self) -> RetryMetrics:
        with self._lock:
            return RetryMetrics(**asdict(self._metrics))

    def _calculate_delay(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        delay = _BACKOFF[self.backoff_strategy](self.base_delay_seconds, attempt)
        if self.backoff_strategy == BackoffStrategy.EXPONENTIAL_JITTER:
            delay += random.uniform(0, self.jitter_factor * delay)
        return min(delay, self.max_delay_seconds)

    def _should_retry(self, exc: Exception) -> bool:
        if isinstance(exc, self.non_retryable_exceptions):
            return False
        return isinstance(exc, self.retryable_exceptions)

    def _count(self, **deltas: float) -> None:
        with self._lock:
            for name, delta in deltas.items():
                setattr(self._metrics, name, getattr(self._metrics, name) + delta)

    def execute(self, func: Callable[[], T]) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                result = func()
            except Exception as e:
                self._count(total_attempts=1, failed_attempts=1)
                if not self._should_retry(e):
                    raise
                if attempt >= self.max_attempts:
                    self._count(retries_exhausted=1)
                    raise RetryExhaustedError(self.max_attempts, e) from e
                delay = self._calculate_delay(attempt)
                self._count(total_retry_delay_seconds=delay)
                if self.on_retry:
                    self.on_retry(attempt, e, delay)
                if delay > 0:
                    time.sleep(delay)
            else:
                self._count(total_attempts=1, successful_attempts=1)
                return result

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            return self.execute(lambda: func(*args, **kwargs))
        return wrapper
