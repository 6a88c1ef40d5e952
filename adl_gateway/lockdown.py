"""Circuit breaker for ledger storage.

Fail-closed under storage degradation: repeated SQLite failures or operations
slower than the latency threshold open a lockdown window. While it is open
every storage operation fails fast with ADL_E_LOCKDOWN_ACTIVE instead of
queueing behind a sick database.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .config import _env_bool, _env_float, _env_int
from .errors import adl_error, ADL_E_LOCKDOWN_ACTIVE


@dataclass
class CircuitBreakerConfig:
    """Configuration for DbCircuitBreaker.

    Environment variables:
    - ADL_DB_LATENCY_THRESHOLD_MS: trip immediately on ops slower than this.
    - ADL_DB_FAILURE_THRESHOLD: number of failures required to trip.
    - ADL_DB_LOCKDOWN_SECONDS: duration of lockdown window.
    - ADL_DB_CONNECT_TIMEOUT_SECONDS: sqlite connect timeout.
    - ADL_DB_ERROR_STRICT: if '1', treat any OperationalError as failure.
    """

    latency_threshold_ms: int = 1000
    failure_threshold: int = 3
    lockdown_seconds: int = 30
    connect_timeout_seconds: float = 5.0
    error_strict: bool = True

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        latency = _env_int("ADL_DB_LATENCY_THRESHOLD_MS", cls.latency_threshold_ms)
        if latency < 0:
            latency = cls.latency_threshold_ms
        timeout = _env_float("ADL_DB_CONNECT_TIMEOUT_SECONDS", cls.connect_timeout_seconds)
        return cls(
            latency_threshold_ms=latency,
            failure_threshold=max(1, _env_int("ADL_DB_FAILURE_THRESHOLD", cls.failure_threshold)),
            lockdown_seconds=max(1, _env_int("ADL_DB_LOCKDOWN_SECONDS", cls.lockdown_seconds)),
            connect_timeout_seconds=timeout if timeout > 0 else 0.01,
            error_strict=_env_bool("ADL_DB_ERROR_STRICT", cls.error_strict),
        )


class DbCircuitBreaker:
    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CircuitBreakerConfig.from_env()
        self._clock = clock
        self._lock = threading.Lock()
        self._failure_count = 0
        self._lockdown_until: float = 0.0

    def is_lockdown_active(self) -> bool:
        return self._clock() < self._lockdown_until

    def raise_if_lockdown(self) -> None:
        if self.is_lockdown_active():
            raise adl_error(
                ADL_E_LOCKDOWN_ACTIVE,
                "storage lockdown active",
                retryable=True,
                http_status=503,
            )

    def _trip(self) -> None:
        self._lockdown_until = self._clock() + float(self.config.lockdown_seconds)
        self._failure_count = self.config.failure_threshold

    def record_success(self) -> None:
        with self._lock:
            if self._failure_count > 0:
                self._failure_count -= 1

    def record_latency(self, elapsed_ms: float) -> None:
        if elapsed_ms >= float(self.config.latency_threshold_ms):
            with self._lock:
                self._failure_count += 1
                self._trip()

    def record_failure(self, exc: Optional[BaseException] = None) -> None:
        with self._lock:
            self._failure_count += 1
            if self._failure_count >= self.config.failure_threshold:
                self._trip()

    def should_treat_operational_error_as_failure(self, message: str) -> bool:
        if self.config.error_strict:
            return True
        msg = (message or "").lower()
        return "database is locked" in msg or "database is busy" in msg
