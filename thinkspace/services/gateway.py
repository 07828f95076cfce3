"""
External Service Gateway: circuit breaker, concurrency limiter, timeout.

Wraps calls to the model provider with:
  1. Circuit breaker (fail-fast while the provider is down)
  2. Concurrency semaphore (prevent overload)
  3. Timeout enforcement

Failed calls are not retried here. Retry timing belongs to the job queue,
which re-runs the whole request with its own backoff.

Usage:
    gw = get_gateway()
    result = await gw.execute("openrouter", my_async_callable, arg1, kwarg=val)
"""
import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, Optional

from thinkspace.config import get_settings
from thinkspace.pipeline.errors import classify_error
from thinkspace.utils.logger import get_logger
from thinkspace.utils.metrics import inc, observe

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Configuration per external service
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ServiceConfig:
    max_concurrent: int = 10
    timeout_seconds: float = 60.0
    circuit_failure_threshold: int = 5
    circuit_recovery_seconds: float = 30.0


def build_gateway_config() -> Dict[str, ServiceConfig]:
    settings = get_settings()
    return {
        "openrouter": ServiceConfig(
            max_concurrent=max(1, settings.worker_concurrency * 2),
            timeout_seconds=settings.provider_timeout_seconds,
            circuit_failure_threshold=5,
            circuit_recovery_seconds=30.0,
        ),
    }


# ---------------------------------------------------------------------------
# Circuit Breaker
# ---------------------------------------------------------------------------

class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Per-service circuit breaker (safe under asyncio's single-thread model)."""

    def __init__(self, service: str, config: ServiceConfig, clock: Callable[[], float] = time.monotonic):
        self.service = service
        self.config = config
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: float = 0.0
        self.success_count_half_open = 0
        self._clock = clock

    def allow_request(self) -> bool:
        if self.state == CircuitState.CLOSED:
            return True
        if self.state == CircuitState.OPEN:
            elapsed = self._clock() - self.last_failure_time
            if elapsed >= self.config.circuit_recovery_seconds:
                self.state = CircuitState.HALF_OPEN
                self.success_count_half_open = 0
                logger.info(
                    "circuit.half_open",
                    extra={"service": self.service, "circuit_state": self.state.value},
                )
                return True
            return False
        return True

    def record_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            self.success_count_half_open += 1
            if self.success_count_half_open >= 2:
                self.state = CircuitState.CLOSED
                self.failure_count = 0
                logger.info("circuit.closed", extra={"service": self.service, "circuit_state": self.state.value})
        else:
            self.failure_count = 0

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()
        if self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.OPEN
            logger.warning(
                "circuit.open",
                extra={"service": self.service, "circuit_state": self.state.value, "error": "half_open probe failed"},
            )
        elif self.failure_count >= self.config.circuit_failure_threshold:
            self.state = CircuitState.OPEN
            logger.warning(
                "circuit.open",
                extra={"service": self.service, "circuit_state": self.state.value, "failed": self.failure_count},
            )


class CircuitOpenError(Exception):
    """Raised when a circuit breaker is open and the request is rejected."""

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"Circuit breaker OPEN for {service}, request rejected")


# ---------------------------------------------------------------------------
# Gateway (singleton)
# ---------------------------------------------------------------------------

class ServiceGateway:
    """Central gateway for external service calls."""

    def __init__(self, config: Optional[Dict[str, ServiceConfig]] = None) -> None:
        self._config = config if config is not None else build_gateway_config()
        self._circuits: Dict[str, CircuitBreaker] = {}
        self._semaphores: Dict[str, asyncio.Semaphore] = {}

        for service, cfg in self._config.items():
            self._circuits[service] = CircuitBreaker(service, cfg)
            self._semaphores[service] = asyncio.Semaphore(cfg.max_concurrent)

    async def execute(
        self,
        service: str,
        fn: Callable[..., Coroutine],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """
        Execute an async callable through the gateway.

        Applies: circuit breaker → semaphore → timeout.
        """
        cfg = self._config.get(service)
        if not cfg:
            # Unknown service: pass through without protection
            return await fn(*args, **kwargs)

        cb = self._circuits[service]
        sem = self._semaphores[service]

        if not cb.allow_request():
            inc(f"{service}.rejected")
            raise CircuitOpenError(service)

        start = time.monotonic()
        try:
            async with sem:
                result = await asyncio.wait_for(fn(*args, **kwargs), timeout=cfg.timeout_seconds)
        except Exception as exc:
            inc(f"{service}.error")
            # Caller mistakes (bad model, bad key) say nothing about upstream health
            if classify_error(exc).retriable:
                cb.record_failure()
            logger.error(
                "gateway.failed",
                extra={
                    "service": service,
                    "error": str(exc)[:200],
                    "error_type": type(exc).__name__,
                    "circuit_state": cb.state.value,
                },
            )
            raise

        cb.record_success()
        inc(f"{service}.success")
        observe(f"{service}.duration_ms", (time.monotonic() - start) * 1000)
        return result

    def get_circuit_states(self) -> Dict[str, str]:
        """Return current circuit breaker states (for health check)."""
        return {svc: cb.state.value for svc, cb in self._circuits.items()}


# Singleton
_gateway: Optional[ServiceGateway] = None


def get_gateway() -> ServiceGateway:
    global _gateway
    if _gateway is None:
        _gateway = ServiceGateway()
    return _gateway
