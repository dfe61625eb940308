"""
Outbound call gateway for the scheduler's collaborators (delivery service,
insights service): circuit breaker, concurrency cap and timeout per service.

Retries are left to the job runner's backoff. Delivery in particular must not
be retried here or one attempt could reach a parent twice.

Usage:
    gw = get_gateway()
    result = await gw.execute("delivery", client.post_message, payload)
"""
import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, Optional

from comms_scheduler.config import get_settings
from comms_scheduler.utils.logger import get_logger
from comms_scheduler.utils.metrics import inc, observe

logger = get_logger("gateway")


@dataclass(frozen=True)
class ServiceConfig:
    max_concurrent: int = 5
    timeout_seconds: float = 30.0
    circuit_failure_threshold: int = 5
    circuit_recovery_seconds: float = 60.0


def _default_config() -> Dict[str, ServiceConfig]:
    settings = get_settings()
    return {
        "delivery": ServiceConfig(
            max_concurrent=5,
            timeout_seconds=settings.delivery_timeout_seconds,
            circuit_failure_threshold=10,
            circuit_recovery_seconds=60.0,
        ),
        "insights": ServiceConfig(
            max_concurrent=1,
            timeout_seconds=settings.insights_timeout_seconds,
            circuit_failure_threshold=3,
            circuit_recovery_seconds=300.0,
        ),
    }


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised when a call is rejected because the service's circuit is open."""

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"Circuit breaker open for {service}; call rejected")


class CircuitBreaker:
    """Opens after N consecutive failures; lets a probe through after the recovery window."""

    def __init__(self, service: str, config: ServiceConfig):
        self.service = service
        self.config = config
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at = 0.0

    def allow_request(self) -> bool:
        if self.state != CircuitState.OPEN:
            return True
        if time.monotonic() - self.opened_at >= self.config.circuit_recovery_seconds:
            self.state = CircuitState.HALF_OPEN
            logger.info("circuit.half_open", extra={"service": self.service})
            return True
        return False

    def record_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            logger.info("circuit.closed", extra={"service": self.service})
        self.state = CircuitState.CLOSED
        self.failure_count = 0

    def record_failure(self) -> None:
        self.failure_count += 1
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.config.circuit_failure_threshold:
            self.state = CircuitState.OPEN
            self.opened_at = time.monotonic()
            logger.warning(
                "circuit.open",
                extra={"service": self.service, "failed": self.failure_count,
                       "circuit_state": self.state.value},
            )


class ServiceGateway:
    def __init__(self, config: Optional[Dict[str, ServiceConfig]] = None) -> None:
        self._config = config if config is not None else _default_config()
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
        cfg = self._config.get(service)
        if cfg is None:
            return await fn(*args, **kwargs)

        circuit = self._circuits[service]
        if not circuit.allow_request():
            inc(f"{service}.rejected")
            raise CircuitOpenError(service)

        start = time.monotonic()
        try:
            async with self._semaphores[service]:
                result = await asyncio.wait_for(fn(*args, **kwargs), timeout=cfg.timeout_seconds)
        except Exception as exc:
            circuit.record_failure()
            inc(f"{service}.error")
            logger.warning(
                "gateway.failed",
                extra={"service": service, "error": str(exc)[:200], "error_type": type(exc).__name__},
            )
            raise

        circuit.record_success()
        inc(f"{service}.success")
        observe(f"{service}.duration_ms", (time.monotonic() - start) * 1000)
        return result

    def get_circuit_states(self) -> Dict[str, str]:
        return {svc: cb.state.value for svc, cb in self._circuits.items()}


_gateway: Optional[ServiceGateway] = None


def get_gateway() -> ServiceGateway:
    global _gateway
    if _gateway is None:
        _gateway = ServiceGateway()
    return _gateway
