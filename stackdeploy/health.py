"""
Health verification for stack services.

Handles:
- A single bounded polling primitive shared by every readiness wait
- systemd process-status probes
- HTTP readiness endpoint probes
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

import requests

from .config import HealthStrategy, ServiceDescriptor
from .errors import HealthTimeout, ServiceFailed
from .services import ServiceManager, ServiceStatus

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    """Health status levels."""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"   # not ready yet, keep polling
    FAILED = "failed"         # terminal, stop polling
    UNKNOWN = "unknown"


@dataclass
class HealthCheckResult:
    """Result of a single health check."""
    service: str
    status: HealthStatus
    message: str = ""
    attempts: int = 1
    elapsed_seconds: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)


PROCESS_STATUS_MAP = {
    ServiceStatus.RUNNING: HealthStatus.HEALTHY,
    ServiceStatus.STARTING: HealthStatus.UNHEALTHY,
    ServiceStatus.STOPPING: HealthStatus.UNHEALTHY,
    ServiceStatus.UNKNOWN: HealthStatus.UNHEALTHY,
    ServiceStatus.STOPPED: HealthStatus.FAILED,
    ServiceStatus.FAILED: HealthStatus.FAILED,
}


def poll_until(
    probe: Callable[[], HealthCheckResult],
    interval: float,
    timeout: float,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> HealthCheckResult:
    """
    Call probe until it reports healthy, fails terminally or timeout elapses.

    Returns the healthy result. Raises ServiceFailed on a terminal failure
    and HealthTimeout once the budget is spent. The loop never sleeps past
    the deadline, so it returns within timeout + interval.
    """
    start = clock()
    attempts = 0
    while True:
        attempts += 1
        result = probe()
        elapsed = clock() - start
        result.attempts = attempts
        result.elapsed_seconds = elapsed

        if result.status == HealthStatus.HEALTHY:
            return result
        if result.status == HealthStatus.FAILED:
            raise ServiceFailed(
                f"{result.service} failed: {result.message or 'terminal state'}",
                service=result.service,
            )
        if elapsed >= timeout:
            raise HealthTimeout(
                f"{result.service} failed to become healthy within {timeout:.0f}s"
                f" ({attempts} attempts, last: {result.message or result.status.value})",
                service=result.service,
            )
        sleep(max(0.0, min(interval, timeout - elapsed)))


class HealthProber:
    """
    Readiness checks for the stack's services.

    Each ServiceDescriptor selects its probe: systemd process status via
    the ServiceManager, or an HTTP GET against the descriptor's endpoint.
    """

    def __init__(
        self,
        service_manager: ServiceManager,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        request_timeout: float = 5.0,
    ):
        self.service_manager = service_manager
        self.clock = clock
        self.sleep = sleep
        self.request_timeout = request_timeout

    def check(self, descriptor: ServiceDescriptor) -> HealthCheckResult:
        """Perform a single probe of descriptor."""
        if descriptor.strategy == HealthStrategy.HTTP_ENDPOINT:
            return self._check_http(descriptor)
        return self._check_process(descriptor)

    def _check_process(self, descriptor: ServiceDescriptor) -> HealthCheckResult:
        status = self.service_manager.get_status(descriptor.unit)
        return HealthCheckResult(
            service=descriptor.name,
            status=PROCESS_STATUS_MAP.get(status, HealthStatus.UNHEALTHY),
            message=f"unit status: {status.value}",
        )

    def _check_http(self, descriptor: ServiceDescriptor) -> HealthCheckResult:
        if not descriptor.endpoint:
            return HealthCheckResult(
                service=descriptor.name,
                status=HealthStatus.UNKNOWN,
                message="No endpoint configured",
            )
        try:
            response = requests.get(descriptor.endpoint, timeout=self.request_timeout)
        except requests.Timeout:
            return HealthCheckResult(
                service=descriptor.name,
                status=HealthStatus.UNHEALTHY,
                message="Request timed out",
            )
        except requests.RequestException as e:
            return HealthCheckResult(
                service=descriptor.name,
                status=HealthStatus.UNHEALTHY,
                message=f"Connection failed: {e.__class__.__name__}",
            )

        status = HealthStatus.HEALTHY if response.ok else HealthStatus.UNHEALTHY
        return HealthCheckResult(
            service=descriptor.name,
            status=status,
            message=f"HTTP {response.status_code}",
        )

    def wait_healthy(
        self,
        descriptor: ServiceDescriptor,
        timeout: Optional[float] = None,
    ) -> HealthCheckResult:
        """Block until descriptor is healthy or its budget is exhausted."""
        budget = descriptor.timeout if timeout is None else timeout
        target = descriptor.endpoint or descriptor.unit
        logger.info(f"Waiting for {descriptor.name} to become healthy ({target}, up to {budget:.0f}s)...")
        result = poll_until(
            lambda: self.check(descriptor),
            interval=descriptor.interval,
            timeout=budget,
            clock=self.clock,
            sleep=self.sleep,
        )
        logger.info(f"{descriptor.name} is healthy after {result.attempts} attempt(s)")
        return result
