"""Liveness checks for the document database and the job store."""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel, Field

from .timeutil import Clock, utcnow

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"

_PROCESS_STARTED = time.monotonic()


class ServiceHealth(BaseModel):
    """Result of pinging one dependency."""

    status: str = Field(..., description="healthy or unhealthy")
    latency_ms: Optional[float] = Field(None, description="Ping round trip")
    error: Optional[str] = None


class HealthReport(BaseModel):
    """Aggregate health of the purge pipeline's dependencies."""

    status: str
    timestamp: datetime
    uptime_seconds: float
    services: Dict[str, ServiceHealth] = Field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.status == HEALTHY


async def _ping(
    name: str, ping: Callable[[], Awaitable[Any]], timeout: float
) -> ServiceHealth:
    started = time.monotonic()
    try:
        result = await asyncio.wait_for(ping(), timeout=timeout)
    except asyncio.TimeoutError:
        error = f"{name} timed out after {int(timeout * 1000)}ms"
    except Exception as e:
        error = f"{name}: {e}"
    else:
        if result is False:
            error = f"{name} disconnected"
        else:
            latency = (time.monotonic() - started) * 1000
            return ServiceHealth(status=HEALTHY, latency_ms=round(latency, 2))

    logger.warning(f"Health check failed: {error}")
    return ServiceHealth(status=UNHEALTHY, error=error)


async def check_health(
    database: Any = None,
    job_store: Any = None,
    timeout: float = 1.5,
    clock: Clock = utcnow,
) -> HealthReport:
    """
    Ping the document database and the job store.

    Args:
        database: Object with an async ``ping()``; skipped when None
        job_store: Object with an async ``ping()``; skipped when None
        timeout: Bound on each ping, in seconds

    Returns:
        Report that is healthy only if every checked service answered
    """
    services: Dict[str, ServiceHealth] = {}
    checks = {"database": database, "job_store": job_store}
    for name, target in checks.items():
        if target is not None:
            services[name] = await _ping(name, target.ping, timeout)

    healthy = all(service.status == HEALTHY for service in services.values())
    status = HEALTHY if healthy else UNHEALTHY
    return HealthReport(
        status=status,
        timestamp=clock(),
        uptime_seconds=round(time.monotonic() - _PROCESS_STARTED, 3),
        services=services,
    )
