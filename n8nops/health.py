# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Health Prober - Bounded readiness polling for the managed services.

Polling uses a fixed interval and an explicit attempt cap; it returns
TIMED_OUT instead of raising so callers decide whether that is fatal.
"""

import asyncio
from enum import Enum
from typing import Awaitable, Callable

import httpx
import structlog

from n8nops.config import APP_SERVICE, DB_SERVICE
from n8nops.services import ServiceController

logger = structlog.get_logger()

Probe = Callable[[], Awaitable[bool]]
Sleep = Callable[[float], Awaitable[None]]


class ProbeOutcome(str, Enum):
    """Result of waiting for readiness."""

    READY = "ready"
    TIMED_OUT = "timed_out"


class ServiceState(str, Enum):
    """Observed state of a managed service. Never persisted."""

    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    UNHEALTHY = "unhealthy"


async def wait_ready(
    probe: Probe,
    max_attempts: int,
    interval_seconds: float,
    *,
    service: str = "",
    sleep: Sleep = asyncio.sleep,
) -> ProbeOutcome:
    """
    Poll a readiness probe up to max_attempts times.

    The probe runs exactly max_attempts times when it never succeeds,
    with interval_seconds between consecutive attempts.

    Args:
        probe: Async callable returning True once the service is ready
        max_attempts: Upper bound on probe calls (>= 1)
        interval_seconds: Fixed delay between attempts
        service: Name used in log events
        sleep: Sleep function (injectable for tests)
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    for attempt in range(1, max_attempts + 1):
        try:
            ready = await probe()
        except Exception as e:
            logger.debug("probe_error", service=service, attempt=attempt, error=str(e))
            ready = False

        if ready:
            logger.info("service_ready", service=service, attempts=attempt)
            return ProbeOutcome.READY

        if attempt < max_attempts:
            await sleep(interval_seconds)

    logger.warning("service_not_ready", service=service, attempts=max_attempts)
    return ProbeOutcome.TIMED_OUT


async def http_probe(url: str, timeout: float = 5.0) -> bool:
    """Reachability check of an HTTP health endpoint."""
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(url)
    except httpx.HTTPError:
        return False
    return response.is_success


class HealthProber:
    """Readiness checks bound to the configured services."""

    def __init__(
        self,
        controller: ServiceController,
        health_url: str | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        http_check: Callable[[str], Awaitable[bool]] | None = None,
    ) -> None:
        self.controller = controller
        self.health_url = health_url or controller.config.health_url
        self.sleep = sleep
        self.http_check = http_check or http_probe

    def probe_for(self, service: str) -> Probe:
        """Readiness signal for a service."""
        if service == APP_SERVICE:
            return lambda: self.http_check(self.health_url)
        if service == DB_SERVICE:
            return self.controller.database_ready

        async def _running() -> bool:
            return await self.controller.is_running(service)

        return _running

    async def wait_ready(
        self,
        service: str,
        max_attempts: int | None = None,
        interval_seconds: float | None = None,
    ) -> ProbeOutcome:
        """Wait for a service's readiness signal."""
        config = self.controller.config
        return await wait_ready(
            self.probe_for(service),
            config.ready_attempts if max_attempts is None else max_attempts,
            config.ready_interval if interval_seconds is None else interval_seconds,
            service=service,
            sleep=self.sleep,
        )

    async def wait_running(
        self,
        service: str,
        max_attempts: int | None = None,
        interval_seconds: float | None = None,
    ) -> ProbeOutcome:
        """Wait until the boundary reports the service's container as running."""
        config = self.controller.config

        async def _running() -> bool:
            return await self.controller.is_running(service)

        return await wait_ready(
            _running,
            config.ready_attempts if max_attempts is None else max_attempts,
            config.ready_interval if interval_seconds is None else interval_seconds,
            service=service,
            sleep=self.sleep,
        )

    async def observe(self, service: str) -> ServiceState:
        """Derive a service's current state from the boundary and one probe."""
        statuses = await self.controller.statuses()
        status = statuses.get(service)

        if status is None or not status.running:
            return ServiceState.STOPPED

        try:
            ready = await self.probe_for(service)()
        except Exception as e:
            logger.debug("probe_error", service=service, error=str(e))
            ready = False

        if ready:
            return ServiceState.READY
        if status.health == "starting":
            return ServiceState.STARTING
        return ServiceState.UNHEALTHY
