"""Health checking utilities for operational readiness."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

SERVICE_NAME = "commerce_ingestor"
SERVICE_VERSION = "0.1.0"


class HealthStatus(str, Enum):
    """Health status levels."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ComponentHealth(BaseModel):
    """Health status for a single component."""

    name: str = Field(..., description="Component name")
    status: HealthStatus = Field(..., description="Health status")
    message: str | None = Field(None, description="Status message or error details")
    checked_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Timestamp of health check",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict, description="Additional component metadata"
    )


class SystemHealth(BaseModel):
    """Overall system health status."""

    status: HealthStatus = Field(..., description="Overall system health")
    service: str = Field(SERVICE_NAME, description="Service name")
    version: str = Field(SERVICE_VERSION, description="Service version")
    checked_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Timestamp of health check",
    )
    components: dict[str, ComponentHealth] = Field(
        default_factory=dict, description="Component health statuses"
    )
    uptime_seconds: float | None = Field(None, description="Service uptime in seconds")


class HealthChecker:
    """Centralized health checking for all service dependencies."""

    def __init__(self) -> None:
        self._checks: dict[str, Callable[[], Any]] = {}
        self._start_time = datetime.now(timezone.utc)

    def register_check(self, component_name: str, check_fn: Callable[[], Any]) -> None:
        """
        Register a health check for a component.

        Args:
            component_name: Name of the component to check
            check_fn: Async or sync function that returns ComponentHealth
        """
        self._checks[component_name] = check_fn

    @property
    def components(self) -> list[str]:
        return list(self._checks)

    async def check_component(self, component_name: str) -> ComponentHealth:
        """Run one registered check, converting failures into UNHEALTHY."""
        if component_name not in self._checks:
            return ComponentHealth(
                name=component_name,
                status=HealthStatus.UNHEALTHY,
                message=f"Component '{component_name}' not registered",
            )

        check_fn = self._checks[component_name]
        try:
            if asyncio.iscoroutinefunction(check_fn):
                return await check_fn()
            return await asyncio.to_thread(check_fn)
        except Exception as e:
            return ComponentHealth(
                name=component_name,
                status=HealthStatus.UNHEALTHY,
                message=f"Health check failed: {type(e).__name__}",
            )

    async def check_all(
        self, timeout: float = 5.0, required_components: list[str] | None = None
    ) -> SystemHealth:
        """
        Check health of all registered components.

        Args:
            timeout: Maximum time to wait for all checks (seconds)
            required_components: Components that must be healthy for the
                system to be considered healthy. If None, all are required.
        """
        components: dict[str, ComponentHealth] = {}
        required = set(required_components or self._checks.keys())

        check_tasks = {
            name: asyncio.create_task(self.check_component(name)) for name in self._checks
        }
        if check_tasks:
            done, pending = await asyncio.wait(check_tasks.values(), timeout=timeout)
            for task in pending:
                task.cancel()
        else:
            done = set()

        for name, task in check_tasks.items():
            if task in done:
                components[name] = task.result()
            else:
                components[name] = ComponentHealth(
                    name=name,
                    status=HealthStatus.UNHEALTHY,
                    message="Health check timed out",
                )

        return SystemHealth(
            status=self._calculate_overall_status(components, required),
            components=components,
            uptime_seconds=self._get_uptime_seconds(),
        )

    def _calculate_overall_status(
        self, components: dict[str, ComponentHealth], required: set[str]
    ) -> HealthStatus:
        """Calculate overall system status from component statuses."""
        if not components:
            return HealthStatus.UNHEALTHY

        required_statuses = [
            comp.status for name, comp in components.items() if name in required
        ]
        if any(status == HealthStatus.UNHEALTHY for status in required_statuses):
            return HealthStatus.UNHEALTHY
        # Optional components can only degrade the overall status.
        if any(comp.status != HealthStatus.HEALTHY for comp in components.values()):
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY

    def _get_uptime_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self._start_time).total_seconds()


# Global health checker instance
_health_checker: HealthChecker | None = None


def get_health_checker() -> HealthChecker:
    """Get or create global health checker instance."""
    global _health_checker
    if _health_checker is None:
        _health_checker = HealthChecker()
    return _health_checker
