"""Component health check implementations."""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy import func, select, text

from ..messaging.publisher import get_metrics_publisher
from ..models.base import get_engine, session_scope, utcnow
from ..models.connection import Connection
from .config import get_settings
from .health import ComponentHealth, HealthStatus, get_health_checker


def check_database() -> ComponentHealth:
    """Check database connectivity."""
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return ComponentHealth(
            name="database",
            status=HealthStatus.HEALTHY,
            message="Database connection successful",
            metadata={"dialect": engine.dialect.name},
        )
    except Exception as e:
        return ComponentHealth(
            name="database",
            status=HealthStatus.UNHEALTHY,
            message=f"Database connection failed: {type(e).__name__}",
        )


def check_redis() -> ComponentHealth:
    """Check Redis connectivity used for Celery and sync locks."""
    settings = get_settings()
    if not settings.redis_url:
        return ComponentHealth(
            name="redis",
            status=HealthStatus.HEALTHY,
            message="Redis not configured; in-process locks in use",
            metadata={"configured": False},
        )
    try:
        import redis as redis_lib

        client = redis_lib.from_url(settings.redis_url, socket_timeout=2)
        client.ping()
        server_info = client.info("server")
        client.close()
        return ComponentHealth(
            name="redis",
            status=HealthStatus.HEALTHY,
            message="Redis connection successful",
            metadata={
                "version": server_info.get("redis_version"),
                "uptime_seconds": server_info.get("uptime_in_seconds"),
            },
        )
    except Exception as e:
        return ComponentHealth(
            name="redis",
            status=HealthStatus.UNHEALTHY,
            message=f"Redis connection failed: {type(e).__name__}",
        )


def check_kafka() -> ComponentHealth:
    """Check Kafka connectivity for metrics.updated publication."""
    kafka_status = get_metrics_publisher().health_status()
    status = {
        "healthy": HealthStatus.HEALTHY,
        "disabled": HealthStatus.HEALTHY,
        "degraded": HealthStatus.DEGRADED,
    }.get(kafka_status["status"], HealthStatus.UNHEALTHY)
    return ComponentHealth(
        name="kafka",
        status=status,
        message=kafka_status.get("message", "Kafka status checked"),
        metadata=kafka_status,
    )


def check_connections() -> ComponentHealth:
    """Report active connections whose last sync is older than the stale threshold."""
    settings = get_settings()
    cutoff = utcnow() - timedelta(hours=settings.stale_connection_hours)
    with session_scope() as session:
        active = session.scalar(
            select(func.count(Connection.id)).where(Connection.status == "active")
        )
        stale = session.scalar(
            select(func.count(Connection.id)).where(
                Connection.status == "active",
                Connection.last_sync_at.is_not(None),
                Connection.last_sync_at < cutoff,
            )
        )
        errored = session.scalar(
            select(func.count(Connection.id)).where(Connection.status == "error")
        )
    return ComponentHealth(
        name="connections",
        status=HealthStatus.DEGRADED if stale or errored else HealthStatus.HEALTHY,
        message=f"{active or 0} active, {stale or 0} stale, {errored or 0} in error",
        metadata={"active": active or 0, "stale": stale or 0, "error": errored or 0},
    )


def register_all_health_checks() -> None:
    """Register all component health checks with the global health checker."""
    checker = get_health_checker()
    checker.register_check("database", check_database)
    checker.register_check("redis", check_redis)
    checker.register_check("kafka", check_kafka)
    checker.register_check("connections", check_connections)
