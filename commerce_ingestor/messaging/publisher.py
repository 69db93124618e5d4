"""Kafka publisher for ``metrics.updated`` notifications."""

from __future__ import annotations

import io
from functools import lru_cache
from typing import Any

from fastavro import schemaless_writer
from kafka import KafkaProducer
from kafka.errors import KafkaError

from ..monitoring.tracing import get_correlation_id
from ..utils.config import GlobalSettings, get_settings
from ..utils.logging import setup_logger
from .schema import METRICS_UPDATED_SCHEMA, build_metrics_updated_record

logger = setup_logger(__name__, context={"component": "MetricsPublisher"})


class MetricsUpdatedPublisher:
    """Announces newly written metrics so dashboards can refresh.

    Publishing is best effort: a broker failure is logged and never fails the
    write that triggered it.
    """

    def __init__(
        self,
        producer: KafkaProducer | None = None,
        topic: str | None = None,
        settings: GlobalSettings | None = None,
    ):
        settings = settings or get_settings()
        self.topic = topic or settings.kafka_topic
        self.timeout = settings.kafka_publish_timeout_seconds
        self._producer = producer or self._create_producer(settings)

    @staticmethod
    def _create_producer(settings: GlobalSettings) -> KafkaProducer | None:
        bootstrap_servers = settings.kafka_bootstrap_servers
        if not bootstrap_servers:
            logger.info(
                "Kafka bootstrap servers not configured; metrics.updated events disabled.",
                extra={"status": "disabled"},
            )
            return None

        servers = [server.strip() for server in bootstrap_servers.split(",") if server.strip()]
        if not servers:
            logger.warning(
                "Kafka bootstrap configuration is empty after parsing; disabling publisher.",
                extra={"status": "warning"},
            )
            return None

        options: dict[str, Any] = {
            "bootstrap_servers": servers,
            "client_id": settings.kafka_client_id,
            "security_protocol": settings.kafka_security_protocol,
            "acks": "all",
        }
        if settings.kafka_sasl_mechanism:
            options["sasl_mechanism"] = settings.kafka_sasl_mechanism
            options["sasl_plain_username"] = settings.kafka_sasl_username
            options["sasl_plain_password"] = settings.kafka_sasl_password
        return KafkaProducer(**options)

    @property
    def enabled(self) -> bool:
        return self._producer is not None and bool(self.topic)

    def health_status(self) -> dict[str, Any]:
        """Return connectivity details for the health endpoint."""

        if self._producer is None:
            return {"status": "disabled", "message": "Kafka publishing not configured"}
        try:
            connected = self._producer.bootstrap_connected()
        except KafkaError as exc:
            return {"status": "error", "message": type(exc).__name__, "topic": self.topic}
        return {
            "status": "healthy" if connected else "degraded",
            "message": "Kafka bootstrap reachable" if connected else "Kafka bootstrap unreachable",
            "topic": self.topic,
        }

    def publish(
        self,
        *,
        organization_id: str,
        connection_id: str,
        provider: str,
        trigger: str,
        written_by_type: dict[str, int],
    ) -> bool:
        """Publish one event keyed by connection; return True when acknowledged."""

        if not self.enabled or not written_by_type:
            return False

        record = build_metrics_updated_record(
            organization_id=organization_id,
            connection_id=connection_id,
            provider=provider,
            trigger=trigger,
            written_by_type=written_by_type,
            correlation_id=get_correlation_id(),
        )
        future = self._producer.send(
            self.topic, key=connection_id.encode("utf-8"), value=_serialize_avro(record)
        )
        try:
            future.get(timeout=self.timeout)
        except KafkaError as exc:
            logger.error(
                "Failed to publish metrics.updated event: %s",
                type(exc).__name__,
                extra={"status": "error", "connection_id": connection_id, "provider": provider},
            )
            return False
        return True

    def close(self) -> None:
        """Close the underlying Kafka producer, flushing outstanding messages."""

        if self._producer is not None:
            self._producer.flush()
            self._producer.close()


@lru_cache(maxsize=1)
def get_metrics_publisher() -> MetricsUpdatedPublisher:
    """Return a cached publisher instance."""

    return MetricsUpdatedPublisher()


def _serialize_avro(record: dict[str, Any]) -> bytes:
    buffer = io.BytesIO()
    schemaless_writer(buffer, METRICS_UPDATED_SCHEMA, record)
    return buffer.getvalue()
