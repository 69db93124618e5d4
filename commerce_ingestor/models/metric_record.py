"""Canonical metric records."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, UTCDateTime, utcnow


class MetricRecord(Base):
    """One canonical fact derived from a provider event.

    ``(connection_id, source_event_id, metric_type)`` is the idempotency key.
    """

    __tablename__ = "metric_records"
    __table_args__ = (
        UniqueConstraint(
            "connection_id",
            "source_event_id",
            "metric_type",
            name="uq_metric_records_idempotency",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connection_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("connections.id", ondelete="CASCADE"), nullable=False, index=True
    )
    metric_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    value: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)
    source_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    record_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<MetricRecord id={self.id} type={self.metric_type} "
            f"value={self.value} source={self.source_event_id}>"
        )
