"""Per-connection, per-entity backfill progress."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, UTCDateTime, utcnow


class SyncCursor(Base):
    """How far backfill has progressed for one entity type.

    ``position`` is the provider page cursor inside the window
    ``[window_start, window_end]`` of an unfinished run. When a run completes,
    ``position`` is cleared and ``high_water_mark`` moves to ``window_end``.
    """

    __tablename__ = "sync_cursors"
    __table_args__ = (
        UniqueConstraint("connection_id", "entity_type", name="uq_sync_cursors_entity"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connection_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("connections.id", ondelete="CASCADE"), nullable=False
    )
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    position: Mapped[str | None] = mapped_column(String(512), nullable=True)
    window_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    window_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    high_water_mark: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    records_written: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False
    )

    @property
    def in_progress(self) -> bool:
        return self.position is not None

    def __repr__(self) -> str:
        return (
            f"<SyncCursor connection={self.connection_id} entity={self.entity_type} "
            f"position={self.position}>"
        )
