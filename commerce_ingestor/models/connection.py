"""Connection model: one linked provider account for one organization."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, UTCDateTime, utcnow


class Connection(Base):
    """Database representation of a provider connection.

    At most one ``active`` connection may exist per (organization, provider);
    the partial unique index enforces it on SQLite and PostgreSQL.
    """

    __tablename__ = "connections"
    __table_args__ = (
        Index(
            "uq_connections_active_org_provider",
            "organization_id",
            "provider",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    provider_account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    credential: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", index=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_cursor: Mapped[str | None] = mapped_column(String(512), nullable=True)
    settings: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False
    )
    disconnected_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def __repr__(self) -> str:
        return (
            f"<Connection id={self.id} provider={self.provider} "
            f"org={self.organization_id} status={self.status}>"
        )


@dataclass(frozen=True, slots=True)
class ConnectionSnapshot:
    """Detached, immutable view of a connection for use outside a session."""

    id: str
    organization_id: str
    provider: str
    provider_account_id: str
    credential: str | None
    status: str
    settings: dict[str, Any] = field(default_factory=dict)
    last_sync_at: datetime | None = None

    @classmethod
    def from_model(cls, connection: Connection) -> ConnectionSnapshot:
        return cls(
            id=connection.id,
            organization_id=connection.organization_id,
            provider=connection.provider,
            provider_account_id=connection.provider_account_id,
            credential=connection.credential,
            status=connection.status,
            settings=dict(connection.settings or {}),
            last_sync_at=connection.last_sync_at,
        )

    @property
    def is_active(self) -> bool:
        return self.status == "active"
