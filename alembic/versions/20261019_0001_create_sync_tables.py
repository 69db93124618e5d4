"""Create connection, metric, webhook receipt and sync cursor tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op as alembic_op  # type: ignore[import-untyped]

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None

_ACTIVE_ONLY = sa.text("status = 'active'")


def upgrade() -> None:
    """Create sync tables, the active-connection guard and idempotency keys."""

    alembic_op.create_table(
        "connections",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("provider_account_id", sa.String(length=255), nullable=False),
        sa.Column("credential", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_cursor", sa.String(length=512), nullable=True),
        sa.Column("settings", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("disconnected_at", sa.DateTime(timezone=True), nullable=True),
    )
    alembic_op.create_index("ix_connections_organization_id", "connections", ["organization_id"])
    alembic_op.create_index("ix_connections_provider", "connections", ["provider"])
    alembic_op.create_index("ix_connections_status", "connections", ["status"])
    alembic_op.create_index(
        "uq_connections_active_org_provider",
        "connections",
        ["organization_id", "provider"],
        unique=True,
        sqlite_where=_ACTIVE_ONLY,
        postgresql_where=_ACTIVE_ONLY,
    )

    alembic_op.create_table(
        "metric_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "connection_id",
            sa.String(length=36),
            sa.ForeignKey("connections.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("metric_type", sa.String(length=64), nullable=False),
        sa.Column("value", sa.Numeric(20, 4), nullable=False),
        sa.Column("source_event_id", sa.String(length=255), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint(
            "connection_id", "source_event_id", "metric_type", name="uq_metric_records_idempotency"
        ),
    )
    alembic_op.create_index("ix_metric_records_connection_id", "metric_records", ["connection_id"])
    alembic_op.create_index("ix_metric_records_metric_type", "metric_records", ["metric_type"])
    alembic_op.create_index("ix_metric_records_recorded_at", "metric_records", ["recorded_at"])

    alembic_op.create_table(
        "webhook_receipts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "connection_id",
            sa.String(length=36),
            sa.ForeignKey("connections.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("topic", sa.String(length=128), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="received"),
        sa.Column("error_detail", sa.Text(), nullable=True),
        sa.Column("records_written", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("correlation_id", sa.String(length=255), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    alembic_op.create_index("ix_webhook_receipts_provider", "webhook_receipts", ["provider"])
    alembic_op.create_index("ix_webhook_receipts_status", "webhook_receipts", ["status"])
    alembic_op.create_index(
        "ix_webhook_receipts_lookup", "webhook_receipts", ["connection_id", "topic", "external_id"]
    )

    alembic_op.create_table(
        "sync_cursors",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "connection_id",
            sa.String(length=36),
            sa.ForeignKey("connections.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("position", sa.String(length=512), nullable=True),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("high_water_mark", sa.DateTime(timezone=True), nullable=True),
        sa.Column("records_written", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("connection_id", "entity_type", name="uq_sync_cursors_entity"),
    )


def downgrade() -> None:
    """Drop sync tables in dependency order."""

    alembic_op.drop_table("sync_cursors")
    alembic_op.drop_index("ix_webhook_receipts_lookup", table_name="webhook_receipts")
    alembic_op.drop_index("ix_webhook_receipts_status", table_name="webhook_receipts")
    alembic_op.drop_index("ix_webhook_receipts_provider", table_name="webhook_receipts")
    alembic_op.drop_table("webhook_receipts")
    alembic_op.drop_index("ix_metric_records_recorded_at", table_name="metric_records")
    alembic_op.drop_index("ix_metric_records_metric_type", table_name="metric_records")
    alembic_op.drop_index("ix_metric_records_connection_id", table_name="metric_records")
    alembic_op.drop_table("metric_records")
    alembic_op.drop_index("uq_connections_active_org_provider", table_name="connections")
    alembic_op.drop_index("ix_connections_status", table_name="connections")
    alembic_op.drop_index("ix_connections_provider", table_name="connections")
    alembic_op.drop_index("ix_connections_organization_id", table_name="connections")
    alembic_op.drop_table("connections")
