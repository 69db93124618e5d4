"""Insert-or-skip persistence for metric drafts."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import insert
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..monitoring.metrics import record_write_summary
from ..schemas.payload import MetricDraft
from ..utils.logging import setup_logger
from .base import session_scope, utcnow
from .metric_record import MetricRecord

logger = setup_logger(__name__)

_IDEMPOTENCY_COLUMNS = ("connection_id", "source_event_id", "metric_type")
_DIALECT_INSERTS = {"sqlite": sqlite_insert, "postgresql": postgresql_insert}

WRITTEN = "written"
DUPLICATE = "duplicate"
FAILED = "failed"


@dataclass(slots=True)
class WriteSummary:
    """Counts for one write batch."""

    submitted: int = 0
    written: int = 0
    duplicates: int = 0
    failed: int = 0
    skipped: int = 0
    written_by_type: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def merge(self, other: WriteSummary) -> None:
        self.submitted += other.submitted
        self.written += other.written
        self.duplicates += other.duplicates
        self.failed += other.failed
        self.skipped += other.skipped
        for metric_type, count in other.written_by_type.items():
            self.written_by_type[metric_type] = self.written_by_type.get(metric_type, 0) + count
        self.errors.extend(other.errors)


def _json_safe(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


class IdempotentWriter:
    """Persist drafts at most once per ``(connection, sourceEventId, metric type)``.

    A batch is written in one transaction. If the transaction fails for any
    reason other than a duplicate key, every draft is retried in its own
    transaction so one bad row cannot drop its siblings.
    """

    def __init__(
        self,
        session_factory: Callable[[], AbstractContextManager[Session]] = session_scope,
        *,
        provider: str = "-",
    ) -> None:
        self._session_scope = session_factory
        self._provider = provider

    def write(self, connection_id: str, drafts: Sequence[MetricDraft]) -> WriteSummary:
        """Write ``drafts`` for ``connection_id``; ``summary.written`` counts new rows."""

        summary = WriteSummary(submitted=len(drafts))
        if not drafts:
            return summary

        rows = [self._row(connection_id, item) for item in drafts]
        try:
            with self._session_scope() as session:
                outcomes = [self._insert(session, row) for row in rows]
        except SQLAlchemyError as exc:
            logger.warning(
                "Batch write failed, retrying %d records individually: %s",
                len(rows),
                type(exc).__name__,
                extra={"connection_id": connection_id, "provider": self._provider},
            )
            outcomes = [self._write_single(row, summary) for row in rows]

        for row, outcome in zip(rows, outcomes):
            if outcome == WRITTEN:
                summary.written += 1
                metric_type = row["metric_type"]
                summary.written_by_type[metric_type] = summary.written_by_type.get(metric_type, 0) + 1
            elif outcome == DUPLICATE:
                summary.duplicates += 1
            else:
                summary.failed += 1

        record_write_summary(
            self._provider,
            written_by_type=summary.written_by_type,
            duplicates=summary.duplicates,
            failed=summary.failed,
        )
        return summary

    @staticmethod
    def _row(connection_id: str, item: MetricDraft) -> dict[str, Any]:
        return {
            "connection_id": connection_id,
            "metric_type": item.metric_type.value,
            "value": item.value,
            "source_event_id": item.source_event_id,
            "metadata": _json_safe(item.metadata),
            "recorded_at": item.recorded_at,
            "created_at": utcnow(),
        }

    def _insert(self, session: Session, row: dict[str, Any]) -> str:
        table = MetricRecord.__table__
        dialect_insert = _DIALECT_INSERTS.get(session.get_bind().dialect.name)
        if dialect_insert is not None:
            stmt = dialect_insert(table).values(**row).on_conflict_do_nothing(
                index_elements=list(_IDEMPOTENCY_COLUMNS)
            )
            result = session.execute(stmt)
            return WRITTEN if result.rowcount == 1 else DUPLICATE

        try:
            with session.begin_nested():
                session.execute(insert(table).values(**row))
        except IntegrityError:
            return DUPLICATE
        return WRITTEN

    def _write_single(self, row: dict[str, Any], summary: WriteSummary) -> str:
        try:
            with self._session_scope() as session:
                return self._insert(session, row)
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to persist metric %s/%s: %s",
                row["metric_type"],
                row["source_event_id"],
                type(exc).__name__,
                extra={"connection_id": row["connection_id"], "provider": self._provider},
            )
            summary.errors.append(f"{row['source_event_id']}:{row['metric_type']}:{type(exc).__name__}")
            return FAILED
