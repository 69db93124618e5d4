"""Observable handles for background sync runs."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from cachetools import TTLCache

from ..exceptions import CommerceIngestorError
from ..schemas.payload import SyncResult, SyncTaskStatus, SyncTaskView
from ..utils.logging import setup_logger
from .orchestrator import SyncOrchestrator

logger = setup_logger(__name__, context={"component": "sync_tasks"})


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class SyncTaskHandle:
    """Status of one ``sync_connection`` run started without awaiting it."""

    task_id: str
    connection_id: str
    status: SyncTaskStatus = SyncTaskStatus.QUEUED
    created_at: datetime = field(default_factory=_now)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result: SyncResult | None = None
    error: dict[str, Any] | None = None
    task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.status in {
            SyncTaskStatus.SUCCEEDED,
            SyncTaskStatus.FAILED,
            SyncTaskStatus.CANCELLED,
        }

    def view(self) -> SyncTaskView:
        return SyncTaskView(
            task_id=self.task_id,
            connection_id=self.connection_id,
            status=self.status,
            created_at=self.created_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
            result=self.result,
            error=self.error,
        )


class SyncTaskManager:
    """Starts syncs in the background and keeps their handles pollable.

    A trigger for a connection that already has a queued or running handle
    returns that handle instead of starting a second backfill. Finished
    handles stay readable for ``retention_seconds``.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        *,
        retention_seconds: int = 3600,
        max_finished: int = 1024,
    ) -> None:
        self.orchestrator = orchestrator
        self._active: dict[str, SyncTaskHandle] = {}
        self._by_connection: dict[str, str] = {}
        self._finished: TTLCache[str, SyncTaskHandle] = TTLCache(
            maxsize=max_finished, ttl=retention_seconds
        )

    def start_sync(self, connection_id: str, **options: Any) -> SyncTaskHandle:
        """Schedule ``sync_connection`` on the running loop and return its handle."""

        existing_id = self._by_connection.get(connection_id)
        if existing_id is not None:
            existing = self._active.get(existing_id)
            if existing is not None and not existing.done:
                logger.info(
                    "Coalescing sync trigger into task %s",
                    existing.task_id,
                    extra={"connection_id": connection_id},
                )
                return existing

        handle = SyncTaskHandle(task_id=uuid.uuid4().hex, connection_id=connection_id)
        task = asyncio.get_running_loop().create_task(
            self._run(handle, options), name=f"sync:{connection_id}"
        )
        handle.task = task
        self._active[handle.task_id] = handle
        self._by_connection[connection_id] = handle.task_id
        self.orchestrator.registry.register_backfill(connection_id, task)
        return handle

    async def _run(self, handle: SyncTaskHandle, options: dict[str, Any]) -> None:
        handle.status = SyncTaskStatus.RUNNING
        handle.started_at = _now()
        try:
            result = await self.orchestrator.sync_connection(handle.connection_id, **options)
        except asyncio.CancelledError:
            handle.status = SyncTaskStatus.CANCELLED
            raise
        except CommerceIngestorError as exc:
            handle.status = SyncTaskStatus.FAILED
            handle.error = exc.as_dict()
        except Exception as exc:
            logger.exception(
                "Background sync crashed", extra={"connection_id": handle.connection_id}
            )
            handle.status = SyncTaskStatus.FAILED
            handle.error = {
                "error_type": type(exc).__name__,
                "message": "Unexpected error while syncing",
                "retryable": False,
                "action_required": "investigate",
            }
        else:
            handle.result = result
            handle.status = (
                SyncTaskStatus.FAILED if result.status == "error" else SyncTaskStatus.SUCCEEDED
            )
        finally:
            handle.finished_at = _now()
            self._retire(handle)

    def _retire(self, handle: SyncTaskHandle) -> None:
        self._active.pop(handle.task_id, None)
        if self._by_connection.get(handle.connection_id) == handle.task_id:
            del self._by_connection[handle.connection_id]
        self._finished[handle.task_id] = handle

    def get(self, task_id: str) -> SyncTaskHandle | None:
        return self._active.get(task_id) or self._finished.get(task_id)

    def for_connection(self, connection_id: str) -> SyncTaskHandle | None:
        task_id = self._by_connection.get(connection_id)
        return self._active.get(task_id) if task_id else None

    async def cancel_for_connection(self, connection_id: str) -> SyncTaskHandle | None:
        """Cancel the connection's running sync and wait for it to unwind."""

        handle = self.for_connection(connection_id)
        if handle is None or handle.task is None:
            return None
        handle.task.cancel()
        await asyncio.gather(handle.task, return_exceptions=True)
        if not handle.done:
            # Cancelled before it started running.
            handle.status = SyncTaskStatus.CANCELLED
            handle.finished_at = _now()
            self._retire(handle)
        return handle

    async def wait(self, task_id: str) -> SyncTaskHandle | None:
        handle = self.get(task_id)
        if handle is not None and handle.task is not None:
            await asyncio.gather(handle.task, return_exceptions=True)
        return handle

    async def aclose(self) -> None:
        for handle in list(self._active.values()):
            if handle.task is not None:
                handle.task.cancel()
        tasks = [h.task for h in self._active.values() if h.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
