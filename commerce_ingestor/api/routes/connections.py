"""Connection management endpoints: test, sync, poll and disconnect."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ...models.base import session_scope
from ...models.repository import ConnectionRepository, SyncCursorRepository
from ...schemas.payload import ConnectionTestResult, SyncTaskView
from ...sync.orchestrator import SyncOrchestrator
from ...sync.task_handles import SyncTaskManager
from ..dependencies import get_orchestrator, get_task_manager, require_api_key

router = APIRouter(dependencies=[Depends(require_api_key)])


class CursorView(BaseModel):
    entity_type: str
    position: str | None = None
    high_water_mark: datetime | None = None
    in_progress: bool = False
    records_written: int = 0


class ConnectionView(BaseModel):
    """Connection as shown to the dashboard; never includes the credential."""

    id: str
    organization_id: str
    provider: str
    provider_account_id: str
    status: str
    sync_state: str
    last_sync_at: datetime | None = None
    disconnected_at: datetime | None = None
    cursors: list[CursorView] = Field(default_factory=list)
    active_task_id: str | None = None


class DisconnectRequest(BaseModel):
    reason: str = Field(default="manual", max_length=128)


def _load_view(connection_id: str) -> dict[str, Any]:
    with session_scope() as session:
        connection = ConnectionRepository(session).require(connection_id)
        cursors = SyncCursorRepository(session).list_for_connection(connection_id)
        return {
            "id": connection.id,
            "organization_id": connection.organization_id,
            "provider": connection.provider,
            "provider_account_id": connection.provider_account_id,
            "status": connection.status,
            "last_sync_at": connection.last_sync_at,
            "disconnected_at": connection.disconnected_at,
            "cursors": [
                CursorView(
                    entity_type=cursor.entity_type,
                    position=cursor.position,
                    high_water_mark=cursor.high_water_mark,
                    in_progress=cursor.in_progress,
                    records_written=cursor.records_written or 0,
                )
                for cursor in cursors
            ],
        }


async def _connection_view(
    connection_id: str, orchestrator: SyncOrchestrator, tasks: SyncTaskManager
) -> ConnectionView:
    data = await asyncio.to_thread(_load_view, connection_id)
    handle = tasks.for_connection(connection_id)
    return ConnectionView(
        **data,
        sync_state=orchestrator.registry.state(connection_id).value,
        active_task_id=handle.task_id if handle else None,
    )


@router.get("/connections/{connection_id}", response_model=ConnectionView)
async def get_connection(
    connection_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    tasks: SyncTaskManager = Depends(get_task_manager),
) -> ConnectionView:
    return await _connection_view(connection_id, orchestrator, tasks)


@router.post("/connections/{connection_id}/test", response_model=ConnectionTestResult)
async def test_connection(
    connection_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> ConnectionTestResult:
    """Run one authenticated provider call; a failed test is still a 200."""

    return await orchestrator.test_connection(connection_id)


@router.post(
    "/connections/{connection_id}/sync",
    response_model=SyncTaskView,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_sync(
    connection_id: str,
    lookback_days: int | None = Query(None, ge=1, le=365),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    tasks: SyncTaskManager = Depends(get_task_manager),
) -> SyncTaskView:
    """Start a backfill in the background and return a pollable handle.

    A trigger while a backfill is already running returns that run's handle.
    """

    await orchestrator.load_connection(connection_id)
    options: dict[str, Any] = {}
    if lookback_days is not None:
        options["lookback_days"] = lookback_days
    return tasks.start_sync(connection_id, **options).view()


@router.get("/sync-tasks/{task_id}", response_model=SyncTaskView)
async def get_sync_task(
    task_id: str, tasks: SyncTaskManager = Depends(get_task_manager)
) -> SyncTaskView:
    handle = tasks.get(task_id)
    if handle is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown sync task")
    return handle.view()


@router.post("/connections/{connection_id}/disconnect", response_model=ConnectionView)
async def disconnect_connection(
    connection_id: str,
    payload: DisconnectRequest | None = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    tasks: SyncTaskManager = Depends(get_task_manager),
) -> ConnectionView:
    """Cancel any running backfill, tear down the queue and discard the credential."""

    await tasks.cancel_for_connection(connection_id)
    await orchestrator.disconnect(connection_id, reason=payload.reason if payload else "manual")
    return await _connection_view(connection_id, orchestrator, tasks)
