import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Request

from business.scheduler import Scheduler
from business.sync.errors import SyncAbort
from business.sync.models import SyncOptions
from business.sync.service import SyncOrchestrator
from integrations.base import AggregatorError
from models.aggregator import RemoteConnection
from models.sync import CallbackRequest, PrimaryAccountRequest, SyncRequest
from utils.constants import CALLBACK_DEADLINE_SECONDS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["Sync"])


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.services.orchestrator


def get_scheduler(request: Request) -> Scheduler:
    return request.app.state.services.scheduler


def _unavailable(e: SyncAbort) -> HTTPException:
    return HTTPException(status_code=503, detail=e.message)


@router.post("/connections/{connection_id}")
async def sync_connection(
    connection_id: str,
    body: SyncRequest = SyncRequest(),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Synchronize one connection; rate-limited unless ``force`` is set."""
    options = SyncOptions(
        full_history=body.full_history,
        include_transactions=body.include_transactions,
        force=body.force,
        sync_type="manual",
    )
    try:
        summary = await orchestrator.request_sync(connection_id, options)
    except SyncAbort as e:
        raise _unavailable(e)
    if summary is None:
        raise HTTPException(status_code=404, detail="Connection not found")
    return summary.to_dict()


@router.post("/users/{user_id}")
async def sync_user(
    user_id: str,
    body: SyncRequest = SyncRequest(),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Synchronize all active connections of a user.

    Returns per-connection summaries and overall timestamps.
    """
    started_at = datetime.now(timezone.utc)
    try:
        summaries = await orchestrator.run_for_user(
            user_id,
            SyncOptions(
                full_history=body.full_history,
                include_transactions=body.include_transactions,
                force=body.force,
            ),
        )
    except SyncAbort as e:
        raise _unavailable(e)
    finished_at = datetime.now(timezone.utc)

    items: List[Dict[str, Any]] = [s.to_dict() for s in summaries]
    logger.info(
        json.dumps(
            {
                "event": "sync.user_completed",
                "user_id": user_id,
                "statuses": [s.status.value for s in summaries],
                "started_at": started_at.isoformat(),
                "finished_at": finished_at.isoformat(),
            }
        )
    )
    return {
        "items": items,
        "started_at": started_at.isoformat(),
        "finished_at": finished_at.isoformat(),
    }


@router.get("/connections/{connection_id}/status")
async def connection_status(
    connection_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    try:
        status = await orchestrator.status(connection_id)
    except SyncAbort as e:
        raise _unavailable(e)
    if status is None:
        raise HTTPException(status_code=404, detail="Connection not found")
    return status


@router.post("/connections/{connection_id}/cancel")
async def cancel_sync(
    connection_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return {"connection_id": connection_id, "cancelled": orchestrator.cancel(connection_id)}


@router.put("/accounts/{account_id}/primary")
async def set_primary_account(
    account_id: str,
    body: PrimaryAccountRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    account = await asyncio.to_thread(
        orchestrator.store.set_primary_account, body.user_id, account_id
    )
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return {"account_id": account.id, "is_primary": account.is_primary}


@router.post("/callback")
async def connection_callback(
    body: CallbackRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Store a freshly authorized connection and run its first sync under a deadline."""
    try:
        credential = await orchestrator.client.exchange_code(body.code)
        if body.external_user_ref and not credential.external_user_ref:
            credential = credential.model_copy(
                update={"external_user_ref": body.external_user_ref}
            )
        remote = next(
            (
                c
                for c in await orchestrator.client.list_connections(credential)
                if c.id == body.connection_id
            ),
            RemoteConnection(id=body.connection_id),
        )
    except AggregatorError as e:
        logger.error(f"Connection callback failed for user {body.user_id}: {e}")
        raise HTTPException(status_code=502, detail="Aggregator request failed")

    try:
        connection = await orchestrator.connect(body.user_id, credential, remote)
    except SyncAbort as e:
        raise _unavailable(e)
    summary = await orchestrator.run_with_deadline(
        connection.id,
        SyncOptions(sync_type="callback", force=True),
        deadline_seconds=CALLBACK_DEADLINE_SECONDS,
    )
    return {"connection_id": connection.id, "sync": summary.to_dict()}


@router.get("/stats")
async def sync_stats(
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return orchestrator.stats().to_dict()


@router.get("/jobs")
async def scheduler_jobs(scheduler: Scheduler = Depends(get_scheduler)) -> Dict[str, Any]:
    return scheduler.status()


@router.post("/jobs/{name}")
async def trigger_job(
    name: str, scheduler: Scheduler = Depends(get_scheduler)
) -> Dict[str, Any]:
    if name not in scheduler.jobs:
        raise HTTPException(status_code=404, detail="Job not found")
    await scheduler.run_job(name)
    return scheduler.jobs[name].to_dict()
