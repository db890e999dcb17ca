import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends

from business.sync.models import SyncOptions
from business.sync.service import SyncOrchestrator
from database.ledger import PersistenceError
from routers.sync import get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def _external_connection_id(payload: Dict[str, Any]) -> Optional[str]:
    connection = payload.get("connection")
    if isinstance(connection, dict) and connection.get("id") is not None:
        return str(connection["id"])
    if payload.get("id_connection") is not None:
        return str(payload["id_connection"])
    return None


@router.post("/powens")
async def powens_webhook(
    payload: Dict[str, Any],
    background_tasks: BackgroundTasks,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Acknowledge aggregator notifications and sync the affected connection.

    Always answers 200 so the aggregator does not retry; unknown connections
    are only logged.
    """
    external_id = _external_connection_id(payload)
    if external_id is None:
        logger.warning("Powens webhook without connection id ignored")
        return {"received": True, "connection_id": None}

    try:
        connection = await asyncio.to_thread(
            orchestrator.store.find_connection_by_external_id, external_id
        )
    except PersistenceError as e:
        logger.error(f"Powens webhook for connection {external_id} not processed: {e}")
        return {"received": True, "connection_id": None}
    if connection is None:
        logger.warning(f"Powens webhook for unknown connection {external_id}")
        return {"received": True, "connection_id": None}

    background_tasks.add_task(
        orchestrator.run, connection.id, SyncOptions(sync_type="webhook", force=True)
    )
    return {"received": True, "connection_id": connection.id}
