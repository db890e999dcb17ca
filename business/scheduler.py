from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from business.credentials import CredentialDecryptionError, CredentialStore
from business.sync.errors import ConfigurationError
from business.sync.models import SyncOptions, SyncSummary
from business.sync.policy import is_stale
from business.sync.service import SyncOrchestrator
from database.ledger import LedgerStore
from models.ledger import SyncStatus
from utils.constants import (
    HEALTH_CHECK_INTERVAL_SECONDS,
    HOUSEKEEPING_INTERVAL_SECONDS,
    SYNC_INTERVAL_SECONDS,
    SYNC_STALE_AFTER_SECONDS,
    TOKEN_REFRESH_INTERVAL_SECONDS,
    TOKEN_REFRESH_LOOKAHEAD_SECONDS,
)
from utils.database import utc_now

logger = logging.getLogger(__name__)


@dataclass
class JobDescriptor:
    name: str
    interval_seconds: float
    func: Callable[[], Awaitable[Any]]
    runs: int = 0
    failures: int = 0
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "runs": self.runs,
            "failures": self.failures,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
        }


class Scheduler:
    """Periodic sync jobs with an explicit start/stop lifecycle.

    Each job runs in its own asyncio task and sleeps ``interval_seconds``
    between runs. A failing job is logged and keeps its schedule.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        store: LedgerStore,
        credentials: CredentialStore,
        *,
        sync_interval: float = SYNC_INTERVAL_SECONDS,
        health_check_interval: float = HEALTH_CHECK_INTERVAL_SECONDS,
        token_refresh_interval: float = TOKEN_REFRESH_INTERVAL_SECONDS,
        housekeeping_interval: float = HOUSEKEEPING_INTERVAL_SECONDS,
        stale_after_seconds: int = SYNC_STALE_AFTER_SECONDS,
        refresh_lookahead_seconds: int = TOKEN_REFRESH_LOOKAHEAD_SECONDS,
    ) -> None:
        self.orchestrator = orchestrator
        self.store = store
        self.credentials = credentials
        self.stale_after_seconds = stale_after_seconds
        self.refresh_lookahead_seconds = refresh_lookahead_seconds
        self.jobs: Dict[str, JobDescriptor] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

        self.add_job("full_sync", sync_interval, self.full_sync)
        self.add_job("health_check", health_check_interval, self.health_check)
        self.add_job("token_refresh", token_refresh_interval, self.token_refresh)
        self.add_job("housekeeping", housekeeping_interval, self.housekeeping)

    def add_job(
        self, name: str, interval_seconds: float, func: Callable[[], Awaitable[Any]]
    ) -> JobDescriptor:
        if name in self.jobs:
            raise ValueError(f"Job {name} already registered")
        job = JobDescriptor(name=name, interval_seconds=interval_seconds, func=func)
        self.jobs[name] = job
        return job

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self.running:
            logger.warning("Scheduler already running")
            return
        for job in self.jobs.values():
            self._tasks[job.name] = asyncio.create_task(
                self._loop(job), name=f"scheduler:{job.name}"
            )
        logger.info(f"Scheduler started with jobs: {', '.join(self.jobs)}")

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        # Cancelled loops finish with CancelledError, which is expected here
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Scheduler stopped")

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "jobs": [job.to_dict() for job in self.jobs.values()],
        }

    async def run_job(self, name: str) -> Any:
        """Trigger a job now, outside its schedule."""
        job = self.jobs.get(name)
        if job is None:
            raise KeyError(f"Unknown job {name}")
        return await self._run(job)

    async def _loop(self, job: JobDescriptor) -> None:
        while True:
            await asyncio.sleep(job.interval_seconds)
            await self._run(job)

    async def _run(self, job: JobDescriptor) -> Any:
        job.runs += 1
        job.last_run_at = utc_now()
        try:
            result = await job.func()
        except Exception as e:
            job.failures += 1
            job.last_error = str(e)
            logger.error(
                json.dumps(
                    {"event": "scheduler.job_failed", "job": job.name, "error": str(e)}
                )
            )
            return None
        job.last_error = None
        return result

    # Jobs

    async def full_sync(self) -> List[SyncSummary]:
        connections = await asyncio.to_thread(self.store.list_connections, True)
        results: List[SyncSummary] = []
        for connection in connections:
            results.append(
                await self.orchestrator.run(
                    connection.id, SyncOptions(sync_type="scheduled")
                )
            )
        logger.info(
            json.dumps(
                {
                    "event": "scheduler.full_sync",
                    "connections": len(connections),
                    "statuses": [s.status.value for s in results],
                }
            )
        )
        return results

    async def health_check(self) -> List[Dict[str, Any]]:
        """Flag failed and stale connections; stale ones get a sync."""
        now = utc_now()
        connections = await asyncio.to_thread(self.store.list_connections, True)
        flagged: List[Dict[str, Any]] = []
        for connection in connections:
            if connection.last_sync_status == SyncStatus.FAILED.value:
                flagged.append(
                    {
                        "connection_id": connection.id,
                        "reason": "failed",
                        "error": connection.last_error_message,
                    }
                )
            if is_stale(connection, now, self.stale_after_seconds):
                summary = await self.orchestrator.run(
                    connection.id, SyncOptions(sync_type="scheduled")
                )
                flagged.append(
                    {
                        "connection_id": connection.id,
                        "reason": "stale",
                        "last_success_at": connection.last_success_at.isoformat()
                        if connection.last_success_at
                        else None,
                        "resync_status": summary.status.value,
                    }
                )
        if flagged:
            logger.warning(json.dumps({"event": "scheduler.health_check", "flagged": flagged}))
        return flagged

    async def token_refresh(self) -> List[SyncSummary]:
        """Refresh-only runs for credentials expiring within the lookahead."""
        now = utc_now()
        connections = await asyncio.to_thread(self.store.list_connections, True)
        results: List[SyncSummary] = []
        for connection in connections:
            try:
                credential = await asyncio.to_thread(self.credentials.get, connection.id)
            except (ConfigurationError, CredentialDecryptionError) as e:
                logger.error(
                    json.dumps(
                        {
                            "event": "scheduler.credential_unusable",
                            "connection_id": connection.id,
                            "error": str(e),
                        }
                    )
                )
                continue
            if not self.credentials.expires_within(
                credential, self.refresh_lookahead_seconds, now=now
            ):
                continue
            results.append(
                await self.orchestrator.run(
                    connection.id,
                    SyncOptions(
                        include_transactions=False,
                        refresh_credential=True,
                        sync_type="refresh",
                    ),
                )
            )
        if results:
            logger.info(
                json.dumps({"event": "scheduler.token_refresh", "refreshed": len(results)})
            )
        return results

    async def housekeeping(self) -> Dict[str, Any]:
        counts = await asyncio.to_thread(self.store.counts)
        report = {"stats": self.orchestrator.stats().to_dict(), "counts": counts}
        logger.info(json.dumps({"event": "scheduler.housekeeping", **report}))
        return report
