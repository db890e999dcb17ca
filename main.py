# main.py - bank sync API, scheduler lifecycle and service wiring
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from business.credentials import CredentialStore
from business.scheduler import Scheduler
from business.sync.service import SyncOrchestrator
from database.ledger import LedgerStore, PersistenceError
from database.supabase.ledger import SqlLedgerStore
from database.supabase.orm import run_migrations
from integrations.base import AggregatorClient
from integrations.powens import PowensClient
from routers import router
from utils.constants import ENCRYPTION_KEY, SCHEDULER_ENABLED, WEBAPP_URL

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler()  # This outputs to console
    ],
)

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: LedgerStore
    client: AggregatorClient
    credentials: CredentialStore
    orchestrator: SyncOrchestrator
    scheduler: Scheduler


def build_services(
    store: Optional[LedgerStore] = None,
    client: Optional[AggregatorClient] = None,
    encryption_key: Optional[str] = None,
) -> Services:
    store = store or SqlLedgerStore()
    client = client or PowensClient()
    credentials = CredentialStore(store, client, encryption_key or ENCRYPTION_KEY)
    orchestrator = SyncOrchestrator(store, client, credentials)
    scheduler = Scheduler(orchestrator, store, credentials)
    return Services(
        store=store,
        client=client,
        credentials=credentials,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )


def create_app(
    services: Optional[Services] = None, start_scheduler: bool = SCHEDULER_ENABLED
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle application startup and shutdown events."""
        logger.info("Starting application...")
        if services is None:
            try:
                logger.info("Running database migrations...")
                run_migrations()
                app.state.services = build_services()
                logger.info("Database initialization completed successfully")
            except Exception as e:
                logger.error(f"Failed to initialize application: {e}")
                raise
        else:
            app.state.services = services

        if start_scheduler:
            await app.state.services.scheduler.start()

        yield  # Application runs here

        logger.info("Shutting down application...")
        try:
            # Add timeout to prevent hanging on close
            await asyncio.wait_for(app.state.services.scheduler.stop(), timeout=5.0)
            await asyncio.wait_for(app.state.services.orchestrator.drain(), timeout=5.0)
            await app.state.services.client.aclose()
            logger.info("Scheduler and aggregator client closed successfully")
        except asyncio.TimeoutError:
            logger.warning("Scheduler stop timed out - forcing shutdown")
        logger.info("Application shutdown completed")

    app = FastAPI(
        title="Bank Sync API",
        description="Bank account aggregation with scheduled synchronization",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            WEBAPP_URL,
            "http://localhost:3000",
            "http://localhost:5173",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.get("/")
    async def read_root() -> dict:
        return {"message": "Bank Sync API"}

    @app.get("/health")
    async def health_check():
        """Health check with ledger store connectivity test."""
        try:
            await asyncio.to_thread(app.state.services.store.ping)
            db_status = "connected"
        except PersistenceError as e:
            logger.error(f"Database health check failed: {e}")
            db_status = "error"

        return {
            "status": "healthy" if db_status == "connected" else "degraded",
            "database": db_status,
            "environment": os.getenv("ENVIRONMENT", "development"),
        }

    return app


app = create_app()
