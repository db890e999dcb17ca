from fastapi import APIRouter

from routers import sync as sync_router
from routers import webhooks as webhooks_router

router = APIRouter()
router.include_router(sync_router.router, tags=["Sync"])
router.include_router(webhooks_router.router, tags=["Webhooks"])
