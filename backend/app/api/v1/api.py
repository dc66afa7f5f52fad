"""
Main API router aggregator
"""
from fastapi import APIRouter

from app.api.v1.endpoints import (
    health,
    process_sync,
    sync_worker,
    webhooks,
)

api_router = APIRouter()

api_router.include_router(health.router, prefix="/health", tags=["Health"])
api_router.include_router(process_sync.router, prefix="/processes", tags=["Process Sync"])
api_router.include_router(webhooks.router, prefix="/integrations", tags=["Integrations"])

# External timer endpoint: POST /api/v1/sync-worker/run-due
api_router.include_router(
    sync_worker.router,
    prefix="/sync-worker",
    tags=["Sync Worker"],
)
