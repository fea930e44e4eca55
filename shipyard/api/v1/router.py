"""Main router for API v1."""

from fastapi import APIRouter

from shipyard.api.v1 import deployments, health, queue, webhooks

router = APIRouter(prefix="/v1")

# Include sub-routers
router.include_router(health.router, tags=["health"])
router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
router.include_router(queue.router, prefix="/queue", tags=["queue"])
router.include_router(deployments.router, tags=["deployments"])
