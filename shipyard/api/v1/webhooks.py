"""Inbound webhook endpoints."""

from typing import Any

from fastapi import APIRouter, Request

from shipyard.api.deps import ControllerDep, GatewayDep, SchedulerDep
from shipyard.models.project import GitProvider
from shipyard.webhooks.providers import ADAPTERS

router = APIRouter()


@router.post(
    "/{provider}",
    summary="Receive a source-control webhook",
    description="Accepts push and pull/merge request notifications and queues deployments for matching projects.",
)
async def receive_webhook(
    provider: GitProvider,
    request: Request,
    gateway: GatewayDep,
) -> dict[str, Any]:
    """Authenticate and route an inbound notification."""
    raw_body = await request.body()
    result = await gateway.handle_inbound_event(provider, request.headers, raw_body)
    return result.to_response()


@router.get("/status", summary="Webhook configuration and queue status")
async def webhook_status(
    gateway: GatewayDep,
    controller: ControllerDep,
    scheduler: SchedulerDep,
) -> dict[str, Any]:
    """Report signature verification settings alongside the queue."""
    secret_configured = bool(gateway.secret)
    queue_status = await controller.queue_status()
    queue_status["in_flight"] = scheduler.in_flight

    return {
        "status": "active",
        "security": {
            "webhook_secret_configured": secret_configured,
            "signature_verification": "enabled" if secret_configured else "disabled",
            "fallback_mode": "accept_unsigned_requests",
        },
        "queue_status": queue_status,
        "supported_providers": [p.value for p in ADAPTERS if p != GitProvider.GENERIC],
        "endpoints": {p.value: f"/v1/webhooks/{p.value}" for p in ADAPTERS},
    }
