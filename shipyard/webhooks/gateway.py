"""Webhook Gateway.

Receives change notifications, authenticates them, normalizes them into
``CommitEvent``s and queues one deployment per matching project. No build
runs synchronously; the scheduler picks the queued records up.
"""

import json
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Mapping

from shipyard.config import settings
from shipyard.core.controller import DeploymentController, get_controller
from shipyard.core.exceptions import (
    AuthenticationError,
    ProjectNotFoundError,
    ValidationError,
)
from shipyard.core.store import ProjectRegistry, get_project_registry
from shipyard.models.commit import CommitEvent
from shipyard.models.deployment import Deployment, Environment
from shipyard.models.project import GitProvider
from shipyard.utils.logging import get_logger
from shipyard.webhooks.providers import Verification, get_adapter

logger = get_logger(__name__)


@dataclass
class WebhookResult:
    """What a single inbound notification produced."""

    provider: GitProvider
    event: str | None
    verification: Verification
    events: list[CommitEvent] = field(default_factory=list)
    deployments: list[Deployment] = field(default_factory=list)

    @property
    def verified(self) -> bool:
        return self.verification == Verification.VERIFIED

    def to_response(self) -> dict[str, Any]:
        return {
            "message": "Webhook processed successfully",
            "provider": self.provider.value,
            "event": self.event,
            "verified": self.verified,
            "deployments_triggered": len(self.deployments),
            "deployments": [
                {
                    "id": str(d.id),
                    "project_id": str(d.project_id),
                    "status": d.status.value,
                    "environment": d.environment.value,
                    "branch": d.branch,
                }
                for d in self.deployments
            ],
        }


class WebhookGateway:
    """Turns provider notifications into queued deployments."""

    def __init__(
        self,
        projects: ProjectRegistry | None = None,
        controller: DeploymentController | None = None,
        secret: str | None = None,
    ):
        self.projects = projects or get_project_registry()
        self.controller = controller or get_controller()
        self.secret = settings.webhook_secret if secret is None else secret

    async def handle_inbound_event(
        self,
        provider: GitProvider | str,
        headers: Mapping[str, str],
        raw_body: bytes,
    ) -> WebhookResult:
        """Authenticate, parse and route one webhook delivery.

        Raises:
            ValidationError: Unknown provider or malformed payload.
            AuthenticationError: A signature was sent and does not match.
        """
        adapter = get_adapter(provider)
        headers = {key.lower(): value for key, value in headers.items()}
        event_type = adapter.event_type(headers)

        verification = adapter.verify(headers, raw_body, self.secret)
        if verification == Verification.INVALID:
            logger.error("webhook.invalid_signature", provider=adapter.provider.value)
            raise AuthenticationError(adapter.provider.value)
        if verification == Verification.UNSIGNED:
            logger.warning(
                "webhook.unverified",
                provider=adapter.provider.value,
                reason="secret configured but no signature provided",
            )
        elif verification == Verification.DISABLED:
            logger.warning(
                "webhook.unverified",
                provider=adapter.provider.value,
                reason="webhook_secret not configured",
            )

        try:
            payload = json.loads(raw_body or b"null")
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError(f"Invalid JSON body: {e}") from e
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object")

        result = WebhookResult(
            provider=adapter.provider,
            event=event_type,
            verification=verification,
        )
        result.events = self.extract_commit_events(adapter.provider, payload, headers)

        logger.info(
            "webhook.received",
            provider=adapter.provider.value,
            event=event_type,
            verification=verification.value,
            commit_events=len(result.events),
        )

        for commit_event in result.events:
            result.deployments.extend(await self.route_to_projects(commit_event))
        return result

    def extract_commit_events(
        self,
        provider: GitProvider | str,
        payload: dict[str, Any],
        headers: Mapping[str, str] | None = None,
    ) -> list[CommitEvent]:
        """Pure mapping from a provider payload to commit events."""
        headers = {key.lower(): value for key, value in (headers or {}).items()}
        return get_adapter(provider).normalize(payload, headers)

    async def route_to_projects(self, event: CommitEvent) -> list[Deployment]:
        """Queue a deployment for every project watching the event's repository.

        Production events need the project's branch to match exactly; preview
        events match on the repository alone.
        """
        environment = Environment.PREVIEW if event.is_preview else Environment.PRODUCTION
        branch = None if event.is_preview else event.branch
        projects = await self.projects.find_by_repository(event.repository_url, branch)

        if not projects:
            logger.info(
                "webhook.no_matching_projects",
                repository=event.repository_url,
                branch=event.branch,
            )
            return []

        deployments = []
        for project in projects:
            try:
                deployments.append(
                    await self.controller.trigger(project.id, event, environment)
                )
            except ProjectNotFoundError:
                # Deleted between the lookup and the trigger
                logger.warning(
                    "webhook.project_gone",
                    project_id=str(project.id),
                    repository=event.repository_url,
                )
        return deployments


@lru_cache
def get_gateway() -> WebhookGateway:
    """Get the webhook gateway singleton."""
    return WebhookGateway()
