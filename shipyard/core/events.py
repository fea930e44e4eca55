"""Live deployment events, delivered over Server-Sent Events (SSE)."""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any
from uuid import UUID

from shipyard.core.store import DeploymentStore, get_deployment_store
from shipyard.models.deployment import DeploymentStatus, utc_now
from shipyard.utils.logging import get_logger

logger = get_logger(__name__)

STATUS_UPDATE = "status-update"
LOG_LINE = "log-line"


@dataclass
class Event:
    """An SSE event."""

    event_type: str
    data: dict[str, Any]
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def payload(self) -> dict[str, Any]:
        return {**self.data, "timestamp": self.timestamp.isoformat()}

    def to_sse(self) -> str:
        """Convert to SSE format."""
        return f"event: {self.event_type}\ndata: {json.dumps(self.payload)}\n\n"


class EventBroadcaster:
    """Fans deployment events out to subscribers and persists log lines.

    Each subscriber owns an unbounded queue, so per-deployment emission order
    is kept for every subscriber. Nothing is replayed to a queue created after
    an event was published; late subscribers read the persisted log first.
    """

    def __init__(self, store: DeploymentStore | None = None):
        self.store = store or get_deployment_store()
        self._channels: dict[UUID, set[asyncio.Queue[Event]]] = {}

    def subscribe(self, deployment_id: UUID) -> asyncio.Queue[Event]:
        """Open a subscription to a deployment's channel."""
        queue: asyncio.Queue[Event] = asyncio.Queue()
        self._channels.setdefault(deployment_id, set()).add(queue)
        return queue

    def unsubscribe(self, deployment_id: UUID, queue: asyncio.Queue[Event]) -> None:
        """Close a subscription."""
        subscribers = self._channels.get(deployment_id)
        if not subscribers:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._channels[deployment_id]

    def subscriber_count(self, deployment_id: UUID) -> int:
        return len(self._channels.get(deployment_id, ()))

    async def publish(self, deployment_id: UUID, event: Event) -> bool:
        """Deliver an event to every current subscriber of the deployment.

        Log lines are appended to the persisted build log first. A line the
        store refuses (deployment no longer building) is dropped entirely.
        """
        if event.event_type == LOG_LINE:
            accepted = await self.store.append_log(deployment_id, event.data["message"])
            if not accepted:
                logger.debug(
                    "events.log_dropped",
                    deployment_id=str(deployment_id),
                    message=event.data["message"],
                )
                return False

        for queue in self._channels.get(deployment_id, ()):
            queue.put_nowait(event)
        return True

    async def publish_log(self, deployment_id: UUID, message: str) -> bool:
        """Publish a build log line."""
        return await self.publish(
            deployment_id,
            Event(
                event_type=LOG_LINE,
                data={"deployment_id": str(deployment_id), "message": message.strip()},
            ),
        )

    async def publish_status(
        self,
        deployment_id: UUID,
        status: DeploymentStatus,
        message: str,
        **extra: Any,
    ) -> None:
        """Publish a status update (url, build_time and size are optional extras)."""
        data = {
            "deployment_id": str(deployment_id),
            "status": status.value,
            "message": message,
        }
        data.update({key: value for key, value in extra.items() if value is not None})
        await self.publish(deployment_id, Event(event_type=STATUS_UPDATE, data=data))


@lru_cache
def get_event_broadcaster() -> EventBroadcaster:
    """Get the event broadcaster singleton."""
    return EventBroadcaster()
