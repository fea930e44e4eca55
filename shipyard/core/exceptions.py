"""Custom exceptions for Shipyard."""

from typing import Any


class ShipyardError(Exception):
    """Base exception for Shipyard."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(ShipyardError):
    """Malformed webhook payload or request body."""

    pass


class AuthenticationError(ShipyardError):
    """Webhook signature did not match the configured secret."""

    def __init__(self, provider: str, message: str = "Webhook signature verification failed"):
        super().__init__(message, {"provider": provider})
        self.provider = provider


class NotFoundError(ShipyardError):
    """Unknown project or deployment."""

    pass


class ProjectNotFoundError(NotFoundError):
    """Project not found."""

    def __init__(self, project_id: Any):
        super().__init__(
            f"Project not found: {project_id}",
            {"project_id": str(project_id)},
        )


class DeploymentNotFoundError(NotFoundError):
    """Deployment not found."""

    def __init__(self, deployment_id: Any):
        super().__init__(
            f"Deployment not found: {deployment_id}",
            {"deployment_id": str(deployment_id)},
        )


class InvalidStateTransition(ShipyardError):
    """A status change that the deployment state machine does not allow."""

    def __init__(self, deployment_id: Any, current: str, target: str):
        super().__init__(
            f"Cannot move deployment from '{current}' to '{target}'",
            {
                "deployment_id": str(deployment_id),
                "current": current,
                "target": target,
            },
        )
        self.current = current
        self.target = target


class StageFailure(ShipyardError):
    """A build pipeline stage failed."""

    def __init__(self, step: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, {"step": step, **(details or {})})
        self.step = step


class StageTimeoutError(StageFailure):
    """A stage exceeded its wall-clock limit."""

    def __init__(self, step: str, timeout: float):
        super().__init__(
            step,
            f"{step} step timed out after {timeout:g}s",
            {"timeout": timeout},
        )
        self.timeout = timeout


class StageCancelled(ShipyardError):
    """The deployment was cancelled while a stage was running."""

    def __init__(self, step: str):
        super().__init__(f"Cancelled during {step} step", {"step": step})
        self.step = step


class StoreError(ShipyardError):
    """The deployment record store could not be reached."""

    pass
