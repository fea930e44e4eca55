"""Project models.

Projects are administered elsewhere; the pipeline only reads them.
"""

from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class GitProvider(str, Enum):
    """Supported source-control providers."""

    GITHUB = "github"
    GITLAB = "gitlab"
    BITBUCKET = "bitbucket"
    GENERIC = "generic"


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    DELETED = "deleted"


class Repository(BaseModel):
    """Source repository a project deploys from."""

    provider: GitProvider = GitProvider.GITHUB
    url: str
    branch: str = "main"


class BuildSettings(BaseModel):
    """How a project is built and what gets published."""

    command: str | None = None
    directory: str = "dist"
    environment: dict[str, str] = Field(default_factory=dict)


class Project(BaseModel):
    """A deployable site owned by a user account."""

    id: UUID = Field(default_factory=uuid4)
    name: str
    slug: str = Field(..., min_length=1, max_length=63, pattern=r"^[a-z0-9-]+$")
    repository: Repository
    build_settings: BuildSettings = Field(default_factory=BuildSettings)
    status: ProjectStatus = ProjectStatus.ACTIVE
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_active(self) -> bool:
        return self.status == ProjectStatus.ACTIVE
