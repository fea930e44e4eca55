"""Provider-agnostic commit notifications."""

from pydantic import BaseModel

from shipyard.models.project import GitProvider


class PullRequestInfo(BaseModel):
    """Pull/merge request metadata carried by preview events."""

    id: int | str
    title: str
    source_branch: str
    target_branch: str


class CommitEvent(BaseModel):
    """Normalized push or pull-request notification.

    Never persisted; the gateway turns it into queued deployments.
    """

    provider: GitProvider
    repository_url: str
    branch: str
    commit_sha: str | None = None
    commit_message: str = ""
    author: str | None = None
    pull_request: PullRequestInfo | None = None

    @property
    def is_preview(self) -> bool:
        return self.pull_request is not None
