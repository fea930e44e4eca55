"""Source-control provider adapters.

Each adapter knows how one provider authenticates its webhooks and how its
payloads map onto ``CommitEvent``. Adding a provider means adding an adapter
and registering it in ``ADAPTERS``.
"""

import hashlib
import hmac
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Mapping

from pydantic import ValidationError as PayloadError

from shipyard.core.exceptions import ValidationError
from shipyard.models.commit import CommitEvent, PullRequestInfo
from shipyard.models.project import GitProvider


class Verification(str, Enum):
    """Outcome of checking a webhook's authenticity."""

    VERIFIED = "verified"
    UNSIGNED = "unsigned"  # secret configured, signature header missing
    DISABLED = "disabled"  # no secret configured
    UNSUPPORTED = "unsupported"  # provider offers no verification
    INVALID = "invalid"


def _branch_from_ref(ref: str) -> str:
    return ref.replace("refs/heads/", "", 1)


class ProviderAdapter(ABC):
    """Verification and payload normalization for one provider."""

    provider: GitProvider
    event_header: str | None = None
    signature_header: str | None = None

    def event_type(self, headers: Mapping[str, str]) -> str | None:
        if self.event_header is None:
            return None
        return headers.get(self.event_header)

    def verify(
        self, headers: Mapping[str, str], raw_body: bytes, secret: str
    ) -> Verification:
        """Check the request against the shared secret."""
        if self.signature_header is None:
            return Verification.UNSUPPORTED
        if not secret:
            return Verification.DISABLED
        signature = headers.get(self.signature_header)
        if not signature:
            return Verification.UNSIGNED
        if self._signature_matches(signature, raw_body, secret):
            return Verification.VERIFIED
        return Verification.INVALID

    def _signature_matches(self, signature: str, raw_body: bytes, secret: str) -> bool:
        return False

    def normalize(
        self, payload: dict[str, Any], headers: Mapping[str, str]
    ) -> list[CommitEvent]:
        """Map a provider payload to commit events.

        Raises:
            ValidationError: The payload is missing fields the event needs.
        """
        try:
            return self._normalize(payload, self.event_type(headers))
        except (KeyError, TypeError, AttributeError, IndexError, PayloadError) as e:
            raise ValidationError(
                f"Malformed {self.provider.value} payload",
                {"provider": self.provider.value, "field": str(e)},
            ) from e

    @abstractmethod
    def _normalize(self, payload: dict[str, Any], event: str | None) -> list[CommitEvent]:
        pass


class GitHubAdapter(ProviderAdapter):
    """GitHub: HMAC-SHA256 signature over the raw body."""

    provider = GitProvider.GITHUB
    event_header = "x-github-event"
    signature_header = "x-hub-signature-256"

    def _signature_matches(self, signature: str, raw_body: bytes, secret: str) -> bool:
        expected = "sha256=" + hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected.encode(), signature.encode())

    def _normalize(self, payload: dict[str, Any], event: str | None) -> list[CommitEvent]:
        if event == "push":
            commits = payload.get("commits") or []
            if not commits:
                return []
            latest = commits[-1]
            return [
                CommitEvent(
                    provider=self.provider,
                    repository_url=payload["repository"]["clone_url"],
                    branch=_branch_from_ref(payload["ref"]),
                    commit_sha=latest["id"],
                    commit_message=latest.get("message", ""),
                    author=(latest.get("author") or {}).get("name"),
                )
            ]

        if event == "pull_request":
            if payload["action"] not in ("opened", "synchronize"):
                return []
            pr = payload["pull_request"]
            return [
                CommitEvent(
                    provider=self.provider,
                    repository_url=payload["repository"]["clone_url"],
                    branch=pr["head"]["ref"],
                    commit_sha=pr["head"]["sha"],
                    commit_message=f"PR #{pr['number']}: {pr['title']}",
                    author=(pr.get("user") or {}).get("login"),
                    pull_request=PullRequestInfo(
                        id=pr["number"],
                        title=pr["title"],
                        source_branch=pr["head"]["ref"],
                        target_branch=pr["base"]["ref"],
                    ),
                )
            ]

        # ping and everything else
        return []


class GitLabAdapter(ProviderAdapter):
    """GitLab: shared token echoed in ``X-Gitlab-Token``."""

    provider = GitProvider.GITLAB
    event_header = "x-gitlab-event"
    signature_header = "x-gitlab-token"

    def _signature_matches(self, signature: str, raw_body: bytes, secret: str) -> bool:
        return hmac.compare_digest(signature.encode(), secret.encode())

    def _normalize(self, payload: dict[str, Any], event: str | None) -> list[CommitEvent]:
        if event == "Push Hook":
            commits = payload.get("commits") or []
            if not commits:
                return []
            latest = commits[-1]
            return [
                CommitEvent(
                    provider=self.provider,
                    repository_url=payload["repository"]["git_http_url"],
                    branch=_branch_from_ref(payload["ref"]),
                    commit_sha=latest["id"],
                    commit_message=latest.get("message", ""),
                    author=(latest.get("author") or {}).get("name"),
                )
            ]

        if event == "Merge Request Hook":
            attributes = payload["object_attributes"]
            if attributes.get("action") not in ("open", "update"):
                return []
            return [
                CommitEvent(
                    provider=self.provider,
                    repository_url=payload["repository"]["git_http_url"],
                    branch=attributes["source_branch"],
                    commit_sha=attributes["last_commit"]["id"],
                    commit_message=f"MR !{attributes['iid']}: {attributes['title']}",
                    author=(payload.get("user") or attributes.get("author") or {}).get("name"),
                    pull_request=PullRequestInfo(
                        id=attributes["iid"],
                        title=attributes["title"],
                        source_branch=attributes["source_branch"],
                        target_branch=attributes["target_branch"],
                    ),
                )
            ]

        return []


class BitbucketAdapter(ProviderAdapter):
    """Bitbucket: no signature scheme, accepted on a best-effort basis."""

    provider = GitProvider.BITBUCKET
    event_header = "x-event-key"

    @staticmethod
    def _clone_url(payload: dict[str, Any]) -> str:
        for link in payload["repository"]["links"]["clone"]:
            if link.get("name") == "https":
                return link["href"]
        raise ValidationError(
            "Could not find repository URL in Bitbucket payload",
            {"provider": GitProvider.BITBUCKET.value},
        )

    @staticmethod
    def _author(commit: dict[str, Any]) -> str | None:
        author = commit.get("author") or {}
        return (author.get("user") or {}).get("display_name") or author.get("raw")

    def _normalize(self, payload: dict[str, Any], event: str | None) -> list[CommitEvent]:
        if event == "repo:push":
            repository_url = self._clone_url(payload)
            events = []
            for change in payload["push"].get("changes") or []:
                new = change.get("new") or {}
                commits = change.get("commits") or []
                if new.get("type") != "branch" or not commits:
                    continue
                # Bitbucket lists the newest commit first
                latest = commits[0]
                events.append(
                    CommitEvent(
                        provider=self.provider,
                        repository_url=repository_url,
                        branch=new["name"],
                        commit_sha=latest["hash"],
                        commit_message=latest.get("message", ""),
                        author=self._author(latest),
                    )
                )
            return events

        if event in ("pullrequest:created", "pullrequest:updated"):
            pr = payload["pullrequest"]
            return [
                CommitEvent(
                    provider=self.provider,
                    repository_url=self._clone_url(payload),
                    branch=pr["source"]["branch"]["name"],
                    commit_sha=pr["source"]["commit"]["hash"],
                    commit_message=f"PR #{pr['id']}: {pr['title']}",
                    author=(pr.get("author") or {}).get("display_name"),
                    pull_request=PullRequestInfo(
                        id=pr["id"],
                        title=pr["title"],
                        source_branch=pr["source"]["branch"]["name"],
                        target_branch=pr["destination"]["branch"]["name"],
                    ),
                )
            ]

        return []


class GenericAdapter(ProviderAdapter):
    """Manual trigger: ``{repository_url, branch, commit_sha, commit_message}``."""

    provider = GitProvider.GENERIC

    def _normalize(self, payload: dict[str, Any], event: str | None) -> list[CommitEvent]:
        repository_url = payload.get("repository_url")
        if not repository_url or not isinstance(repository_url, str):
            raise ValidationError("repository_url is required", {"provider": "generic"})
        return [
            CommitEvent(
                provider=self.provider,
                repository_url=repository_url,
                branch=payload.get("branch") or "main",
                commit_sha=payload.get("commit_sha"),
                commit_message=payload.get("commit_message") or "Manual webhook trigger",
                author=payload.get("author"),
            )
        ]


ADAPTERS: dict[GitProvider, ProviderAdapter] = {
    adapter.provider: adapter
    for adapter in (GitHubAdapter(), GitLabAdapter(), BitbucketAdapter(), GenericAdapter())
}


def get_adapter(provider: GitProvider | str) -> ProviderAdapter:
    """Look up the adapter for a provider name."""
    try:
        return ADAPTERS[GitProvider(provider)]
    except ValueError as e:
        raise ValidationError(
            f"Unsupported provider: {provider}",
            {"supported": [p.value for p in ADAPTERS]},
        ) from e
