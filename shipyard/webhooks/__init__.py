"""Inbound source-control webhooks."""

from shipyard.webhooks.gateway import WebhookGateway, WebhookResult, get_gateway
from shipyard.webhooks.providers import (
    ADAPTERS,
    BitbucketAdapter,
    GenericAdapter,
    GitHubAdapter,
    GitLabAdapter,
    ProviderAdapter,
    Verification,
    get_adapter,
)

__all__ = [
    "WebhookGateway",
    "WebhookResult",
    "get_gateway",
    "ADAPTERS",
    "ProviderAdapter",
    "GitHubAdapter",
    "GitLabAdapter",
    "BitbucketAdapter",
    "GenericAdapter",
    "Verification",
    "get_adapter",
]
