from __future__ import annotations

from typing import Union

import httpx

from autopsy.gitops.github_rest import GitHubRestClient
from autopsy.gitops.mock_github import MockGitHub
from autopsy.settings import Settings


RepoClient = Union[GitHubRestClient, MockGitHub]


def repo_client(settings: Settings, repo_name: str, *, transport: httpx.AsyncBaseTransport | None = None) -> RepoClient:
    """Source-control client bound to one repository, honoring github_mode."""
    if settings.github_mode == "mock":
        return MockGitHub(root_dir=settings.mock_github_dir, repo=repo_name, public_base_url=settings.public_base_url)
    # GitHubRestClient raises ConfigurationError itself when the token is missing.
    return GitHubRestClient(
        token=settings.github_token or "",
        repo=repo_name,
        api_base=settings.github_api_base,
        timeout_s=settings.github_timeout_s,
        transport=transport,
    )
