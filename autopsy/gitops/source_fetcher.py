from __future__ import annotations

from dataclasses import dataclass

import httpx

from autopsy.gitops.clients import repo_client
from autopsy.gitops.paths import normalize_repo_path
from autopsy.models import SourceFile
from autopsy.settings import Settings


@dataclass(frozen=True)
class SourceFetcher:
    """
    Reads one file at one commit.

    Returns SourceFile(found=False) for missing/unreadable files and for paths
    outside the repository; transport and non-404 HTTP failures surface as UpstreamError.
    """

    settings: Settings
    transport: httpx.AsyncBaseTransport | None = None

    async def fetch(self, *, repo_name: str, path: str, ref: str) -> SourceFile:
        rel = normalize_repo_path(path)
        if not rel:
            reason = "empty_path" if not (path or "").strip() else "unsafe_path"
            return SourceFile.missing(path=path or "", ref=ref, reason=reason)
        client = repo_client(self.settings, repo_name, transport=self.transport)
        return await client.get_file_content(path=rel, ref=ref)
