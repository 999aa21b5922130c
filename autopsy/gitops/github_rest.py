from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from autopsy.errors import ConfigurationError, UpstreamError
from autopsy.gitops.paths import quote_repo_path, require_repo_path
from autopsy.models import PullRequestResult, SourceFile


@dataclass(frozen=True)
class GitHubRestClient:
    """
    Minimal async GitHub REST wrapper.

    Supports:
    - download raw job logs (Actions)
    - read a file at a commit (Contents API)
    - create branch, upsert file, create/find PR

    Designed to be mockable in tests (httpx transport override).
    """

    token: str
    repo: str  # owner/name
    api_base: str = "https://api.github.com"
    timeout_s: float = 30.0
    transport: httpx.AsyncBaseTransport | None = None

    def __post_init__(self) -> None:
        if not self.token:
            raise ConfigurationError("GitHub token is required for github_mode=real", missing=["AUTOPSY_GITHUB_TOKEN"])

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def _client(self, *, follow_redirects: bool = False) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport, follow_redirects=follow_redirects)

    def _url(self, suffix: str) -> str:
        return f"{self.api_base.rstrip('/')}/repos/{self.repo}{suffix}"

    def _contents_url(self, rel: str) -> str:
        return self._url(f"/contents/{quote_repo_path(rel)}")

    async def _send(
        self,
        method: str,
        url: str,
        *,
        what: str,
        ok_statuses: tuple[int, ...] = (),
        follow_redirects: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            async with self._client(follow_redirects=follow_redirects) as c:
                r = await c.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            raise UpstreamError(f"github_transport_error: {what}: {e}", service="github") from e
        if r.status_code in ok_statuses:
            return r
        if r.is_error:
            raise UpstreamError(
                f"github_http_{r.status_code}: {what}: {r.text[:500]}",
                service="github",
                status_code=r.status_code,
            )
        return r

    async def download_job_logs(self, *, job_id: int) -> str:
        # Responds 302 to a short-lived download URL; httpx drops the auth header across hosts.
        r = await self._send(
            "GET",
            self._url(f"/actions/jobs/{int(job_id)}/logs"),
            what=f"job_logs {job_id}",
            follow_redirects=True,
        )
        return r.text

    async def get_file_content(self, *, path: str, ref: str) -> SourceFile:
        rel = require_repo_path(path)
        r = await self._send(
            "GET",
            self._contents_url(rel),
            what=f"contents {rel}@{ref}",
            ok_statuses=(404,),
            params={"ref": ref},
        )
        if r.status_code == 404:
            return SourceFile.missing(path=rel, ref=ref, reason="not_found")
        data = r.json()
        if not isinstance(data, dict) or data.get("type") not in (None, "file"):
            return SourceFile.missing(path=rel, ref=ref, reason="not_a_file")
        encoded = data.get("content")
        if data.get("encoding") != "base64" or not isinstance(encoded, str):
            # Files over 1MB come back with encoding "none" and no inline content.
            return SourceFile.missing(path=rel, ref=ref, reason=f"unsupported_encoding:{data.get('encoding')}")
        try:
            text = base64.b64decode(encoded).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return SourceFile.missing(path=rel, ref=ref, reason="not_utf8")
        return SourceFile(path=rel, ref=ref, found=True, content=text)

    async def get_repo_default_branch(self) -> str:
        r = await self._send("GET", self._url(""), what="repo")
        data = r.json()
        return str(data.get("default_branch") or "main")

    async def create_branch(self, *, new_branch: str, from_sha: str) -> None:
        payload = {"ref": f"refs/heads/{new_branch}", "sha": from_sha}
        # 422 if branch exists; treat as idempotent.
        await self._send("POST", self._url("/git/refs"), what=f"create_branch {new_branch}", ok_statuses=(422,), json=payload)

    async def get_file_sha(self, *, path: str, ref: str) -> Optional[str]:
        rel = require_repo_path(path)
        r = await self._send(
            "GET", self._contents_url(rel), what=f"file_sha {rel}@{ref}", ok_statuses=(404,), params={"ref": ref}
        )
        if r.status_code == 404:
            return None
        data = r.json()
        return str(data.get("sha")) if isinstance(data, dict) and data.get("sha") else None

    async def upsert_file(
        self,
        *,
        path: str,
        content_text: str,
        branch: str,
        message: str,
        known_sha: Optional[str] = None,
    ) -> None:
        rel = require_repo_path(path)
        b64 = base64.b64encode(content_text.encode("utf-8")).decode("ascii")
        payload: Dict[str, Any] = {"message": message, "content": b64, "branch": branch}
        if known_sha:
            payload["sha"] = known_sha
        await self._send("PUT", self._contents_url(rel), what=f"upsert {rel}", json=payload)

    async def create_pull_request(self, *, title: str, body: str, head: str, base: str) -> Optional[PullRequestResult]:
        """Returns None when GitHub refuses with 422 (typically: a PR for `head` already exists)."""
        payload = {"title": title, "body": body, "head": head, "base": base}
        r = await self._send("POST", self._url("/pulls"), what=f"create_pr {head}", ok_statuses=(422,), json=payload)
        if r.status_code == 422:
            return None
        data = r.json()
        return PullRequestResult(
            mode="real",
            pr_number=int(data["number"]),
            pr_title=str(data["title"]),
            pr_url=str(data["html_url"]),
            branch_name=head,
        )

    async def find_open_pull_request(self, *, head: str) -> Optional[PullRequestResult]:
        owner = self.repo.split("/", 1)[0]
        r = await self._send(
            "GET", self._url("/pulls"), what=f"find_pr {head}", params={"head": f"{owner}:{head}", "state": "open"}
        )
        data = r.json()
        if not isinstance(data, list) or not data:
            return None
        pr = data[0]
        return PullRequestResult(
            mode="real",
            pr_number=int(pr["number"]),
            pr_title=str(pr["title"]),
            pr_url=str(pr["html_url"]),
            branch_name=head,
            reused=True,
        )
