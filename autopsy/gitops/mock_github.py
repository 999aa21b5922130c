from __future__ import annotations

import json
import os
from dataclasses import dataclass

from autopsy.errors import UpstreamError
from autopsy.gitops.paths import require_repo_path
from autopsy.models import PullRequestResult, SourceFile


@dataclass(frozen=True)
class MockGitHub:
    """
    Offline stand-in for GitHub (no network, no real git required).

    Reads:
      - job logs:  <root>/logs/<owner>/<repo>/<job_id>.log
      - sources:   <root>/repos/<owner>/<repo>/<sha>/<path>  (falls back to .../HEAD/<path>)
    Writes:
      - PR metadata:     <root>/prs/<n>.json
      - proposed file:   <root>/prs/<n>.content
    """

    root_dir: str
    repo: str  # owner/name
    public_base_url: str = "http://localhost:8088"

    def _repo_dir(self, kind: str) -> str:
        owner, name = self.repo.split("/", 1)
        return os.path.join(self.root_dir, kind, owner, name)

    async def download_job_logs(self, *, job_id: int) -> str:
        path = os.path.join(self._repo_dir("logs"), f"{int(job_id)}.log")
        if not os.path.exists(path):
            raise UpstreamError(f"mock_github_http_404: job_logs {job_id}", service="github", status_code=404)
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return f.read()

    async def get_file_content(self, *, path: str, ref: str) -> SourceFile:
        rel = require_repo_path(path)
        base = os.path.realpath(self._repo_dir("repos"))
        for rev in (ref, "HEAD"):
            candidate = os.path.realpath(os.path.join(base, rev, rel))
            # Symlinks or odd refs must not lead outside the checked-out repository.
            if os.path.commonpath([base, candidate]) != base:
                return SourceFile.missing(path=rel, ref=ref, reason="unsafe_path")
            if os.path.isdir(candidate):
                return SourceFile.missing(path=rel, ref=ref, reason="not_a_file")
            if os.path.exists(candidate):
                try:
                    with open(candidate, "r", encoding="utf-8") as f:
                        return SourceFile(path=rel, ref=ref, found=True, content=f.read())
                except UnicodeDecodeError:
                    return SourceFile.missing(path=rel, ref=ref, reason="not_utf8")
        return SourceFile.missing(path=rel, ref=ref, reason="not_found")

    def create_pr(
        self,
        *,
        title: str,
        body: str,
        branch: str,
        base: str,
        file_path: str,
        content: str,
    ) -> PullRequestResult:
        file_path = require_repo_path(file_path)
        pr_dir = os.path.join(self.root_dir, "prs")
        os.makedirs(pr_dir, exist_ok=True)

        # Re-delivery of the same failure reuses the PR already opened for its branch.
        for name in sorted(os.listdir(pr_dir)):
            if not name.endswith(".json"):
                continue
            with open(os.path.join(pr_dir, name), "r", encoding="utf-8") as f:
                raw = f.read()
            if not raw.strip():
                # Number claimed by a publisher that has not written its metadata yet.
                continue
            existing = json.loads(raw)
            if existing.get("repo") == self.repo and existing.get("branch") == branch:
                with open(existing["content_path"], "w", encoding="utf-8") as f:
                    f.write(content)
                return PullRequestResult(
                    mode="mock",
                    pr_number=int(existing["pr_number"]),
                    pr_title=str(existing["title"]),
                    pr_url=self._pr_url(int(existing["pr_number"])),
                    branch_name=branch,
                    reused=True,
                )

        # Numbers are claimed with an exclusive create so concurrent publishers never share one.
        pr_number = max(_pr_numbers(pr_dir), default=0) + 1
        while True:
            meta_path = os.path.join(pr_dir, f"{pr_number}.json")
            try:
                meta_file = open(meta_path, "x", encoding="utf-8")
            except FileExistsError:
                pr_number += 1
                continue
            break
        content_path = os.path.join(pr_dir, f"{pr_number}.content")

        with meta_file:
            with open(content_path, "w", encoding="utf-8") as f:
                f.write(content)
            meta = {
                "pr_number": pr_number,
                "repo": self.repo,
                "title": title,
                "body": body,
                "branch": branch,
                "base": base,
                "file_path": file_path,
                "content_path": content_path,
            }
            json.dump(meta, meta_file, indent=2)

        return PullRequestResult(
            mode="mock",
            pr_number=pr_number,
            pr_title=title,
            pr_url=self._pr_url(pr_number),
            branch_name=branch,
        )

    def _pr_url(self, pr_number: int) -> str:
        return f"{self.public_base_url.rstrip('/')}/mock/pr/{pr_number}"


def load_mock_pr(root_dir: str, pr_number: int) -> dict | None:
    meta_path = os.path.join(root_dir, "prs", f"{int(pr_number)}.json")
    if not os.path.exists(meta_path):
        return None
    with open(meta_path, "r", encoding="utf-8") as f:
        meta = json.load(f)
    content_path = meta.get("content_path")
    if content_path and os.path.exists(content_path):
        with open(content_path, "r", encoding="utf-8", errors="replace") as f:
            meta["content"] = f.read()
    return meta


def _pr_numbers(pr_dir: str) -> list[int]:
    return [int(n[: -len(".json")]) for n in os.listdir(pr_dir) if n.endswith(".json") and n[: -len(".json")].isdigit()]
