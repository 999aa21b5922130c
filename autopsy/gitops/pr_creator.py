from __future__ import annotations

from dataclasses import dataclass

import httpx

from autopsy.errors import UpstreamError
from autopsy.gitops.clients import repo_client
from autopsy.gitops.github_rest import GitHubRestClient
from autopsy.gitops.paths import require_repo_path
from autopsy.models import Diagnosis, FailureEvent, PullRequestResult
from autopsy.settings import Settings


def fix_branch_name(*, job_id: int, prefix: str) -> str:
    return f"{prefix}fix-{int(job_id)}"


def is_autopsy_branch(branch: str | None, *, prefix: str) -> bool:
    """True for any branch this service authored; failures there must never start an autopsy."""
    return bool(branch) and prefix in str(branch)


@dataclass(frozen=True)
class PullRequestCreator:
    """
    Publishes a Diagnosis as a reviewable pull request on branch <prefix>fix-<job id>.
    The whole file is replaced with `suggested_fix`.
    """

    settings: Settings
    transport: httpx.AsyncBaseTransport | None = None

    async def create(self, *, event: FailureEvent, diagnosis: Diagnosis) -> PullRequestResult:
        file_path = require_repo_path(diagnosis.file_path)
        head_branch = fix_branch_name(job_id=event.job_id, prefix=self.settings.branch_prefix)
        title = _render_pr_title(event=event, diagnosis=diagnosis)
        body = _render_pr_body(event=event, diagnosis=diagnosis)
        client = repo_client(self.settings, event.repo_name, transport=self.transport)

        if not isinstance(client, GitHubRestClient):
            return client.create_pr(
                title=title,
                body=body,
                branch=head_branch,
                base=event.branch or self.settings.github_base_branch or "main",
                file_path=file_path,
                content=diagnosis.suggested_fix,
            )

        base_branch = event.branch or self.settings.github_base_branch or await client.get_repo_default_branch()
        # Branch from the exact commit that failed so the diff shows only the fix.
        await client.create_branch(new_branch=head_branch, from_sha=event.commit_sha)

        # Re-delivery: the branch may already carry a previous fix commit, so look up the sha on the head branch.
        sha = await client.get_file_sha(path=file_path, ref=head_branch)
        commit_msg = f"fix: {file_path} (autopsy of job {event.job_id})"
        await client.upsert_file(
            path=file_path,
            content_text=diagnosis.suggested_fix,
            branch=head_branch,
            message=commit_msg,
            known_sha=sha,
        )

        pr = await client.create_pull_request(title=title, body=body, head=head_branch, base=base_branch)
        if pr is None:
            pr = await client.find_open_pull_request(head=head_branch)
        if pr is None:
            raise UpstreamError(f"github refused to open a pull request for {head_branch}", service="github", status_code=422)
        return pr


def _render_pr_title(*, event: FailureEvent, diagnosis: Diagnosis) -> str:
    return f"Autopsy: fix {diagnosis.file_path} ({event.job_name} failed)"


def _render_pr_body(*, event: FailureEvent, diagnosis: Diagnosis) -> str:
    lines = [
        "## CI Autopsy",
        "",
        f"Job **{event.job_name}** (`{event.job_id}`) failed at `{event.commit_sha[:12]}`.",
        f"Run: {event.run_url}",
        "",
        "### Root cause",
        diagnosis.root_cause or "(not stated)",
        "",
        "### Fix",
        f"Replaces `{diagnosis.file_path}` with the corrected content.",
        "",
        diagnosis.explanation or "",
        "",
        "---",
        f"Diagnosis protocol `{diagnosis.protocol.value}`"
        + ("" if diagnosis.source_found else " (source file was not available; diagnosed from logs only)")
        + ". Review before merging: the fix is machine-generated.",
    ]
    return "\n".join(lines)
