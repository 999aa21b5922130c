from __future__ import annotations

from dataclasses import dataclass

import httpx

from autopsy.gitops.clients import repo_client
from autopsy.models import LogSnapshot
from autopsy.settings import Settings


DEFAULT_TAIL_LINES = 200


def tail_lines(raw: str, n: int = DEFAULT_TAIL_LINES) -> tuple[str, int]:
    """
    Keep the last `n` lines of a log (all of them when there are fewer).
    Returns (snippet, total_line_count). The root-cause signal of a failing job sits at the tail.
    """
    lines = (raw or "").splitlines()
    kept = lines[-max(1, int(n)) :]
    snippet = "\n".join(kept)
    # A log made only of blank lines still yields a non-empty snippet.
    if kept and not snippet:
        snippet = "\n"
    return snippet, len(lines)


@dataclass(frozen=True)
class LogRetriever:
    """
    Download the raw job log from source control and bound it to an analyzable snippet.
    """

    settings: Settings
    transport: httpx.AsyncBaseTransport | None = None

    async def retrieve(self, *, repo_name: str, job_id: int) -> LogSnapshot:
        client = repo_client(self.settings, repo_name, transport=self.transport)
        raw = await client.download_job_logs(job_id=job_id)
        snippet, line_count = tail_lines(raw, self.settings.log_tail_lines)
        return LogSnapshot(full_log_length=len(raw), line_count=line_count, snippet=snippet)
