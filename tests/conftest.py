from __future__ import annotations

import json
import os
from typing import Any, Callable, Dict, List

import pytest

from autopsy.models import AutopsyRecord, FailureEvent, LogSnapshot
from autopsy.settings import Settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Keep tests deterministic and isolated from developer machine env.
    """
    for k in list(os.environ.keys()):
        if k.startswith("AUTOPSY_"):
            monkeypatch.delenv(k, raising=False)


class FakeChat:
    """Queued model responses; records every prompt it receives."""

    def __init__(self, responses: List[str]) -> None:
        self.responses = list(responses)
        self.calls: List[List[Dict[str, str]]] = []

    async def chat(self, *, model: str, messages: List[Dict[str, str]], max_tokens: int = 8192) -> str:
        self.calls.append(messages)
        if not self.responses:
            raise AssertionError("unexpected model call")
        return self.responses.pop(0)

    def prompts(self) -> List[str]:
        return [m[-1]["content"] for m in self.calls]


@pytest.fixture
def fake_chat() -> Callable[..., FakeChat]:
    def _make(*responses: str) -> FakeChat:
        return FakeChat(list(responses))

    return _make


@pytest.fixture
def mock_settings(tmp_path) -> Settings:
    return Settings(
        github_mode="mock",
        mock_github_dir=str(tmp_path / "mock_github"),
        gemini_api_key="test-key",
        discord_webhook_url="https://discord.example/api/webhooks/1/abc",
        state_db_path=str(tmp_path / "state" / "autopsy.sqlite3"),
        audit_log_path=str(tmp_path / "audit" / "audit.jsonl"),
    )


@pytest.fixture
def failure_event() -> FailureEvent:
    return FailureEvent(
        repo_name="octo/app",
        job_id=123,
        job_name="build",
        commit_sha="abc123def456",
        run_url="https://github.com/octo/app/actions/runs/9/job/123",
        timestamp="2026-10-19T10:00:00Z",
        branch="main",
    )


@pytest.fixture
def log_snapshot() -> LogSnapshot:
    return LogSnapshot(
        full_log_length=120,
        line_count=3,
        snippet="Run npm test\nError: Cannot find module './utils'\n    at src/index.js:3:15",
    )


@pytest.fixture
def new_record(failure_event: FailureEvent) -> AutopsyRecord:
    return AutopsyRecord(correlation_id="cid-1", event=failure_event)


def workflow_job_payload(
    *,
    status: str = "completed",
    conclusion: str | None = "failure",
    head_branch: str | None = "main",
    job_id: int = 123,
) -> Dict[str, Any]:
    return {
        "action": "completed",
        "repository": {"full_name": "octo/app", "html_url": "https://github.com/octo/app"},
        "workflow_job": {
            "id": job_id,
            "name": "build",
            "status": status,
            "conclusion": conclusion,
            "head_sha": "abc123def456",
            "run_url": "https://api.github.com/repos/octo/app/actions/runs/9",
            "html_url": "https://github.com/octo/app/actions/runs/9/job/123",
            "head_branch": head_branch,
            "completed_at": "2026-10-19T10:00:00Z",
        },
    }


@pytest.fixture
def job_payload() -> Callable[..., Dict[str, Any]]:
    return workflow_job_payload


def read_audit(path: str) -> List[Dict[str, Any]]:
    with open(path, "r", encoding="utf-8") as f:
        return [json.loads(ln) for ln in f.read().splitlines() if ln.strip()]


@pytest.fixture
def audit_events() -> Callable[[str], List[Dict[str, Any]]]:
    return read_audit
