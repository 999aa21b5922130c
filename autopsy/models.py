from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------- Inbound webhook (GitHub) ----------


class GitHubRepository(BaseModel):
    model_config = ConfigDict(extra="allow")

    full_name: str = Field(..., pattern=r"^[^/\s]+/[^/\s]+$")
    html_url: Optional[str] = None


class WorkflowJob(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int
    name: str
    status: str
    conclusion: Optional[str] = None
    head_sha: str
    run_url: str
    html_url: Optional[str] = None
    # GitHub sends null for jobs not tied to a branch (tags, some PR merge refs).
    head_branch: Optional[str] = None
    completed_at: Optional[str] = None


class GitHubWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    action: Optional[str] = None
    repository: GitHubRepository
    workflow_job: Optional[WorkflowJob] = None


# ---------- Autopsy records ----------


class FailureEvent(BaseModel):
    """
    One failed CI job that needs an autopsy. Built once at ingestion and never mutated;
    every later stage reads it from the record payload.
    """

    model_config = ConfigDict(frozen=True)

    repo_name: str = Field(..., description="owner/name")
    job_id: int
    job_name: str
    commit_sha: str
    run_url: str
    timestamp: Optional[str] = None
    branch: Optional[str] = None

    @property
    def owner(self) -> str:
        return self.repo_name.split("/", 1)[0]

    @property
    def repo(self) -> str:
        return self.repo_name.split("/", 1)[1]


class LogSnapshot(BaseModel):
    full_log_length: int
    line_count: int
    snippet: str
    retrieved_at: datetime = Field(default_factory=utcnow)


class DiagnosisProtocol(str, Enum):
    v1 = "v1"  # single phase, logs only
    v2 = "v2"  # scout -> retrieve -> surgeon


class Diagnosis(BaseModel):
    model_config = ConfigDict(frozen=True)

    root_cause: str
    file_path: str = Field(..., min_length=1)
    # Complete replacement content for file_path, never a diff or fragment.
    suggested_fix: str = Field(..., min_length=1)
    explanation: str = ""
    protocol: DiagnosisProtocol
    source_found: bool = False
    analyzed_at: datetime = Field(default_factory=utcnow)


class PullRequestResult(BaseModel):
    mode: Literal["mock", "real"]
    pr_number: int
    pr_title: str
    pr_url: str
    branch_name: str
    reused: bool = False


class SourceFile(BaseModel):
    """
    Content of one file at one commit. `found=False` means the file could not be read;
    an existing empty file is `found=True, content=""`.
    """

    path: str
    ref: str
    found: bool
    content: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def missing(cls, *, path: str, ref: str, reason: str) -> "SourceFile":
        return cls(path=path, ref=ref, found=False, content=None, reason=reason)


class Stage(str, Enum):
    fetch_logs = "start-autopsy"
    analyze = "analyze-logs"
    publish = "apply-fix"
    notify = "pr-created"


class AutopsyRecord(BaseModel):
    """
    Accumulated state of one autopsy. Each stage adds exactly one field group.
    """

    model_config = ConfigDict(populate_by_name=True)

    schema_version: Literal["autopsy.record.v1"] = Field("autopsy.record.v1", alias="schema")
    correlation_id: str
    event: FailureEvent
    logs: Optional[LogSnapshot] = None
    diagnosis: Optional[Diagnosis] = None
    pr: Optional[PullRequestResult] = None
    notified: Optional[bool] = None

    @property
    def job_key(self) -> str:
        return str(self.event.job_id)


class StageCommand(BaseModel):
    topic: Stage
    # JSON-compatible AutopsyRecord dump; re-validated by the consuming stage.
    payload: Dict[str, Any]

    @classmethod
    def for_record(cls, topic: Stage, record: AutopsyRecord) -> "StageCommand":
        return cls(topic=topic, payload=record.model_dump(mode="json", by_alias=True))


class AutopsyStatus(BaseModel):
    state: Literal["running", "completed", "failed"]
    stage: Stage
    error: Optional[str] = None
    error_code: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)
