from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple

import httpx
from pydantic import ValidationError

from autopsy.code_engine.engine import DiagnosisEngine
from autopsy.errors import AutopsyError, StagePayloadError, WebhookValidationError
from autopsy.gitops.pr_creator import PullRequestCreator, is_autopsy_branch
from autopsy.gitops.source_fetcher import SourceFetcher
from autopsy.integrations.discord import DiscordNotifier
from autopsy.llm.chat_client import ChatClient
from autopsy.memory import store as keys
from autopsy.memory.store import AutopsyStateStore
from autopsy.models import (
    AutopsyRecord,
    AutopsyStatus,
    DiagnosisProtocol,
    FailureEvent,
    GitHubWebhookPayload,
    Stage,
    StageCommand,
)
from autopsy.parsers.log_fetcher import LogRetriever
from autopsy.settings import Settings
from autopsy.telemetry.audit import AuditLogger


class StageBus(Protocol):
    async def emit(self, command: StageCommand) -> None: ...


class InProcessBus:
    """Delivers each command straight to the subscribed handler and awaits it."""

    def __init__(self) -> None:
        self._handler: Optional[Callable[[StageCommand], Awaitable[Any]]] = None

    def subscribe(self, handler: Callable[[StageCommand], Awaitable[Any]]) -> None:
        self._handler = handler

    async def emit(self, command: StageCommand) -> None:
        if self._handler is None:
            raise RuntimeError("no handler subscribed to the stage bus")
        await self._handler(command)


@dataclass(frozen=True)
class IngestOutcome:
    status_code: int
    body: Dict[str, Any]
    command: Optional[StageCommand] = None


_NEXT: Dict[Stage, Optional[Stage]] = {
    Stage.fetch_logs: Stage.analyze,
    Stage.analyze: Stage.publish,
    Stage.publish: Stage.notify,
    Stage.notify: None,
}

# Field groups a stage needs from the stages before it.
_REQUIRES: Dict[Stage, Tuple[str, ...]] = {
    Stage.fetch_logs: (),
    Stage.analyze: ("logs",),
    Stage.publish: ("logs", "diagnosis"),
    Stage.notify: ("diagnosis", "pr"),
}


@dataclass
class AutopsyCoordinator:
    """
    Sequences one autopsy: start-autopsy -> analyze-logs -> apply-fix -> pr-created.

    Each stage validates its payload, does its work, persists the field group it owns
    (keyed by job id) and only then emits the next command. A stage error stops the
    chain, marks the job failed and propagates; nothing is retried here.
    """

    settings: Settings
    store: AutopsyStateStore
    audit: AuditLogger
    log_retriever: LogRetriever
    engine: DiagnosisEngine
    publisher: PullRequestCreator
    notifier: Optional[DiscordNotifier] = None
    bus: StageBus = field(default_factory=InProcessBus)

    def __post_init__(self) -> None:
        if isinstance(self.bus, InProcessBus):
            self.bus.subscribe(self.advance)

    # ---------- ingestion ----------

    def ingest(self, *, event_type: Optional[str], body: Any) -> IngestOutcome:
        correlation_id = self.audit.new_correlation_id()

        # Connectivity probe (GitHub sends `ping` when a webhook is created).
        if event_type == "ping" or (isinstance(body, dict) and body.get("action") == "ping"):
            return IngestOutcome(200, {"status": "pong"})

        if event_type and event_type != "workflow_job":
            return self._ignored(correlation_id, "ignored", f"event_type={event_type}")

        try:
            payload = parse_webhook_payload(body)
        except WebhookValidationError as e:
            self.audit.write(correlation_id, "event.rejected", {"error": e.message})
            return IngestOutcome(400, {"status": "error", "message": e.message})

        job = payload.workflow_job
        if job is None:
            return self._ignored(correlation_id, "ignored", "no workflow_job")

        # Loop guard: runs before any status check so self-authored branches never trigger, whatever the outcome.
        if is_autopsy_branch(job.head_branch, prefix=self.settings.branch_prefix):
            return self._ignored(correlation_id, "ignored_autopsy_branch", f"branch={job.head_branch}")

        if job.status != "completed" or job.conclusion != "failure":
            return self._ignored(correlation_id, "ignored", f"status={job.status} conclusion={job.conclusion}")

        event = FailureEvent(
            repo_name=payload.repository.full_name,
            job_id=job.id,
            job_name=job.name,
            commit_sha=job.head_sha,
            run_url=job.html_url or job.run_url,
            timestamp=job.completed_at,
            branch=job.head_branch,
        )
        record = AutopsyRecord(correlation_id=correlation_id, event=event)
        self.audit.write(correlation_id, "event.received", {"event": event.model_dump(mode="json")})
        return IngestOutcome(
            202,
            {"status": "autopsy_started", "message": f"autopsy started for job {event.job_id} in {event.repo_name}"},
            StageCommand.for_record(Stage.fetch_logs, record),
        )

    def _ignored(self, correlation_id: str, status: str, reason: str) -> IngestOutcome:
        self.audit.write(correlation_id, "event.ignored", {"status": status, "reason": reason})
        return IngestOutcome(200, {"status": status})

    # ---------- stage execution ----------

    async def start(self, command: StageCommand) -> None:
        await self.bus.emit(command)

    async def advance(self, command: StageCommand) -> Optional[StageCommand]:
        stage = command.topic
        try:
            record = self._load(command)
        except StagePayloadError as e:
            self.audit.write(
                str(command.payload.get("correlation_id") or "-"),
                "stage.failed",
                {"stage": stage.value, "error_code": e.code, "error": e.message},
            )
            raise
        cid = record.correlation_id
        self._set_status(record, AutopsyStatus(state="running", stage=stage))
        self.audit.write(cid, "stage.started", {"stage": stage.value, "job_id": record.event.job_id})

        try:
            record = await self._run_stage(stage, record)
        except Exception as e:
            code = e.code if isinstance(e, AutopsyError) else "unexpected_error"
            self._set_status(record, AutopsyStatus(state="failed", stage=stage, error=str(e), error_code=code))
            self.audit.write(
                cid,
                "stage.failed",
                {"stage": stage.value, "job_id": record.event.job_id, "error_code": code, "error": str(e)},
            )
            raise

        self.audit.write(cid, "stage.completed", {"stage": stage.value, "job_id": record.event.job_id})
        next_stage = _NEXT[stage]
        if next_stage is None:
            self._set_status(record, AutopsyStatus(state="completed", stage=stage))
            return None
        nxt = StageCommand.for_record(next_stage, record)
        await self.bus.emit(nxt)
        return nxt

    def _load(self, command: StageCommand) -> AutopsyRecord:
        stage = command.topic
        try:
            record = AutopsyRecord.model_validate(command.payload)
        except ValidationError as e:
            raise StagePayloadError(f"{stage.value}: invalid autopsy record: {e.error_count()} error(s)", stage=stage.value) from e
        missing = [f for f in _REQUIRES[stage] if getattr(record, f) is None]
        if missing:
            raise StagePayloadError(f"{stage.value}: payload lacks {', '.join(missing)}", stage=stage.value)
        return record

    async def _run_stage(self, stage: Stage, record: AutopsyRecord) -> AutopsyRecord:
        key = record.job_key
        cid = record.correlation_id
        event = record.event

        if stage == Stage.fetch_logs:
            self.store.set(keys.EVENTS, key, event.model_dump(mode="json"))
            logs = await self.log_retriever.retrieve(repo_name=event.repo_name, job_id=event.job_id)
            self.store.set(keys.LOGS, key, logs.model_dump(mode="json"))
            self.audit.write(
                cid,
                "logs.retrieved",
                {"job_id": event.job_id, "full_log_length": logs.full_log_length, "lines": logs.line_count},
            )
            return record.model_copy(update={"logs": logs})

        if stage == Stage.analyze:
            assert record.logs is not None
            diagnosis = await self.engine.diagnose(event=event, logs=record.logs, correlation_id=cid)
            self.store.set(keys.ANALYSIS, key, diagnosis.model_dump(mode="json"))
            self.audit.write(
                cid,
                "diagnosis.completed",
                {
                    "job_id": event.job_id,
                    "protocol": diagnosis.protocol.value,
                    "file_path": diagnosis.file_path,
                    "root_cause": diagnosis.root_cause,
                    "source_found": diagnosis.source_found,
                },
            )
            return record.model_copy(update={"diagnosis": diagnosis})

        if stage == Stage.publish:
            assert record.diagnosis is not None
            pr = await self.publisher.create(event=event, diagnosis=record.diagnosis)
            self.store.set(keys.PULL_REQUESTS, key, pr.model_dump(mode="json"))
            self.audit.write(cid, "pr.created", {"job_id": event.job_id, **pr.model_dump(mode="json")})
            return record.model_copy(update={"pr": pr})

        assert record.diagnosis is not None and record.pr is not None
        if self.notifier is None:
            self.audit.write(cid, "notify.skipped", {"job_id": event.job_id, "reason": "notifications disabled"})
            return record.model_copy(update={"notified": False})
        notified = await self.notifier.notify(event=event, diagnosis=record.diagnosis, pr=record.pr, correlation_id=cid)
        return record.model_copy(update={"notified": notified})

    def _set_status(self, record: AutopsyRecord, status: AutopsyStatus) -> None:
        value = status.model_dump(mode="json")
        value["correlation_id"] = record.correlation_id
        if record.notified is not None:
            value["notified"] = record.notified
        self.store.set(keys.STATUS, record.job_key, value)


def parse_webhook_payload(body: Any) -> GitHubWebhookPayload:
    try:
        return GitHubWebhookPayload.model_validate(body)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<body>'}: {err['msg']}" for err in e.errors()[:10]
        )
        raise WebhookValidationError(f"invalid webhook payload: {problems}") from e


def build_coordinator(
    settings: Settings,
    *,
    bus: Optional[StageBus] = None,
    github_transport: httpx.AsyncBaseTransport | None = None,
    llm_transport: httpx.AsyncBaseTransport | None = None,
    notify_transport: httpx.AsyncBaseTransport | None = None,
) -> AutopsyCoordinator:
    """
    Compose the pipeline from settings. All credentials are checked here, once,
    so a misconfigured deployment fails at startup with a single ConfigurationError.
    """
    settings.validate_for_pipeline()
    audit = AuditLogger(settings.audit_log_path)
    store = AutopsyStateStore(db_path=settings.state_db_path)

    api_key, base_url, model = settings.llm_credentials()
    chat = ChatClient(
        api_key=api_key or "",
        base_url=base_url,
        provider=settings.agent_mode,
        timeout_s=settings.llm_timeout_s,
        json_mode=settings.llm_json_mode,
        site_url=settings.openrouter_site_url if settings.agent_mode == "openrouter" else None,
        site_name=settings.openrouter_site_name if settings.agent_mode == "openrouter" else None,
        max_retries=settings.llm_max_retries,
        transport=llm_transport,
    )
    fetcher = None
    force = None
    if settings.diagnosis_protocol == "v1":
        force = DiagnosisProtocol.v1
    else:
        fetcher = SourceFetcher(settings=settings, transport=github_transport)
        if settings.diagnosis_protocol == "v2":
            force = DiagnosisProtocol.v2
    engine = DiagnosisEngine(
        chat_client=chat,
        model=model,
        source_fetcher=fetcher,
        audit=audit,
        max_tokens=settings.llm_max_tokens,
        force_protocol=force,
    )

    notifier = None
    if settings.notify_enabled and settings.discord_webhook_url:
        notifier = DiscordNotifier(
            webhook_url=settings.discord_webhook_url,
            audit=audit,
            username=settings.discord_username,
            avatar_url=settings.discord_avatar_url,
            timeout_s=settings.discord_timeout_s,
            transport=notify_transport,
        )

    return AutopsyCoordinator(
        settings=settings,
        store=store,
        audit=audit,
        log_retriever=LogRetriever(settings=settings, transport=github_transport),
        engine=engine,
        publisher=PullRequestCreator(settings=settings, transport=github_transport),
        notifier=notifier,
        bus=bus if bus is not None else InProcessBus(),
    )
