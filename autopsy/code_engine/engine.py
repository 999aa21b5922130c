from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from autopsy.errors import AutopsyError, ProtocolError, UpstreamError
from autopsy.gitops.paths import normalize_repo_path
from autopsy.gitops.source_fetcher import SourceFetcher
from autopsy.models import Diagnosis, DiagnosisProtocol, FailureEvent, LogSnapshot, SourceFile
from autopsy.prompting.contracts import ScoutOutput, SurgeonOutput
from autopsy.prompting.decoder import decode_structured
from autopsy.prompting.meta import (
    EMPTY_FILE_MARKER,
    META_PROMPT_V1,
    MISSING_FILE_MARKER,
    scout_prompt,
    single_phase_prompt,
    surgeon_prompt,
)
from autopsy.telemetry.audit import AuditLogger


class DiagnosisPhase(str, Enum):
    scouting = "scouting"
    fetching = "fetching"
    diagnosing = "diagnosing"
    done = "done"
    failed = "failed"


_TRANSITIONS: Dict[DiagnosisPhase, set[DiagnosisPhase]] = {
    DiagnosisPhase.scouting: {DiagnosisPhase.fetching, DiagnosisPhase.diagnosing, DiagnosisPhase.failed},
    DiagnosisPhase.fetching: {DiagnosisPhase.diagnosing, DiagnosisPhase.failed},
    DiagnosisPhase.diagnosing: {DiagnosisPhase.done, DiagnosisPhase.failed},
    DiagnosisPhase.done: set(),
    DiagnosisPhase.failed: set(),
}


class ChatModel(Protocol):
    async def chat(self, *, model: str, messages: List[Dict[str, str]], max_tokens: int = ...) -> str: ...


@dataclass
class DiagnosisTrace:
    """
    State of one diagnosis run. Phases only move along _TRANSITIONS; every move is
    reported to `on_transition` (the audit log in production).
    """

    protocol: DiagnosisProtocol
    phase: DiagnosisPhase = DiagnosisPhase.scouting
    history: List[DiagnosisPhase] = field(default_factory=lambda: [DiagnosisPhase.scouting])
    target_path: Optional[str] = None
    source: Optional[SourceFile] = None
    diagnosis: Optional[Diagnosis] = None
    error: Optional[str] = None
    on_transition: Optional[Callable[[DiagnosisPhase, DiagnosisPhase, Dict[str, Any]], None]] = None

    def advance(self, to: DiagnosisPhase, **info: Any) -> None:
        if to not in _TRANSITIONS[self.phase]:
            raise RuntimeError(f"illegal diagnosis transition {self.phase.value} -> {to.value}")
        prev = self.phase
        self.phase = to
        self.history.append(to)
        if self.on_transition is not None:
            self.on_transition(prev, to, info)

    def fail(self, err: Exception) -> None:
        self.error = str(err)
        if self.phase not in (DiagnosisPhase.done, DiagnosisPhase.failed):
            self.advance(DiagnosisPhase.failed, error=self.error)


@dataclass
class DiagnosisEngine:
    """
    Turns a failure snippet into a Diagnosis.

    v2 (default when a source fetcher is available):
      Scout    -> model names the single most likely file (first answer wins)
      Retrieve -> file content at the failing commit (missing file degrades, never aborts)
      Surgeon  -> model returns root cause + complete replacement file
    v1: one model call from the logs alone.
    """

    chat_client: ChatModel
    model: str
    source_fetcher: Optional[SourceFetcher] = None
    audit: Optional[AuditLogger] = None
    max_tokens: int = 8192
    force_protocol: Optional[DiagnosisProtocol] = None

    @property
    def protocol(self) -> DiagnosisProtocol:
        if self.force_protocol is not None:
            if self.force_protocol == DiagnosisProtocol.v2 and self.source_fetcher is None:
                raise ValueError("protocol v2 requires a source fetcher")
            return self.force_protocol
        return DiagnosisProtocol.v2 if self.source_fetcher is not None else DiagnosisProtocol.v1

    async def diagnose(self, *, event: FailureEvent, logs: LogSnapshot, correlation_id: str = "-") -> Diagnosis:
        trace = await self.run(event=event, logs=logs, correlation_id=correlation_id)
        assert trace.diagnosis is not None
        return trace.diagnosis

    async def run(self, *, event: FailureEvent, logs: LogSnapshot, correlation_id: str = "-") -> DiagnosisTrace:
        trace = DiagnosisTrace(protocol=self.protocol, on_transition=self._audit_transition(correlation_id, event))
        try:
            if trace.protocol == DiagnosisProtocol.v1:
                await self._single_phase(trace, event=event, logs=logs)
            else:
                await self._three_phase(trace, event=event, logs=logs, correlation_id=correlation_id)
        except AutopsyError as e:
            trace.fail(e)
            raise
        return trace

    async def _single_phase(self, trace: DiagnosisTrace, *, event: FailureEvent, logs: LogSnapshot) -> None:
        trace.advance(DiagnosisPhase.diagnosing)
        raw = await self._ask(single_phase_prompt(repo_name=event.repo_name, snippet=logs.snippet))
        out = decode_structured(raw, SurgeonOutput, stage="diagnose")
        path = normalize_repo_path(out.file_path)
        if not path:
            raise ProtocolError(f"diagnose: model returned no usable filePath ({out.file_path!r})")
        self._finish(trace, out, path=path, source_found=False)

    async def _three_phase(
        self, trace: DiagnosisTrace, *, event: FailureEvent, logs: LogSnapshot, correlation_id: str
    ) -> None:
        assert self.source_fetcher is not None

        raw = await self._ask(scout_prompt(repo_name=event.repo_name, snippet=logs.snippet))
        scout = decode_structured(raw, ScoutOutput, stage="scout")
        path = normalize_repo_path(scout.file_path)
        if not path:
            detail = f" (got {scout.file_path!r})" if scout.file_path.strip() else ""
            raise ProtocolError(f"scout: could not identify a target file{detail}")
        trace.target_path = path
        trace.advance(DiagnosisPhase.fetching, file_path=path)

        try:
            source = await self.source_fetcher.fetch(repo_name=event.repo_name, path=path, ref=event.commit_sha)
        except UpstreamError as e:
            source = SourceFile.missing(path=path, ref=event.commit_sha, reason=str(e))
        trace.source = source
        if not source.found and self.audit is not None:
            self.audit.write(
                correlation_id,
                "source.missing",
                {"job_id": event.job_id, "file_path": path, "ref": event.commit_sha, "reason": source.reason},
            )

        trace.advance(DiagnosisPhase.diagnosing, source_found=source.found)
        if not source.found:
            content = MISSING_FILE_MARKER
        elif not source.content:
            content = EMPTY_FILE_MARKER
        else:
            content = source.content
        raw = await self._ask(
            surgeon_prompt(repo_name=event.repo_name, snippet=logs.snippet, file_path=path, file_content=content)
        )
        out = decode_structured(raw, SurgeonOutput, stage="surgeon")
        # The fix replaces the file the surgeon was shown; a different filePath is only recorded.
        info: Dict[str, Any] = {}
        if out.file_path.strip() and normalize_repo_path(out.file_path) != path:
            info["surgeon_file_path"] = out.file_path
        self._finish(trace, out, path=path, source_found=source.found, **info)

    def _finish(self, trace: DiagnosisTrace, out: SurgeonOutput, *, path: str, source_found: bool, **info: Any) -> None:
        trace.diagnosis = Diagnosis(
            root_cause=out.root_cause,
            file_path=path,
            suggested_fix=out.suggested_fix,
            explanation=out.explanation,
            protocol=trace.protocol,
            source_found=source_found,
        )
        trace.advance(DiagnosisPhase.done, file_path=path, **info)

    async def _ask(self, prompt: str) -> str:
        messages = [
            {"role": "system", "content": META_PROMPT_V1},
            {"role": "user", "content": prompt},
        ]
        return await self.chat_client.chat(model=self.model, messages=messages, max_tokens=self.max_tokens)

    def _audit_transition(
        self, correlation_id: str, event: FailureEvent
    ) -> Optional[Callable[[DiagnosisPhase, DiagnosisPhase, Dict[str, Any]], None]]:
        audit = self.audit
        if audit is None:
            return None

        def _write(prev: DiagnosisPhase, to: DiagnosisPhase, info: Dict[str, Any]) -> None:
            audit.write(
                correlation_id,
                "diagnosis.phase",
                {"job_id": event.job_id, "from": prev.value, "to": to.value, **info},
            )

        return _write
