from __future__ import annotations

import asyncio
import importlib.util
import json
import warnings
from pathlib import Path

import httpx
import pytest
from pydantic import ValidationError

from autopsy.code_engine.engine import DiagnosisEngine
from autopsy.errors import ProtocolError, StagePayloadError, UpstreamError
from autopsy.gitops.pr_creator import PullRequestCreator
from autopsy.gitops.source_fetcher import SourceFetcher
from autopsy.integrations.discord import DiscordNotifier
from autopsy.memory import store as keys
from autopsy.memory.store import AutopsyStateStore
from autopsy.models import AutopsyRecord, Stage, StageCommand
from autopsy.parsers.log_fetcher import LogRetriever
from autopsy.pipeline.coordinator import AutopsyCoordinator, InProcessBus
from autopsy.telemetry.audit import AuditLogger


SOURCE = "const utils = require('./utils');\nmodule.exports = utils;\n"
FIX = "const utils = require('./lib/utils');\nmodule.exports = utils;\n"
SURGEON = json.dumps({"rootCause": "utils moved", "filePath": "src/index.js", "suggestedFix": FIX, "explanation": "e"})


class CheckingBus:
    """Records commands and, at emit time, what the store already holds for the job."""

    def __init__(self, store: AutopsyStateStore) -> None:
        self.store = store
        self.commands = []
        self.stored_at_emit = []

    async def emit(self, command: StageCommand) -> None:
        self.commands.append(command)
        self.stored_at_emit.append(set(self.store.get_all("123")))


def _seed_mock_github(root: Path, log_text: str = "install ok\nError: Cannot find module './utils'\n") -> None:
    logs = root / "logs" / "octo" / "app"
    logs.mkdir(parents=True, exist_ok=True)
    (logs / "123.log").write_text(log_text, encoding="utf-8")
    src = root / "repos" / "octo" / "app" / "abc123def456" / "src"
    src.mkdir(parents=True, exist_ok=True)
    (src / "index.js").write_text(SOURCE, encoding="utf-8")


def _coordinator(settings, chat, *, bus=None, discord_status: int = 204) -> AutopsyCoordinator:
    audit = AuditLogger(settings.audit_log_path)
    notifier = DiscordNotifier(
        webhook_url="https://discord.example/hook",
        audit=audit,
        transport=httpx.MockTransport(lambda r: httpx.Response(discord_status)),
    )
    return AutopsyCoordinator(
        settings=settings,
        store=AutopsyStateStore(db_path=settings.state_db_path),
        audit=audit,
        log_retriever=LogRetriever(settings=settings),
        engine=DiagnosisEngine(chat_client=chat, model="m", source_fetcher=SourceFetcher(settings=settings), audit=audit),
        publisher=PullRequestCreator(settings=settings),
        notifier=notifier,
        bus=bus if bus is not None else InProcessBus(),
    )


def test_full_chain_persists_every_stage(mock_settings, fake_chat, new_record, audit_events) -> None:
    _seed_mock_github(Path(mock_settings.mock_github_dir))
    chat = fake_chat('{"filePath": "src/index.js"}', SURGEON)
    coord = _coordinator(mock_settings, chat)

    asyncio.run(coord.start(StageCommand.for_record(Stage.fetch_logs, new_record)))

    stored = coord.store.get_all("123")
    assert stored[keys.EVENTS]["repo_name"] == "octo/app"
    assert "Cannot find module" in stored[keys.LOGS]["snippet"]
    assert stored[keys.ANALYSIS]["suggested_fix"] == FIX
    assert stored[keys.ANALYSIS]["protocol"] == "v2"
    assert stored[keys.PULL_REQUESTS]["branch_name"] == "autopsy/fix-123"
    assert stored[keys.STATUS]["state"] == "completed"
    assert stored[keys.STATUS]["notified"] is True

    types = [r["event_type"] for r in audit_events(mock_settings.audit_log_path)]
    assert types.index("logs.retrieved") < types.index("diagnosis.completed") < types.index("pr.created") < types.index("notify.sent")
    assert types.count("stage.completed") == 4


def test_each_stage_persists_before_emitting(mock_settings, fake_chat, new_record) -> None:
    _seed_mock_github(Path(mock_settings.mock_github_dir))
    chat = fake_chat('{"filePath": "src/index.js"}', SURGEON)
    store = AutopsyStateStore(db_path=mock_settings.state_db_path)
    bus = CheckingBus(store)
    coord = _coordinator(mock_settings, chat, bus=bus)

    cmd = StageCommand.for_record(Stage.fetch_logs, new_record)
    for _ in range(3):
        cmd = asyncio.run(coord.advance(cmd))

    assert [c.topic for c in bus.commands] == [Stage.analyze, Stage.publish, Stage.notify]
    assert keys.LOGS in bus.stored_at_emit[0]
    assert keys.ANALYSIS in bus.stored_at_emit[1]
    assert keys.PULL_REQUESTS in bus.stored_at_emit[2]

    final = AutopsyRecord.model_validate(bus.commands[-1].payload)
    assert final.logs is not None and final.diagnosis is not None and final.pr is not None

    # Terminal stage emits nothing.
    assert asyncio.run(coord.advance(bus.commands[-1])) is None
    assert len(bus.commands) == 3


def test_stage_failure_stops_chain_and_records_status(mock_settings, fake_chat, new_record, audit_events) -> None:
    # No log seeded: the download fails.
    store = AutopsyStateStore(db_path=mock_settings.state_db_path)
    bus = CheckingBus(store)
    coord = _coordinator(mock_settings, fake_chat(), bus=bus)

    with pytest.raises(UpstreamError):
        asyncio.run(coord.advance(StageCommand.for_record(Stage.fetch_logs, new_record)))

    assert bus.commands == []
    assert store.get(keys.LOGS, "123") is None
    status = store.get(keys.STATUS, "123")
    assert status["state"] == "failed"
    assert status["stage"] == Stage.fetch_logs.value
    assert status["error_code"] == "upstream_failed"
    assert audit_events(mock_settings.audit_log_path)[-1]["event_type"] == "stage.failed"


def test_scout_without_target_aborts_autopsy(mock_settings, fake_chat, new_record) -> None:
    _seed_mock_github(Path(mock_settings.mock_github_dir))
    coord = _coordinator(mock_settings, fake_chat('{"filePath": ""}'))

    with pytest.raises(ProtocolError):
        asyncio.run(coord.start(StageCommand.for_record(Stage.fetch_logs, new_record)))

    status = coord.store.get(keys.STATUS, "123")
    assert status["state"] == "failed" and status["stage"] == Stage.analyze.value
    assert coord.store.get(keys.ANALYSIS, "123") is None
    assert coord.store.get(keys.PULL_REQUESTS, "123") is None


def test_rerun_overwrites_snapshot(mock_settings, fake_chat, new_record) -> None:
    root = Path(mock_settings.mock_github_dir)
    store = AutopsyStateStore(db_path=mock_settings.state_db_path)
    coord = _coordinator(mock_settings, fake_chat(), bus=CheckingBus(store))
    cmd = StageCommand.for_record(Stage.fetch_logs, new_record)

    _seed_mock_github(root, log_text="first run\n")
    asyncio.run(coord.advance(cmd))
    _seed_mock_github(root, log_text="second run\nfailed again\n")
    asyncio.run(coord.advance(cmd))

    assert store.count(keys.LOGS, "123") == 1
    assert store.count(keys.LOGS) == 1
    assert store.get(keys.LOGS, "123")["snippet"] == "second run\nfailed again"


def test_stage_rejects_payload_missing_prior_fields(mock_settings, fake_chat, new_record) -> None:
    store = AutopsyStateStore(db_path=mock_settings.state_db_path)
    bus = CheckingBus(store)
    chat = fake_chat()
    coord = _coordinator(mock_settings, chat, bus=bus)

    with pytest.raises(StagePayloadError) as ei:
        asyncio.run(coord.advance(StageCommand.for_record(Stage.analyze, new_record)))
    assert "logs" in str(ei.value)
    assert chat.calls == [] and bus.commands == []

    with pytest.raises(StagePayloadError):
        asyncio.run(coord.advance(StageCommand(topic=Stage.fetch_logs, payload={"correlation_id": "x", "event": {"job_id": "nan"}})))


def test_notification_failure_does_not_fail_autopsy(mock_settings, fake_chat, new_record, audit_events) -> None:
    _seed_mock_github(Path(mock_settings.mock_github_dir))
    coord = _coordinator(mock_settings, fake_chat('{"filePath": "src/index.js"}', SURGEON), discord_status=500)

    asyncio.run(coord.start(StageCommand.for_record(Stage.fetch_logs, new_record)))

    status = coord.store.get(keys.STATUS, "123")
    assert status["state"] == "completed"
    assert status["notified"] is False
    assert coord.store.get(keys.PULL_REQUESTS, "123") is not None
    assert "notify.failed" in [r["event_type"] for r in audit_events(mock_settings.audit_log_path)]


def test_rerun_of_analysis_overwrites_diagnosis(mock_settings, fake_chat, new_record) -> None:
    _seed_mock_github(Path(mock_settings.mock_github_dir))
    second_fix = FIX.replace("./lib/utils", "../shared/utils")
    second = json.dumps({"rootCause": "utils moved again", "filePath": "src/index.js", "suggestedFix": second_fix, "explanation": "e"})
    chat = fake_chat('{"filePath": "src/index.js"}', SURGEON, '{"filePath": "src/index.js"}', second)
    store = AutopsyStateStore(db_path=mock_settings.state_db_path)
    bus = CheckingBus(store)
    coord = _coordinator(mock_settings, chat, bus=bus)

    analyze = asyncio.run(coord.advance(StageCommand.for_record(Stage.fetch_logs, new_record)))
    asyncio.run(coord.advance(analyze))
    assert store.get(keys.ANALYSIS, "123")["suggested_fix"] == FIX
    asyncio.run(coord.advance(analyze))

    assert store.count(keys.ANALYSIS, "123") == 1
    assert store.count(keys.ANALYSIS) == 1
    stored = store.get(keys.ANALYSIS, "123")
    assert stored["suggested_fix"] == second_fix
    assert stored["root_cause"] == "utils moved again"


def test_record_payload_keeps_schema_tag_on_the_wire(new_record) -> None:
    cmd = StageCommand.for_record(Stage.fetch_logs, new_record)
    assert cmd.payload["schema"] == "autopsy.record.v1"
    assert "schema_version" not in cmd.payload
    assert AutopsyRecord.model_validate(cmd.payload).schema_version == "autopsy.record.v1"

    with pytest.raises(ValidationError):
        AutopsyRecord.model_validate({**cmd.payload, "schema": "autopsy.record.v0"})


def test_models_define_without_field_shadowing_warnings() -> None:
    import autopsy.models as models

    # Executes the module body again under another name; the imported classes stay untouched.
    spec = importlib.util.spec_from_file_location("_autopsy_models_fresh", models.__file__)
    assert spec is not None and spec.loader is not None
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        spec.loader.exec_module(importlib.util.module_from_spec(spec))
    assert [str(w.message) for w in caught if "shadows an attribute" in str(w.message)] == []
