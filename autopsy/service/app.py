from __future__ import annotations

import json
from typing import Any, Dict

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from autopsy.errors import AutopsyError
from autopsy.gitops.mock_github import load_mock_pr
from autopsy.memory import store as keys
from autopsy.models import StageCommand
from autopsy.pipeline.coordinator import AutopsyCoordinator, build_coordinator
from autopsy.settings import Settings


async def _run_autopsy(coordinator: AutopsyCoordinator, command: StageCommand) -> None:
    try:
        await coordinator.start(command)
    except AutopsyError:
        # Already recorded: status register (failed) + stage.failed audit entry.
        # Recovery is re-delivery of the webhook, not a retry here.
        return


def create_app(settings: Settings | None = None, *, coordinator: AutopsyCoordinator | None = None) -> FastAPI:
    """
    App factory used by uvicorn (`--factory`) and tests.

    Building the coordinator validates configuration, so a missing credential stops
    the service at startup instead of failing the first autopsy.
    """
    s = settings or Settings()
    coord = coordinator or build_coordinator(s)

    app = FastAPI(title="CI Autopsy", version="0.2.0")
    app.state.settings = s
    app.state.coordinator = coord

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "github_mode": s.github_mode,
            "agent_mode": s.agent_mode,
            "diagnosis_protocol": coord.engine.protocol.value,
            "notify": coord.notifier is not None,
        }

    @app.post("/webhooks/github")
    async def github_webhook(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
        event_type = request.headers.get("x-github-event")
        raw = await request.body()
        try:
            body = json.loads(raw.decode("utf-8") or "null")
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            return JSONResponse({"status": "error", "message": f"invalid JSON body: {e}"}, status_code=400)

        outcome = coord.ingest(event_type=event_type, body=body)
        if outcome.command is not None:
            # Respond now; the stages run after the response is sent.
            background_tasks.add_task(_run_autopsy, coord, outcome.command)
        return JSONResponse(outcome.body, status_code=outcome.status_code)

    @app.get("/api/autopsy")
    def autopsy_recent(limit: int = 50) -> Dict[str, Any]:
        job_ids = coord.store.keys(keys.STATUS, limit=max(1, min(int(limit), 500)))
        return {"items": [{"job_id": int(j), "status": coord.store.get(keys.STATUS, j)} for j in job_ids]}

    @app.get("/api/autopsy/{job_id}")
    def autopsy_state(job_id: int) -> Dict[str, Any]:
        groups = coord.store.get_all(str(job_id))
        if not groups:
            raise HTTPException(status_code=404, detail=f"no autopsy for job {job_id}")
        return {
            "job_id": job_id,
            "status": groups.get(keys.STATUS),
            "event": groups.get(keys.EVENTS),
            "logs": groups.get(keys.LOGS),
            "diagnosis": groups.get(keys.ANALYSIS),
            "pr": groups.get(keys.PULL_REQUESTS),
        }

    @app.get("/api/audit/recent")
    def audit_recent(n: int = 200, correlation_id: str | None = None) -> JSONResponse:
        return JSONResponse(coord.audit.tail(n=max(1, min(int(n), 2000)), correlation_id=correlation_id))

    @app.get("/mock/pr/{pr_number}")
    def mock_pr(pr_number: int) -> JSONResponse:
        meta = load_mock_pr(s.mock_github_dir, pr_number)
        if meta is None:
            raise HTTPException(status_code=404, detail="mock PR not found")
        return JSONResponse(meta)

    return app
