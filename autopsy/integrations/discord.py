from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from autopsy.errors import NotificationError
from autopsy.models import Diagnosis, FailureEvent, PullRequestResult
from autopsy.telemetry.audit import AuditLogger


# Discord caps embed field values at 1024 characters.
FIELD_LIMIT = 1024
GREEN = 5763719


def _clip(text: str, limit: int = FIELD_LIMIT) -> str:
    t = text or "-"
    return t if len(t) <= limit else t[: limit - 1] + "…"


def build_discord_payload(
    *,
    event: FailureEvent,
    diagnosis: Diagnosis,
    pr: PullRequestResult,
    username: str = "CodeAutopsy Agent",
    avatar_url: Optional[str] = None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "username": username,
        "embeds": [
            {
                "title": "🚨 Autopsy Complete: Fix Proposed",
                "description": "The failure was analyzed and a pull request with the fix is ready for review.",
                "color": GREEN,
                "fields": [
                    {"name": "Repository", "value": _clip(event.repo_name), "inline": True},
                    {"name": "Broken File", "value": _clip(f"`{diagnosis.file_path}`"), "inline": True},
                    {"name": "Job", "value": _clip(f"[{event.job_name}]({event.run_url})"), "inline": True},
                    {"name": "Diagnosis", "value": _clip(diagnosis.root_cause), "inline": False},
                    {"name": "Action", "value": _clip(f"👉 [**Review & Merge PR**]({pr.pr_url})"), "inline": False},
                ],
                "footer": {"text": f"Self-Healing CI/CD Agent • protocol {diagnosis.protocol.value}"},
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        ],
    }
    if avatar_url:
        payload["avatar_url"] = avatar_url
    return payload


class DiscordNotifier:
    """
    Best-effort delivery of the autopsy summary to a Discord channel webhook.
    Failures are written to the audit log and reported as False; they never raise.
    """

    def __init__(
        self,
        *,
        webhook_url: str,
        audit: AuditLogger,
        username: str = "CodeAutopsy Agent",
        avatar_url: Optional[str] = None,
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = webhook_url
        self._audit = audit
        self._username = username
        self._avatar_url = avatar_url
        self._timeout_s = float(timeout_s)
        self._transport = transport

    async def notify(
        self, *, event: FailureEvent, diagnosis: Diagnosis, pr: PullRequestResult, correlation_id: str
    ) -> bool:
        payload = build_discord_payload(
            event=event, diagnosis=diagnosis, pr=pr, username=self._username, avatar_url=self._avatar_url
        )
        try:
            await self._post(payload)
        except NotificationError as e:
            self._audit.write(correlation_id, "notify.failed", {"job_id": event.job_id, "error": e.message})
            return False
        self._audit.write(correlation_id, "notify.sent", {"job_id": event.job_id, "pr_url": pr.pr_url})
        return True

    async def _post(self, payload: Dict[str, Any]) -> None:
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                r = await client.post(self._url, json=payload)
        except httpx.HTTPError as e:
            raise NotificationError(f"discord_transport_error: {e}") from e
        if not r.is_success:
            raise NotificationError(f"discord_http_{r.status_code}: {r.text[:500]}")
