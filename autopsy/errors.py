from __future__ import annotations


class AutopsyError(Exception):
    """Base class for every failure the autopsy pipeline raises on purpose."""

    code = "autopsy_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class WebhookValidationError(AutopsyError):
    """Inbound payload does not match the webhook schema. Handled at the HTTP boundary (400)."""

    code = "webhook_invalid"


class ConfigurationError(AutopsyError):
    code = "config_missing"

    def __init__(self, message: str, *, missing: list[str] | None = None) -> None:
        super().__init__(message)
        self.missing = list(missing or [])


class UpstreamError(AutopsyError):
    """Source control, model or download failure. Aborts the current stage."""

    code = "upstream_failed"

    def __init__(self, message: str, *, service: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.service = service
        self.status_code = status_code


class ProtocolError(UpstreamError):
    """A response arrived but does not have the expected structured shape."""

    code = "protocol_violation"

    def __init__(self, message: str, *, service: str = "llm") -> None:
        super().__init__(message, service=service)


class StagePayloadError(ProtocolError):
    code = "stage_payload_invalid"

    def __init__(self, message: str, *, stage: str) -> None:
        super().__init__(message, service="pipeline")
        self.stage = stage


class NotificationError(AutopsyError):
    # Best effort: the notifier records these and never lets them escape.
    code = "notify_failed"


class UnsafePathError(AutopsyError):
    """A file path escapes the repository (absolute, or with `..` segments)."""

    code = "unsafe_path"

    def __init__(self, message: str, *, path: str) -> None:
        super().__init__(message)
        self.path = path
