from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict

from autopsy.errors import ConfigurationError


_PROVIDER_DEFAULTS = {
    "gemini": ("https://generativelanguage.googleapis.com/v1beta/openai", "gemini-2.5-flash"),
    "openrouter": ("https://openrouter.ai/api/v1", "google/gemini-2.5-flash"),
    "groq": ("https://api.groq.com/openai/v1", "openai/gpt-oss-120b"),
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="AUTOPSY_", extra="ignore")

    github_mode: str = "real"  # mock|real
    github_token: str | None = None
    github_api_base: str = "https://api.github.com"
    github_base_branch: str | None = None
    github_timeout_s: float = 30.0
    mock_github_dir: str = ".mock_github"
    public_base_url: str = "http://localhost:8088"

    # Branches created for fixes are named <branch_prefix>fix-<job id>.
    # Failures on any branch containing the prefix are never autopsied (loop guard).
    branch_prefix: str = "autopsy/"

    log_tail_lines: int = 200

    # Model provider (all speak the OpenAI-compatible chat completions API)
    agent_mode: str = "gemini"  # gemini|openrouter|groq
    gemini_api_key: str | None = None
    gemini_base_url: str | None = None
    gemini_model: str | None = None
    openrouter_api_key: str | None = None
    openrouter_base_url: str | None = None
    openrouter_model: str | None = None
    # Optional headers for OpenRouter rankings
    openrouter_site_url: str | None = None
    openrouter_site_name: str | None = None
    groq_api_key: str | None = None
    groq_base_url: str | None = None
    groq_model: str | None = None

    llm_timeout_s: float = 90.0
    llm_max_tokens: int = 8192
    # 1 means a single attempt; transient transport errors are not retried.
    llm_max_retries: int = 1
    llm_json_mode: bool = True

    # auto: scout+retrieve+surgeon when a source fetcher exists, single-phase otherwise
    diagnosis_protocol: str = "auto"  # auto|v1|v2

    discord_webhook_url: str | None = None
    notify_enabled: bool = True
    discord_username: str = "CodeAutopsy Agent"
    discord_avatar_url: str | None = "https://i.imgur.com/4h7mFM2.png"
    discord_timeout_s: float = 10.0

    state_db_path: str = "var/state/autopsy.sqlite3"
    audit_log_path: str = "var/audit/autopsy_audit.jsonl"

    def llm_credentials(self) -> tuple[str | None, str, str]:
        """(api_key, base_url, model) for the configured provider."""
        if self.agent_mode not in _PROVIDER_DEFAULTS:
            raise ConfigurationError(f"unsupported agent_mode: {self.agent_mode}", missing=["AUTOPSY_AGENT_MODE"])
        default_base, default_model = _PROVIDER_DEFAULTS[self.agent_mode]
        key = getattr(self, f"{self.agent_mode}_api_key")
        base = getattr(self, f"{self.agent_mode}_base_url") or default_base
        model = getattr(self, f"{self.agent_mode}_model") or default_model
        return key, base, model

    def validate_for_pipeline(self) -> None:
        """
        Check every credential the configured stages will need, once, at composition time.
        Raises a single ConfigurationError naming all missing variables.
        """
        missing: list[str] = []
        if self.github_mode not in ("mock", "real"):
            raise ConfigurationError(f"unsupported github_mode: {self.github_mode}", missing=["AUTOPSY_GITHUB_MODE"])
        if self.diagnosis_protocol not in ("auto", "v1", "v2"):
            raise ConfigurationError(
                f"unsupported diagnosis_protocol: {self.diagnosis_protocol}", missing=["AUTOPSY_DIAGNOSIS_PROTOCOL"]
            )
        if self.github_mode == "real" and not self.github_token:
            missing.append("AUTOPSY_GITHUB_TOKEN")
        key, _, _ = self.llm_credentials()
        if not key:
            missing.append(f"AUTOPSY_{self.agent_mode.upper()}_API_KEY")
        if self.notify_enabled and not self.discord_webhook_url:
            missing.append("AUTOPSY_DISCORD_WEBHOOK_URL")
        if missing:
            raise ConfigurationError("missing required configuration: " + ", ".join(missing), missing=missing)
