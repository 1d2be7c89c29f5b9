from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

SUPPORTED_PROVIDERS = ("anthropic", "openai", "bedrock")

_DEFAULT_MODELS = {
    "anthropic": "claude-sonnet-4-5-20250929",
    "openai": "gpt-4o",
    "bedrock": "anthropic.claude-sonnet-4-5-20250929-v1:0",
}


@dataclass
class RuntimeEnv:
    provider_api_key: str
    provider_env_var: str
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None
    aws_session_token: str | None = None
    aws_region: str | None = None

    def missing_credentials(self, provider_name: str) -> str | None:
        """Name of the missing environment variable, if any."""
        if provider_name == "bedrock":
            if not self.aws_access_key_id:
                return "AWS_ACCESS_KEY_ID"
            if not self.aws_secret_access_key:
                return "AWS_SECRET_ACCESS_KEY"
            return None
        return None if self.provider_api_key else self.provider_env_var


@dataclass
class AppConfig:
    provider_name: str = "anthropic"
    model: str = _DEFAULT_MODELS["anthropic"]
    max_tokens: int = 8192
    temperature: float = 1.0
    max_turns: int = 50
    max_tool_result_chars: int = 40_000
    working_directory: str | None = None
    session_db_path: str = ".coding_agent/sessions.db"
    resume_session_id: str | None = None
    session_retention_days: int = 30
    max_sessions: int = 0
    question_timeout_seconds: float = 300.0
    web_enabled: bool = True
    compaction_strategy_name: str = "summarize"
    compaction_threshold: int = 100
    compaction_keep_recent: int = 10
    compaction_threshold_tokens: int = 0
    compaction_use_model: bool = False
    base_url: str | None = None
    aws_region: str | None = None
    log_level: str = "INFO"
    log_consumers: list | None = None
    permissions: dict[str, Any] = field(default_factory=dict)


def load_json_config(path: str | Path | None = None) -> dict:
    config_path = Path(path) if path is not None else Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _optional_str(value: object) -> str | None:
    return str(value).strip() or None if value is not None else None


def parse_app_config(config: dict) -> AppConfig:
    provider_name = str(config.get("Provider", "anthropic")).strip().lower()
    if provider_name not in SUPPORTED_PROVIDERS:
        raise ValueError(f"Unsupported Provider {provider_name!r}; expected one of {', '.join(SUPPORTED_PROVIDERS)}")

    return AppConfig(
        provider_name=provider_name,
        model=config.get("Model") or _DEFAULT_MODELS[provider_name],
        max_tokens=int(config.get("MaxTokens", 8192)),
        temperature=float(config.get("Temperature", 1.0)),
        max_turns=max(1, int(config.get("MaxTurns", 50))),
        max_tool_result_chars=int(config.get("MaxToolResultChars", 40_000)),
        working_directory=_optional_str(config.get("WorkingDirectory")),
        session_db_path=str(config.get("SessionDbPath", ".coding_agent/sessions.db")),
        resume_session_id=_optional_str(config.get("ResumeSessionId")),
        session_retention_days=int(config.get("SessionRetentionDays", 30)),
        max_sessions=int(config.get("MaxSessions", 0)),
        question_timeout_seconds=float(config.get("QuestionTimeoutSeconds", 300)),
        web_enabled=_to_bool(config.get("WebEnabled", True), default=True),
        compaction_strategy_name=str(config.get("CompactionStrategy", "summarize")).strip().lower(),
        compaction_threshold=int(config.get("CompactionThreshold", 100)),
        compaction_keep_recent=int(config.get("CompactionKeepRecent", 10)),
        compaction_threshold_tokens=int(config.get("CompactionThresholdTokens", 0)),
        compaction_use_model=_to_bool(config.get("CompactionUseModel"), default=False),
        base_url=_optional_str(config.get("BaseUrl")),
        aws_region=_optional_str(config.get("AwsRegion")),
        log_level=str(config.get("LogLevel", "INFO")),
        log_consumers=config.get("LogConsumers"),
        permissions=dict(config.get("Permissions") or {}),
    )


def resolve_runtime_env(provider_name: str) -> RuntimeEnv:
    if provider_name == "openai":
        provider_env_var = "OPENAI_API_KEY"
    elif provider_name == "bedrock":
        provider_env_var = "AWS_SECRET_ACCESS_KEY"
    else:
        provider_env_var = "ANTHROPIC_API_KEY"

    return RuntimeEnv(
        provider_api_key=os.environ.get(provider_env_var, "") if provider_name != "bedrock" else "",
        provider_env_var=provider_env_var,
        aws_access_key_id=os.environ.get("AWS_ACCESS_KEY_ID"),
        aws_secret_access_key=os.environ.get("AWS_SECRET_ACCESS_KEY"),
        aws_session_token=os.environ.get("AWS_SESSION_TOKEN"),
        aws_region=os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION"),
    )
