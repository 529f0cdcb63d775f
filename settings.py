# settings.py
"""Centralized configuration using Pydantic settings."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings

load_dotenv()


class SlackSettings(BaseSettings):
    bot_token: str = Field(alias="SLACK_BOT_TOKEN")
    app_token: str = Field(alias="SLACK_APP_TOKEN")
    default_channel: Optional[str] = Field(alias="SLACK_CHANNEL", default=None)


class JiraSettings(BaseSettings):
    domain: str = Field(alias="JIRA_DOMAIN")
    email: str = Field(alias="JIRA_EMAIL")
    api_token: str = Field(alias="JIRA_API_TOKEN")
    portal_id: Optional[str] = Field(alias="JIRA_PORTAL_ID", default=None)
    project_key: Optional[str] = Field(alias="JIRA_PROJECT_KEY", default=None)
    timeout_seconds: int = Field(alias="JIRA_TIMEOUT", default=10)


class AssistantSettings(BaseSettings):
    rate_limit_window_ms: int = Field(alias="HELPDESK_RATE_LIMIT_WINDOW_MS", default=60_000)
    rate_limit_max_requests: int = Field(alias="HELPDESK_RATE_LIMIT_MAX_REQUESTS", default=20)
    anonymous_bucket: str = Field(alias="HELPDESK_ANONYMOUS_BUCKET", default="anonymous")
    llm_timeout_seconds: int = Field(alias="HELPDESK_LLM_TIMEOUT", default=30)
    llm_max_tokens: int = Field(alias="HELPDESK_LLM_MAX_TOKENS", default=400)
    lookup_workers: int = Field(alias="HELPDESK_LOOKUP_WORKERS", default=4)
    session_idle_ttl_seconds: int = Field(alias="HELPDESK_SESSION_IDLE_TTL", default=1800)


class StorageSettings(BaseSettings):
    db_path: Optional[str] = Field(alias="HELPDESK_DB_PATH", default=None)
    secret_key: str = Field(alias="HELPDESK_SECRET_KEY")


class LoggingSettings(BaseSettings):
    level: str = Field(alias="HELPDESK_LOG_LEVEL", default="INFO")
    json_enabled: bool = Field(alias="HELPDESK_LOG_JSON", default=False)


class HelpdeskSettings(BaseSettings):
    slack: SlackSettings
    jira: JiraSettings
    assistant: AssistantSettings
    storage: StorageSettings
    logging: LoggingSettings

    @classmethod
    def load(cls) -> HelpdeskSettings:
        try:
            return cls(
                slack=SlackSettings(),  # type: ignore[call-arg]
                jira=JiraSettings(),  # type: ignore[call-arg]
                assistant=AssistantSettings(),  # type: ignore[call-arg]
                storage=StorageSettings(),  # type: ignore[call-arg]
                logging=LoggingSettings(),  # type: ignore[call-arg]
            )
        except ValidationError as exc:  # pragma: no cover - surfaced on startup
            missing = [error["loc"][0] for error in exc.errors() if error.get("type") == "missing"]
            if not missing:
                raise RuntimeError(f"Invalid configuration: {exc}") from exc
            msg = "Missing required configuration values: " + ", ".join(
                sorted({str(loc) for loc in missing})
            )
            raise RuntimeError(msg) from exc


@lru_cache(maxsize=1)
def get_settings() -> HelpdeskSettings:
    return HelpdeskSettings.load()
