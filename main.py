# main.py
"""Helpdesk assistant Slack bot entry point."""

import logging
from typing import Any, Optional

import requests  # type: ignore[import-untyped]
from slack_bolt import App
from slack_bolt.adapter.socket_mode import SocketModeHandler

from assistant import HelpdeskAssistant, SessionRegistry
from availability import AvailabilityPolicy
from context_resolver import ProjectContext
from credentials import CredentialStore
from dialogue import Reply
from jira_client import JiraServiceDeskClient
from logging_utils import configure_logging
from message_parser import WELCOME_MESSAGE
from persistence.db import Database
from rate_limiter import RateLimiter
from settings import HelpdeskSettings, get_settings

logger = logging.getLogger(__name__)

FILE_DOWNLOAD_TIMEOUT = 30


def build_assistant(settings: HelpdeskSettings) -> HelpdeskAssistant:
    database = Database(settings.storage.secret_key, db_path=settings.storage.db_path)
    jira = JiraServiceDeskClient(
        settings.jira.domain,
        settings.jira.email,
        settings.jira.api_token,
        timeout=settings.jira.timeout_seconds,
    )
    credentials = CredentialStore(database, timeout=settings.assistant.llm_timeout_seconds)
    credentials.migrate_plaintext_key()
    return HelpdeskAssistant(
        jira=jira,
        storage=database,
        policy=AvailabilityPolicy(database, jira),
        rate_limiter=RateLimiter(
            database,
            window_ms=settings.assistant.rate_limit_window_ms,
            max_requests=settings.assistant.rate_limit_max_requests,
        ),
        credentials=credentials,
        anonymous_bucket=settings.assistant.anonymous_bucket,
        llm_max_tokens=settings.assistant.llm_max_tokens,
        lookup_workers=settings.assistant.lookup_workers,
    )


def render_reply(reply: Reply) -> str:
    lines = [reply.text] if reply.text else []
    for option in reply.options:
        if option.action == "attach":
            lines.append("- Attach files: upload them in this conversation")
        else:
            lines.append(f"- {option.label}")
    return "\n".join(lines)


def create_app(settings: HelpdeskSettings, assistant: HelpdeskAssistant) -> App:
    app = App(token=settings.slack.bot_token)
    sessions = SessionRegistry(idle_ttl_seconds=settings.assistant.session_idle_ttl_seconds)
    default_context = ProjectContext(
        portal_id=settings.jira.portal_id, project_key=settings.jira.project_key
    )

    @app.event("app_home_opened")
    def handle_home_opened(event, say):
        if event.get("tab") == "messages":
            session = sessions.get_or_create(_session_id(event), default_context, event.get("user"))
            decision = assistant.check_availability(session.context)
            if decision["enabled"] or decision["reason"] == "missing_project_context":
                say(WELCOME_MESSAGE)

    @app.event("message")
    def handle_message_events(body, say):
        event = body.get("event", {})
        channel = event.get("channel")
        user = event.get("user")
        subtype = event.get("subtype")

        if _should_ignore(channel, subtype, user, settings.slack.default_channel):
            return

        session = sessions.get_or_create(_session_id(event), default_context, user)

        if subtype == "file_share":
            files, failures = _download_files(event.get("files", []), settings.slack.bot_token)
            _say_all(say, assistant.upload_attachments(session, files, failures=failures))
            text = (event.get("text") or "").strip()
            if not text:
                return
        else:
            text = event.get("text", "")

        _say_all(say, assistant.handle_message(session, text))

    return app


def _session_id(event: dict[str, Any]) -> str:
    return f"{event.get('user')}:{event.get('channel')}"


def _should_ignore(
    channel: Optional[str], subtype: Optional[str], user: Optional[str], default_channel: Optional[str]
) -> bool:
    if subtype in ("bot_message", "message_changed", "message_deleted") or not user:
        logger.debug("ignore_message", extra={"user": user, "channel": channel, "subtype": subtype})
        return True
    if channel != default_channel and (not channel or not channel.startswith("D")):
        logger.debug(
            "ignore_channel",
            extra={"channel": channel, "expected_channel": default_channel},
        )
        return True
    return False


def _download_files(
    files: list[dict[str, Any]], bot_token: str
) -> tuple[list[tuple[str, bytes]], list[tuple[str, str]]]:
    downloaded: list[tuple[str, bytes]] = []
    failures: list[tuple[str, str]] = []
    for file_info in files:
        url = file_info.get("url_private_download") or file_info.get("url_private")
        name = file_info.get("name") or file_info.get("title") or "attachment"
        if not url:
            failures.append((name, "Slack did not provide a download link"))
            continue
        try:
            response = requests.get(
                url,
                headers={"Authorization": f"Bearer {bot_token}"},
                timeout=FILE_DOWNLOAD_TIMEOUT,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("slack_file_download_failed", extra={"file_name": name, "error": str(exc)})
            failures.append((name, "download from Slack failed"))
            continue
        downloaded.append((name, response.content))
    return downloaded, failures


def _say_all(say, replies: list[Reply]) -> None:
    for reply in replies:
        message = render_reply(reply)
        if message:
            say(message)


def main() -> None:
    settings = get_settings()
    configure_logging(settings.logging.level, settings.logging.json_enabled)
    assistant = build_assistant(settings)
    app = create_app(settings, assistant)
    handler = SocketModeHandler(app, settings.slack.app_token)
    handler.start()


if __name__ == "__main__":
    main()
