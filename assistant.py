# assistant.py
"""Conversation entry points for the helpdesk assistant.

``HelpdeskAssistant`` is the boundary the chat front end talks to. It gates
every call through the availability policy, applies the rate limiter to user
messages, runs the request-intake dialogue by executing the effects returned
from ``dialogue.transition``, and answers free-form ticket questions. Nothing
raises past this module: every entry point returns a reply or an
error-shaped dict.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Callable, Optional, Sequence

from availability import (
    AVAILABILITY_CHECK_FAILED,
    DISABLED_BY_ADMIN,
    DISABLED_FOR_PROJECT,
    AGENT_SETTINGS_KEY,
    PROJECT_CHAT_SETTINGS_KEY,
    AvailabilityDecision,
    AvailabilityPolicy,
)
from context_resolver import ProjectContext
from credentials import CredentialStore
from dialogue import (
    INITIAL_FLOW,
    AttachmentsUploaded,
    DialogueFlowState,
    Effect,
    Event,
    FieldsLoaded,
    LoadFields,
    LoadProjects,
    LoadRequestTypes,
    ProjectsLoaded,
    Reply,
    RequestType,
    RequestTypesLoaded,
    ServiceDeskSummary,
    Stage,
    SubmissionCompleted,
    SubmitRequest,
    Transition,
    UserMessage,
    transition,
)
from jira_client import ISSUE_LOOKUP_FIELDS, JiraServiceDeskClient
from llm_client import CompletionText, complete
from message_parser import (
    HELP_MESSAGE,
    MISSING_KEY_MESSAGE,
    format_issue_reply,
    parse_lookup_request,
    summarize_issue,
)
from persistence.db import Storage
from rate_limiter import ANONYMOUS_BUCKET, RateLimiter, requester_identity
from request_fields import (
    build_request_field_values,
    detect_attachment_support,
    normalize_field,
    normalize_request_type_fields,
)

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."
UNAVAILABLE_MESSAGES = {
    DISABLED_BY_ADMIN: "Chatbot is disabled by admin.",
    DISABLED_FOR_PROJECT: "The assistant is not enabled for this project.",
    AVAILABILITY_CHECK_FAILED: "The assistant is unavailable right now. Please try again later.",
}
REPHRASE_SYSTEM_PROMPT = (
    "You are a friendly help-desk assistant for a Jira Service Management portal. "
    "Rewrite the facts you are given as a short, clear answer to the customer's question. "
    "Keep every ticket key, status, and person name exactly as given and add no new facts. "
    "Reply with plain text only."
)
MAX_DIALOGUE_STEPS = 10


@dataclass
class ConversationSession:
    """One user's conversation; owns its dialogue state exclusively."""

    session_id: str
    context: ProjectContext = field(default_factory=ProjectContext)
    account_id: Optional[str] = None
    flow: DialogueFlowState = INITIAL_FLOW
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    last_seen: float = field(default=0.0, repr=False, compare=False)

    def requester_id(self, anonymous_bucket: str = ANONYMOUS_BUCKET) -> str:
        return requester_identity(self.account_id, self.context, anonymous_bucket)


class SessionRegistry:
    """Live sessions keyed by id; sessions untouched for ``idle_ttl_seconds`` are dropped."""

    def __init__(
        self,
        idle_ttl_seconds: float = 1800,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sessions: dict[str, ConversationSession] = {}
        self._lock = threading.Lock()
        self.idle_ttl_seconds = idle_ttl_seconds
        self._clock = clock

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get_or_create(
        self,
        session_id: str,
        context: Optional[ProjectContext] = None,
        account_id: Optional[str] = None,
    ) -> ConversationSession:
        now = self._clock()
        with self._lock:
            self._expire(now)
            session = self._sessions.get(session_id)
            if session is None:
                session = ConversationSession(
                    session_id=session_id,
                    context=context or ProjectContext(),
                    account_id=account_id,
                )
                self._sessions[session_id] = session
            session.last_seen = now
            return session

    def end(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            session.flow = INITIAL_FLOW

    def _expire(self, now: float) -> None:
        # Caller holds self._lock. A session mid-message (lock held) is kept.
        expired = [
            session_id
            for session_id, session in self._sessions.items()
            if now - session.last_seen > self.idle_ttl_seconds and not session.lock.locked()
        ]
        for session_id in expired:
            del self._sessions[session_id]
        if expired:
            logger.debug("sessions_expired", extra={"count": len(expired)})


class HelpdeskAssistant:
    def __init__(
        self,
        jira: JiraServiceDeskClient,
        storage: Storage,
        policy: AvailabilityPolicy,
        rate_limiter: RateLimiter,
        credentials: CredentialStore,
        *,
        anonymous_bucket: str = ANONYMOUS_BUCKET,
        llm_max_tokens: int = 400,
        lookup_workers: int = 4,
    ) -> None:
        self.jira = jira
        self.storage = storage
        self.policy = policy
        self.rate_limiter = rate_limiter
        self.credentials = credentials
        self.anonymous_bucket = anonymous_bucket
        self.llm_max_tokens = llm_max_tokens
        self.lookup_workers = max(1, lookup_workers)

    # Conversation entry points

    def check_availability(self, context: ProjectContext) -> dict[str, Any]:
        return self.policy.check(context).to_dict()

    def lookup_or_chat(
        self, message: str, context: ProjectContext, account_id: Optional[str] = None
    ) -> dict[str, Any]:
        try:
            decision = self.policy.check(context)
            if not decision.widget_visible:
                return {"reply": self._unavailable_message(decision)}
            admission = self.rate_limiter.admit(
                requester_identity(account_id, context, self.anonymous_bucket)
            )
            if not admission.allowed:
                return {"reply": _rate_limited_message(admission.retry_after_seconds)}
            return {"reply": self._lookup(message, decision)}
        except Exception:
            logger.exception("lookup_failed")
            return {"reply": GENERIC_ERROR_MESSAGE}

    def list_creatable_projects(self, context: ProjectContext) -> dict[str, Any]:
        try:
            decision = self.policy.check(context)
            if not decision.widget_visible:
                return {"error": self._unavailable_message(decision)}
            loaded = self._creatable_projects(decision)
            if "error" in loaded:
                return loaded
            return {"projects": [project.to_dict() for project in loaded["projects"]]}
        except Exception:
            logger.exception("list_projects_failed")
            return {"error": "Could not load service projects. Please try again."}

    def list_request_types(self, service_desk_id: str, context: ProjectContext) -> dict[str, Any]:
        try:
            error = self._authorize_service_desk(service_desk_id, context)
            if error:
                return {"error": error}
            loaded = self._request_types(str(service_desk_id))
            if "error" in loaded:
                return loaded
            return {"requestTypes": [request_type.to_dict() for request_type in loaded["requestTypes"]]}
        except Exception:
            logger.exception("list_request_types_failed", extra={"service_desk_id": service_desk_id})
            return {"error": "Could not load request types for that project. Please try again."}

    def list_request_type_fields(
        self, service_desk_id: str, request_type_id: str, context: ProjectContext
    ) -> dict[str, Any]:
        try:
            error = self._authorize_service_desk(service_desk_id, context)
            if error:
                return {"error": error}
            loaded = self._request_type_fields(str(service_desk_id), str(request_type_id))
            if "error" in loaded:
                return loaded
            return {
                "fields": [request_field.to_dict() for request_field in loaded["fields"]],
                "allowsAttachments": loaded["allowsAttachments"],
            }
        except Exception:
            logger.exception(
                "list_fields_failed",
                extra={"service_desk_id": service_desk_id, "request_type_id": request_type_id},
            )
            return {"error": "Could not load fields for that request type. Please try again."}

    def submit_request(
        self,
        service_desk_id: str,
        request_type_id: str,
        answers: dict[str, Any],
        attachment_ids: Sequence[str],
        context: ProjectContext,
    ) -> dict[str, Any]:
        try:
            error = self._authorize_service_desk(service_desk_id, context)
            if error:
                return {"error": error}
            return self._submit(str(service_desk_id), str(request_type_id), answers, attachment_ids)
        except Exception:
            logger.exception("submit_request_failed", extra={"service_desk_id": service_desk_id})
            return {"error": "Failed to create the request. Please try again."}

    def handle_message(self, session: ConversationSession, message: str) -> list[Reply]:
        """Single entry point for a chat message: gate, throttle, then dialogue or lookup."""

        text = (message or "").strip()
        if not text:
            return []

        with session.lock:
            try:
                return self._handle_message_locked(session, text)
            except Exception:
                logger.exception("handle_message_failed", extra={"session_id": session.session_id})
                return [Reply(GENERIC_ERROR_MESSAGE)]

    def upload_attachments(
        self,
        session: ConversationSession,
        files: Sequence[tuple[str, bytes]],
        failures: Sequence[tuple[str, str]] = (),
    ) -> list[Reply]:
        """Upload ``(file_name, content)`` pairs as temporary attachments for the session's flow.

        ``failures`` carries ``(file_name, message)`` pairs for files the front
        end could not even read; they are reported alongside upload failures.
        """

        with session.lock:
            try:
                flow = session.flow
                if flow.stage != Stage.ATTACHMENTS or flow.selected_project is None:
                    return self._dispatch(session, AttachmentsUploaded())
                if not files and not failures:
                    return []

                uploaded: list[tuple[str, str]] = []
                failures = list(failures)
                for file_name, content in files:
                    result = self.jira.attach_temporary_file(
                        flow.selected_project.service_desk_id, file_name, content
                    )
                    if "error" in result:
                        failures.append((file_name, str(result["error"])))
                        continue
                    uploaded.append((str(result["id"]), result.get("fileName") or file_name))

                logger.info(
                    "attachments_uploaded",
                    extra={"uploaded": len(uploaded), "failed": len(failures)},
                )
                return self._dispatch(
                    session, AttachmentsUploaded(uploaded=tuple(uploaded), failures=tuple(failures))
                )
            except Exception:
                logger.exception("upload_attachments_failed", extra={"session_id": session.session_id})
                return [Reply("Could not upload the files. Please try again.")]

    # Admin helpers

    def save_agent_settings(self, enable_chatbot: bool) -> dict[str, Any]:
        agent_settings = self.storage.get_setting(AGENT_SETTINGS_KEY, {}) or {}
        agent_settings["enableChatbot"] = bool(enable_chatbot)
        self.storage.set_setting(AGENT_SETTINGS_KEY, agent_settings)
        return {"success": True}

    def save_project_chat_settings(self, settings: dict[str, Any]) -> dict[str, Any]:
        cleaned = {str(project_id): bool(enabled) for project_id, enabled in settings.items()}
        self.storage.set_setting(PROJECT_CHAT_SETTINGS_KEY, cleaned)
        return {"success": True}

    def get_llm_settings(self) -> dict[str, Any]:
        return self.credentials.get_llm_settings()

    def save_llm_settings(self, provider: Any, model: Any, api_key: Any = None) -> dict[str, Any]:
        return self.credentials.save_llm_settings(provider, model, api_key)

    def recent_interactions(self, limit: int = 20) -> dict[str, Any]:
        """Newest audit-log entries first, for the admin view."""

        limit = max(1, min(int(limit), 200))
        records = self.storage.fetch_recent_interactions(limit=limit)
        return {"interactions": [asdict(record) for record in records]}

    # Message handling

    def _handle_message_locked(self, session: ConversationSession, text: str) -> list[Reply]:
        decision = self.policy.check(session.context)
        if not decision.widget_visible:
            self._log(session, text, intent="unavailable", success=False, error=decision.reason)
            return [Reply(self._unavailable_message(decision))]
        if decision.project_id and not session.context.project_id:
            session.context = replace(session.context, project_id=decision.project_id)

        admission = self.rate_limiter.admit(session.requester_id(self.anonymous_bucket))
        if not admission.allowed:
            self._log(session, text, intent="rate_limit", success=False)
            return [Reply(_rate_limited_message(admission.retry_after_seconds))]

        was_active = session.flow.active
        outcome = transition(session.flow, UserMessage(text))
        if outcome.handled:
            replies = self._apply(session, outcome, steps=0)
            self._log(
                session,
                text,
                intent="create_request",
                success=True,
                extra={"stage": session.flow.stage.value, "was_active": was_active},
            )
            return replies

        reply = self._lookup(text, decision)
        self._log(session, text, intent="lookup", success=True)
        return [Reply(reply)]

    def _dispatch(self, session: ConversationSession, event: Event, steps: int = 0) -> list[Reply]:
        return self._apply(session, transition(session.flow, event), steps)

    def _apply(self, session: ConversationSession, outcome: Transition, steps: int) -> list[Reply]:
        session.flow = outcome.state
        replies: list[Reply] = []
        for effect in outcome.effects:
            if isinstance(effect, Reply):
                replies.append(effect)
                continue
            if steps >= MAX_DIALOGUE_STEPS:
                logger.error("dialogue_step_limit", extra={"session_id": session.session_id})
                replies.append(Reply(GENERIC_ERROR_MESSAGE))
                break
            follow_up = self._run_effect(session, effect)
            replies.extend(self._dispatch(session, follow_up, steps + 1))
        return replies

    def _run_effect(self, session: ConversationSession, effect: Effect) -> Event:
        if isinstance(effect, LoadProjects):
            loaded = self._creatable_projects(self.policy.check(session.context))
            if "error" in loaded:
                return ProjectsLoaded(error=loaded["error"])
            return ProjectsLoaded(projects=tuple(loaded["projects"]))

        if isinstance(effect, LoadRequestTypes):
            loaded = self._request_types(effect.project.service_desk_id)
            if "error" in loaded:
                return RequestTypesLoaded(project=effect.project, error=loaded["error"])
            return RequestTypesLoaded(
                project=effect.project, request_types=tuple(loaded["requestTypes"])
            )

        if isinstance(effect, LoadFields):
            loaded = self._request_type_fields(
                effect.project.service_desk_id, effect.request_type.id
            )
            if "error" in loaded:
                return FieldsLoaded(request_type=effect.request_type, error=loaded["error"])
            return FieldsLoaded(
                request_type=effect.request_type,
                fields=tuple(loaded["fields"]),
                allows_attachments=loaded["allowsAttachments"],
            )

        if isinstance(effect, SubmitRequest):
            result = self._submit(
                effect.service_desk_id,
                effect.request_type_id,
                effect.answers,
                effect.attachment_ids,
                fields=session.flow.fields,
            )
            return SubmissionCompleted(result=result)

        raise TypeError(f"Unsupported dialogue effect: {type(effect).__name__}")

    # Lookup path

    def _lookup(self, message: str, decision: AvailabilityDecision) -> str:
        request = parse_lookup_request(message)
        if request.greeting:
            return HELP_MESSAGE
        if not request.keys:
            return MISSING_KEY_MESSAGE

        workers = min(self.lookup_workers, len(request.keys))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            lines = list(
                pool.map(
                    lambda key: self._describe_issue(key, request.intent, decision.project_id),
                    request.keys,
                )
            )
        reply = "\n".join(lines)
        return self._rephrase(message, reply)

    def _describe_issue(self, issue_key: str, intent: str, project_id: Optional[str]) -> str:
        try:
            issue = self.jira.get_issue(issue_key, fields=ISSUE_LOOKUP_FIELDS)
        except Exception as exc:
            logger.warning("issue_lookup_failed", extra={"issue_key": issue_key, "error": str(exc)})
            return f"I couldn't look up {issue_key} right now. Please try again later."

        if "error" in issue:
            status = issue.get("status")
            if status == 404:
                return f"I couldn't find {issue_key}, or you don't have access to it."
            if status in (401, 403):
                return f"You don't have permission to view {issue_key}."
            return f"I couldn't look up {issue_key} right now. Please try again later."

        summary = summarize_issue(issue)
        if project_id and summary.get("project_id") and summary["project_id"] != project_id:
            return f"{issue_key} does not belong to this project."
        return format_issue_reply(intent, summary)

    def _rephrase(self, message: str, reply: str) -> str:
        credential = self.credentials.load_credential()
        if credential is None:
            return reply
        result = complete(
            credential,
            REPHRASE_SYSTEM_PROMPT,
            f"Customer question: {message}\n\nFacts:\n{reply}",
            self.llm_max_tokens,
        )
        if isinstance(result, CompletionText):
            return result.text
        logger.info("llm_fallback", extra={"reason": result.describe()})
        return reply

    # Jira-backed loaders; failures come back as {"error": <user-facing message>}

    def _creatable_projects(self, decision: AvailabilityDecision) -> dict[str, Any]:
        result = self.jira.list_service_desks()
        if "error" in result:
            return {"error": f"Could not load service projects: {result['error']}"}

        enabled_ids = self.policy.enabled_project_ids()
        projects: list[ServiceDeskSummary] = []
        for raw in result.get("serviceDesks", []):
            project = ServiceDeskSummary.from_dict(
                {
                    "serviceDeskId": raw.get("id"),
                    "projectId": raw.get("projectId"),
                    "projectKey": raw.get("projectKey"),
                    "projectName": raw.get("projectName"),
                    "portalName": raw.get("portalName") or raw.get("projectName"),
                }
            )
            if not project.service_desk_id or project.project_id not in enabled_ids:
                continue
            if decision.project_id and project.project_id != decision.project_id:
                continue
            projects.append(project)
        return {"projects": projects}

    def _authorize_service_desk(self, service_desk_id: str, context: ProjectContext) -> Optional[str]:
        decision = self.policy.check(context)
        if not decision.widget_visible:
            return self._unavailable_message(decision)
        loaded = self._creatable_projects(decision)
        if "error" in loaded:
            return loaded["error"]
        if not any(project.service_desk_id == str(service_desk_id) for project in loaded["projects"]):
            logger.warning(
                "service_desk_not_allowed", extra={"service_desk_id": service_desk_id}
            )
            return "That project is not available for request creation."
        return None

    def _request_types(self, service_desk_id: str) -> dict[str, Any]:
        result = self.jira.list_request_types(service_desk_id)
        if "error" in result:
            return {"error": f"Could not load request types: {result['error']}"}
        return {
            "requestTypes": [
                RequestType.from_dict(raw)
                for raw in result.get("requestTypes", [])
                if raw.get("id") is not None
            ]
        }

    def _request_type_fields(self, service_desk_id: str, request_type_id: str) -> dict[str, Any]:
        result = self.jira.list_request_type_fields(service_desk_id, request_type_id)
        if "error" in result:
            return {"error": f"Could not load fields: {result['error']}"}
        return {
            "fields": normalize_request_type_fields(result),
            "allowsAttachments": detect_attachment_support(result),
        }

    # Submission

    def _submit(
        self,
        service_desk_id: str,
        request_type_id: str,
        answers: dict[str, Any],
        attachment_ids: Sequence[str],
        fields=None,
    ) -> dict[str, Any]:
        if not fields:
            raw_fields = self.jira.list_request_type_fields(service_desk_id, request_type_id)
            if "error" in raw_fields:
                fields = []
            else:
                fields = [
                    normalized
                    for normalized in map(normalize_field, raw_fields.get("requestTypeFields", []))
                    if normalized is not None
                ]

        payload: dict[str, Any] = {
            "serviceDeskId": service_desk_id,
            "requestTypeId": request_type_id,
            "requestFieldValues": build_request_field_values(fields, answers),
        }
        attachment_ids = [str(attachment_id) for attachment_id in attachment_ids or []]
        if attachment_ids:
            payload["temporaryAttachmentIds"] = attachment_ids

        result = self.jira.create_request(payload)
        warning: Optional[str] = None
        if "error" in result and attachment_ids:
            logger.warning(
                "create_request_retry_without_attachments",
                extra={"service_desk_id": service_desk_id, "error": result["error"]},
            )
            stripped = {key: value for key, value in payload.items() if key != "temporaryAttachmentIds"}
            result = self.jira.create_request(stripped)
            if "error" not in result:
                attach_result = self.jira.attach_to_request(
                    str(result.get("issueKey") or result.get("issueId")), attachment_ids
                )
                if "error" in attach_result:
                    warning = (
                        "The request was created, but the attachments could not be added: "
                        f"{attach_result['error']}"
                    )

        if "error" in result:
            return {"error": f"Failed to create the request: {result['error']}"}

        issue_key = result.get("issueKey")
        return {
            "success": True,
            "issueKey": issue_key,
            "issueId": result.get("issueId"),
            "requestLink": self.jira.request_link(issue_key, result.get("_links")),
            "warning": warning,
        }

    # Helpers

    def _unavailable_message(self, decision: AvailabilityDecision) -> str:
        return UNAVAILABLE_MESSAGES.get(decision.reason or "", UNAVAILABLE_MESSAGES[AVAILABILITY_CHECK_FAILED])

    def _log(
        self,
        session: ConversationSession,
        text: str,
        *,
        intent: str,
        success: bool,
        error: Optional[str] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> None:
        try:
            self.storage.log_interaction(
                requester_id=session.requester_id(self.anonymous_bucket),
                session_id=session.session_id,
                message_text=text,
                intent=intent,
                success=success,
                error=error,
                extra=extra,
            )
        except Exception:  # pragma: no cover
            logger.exception("db_log_failed", extra={"intent": intent})


def _rate_limited_message(retry_after_seconds: int) -> str:
    return (
        "You're sending messages too quickly. "
        f"Please try again in {retry_after_seconds} seconds."
    )
