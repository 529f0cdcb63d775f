# message_parser.py
"""
Deterministic message understanding: issue keys, lookup intent, greetings,
and the short control tokens the request-intake dialogue reacts to.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

ISSUE_KEY_PATTERN = re.compile(r"\b([A-Z][A-Z0-9]*-\d+)\b")

ASSIGNEE_KEYWORDS: Set[str] = {"assignee", "assigned", "owner", "owns", "working on"}
REPORTER_KEYWORDS: Set[str] = {
    "reporter",
    "reported",
    "raised",
    "created by",
    "opened by",
    "submitted by",
}

GREETING_PATTERN = re.compile(
    r"^\s*(hi|hello|hey|hiya|howdy|yo|greetings|good (?:morning|afternoon|evening))"
    r"(?:\s+there)?\s*[!.?,]*\s*$",
    re.IGNORECASE,
)

CREATE_REQUEST_INTENT_PATTERN = re.compile(
    r"\b(create|raise|submit|open)\b.*\b(request|ticket|issue)\b|\bnew request\b",
    re.IGNORECASE,
)
CANCEL_PATTERN = re.compile(r"^(cancel|stop|exit|reset)$", re.IGNORECASE)
SKIP_PATTERN = re.compile(r"^(skip|no|none|not now|done|continue|next)$", re.IGNORECASE)
CONFIRM_PATTERN = re.compile(r"^(yes|y|create|submit|confirm|go ahead)$", re.IGNORECASE)
ATTACH_PATTERN = re.compile(r"\b(attach|upload|file|document)\b", re.IGNORECASE)

WELCOME_MESSAGE = (
    "Hi! I'm your Jira Assistant. I can help with issue lookups and request creation.\n\n"
    "Examples:\n"
    '- "What is the status of TJ-1?"\n'
    '- "Who is assigned to PROJ-42?"\n'
    '- "I want to create a request"'
)
HELP_MESSAGE = (
    "Hello! Ask me about a ticket by its key, for example "
    '"What is the status of TJ-1?" or "Who reported PROJ-42?". '
    'To open a new support request, say "I want to create a request".'
)
MISSING_KEY_MESSAGE = (
    "Please include a ticket key (for example TJ-1) so I can look it up, "
    'or say "I want to create a request" to open a new one.'
)


@dataclass
class LookupRequest:
    keys: List[str] = field(default_factory=list)
    intent: str = "status"
    greeting: bool = False


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").strip().lower())


def _contains_any(lowered: str, keywords: Set[str]) -> bool:
    for keyword in keywords:
        if " " in keyword:
            if keyword in lowered:
                return True
        elif re.search(rf"\b{re.escape(keyword)}\b", lowered):
            return True
    return False


def extract_issue_keys(message: str) -> List[str]:
    """Distinct issue keys in order of first appearance, regardless of case."""

    seen: Set[str] = set()
    keys: List[str] = []
    for match in ISSUE_KEY_PATTERN.findall((message or "").upper()):
        if match not in seen:
            seen.add(match)
            keys.append(match)
    return keys


def classify_intent(message: str) -> str:
    lowered = _normalize(message)
    wants_assignee = _contains_any(lowered, ASSIGNEE_KEYWORDS) or bool(
        re.search(r"\bwho\b.*\b(working|handling|assigned)\b", lowered)
    )
    wants_reporter = _contains_any(lowered, REPORTER_KEYWORDS)
    if wants_assignee and wants_reporter:
        return "all"
    if wants_assignee:
        return "assignee"
    if wants_reporter:
        return "reporter"
    return "status"


def is_greeting(message: str) -> bool:
    return bool(GREETING_PATTERN.match(message or ""))


def is_create_request_intent(message: str) -> bool:
    return bool(CREATE_REQUEST_INTENT_PATTERN.search(message or ""))


def is_cancel(message: str) -> bool:
    return bool(CANCEL_PATTERN.match(_normalize(message)))


def is_skip(message: str) -> bool:
    return bool(SKIP_PATTERN.match(_normalize(message)))


def is_confirm(message: str) -> bool:
    return bool(CONFIRM_PATTERN.match(_normalize(message)))


def is_attach_intent(message: str) -> bool:
    return bool(ATTACH_PATTERN.search(message or ""))


def parse_lookup_request(message: str) -> LookupRequest:
    keys = extract_issue_keys(message)
    request = LookupRequest(
        keys=keys,
        intent=classify_intent(message),
        greeting=not keys and is_greeting(message),
    )
    logger.debug(
        "lookup_parsed",
        extra={"keys": len(keys), "intent": request.intent, "greeting": request.greeting},
    )
    return request


def _display_name(value: Any, default: str) -> str:
    if isinstance(value, dict):
        return str(value.get("displayName") or value.get("name") or default)
    return default


def summarize_issue(issue: Dict[str, Any]) -> Dict[str, Optional[str]]:
    fields = issue.get("fields") if isinstance(issue.get("fields"), dict) else {}
    project = fields.get("project") if isinstance(fields.get("project"), dict) else {}
    status = fields.get("status") if isinstance(fields.get("status"), dict) else {}
    return {
        "key": issue.get("key"),
        "summary": fields.get("summary"),
        "status": status.get("name"),
        "assignee": _display_name(fields.get("assignee"), "Unassigned"),
        "reporter": _display_name(fields.get("reporter"), "Unknown"),
        "project_id": str(project["id"]) if project.get("id") is not None else None,
    }


def format_issue_reply(intent: str, summary: Dict[str, Optional[str]]) -> str:
    key = summary.get("key") or "Unknown"
    title = summary.get("summary") or "No summary provided"
    status = summary.get("status") or "Unknown"
    assignee = summary.get("assignee") or "Unassigned"
    reporter = summary.get("reporter") or "Unknown"
    if intent == "assignee":
        return f"{key} ({title}) is assigned to {assignee}."
    if intent == "reporter":
        return f"{key} ({title}) was reported by {reporter}."
    if intent == "all":
        return (
            f"{key} ({title}): status {status}, assigned to {assignee}, "
            f"reported by {reporter}."
        )
    return f"{key} ({title}) is currently {status}."
