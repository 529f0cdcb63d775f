# dialogue.py
"""Request-intake dialogue as an explicit state plus pure transitions.

``transition(state, event)`` never performs I/O. It returns the next state and
a list of effects; the caller (``assistant.HelpdeskAssistant``) carries out
load/submit effects against Jira and feeds the outcome back in as a new
event. Replies are effects too, so a whole conversation can be replayed in a
unit test without a network.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional, Sequence, Union

from message_parser import (
    is_attach_intent,
    is_cancel,
    is_confirm,
    is_create_request_intent,
    is_skip,
)
from request_fields import SELECT_TYPES, FieldOption, RequestTypeField, find_option, parse_number

logger = logging.getLogger(__name__)

MAX_FIELD_OPTIONS_SHOWN = 12


class Stage(str, Enum):
    IDLE = "idle"
    SELECT_PROJECT = "select_project"
    SELECT_REQUEST_TYPE = "select_request_type"
    COLLECT_FIELDS = "collect_fields"
    ATTACHMENTS = "attachments"
    CONFIRM = "confirm"


@dataclass(frozen=True)
class ServiceDeskSummary:
    service_desk_id: str
    project_id: Optional[str] = None
    project_key: Optional[str] = None
    project_name: str = ""
    portal_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServiceDeskSummary:
        return cls(
            service_desk_id=str(data.get("serviceDeskId") or data.get("id") or ""),
            project_id=_opt_str(data.get("projectId")),
            project_key=_opt_str(data.get("projectKey")),
            project_name=str(data.get("projectName") or ""),
            portal_name=_opt_str(data.get("portalName")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "serviceDeskId": self.service_desk_id,
            "projectId": self.project_id,
            "projectKey": self.project_key,
            "projectName": self.project_name,
            "portalName": self.portal_name,
        }


@dataclass(frozen=True)
class RequestType:
    id: str
    name: str
    description: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RequestType:
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            description=str(data.get("description") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "description": self.description}


@dataclass(frozen=True)
class DialogueFlowState:
    active: bool = False
    stage: Stage = Stage.IDLE
    projects: tuple[ServiceDeskSummary, ...] = ()
    request_types: tuple[RequestType, ...] = ()
    selected_project: Optional[ServiceDeskSummary] = None
    selected_request_type: Optional[RequestType] = None
    allows_attachments: bool = False
    fields: tuple[RequestTypeField, ...] = ()
    current_field_index: int = 0
    answers: dict[str, Any] = field(default_factory=dict)
    temporary_attachment_ids: tuple[str, ...] = ()
    attachment_names: tuple[str, ...] = ()

    @property
    def current_field(self) -> Optional[RequestTypeField]:
        if 0 <= self.current_field_index < len(self.fields):
            return self.fields[self.current_field_index]
        return None


INITIAL_FLOW = DialogueFlowState()


@dataclass(frozen=True)
class Option:
    label: str
    value: Optional[str] = None
    action: Optional[str] = None


# Effects


@dataclass(frozen=True)
class Reply:
    text: str
    options: tuple[Option, ...] = ()
    action: Optional[str] = None


@dataclass(frozen=True)
class LoadProjects:
    pass


@dataclass(frozen=True)
class LoadRequestTypes:
    project: ServiceDeskSummary


@dataclass(frozen=True)
class LoadFields:
    project: ServiceDeskSummary
    request_type: RequestType


@dataclass(frozen=True)
class SubmitRequest:
    service_desk_id: str
    request_type_id: str
    answers: dict[str, Any]
    attachment_ids: tuple[str, ...] = ()


Effect = Union[Reply, LoadProjects, LoadRequestTypes, LoadFields, SubmitRequest]


# Events


@dataclass(frozen=True)
class UserMessage:
    text: str


@dataclass(frozen=True)
class ProjectsLoaded:
    projects: tuple[ServiceDeskSummary, ...] = ()
    error: Optional[str] = None


@dataclass(frozen=True)
class RequestTypesLoaded:
    project: ServiceDeskSummary
    request_types: tuple[RequestType, ...] = ()
    error: Optional[str] = None


@dataclass(frozen=True)
class FieldsLoaded:
    request_type: RequestType
    fields: tuple[RequestTypeField, ...] = ()
    allows_attachments: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class AttachmentsUploaded:
    uploaded: tuple[tuple[str, str], ...] = ()
    failures: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class SubmissionCompleted:
    result: dict[str, Any]


Event = Union[
    UserMessage,
    ProjectsLoaded,
    RequestTypesLoaded,
    FieldsLoaded,
    AttachmentsUploaded,
    SubmissionCompleted,
]


@dataclass(frozen=True)
class Transition:
    state: DialogueFlowState
    effects: tuple[Effect, ...] = ()
    handled: bool = True


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# Prompts and option lists


NO_PROJECTS_MESSAGE = (
    "I could not find any enabled service projects for request creation. "
    "Please ask your admin to enable project chat in Agent Settings."
)
ATTACHMENT_OPTIONS = (
    Option(label="Attach files", action="attach"),
    Option(label="Skip attachments", value="skip"),
    Option(label="Cancel", value="cancel"),
)
CONFIRM_OPTIONS = (
    Option(label="Create request", value="create"),
    Option(label="Cancel", value="cancel"),
)


def project_options(projects: Sequence[ServiceDeskSummary]) -> tuple[Option, ...]:
    return tuple(
        Option(label=f"{index}. {project.project_name}", value=project.service_desk_id)
        for index, project in enumerate(projects, start=1)
    )


def request_type_options(request_types: Sequence[RequestType]) -> tuple[Option, ...]:
    return tuple(
        Option(label=f"{index}. {request_type.name}", value=request_type.id)
        for index, request_type in enumerate(request_types, start=1)
    )


def field_options(request_field: RequestTypeField) -> tuple[Option, ...]:
    return tuple(
        Option(
            label=f"{index}. {option.label}",
            value=option.id or option.value or option.label,
        )
        for index, option in enumerate(
            request_field.valid_values[:MAX_FIELD_OPTIONS_SHOWN], start=1
        )
    )


def field_prompt(request_field: RequestTypeField, index: int, total: int) -> str:
    lines = [f"Field {index + 1} of {total}: {request_field.name}"]
    if request_field.description:
        lines.append(request_field.description)

    if request_field.input_type in SELECT_TYPES:
        lines.append("Choose an option below, or type the option name/number.")
    elif request_field.input_type == "date":
        lines.append("Enter a date in YYYY-MM-DD format.")
    elif request_field.input_type == "datetime":
        lines.append("Enter a date/time (for example: 2026-02-13T14:30:00.000+0000).")
    elif request_field.input_type == "number":
        lines.append("Enter a numeric value.")
    else:
        lines.append("Enter a value.")
    return "\n".join(lines)


def format_answer(answer: Any) -> str:
    if answer is None:
        return ""
    if isinstance(answer, (list, tuple)):
        return ", ".join(format_answer(item) for item in answer)
    if isinstance(answer, dict):
        for key in ("label", "value", "id", "accountId"):
            if answer.get(key):
                return str(answer[key])
        return json.dumps(answer, default=str)
    return str(answer)


def summarize_answers(state: DialogueFlowState) -> str:
    answer_lines = [
        f"- {request_field.name}: {format_answer(state.answers.get(request_field.field_id))}"
        for request_field in state.fields
    ]
    if not state.allows_attachments:
        attachment_line = "Attachments: not supported for this request type"
    elif state.attachment_names:
        attachment_line = f"Attachments: {', '.join(state.attachment_names)}"
    else:
        attachment_line = "Attachments: none"

    project_name = state.selected_project.project_name if state.selected_project else ""
    request_type_name = state.selected_request_type.name if state.selected_request_type else ""
    lines = [
        "Please confirm the request details:",
        f"Project: {project_name}",
        f"Request type: {request_type_name}",
        *answer_lines,
        attachment_line,
    ]
    return "\n".join(lines)


def _ask_current_field(state: DialogueFlowState) -> Reply:
    request_field = state.current_field
    if request_field is None:
        return Reply("Enter a value.")
    return Reply(
        field_prompt(request_field, state.current_field_index, len(state.fields)),
        field_options(request_field),
    )


def _move_to_attachments(state: DialogueFlowState) -> Transition:
    return Transition(
        replace(state, stage=Stage.ATTACHMENTS),
        (
            Reply(
                'You can add attachments now. Click Attach and pick files. When finished, '
                'type "done" (or type "skip").',
                ATTACHMENT_OPTIONS,
            ),
        ),
    )


def _move_to_confirm(state: DialogueFlowState) -> Transition:
    confirmed = replace(state, stage=Stage.CONFIRM)
    return Transition(confirmed, (Reply(summarize_answers(confirmed), CONFIRM_OPTIONS),))


def _route_after_fields(state: DialogueFlowState) -> Transition:
    if state.allows_attachments:
        return _move_to_attachments(state)
    return _move_to_confirm(state)


def _project_tokens(project: ServiceDeskSummary) -> list[Any]:
    return [project.project_name, project.portal_name, project.project_key, project.service_desk_id]


def _request_type_tokens(request_type: RequestType) -> list[Any]:
    return [request_type.name, request_type.id]


def validate_answer(request_field: RequestTypeField, text: str) -> tuple[bool, Any]:
    """Return ``(ok, parsed_answer)`` for one field answer."""

    if request_field.input_type in SELECT_TYPES or request_field.valid_values:
        option: Optional[FieldOption] = find_option(request_field.valid_values, text)
        if option is None:
            return False, None
        parsed = {"id": option.id, "value": option.value, "label": option.label}
        if option.account_id:
            parsed["accountId"] = option.account_id
        return True, {key: value for key, value in parsed.items() if value is not None}

    if request_field.input_type == "number":
        number = parse_number(text)
        return (number is not None), number

    normalized = text.strip()
    return bool(normalized), normalized


def _invalid_answer_reply(request_field: RequestTypeField) -> Reply:
    if request_field.input_type in SELECT_TYPES or request_field.valid_values:
        return Reply(
            f"Please choose a valid option for {request_field.name}.",
            field_options(request_field),
        )
    if request_field.input_type == "number":
        return Reply(f"Please enter a numeric value for {request_field.name}.")
    return Reply(f"Please provide a value for {request_field.name}.")


# Transitions


def transition(state: DialogueFlowState, event: Event) -> Transition:
    if isinstance(event, UserMessage):
        return _on_user_message(state, event.text)
    if isinstance(event, ProjectsLoaded):
        return _on_projects_loaded(state, event)
    if isinstance(event, RequestTypesLoaded):
        return _on_request_types_loaded(state, event)
    if isinstance(event, FieldsLoaded):
        return _on_fields_loaded(state, event)
    if isinstance(event, AttachmentsUploaded):
        return _on_attachments_uploaded(state, event)
    if isinstance(event, SubmissionCompleted):
        return _on_submission_completed(state, event.result)
    raise TypeError(f"Unsupported dialogue event: {type(event).__name__}")


def _on_user_message(state: DialogueFlowState, raw_text: str) -> Transition:
    text = (raw_text or "").strip()
    if not state.active:
        if text and is_create_request_intent(text):
            return Transition(state, (LoadProjects(),))
        return Transition(state, handled=False)

    if not text:
        return Transition(state)

    if is_cancel(text):
        logger.info("dialogue_canceled", extra={"stage": state.stage.value})
        return Transition(INITIAL_FLOW, (Reply("Request creation canceled."),))

    if state.stage == Stage.SELECT_PROJECT:
        project = find_option(state.projects, text, tokens=_project_tokens)
        if project is None:
            return Transition(
                state,
                (Reply("Please choose a valid project from the list.", project_options(state.projects)),),
            )
        return Transition(state, (LoadRequestTypes(project),))

    if state.stage == Stage.SELECT_REQUEST_TYPE:
        request_type = find_option(state.request_types, text, tokens=_request_type_tokens)
        if request_type is None or state.selected_project is None:
            return Transition(
                state,
                (
                    Reply(
                        "Please choose a valid request type from the list.",
                        request_type_options(state.request_types),
                    ),
                ),
            )
        return Transition(state, (LoadFields(state.selected_project, request_type),))

    if state.stage == Stage.COLLECT_FIELDS:
        return _collect_field(state, text)

    if state.stage == Stage.ATTACHMENTS:
        if is_skip(text):
            return _move_to_confirm(state)
        if is_attach_intent(text):
            return Transition(
                state,
                (
                    Reply(
                        'Select file(s) to upload. Then type "done" when you are ready to continue.',
                        action="attach",
                    ),
                ),
            )
        return Transition(
            state,
            (
                Reply(
                    'Use Attach to upload files, then type "done". '
                    'Or type "skip" to continue without attachments.',
                    ATTACHMENT_OPTIONS,
                ),
            ),
        )

    if state.stage == Stage.CONFIRM:
        if not is_confirm(text):
            return Transition(
                state, (Reply('Type "create" to submit the request, or "cancel" to stop.'),)
            )
        if state.selected_project is None or state.selected_request_type is None:
            return Transition(INITIAL_FLOW, (Reply("Request details were lost. Please start again."),))
        return Transition(
            state,
            (
                SubmitRequest(
                    service_desk_id=state.selected_project.service_desk_id,
                    request_type_id=state.selected_request_type.id,
                    answers=dict(state.answers),
                    attachment_ids=state.temporary_attachment_ids,
                ),
            ),
        )

    return Transition(state, handled=False)


def _collect_field(state: DialogueFlowState, text: str) -> Transition:
    request_field = state.current_field
    if request_field is None:
        return _route_after_fields(state)

    ok, parsed = validate_answer(request_field, text)
    if not ok:
        return Transition(state, (_invalid_answer_reply(request_field),))

    answers = {**state.answers, request_field.field_id: parsed}
    next_index = state.current_field_index + 1
    if next_index < len(state.fields):
        advanced = replace(state, answers=answers, current_field_index=next_index)
        return Transition(advanced, (_ask_current_field(advanced),))
    return _route_after_fields(replace(state, answers=answers, current_field_index=next_index))


def _on_projects_loaded(state: DialogueFlowState, event: ProjectsLoaded) -> Transition:
    if event.error:
        return Transition(state, (Reply(event.error),))
    if not event.projects:
        return Transition(state, (Reply(NO_PROJECTS_MESSAGE),))
    started = replace(
        INITIAL_FLOW, active=True, stage=Stage.SELECT_PROJECT, projects=tuple(event.projects)
    )
    return Transition(
        started, (Reply("Sure. First, choose a project:", project_options(started.projects)),)
    )


def _on_request_types_loaded(state: DialogueFlowState, event: RequestTypesLoaded) -> Transition:
    if state.stage != Stage.SELECT_PROJECT:
        return Transition(state)
    if event.error:
        return Transition(state, (Reply(event.error),))
    if not event.request_types:
        return Transition(
            state,
            (
                Reply(
                    f"No request types are currently available for {event.project.project_name}. "
                    "Choose another project or type cancel.",
                    project_options(state.projects),
                ),
            ),
        )
    selected = replace(
        state,
        stage=Stage.SELECT_REQUEST_TYPE,
        selected_project=event.project,
        request_types=tuple(event.request_types),
    )
    return Transition(
        selected,
        (
            Reply(
                f"Great. Now choose a request type for {event.project.project_name}:",
                request_type_options(selected.request_types),
            ),
        ),
    )


def _on_fields_loaded(state: DialogueFlowState, event: FieldsLoaded) -> Transition:
    if state.stage != Stage.SELECT_REQUEST_TYPE:
        return Transition(state)
    if event.error:
        return Transition(state, (Reply(event.error),))

    fields = tuple(event.fields)
    next_state = replace(
        state,
        stage=Stage.COLLECT_FIELDS if fields else state.stage,
        selected_request_type=event.request_type,
        allows_attachments=event.allows_attachments,
        fields=fields,
        current_field_index=0,
        answers={},
        temporary_attachment_ids=(),
        attachment_names=(),
    )
    if fields:
        return Transition(next_state, (_ask_current_field(next_state),))
    return _route_after_fields(next_state)


def _on_attachments_uploaded(state: DialogueFlowState, event: AttachmentsUploaded) -> Transition:
    if not state.active or state.stage != Stage.ATTACHMENTS:
        return Transition(
            state,
            (
                Reply(
                    "Please start request creation first, then add attachments in the "
                    "attachment step."
                ),
            ),
        )

    replies = [
        Reply(f"Could not upload {file_name}: {message or 'Upload error'}")
        for file_name, message in event.failures
    ]
    if not event.uploaded:
        return Transition(state, tuple(replies))

    names = tuple(name for _, name in event.uploaded)
    updated = replace(
        state,
        temporary_attachment_ids=state.temporary_attachment_ids
        + tuple(attachment_id for attachment_id, _ in event.uploaded),
        attachment_names=state.attachment_names + names,
    )
    replies.append(
        Reply(
            f"Attached: {', '.join(names)}\n"
            'You can add more files, or type "done" to continue.'
        )
    )
    return Transition(updated, tuple(replies))


def _on_submission_completed(state: DialogueFlowState, result: dict[str, Any]) -> Transition:
    if not result.get("success"):
        message = result.get("error") or (
            "Failed to create the request. Please check the details and try again."
        )
        return Transition(state, (Reply(str(message)),))

    lines = [
        "Request created successfully.",
        f"Issue key: {result['issueKey']}" if result.get("issueKey") else None,
        f"Link: {result['requestLink']}" if result.get("requestLink") else None,
        f"Note: {result['warning']}" if result.get("warning") else None,
    ]
    logger.info("dialogue_request_created", extra={"issue_key": result.get("issueKey")})
    return Transition(INITIAL_FLOW, (Reply("\n".join(line for line in lines if line)),))
