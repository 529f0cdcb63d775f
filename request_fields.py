# request_fields.py
"""Normalize Service Desk request-type field metadata and map answers back to wire values."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, Union

INPUT_TYPES = ("text", "textarea", "number", "date", "datetime", "select", "multi_select")
SELECT_TYPES = ("select", "multi_select")
MAX_VALID_VALUES = 100
DESCRIPTION_FIELD_ID = "description"
ATTACHMENT_FIELD_ID = "attachment"

# ASCII digits only; str.isdigit() and int() also accept superscripts and "1_000".
POSITION_PATTERN = re.compile(r"[0-9]+")
NUMBER_PATTERN = re.compile(r"[+-]?[0-9]+(?:\.[0-9]+)?")


@dataclass(frozen=True)
class FieldOption:
    label: str
    id: Optional[str] = None
    value: Optional[str] = None
    account_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"label": self.label}
        if self.id is not None:
            data["id"] = self.id
        if self.value is not None:
            data["value"] = self.value
        if self.account_id is not None:
            data["accountId"] = self.account_id
        return data


@dataclass(frozen=True)
class RequestTypeField:
    field_id: str
    name: str
    description: str = ""
    required: bool = False
    visible: bool = True
    input_type: str = "text"
    valid_values: tuple[FieldOption, ...] = ()
    schema: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "fieldId": self.field_id,
            "name": self.name,
            "description": self.description,
            "required": self.required,
            "visible": self.visible,
            "inputType": self.input_type,
            "validValues": [option.to_dict() for option in self.valid_values],
            "schema": dict(self.schema),
        }


def _as_str(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _schema_of(raw: dict[str, Any]) -> dict[str, Any]:
    schema = raw.get("jiraSchema") or raw.get("schema") or {}
    if not isinstance(schema, dict):
        return {}
    return {key: schema.get(key) for key in ("type", "system", "custom", "items") if key in schema}


def normalize_option(raw: Any) -> Optional[FieldOption]:
    if not isinstance(raw, dict):
        label = _as_str(raw)
        return FieldOption(label=label, value=label) if label else None

    label = (
        _as_str(raw.get("label"))
        or _as_str(raw.get("name"))
        or _as_str(raw.get("value"))
        or _as_str(raw.get("displayName"))
        or _as_str(raw.get("id"))
    )
    if not label:
        return None
    return FieldOption(
        label=label,
        id=_as_str(raw.get("id")),
        value=_as_str(raw.get("value")),
        account_id=_as_str(raw.get("accountId")),
    )


def normalize_valid_values(raw_values: Any) -> tuple[FieldOption, ...]:
    if not isinstance(raw_values, list):
        return ()
    options: list[FieldOption] = []
    for raw in raw_values:
        option = normalize_option(raw)
        if option is None:
            continue
        options.append(option)
        if len(options) >= MAX_VALID_VALUES:
            break
    return tuple(options)


def determine_input_type(raw: dict[str, Any], has_options: Optional[bool] = None) -> str:
    schema = _schema_of(raw)
    schema_type = str(schema.get("type") or "").lower()
    if has_options is None:
        has_options = bool(normalize_valid_values(raw.get("validValues")))

    if has_options and schema_type == "array":
        return "multi_select"
    if has_options:
        return "select"
    if schema_type in ("number", "date", "datetime"):
        return schema_type
    if str(raw.get("fieldId") or "") == DESCRIPTION_FIELD_ID:
        return "textarea"
    return "text"


def normalize_field(raw: dict[str, Any]) -> Optional[RequestTypeField]:
    field_id = _as_str(raw.get("fieldId"))
    if not field_id:
        return None
    options = normalize_valid_values(raw.get("validValues"))
    return RequestTypeField(
        field_id=field_id,
        name=_as_str(raw.get("name")) or field_id,
        description=_as_str(raw.get("description")) or "",
        required=bool(raw.get("required")),
        visible=raw.get("visible") is not False,
        input_type=determine_input_type(raw, has_options=bool(options)),
        valid_values=options,
        schema=_schema_of(raw),
    )


def _raw_field_list(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, dict):
        payload = payload.get("requestTypeFields", [])
    if not isinstance(payload, list):
        return []
    return [item for item in payload if isinstance(item, dict)]


def normalize_request_type_fields(payload: Any) -> list[RequestTypeField]:
    """Visible, required fields the dialogue should ask for, in Jira's order."""

    fields: list[RequestTypeField] = []
    for raw in _raw_field_list(payload):
        if raw.get("fieldId") == ATTACHMENT_FIELD_ID:
            continue
        normalized = normalize_field(raw)
        if normalized and normalized.visible and normalized.required:
            fields.append(normalized)
    return fields


def detect_attachment_support(payload: Any) -> bool:
    if isinstance(payload, dict) and payload.get("canAttach"):
        return True
    return any(raw.get("fieldId") == ATTACHMENT_FIELD_ID for raw in _raw_field_list(payload))


def _normalize_token(value: Any) -> str:
    return re.sub(r"\s+", " ", str(value if value is not None else "").strip().lower())


def find_option(options: Sequence[Any], answer: Any, tokens=None) -> Any:
    """First option matching ``answer`` by 1-based position or by label/id/value.

    A numeric answer within ``1..len(options)`` selects by position; otherwise
    the first option whose tokens equal or contain the answer wins.
    """

    wanted = _normalize_token(answer)
    if not wanted or not options:
        return None

    if POSITION_PATTERN.fullmatch(wanted) and 1 <= int(wanted) <= len(options):
        return options[int(wanted) - 1]

    token_builder = tokens or _option_tokens
    for option in options:
        candidates = [_normalize_token(token) for token in token_builder(option)]
        if any(token and (token == wanted or wanted in token) for token in candidates):
            return option
    return None


def _option_tokens(option: FieldOption) -> list[Any]:
    return [option.label, option.id, option.value]


def option_payload(option: Any) -> Any:
    """Wire payload for one option, preferring accountId, id, value, name, label."""

    if isinstance(option, FieldOption):
        option = option.to_dict()
    if not isinstance(option, dict):
        return option
    for key in ("accountId", "id", "value", "name", "label"):
        value = option.get(key)
        if value not in (None, ""):
            if key == "label":
                return {"value": value}
            return {key: value}
    return option


def parse_number(text: str) -> Optional[Union[int, float]]:
    """Plain decimal number (sign, digits, optional fraction) or ``None``."""

    text = text.strip()
    if not NUMBER_PATTERN.fullmatch(text):
        return None
    if "." in text:
        return float(text)
    return int(text)


def _coerce_number(text: str) -> Any:
    number = parse_number(text)
    return text if number is None else number


def to_wire_value(request_field: RequestTypeField, answer: Any) -> Any:
    """Convert a dialogue answer into what the create-request endpoint expects."""

    schema_type = str(request_field.schema.get("type") or "").lower()
    is_array = schema_type == "array" or request_field.input_type == "multi_select"

    if isinstance(answer, (dict, FieldOption)):
        payload = option_payload(answer)
        return [payload] if is_array else payload
    if isinstance(answer, (list, tuple)):
        return [option_payload(item) for item in answer]

    if request_field.valid_values:
        if is_array and isinstance(answer, str) and "," in answer:
            matched = [find_option(request_field.valid_values, part) for part in answer.split(",")]
            if all(matched):
                return [option_payload(option) for option in matched]
        option = find_option(request_field.valid_values, answer)
        if option is not None:
            payload = option_payload(option)
            return [payload] if is_array else payload

    if isinstance(answer, (int, float)) and not isinstance(answer, bool):
        return answer
    text = str(answer if answer is not None else "").strip()
    if schema_type == "number":
        return _coerce_number(text)
    if schema_type == "array":
        return [part.strip() for part in text.split(",") if part.strip()]
    return text


def build_request_field_values(
    fields: Sequence[RequestTypeField], answers: dict[str, Any]
) -> dict[str, Any]:
    by_id = {request_field.field_id: request_field for request_field in fields}
    values: dict[str, Any] = {}
    for field_id, answer in answers.items():
        request_field = by_id.get(field_id) or RequestTypeField(field_id=field_id, name=field_id)
        values[field_id] = to_wire_value(request_field, answer)
    return values
