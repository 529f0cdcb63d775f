# context_resolver.py
"""Resolve a single Jira project id from whatever portal context the caller has."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import requests  # type: ignore[import-untyped]

from jira_client import JiraServiceDeskClient

logger = logging.getLogger(__name__)


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class ProjectContext:
    project_id: Optional[str] = None
    project_key: Optional[str] = None
    portal_id: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> ProjectContext:
        data = data or {}
        return cls(
            project_id=_clean(data.get("project_id", data.get("projectId"))),
            project_key=_clean(data.get("project_key", data.get("projectKey"))),
            portal_id=_clean(data.get("portal_id", data.get("portalId"))),
        )

    def is_empty(self) -> bool:
        return not (self.project_id or self.project_key or self.portal_id)


def resolve_project_id(context: ProjectContext, jira: JiraServiceDeskClient) -> Optional[str]:
    """Best-effort lookup; a failed step falls through to the next one."""

    project_id = _clean(context.project_id)
    if project_id:
        return project_id

    portal_id = _clean(context.portal_id)
    if portal_id:
        try:
            service_desk = jira.get_service_desk(portal_id)
        except requests.RequestException as exc:
            service_desk = {"error": str(exc)}
        resolved = _clean(service_desk.get("projectId")) if "error" not in service_desk else None
        if resolved:
            return resolved
        logger.warning(
            "context_portal_unresolved",
            extra={"portal_id": portal_id, "error": service_desk.get("error")},
        )

    project_key = _clean(context.project_key)
    if project_key:
        try:
            result = jira.search_projects(keys=[project_key])
        except requests.RequestException as exc:
            result = {"error": str(exc)}
        for project in result.get("projects", []):
            if str(project.get("key") or "").upper() == project_key.upper():
                return _clean(project.get("id"))
        logger.warning(
            "context_project_key_unresolved",
            extra={"project_key": project_key, "error": result.get("error")},
        )

    return None
