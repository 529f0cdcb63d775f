# availability.py
"""Decide whether the assistant may be used for a given portal context."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from context_resolver import ProjectContext, resolve_project_id
from jira_client import JiraServiceDeskClient
from persistence.db import Storage

logger = logging.getLogger(__name__)

AGENT_SETTINGS_KEY = "agentSettings"
PROJECT_CHAT_SETTINGS_KEY = "projectChatSettings"

DISABLED_BY_ADMIN = "disabled_by_admin"
DISABLED_FOR_PROJECT = "disabled_for_project"
MISSING_PROJECT_CONTEXT = "missing_project_context"
AVAILABILITY_CHECK_FAILED = "availability_check_failed"


@dataclass(frozen=True)
class AvailabilityDecision:
    enabled: bool
    reason: Optional[str] = None
    project_id: Optional[str] = None

    @property
    def widget_visible(self) -> bool:
        return self.enabled or self.reason == MISSING_PROJECT_CONTEXT

    def to_dict(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "reason": self.reason, "projectId": self.project_id}


class AvailabilityPolicy:
    """The one place the enable/disable rules live."""

    def __init__(self, storage: Storage, jira: JiraServiceDeskClient) -> None:
        self.storage = storage
        self.jira = jira

    def check(self, context: ProjectContext) -> AvailabilityDecision:
        try:
            return self._evaluate(context)
        except Exception:
            logger.exception("availability_check_failed")
            return AvailabilityDecision(enabled=False, reason=AVAILABILITY_CHECK_FAILED)

    def enabled_project_ids(self) -> set[str]:
        settings = self.storage.get_setting(PROJECT_CHAT_SETTINGS_KEY, {})
        if not isinstance(settings, dict):
            return set()
        return {str(project_id) for project_id, enabled in settings.items() if enabled is True}

    def chatbot_disabled_by_admin(self) -> bool:
        agent_settings = self.storage.get_setting(AGENT_SETTINGS_KEY)
        return isinstance(agent_settings, dict) and agent_settings.get("enableChatbot") is False

    def _evaluate(self, context: ProjectContext) -> AvailabilityDecision:
        if self.chatbot_disabled_by_admin():
            return AvailabilityDecision(enabled=False, reason=DISABLED_BY_ADMIN)

        project_id = resolve_project_id(context, self.jira)
        if not project_id:
            return AvailabilityDecision(enabled=True, reason=MISSING_PROJECT_CONTEXT)

        if project_id not in self.enabled_project_ids():
            logger.info("availability_project_disabled", extra={"project_id": project_id})
            return AvailabilityDecision(
                enabled=False, reason=DISABLED_FOR_PROJECT, project_id=project_id
            )

        return AvailabilityDecision(enabled=True, project_id=project_id)
