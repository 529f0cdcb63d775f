# jira_client.py
"""Jira Service Management API client helpers for the helpdesk assistant."""

from __future__ import annotations

import logging
import time
from typing import Any, Optional, Sequence, cast

import requests  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)

SERVICE_DESK_PAGE_SIZE = 50
ISSUE_LOOKUP_FIELDS = "summary,status,assignee,reporter,project"


class JiraServiceDeskClient:
    """Thin wrapper over the Jira platform and Service Desk REST APIs.

    Every public method returns a dict. Failures are reported as
    ``{"error": <message>, "status": <http status or None>}`` instead of
    raising, so callers can degrade without try/except around each call.
    """

    def __init__(self, domain: str, email: str, api_token: str, timeout: int = 10) -> None:
        self.domain = domain.strip().rstrip("/")
        self.base_url = f"https://{self.domain}"
        self.auth = (email, api_token)
        self.timeout = timeout
        self.headers: dict[str, str] = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def search_projects(
        self, type_key: str = "service_desk", keys: Optional[Sequence[str]] = None
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"typeKey": type_key, "maxResults": 100}
        if keys:
            params["keys"] = list(keys)
        result = self._get("/rest/api/3/project/search", params=params)
        if "error" in result:
            return result
        values = result.get("values", [])
        if not isinstance(values, list):
            values = []
        projects = [
            {
                "id": str(project.get("id")),
                "key": project.get("key"),
                "name": project.get("name"),
            }
            for project in values
            if isinstance(project, dict) and project.get("id") is not None
        ]
        return {"projects": projects}

    def list_service_desks(self) -> dict[str, Any]:
        service_desks: list[dict[str, Any]] = []
        start = 0
        while True:
            page = self._get(
                "/rest/servicedeskapi/servicedesk",
                params={"start": start, "limit": SERVICE_DESK_PAGE_SIZE},
            )
            if "error" in page:
                return page

            values = page.get("values", [])
            if not isinstance(values, list):
                values = []
            service_desks.extend(value for value in values if isinstance(value, dict))

            size = int(page.get("size", len(values)) or 0)
            total = page.get("total")
            start += size
            if page.get("isLastPage") is True or size == 0:
                break
            if isinstance(total, int):
                if start >= total:
                    break
            elif "isLastPage" not in page:
                break

        logger.debug("jira_service_desks_listed", extra={"count": len(service_desks)})
        return {"serviceDesks": service_desks}

    def get_service_desk(self, service_desk_id: str) -> dict[str, Any]:
        return self._get(f"/rest/servicedeskapi/servicedesk/{service_desk_id}")

    def list_request_types(self, service_desk_id: str) -> dict[str, Any]:
        result = self._get(
            f"/rest/servicedeskapi/servicedesk/{service_desk_id}/requesttype",
            params={"limit": 100},
        )
        if "error" in result:
            return result
        values = result.get("values", [])
        if not isinstance(values, list):
            values = []
        return {"requestTypes": [value for value in values if isinstance(value, dict)]}

    def list_request_type_fields(self, service_desk_id: str, request_type_id: str) -> dict[str, Any]:
        return self._get(
            f"/rest/servicedeskapi/servicedesk/{service_desk_id}"
            f"/requesttype/{request_type_id}/field"
        )

    def get_issue(self, issue_key: str, fields: str = ISSUE_LOOKUP_FIELDS) -> dict[str, Any]:
        return self._get(f"/rest/api/3/issue/{issue_key}", params={"fields": fields})

    def create_request(
        self, payload: dict[str, Any], max_retries: int = 3, backoff: float = 2.0
    ) -> dict[str, Any]:
        response = self._post_with_retries(
            f"{self.base_url}/rest/servicedeskapi/request",
            payload,
            max_retries=max_retries,
            backoff=backoff,
        )
        if response is None:
            return {"error": "Failed to create the request after retries.", "status": None}

        if response.status_code in (200, 201):
            data = cast(dict[str, Any], response.json())
            logger.info(
                "jira_request_created",
                extra={"status": response.status_code, "issue_key": data.get("issueKey")},
            )
            return data

        return self._handle_error(response)

    def attach_temporary_file(
        self, service_desk_id: str, file_name: str, content: bytes
    ) -> dict[str, Any]:
        url = f"{self.base_url}/rest/servicedeskapi/servicedesk/{service_desk_id}/attachTemporaryFile"
        headers = {"Accept": "application/json", "X-Atlassian-Token": "no-check"}
        try:
            response = requests.post(
                url,
                files={"file": (file_name, content)},
                headers=headers,
                auth=self.auth,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("jira_upload_failed", extra={"file_name": file_name, "error": str(exc)})
            return {"error": str(exc), "status": None}

        if response.status_code not in (200, 201):
            return self._handle_error(response)

        try:
            payload_obj = response.json()
        except ValueError:
            return {"error": "Upload response was not valid JSON.", "status": response.status_code}

        attachment = _extract_temporary_attachment(payload_obj)
        if not attachment.get("id"):
            return {
                "error": "Upload response did not include a temporary attachment id.",
                "status": response.status_code,
            }
        attachment["fileName"] = attachment.get("fileName") or file_name
        return attachment

    def attach_to_request(self, issue_key: str, attachment_ids: Sequence[str]) -> dict[str, Any]:
        payload = {"temporaryAttachmentIds": list(attachment_ids), "public": True}
        response = self._post_with_retries(
            f"{self.base_url}/rest/servicedeskapi/request/{issue_key}/attachment",
            payload,
            max_retries=1,
            backoff=1.0,
        )
        if response is None:
            return {"error": "Failed to attach files to the request.", "status": None}
        if response.status_code in (200, 201):
            return {"attached": len(attachment_ids)}
        return self._handle_error(response)

    def request_link(self, issue_key: Optional[str], links: Optional[dict[str, Any]] = None) -> Optional[str]:
        web = (links or {}).get("web") if isinstance(links, dict) else None
        if web:
            return str(web)
        if issue_key:
            return f"{self.base_url}/browse/{issue_key}"
        return None

    def _get(self, path: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        try:
            response = requests.get(
                f"{self.base_url}{path}",
                params=params,
                headers=self.headers,
                auth=self.auth,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("jira_get_failed", extra={"path": path, "error": str(exc)})
            return {"error": str(exc), "status": None}

        if response.status_code != 200:
            return self._handle_error(response)

        try:
            payload_obj = response.json()
        except ValueError as exc:
            logger.error("jira_invalid_json", extra={"path": path, "error": str(exc)})
            return {"error": "Invalid response from Jira.", "status": response.status_code}

        if not isinstance(payload_obj, dict):
            logger.error(
                "jira_unexpected_format",
                extra={"path": path, "body_type": type(payload_obj).__name__},
            )
            return {
                "error": f"Unexpected response format from Jira ({type(payload_obj).__name__}).",
                "status": response.status_code,
            }
        return payload_obj

    def _post_with_retries(
        self, url: str, payload: dict[str, Any], *, max_retries: int, backoff: float
    ) -> Optional[requests.Response]:
        delay = backoff
        for attempt in range(1, max_retries + 1):
            try:
                response = requests.post(
                    url,
                    json=payload,
                    headers=self.headers,
                    auth=self.auth,
                    timeout=self.timeout,
                )
                if response.status_code != 429:
                    return response

                logger.warning(
                    "jira_rate_limited",
                    extra={"attempt": attempt, "retry_in_seconds": delay},
                )
            except requests.RequestException as exc:
                logger.error("jira_request_failed", extra={"attempt": attempt, "error": str(exc)})
            if attempt < max_retries:
                time.sleep(delay)
                delay *= 2
        return None

    def _handle_error(self, response: requests.Response) -> dict[str, Any]:
        status = response.status_code
        try:
            payload_obj = response.json()
        except ValueError:
            logger.error("jira_error_response", extra={"status": status, "body": response.text})
            return {"error": f"Jira error {status}: {response.text}", "status": status}

        if not isinstance(payload_obj, dict):
            logger.error(
                "jira_error_non_dict_response",
                extra={"status": status, "body_type": type(payload_obj).__name__},
            )
            return {
                "error": f"Unexpected response format from Jira ({type(payload_obj).__name__}).",
                "status": status,
            }

        messages: list[str] = []
        error_message_val = payload_obj.get("errorMessage")
        if isinstance(error_message_val, str) and error_message_val:
            messages.append(error_message_val)

        error_messages_val = payload_obj.get("errorMessages", [])
        if isinstance(error_messages_val, list):
            messages.extend(str(msg) for msg in error_messages_val)

        field_errors_val = payload_obj.get("errors", {})
        if isinstance(field_errors_val, dict):
            for field, msg in field_errors_val.items():
                messages.append(f"{field}: {msg}")

        message = (
            "; ".join(messages) if messages else f"Jira error {status}: {response.text}"
        )
        logger.error("jira_error", extra={"status": status, "errors": messages})
        return {"error": message, "status": status}


def _extract_temporary_attachment(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        return {}
    candidates: list[Any] = []
    for key in ("temporaryAttachments", "values"):
        value = payload.get(key)
        if isinstance(value, list):
            candidates.extend(value)

    source = candidates[0] if candidates else payload
    if not isinstance(source, dict):
        return {}
    attachment_id = source.get("temporaryAttachmentId") or source.get("id")
    return {
        "id": str(attachment_id) if attachment_id else None,
        "fileName": source.get("fileName") or source.get("filename") or "",
    }
