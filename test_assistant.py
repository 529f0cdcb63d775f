import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from cryptography.fernet import Fernet

from assistant import ConversationSession, HelpdeskAssistant, SessionRegistry
from availability import PROJECT_CHAT_SETTINGS_KEY, AvailabilityPolicy
from context_resolver import ProjectContext
from credentials import CredentialStore
from dialogue import NO_PROJECTS_MESSAGE, DialogueFlowState, ServiceDeskSummary, Stage
from jira_client import JiraServiceDeskClient
from llm_client import CompletionError, CompletionText
from persistence.db import Database
from rate_limiter import RateLimiter

SERVICE_DESKS = {
    "serviceDesks": [
        {"id": "1", "projectId": "10000", "projectKey": "IT", "projectName": "IT Support"},
        {"id": "2", "projectId": "10001", "projectKey": "HR", "projectName": "Human Resources"},
    ]
}
REQUEST_TYPE_FIELDS = {
    "requestTypeFields": [
        {
            "fieldId": "summary",
            "name": "Summary",
            "required": True,
            "visible": True,
            "jiraSchema": {"type": "string", "system": "summary"},
        },
        {
            "fieldId": "customfield_10010",
            "name": "Urgency",
            "required": True,
            "visible": True,
            "jiraSchema": {"type": "option"},
            "validValues": [{"value": "1", "label": "High"}, {"value": "2", "label": "Low"}],
        },
        {"fieldId": "description", "name": "Description", "required": False},
    ]
}


def _issue(key, project_id="10000", status="In Progress"):
    return {
        "key": key,
        "fields": {
            "summary": "Login broken",
            "status": {"name": status},
            "assignee": {"displayName": "Alice"},
            "reporter": {"displayName": "Bob"},
            "project": {"id": project_id},
        },
    }


class AssistantTestCase(unittest.TestCase):
    max_requests = 20

    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.db = Database(Fernet.generate_key(), db_path=Path(tmp.name) / "test.db")
        self.jira = MagicMock(spec=JiraServiceDeskClient)
        self.jira.list_service_desks.return_value = SERVICE_DESKS
        self.jira.request_link.side_effect = lambda key, links=None: f"https://example.atlassian.net/browse/{key}"
        self.credentials = CredentialStore(self.db)
        self.assistant = HelpdeskAssistant(
            jira=self.jira,
            storage=self.db,
            policy=AvailabilityPolicy(self.db, self.jira),
            rate_limiter=RateLimiter(self.db, max_requests=self.max_requests),
            credentials=self.credentials,
        )
        self.session = ConversationSession(session_id="U1:D1", account_id="acc-1")

    def say(self, text):
        return [reply.text for reply in self.assistant.handle_message(self.session, text)]


class TestLookup(AssistantTestCase):
    def test_status_question(self):
        self.jira.get_issue.return_value = _issue("TJ-1")

        replies = self.say("What is the status of TJ-1?")

        self.assertEqual(replies, ["TJ-1 (Login broken) is currently In Progress."])
        self.jira.get_issue.assert_called_once_with("TJ-1", fields="summary,status,assignee,reporter,project")
        self.assertEqual(self.session.flow.stage, Stage.IDLE)

    def test_several_keys_keep_message_order(self):
        self.jira.get_issue.side_effect = lambda key, fields=None: _issue(key, status=f"Status of {key}")

        replies = self.say("status of TJ-2 and TJ-1")

        self.assertEqual(
            replies[0].splitlines(),
            [
                "TJ-2 (Login broken) is currently Status of TJ-2.",
                "TJ-1 (Login broken) is currently Status of TJ-1.",
            ],
        )

    def test_lookup_errors_are_per_key(self):
        def get_issue(key, fields=None):
            if key == "TJ-404":
                return {"error": "Issue does not exist", "status": 404}
            if key == "TJ-403":
                return {"error": "Forbidden", "status": 403}
            raise ConnectionError("reset by peer")

        self.jira.get_issue.side_effect = get_issue

        lines = self.say("Who is assigned to TJ-404, TJ-403 and TJ-500?")[0].splitlines()

        self.assertEqual(lines[0], "I couldn't find TJ-404, or you don't have access to it.")
        self.assertEqual(lines[1], "You don't have permission to view TJ-403.")
        self.assertEqual(lines[2], "I couldn't look up TJ-500 right now. Please try again later.")

    def test_issue_from_another_project(self):
        self.db.set_setting(PROJECT_CHAT_SETTINGS_KEY, {"10000": True})
        self.session.context = ProjectContext(project_id="10000")
        self.jira.get_issue.return_value = _issue("HR-5", project_id="10001")

        self.assertEqual(self.say("status of HR-5"), ["HR-5 does not belong to this project."])

    def test_greeting_and_missing_key(self):
        self.assertIn("Ask me about a ticket", self.say("hello")[0])
        self.assertIn("Please include a ticket key", self.say("what is going on?")[0])
        self.jira.get_issue.assert_not_called()

    @patch("assistant.complete")
    def test_llm_rephrases_when_configured(self, mock_complete):
        self.credentials.save_llm_settings("openai", "gpt-4o-mini", "sk-test-1234567890")
        self.jira.get_issue.return_value = _issue("TJ-1")
        mock_complete.return_value = CompletionText("Good news: TJ-1 is being worked on.")

        self.assertEqual(self.say("status of TJ-1"), ["Good news: TJ-1 is being worked on."])
        credential = mock_complete.call_args.args[0]
        self.assertEqual(credential.api_key, "sk-test-1234567890")

    @patch("assistant.complete")
    def test_llm_failure_falls_back(self, mock_complete):
        self.credentials.save_llm_settings("claude", "claude-opus-4-6", "sk-ant-1234567890")
        self.jira.get_issue.return_value = _issue("TJ-1")
        mock_complete.return_value = CompletionError(kind="http", status=500, body="overloaded")

        self.assertEqual(self.say("status of TJ-1"), ["TJ-1 (Login broken) is currently In Progress."])

    def test_lookup_or_chat_entry_point(self):
        self.jira.get_issue.return_value = _issue("TJ-1")
        result = self.assistant.lookup_or_chat("who reported TJ-1", ProjectContext(), account_id="acc-2")
        self.assertEqual(result, {"reply": "TJ-1 (Login broken) was reported by Bob."})


class TestGating(AssistantTestCase):
    max_requests = 1

    def test_disabled_by_admin(self):
        self.assistant.save_agent_settings(False)

        self.assertEqual(self.say("status of TJ-1"), ["Chatbot is disabled by admin."])
        self.jira.get_issue.assert_not_called()
        self.assertEqual(
            self.assistant.check_availability(ProjectContext()),
            {"enabled": False, "reason": "disabled_by_admin", "projectId": None},
        )

    def test_disabled_for_project(self):
        self.assistant.save_project_chat_settings({"10001": True})
        self.session.context = ProjectContext(project_id="10000")

        self.assertEqual(self.say("status of TJ-1"), ["The assistant is not enabled for this project."])

    def test_rate_limited(self):
        self.jira.get_issue.return_value = _issue("TJ-1")
        self.say("status of TJ-1")

        replies = self.say("status of TJ-1")

        self.assertEqual(len(replies), 1)
        self.assertTrue(replies[0].startswith("You're sending messages too quickly."))
        self.assertEqual(self.jira.get_issue.call_count, 1)
        intents = [record.intent for record in self.db.fetch_recent_interactions(limit=5)]
        self.assertEqual(intents, ["rate_limit", "lookup"])

    def test_blank_message_is_ignored(self):
        self.assertEqual(self.say("   "), [])


class TestRequestDialogue(AssistantTestCase):
    def setUp(self):
        super().setUp()
        self.assistant.save_project_chat_settings({"10000": True})
        self.jira.list_request_types.return_value = {"requestTypes": [{"id": "11", "name": "Get IT help"}]}
        self.jira.list_request_type_fields.return_value = REQUEST_TYPE_FIELDS

    def test_full_conversation_creates_request(self):
        self.jira.create_request.return_value = {"issueKey": "IT-7", "issueId": "10500"}

        self.assertIn("Sure. First, choose a project:", self.say("I want to create a request"))
        self.assertEqual(self.session.flow.projects[0].project_name, "IT Support")
        self.assertEqual(len(self.session.flow.projects), 1)
        self.assertIn("Great. Now choose a request type for IT Support:", self.say("1"))
        self.assertTrue(self.say("get it help")[0].startswith("Field 1 of 2: Summary"))
        self.assertTrue(self.say("Printer on floor 3 is jammed")[0].startswith("Field 2 of 2: Urgency"))
        summary = self.say("high")[0]
        self.assertIn("- Urgency: High", summary)
        self.assertIn("Attachments: not supported for this request type", summary)

        result = self.say("create")[0]

        self.assertIn("Issue key: IT-7", result)
        self.assertIn("Link: https://example.atlassian.net/browse/IT-7", result)
        self.jira.create_request.assert_called_once_with(
            {
                "serviceDeskId": "1",
                "requestTypeId": "11",
                "requestFieldValues": {
                    "summary": "Printer on floor 3 is jammed",
                    "customfield_10010": {"value": "1"},
                },
            }
        )
        self.assertFalse(self.session.flow.active)

    def test_no_enabled_projects_stays_idle(self):
        self.assistant.save_project_chat_settings({})

        self.assertEqual(self.say("I want to create a request"), [NO_PROJECTS_MESSAGE])
        self.assertEqual(self.session.flow.stage, Stage.IDLE)
        self.assertFalse(self.session.flow.active)

    def test_service_desk_error_is_reported(self):
        self.jira.list_service_desks.return_value = {"error": "Unauthorized", "status": 401}

        self.assertEqual(self.say("create a new ticket"), ["Could not load service projects: Unauthorized"])
        self.assertFalse(self.session.flow.active)

    def test_partial_attachment_upload(self):
        self.session.flow = DialogueFlowState(
            active=True,
            stage=Stage.ATTACHMENTS,
            selected_project=ServiceDeskSummary(service_desk_id="1", project_id="10000", project_name="IT Support"),
            allows_attachments=True,
        )
        self.jira.attach_temporary_file.side_effect = [
            {"id": "t1", "fileName": "a.png"},
            {"error": "File too large", "status": 413},
            {"id": "t3", "fileName": "c.txt"},
        ]

        replies = self.assistant.upload_attachments(
            self.session,
            [("a.png", b"1"), ("b.pdf", b"2"), ("c.txt", b"3")],
            failures=[("d.zip", "download from Slack failed")],
        )

        texts = [reply.text for reply in replies]
        self.assertEqual(texts[0], "Could not upload d.zip: download from Slack failed")
        self.assertEqual(texts[1], "Could not upload b.pdf: File too large")
        self.assertTrue(texts[2].startswith("Attached: a.png, c.txt"))
        self.assertEqual(self.session.flow.temporary_attachment_ids, ("t1", "t3"))
        self.assertEqual(self.session.flow.stage, Stage.ATTACHMENTS)

    def test_upload_outside_attachment_step(self):
        replies = self.assistant.upload_attachments(self.session, [("a.png", b"1")])

        self.assertIn("start request creation first", replies[0].text)
        self.jira.attach_temporary_file.assert_not_called()


class TestDirectEntryPoints(AssistantTestCase):
    def setUp(self):
        super().setUp()
        self.assistant.save_project_chat_settings({"10000": True, "10001": False})
        self.jira.list_request_type_fields.return_value = REQUEST_TYPE_FIELDS

    def test_list_creatable_projects(self):
        result = self.assistant.list_creatable_projects(ProjectContext())
        self.assertEqual([project["serviceDeskId"] for project in result["projects"]], ["1"])

    def test_list_request_type_fields(self):
        result = self.assistant.list_request_type_fields("1", "11", ProjectContext())
        self.assertEqual([item["fieldId"] for item in result["fields"]], ["summary", "customfield_10010"])
        self.assertFalse(result["allowsAttachments"])

    def test_disallowed_service_desk(self):
        result = self.assistant.list_request_types("2", ProjectContext())
        self.assertEqual(result, {"error": "That project is not available for request creation."})
        self.jira.list_request_types.assert_not_called()

    def test_submit_retries_without_attachments(self):
        self.jira.create_request.side_effect = [
            {"error": "temporaryAttachmentIds: attachments are not allowed", "status": 400},
            {"issueKey": "IT-8", "issueId": "10600"},
        ]
        self.jira.attach_to_request.return_value = {"error": "Attachment expired", "status": 404}

        result = self.assistant.submit_request("1", "11", {"summary": "VPN down"}, ["t1"], ProjectContext())

        self.assertTrue(result["success"])
        self.assertEqual(result["issueKey"], "IT-8")
        self.assertEqual(
            result["warning"],
            "The request was created, but the attachments could not be added: Attachment expired",
        )
        first, second = [call.args[0] for call in self.jira.create_request.call_args_list]
        self.assertEqual(first["temporaryAttachmentIds"], ["t1"])
        self.assertNotIn("temporaryAttachmentIds", second)
        self.jira.attach_to_request.assert_called_once_with("IT-8", ["t1"])

    def test_submit_failure(self):
        self.jira.create_request.return_value = {"error": "summary: Summary is required.", "status": 400}

        result = self.assistant.submit_request("1", "11", {}, [], ProjectContext())

        self.assertEqual(result, {"error": "Failed to create the request: summary: Summary is required."})
        self.assertEqual(self.jira.create_request.call_count, 1)

    def test_submit_stripped_retry_also_fails(self):
        self.jira.create_request.side_effect = [
            {"error": "temporaryAttachmentIds: attachments are not allowed", "status": 400},
            {"error": "summary: Summary is required.", "status": 400},
        ]

        result = self.assistant.submit_request("1", "11", {}, ["t1"], ProjectContext())

        self.assertEqual(result, {"error": "Failed to create the request: summary: Summary is required."})
        self.assertEqual(self.jira.create_request.call_count, 2)
        self.jira.attach_to_request.assert_not_called()

    def test_submit_retry_then_attach_succeeds(self):
        self.jira.create_request.side_effect = [
            {"error": "temporaryAttachmentIds: attachments are not allowed", "status": 400},
            {"issueKey": "IT-9", "issueId": "10700"},
        ]
        self.jira.attach_to_request.return_value = {"attached": 1}

        result = self.assistant.submit_request("1", "11", {"summary": "VPN down"}, ["t1"], ProjectContext())

        self.assertTrue(result["success"])
        self.assertEqual(result["issueKey"], "IT-9")
        self.assertIsNone(result["warning"])
        self.jira.attach_to_request.assert_called_once_with("IT-9", ["t1"])

    def test_loader_errors_share_one_shape(self):
        self.jira.list_request_types.return_value = {"error": "Service unavailable", "status": 503}
        self.jira.list_request_type_fields.return_value = {"error": "Not found", "status": 404}

        self.assertEqual(
            self.assistant.list_request_types("1", ProjectContext()),
            {"error": "Could not load request types: Service unavailable"},
        )
        self.assertEqual(
            self.assistant.list_request_type_fields("1", "11", ProjectContext()),
            {"error": "Could not load fields: Not found"},
        )

        self.jira.list_service_desks.return_value = {"error": "Unauthorized", "status": 401}
        self.assertEqual(
            self.assistant.list_creatable_projects(ProjectContext()),
            {"error": "Could not load service projects: Unauthorized"},
        )

    def test_recent_interactions(self):
        self.db.log_interaction(
            requester_id="acc-1", session_id="U1:D1", message_text="status of TJ-1", intent="lookup", success=True
        )
        self.db.log_interaction(
            requester_id="acc-1",
            session_id="U1:D1",
            message_text="status of TJ-2",
            intent="rate_limit",
            success=False,
        )

        result = self.assistant.recent_interactions(limit=1)

        self.assertEqual(len(result["interactions"]), 1)
        newest = result["interactions"][0]
        self.assertEqual(newest["intent"], "rate_limit")
        self.assertEqual(newest["message_text"], "status of TJ-2")
        self.assertFalse(newest["success"])
        self.assertEqual(len(self.assistant.recent_interactions()["interactions"]), 2)


class TestSessionRegistry(unittest.TestCase):
    def test_get_or_create_and_end(self):
        registry = SessionRegistry()
        session = registry.get_or_create("U1:D1", ProjectContext(project_key="IT"), "acc-1")
        self.assertIs(registry.get_or_create("U1:D1"), session)
        self.assertEqual(session.requester_id(), "acc-1")
        registry.end("U1:D1")
        self.assertIsNot(registry.get_or_create("U1:D1"), session)

    def test_idle_sessions_expire(self):
        now = [0.0]
        registry = SessionRegistry(idle_ttl_seconds=60, clock=lambda: now[0])
        stale = registry.get_or_create("U1:D1")
        stale.flow = DialogueFlowState(active=True, stage=Stage.SELECT_PROJECT)
        now[0] = 30.0
        fresh = registry.get_or_create("U2:D2")

        now[0] = 61.0
        self.assertIs(registry.get_or_create("U2:D2"), fresh)
        self.assertEqual(len(registry), 1)
        replacement = registry.get_or_create("U1:D1")
        self.assertIsNot(replacement, stale)
        self.assertFalse(replacement.flow.active)

    def test_session_in_use_is_not_expired(self):
        now = [0.0]
        registry = SessionRegistry(idle_ttl_seconds=60, clock=lambda: now[0])
        busy = registry.get_or_create("U1:D1")
        now[0] = 120.0
        with busy.lock:
            registry.get_or_create("U2:D2")
            self.assertEqual(len(registry), 2)
            self.assertIs(registry.get_or_create("U1:D1"), busy)


if __name__ == "__main__":
    unittest.main()
