import unittest
from dataclasses import replace

from dialogue import (
    CONFIRM_OPTIONS,
    INITIAL_FLOW,
    NO_PROJECTS_MESSAGE,
    AttachmentsUploaded,
    DialogueFlowState,
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
    UserMessage,
    field_options,
    project_options,
    transition,
)
from request_fields import FieldOption, RequestTypeField

IT_DESK = ServiceDeskSummary(service_desk_id="1", project_id="10000", project_key="IT", project_name="IT Support")
HR_DESK = ServiceDeskSummary(service_desk_id="2", project_id="10001", project_key="HR", project_name="Human Resources")
GET_HELP = RequestType(id="11", name="Get IT help")

PRIORITY = RequestTypeField(
    field_id="priority",
    name="Priority",
    required=True,
    input_type="select",
    valid_values=(FieldOption(label="High", id="1"), FieldOption(label="Low", id="2")),
    schema={"type": "priority"},
)
COUNT = RequestTypeField(
    field_id="customfield_5",
    name="Count",
    required=True,
    input_type="number",
    schema={"type": "number"},
)


def _only_reply(result):
    replies = [effect for effect in result.effects if isinstance(effect, Reply)]
    assert len(replies) == 1, result.effects
    return replies[0]


def _project_stage():
    return transition(INITIAL_FLOW, ProjectsLoaded(projects=(IT_DESK, HR_DESK))).state


def _request_type_stage():
    return transition(_project_stage(), RequestTypesLoaded(project=IT_DESK, request_types=(GET_HELP,))).state


def _fields_stage(fields=(PRIORITY, COUNT), allows_attachments=False):
    return transition(
        _request_type_stage(),
        FieldsLoaded(request_type=GET_HELP, fields=fields, allows_attachments=allows_attachments),
    ).state


class TestIdle(unittest.TestCase):
    def test_create_intent_requests_projects(self):
        result = transition(INITIAL_FLOW, UserMessage("I want to create a request"))
        self.assertEqual(result.effects, (LoadProjects(),))
        self.assertEqual(result.state, INITIAL_FLOW)
        self.assertTrue(result.handled)

    def test_other_messages_are_not_handled(self):
        result = transition(INITIAL_FLOW, UserMessage("What is the status of TJ-1?"))
        self.assertFalse(result.handled)
        self.assertEqual(result.effects, ())

    def test_no_projects_stays_idle(self):
        result = transition(INITIAL_FLOW, ProjectsLoaded(projects=()))
        self.assertEqual(result.state.stage, Stage.IDLE)
        self.assertFalse(result.state.active)
        self.assertEqual(_only_reply(result).text, NO_PROJECTS_MESSAGE)

    def test_projects_loaded_starts_flow(self):
        result = transition(INITIAL_FLOW, ProjectsLoaded(projects=(IT_DESK, HR_DESK)))
        self.assertTrue(result.state.active)
        self.assertEqual(result.state.stage, Stage.SELECT_PROJECT)
        reply = _only_reply(result)
        self.assertEqual([option.label for option in reply.options], ["1. IT Support", "2. Human Resources"])


class TestProjectAndRequestTypeSelection(unittest.TestCase):
    def test_invalid_project_keeps_stage(self):
        state = _project_stage()
        result = transition(state, UserMessage("nope"))
        self.assertEqual(result.state, state)
        reply = _only_reply(result)
        self.assertEqual(reply.text, "Please choose a valid project from the list.")
        self.assertEqual(reply.options, project_options((IT_DESK, HR_DESK)))

    def test_project_by_position_or_name(self):
        state = _project_stage()
        self.assertEqual(transition(state, UserMessage("2")).effects, (LoadRequestTypes(HR_DESK),))
        self.assertEqual(transition(state, UserMessage("it supp")).effects, (LoadRequestTypes(IT_DESK),))

    def test_empty_request_types_stay_on_project_choice(self):
        state = _project_stage()
        result = transition(state, RequestTypesLoaded(project=HR_DESK, request_types=()))
        self.assertEqual(result.state.stage, Stage.SELECT_PROJECT)
        self.assertIn("No request types are currently available for Human Resources", _only_reply(result).text)

    def test_request_type_selection_loads_fields(self):
        state = _request_type_stage()
        self.assertEqual(state.stage, Stage.SELECT_REQUEST_TYPE)
        self.assertEqual(state.selected_project, IT_DESK)
        result = transition(state, UserMessage("1"))
        self.assertEqual(result.effects, (LoadFields(IT_DESK, GET_HELP),))

    def test_invalid_request_type(self):
        state = _request_type_stage()
        result = transition(state, UserMessage("payroll"))
        self.assertEqual(result.state, state)
        self.assertEqual(_only_reply(result).text, "Please choose a valid request type from the list.")


class TestFieldCollection(unittest.TestCase):
    def test_first_field_prompt(self):
        result = transition(
            _request_type_stage(), FieldsLoaded(request_type=GET_HELP, fields=(PRIORITY, COUNT))
        )
        self.assertEqual(result.state.stage, Stage.COLLECT_FIELDS)
        self.assertEqual(result.state.current_field_index, 0)
        reply = _only_reply(result)
        self.assertTrue(reply.text.startswith("Field 1 of 2: Priority"))
        self.assertEqual(reply.options, field_options(PRIORITY))

    def test_invalid_select_answer_repeats_question(self):
        state = _fields_stage()
        result = transition(state, UserMessage("purple"))
        self.assertEqual(result.state.stage, Stage.COLLECT_FIELDS)
        self.assertEqual(result.state.current_field_index, 0)
        self.assertEqual(result.state.answers, {})
        reply = _only_reply(result)
        self.assertEqual(reply.text, "Please choose a valid option for Priority.")
        self.assertEqual(reply.options, field_options(PRIORITY))

    def test_superscript_digit_repeats_question(self):
        state = _fields_stage()
        result = transition(state, UserMessage("²"))
        self.assertEqual(result.state, state)
        reply = _only_reply(result)
        self.assertEqual(reply.text, "Please choose a valid option for Priority.")
        self.assertEqual(reply.options, field_options(PRIORITY))

    def test_underscore_number_is_rejected(self):
        state = transition(_fields_stage(), UserMessage("high")).state
        result = transition(state, UserMessage("1_000"))
        self.assertEqual(result.state, state)
        self.assertEqual(_only_reply(result).text, "Please enter a numeric value for Count.")
        self.assertEqual(transition(state, UserMessage("-2.5")).state.answers["customfield_5"], -2.5)

    def test_invalid_number(self):
        state = transition(_fields_stage(), UserMessage("high")).state
        result = transition(state, UserMessage("abc"))
        self.assertEqual(result.state.current_field_index, 1)
        self.assertEqual(_only_reply(result).text, "Please enter a numeric value for Count.")

    def test_all_fields_without_attachments_go_to_confirm(self):
        state = transition(_fields_stage(), UserMessage("High")).state
        self.assertEqual(state.answers, {"priority": {"id": "1", "label": "High"}})
        result = transition(state, UserMessage("5"))
        self.assertEqual(result.state.stage, Stage.CONFIRM)
        self.assertEqual(result.state.answers["customfield_5"], 5)
        reply = _only_reply(result)
        self.assertIn("Project: IT Support", reply.text)
        self.assertIn("Request type: Get IT help", reply.text)
        self.assertIn("- Priority: High", reply.text)
        self.assertIn("- Count: 5", reply.text)
        self.assertIn("Attachments: not supported for this request type", reply.text)
        self.assertEqual(reply.options, CONFIRM_OPTIONS)

    def test_no_fields_with_attachments_goes_to_attachment_step(self):
        state = _fields_stage(fields=(), allows_attachments=True)
        self.assertEqual(state.stage, Stage.ATTACHMENTS)

    def test_cancel_resets(self):
        result = transition(_fields_stage(), UserMessage("cancel"))
        self.assertEqual(result.state, INITIAL_FLOW)
        self.assertEqual(_only_reply(result).text, "Request creation canceled.")


class TestAttachments(unittest.TestCase):
    def setUp(self):
        self.state = _fields_stage(fields=(), allows_attachments=True)

    def test_attach_intent_asks_for_files(self):
        result = transition(self.state, UserMessage("attach"))
        self.assertEqual(result.state, self.state)
        self.assertEqual(_only_reply(result).action, "attach")

    def test_unrecognized_text_reprompts(self):
        result = transition(self.state, UserMessage("blah"))
        self.assertEqual(result.state, self.state)
        self.assertIn('type "skip"', _only_reply(result).text)

    def test_partial_upload(self):
        result = transition(
            self.state,
            AttachmentsUploaded(
                uploaded=(("t1", "a.png"), ("t3", "c.txt")),
                failures=(("b.pdf", "too big"),),
            ),
        )
        self.assertEqual(result.state.stage, Stage.ATTACHMENTS)
        self.assertEqual(result.state.temporary_attachment_ids, ("t1", "t3"))
        texts = [effect.text for effect in result.effects]
        self.assertEqual(texts[0], "Could not upload b.pdf: too big")
        self.assertTrue(texts[1].startswith("Attached: a.png, c.txt"))

    def test_upload_outside_attachment_step(self):
        result = transition(INITIAL_FLOW, AttachmentsUploaded(uploaded=(("t1", "a.png"),)))
        self.assertEqual(result.state, INITIAL_FLOW)
        self.assertIn("start request creation first", _only_reply(result).text)

    def test_done_moves_to_confirm_with_names(self):
        uploaded = transition(self.state, AttachmentsUploaded(uploaded=(("t1", "a.png"),))).state
        result = transition(uploaded, UserMessage("done"))
        self.assertEqual(result.state.stage, Stage.CONFIRM)
        self.assertIn("Attachments: a.png", _only_reply(result).text)


class TestConfirmAndSubmit(unittest.TestCase):
    def setUp(self):
        state = transition(_fields_stage(), UserMessage("Low")).state
        self.state = transition(state, UserMessage("3")).state

    def test_confirm_submits(self):
        result = transition(self.state, UserMessage("create"))
        self.assertEqual(
            result.effects,
            (
                SubmitRequest(
                    service_desk_id="1",
                    request_type_id="11",
                    answers={"priority": {"id": "2", "label": "Low"}, "customfield_5": 3},
                ),
            ),
        )

    def test_other_text_reprompts(self):
        result = transition(self.state, UserMessage("maybe"))
        self.assertEqual(result.state, self.state)
        self.assertEqual(_only_reply(result).text, 'Type "create" to submit the request, or "cancel" to stop.')

    def test_success_resets_flow(self):
        result = transition(
            self.state,
            SubmissionCompleted(
                {
                    "success": True,
                    "issueKey": "SD-7",
                    "requestLink": "https://example.atlassian.net/servicedesk/customer/portal/1/SD-7",
                    "warning": "The request was created, but the attachments could not be added: boom",
                }
            ),
        )
        self.assertEqual(result.state, INITIAL_FLOW)
        text = _only_reply(result).text
        self.assertIn("Issue key: SD-7", text)
        self.assertIn("Note: The request was created", text)

    def test_failure_keeps_confirm_stage(self):
        result = transition(
            self.state, SubmissionCompleted({"success": False, "error": "Failed to create the request: bad"})
        )
        self.assertEqual(result.state, self.state)
        self.assertEqual(_only_reply(result).text, "Failed to create the request: bad")

    def test_lost_selection_resets(self):
        broken = replace(self.state, selected_request_type=None)
        result = transition(broken, UserMessage("yes"))
        self.assertEqual(result.state, INITIAL_FLOW)

    def test_unknown_event_type(self):
        with self.assertRaises(TypeError):
            transition(DialogueFlowState(), object())


if __name__ == "__main__":
    unittest.main()
