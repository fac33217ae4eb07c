"""
工作流解析器测试
"""
import json

import pytest

from automation_engine.core.parser import EXPORT_FORMAT_VERSION, WorkflowParser
from automation_engine.exceptions import WorkflowParseError
from automation_engine.models.workflow import (
    Conditional, FailurePolicy, ForwardMessage, GeofenceTransition, GeofenceTrigger, MailArrivalTrigger,
    Notify, SendMessage, SummarizeContent, SummaryStyle
)


WORKFLOW_YAML = """
workflow:
  id: wf-alerts
  name: Alerts
  description: Route alerts by urgency
  owner_id: alice
  shared_with: [bob]
  variables:
    team_chat: ops
  triggers:
    - type: mail_arrival
      user_id: alice
      condition:
        from_filter: monitor@example.com
        max_age_hours: 6
    - type: geofence
      geofence_id: office
      latitude: 52.52
      longitude: 13.40
      transition: exited
  actions:
    - type: summarize_content
      content: "{{email_body}}"
      style: STRUCTURED
      on_failure: continue
    - type: conditional
      condition: "email_subject contains critical"
      then_action:
        type: send_message
        chat_id: "{{team_chat}}"
        text: "{{ai_summary}}"
"""


@pytest.fixture
def parser():
    return WorkflowParser()


class TestWorkflowParser:

    def test_parse_yaml_string(self, parser):
        workflow = parser.parse(WORKFLOW_YAML)

        assert workflow.id == "wf-alerts"
        assert workflow.shared_with == ["bob"]
        assert workflow.variables == {"team_chat": "ops"}

        mail, geofence = workflow.triggers
        assert isinstance(mail, MailArrivalTrigger)
        assert mail.condition.from_filter == "monitor@example.com"
        assert mail.condition.max_age_hours == 6
        assert isinstance(geofence, GeofenceTrigger)
        assert geofence.transition == GeofenceTransition.EXIT

        summarize, conditional = workflow.actions
        assert isinstance(summarize, SummarizeContent)
        assert summarize.style == SummaryStyle.STRUCTURED
        assert summarize.on_failure == FailurePolicy.CONTINUE
        assert isinstance(conditional, Conditional)
        assert isinstance(conditional.then_action, SendMessage)
        assert conditional.then_action.chat_id == "{{team_chat}}"

    def test_parse_file(self, parser, tmp_path):
        path = tmp_path / "alerts.yaml"
        path.write_text(WORKFLOW_YAML, encoding="utf-8")

        assert parser.parse(str(path)).name == "Alerts"
        assert parser.parse(path).name == "Alerts"

    def test_parse_json_file(self, parser, tmp_path):
        path = tmp_path / "simple.json"
        path.write_text(json.dumps({"name": "Simple", "actions": [{"type": "log", "message": "hi"}]}))

        workflow = parser.parse_file(path)

        assert workflow.name == "Simple"
        assert workflow.id

    def test_parse_forward_and_notify(self, parser):
        workflow = parser.parse({
            "name": "Escalate",
            "owner_id": "alice",
            "actions": [
                {"type": "forward_message", "to_chat_id": "oncall"},
                {"type": "notify", "message": "Escalated", "target_user_id": "bob"},
            ],
        })

        forward, notify = workflow.actions
        assert isinstance(forward, ForwardMessage)
        assert forward.from_chat_id == "{{message_chat_id}}"
        assert forward.to_chat_id == "oncall"
        assert isinstance(notify, Notify)
        assert notify.title == "Workflow"
        assert notify.target_user_id == "bob"

    def test_serialize_round_trip(self, parser):
        workflow = parser.parse(WORKFLOW_YAML)

        restored = parser.parse(parser.serialize(workflow, "json"))

        assert restored.triggers == workflow.triggers
        assert restored.actions == workflow.actions
        assert restored.created_at == workflow.created_at


class TestParseErrors:

    @pytest.mark.parametrize("source,fragment", [
        ({"name": "x", "actions": [{"type": "teleport"}]}, "actions/0/type"),
        ({"actions": []}, "'name' is a required property"),
        ({"name": "x", "actions": [], "colour": "red"}, "colour"),
        ({"name": "x", "actions": [{"type": "log", "mesage": "typo"}]}, "unknown field(s) mesage"),
        ({"name": "x", "actions": [{"type": "log", "message": "m", "level": "loud"}]}, "expected one of"),
        ({"name": "x", "actions": [], "triggers": [{"type": "geofence", "transition": "hover"}]}, "transition"),
    ])
    def test_invalid_definitions(self, parser, source, fragment):
        with pytest.raises(WorkflowParseError) as exc_info:
            parser.parse(source)
        assert fragment in str(exc_info.value)

    def test_malformed_yaml(self, parser):
        with pytest.raises(WorkflowParseError):
            parser.parse("workflow: [unclosed")

    def test_unsupported_file_type(self, parser, tmp_path):
        path = tmp_path / "workflow.toml"
        path.write_text("name = 'x'")

        with pytest.raises(WorkflowParseError):
            parser.parse_file(path)


class TestImportExport:

    def test_export_then_import(self, parser):
        workflow = parser.parse(WORKFLOW_YAML)

        document = parser.dump_export([workflow], "yaml")
        imported = parser.import_workflows(document)

        assert len(imported) == 1
        assert imported[0].id == "wf-alerts"
        assert imported[0].actions == workflow.actions

    def test_import_with_regenerated_ids(self, parser):
        workflow = parser.parse(WORKFLOW_YAML)
        document = parser.export_workflows([workflow])

        imported = parser.import_workflows(document, regenerate_ids=True)

        assert document["version"] == EXPORT_FORMAT_VERSION
        assert imported[0].id != "wf-alerts"
        assert imported[0].name == "Alerts"

    @pytest.mark.parametrize("document", [
        {"version": "2.0", "workflows": []},
        {"workflows": []},
        {"version": "1.0"},
    ])
    def test_rejects_unsupported_documents(self, parser, document):
        with pytest.raises(WorkflowParseError):
            parser.import_workflows(document)
