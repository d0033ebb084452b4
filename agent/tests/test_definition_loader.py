"""Tests for agent definition files and the definition service."""

import json

import pytest

from application.services.agent_definition_service import AgentDefinitionService
from application.settings import AGENT_ROOT
from domain.exceptions import AgentDefinitionNotFoundError, AgentDefinitionParseError
from infrastructure.definitions.definition_loader import load_agent_definitions, parse_agent_definition_file

YAML_DEFINITION = """
name: Wiki Helper
handlerId: basicPromptConcatHandler
frameworkConfig:
  prompts:
    - id: system
      role: system
      text: You help with the wiki.
  tools:
    - id: history
      toolId: fullReplacement
      fullReplacementParam:
        targetId: system
        sourceType: historyOfSession
"""


class TestParseAgentDefinitionFile:
    """Single file parsing."""

    def test_yaml_id_defaults_to_file_stem(self, tmp_path):
        path = tmp_path / "wiki-helper.yaml"
        path.write_text(YAML_DEFINITION, encoding="utf-8")

        definition = parse_agent_definition_file(path)

        assert definition.id == "wiki-helper"
        assert definition.name == "Wiki Helper"
        assert definition.framework_config.tools[0].get_param()["targetId"] == "system"

    def test_json_with_explicit_id(self, tmp_path):
        path = tmp_path / "other.json"
        path.write_text(json.dumps({"id": "json-agent", "name": "JSON Agent"}), encoding="utf-8")

        definition = parse_agent_definition_file(path)

        assert definition.id == "json-agent"
        assert definition.handler_id == "basicPromptConcatHandler"

    @pytest.mark.parametrize("content,reason", [
        ("description: no name here\n", "Missing required field: name"),
        ("- just\n- a list\n", "mapping"),
        ("name: [unclosed\n", "Invalid syntax"),
        ("name: Broken\nframeworkConfig:\n  prompts: 3\n", "Invalid agent definition"),
    ])
    def test_invalid_files(self, tmp_path, content, reason):
        path = tmp_path / "broken.yaml"
        path.write_text(content, encoding="utf-8")

        with pytest.raises(AgentDefinitionParseError) as exc_info:
            parse_agent_definition_file(path)

        assert reason in exc_info.value.message
        assert exc_info.value.details["file_path"] == str(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(AgentDefinitionParseError):
            parse_agent_definition_file(tmp_path / "absent.yaml")


class TestLoadAgentDefinitions:

    def test_broken_and_foreign_files_are_skipped(self, tmp_path):
        (tmp_path / "good.yml").write_text(YAML_DEFINITION, encoding="utf-8")
        (tmp_path / "bad.yaml").write_text("description: nameless\n", encoding="utf-8")
        (tmp_path / "notes.txt").write_text("name: ignored\n", encoding="utf-8")

        definitions = load_agent_definitions(tmp_path)

        assert list(definitions) == ["good"]

    def test_missing_directory(self, tmp_path):
        assert load_agent_definitions(tmp_path / "nowhere") == {}

    def test_bundled_definition_loads(self):
        """Test that the shipped task agent definition is valid."""
        definitions = load_agent_definitions(AGENT_ROOT / "definitions")

        task_agent = definitions["task-agent"]
        assert task_agent.ai_api_config["model_parameters"]["temperature"] == 0.7
        assert [tool.tool_id for tool in task_agent.framework_config.tools] == ["fullReplacement", "wikiSearch"]


class TestAgentDefinitionService:
    """Lookups over loaded definitions."""

    def test_default_and_explicit_lookup(self, tmp_path, definition):
        (tmp_path / "wiki-helper.yaml").write_text(YAML_DEFINITION, encoding="utf-8")
        service = AgentDefinitionService(tmp_path, default_definition_id="task-agent", definitions=[definition])

        assert service.get_agent_def().id == "task-agent"
        assert service.get_agent_def("wiki-helper").name == "Wiki Helper"
        with pytest.raises(AgentDefinitionNotFoundError):
            service.get_agent_def("missing")

    def test_search_by_name(self, tmp_path, definition):
        (tmp_path / "wiki-helper.yaml").write_text(YAML_DEFINITION, encoding="utf-8")
        service = AgentDefinitionService(tmp_path, definitions=[definition])

        assert [item.id for item in service.get_agent_defs("wiki")] == ["wiki-helper"]
        assert len(service.get_agent_defs()) == 2

    def test_reload_picks_up_new_files(self, tmp_path):
        service = AgentDefinitionService(tmp_path)
        assert service.get_agent_defs() == []

        (tmp_path / "wiki-helper.yaml").write_text(YAML_DEFINITION, encoding="utf-8")

        assert service.reload() == 1
        assert service.get_agent_def().id == "wiki-helper"
