import json

import pytest

from src.grc_tools.config_as_code.models import FileFormat, ParseResult, ResourceDescriptor, ResourceType
from src.grc_tools.config_as_code.parsers.config_parser import (
    detect_format,
    find_tree_collisions,
    parse_config_content,
)
from src.grc_tools.config_as_code.parsers.declarative_parser import _clean_value, parse_declarative_content

SAMPLE_DECLARATIVE = """
terraform {
  required_providers {
    grc = {
      source = "grc/config"
    }
  }
}

# Controls
resource "grc_control" "ac_1" {
  control_id = "AC-1"
  title      = "Access Control Policy"
  category   = "Access Control"
  tags       = ["iam", "access"]
  status     = "implemented"
}

resource "grc_control" "ac_2" {
  control_id = "AC-2"
  title      = "Account Management"
}

resource "grc_framework" "soc2" {
  name      = "SOC 2"
  version   = "2017"
  is_active = true
}
"""

SAMPLE_YAML = """
grc_control:
  ac_1:
    control_id: AC-1
    title: Access Control Policy
    tags: [iam, access]
grc_vendor:
  - name: Acme Hosting
    status: active
"""


@pytest.mark.parametrize("path, expected", [
    ("controls/main.tf", FileFormat.DECLARATIVE),
    ("legacy.hcl", FileFormat.DECLARATIVE),
    ("risks.yaml", FileFormat.YAML),
    ("risks.YML", FileFormat.YAML),
    ("vendors.json", FileFormat.JSON),
    ("README", FileFormat.DECLARATIVE),
])
def test_detect_format(path, expected):
    assert detect_format(path) == expected


def test_detect_format_default():
    assert detect_format("notes.txt", FileFormat.YAML) == FileFormat.YAML


def test_parse_declarative():
    result = parse_config_content(SAMPLE_DECLARATIVE, FileFormat.DECLARATIVE, "main.tf")
    assert result.ok, result.errors
    assert result.warnings == []
    keys = [(d.resource_type, d.natural_key) for d in result.descriptors]
    assert keys == [
        (ResourceType.CONTROLS, "AC-1"),
        (ResourceType.CONTROLS, "AC-2"),
        (ResourceType.FRAMEWORKS, "SOC 2"),
    ]

    ac_1 = result.descriptors[0]
    assert ac_1.attributes["title"] == "Access Control Policy"
    assert ac_1.attributes["tags"] == ["access", "iam"]
    assert ac_1.attributes["status"] == "implemented"
    assert ac_1.source_file == "main.tf"

    soc2 = result.descriptors[2]
    assert soc2.attributes["is_active"] is True
    assert soc2.attributes["version"] == "2017"
    assert result.resource_types == [ResourceType.CONTROLS, ResourceType.FRAMEWORKS]


def test_parse_declarative_uses_label_when_key_missing():
    content = 'resource "grc_control" "AC-9" {\n  title = "Audit"\n}\n'
    result = parse_config_content(content, FileFormat.DECLARATIVE)
    assert result.ok
    assert result.descriptors[0].natural_key == "AC-9"
    assert result.descriptors[0].attributes["control_id"] == "AC-9"


@pytest.mark.parametrize("content, file_format", [
    ("", FileFormat.DECLARATIVE),
    ("   \n\n", FileFormat.DECLARATIVE),
    ("", FileFormat.YAML),
    ("# nothing here\n", FileFormat.YAML),
    ("", FileFormat.JSON),
])
def test_empty_content_yields_zero_descriptors(content, file_format):
    result = parse_config_content(content, file_format)
    assert result.ok
    assert result.descriptors == []


def test_declarative_syntax_error_fails_whole_file():
    content = SAMPLE_DECLARATIVE + '\nresource "grc_control" "broken" {\n  title = \n'
    result = parse_config_content(content, FileFormat.DECLARATIVE, "main.tf")
    assert not result.ok
    assert result.descriptors == []
    assert result.errors[0].path == "main.tf"
    assert "Syntax error" in result.errors[0].message


def test_declarative_unknown_blocks_are_warnings():
    content = """
variable "region" {
  default = "us-east-1"
}

resource "aws_instance" "web" {
  ami = "ami-123"
}

resource "grc_control" "ac_1" {
  control_id = "AC-1"
  title      = "Access"
}
"""
    result = parse_config_content(content, FileFormat.DECLARATIVE)
    assert result.ok
    assert len(result.descriptors) == 1
    assert any("variable" in w for w in result.warnings)
    assert any("aws_instance" in w for w in result.warnings)


def test_declarative_line_numbers():
    document = parse_declarative_content(SAMPLE_DECLARATIVE)
    lines = {block.label: block.line for block in document.blocks}
    assert lines["ac_1"] == 11
    assert lines["soc2"] == 24


def test_clean_value_strips_meta_and_quotes():
    raw = {"__start_line__": 3, "title": '"Hello"', "tags": ['"a"', "b"], "note": "cost $${var}"}
    assert _clean_value(raw) == {"title": "Hello", "tags": ["a", "b"], "note": "cost ${var}"}


def test_parse_yaml():
    result = parse_config_content(SAMPLE_YAML, FileFormat.YAML, "main.yaml")
    assert result.ok
    assert [d.index_key for d in result.descriptors] == [("controls", "AC-1"), ("vendors", "Acme Hosting")]
    assert result.descriptors[1].attributes["status"] == "ACTIVE"


def test_parse_yaml_type_names_and_resources_wrapper():
    content = """
resources:
  risks:
    R-1:
      title: Data loss
      likelihood: 2
      impact: 5
"""
    result = parse_config_content(content, FileFormat.YAML)
    assert result.ok
    risk = result.descriptors[0]
    assert risk.natural_key == "R-1"
    assert risk.attributes["likelihood"] == "unlikely"
    assert risk.attributes["impact"] == "catastrophic"


def test_parse_yaml_syntax_error_has_line():
    content = "grc_control:\n  ac_1:\n    title: [unclosed\n"
    result = parse_config_content(content, FileFormat.YAML, "bad.yaml")
    assert not result.ok
    assert result.descriptors == []
    assert result.errors[0].line is not None
    assert "Invalid YAML" in result.errors[0].message


def test_parse_json():
    data = {"grc_policy": [{"title": "Acceptable Use", "status": "approved", "version": 2}]}
    result = parse_config_content(json.dumps(data), FileFormat.JSON, "policies.json")
    assert result.ok
    policy = result.descriptors[0]
    assert policy.natural_key == "Acceptable Use"
    assert policy.attributes["status"] == "APPROVED"
    assert policy.attributes["version"] == "2"


def test_parse_json_syntax_error():
    result = parse_config_content('{"grc_policy": [', FileFormat.JSON, "policies.json")
    assert not result.ok
    assert result.errors[0].line == 1
    assert "Invalid JSON" in result.errors[0].message


def test_top_level_must_be_mapping():
    result = parse_config_content("- a\n- b\n", FileFormat.YAML)
    assert not result.ok


def test_unknown_attributes_are_warned_and_dropped():
    content = "grc_control:\n  - control_id: AC-1\n    title: A\n    owner: alice\n"
    result = parse_config_content(content, FileFormat.YAML)
    assert result.ok
    assert "owner" not in result.descriptors[0].attributes
    assert result.warnings == ["Unknown attribute 'owner' on grc_control 'AC-1' ignored"]


def test_validation_errors_are_per_resource():
    content = """
grc_control:
  - control_id: AC-1
    title: Fine
  - control_id: AC-2
  - title: No key at all
"""
    result = parse_config_content(content, FileFormat.YAML, "controls.yaml")
    assert not result.ok
    assert [d.natural_key for d in result.descriptors] == ["AC-1"]
    assert len(result.errors) == 2
    assert all(e.kind == "validation" for e in result.errors)
    assert result.errors[0].natural_key == "AC-2"
    assert "has no 'control_id'" in result.errors[1].message


def test_duplicate_keys_in_one_file():
    content = """
resource "grc_control" "first" {
  control_id = "AC-1"
  title      = "One"
}

resource "grc_control" "second" {
  control_id = "AC-1"
  title      = "Two"
}
"""
    result = parse_config_content(content, FileFormat.DECLARATIVE, "dup.tf")
    assert not result.ok
    assert len(result.descriptors) == 1
    assert "Duplicate natural key 'AC-1'" in result.errors[0].message
    assert "line 2" in result.errors[0].message


def test_find_tree_collisions():
    def _result(path, key):
        return ParseResult(descriptors=[
            ResourceDescriptor(resource_type=ResourceType.CONTROLS, natural_key=key, source_file=path)
        ])

    errors = find_tree_collisions([_result("a.tf", "AC-1"), _result("b.tf", "AC-1"), _result("c.tf", "AC-2")])
    assert len(errors) == 1
    assert errors[0].path == "b.tf"
    assert "already declared in a.tf" in errors[0].message
