import json

import pytest

from ra_agent import tools
from ra_agent.registry import (
    SUBMIT_TOOL,
    ArgumentErrorKind,
    ToolArgumentError,
    ToolNotFoundError,
    build_registry,
)

# ---------------------------------------------------------------------------
# Membership
# ---------------------------------------------------------------------------


def test_workspace_tools_always_present():
    registry = build_registry(submit_enabled=False)
    assert registry.names == ["shell_command", "read_file", "list_dir", "grep_files", "apply_patch"]
    assert SUBMIT_TOOL not in registry


def test_submit_and_web_tools_only_when_enabled():
    registry = build_registry(submit_enabled=True, web_enabled=True)
    assert SUBMIT_TOOL in registry
    for name in ("web_search", "web_open", "web_find"):
        assert name in registry
    assert registry.names[-1] == SUBMIT_TOOL


def test_lookup_unknown_tool():
    registry = build_registry(submit_enabled=False)
    with pytest.raises(ToolNotFoundError, match="Unknown tool: rm_rf"):
        registry.lookup("rm_rf")
    # submit is not callable when the mode is off
    with pytest.raises(ToolNotFoundError):
        registry.validate(SUBMIT_TOOL, '{"answer": "x"}')


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def test_validate_parses_json_text():
    registry = build_registry(submit_enabled=False)
    args = registry.validate("read_file", '{"file_path": "a.txt", "offset": 3}')
    assert isinstance(args, tools.ReadFileArgs)
    assert args.file_path == "a.txt"
    assert args.offset == 3
    assert args.limit == tools.DEFAULT_READ_LIMIT


def test_validate_accepts_dict_and_null_optionals():
    registry = build_registry(submit_enabled=False)
    args = registry.validate("list_dir", {"dir_path": ".", "depth": None})
    assert args.depth == 1


def test_validate_empty_arguments_means_missing_field():
    registry = build_registry(submit_enabled=True)
    with pytest.raises(ToolArgumentError) as exc_info:
        registry.validate(SUBMIT_TOOL, "")
    assert exc_info.value.kind is ArgumentErrorKind.MISSING_FIELD
    assert exc_info.value.field == "answer"


def test_validate_wrong_type():
    registry = build_registry(submit_enabled=False)
    with pytest.raises(ToolArgumentError) as exc_info:
        registry.validate("read_file", {"file_path": "a.txt", "limit": "lots"})
    assert exc_info.value.kind is ArgumentErrorKind.WRONG_TYPE
    assert exc_info.value.field == "limit"


def test_validate_out_of_range():
    registry = build_registry(submit_enabled=False)
    with pytest.raises(ToolArgumentError) as exc_info:
        registry.validate("read_file", {"file_path": "a.txt", "offset": 0})
    assert exc_info.value.kind is ArgumentErrorKind.OUT_OF_RANGE
    assert str(exc_info.value).startswith("out_of_range: read_file.offset:")


def test_validate_malformed_json_is_wrong_type():
    registry = build_registry(submit_enabled=False)
    with pytest.raises(ToolArgumentError) as exc_info:
        registry.validate("shell_command", "{command: ls")
    assert exc_info.value.kind is ArgumentErrorKind.WRONG_TYPE
    assert exc_info.value.field is None


def test_validate_non_object_json():
    registry = build_registry(submit_enabled=False)
    with pytest.raises(ToolArgumentError, match="must be a JSON object"):
        registry.validate("shell_command", json.dumps(["ls"]))


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


def test_schema_shape():
    registry = build_registry(submit_enabled=False)
    schemas = {s["function"]["name"]: s for s in registry.schemas()}
    shell = schemas["shell_command"]
    assert shell["type"] == "function"
    params = shell["function"]["parameters"]
    assert params["type"] == "object"
    assert params["required"] == ["command"]
    assert params["additionalProperties"] is False
    # Optional fields are flattened to a plain type
    assert params["properties"]["workdir"]["type"] == "string"
    assert params["properties"]["timeout_ms"]["type"] == "integer"
    assert "title" not in params["properties"]["command"]


def test_submit_schema_requires_answer():
    registry = build_registry(submit_enabled=True)
    submit = registry.lookup(SUBMIT_TOOL)
    assert submit.handler is None
    assert submit.schema()["function"]["parameters"]["required"] == ["answer"]


def test_validate_rejects_unknown_keys():
    registry = build_registry(submit_enabled=False)
    with pytest.raises(ToolArgumentError) as exc_info:
        registry.validate("list_dir", {"dir_path": ".", "recursive": True})
    assert exc_info.value.field == "recursive"
