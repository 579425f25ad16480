# registry.py
# Tool registry: the fixed set of callable tools, their argument schemas,
# and validation. Membership is decided once per run from configuration.
#
# Every name -> spec mapping is written out in build_registry(); there is no
# discovery or getattr lookup.

import json
from collections.abc import Callable, Iterable
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from ra_agent import tools
from ra_agent.tools import ToolArgs, ToolContext

SUBMIT_TOOL = "submit"

_RANGE_ERRORS = {"greater_than", "greater_than_equal", "less_than", "less_than_equal"}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ToolNotFoundError(Exception):
    """Raised when a tool name is absent from the registry."""


class ArgumentErrorKind(str, Enum):
    MISSING_FIELD = "missing_field"
    WRONG_TYPE = "wrong_type"
    OUT_OF_RANGE = "out_of_range"


class ToolArgumentError(Exception):
    """Raised when tool arguments fail schema validation."""

    def __init__(self, tool: str, kind: ArgumentErrorKind, field: str | None, detail: str) -> None:
        self.tool = tool
        self.kind = kind
        self.field = field
        self.detail = detail
        where = f"{tool}.{field}" if field else tool
        super().__init__(f"{kind.value}: {where}: {detail}")


# ---------------------------------------------------------------------------
# Tool descriptions
# ---------------------------------------------------------------------------


class ToolSpec(BaseModel):
    """Immutable description of one tool. `handler` is None for control tools like submit."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    description: str
    args_model: type[ToolArgs]
    handler: Callable[[Any, ToolContext], str] | None = None

    def schema(self) -> dict[str, Any]:
        """OpenAI function-tool schema derived from the argument model."""
        parameters = self.args_model.model_json_schema()
        parameters.pop("title", None)
        for prop in parameters.get("properties", {}).values():
            prop.pop("title", None)
            prop.pop("default", None)
            # Optional[str] renders as anyOf; providers prefer a flat type.
            variants = prop.pop("anyOf", None)
            if variants:
                prop.update(next(v for v in variants if v.get("type") != "null"))
        parameters["additionalProperties"] = False
        parameters.setdefault("required", [])
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }


def _classify(error: dict[str, Any]) -> ArgumentErrorKind:
    if error["type"] == "missing":
        return ArgumentErrorKind.MISSING_FIELD
    if error["type"] in _RANGE_ERRORS:
        return ArgumentErrorKind.OUT_OF_RANGE
    return ArgumentErrorKind.WRONG_TYPE


class ToolRegistry:
    """Lookup and validation over a fixed tool set. Shared read-only across steps."""

    def __init__(self, specs: Iterable[ToolSpec]) -> None:
        self._specs: dict[str, ToolSpec] = {spec.name: spec for spec in specs}

    def __contains__(self, name: str) -> bool:
        return name in self._specs

    @property
    def names(self) -> list[str]:
        return list(self._specs)

    def lookup(self, name: str) -> ToolSpec:
        try:
            return self._specs[name]
        except KeyError:
            raise ToolNotFoundError(f"Unknown tool: {name}") from None

    def validate(self, name: str, arguments: str | dict[str, Any]) -> ToolArgs:
        """
        Parse and schema-check arguments for `name`.

        Accepts the raw JSON text a provider sends or an already-decoded dict.
        Raises ToolNotFoundError or ToolArgumentError; never executes anything.
        """
        spec = self.lookup(name)
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError as exc:
                raise ToolArgumentError(
                    name, ArgumentErrorKind.WRONG_TYPE, None, f"arguments are not valid JSON: {exc}"
                ) from exc
        if not isinstance(arguments, dict):
            raise ToolArgumentError(
                name, ArgumentErrorKind.WRONG_TYPE, None, "arguments must be a JSON object"
            )

        try:
            return spec.args_model.model_validate(arguments)
        except ValidationError as exc:
            first = exc.errors()[0]
            field = ".".join(str(part) for part in first["loc"]) or None
            raise ToolArgumentError(name, _classify(first), field, first["msg"]) from exc

    def schemas(self) -> list[dict[str, Any]]:
        return [spec.schema() for spec in self._specs.values()]


# ---------------------------------------------------------------------------
# Registry construction
# ---------------------------------------------------------------------------

WORKSPACE_TOOLS = (
    ToolSpec(
        name="shell_command",
        description="Runs a shell command and returns its output.",
        args_model=tools.ShellCommandArgs,
        handler=tools._tool_shell_command,
    ),
    ToolSpec(
        name="read_file",
        description="Reads a paginated range of lines from a file.",
        args_model=tools.ReadFileArgs,
        handler=tools._tool_read_file,
    ),
    ToolSpec(
        name="list_dir",
        description="Lists directory entries with pagination and depth control.",
        args_model=tools.ListDirArgs,
        handler=tools._tool_list_dir,
    ),
    ToolSpec(
        name="grep_files",
        description="Searches files for a pattern and returns matching lines.",
        args_model=tools.GrepFilesArgs,
        handler=tools._tool_grep_files,
    ),
    ToolSpec(
        name="apply_patch",
        description="Applies a unified diff patch.",
        args_model=tools.ApplyPatchArgs,
        handler=tools._tool_apply_patch,
    ),
)

WEB_TOOLS = (
    ToolSpec(
        name="web_search",
        description="Searches the web and returns titles, URLs and snippets.",
        args_model=tools.WebSearchArgs,
        handler=tools._tool_web_search,
    ),
    ToolSpec(
        name="web_open",
        description="Fetches a URL and returns a paginated range of line-numbered text.",
        args_model=tools.WebOpenArgs,
        handler=tools._tool_web_open,
    ),
    ToolSpec(
        name="web_find",
        description="Fetches a URL and returns line ranges matching a pattern.",
        args_model=tools.WebFindArgs,
        handler=tools._tool_web_find,
    ),
)

SUBMIT_SPEC = ToolSpec(
    name=SUBMIT_TOOL,
    description="Signals completion and returns the final answer.",
    args_model=tools.SubmitArgs,
)


def build_registry(submit_enabled: bool, web_enabled: bool = False) -> ToolRegistry:
    specs = list(WORKSPACE_TOOLS)
    if web_enabled:
        specs.extend(WEB_TOOLS)
    if submit_enabled:
        specs.append(SUBMIT_SPEC)
    return ToolRegistry(specs)
