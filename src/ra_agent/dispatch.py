# dispatch.py
# Tool dispatcher: validate one call, run it, bound its output.
#
# Nothing raised by validation or by a tool escapes execute(). Every failure
# becomes a ToolOutcome the loop can hand back to the model.

import json

from ra_agent.models import ToolCall, ToolOutcome
from ra_agent.registry import ToolArgumentError, ToolNotFoundError, ToolRegistry
from ra_agent.tools import ToolContext, ToolFailure, truncate


def _result_fields(content: str) -> dict:
    """Pull exit_code / truncated out of a JSON tool result, if it has them."""
    try:
        body = json.loads(content)
    except json.JSONDecodeError:
        return {}
    if not isinstance(body, dict):
        return {}
    exit_code = body.get("exit_code")
    return {
        "exit_code": exit_code if isinstance(exit_code, int) else None,
        "truncated": bool(body.get("truncated")),
    }


class Dispatcher:
    """Executes exactly the tool call it is given. Never chooses among several."""

    def __init__(self, registry: ToolRegistry, context: ToolContext, max_result_chars: int) -> None:
        self._registry = registry
        self._context = context
        self._max_result_chars = max_result_chars

    def execute(self, call: ToolCall) -> ToolOutcome:
        try:
            spec = self._registry.lookup(call.name)
            args = self._registry.validate(call.name, call.function.arguments)
        except ToolNotFoundError as exc:
            return self._bound(ToolOutcome.failed("unknown_tool", str(exc), executed=False))
        except ToolArgumentError as exc:
            outcome = ToolOutcome.failed(
                "validation_error",
                str(exc),
                {"reason": exc.kind.value, "field": exc.field},
                executed=False,
            )
            return self._bound(outcome)

        if spec.handler is None:
            return self._bound(
                ToolOutcome.failed(
                    "not_executable", f"{call.name} cannot be executed here", executed=False
                )
            )

        # Side effects happen only inside this call.
        try:
            text = spec.handler(args, self._context)
        except ToolFailure as exc:
            outcome = ToolOutcome.failed(exc.kind, exc.message, exc.payload)
        except FileNotFoundError as exc:
            outcome = ToolOutcome.failed("not_found", str(exc))
        except OSError as exc:
            outcome = ToolOutcome.failed("io_error", str(exc))
        except Exception as exc:
            outcome = ToolOutcome.failed("tool_error", f"{type(exc).__name__}: {exc}")
        else:
            outcome = ToolOutcome.success(text)
        return self._bound(outcome)

    def _bound(self, outcome: ToolOutcome) -> ToolOutcome:
        fields = _result_fields(outcome.content)
        content, cut = truncate(outcome.content, self._max_result_chars)
        return outcome.model_copy(
            update={
                "content": content,
                "truncated": cut or fields.get("truncated", False),
                "exit_code": fields.get("exit_code"),
            }
        )
