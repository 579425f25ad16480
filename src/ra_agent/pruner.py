# pruner.py
# Context pruning for provider context-window overflows.
#
# prune_messages() is a pure function: it builds a new history and never
# touches the one it was given. Retained unconditionally:
#   - every system message
#   - the first user message (the task)
# Prunable material is grouped into units so an assistant message carrying
# tool calls and the tool messages answering it are kept or dropped together.

from collections.abc import Sequence

from pydantic import BaseModel, Field

from ra_agent.models import Message


class HistoryExhaustedError(Exception):
    """Raised when nothing outside the retained set is left to drop."""


class _Unit(BaseModel):
    messages: list[Message] = Field(default_factory=list)
    orphan: bool = False

    @property
    def starts_with_user(self) -> bool:
        return self.messages[0].role == "user"


def _group_units(messages: Sequence[Message]) -> list[_Unit]:
    units: list[_Unit] = []
    open_ids: set[str] = set()
    for message in messages:
        if message.role == "tool":
            if message.tool_call_id in open_ids:
                units[-1].messages.append(message)
            else:
                units.append(_Unit(messages=[message], orphan=True))
            continue
        units.append(_Unit(messages=[message]))
        open_ids = message.call_ids() if message.role == "assistant" else set()
    return units


def prune_messages(messages: Sequence[Message]) -> list[Message]:
    """
    Return a strictly shorter history, dropping the oldest third of the
    conversation after the task.

    The cut is moved forward to the next user message when there is one, so
    the kept history still opens on a user turn. Raises HistoryExhaustedError
    when only retained messages remain.
    """
    system = [m for m in messages if m.role == "system"]
    rest = [m for m in messages if m.role != "system"]

    task_index = next((i for i, m in enumerate(rest) if m.role == "user"), None)
    if task_index is None:
        raise HistoryExhaustedError("history has no task message to anchor pruning")

    # Anything before the task is always dropped.
    leading = rest[:task_index]
    units = _group_units(rest[task_index + 1 :])
    if not units and not leading:
        raise HistoryExhaustedError("only the system prompt and task remain")

    cut = 0
    if units:
        target = max(1, len(units) // 3)
        boundary = next((i for i in range(target, len(units)) if units[i].starts_with_user), None)
        cut = target if boundary is None else boundary

    kept = [m for unit in units[cut:] if not unit.orphan for m in unit.messages]
    return [*system, rest[task_index], *kept]
