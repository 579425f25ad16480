# events.py
# Structured event stream for the agent loop.
#
# One event per control-flow transition. Events carry sizes and short
# previews, never full payloads. The emitter hands each event to every sink
# synchronously and in order, so the stream is exactly the transition order.

import sys
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Literal

from pydantic import BaseModel, Field

from ra_agent.models import RunStatus, TokenUsage

PREVIEW_CHARS = 200
ERROR_PREVIEW_CHARS = 2000


def preview(text: str | None, limit: int = PREVIEW_CHARS) -> str:
    text = text or ""
    return text if len(text) <= limit else text[:limit] + "…"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


# ---------------------------------------------------------------------------
# Event variants
# ---------------------------------------------------------------------------


class LogEvent(BaseModel):
    type: str
    session_id: str
    timestamp: str = Field(default_factory=_now_iso)
    timestamp_ms: int = Field(default_factory=_now_ms)


class RunStarted(LogEvent):
    type: Literal["run.started"] = "run.started"
    model: str
    cwd: str
    submit_enabled: bool
    web_enabled: bool
    max_steps: int | None
    time_limit_sec: float | None
    tools: list[str]
    task_chars: int
    system_prompt_chars: int
    has_agents_instructions: bool = False


class StepStarted(LogEvent):
    type: Literal["step.started"] = "step.started"
    step: int
    message_count: int


class AssistantMessageProduced(LogEvent):
    type: Literal["assistant.message"] = "assistant.message"
    step: int
    content_chars: int
    content_preview: str
    tool_call_ids: list[str] = Field(default_factory=list)
    tool_names: list[str] = Field(default_factory=list)


class ToolCallExecuted(LogEvent):
    type: Literal["tool_call.executed"] = "tool_call.executed"
    step: int
    tool_call_id: str
    name: str
    success: bool
    failure: str | None = None
    output_chars: int
    output_preview: str
    truncated: bool = False
    exit_code: int | None = None
    changes: list[dict[str, str]] = Field(default_factory=list)


class ToolCallRejected(LogEvent):
    type: Literal["tool_call.rejected"] = "tool_call.rejected"
    step: int
    tool_call_id: str
    name: str
    reason: str
    detail: str = ""


class ContextPruned(LogEvent):
    type: Literal["context.pruned"] = "context.pruned"
    step: int
    attempt: int
    messages_before: int
    messages_after: int


class StepCompleted(LogEvent):
    type: Literal["step.completed"] = "step.completed"
    step: int
    message_count: int


class RunCompleted(LogEvent):
    type: Literal["run.completed"] = "run.completed"
    status: RunStatus
    steps: int
    answer_chars: int
    answer_preview: str
    elapsed_ms: int
    usage: TokenUsage


class RunFailed(LogEvent):
    type: Literal["run.failed"] = "run.failed"
    steps: int
    error: str
    elapsed_ms: int


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

Sink = Callable[[LogEvent], None]


class JsonlSink:
    """Writes one JSON object per line and flushes after every event."""

    def __init__(self, stream: IO[str], close: bool = False) -> None:
        self._stream = stream
        self._close = close

    @classmethod
    def open(cls, path: Path) -> "JsonlSink":
        """Create a new log file. Refuses to overwrite an existing one."""
        path.parent.mkdir(parents=True, exist_ok=True)
        return cls(path.open("x", encoding="utf-8"), close=True)

    def __call__(self, event: LogEvent) -> None:
        self._stream.write(event.model_dump_json() + "\n")
        self._stream.flush()

    def close(self) -> None:
        if self._close:
            self._stream.close()


class BufferSink:
    """Holds events until flush(); used for print-at-end JSON output."""

    def __init__(self) -> None:
        self.events: list[LogEvent] = []

    def __call__(self, event: LogEvent) -> None:
        self.events.append(event)

    def flush(self, stream: IO[str] | None = None) -> None:
        out = JsonlSink(stream or sys.stdout)
        for event in self.events:
            out(event)


# ---------------------------------------------------------------------------
# Emitter
# ---------------------------------------------------------------------------


class EventEmitter:
    """Stamps events with the session id and feeds them to sinks in order."""

    def __init__(self, session_id: str, sinks: Iterable[Sink] = ()) -> None:
        self.session_id = session_id
        self._sinks = list(sinks)

    def add_sink(self, sink: Sink) -> None:
        self._sinks.append(sink)

    def emit(self, event_type: type[LogEvent], **fields: Any) -> LogEvent:
        event = event_type(session_id=self.session_id, **fields)
        for sink in self._sinks:
            sink(event)
        return event
