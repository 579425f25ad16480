import io
import json
from unittest.mock import MagicMock

import pytest

from ra_agent import display
from ra_agent.events import (
    PREVIEW_CHARS,
    BufferSink,
    ContextPruned,
    EventEmitter,
    JsonlSink,
    RunCompleted,
    StepStarted,
    ToolCallRejected,
    preview,
)
from ra_agent.models import RunStatus, TokenUsage


def test_preview_bounds_text():
    assert preview("short") == "short"
    assert preview(None) == ""
    long = preview("z" * 1000)
    assert len(long) == PREVIEW_CHARS + 1
    assert long.endswith("…")


def test_emitter_stamps_session_and_preserves_order():
    seen = []
    emitter = EventEmitter("sess-1", [seen.append])
    emitter.emit(StepStarted, step=1, message_count=2)
    emitter.emit(ContextPruned, step=1, attempt=1, messages_before=10, messages_after=6)
    emitter.emit(StepStarted, step=2, message_count=7)

    assert [e.type for e in seen] == ["step.started", "context.pruned", "step.started"]
    assert all(e.session_id == "sess-1" for e in seen)
    assert seen[0].timestamp.endswith("Z")
    assert seen[0].timestamp_ms <= seen[-1].timestamp_ms


def test_emitter_feeds_every_sink_in_order():
    calls = []
    first = MagicMock(side_effect=lambda e: calls.append(("first", e.type)))
    second = MagicMock(side_effect=lambda e: calls.append(("second", e.type)))
    emitter = EventEmitter("s", [first])
    emitter.add_sink(second)

    emitter.emit(StepStarted, step=1, message_count=2)
    assert calls == [("first", "step.started"), ("second", "step.started")]


def test_jsonl_sink_writes_one_object_per_line():
    stream = io.StringIO()
    emitter = EventEmitter("s", [JsonlSink(stream)])
    emitter.emit(StepStarted, step=1, message_count=2)
    emitter.emit(
        ToolCallRejected,
        step=1,
        tool_call_id="c2",
        name="read_file",
        reason="multiple_tool_calls",
    )

    lines = stream.getvalue().splitlines()
    assert len(lines) == 2
    record = json.loads(lines[1])
    assert record["type"] == "tool_call.rejected"
    assert record["reason"] == "multiple_tool_calls"
    assert record["session_id"] == "s"


def test_jsonl_sink_open_never_overwrites(tmp_path):
    path = tmp_path / "logs" / "run.jsonl"
    sink = JsonlSink.open(path)
    EventEmitter("s", [sink]).emit(StepStarted, step=1, message_count=2)
    sink.close()
    assert json.loads(path.read_text())["step"] == 1

    with pytest.raises(FileExistsError):
        JsonlSink.open(path)


def test_buffer_sink_flushes_at_end():
    buffer = BufferSink()
    emitter = EventEmitter("s", [buffer])
    emitter.emit(
        RunCompleted,
        status=RunStatus.SUBMITTED,
        steps=1,
        answer_chars=1,
        answer_preview="X",
        elapsed_ms=5,
        usage=TokenUsage(input_tokens=10, output_tokens=2, total_tokens=12),
    )
    assert len(buffer.events) == 1

    out = io.StringIO()
    buffer.flush(out)
    record = json.loads(out.getvalue())
    assert record["status"] == "submitted"
    assert record["usage"]["total_tokens"] == 12


def test_display_renders_known_and_unknown_events(monkeypatch):
    console = MagicMock()
    monkeypatch.setattr(display, "console", console)
    emitter = EventEmitter("s", [display.render])

    emitter.emit(StepStarted, step=3, message_count=9)
    emitter.emit(ContextPruned, step=3, attempt=1, messages_before=9, messages_after=5)
    assert console.print.called

    console.reset_mock()
    display.render(StepStarted(session_id="s", step=1, message_count=1).model_copy(update={"type": "custom"}))
    console.print.assert_called_once()
