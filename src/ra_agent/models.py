# models.py
# Data contracts for the ra agent loop.
# No control flow lives here. Schema, validation and small constructors only.

import json
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "openai/gpt-4.1-mini"
DEFAULT_MAX_TOOL_OUTPUT_CHARS = 8000
DEFAULT_MAX_TOOL_RESULT_CHARS = 32000
DEFAULT_MAX_PRUNE_ATTEMPTS = 3


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


class FunctionCall(BaseModel):
    """Function half of a provider tool call. `arguments` is the raw JSON text."""

    name: str
    arguments: str = ""


class ToolCall(BaseModel):
    """A single tool invocation requested by the model."""

    id: str = Field(..., description="Provider-assigned id, unique within the session.")
    type: str = "function"
    function: FunctionCall

    @property
    def name(self) -> str:
        return self.function.name


class Message(BaseModel):
    """One turn of the conversation, in chat-completions wire shape."""

    role: Literal["system", "user", "assistant", "tool"]
    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None

    @classmethod
    def system(cls, text: str) -> "Message":
        return cls(role="system", content=text)

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role="user", content=text)

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> "Message":
        return cls(role="tool", tool_call_id=tool_call_id, content=content)

    @property
    def text(self) -> str:
        return self.content or ""

    def call_ids(self) -> set[str]:
        return {call.id for call in self.tool_calls or []}

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class RunConfig(BaseModel):
    """Immutable run configuration, threaded into the Agent at construction."""

    model_config = ConfigDict(frozen=True)

    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    cwd: Path = Field(default_factory=Path.cwd)
    submit_enabled: bool = False
    web_enabled: bool = False
    max_steps: int | None = Field(default=None, ge=1)
    time_limit_sec: float | None = Field(default=None, gt=0)
    temperature: float | None = None
    top_p: float | None = None
    max_tool_output_chars: int = Field(default=DEFAULT_MAX_TOOL_OUTPUT_CHARS, ge=1)
    max_tool_result_chars: int = Field(default=DEFAULT_MAX_TOOL_RESULT_CHARS, ge=1)
    max_prune_attempts: int = Field(default=DEFAULT_MAX_PRUNE_ATTEMPTS, ge=1)
    request_timeout_sec: float = Field(default=600.0, gt=0)
    max_retries: int = Field(default=2, ge=0)

    def sampling_params(self) -> dict[str, float]:
        """Only explicitly configured sampling parameters; the rest stay provider defaults."""
        params = {"temperature": self.temperature, "top_p": self.top_p}
        return {key: value for key, value in params.items() if value is not None}


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class Session(BaseModel):
    """Mutable state of one run. Owned exclusively by the Agent."""

    config: RunConfig
    messages: list[Message] = Field(default_factory=list)
    steps: int = 0
    started_at: float = Field(..., description="Monotonic clock reading at run start.")

    @classmethod
    def start(cls, config: RunConfig, system_prompt: str, task: str, started_at: float) -> "Session":
        return cls(
            config=config,
            messages=[Message.system(system_prompt), Message.user(task)],
            started_at=started_at,
        )

    def append(self, message: Message) -> None:
        self.messages.append(message)

    def wire_messages(self) -> list[dict[str, Any]]:
        return [message.to_wire() for message in self.messages]


# ---------------------------------------------------------------------------
# Usage accounting
# ---------------------------------------------------------------------------


class TokenUsage(BaseModel):
    input_tokens: int = 0
    cached_input_tokens: int = 0
    output_tokens: int = 0
    reasoning_output_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: "TokenUsage | None") -> None:
        if other is None:
            return
        self.input_tokens += other.input_tokens
        self.cached_input_tokens += other.cached_input_tokens
        self.output_tokens += other.output_tokens
        self.reasoning_output_tokens += other.reasoning_output_tokens
        self.total_tokens += other.total_tokens


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class ToolOutcome(BaseModel):
    """Result of dispatching one tool call. `content` is already bounded."""

    ok: bool
    content: str
    failure: str | None = Field(default=None, description="Failure kind when ok is False.")
    executed: bool = Field(default=True, description="False when rejected before any side effect.")
    truncated: bool = False
    exit_code: int | None = None

    @classmethod
    def success(cls, text: str, **fields: Any) -> "ToolOutcome":
        return cls(ok=True, content=text, **fields)

    @classmethod
    def failed(
        cls,
        kind: str,
        message: str,
        payload: dict[str, Any] | None = None,
        **fields: Any,
    ) -> "ToolOutcome":
        body = {"error": message, "kind": kind, **(payload or {})}
        return cls(ok=False, content=json.dumps(body), failure=kind, **fields)


class RunStatus(str, Enum):
    SUBMITTED = "submitted"
    FINAL_TEXT = "final_text"
    LIMIT_EXCEEDED = "limit_exceeded"
    ERROR = "error"


class RunOutcome(BaseModel):
    """How a run ended. Exactly one of answer / notice / error is meaningful."""

    status: RunStatus
    answer: str | None = None
    notice: str | None = None
    error: str | None = None
    steps: int = 0
    usage: TokenUsage = Field(default_factory=TokenUsage)

    @property
    def ok(self) -> bool:
        return self.status is not RunStatus.ERROR

    @property
    def text(self) -> str:
        if self.status is RunStatus.LIMIT_EXCEEDED:
            return self.notice or ""
        if self.status is RunStatus.ERROR:
            return self.error or ""
        return self.answer or ""
