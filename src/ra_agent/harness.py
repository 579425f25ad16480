# harness.py
# Step executor: the agent control loop.
#
# The Agent is the kernel. The model is a passive responder. This class
# owns the session, all control flow, limit checks and context recovery,
# and reports every transition to the event emitter.
#
# Control flow, one step at a time:
#   limit check → model request (→ prune + retry on overflow)
#   → first tool call executed, any others answered as not executed
#   → submit / final text / continue

import time
from collections.abc import Callable
from enum import Enum

from ra_agent.client import ChatClient, ContextWindowExceededError, ProviderError
from ra_agent.dispatch import Dispatcher
from ra_agent.events import (
    ERROR_PREVIEW_CHARS,
    AssistantMessageProduced,
    ContextPruned,
    EventEmitter,
    RunCompleted,
    RunFailed,
    RunStarted,
    StepCompleted,
    StepStarted,
    ToolCallExecuted,
    ToolCallRejected,
    preview,
)
from ra_agent.models import (
    Message,
    RunConfig,
    RunOutcome,
    RunStatus,
    Session,
    TokenUsage,
    ToolCall,
    ToolOutcome,
)
from ra_agent.prompt import build_system_prompt
from ra_agent.pruner import HistoryExhaustedError, prune_messages
from ra_agent.registry import SUBMIT_TOOL, ToolArgumentError, ToolRegistry, build_registry
from ra_agent.tools import ToolContext, parse_patch_changes

CONTINUE_MESSAGE = (
    "Please proceed to the next step using your best judgement. If you believe you are "
    "finished, double check your work to continue to refine and improve your submission."
)
NOT_EXECUTED_MESSAGE = "Not executed: only one tool call per step is permitted."
_NOT_EXECUTED = ToolOutcome.failed("multiple_tool_calls", NOT_EXECUTED_MESSAGE, executed=False)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ContextRecoveryError(Exception):
    """Raised when pruning cannot bring the history back under the context window."""


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class AgentState(str, Enum):
    INIT = "init"
    AWAITING_MODEL = "awaiting_model"
    HANDLING_RESPONSE = "handling_response"
    EXECUTING_TOOL = "executing_tool"
    RECOVERING_CONTEXT = "recovering_context"
    TERMINATED = "terminated"


class Agent:
    """
    Drives one task to completion against a chat-completions provider.

    Example:
        config = RunConfig(model="openai/gpt-4.1-mini", submit_enabled=True)
        agent = Agent(config, ChatClient(config, api_key), EventEmitter(session_id))
        outcome = agent.run("Fix the failing test in tests/test_io.py")
    """

    def __init__(
        self,
        config: RunConfig,
        client: ChatClient,
        emitter: EventEmitter,
        registry: ToolRegistry | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._client = client
        self._events = emitter
        self._registry = registry or build_registry(config.submit_enabled, config.web_enabled)
        self._dispatcher = Dispatcher(
            self._registry,
            ToolContext(cwd=config.cwd, max_output_chars=config.max_tool_output_chars),
            config.max_tool_result_chars,
        )
        self._tools = self._registry.schemas()
        self._clock = clock
        self._usage = TokenUsage()
        self.state = AgentState.INIT
        self.session: Session | None = None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, task: str, system_prompt: str | None = None) -> RunOutcome:
        """
        Run the loop until submit, final text, a limit, or a fatal error.

        Returns a RunOutcome in all cases. Tool failures never end the run;
        provider errors and unrecoverable overflows end it with status ERROR.
        """
        agents_text = None
        if system_prompt is None:
            system_prompt, agents_text = build_system_prompt(self._config)
        session = Session.start(self._config, system_prompt, task, started_at=self._clock())
        self.session = session
        self._events.emit(
            RunStarted,
            model=self._config.model,
            cwd=str(self._config.cwd),
            submit_enabled=self._config.submit_enabled,
            web_enabled=self._config.web_enabled,
            max_steps=self._config.max_steps,
            time_limit_sec=self._config.time_limit_sec,
            tools=self._registry.names,
            task_chars=len(task),
            system_prompt_chars=len(system_prompt),
            has_agents_instructions=agents_text is not None,
        )

        while True:
            notice = self._limit_notice(session)
            if notice:
                return self._finish(RunOutcome(status=RunStatus.LIMIT_EXCEEDED, notice=notice))

            session.steps += 1
            self._events.emit(StepStarted, step=session.steps, message_count=len(session.messages))

            try:
                message = self._request(session)
            except (ProviderError, ContextRecoveryError) as exc:
                return self._fail(str(exc))

            outcome = self._handle_response(session, message)
            self._events.emit(StepCompleted, step=session.steps, message_count=len(session.messages))
            if outcome is not None:
                return self._finish(outcome)

    # ------------------------------------------------------------------
    # Limits
    # ------------------------------------------------------------------

    def _limit_notice(self, session: Session) -> str | None:
        """Polled at the step boundary only; in-flight work is never interrupted."""
        max_steps = self._config.max_steps
        if max_steps is not None and session.steps >= max_steps:
            return f"Terminated: max_steps ({max_steps}) reached."
        limit = self._config.time_limit_sec
        if limit is not None and self._clock() - session.started_at >= limit:
            return "Terminated: time_limit reached."
        return None

    # ------------------------------------------------------------------
    # Model request and context recovery
    # ------------------------------------------------------------------

    def _request(self, session: Session) -> Message:
        """Send the history; on overflow prune and retry, a bounded number of times."""
        attempts = 0
        while True:
            self.state = AgentState.AWAITING_MODEL
            try:
                completion = self._client.complete(session.wire_messages(), self._tools)
            except ContextWindowExceededError as exc:
                self.state = AgentState.RECOVERING_CONTEXT
                if attempts >= self._config.max_prune_attempts:
                    raise ContextRecoveryError(
                        f"Context window still exceeded after {attempts} prune attempts."
                    ) from exc
                try:
                    pruned = prune_messages(session.messages)
                except HistoryExhaustedError as err:
                    raise ContextRecoveryError(
                        f"Context window exceeded and the history cannot be pruned further: {err}"
                    ) from exc
                attempts += 1
                self._events.emit(
                    ContextPruned,
                    step=session.steps,
                    attempt=attempts,
                    messages_before=len(session.messages),
                    messages_after=len(pruned),
                )
                session.messages = pruned
                continue

            self._usage.add(completion.usage)
            message = completion.message
            session.append(message)
            calls = message.tool_calls or []
            self._events.emit(
                AssistantMessageProduced,
                step=session.steps,
                content_chars=len(message.text),
                content_preview=preview(message.text),
                tool_call_ids=[call.id for call in calls],
                tool_names=[call.name for call in calls],
            )
            return message

    # ------------------------------------------------------------------
    # Response handling
    # ------------------------------------------------------------------

    def _handle_response(self, session: Session, message: Message) -> RunOutcome | None:
        self.state = AgentState.HANDLING_RESPONSE
        calls = message.tool_calls or []

        if not calls:
            if self._config.submit_enabled:
                session.append(Message.user(CONTINUE_MESSAGE))
                return None
            return RunOutcome(status=RunStatus.FINAL_TEXT, answer=message.text)

        first, *others = calls
        if first.name == SUBMIT_TOOL and self._config.submit_enabled:
            try:
                args = self._registry.validate(SUBMIT_TOOL, first.function.arguments)
            except ToolArgumentError:
                # A malformed submit is answered like any other bad call.
                self._execute_tool(session, first)
                self._reject_extra_calls(session, others)
                return None
            return RunOutcome(status=RunStatus.SUBMITTED, answer=args.answer)

        self._execute_tool(session, first)
        self._reject_extra_calls(session, others)
        return None

    def _execute_tool(self, session: Session, call: ToolCall) -> None:
        self.state = AgentState.EXECUTING_TOOL
        outcome = self._dispatcher.execute(call)
        session.append(Message.tool(call.id, outcome.content))

        if not outcome.executed:
            self._events.emit(
                ToolCallRejected,
                step=session.steps,
                tool_call_id=call.id,
                name=call.name,
                reason=outcome.failure or "rejected",
                detail=preview(outcome.content),
            )
            return

        changes = []
        if call.name == "apply_patch":
            args = self._registry.validate(call.name, call.function.arguments)
            changes = parse_patch_changes(args.patch)
        self._events.emit(
            ToolCallExecuted,
            step=session.steps,
            tool_call_id=call.id,
            name=call.name,
            success=outcome.ok,
            failure=outcome.failure,
            output_chars=len(outcome.content),
            output_preview=preview(outcome.content),
            truncated=outcome.truncated,
            exit_code=outcome.exit_code,
            changes=changes,
        )

    def _reject_extra_calls(self, session: Session, calls: list[ToolCall]) -> None:
        for call in calls:
            session.append(Message.tool(call.id, _NOT_EXECUTED.content))
            self._events.emit(
                ToolCallRejected,
                step=session.steps,
                tool_call_id=call.id,
                name=call.name,
                reason="multiple_tool_calls",
                detail=NOT_EXECUTED_MESSAGE,
            )

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def _elapsed_ms(self) -> int:
        return int((self._clock() - self.session.started_at) * 1000)

    def _finish(self, outcome: RunOutcome) -> RunOutcome:
        self.state = AgentState.TERMINATED
        outcome = outcome.model_copy(
            update={"steps": self.session.steps, "usage": self._usage.model_copy()}
        )
        self._events.emit(
            RunCompleted,
            status=outcome.status,
            steps=outcome.steps,
            answer_chars=len(outcome.text),
            answer_preview=preview(outcome.text),
            elapsed_ms=self._elapsed_ms(),
            usage=self._usage,
        )
        return outcome

    def _fail(self, error: str) -> RunOutcome:
        self.state = AgentState.TERMINATED
        self._events.emit(
            RunFailed,
            steps=self.session.steps,
            error=preview(error, ERROR_PREVIEW_CHARS),
            elapsed_ms=self._elapsed_ms(),
        )
        return RunOutcome(
            status=RunStatus.ERROR,
            error=error,
            steps=self.session.steps,
            usage=self._usage.model_copy(),
        )

