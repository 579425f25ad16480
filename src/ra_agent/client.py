# client.py
# Model-provider adapter over the OpenAI SDK (OpenRouter-compatible endpoint).
#
# Owns request shape and error classification only. Context-window overflow
# is surfaced as its own exception type so the loop can recover from it;
# every other failure is a ProviderError and ends the run.

import re
from typing import Any

import openai
from openai import OpenAI
from pydantic import BaseModel, ValidationError

from ra_agent.models import Message, RunConfig, TokenUsage

_CONTEXT_OVERFLOW_RE = re.compile(
    r"context[ _-]?(length|window)|maximum context|prompt is too long|too many tokens"
    r"|reduce the length of the messages",
    re.IGNORECASE,
)

_STATUS_HINTS = {
    401: "Hint: check your API key (set OPENROUTER_API_KEY or use --api-key) and that it has access to the model.",
    403: "Hint: check your API key (set OPENROUTER_API_KEY or use --api-key) and that it has access to the model.",
    404: "Hint: check --base-url and the model name (--model).",
    408: "Hint: the request timed out; try again or use a faster model.",
    429: "Hint: you may be rate limited; retry later or lower concurrency.",
    500: "Hint: upstream/server error; retry later.",
    502: "Hint: upstream/server error; retry later.",
    503: "Hint: upstream/server error; retry later.",
    504: "Hint: the request timed out; try again or use a faster model.",
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ProviderError(Exception):
    """Request-level failure talking to the model provider. Fatal to the run."""


class ContextWindowExceededError(ProviderError):
    """The provider rejected the request because the history is too large."""


def is_context_overflow(message: str) -> bool:
    return bool(_CONTEXT_OVERFLOW_RE.search(message))


def _describe_status_error(exc: openai.APIStatusError) -> str:
    lines = [f"Provider API error (HTTP {exc.status_code})"]
    request_id = exc.response.headers.get("x-request-id") or exc.response.headers.get(
        "x-openrouter-request-id"
    )
    if request_id:
        lines[0] += f" (request_id: {request_id})"
    if exc.message:
        lines.append(f"Message: {exc.message.strip()}")
    hint = _STATUS_HINTS.get(exc.status_code)
    if hint:
        lines.append(hint)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class Completion(BaseModel):
    message: Message
    usage: TokenUsage | None = None


def _usage_from(usage: Any) -> TokenUsage | None:
    if usage is None:
        return None
    prompt = usage.prompt_tokens or 0
    completion = usage.completion_tokens or 0
    prompt_details = getattr(usage, "prompt_tokens_details", None)
    completion_details = getattr(usage, "completion_tokens_details", None)
    return TokenUsage(
        input_tokens=prompt,
        cached_input_tokens=getattr(prompt_details, "cached_tokens", None) or 0,
        output_tokens=completion,
        reasoning_output_tokens=getattr(completion_details, "reasoning_tokens", None) or 0,
        total_tokens=usage.total_tokens or prompt + completion,
    )


def _message_from(raw: Any) -> Message:
    tool_calls = [call.model_dump() for call in raw.tool_calls or []]
    return Message.model_validate(
        {
            "role": "assistant",
            "content": raw.content if raw.content is not None or tool_calls else "",
            "tool_calls": tool_calls or None,
        }
    )


class ChatClient:
    """
    Thin wrapper over `chat.completions.create`.

    Every request carries the full history, the tool schemas,
    tool_choice="auto" and parallel_tool_calls=False. Sampling parameters
    are sent only when configured.
    """

    def __init__(self, config: RunConfig, api_key: str) -> None:
        self._model = config.model
        self._sampling = config.sampling_params()
        self._client = OpenAI(
            base_url=config.base_url,
            api_key=api_key,
            timeout=config.request_timeout_sec,
            max_retries=config.max_retries,
        )

    def build_request(self, messages: list[dict], tools: list[dict]) -> dict[str, Any]:
        request = {
            "model": self._model,
            "messages": messages,
            "tools": tools,
            "tool_choice": "auto",
            "parallel_tool_calls": False,
        }
        request.update(self._sampling)
        return request

    def complete(self, messages: list[dict], tools: list[dict]) -> Completion:
        request = self.build_request(messages, tools)
        try:
            response = self._client.chat.completions.create(**request)
        except openai.APIStatusError as exc:
            if is_context_overflow(exc.message or "") or is_context_overflow(str(exc.body or "")):
                raise ContextWindowExceededError(_describe_status_error(exc)) from exc
            raise ProviderError(_describe_status_error(exc)) from exc
        except openai.APIError as exc:
            raise ProviderError(f"Provider request failed: {exc}") from exc

        if not response.choices:
            raise ProviderError("Provider returned no choices in response")
        try:
            message = _message_from(response.choices[0].message)
        except ValidationError as exc:
            raise ProviderError(f"Provider returned a malformed assistant message: {exc}") from exc
        return Completion(message=message, usage=_usage_from(response.usage))
