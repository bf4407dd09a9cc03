"""Model transport: one chat-completion request per loop turn via litellm.

Usage:
    model = LiteLLMModel(AgentConfig(model="gpt-4o"))
    response = await model.complete(messages, tools)
    response.tool_calls  # tuple[ToolCallRequest, ...]
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import litellm

from agent_runtime.config import AgentConfig
from agent_runtime.errors import ModelCallError, ModelResponseError, is_transient, wrap_error
from agent_runtime.execution_kernel import RetryPolicy, run_async_with_retry
from agent_runtime.items import ConversationItem, ToolCallRequest

logger = logging.getLogger(__name__)

litellm.suppress_debug_info = True


@dataclass
class ModelResponse:
    """One assistant turn.

    Attributes:
        content: Assistant text, empty when the turn only carries tool calls
        tool_calls: Tool calls in the order the model issued them
        usage: Token counts (prompt_tokens, completion_tokens, total_tokens)
        finish_reason: "stop", "tool_calls", "length", ... or empty
        raw_response: The litellm response object. Excluded from repr.
    """

    content: str
    tool_calls: tuple[ToolCallRequest, ...] = ()
    usage: dict[str, Any] = field(default_factory=dict)
    finish_reason: str = ""
    raw_response: Any = field(default=None, repr=False)

    def to_item(self) -> ConversationItem:
        return ConversationItem(
            role="assistant",
            content=self.content or None,
            tool_calls=self.tool_calls,
        )


class ModelClient(Protocol):
    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> ModelResponse: ...


def _extract_usage(response: Any) -> dict[str, Any]:
    usage = getattr(response, "usage", None)
    if usage is None:
        return {}
    return {
        "prompt_tokens": getattr(usage, "prompt_tokens", 0),
        "completion_tokens": getattr(usage, "completion_tokens", 0),
        "total_tokens": getattr(usage, "total_tokens", 0),
    }


def _extract_tool_calls(message: Any) -> tuple[ToolCallRequest, ...]:
    """Tool calls from a response message, with arguments kept as raw JSON text."""
    if not getattr(message, "tool_calls", None):
        return ()
    calls: list[ToolCallRequest] = []
    for tc in message.tool_calls:
        arguments = tc.function.arguments
        if arguments is None:
            arguments = "{}"
        elif not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        calls.append(ToolCallRequest(id=tc.id, name=tc.function.name or "", arguments=arguments))
    return tuple(calls)


def parse_response(response: Any) -> ModelResponse:
    try:
        choice = response.choices[0]
        message = choice.message
    except (AttributeError, IndexError, TypeError) as exc:
        raise ModelResponseError(f"Model returned no choices: {exc}", original=exc) from exc
    return ModelResponse(
        content=message.content or "",
        tool_calls=_extract_tool_calls(message),
        usage=_extract_usage(response),
        finish_reason=getattr(choice, "finish_reason", "") or "",
        raw_response=response,
    )


class LiteLLMModel:
    """``ModelClient`` backed by ``litellm.acompletion``."""

    def __init__(self, config: AgentConfig, *, retry: RetryPolicy | None = None) -> None:
        self.config = config
        self.retry = retry or RetryPolicy(max_retries=config.num_retries)
        self.warnings: list[str] = []

    def _call_kwargs(self, messages: list[dict[str, Any]], tools: list[dict[str, Any]]) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "messages": messages,
            "timeout": self.config.model_timeout,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if self.config.api_base:
            kwargs["api_base"] = self.config.api_base
        return kwargs

    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> ModelResponse:
        kwargs = self._call_kwargs(messages, tools)

        async def _invoke(attempt: int) -> ModelResponse:
            logger.debug("Model request %s attempt=%d messages=%d tools=%d",
                         self.config.model, attempt, len(messages), len(tools))
            response = await litellm.acompletion(**kwargs)
            return parse_response(response)

        try:
            return await run_async_with_retry(
                caller="LiteLLMModel.complete",
                model=self.config.model,
                policy=self.retry,
                invoke=_invoke,
                should_retry=is_transient,
                logger=logger,
                warning_sink=self.warnings,
            )
        except ModelCallError:
            raise
        except Exception as exc:
            raise wrap_error(exc) from exc
