"""Capability-aware request conversion.

Turns a provider-agnostic ``CompletionRequest`` into the ``ProviderRequest``
body a provider accepts.  Only fields the model's capabilities allow are
constructed; unsupported inputs fail loudly instead of being dropped.
"""

from __future__ import annotations

import logging
from typing import Any

from modelgate.errors import UnsupportedParameterError
from modelgate.types import (
    CompletionRequest,
    ExecutionMode,
    ModelCapabilities,
    ProviderRequest,
)

_logger = logging.getLogger(__name__)


def _with_system_prompt(
    messages: list[dict[str, Any]],
    system_prompt: str | None,
) -> list[dict[str, Any]]:
    if not system_prompt:
        return list(messages)
    if any(m.get("role") == "system" for m in messages):
        return list(messages)
    return [{"role": "system", "content": system_prompt}, *messages]


def convert(
    request: CompletionRequest,
    capabilities: ModelCapabilities,
    *,
    include_model: bool = True,
    default_system_prompt: str | None = None,
) -> ProviderRequest:
    """Build the provider payload for *request*.

    Parameters
    ----------
    request:
        The generic request.
    capabilities:
        Result of ``CapabilityRegistry.lookup(request.model)``.
    include_model:
        Whether the body carries ``model`` (Azure routes by deployment URL
        instead).
    default_system_prompt:
        Prepended as a system message when the request has none.

    Raises
    ------
    UnsupportedParameterError
        If tools (or a tool choice) are supplied for a model that cannot
        call tools.
    """
    if request.max_tokens is not None and request.max_tokens <= 0:
        raise UnsupportedParameterError.from_message(
            f"max_tokens must be positive, got {request.max_tokens}",
        )

    if request.tools and not capabilities.supports_tools:
        raise UnsupportedParameterError.from_message(
            f"Model {request.model!r} does not support tool calls "
            f"({len(request.tools)} tool(s) supplied)",
        )
    if request.tool_choice and not capabilities.supports_tools:
        raise UnsupportedParameterError.from_message(
            f"Model {request.model!r} does not support tool_choice",
        )

    if capabilities.is_reasoning_model or not capabilities.supports_streaming:
        mode = ExecutionMode.COMPLETE
    elif request.stream:
        mode = ExecutionMode.STREAMING
    else:
        mode = ExecutionMode.COMPLETE

    body: dict[str, Any] = {}
    if include_model:
        body["model"] = request.model
    body["messages"] = _with_system_prompt(request.messages, default_system_prompt)
    body["stream"] = mode is ExecutionMode.STREAMING
    if request.max_tokens is not None:
        body[capabilities.token_parameter.field_name] = request.max_tokens
    if request.stop:
        body["stop"] = list(request.stop)

    if capabilities.is_reasoning_model:
        if capabilities.reasoning_effort:
            body["reasoning_effort"] = capabilities.reasoning_effort
    elif request.temperature is not None:
        body["temperature"] = request.temperature

    if request.tools:
        body["tools"] = list(request.tools)
        if request.tool_choice:
            body["tool_choice"] = request.tool_choice
        if capabilities.supports_parallel_tool_calls and request.parallel_tool_calls:
            body["parallel_tool_calls"] = True

    if request.parallel_tool_calls and "parallel_tool_calls" not in body:
        _logger.debug(
            "Omitting parallel_tool_calls for %s (unsupported or no tools)",
            request.model,
        )

    return ProviderRequest(model=request.model, body=body, mode=mode)
