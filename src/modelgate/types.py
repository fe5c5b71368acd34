"""Shared data types for modelgate."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Union


# ---------------------------------------------------------------------------
# Capability types
# ---------------------------------------------------------------------------

class TokenParameterKind(enum.Enum):
    """Name of the request field that carries the output token budget."""

    MAX_TOKENS = "max_tokens"
    MAX_COMPLETION_TOKENS = "max_completion_tokens"

    @property
    def field_name(self) -> str:
        return self.value


@dataclass(frozen=True)
class ModelCapabilities:
    """What a model accepts.  Derived once per lookup, never mutated."""

    supports_tools: bool = True
    supports_parallel_tool_calls: bool = True
    is_reasoning_model: bool = False
    token_parameter: TokenParameterKind = TokenParameterKind.MAX_TOKENS
    supports_streaming: bool = True
    reasoning_effort: str | None = None
    max_token_count: int | None = None  # context window, None when unknown

    def __post_init__(self) -> None:
        if self.is_reasoning_model and self.supports_parallel_tool_calls:
            raise ValueError(
                "reasoning models cannot support parallel tool calls"
            )


# ---------------------------------------------------------------------------
# Request types
# ---------------------------------------------------------------------------

class ExecutionMode(enum.Enum):
    """How a converted request must be executed."""

    STREAMING = "streaming"
    COMPLETE = "complete"


@dataclass
class CompletionRequest:
    """Provider-agnostic chat completion request."""

    model: str
    messages: list[dict[str, Any]]
    max_tokens: int = 4096
    tools: list[dict[str, Any]] | None = None
    parallel_tool_calls: bool | None = None
    tool_choice: str | None = None
    temperature: float | None = None
    stop: list[str] = field(default_factory=list)
    stream: bool = True


@dataclass(frozen=True)
class ProviderRequest:
    """Provider-shaped request body plus the mode it must run in."""

    model: str
    body: Mapping[str, Any]
    mode: ExecutionMode

    @property
    def payload(self) -> Mapping[str, Any]:
        """Read-only view of the JSON body."""
        return MappingProxyType(self.body)

    @property
    def is_streaming(self) -> bool:
        return self.mode is ExecutionMode.STREAMING

    def to_json(self) -> dict[str, Any]:
        """Return a fresh plain dict for the HTTP layer."""
        return dict(self.body)


# ---------------------------------------------------------------------------
# Stream events (decoder output)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ToolCallFragment:
    """One streamed slice of a tool call."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass(frozen=True)
class Delta:
    """Incremental content: either text or a tool-call fragment."""

    text: str | None = None
    tool_call: ToolCallFragment | None = None
    finish_reason: str | None = None
    choice_index: int = 0


@dataclass(frozen=True)
class Usage:
    usage: dict[str, int]


@dataclass(frozen=True)
class Done:
    """Terminal sentinel; nothing legitimately follows it."""


@dataclass(frozen=True)
class MalformedChunk:
    raw: str
    reason: str


@dataclass(frozen=True)
class StreamFault:
    """An ``{"error": ...}`` record sent inside the stream."""

    message: str
    raw: str


@dataclass(frozen=True)
class StreamConnectionError:
    """The transport failed before ``Done`` was seen."""

    cause: BaseException | str


StreamEvent = Union[
    Delta, Usage, Done, MalformedChunk, StreamFault, StreamConnectionError,
]


# ---------------------------------------------------------------------------
# Completion deltas (mapper output)
# ---------------------------------------------------------------------------

@dataclass
class ToolCall:
    """A fully assembled tool call."""

    name: str
    arguments: dict[str, Any]
    id: str | None = None
    index: int = 0
    raw_arguments: str = ""
    choice_index: int = 0


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallAssembled:
    tool_call: ToolCall


@dataclass(frozen=True)
class StreamWarning:
    """Malformed frames dominate the stream so far."""

    malformed: int
    valid: int
    last_reason: str

    @property
    def ratio(self) -> float:
        total = self.malformed + self.valid
        return self.malformed / total if total else 0.0


@dataclass(frozen=True)
class CompletionEnd:
    finish_reason: str = "stop"
    usage: dict[str, int] = field(default_factory=dict)


CompletionDelta = Union[TextDelta, ToolCallAssembled, StreamWarning, CompletionEnd]


# ---------------------------------------------------------------------------
# Complete response
# ---------------------------------------------------------------------------

@dataclass
class CompletionResponse:
    """Unified one-shot response."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    model: str = ""
    warnings: list[StreamWarning] = field(default_factory=list)
    latency_ms: float = 0

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0
