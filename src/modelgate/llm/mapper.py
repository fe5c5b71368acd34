"""Fold decoded stream events into caller-facing completion deltas."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Iterable

from modelgate.config import StreamPolicy
from modelgate.errors import MalformedStreamError, to_exception
from modelgate.types import (
    CompletionDelta,
    CompletionEnd,
    CompletionResponse,
    Delta,
    Done,
    MalformedChunk,
    StreamConnectionError,
    StreamEvent,
    StreamFault,
    StreamWarning,
    TextDelta,
    ToolCall,
    ToolCallAssembled,
    ToolCallFragment,
    Usage,
)

from .error_classifier import ErrorClassifier
from .sse import response_to_events

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# ToolCallAccumulator
# ---------------------------------------------------------------------------

class ToolCallAccumulator:
    """Accumulate tool-call fragments until their call is finished.

    OpenAI-style providers send tool calls as incremental chunks: each chunk
    has an ``index``, an ``id`` and ``function.name`` (first chunk only), and
    ``function.arguments`` fragments that must be concatenated.  Calls are
    keyed by ``(choice_index, index)`` so two choices never share a call.
    """

    def __init__(self) -> None:
        self._calls: dict[tuple[int, int], dict[str, Any]] = {}

    def feed(self, fragment: ToolCallFragment, choice_index: int = 0) -> None:
        entry = self._calls.setdefault(
            (choice_index, fragment.index),
            {"id": None, "name": "", "arguments": ""},
        )
        if fragment.id:
            entry["id"] = fragment.id
        if fragment.name:
            entry["name"] = fragment.name
        if fragment.arguments:
            entry["arguments"] += fragment.arguments

    def has_calls(self, choice_index: int | None = None) -> bool:
        if choice_index is None:
            return bool(self._calls)
        return any(key[0] == choice_index for key in self._calls)

    def finalize(self, choice_index: int | None = None) -> list[ToolCall]:
        """Assemble pending calls in (choice, index) order and drop them.

        With *choice_index* only that choice's calls are assembled.
        """
        result: list[ToolCall] = []
        for key in sorted(self._calls):
            if choice_index is not None and key[0] != choice_index:
                continue
            entry = self._calls.pop(key)
            idx = key[1]
            raw_args = entry["arguments"]
            try:
                args = json.loads(raw_args) if raw_args else {}
            except json.JSONDecodeError:
                _logger.warning(
                    "Tool call %s (index %d) has unparseable arguments",
                    entry["name"], idx,
                )
                args = {}
            if not isinstance(args, dict):
                args = {}
            result.append(
                ToolCall(
                    name=entry["name"],
                    arguments=args,
                    id=entry["id"],
                    index=idx,
                    raw_arguments=raw_args,
                    choice_index=key[0],
                )
            )
        return result


# ---------------------------------------------------------------------------
# EventMapper
# ---------------------------------------------------------------------------

class EventMapper:
    """Maps one stream's events to ``CompletionDelta`` values.

    Create one mapper per stream.  Diagnostics (``malformed_count``,
    ``last_malformed_reason``, ``valid_count``, ``delivered_count``) are
    readable during and after iteration.
    """

    def __init__(
        self,
        policy: StreamPolicy | None = None,
        classifier: ErrorClassifier | None = None,
    ) -> None:
        self._policy = policy or StreamPolicy()
        self._classifier = classifier or ErrorClassifier()
        self._tool_calls = ToolCallAccumulator()
        self._usage: dict[str, int] = {}
        self._finish_reason = "stop"
        self._warned = False
        self.malformed_count = 0
        self.last_malformed_reason = ""
        self.valid_count = 0
        self.delivered_count = 0

    @property
    def malformed_ratio(self) -> float:
        total = self.malformed_count + self.valid_count
        return self.malformed_count / total if total else 0.0

    async def map(
        self, events: AsyncIterable[StreamEvent],
    ) -> AsyncIterator[CompletionDelta]:
        """Yield deltas as events arrive.

        Raises ``StreamInterruptedError`` on a connection failure,
        ``ApiError`` on an in-stream error record and
        ``MalformedStreamError`` when the abort ratio is configured and
        exceeded.
        """
        async for event in events:
            done = False
            for delta in self.feed(event):
                yield delta
                if isinstance(delta, CompletionEnd):
                    done = True
            if done:
                return

    def feed(self, event: StreamEvent) -> list[CompletionDelta]:
        """Process one event; synchronous core of :meth:`map`."""
        out: list[CompletionDelta] = []

        if isinstance(event, Delta):
            self.valid_count += 1
            if event.text:
                out.append(TextDelta(event.text))
            if event.tool_call is not None:
                self._tool_calls.feed(event.tool_call, event.choice_index)
            if event.finish_reason:
                self._finish_reason = event.finish_reason
                out.extend(self._flush_tool_calls(event.choice_index))
        elif isinstance(event, Usage):
            self._usage = dict(event.usage)
        elif isinstance(event, MalformedChunk):
            out.extend(self._on_malformed(event))
        elif isinstance(event, StreamFault):
            raise to_exception(self._classifier.classify_stream_fault(event))
        elif isinstance(event, StreamConnectionError):
            raise to_exception(
                self._classifier.classify_interruption(
                    event.cause, self.delivered_count,
                )
            )
        elif isinstance(event, Done):
            out.extend(self._flush_tool_calls())
            out.append(CompletionEnd(self._finish_reason, dict(self._usage)))

        self.delivered_count += sum(
            1 for d in out if isinstance(d, (TextDelta, ToolCallAssembled))
        )
        return out

    def fold(self, events: Iterable[StreamEvent]) -> CompletionResponse:
        """Collect a finite event sequence into one response."""
        response = CompletionResponse()
        text: list[str] = []
        for event in events:
            for delta in self.feed(event):
                if isinstance(delta, TextDelta):
                    text.append(delta.text)
                elif isinstance(delta, ToolCallAssembled):
                    response.tool_calls.append(delta.tool_call)
                elif isinstance(delta, StreamWarning):
                    response.warnings.append(delta)
                elif isinstance(delta, CompletionEnd):
                    response.finish_reason = delta.finish_reason
                    response.usage = delta.usage
        response.content = "".join(text)
        return response

    def fold_response(self, body: dict[str, Any]) -> CompletionResponse:
        """Normalize a complete (non-streaming) JSON body."""
        response = self.fold(response_to_events(body))
        response.model = body.get("model", "")
        return response

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _flush_tool_calls(
        self, choice_index: int | None = None,
    ) -> list[CompletionDelta]:
        if not self._tool_calls.has_calls(choice_index):
            return []
        return [ToolCallAssembled(tc) for tc in self._tool_calls.finalize(choice_index)]

    def _on_malformed(self, event: MalformedChunk) -> list[CompletionDelta]:
        self.malformed_count += 1
        self.last_malformed_reason = event.reason
        _logger.debug(
            "Malformed frame %d (%s)", self.malformed_count, event.reason,
        )

        total = self.malformed_count + self.valid_count
        if total < self._policy.malformed_min_frames:
            return []

        ratio = self.malformed_ratio
        abort = self._policy.malformed_abort_ratio
        if abort is not None and ratio >= abort:
            raise MalformedStreamError.from_message(
                f"{self.malformed_count} of {total} frames malformed "
                f"(ratio {ratio:.2f} >= {abort:.2f}); last: {event.reason}",
                events_delivered=self.delivered_count,
            )
        if not self._warned and ratio >= self._policy.malformed_warning_ratio:
            self._warned = True
            _logger.warning(
                "Malformed frames dominate stream: %d of %d (last: %s)",
                self.malformed_count, total, event.reason,
            )
            return [
                StreamWarning(
                    malformed=self.malformed_count,
                    valid=self.valid_count,
                    last_reason=event.reason,
                )
            ]
        return []
