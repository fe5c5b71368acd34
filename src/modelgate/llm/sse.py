"""Incremental decoder for server-sent chat completion streams.

Each transport line is decoded on its own into zero or more ``StreamEvent``
values.  A line that fails to parse becomes a ``MalformedChunk`` and decoding
carries on with the next line; only ``[DONE]`` or a transport failure ends
the sequence.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterable, AsyncIterator

import httpx

from modelgate.types import (
    Delta,
    Done,
    MalformedChunk,
    StreamConnectionError,
    StreamEvent,
    StreamFault,
    ToolCallFragment,
    Usage,
)

_logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

# Raised while waiting for the next line.  httpx.TimeoutException is a
# TransportError subclass.
_TRANSPORT_ERRORS = (httpx.TransportError, OSError, TimeoutError)


class _ShapeError(ValueError):
    """Record parsed as JSON but does not look like a completion chunk."""


# ---------------------------------------------------------------------------
# Record -> events
# ---------------------------------------------------------------------------

def _fault_message(error: Any) -> str:
    if isinstance(error, dict):
        message = error.get("message") or json.dumps(error)
        code = error.get("code")
        return f"{message} (code: {code})" if code else str(message)
    return str(error)


def _index(value: Any, default: int, what: str) -> int:
    if value is None:
        return default
    # bool is an int subclass but never a valid index
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise _ShapeError(f"{what} index is not a non-negative integer")
    return value


def _optional_str(value: Any, what: str) -> str | None:
    if value is not None and not isinstance(value, str):
        raise _ShapeError(f"{what} is not a string")
    return value


def _tool_call_fragment(tc: Any, position: int) -> ToolCallFragment:
    if not isinstance(tc, dict):
        raise _ShapeError("tool call is not an object")
    func = tc.get("function")
    if func is None:
        func = {}
    if not isinstance(func, dict):
        raise _ShapeError("tool call function is not an object")
    arguments = func.get("arguments")
    if arguments is None:
        arguments = ""
    elif isinstance(arguments, dict):
        # Complete responses from some deployments inline the object
        arguments = json.dumps(arguments)
    elif not isinstance(arguments, str):
        raise _ShapeError("tool call arguments are not a string")
    return ToolCallFragment(
        index=_index(tc.get("index"), position, "tool call"),
        id=_optional_str(tc.get("id"), "tool call id"),
        name=_optional_str(func.get("name"), "tool call name"),
        arguments=arguments,
    )


def _choice_events(choice: Any, payload_key: str) -> list[StreamEvent]:
    if not isinstance(choice, dict):
        raise _ShapeError("choice is not an object")
    index = _index(choice.get("index"), 0, "choice")
    delta = choice.get(payload_key) or {}
    if not isinstance(delta, dict):
        raise _ShapeError(f"choice.{payload_key} is not an object")

    events: list[Delta] = []
    text = _optional_str(delta.get("content"), "content")
    if text:
        events.append(Delta(text=text, choice_index=index))

    tool_calls = delta.get("tool_calls") or []
    if not isinstance(tool_calls, list):
        raise _ShapeError("tool_calls is not a list")
    for position, tc in enumerate(tool_calls):
        events.append(
            Delta(tool_call=_tool_call_fragment(tc, position), choice_index=index)
        )

    finish_reason = _optional_str(choice.get("finish_reason"), "finish_reason")
    if finish_reason:
        if events:
            last = events[-1]
            events[-1] = Delta(
                text=last.text,
                tool_call=last.tool_call,
                finish_reason=finish_reason,
                choice_index=index,
            )
        else:
            events.append(Delta(finish_reason=finish_reason, choice_index=index))
    return list(events)


def record_events(
    record: Any,
    raw: str = "",
    payload_key: str = "delta",
) -> list[StreamEvent]:
    """Convert one parsed completion record into events.

    *payload_key* is ``"delta"`` for stream chunks and ``"message"`` for a
    complete (non-streaming) response body.
    """
    if not isinstance(record, dict):
        raise _ShapeError("record is not a JSON object")
    if record.get("error"):
        return [StreamFault(message=_fault_message(record["error"]), raw=raw)]

    choices = record.get("choices") or []
    if not isinstance(choices, list):
        raise _ShapeError("choices is not a list")

    events: list[StreamEvent] = []
    for choice in choices:
        events.extend(_choice_events(choice, payload_key))

    usage = record.get("usage")
    if isinstance(usage, dict) and usage:
        events.append(Usage(usage=usage))
    return events


def response_to_events(body: dict[str, Any]) -> list[StreamEvent]:
    """Adapt a complete JSON response into the event sequence a stream
    carrying the same content would have produced.

    Raises ``ValueError`` when the body does not have the completion shape.
    """
    return [*record_events(body, payload_key="message"), Done()]


# ---------------------------------------------------------------------------
# Line decoding
# ---------------------------------------------------------------------------

def decode_line(line: str | bytes) -> list[StreamEvent]:
    """Decode a single transport line.

    Returns an empty list for blank lines and non-data SSE fields
    (``event:``, ``id:``, ``:`` comments).
    """
    if isinstance(line, bytes):
        try:
            line = line.decode("utf-8")
        except UnicodeDecodeError as e:
            return [MalformedChunk(raw=repr(line), reason=f"invalid UTF-8: {e}")]

    line = line.strip()
    if not line:
        return []
    if not line.startswith(DATA_PREFIX):
        _logger.debug("Skipping non-data line: %.80s", line)
        return []

    payload = line[len(DATA_PREFIX):].strip()
    if payload == DONE_SENTINEL:
        return [Done()]

    try:
        record = json.loads(payload)
        return record_events(record, raw=payload)
    except json.JSONDecodeError as e:
        reason = f"invalid JSON: {e.msg} at column {e.colno}"
    except _ShapeError as e:
        reason = f"unexpected record shape: {e}"
    _logger.warning("Malformed stream chunk (%s): %.200s", reason, payload)
    return [MalformedChunk(raw=payload, reason=reason)]


async def decode_stream(
    lines: AsyncIterable[str | bytes],
) -> AsyncIterator[StreamEvent]:
    """Lazily decode *lines* into stream events.

    Stops after ``Done``.  A transport error, or the source ending before
    ``Done``, yields one ``StreamConnectionError`` and stops.
    """
    iterator = lines.__aiter__()
    try:
        while True:
            try:
                line = await iterator.__anext__()
            except StopAsyncIteration:
                _logger.warning("Stream closed before [DONE]")
                yield StreamConnectionError(cause="stream closed before [DONE]")
                return
            except _TRANSPORT_ERRORS as e:
                _logger.warning("Stream read failed: %s", e)
                yield StreamConnectionError(cause=e)
                return

            for event in decode_line(line):
                yield event
                if isinstance(event, Done):
                    return
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
