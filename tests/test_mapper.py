"""Tests for the event mapper and tool-call assembly."""

from __future__ import annotations

from typing import AsyncIterator, Iterable

import pytest

from modelgate.config import StreamPolicy
from modelgate.errors import (
    ApiError,
    ErrorKind,
    MalformedStreamError,
    StreamInterruptedError,
)
from modelgate.llm.mapper import EventMapper, ToolCallAccumulator
from modelgate.llm.sse import decode_line
from modelgate.types import (
    CompletionEnd,
    Delta,
    Done,
    MalformedChunk,
    StreamConnectionError,
    StreamEvent,
    StreamFault,
    StreamWarning,
    TextDelta,
    ToolCallAssembled,
    ToolCallFragment,
    Usage,
)


async def _events(items: Iterable[StreamEvent]) -> AsyncIterator[StreamEvent]:
    for item in items:
        yield item


async def _map(mapper: EventMapper, items: Iterable[StreamEvent]) -> list:
    return [delta async for delta in mapper.map(_events(items))]


def _frag(index: int, arguments: str = "", name: str | None = None, id: str | None = None) -> Delta:
    return Delta(tool_call=ToolCallFragment(index=index, id=id, name=name, arguments=arguments))


# ---------------------------------------------------------------------------
# ToolCallAccumulator
# ---------------------------------------------------------------------------

class TestToolCallAccumulator:
    def test_empty_accumulator(self):
        acc = ToolCallAccumulator()
        assert not acc.has_calls()
        assert acc.finalize() == []

    def test_single_call_multiple_chunks(self):
        """Tool call arguments split across multiple chunks."""
        acc = ToolCallAccumulator()
        acc.feed(ToolCallFragment(index=0, id="call_1", name="shell", arguments='{"comma'))
        acc.feed(ToolCallFragment(index=0, arguments='nd": "ls"}'))

        [call] = acc.finalize()
        assert call.name == "shell"
        assert call.id == "call_1"
        assert call.arguments == {"command": "ls"}
        assert call.raw_arguments == '{"command": "ls"}'

    def test_multiple_parallel_calls_sorted_by_index(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallFragment(index=1, name="write_file", arguments='{"path": "b"}'))
        acc.feed(ToolCallFragment(index=0, name="read_file", arguments='{"path": "a"}'))

        calls = acc.finalize()
        assert [c.name for c in calls] == ["read_file", "write_file"]
        assert [c.index for c in calls] == [0, 1]

    def test_invalid_json_arguments_kept_raw(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallFragment(index=0, name="shell", arguments='{"command": '))
        [call] = acc.finalize()
        assert call.arguments == {}
        assert call.raw_arguments == '{"command": '

    def test_finalize_resets(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallFragment(index=0, name="x", arguments="{}"))
        acc.finalize()
        assert not acc.has_calls()

    def test_choices_do_not_share_calls(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallFragment(index=0, name="a", arguments='{"x": '), choice_index=0)
        acc.feed(ToolCallFragment(index=0, name="b", arguments='{"y": '), choice_index=1)
        acc.feed(ToolCallFragment(index=0, arguments="1}"), choice_index=0)
        acc.feed(ToolCallFragment(index=0, arguments="2}"), choice_index=1)

        calls = acc.finalize()
        assert [(c.choice_index, c.name, c.arguments) for c in calls] == [
            (0, "a", {"x": 1}),
            (1, "b", {"y": 2}),
        ]

    def test_finalize_single_choice(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallFragment(index=0, name="a"), choice_index=0)
        acc.feed(ToolCallFragment(index=0, name="b"), choice_index=1)

        [call] = acc.finalize(choice_index=1)
        assert call.name == "b"
        assert acc.has_calls(0)
        assert not acc.has_calls(1)


# ---------------------------------------------------------------------------
# EventMapper.map
# ---------------------------------------------------------------------------

class TestEventMapper:
    async def test_text_is_forwarded_incrementally(self):
        mapper = EventMapper()
        deltas = await _map(mapper, [Delta(text="Hel"), Delta(text="lo"), Done()])
        assert deltas == [TextDelta("Hel"), TextDelta("lo"), CompletionEnd("stop", {})]

    async def test_three_fragments_assemble_into_one_call(self):
        mapper = EventMapper()
        deltas = await _map(mapper, [
            _frag(0, '{"pa', name="read_file", id="call_9"),
            _frag(0, 'th": "src/'),
            _frag(0, 'main.py"}'),
            Delta(finish_reason="tool_calls"),
            Done(),
        ])

        assembled = [d for d in deltas if isinstance(d, ToolCallAssembled)]
        assert len(assembled) == 1
        call = assembled[0].tool_call
        assert call.raw_arguments == '{"pa' + 'th": "src/' + 'main.py"}'
        assert call.arguments == {"path": "src/main.py"}
        assert call.name == "read_file"
        assert call.id == "call_9"
        assert deltas[-1] == CompletionEnd("tool_calls", {})

    async def test_fragments_not_emitted_before_termination(self):
        mapper = EventMapper()
        out = mapper.feed(_frag(0, '{"a": 1}', name="f"))
        assert out == []
        out = mapper.feed(Delta(finish_reason="tool_calls"))
        assert len(out) == 1 and isinstance(out[0], ToolCallAssembled)

    async def test_pending_calls_flushed_at_done(self):
        mapper = EventMapper()
        deltas = await _map(mapper, [_frag(0, "{}", name="f"), _frag(1, "{}", name="g"), Done()])
        names = [d.tool_call.name for d in deltas if isinstance(d, ToolCallAssembled)]
        assert names == ["f", "g"]

    async def test_usage_reported_at_end(self):
        mapper = EventMapper()
        deltas = await _map(mapper, [
            Delta(text="x", finish_reason="stop"),
            Usage(usage={"total_tokens": 4}),
            Done(),
        ])
        assert deltas[-1] == CompletionEnd("stop", {"total_tokens": 4})

    async def test_malformed_chunks_are_counted_not_delivered(self):
        mapper = EventMapper()
        deltas = await _map(mapper, [
            Delta(text="a"),
            MalformedChunk(raw="{", reason="invalid JSON"),
            Delta(text="b"),
            Delta(text="c"),
            Delta(text="d"),
            Done(),
        ])
        assert [d.text for d in deltas if isinstance(d, TextDelta)] == ["a", "b", "c", "d"]
        assert not any(isinstance(d, StreamWarning) for d in deltas)
        assert mapper.malformed_count == 1
        assert mapper.last_malformed_reason == "invalid JSON"
        assert mapper.valid_count == 4
        assert mapper.delivered_count == 4

    async def test_dominant_malformed_frames_warn_once(self):
        mapper = EventMapper(StreamPolicy(malformed_warning_ratio=0.5, malformed_min_frames=4))
        bad = [MalformedChunk(raw="x", reason=f"bad {i}") for i in range(5)]
        deltas = await _map(mapper, [Delta(text="a"), *bad, Delta(text="b"), Done()])

        warnings = [d for d in deltas if isinstance(d, StreamWarning)]
        assert len(warnings) == 1
        assert warnings[0].malformed == 3
        assert warnings[0].valid == 1
        assert warnings[0].ratio == pytest.approx(0.75)
        assert TextDelta("b") in deltas
        assert isinstance(deltas[-1], CompletionEnd)

    async def test_abort_ratio_raises(self):
        mapper = EventMapper(StreamPolicy(malformed_min_frames=2, malformed_abort_ratio=0.6))
        with pytest.raises(MalformedStreamError) as info:
            await _map(mapper, [
                Delta(text="a"),
                MalformedChunk(raw="x", reason="bad"),
                MalformedChunk(raw="y", reason="worse"),
                Delta(text="never"),
            ])
        assert info.value.record.kind is ErrorKind.MALFORMED_STREAM
        assert "worse" in info.value.record.message

    async def test_connection_error_raises_interrupted(self):
        mapper = EventMapper()
        received: list = []
        with pytest.raises(StreamInterruptedError) as info:
            async for delta in mapper.map(_events([
                Delta(text="a"),
                Delta(text="b"),
                StreamConnectionError(cause="socket closed"),
            ])):
                received.append(delta)

        assert received == [TextDelta("a"), TextDelta("b")]
        assert info.value.events_delivered == 2
        assert info.value.record.kind is ErrorKind.STREAM_INTERRUPTED

    async def test_stream_fault_raises_api_error(self):
        mapper = EventMapper()
        with pytest.raises(ApiError) as info:
            await _map(mapper, [StreamFault(message="rate limited", raw='{"error": "rate limited"}')])
        assert info.value.record.message == "rate limited"
        assert info.value.record.body == '{"error": "rate limited"}'

    async def test_finish_reason_flushes_only_its_choice(self):
        mapper = EventMapper()
        out = mapper.feed(Delta(
            tool_call=ToolCallFragment(index=0, name="a", arguments="{}"), choice_index=0,
        ))
        out += mapper.feed(Delta(
            tool_call=ToolCallFragment(index=0, name="b", arguments="{}"), choice_index=1,
        ))
        out += mapper.feed(Delta(finish_reason="tool_calls", choice_index=1))
        assert [d.tool_call.name for d in out] == ["b"]

        out = mapper.feed(Done())
        assert [d.tool_call.name for d in out if isinstance(d, ToolCallAssembled)] == ["a"]

    async def test_bad_tool_call_index_frame_is_skipped(self):
        lines = [
            'data: {"choices": [{"delta": {"tool_calls": [{"index": [1], "function": {"name": "f"}}]}}]}',
            'data: {"choices": [{"delta": {"content": "after"}, "finish_reason": "stop"}]}',
            "data: [DONE]",
        ]
        mapper = EventMapper()
        deltas: list = []
        for line in lines:
            for event in decode_line(line):
                deltas.extend(mapper.feed(event))

        assert mapper.malformed_count == 1
        assert TextDelta("after") in deltas
        assert not any(isinstance(d, ToolCallAssembled) for d in deltas)
        assert deltas[-1] == CompletionEnd("stop", {})

    async def test_iteration_stops_at_done(self):
        mapper = EventMapper()
        deltas = await _map(mapper, [Delta(text="a"), Done(), Delta(text="stray")])
        assert TextDelta("stray") not in deltas


# ---------------------------------------------------------------------------
# Complete responses
# ---------------------------------------------------------------------------

class TestFoldResponse:
    def test_text_response(self):
        body = {
            "model": "gpt-4o",
            "choices": [{
                "index": 0,
                "message": {"role": "assistant", "content": "Hello!"},
                "finish_reason": "stop",
            }],
            "usage": {"prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 3},
        }
        response = EventMapper().fold_response(body)
        assert response.content == "Hello!"
        assert response.finish_reason == "stop"
        assert response.usage["total_tokens"] == 3
        assert response.model == "gpt-4o"
        assert not response.has_tool_calls

    def test_null_content_with_tool_calls(self):
        body = {
            "choices": [{
                "message": {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {"id": "a", "function": {"name": "f", "arguments": '{"x": 1}'}},
                        {"id": "b", "function": {"name": "g", "arguments": "{}"}},
                    ],
                },
                "finish_reason": "tool_calls",
            }],
        }
        response = EventMapper().fold_response(body)
        assert response.content == ""
        assert [tc.name for tc in response.tool_calls] == ["f", "g"]
        assert response.tool_calls[0].arguments == {"x": 1}
        assert response.finish_reason == "tool_calls"
