"""Provider adapter core: capabilities, conversion, decoding, mapping."""

from modelgate.llm.capabilities import CapabilityRegistry, is_reasoning_model_id
from modelgate.llm.client import AsyncProviderClient
from modelgate.llm.converter import convert
from modelgate.llm.error_classifier import ErrorClassifier
from modelgate.llm.mapper import EventMapper, ToolCallAccumulator
from modelgate.llm.providers import POLICIES, ProviderPolicy, get_policy
from modelgate.llm.sse import decode_line, decode_stream, response_to_events

__all__ = [
    "AsyncProviderClient",
    "CapabilityRegistry",
    "ErrorClassifier",
    "EventMapper",
    "POLICIES",
    "ProviderPolicy",
    "ToolCallAccumulator",
    "convert",
    "decode_line",
    "decode_stream",
    "get_policy",
    "is_reasoning_model_id",
    "response_to_events",
]
