"""Model capability registry.

Pure lookup from a model (or deployment) identifier to an immutable
``ModelCapabilities``.  The table is built once and only read afterwards, so
one registry can be shared across concurrent requests.
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from types import MappingProxyType
from typing import Iterable, Mapping

from modelgate.config import ModelOverride
from modelgate.errors import UnknownModelError
from modelgate.types import ModelCapabilities, TokenParameterKind

_logger = logging.getLogger(__name__)

# o1, o1-mini, o3-mini-2025-01-31, o4-mini ...
_REASONING_PATTERN = re.compile(r"^o[134](?:$|[-_.])")

_CHAT = ModelCapabilities()
_REASONING = ModelCapabilities(
    supports_tools=False,
    supports_parallel_tool_calls=False,
    is_reasoning_model=True,
    token_parameter=TokenParameterKind.MAX_COMPLETION_TOKENS,
    supports_streaming=False,
)


def _chat(window: int, parallel: bool = True) -> ModelCapabilities:
    return replace(
        _CHAT, supports_parallel_tool_calls=parallel, max_token_count=window,
    )


def _reasoning(window: int, effort: str | None = None) -> ModelCapabilities:
    return replace(_REASONING, max_token_count=window, reasoning_effort=effort)


_BUILTIN: dict[str, ModelCapabilities] = {
    "gpt-35-turbo": _chat(16_385, parallel=False),
    "gpt-3.5-turbo": _chat(16_385, parallel=False),
    "gpt-4": _chat(8_192),
    "gpt-4-32k": _chat(32_768),
    "gpt-4-turbo": _chat(128_000),
    "gpt-4o": _chat(128_000),
    "gpt-4o-mini": _chat(128_000),
    "gpt-4.1": _chat(1_047_576),
    "gpt-4.1-mini": _chat(1_047_576),
    "gpt-4.1-nano": _chat(1_047_576),
    "o1": _reasoning(200_000),
    "o1-mini": _reasoning(128_000),
    "o1-preview": _reasoning(128_000),
    "o3": _reasoning(200_000),
    "o3-mini": _reasoning(200_000, effort="high"),
    "o4-mini": _reasoning(200_000),
}


def is_reasoning_model_id(model_id: str) -> bool:
    """True when *model_id* belongs to the o-series reasoning family."""
    return bool(_REASONING_PATTERN.match(model_id.strip().lower()))


def _enforce_reasoning_policy(caps: ModelCapabilities) -> ModelCapabilities:
    # Hard policy: no override can re-enable tools or streaming here.
    return replace(
        caps,
        supports_tools=False,
        supports_parallel_tool_calls=False,
        is_reasoning_model=True,
        token_parameter=TokenParameterKind.MAX_COMPLETION_TOKENS,
        supports_streaming=False,
    )


class CapabilityRegistry:
    """Static capability table plus configured per-model overrides.

    Parameters
    ----------
    overrides:
        ``ModelOverride`` entries from configuration.  An override may name a
        deployment that is not a model id at all, pointing at the model it
        serves through ``base_model``.
    """

    def __init__(self, overrides: Iterable[ModelOverride] = ()) -> None:
        self._table: Mapping[str, ModelCapabilities] = MappingProxyType(
            dict(_BUILTIN)
        )
        self._overrides: Mapping[str, ModelOverride] = MappingProxyType(
            {o.name: o for o in overrides}
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def lookup(self, model_id: str) -> ModelCapabilities:
        """Return the capabilities for *model_id*.

        Raises ``UnknownModelError`` if the id is neither configured nor
        known.
        """
        override = self._overrides.get(model_id)
        if override is not None:
            caps = self._apply_override(override)
            reasoning = is_reasoning_model_id(model_id) or (
                override.base_model is not None
                and is_reasoning_model_id(override.base_model)
            )
        else:
            caps = self._builtin(model_id)
            reasoning = is_reasoning_model_id(model_id)

        if caps is None:
            raise UnknownModelError.from_message(
                f"Unknown model: {model_id!r}",
            )
        if reasoning or caps.is_reasoning_model:
            caps = _enforce_reasoning_policy(caps)
        _logger.debug("Capabilities for %s: %s", model_id, caps)
        return caps

    def known_models(self) -> list[str]:
        """All built-in and configured identifiers, sorted."""
        return sorted(set(self._table) | set(self._overrides))

    def __contains__(self, model_id: str) -> bool:
        try:
            self.lookup(model_id)
        except UnknownModelError:
            return False
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _builtin(self, model_id: str) -> ModelCapabilities | None:
        key = model_id.strip().lower()
        if key in self._table:
            return self._table[key]
        # Dated snapshots such as gpt-4o-2024-08-06 resolve to the longest
        # registered prefix.
        candidates = [k for k in self._table if key.startswith(k + "-")]
        if candidates:
            return self._table[max(candidates, key=len)]
        if is_reasoning_model_id(key):
            return _REASONING
        return None

    def _apply_override(self, override: ModelOverride) -> ModelCapabilities:
        # An override named after a known model refines that model's entry
        base = self._builtin(override.name) or _CHAT
        if override.base_model:
            found = self._builtin(override.base_model)
            if found is None:
                raise UnknownModelError.from_message(
                    f"Unknown base model {override.base_model!r} "
                    f"for {override.name!r}",
                )
            base = found

        changes: dict[str, object] = {}
        if override.supports_tools is not None:
            changes["supports_tools"] = override.supports_tools
        if override.supports_parallel_tool_calls is not None:
            changes["supports_parallel_tool_calls"] = (
                override.supports_parallel_tool_calls
            )
        if override.token_parameter is not None:
            changes["token_parameter"] = TokenParameterKind(override.token_parameter)
        if override.reasoning_effort is not None:
            changes["reasoning_effort"] = override.reasoning_effort
        if override.max_token_count is not None:
            changes["max_token_count"] = override.max_token_count

        if base.is_reasoning_model:
            # Defer to the hard policy; only effort and context window are
            # negotiable.
            negotiable = ("reasoning_effort", "max_token_count")
            return replace(base, **{k: v for k, v in changes.items() if k in negotiable})
        caps = replace(base, **changes)
        if not caps.supports_tools and caps.supports_parallel_tool_calls:
            caps = replace(caps, supports_parallel_tool_calls=False)
        return caps
