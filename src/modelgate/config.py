"""Configuration for modelgate.

Config discovery (first match wins):
  1. explicit ``path`` / ``--config`` flag
  2. ``./modelgate.yaml``
  3. ``~/.config/modelgate/config.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from modelgate.errors import ConfigError

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

class ProviderProfile(BaseModel):
    """Where and how to reach one provider endpoint."""

    provider: str = "openai"  # key into modelgate.llm.providers.POLICIES
    base_url: str = "https://api.openai.com/v1"
    api_key: str | None = None
    api_key_env: str | None = None  # falls back to the provider policy default
    api_version: str | None = None
    default_system_prompt: str | None = None


class ModelOverride(BaseModel):
    """Per-model (or per-deployment) capability declaration."""

    name: str
    base_model: str | None = None  # inherit capabilities from this id
    supports_tools: bool | None = None
    supports_parallel_tool_calls: bool | None = None
    token_parameter: str | None = None  # "max_tokens" | "max_completion_tokens"
    reasoning_effort: str | None = None
    max_token_count: int | None = Field(default=None, gt=0)


class StreamPolicy(BaseModel):
    malformed_warning_ratio: float = Field(default=0.5, ge=0.0, le=1.0)
    malformed_min_frames: int = Field(default=4, ge=1)
    # None keeps the stream alive however many frames are malformed
    malformed_abort_ratio: float | None = Field(default=None, ge=0.0, le=1.0)


class TimeoutSpec(BaseModel):
    total: float = 120
    connect: float = 30
    read: float = 60


class GatewayConfig(BaseModel):
    """Top-level config."""

    profile: str = "default"
    profiles: dict[str, ProviderProfile] = Field(
        default_factory=lambda: {"default": ProviderProfile()}
    )
    models: list[ModelOverride] = Field(default_factory=list)
    stream: StreamPolicy = Field(default_factory=StreamPolicy)
    timeouts: TimeoutSpec = Field(default_factory=TimeoutSpec)

    @property
    def active_profile(self) -> ProviderProfile:
        return self.profiles.get(self.profile, ProviderProfile())


def resolve_api_key(profile: ProviderProfile, default_env: str | None) -> str:
    """Return the profile's key, reading the environment when not inline."""
    if profile.api_key:
        return profile.api_key
    env_name = profile.api_key_env or default_env
    if env_name:
        return os.environ.get(env_name, "")
    return ""


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./modelgate.yaml"),
    Path.home() / ".config" / "modelgate" / "config.yaml",
]


def _parse(raw: dict[str, Any], source: Path) -> GatewayConfig:
    # ``models`` may be a mapping of name -> override for readability
    models = raw.get("models")
    if isinstance(models, dict):
        raw = dict(raw)
        raw["models"] = [
            {"name": name, **(spec or {})} for name, spec in models.items()
        ]
    try:
        return GatewayConfig(**raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid config {source}: {e}") from e


def load_config(path: str | Path | None = None) -> GatewayConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Raises
    ------
    ConfigError
        If an explicit path does not exist or any file is not valid YAML.
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path).expanduser()
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {path}")
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return GatewayConfig()

    _logger.info("Loading config from %s", config_path)
    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config root must be a mapping: {config_path}")

    return _parse(raw, config_path)
