"""Error taxonomy for modelgate.

Every failure that leaves the core is a :class:`ProviderError` subclass
carrying an immutable :class:`ErrorRecord`, so callers can render it without
looking at raw provider output.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class ErrorKind(enum.Enum):
    UNKNOWN_MODEL = "unknown_model"
    UNSUPPORTED_PARAMETER = "unsupported_parameter"
    API = "api_error"
    AUTHENTICATION = "authentication_error"
    NETWORK = "network_error"
    STREAM_INTERRUPTED = "stream_interrupted"
    MALFORMED_STREAM = "malformed_stream"


@dataclass(frozen=True)
class ErrorRecord:
    """Structured description of a failure."""

    kind: ErrorKind
    message: str
    body: str | None = None
    status: int | None = None
    cause: BaseException | str | None = None
    events_delivered: int | None = None

    def summary(self) -> str:
        parts = [f"[{self.kind.value}]"]
        if self.status is not None:
            parts.append(f"HTTP {self.status}")
        parts.append(self.message)
        return " ".join(parts)


class ProviderError(Exception):
    """Base class; ``record`` holds the classification."""

    kind: ErrorKind = ErrorKind.API

    def __init__(self, record: ErrorRecord) -> None:
        super().__init__(record.message)
        self.record = record

    @classmethod
    def from_message(cls, message: str, **kwargs) -> ProviderError:
        return cls(ErrorRecord(kind=cls.kind, message=message, **kwargs))

    def __str__(self) -> str:
        return self.record.summary()


class UnknownModelError(ProviderError):
    kind = ErrorKind.UNKNOWN_MODEL


class UnsupportedParameterError(ProviderError):
    kind = ErrorKind.UNSUPPORTED_PARAMETER


class ApiError(ProviderError):
    kind = ErrorKind.API


class AuthenticationError(ProviderError):
    kind = ErrorKind.AUTHENTICATION


class NetworkError(ProviderError):
    kind = ErrorKind.NETWORK


class StreamInterruptedError(ProviderError):
    kind = ErrorKind.STREAM_INTERRUPTED

    @property
    def events_delivered(self) -> int:
        return self.record.events_delivered or 0


class MalformedStreamError(ProviderError):
    kind = ErrorKind.MALFORMED_STREAM


class ConfigError(Exception):
    """Configuration file missing or invalid."""


_EXCEPTIONS: dict[ErrorKind, type[ProviderError]] = {
    cls.kind: cls
    for cls in (
        UnknownModelError,
        UnsupportedParameterError,
        ApiError,
        AuthenticationError,
        NetworkError,
        StreamInterruptedError,
        MalformedStreamError,
    )
}


def to_exception(record: ErrorRecord) -> ProviderError:
    """Wrap *record* in the exception class matching its kind."""
    return _EXCEPTIONS[record.kind](record)
