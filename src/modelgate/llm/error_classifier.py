"""Error classification.

Turns failed HTTP responses, transport exceptions and stream anomalies into
``ErrorRecord`` values.  Classification is terminal: nothing here retries.
"""

from __future__ import annotations

import json
import logging
from http import HTTPStatus
from typing import Any

import httpx

from modelgate.errors import ErrorKind, ErrorRecord, ProviderError, to_exception
from modelgate.types import StreamFault

_logger = logging.getLogger(__name__)

_AUTH_STATUSES = (401, 403)


def _status_text(status: int) -> str:
    try:
        return f"{status} {HTTPStatus(status).phrase}"
    except ValueError:
        return str(status)


def _provider_message(body: str) -> str | None:
    """Extract the provider's own message from an error body, if any.

    Understands ``{"error": {"message", "type", "code"}}`` and
    ``{"error": "text"}``.
    """
    try:
        data: Any = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, str) and error:
        return error
    if not isinstance(error, dict) or not error.get("message"):
        return None

    message = str(error["message"])
    details = []
    if error.get("type"):
        details.append(f"type: {error['type']}")
    if error.get("code"):
        details.append(f"code: {error['code']}")
    if details:
        message = f"{message} ({', '.join(details)})"
    return message


class ErrorClassifier:
    """Classify provider failures into ``ErrorRecord`` values.

    Error kinds:
      authentication_error - HTTP 401/403
      api_error            - any other non-success status, or an error
                             record inside a stream
      network_error        - transport failure before any response
      stream_interrupted   - connection lost mid-stream
    """

    def __init__(self, provider_name: str = "provider") -> None:
        self._provider_name = provider_name

    def classify_response(self, status: int, body: str | bytes) -> ErrorRecord:
        """Classify a non-success HTTP response; *body* is kept verbatim."""
        if isinstance(body, bytes):
            body = body.decode("utf-8", errors="replace")
        message = _provider_message(body)
        if message is None:
            message = f"{self._provider_name} returned {_status_text(status)}"
        kind = (
            ErrorKind.AUTHENTICATION if status in _AUTH_STATUSES else ErrorKind.API
        )
        record = ErrorRecord(kind=kind, message=message, body=body, status=status)
        _logger.error(
            "%s API error - status %d: %s", self._provider_name, status, message,
        )
        return record

    def classify_transport(self, exc: BaseException) -> ErrorRecord:
        """Classify a failure that happened before any response arrived."""
        if isinstance(exc, httpx.TimeoutException):
            message = f"Timed out connecting to {self._provider_name}: {exc}"
        elif isinstance(exc, httpx.ConnectError):
            message = f"Could not connect to {self._provider_name}: {exc}"
        else:
            message = f"Transport error talking to {self._provider_name}: {exc}"
        _logger.error("%s", message)
        return ErrorRecord(kind=ErrorKind.NETWORK, message=message, cause=exc)

    def classify_interruption(
        self,
        cause: BaseException | str,
        events_delivered: int,
    ) -> ErrorRecord:
        """Classify a connection lost after the stream had started."""
        message = (
            f"Stream from {self._provider_name} interrupted after "
            f"{events_delivered} delivered event(s): {cause}"
        )
        _logger.error("%s", message)
        return ErrorRecord(
            kind=ErrorKind.STREAM_INTERRUPTED,
            message=message,
            cause=cause,
            events_delivered=events_delivered,
        )

    def classify_stream_fault(self, fault: StreamFault) -> ErrorRecord:
        """Classify an ``{"error": ...}`` record found inside a stream."""
        _logger.error(
            "%s stream API error: %s", self._provider_name, fault.message,
        )
        return ErrorRecord(kind=ErrorKind.API, message=fault.message, body=fault.raw)

    def raise_for_response(self, status: int, body: str | bytes) -> None:
        """Raise the classified error for a non-success *status*."""
        if 200 <= status < 300:
            return
        raise to_exception(self.classify_response(status, body))

    def exception_for(self, exc: BaseException) -> ProviderError:
        return to_exception(self.classify_transport(exc))
