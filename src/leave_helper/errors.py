"""Error hierarchy for leave-helper.

Only the component layers (correlation store, calendar adapter, event
decoding) raise these.  The event handlers catch every one of them and turn
it into a failed step result, so nothing here ever reaches the dispatcher.
"""

from __future__ import annotations

from typing import Any


class LeaveHelperError(Exception):
    """Base error for everything raised by leave-helper components."""


class DecodeError(LeaveHelperError):
    """Raised when an inbound event body cannot be decoded into a domain event."""


class TimeParseError(LeaveHelperError):
    """Raised when a leave timestamp does not match the expected civil format."""

    def __init__(self, *, field: str, value: Any, expected: str) -> None:
        self.field = field
        self.value = value
        self.expected = expected
        super().__init__(f"{field}={value!r} does not match format {expected!r}")


class RemoteCallError(LeaveHelperError):
    """Raised when a remote dependency (calendar API, key-value store) fails.

    ``request_id`` is the remote side's correlation id when one was returned,
    ``code`` the application-level error code, and ``data`` whatever
    diagnostic payload came back with the failure.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        request_id: str | None = None,
        code: int | None = None,
        data: Any = None,
    ) -> None:
        self.message = message
        self.operation = operation
        self.request_id = request_id
        self.code = code
        self.data = data
        super().__init__(self._format())

    def _format(self) -> str:
        parts = [f"{self.operation} failed: {self.message}"]
        if self.request_id:
            parts.append(f"request_id={self.request_id}")
        if self.code is not None:
            parts.append(f"code={self.code}")
        if self.data:
            parts.append(f"data={self.data!r}")
        return ", ".join(parts)


class CalendarRequestError(RemoteCallError):
    """Raised when a Lark calendar or auth request fails."""


class CorrelationStoreError(RemoteCallError):
    """Raised when the correlation key-value store cannot be read or written."""
