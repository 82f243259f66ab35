"""Test support utilities for the leave_helper package.

In-memory stand-ins for the correlation store and calendar adapter.  They
record every call and can be told to fail, so handler behaviour can be
asserted without Redis or Lark.  Nothing here depends on pytest.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from leave_helper.calendar import TimeOffCalendar
from leave_helper.correlation import CorrelationStore
from leave_helper.errors import CalendarRequestError, CorrelationStoreError

__all__ = [
    "CreateCall",
    "FakeCorrelationStore",
    "FakeTimeOffCalendar",
    "FixedClock",
    "approval_callback_body",
    "revert_callback_body",
]


def _v1_envelope(event: dict[str, Any], *, token: str) -> bytes:
    return json.dumps(
        {
            "uuid": f"uuid-{event.get('instance_code')}",
            "token": token,
            "ts": "1700000000.1",
            "type": "event_callback",
            "event": event,
        }
    ).encode()


def approval_callback_body(
    *,
    instance_code: str = "A1",
    employee_id: str = "U1",
    leave_start_time: str = "2025-01-01 09:00:00",
    leave_end_time: str = "2099-01-01 18:00:00",
    token: str = "verify-token",
    **extra: Any,
) -> bytes:
    """Build a v1 ``leave_approval`` callback body."""
    event = {
        "app_id": "cli_test",
        "tenant_key": "tenant-1",
        "type": "leave_approval",
        "instance_code": instance_code,
        "employee_id": employee_id,
        "leave_start_time": leave_start_time,
        "leave_end_time": leave_end_time,
        **extra,
    }
    return _v1_envelope(event, token=token)


def revert_callback_body(
    *,
    instance_code: str = "A1",
    token: str = "verify-token",
    **extra: Any,
) -> bytes:
    """Build a v1 ``leave_approval_revert`` callback body."""
    event = {
        "app_id": "cli_test",
        "tenant_key": "tenant-1",
        "type": "leave_approval_revert",
        "instance_code": instance_code,
        "operate_time": 1700000000,
        **extra,
    }
    return _v1_envelope(event, token=token)


class FixedClock:
    """Callable clock that returns a settable instant."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime.now(UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


@dataclass
class _StoredEntry:
    event_id: str
    expires_at: datetime


class FakeCorrelationStore(CorrelationStore):
    """Dict-backed correlation store with clock-driven expiry."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(UTC))
        self.entries: dict[str, _StoredEntry] = {}
        self.put_calls: list[tuple[str, str, timedelta]] = []
        self.get_calls: list[str] = []
        self.fail_put: bool = False
        self.fail_get: bool = False

    async def put(self, instance_code: str, event_id: str, ttl: timedelta) -> bool:
        self.put_calls.append((instance_code, event_id, ttl))
        if self.fail_put:
            raise CorrelationStoreError("connection refused", operation="correlation_put")
        if ttl <= timedelta(0):
            return False
        self.entries[instance_code] = _StoredEntry(event_id, self._clock() + ttl)
        return True

    async def get(self, instance_code: str) -> str | None:
        self.get_calls.append(instance_code)
        if self.fail_get:
            raise CorrelationStoreError("connection refused", operation="correlation_get")
        entry = self.entries.get(instance_code)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self.entries[instance_code]
            return None
        return entry.event_id

    def ttl_of(self, instance_code: str) -> timedelta | None:
        entry = self.entries.get(instance_code)
        if entry is None:
            return None
        return entry.expires_at - self._clock()


@dataclass(frozen=True)
class CreateCall:
    subject_id: str
    start: datetime
    end: datetime


@dataclass
class FakeTimeOffCalendar(TimeOffCalendar):
    """Calendar adapter that mints sequential ids and records calls."""

    id_prefix: str = "timeoff"
    create_calls: list[CreateCall] = field(default_factory=list)
    delete_calls: list[str] = field(default_factory=list)
    fail_create: bool = False
    fail_delete: bool = False

    async def create_time_off(self, subject_id: str, start: datetime, end: datetime) -> str:
        self.create_calls.append(CreateCall(subject_id, start, end))
        if self.fail_create:
            raise CalendarRequestError(
                "no permission",
                operation="create_time_off",
                request_id="fake-request-id",
                code=190004,
            )
        return f"{self.id_prefix}-{len(self.create_calls)}"

    async def delete_time_off(self, event_id: str) -> None:
        self.delete_calls.append(event_id)
        if self.fail_delete:
            raise CalendarRequestError(
                "timeoff event not found",
                operation="delete_time_off",
                request_id="fake-request-id",
                code=195100,
            )
