"""Domain events decoded from Lark leave-approval callbacks.

Lark delivers the customised ``leave_approval`` / ``leave_approval_revert``
events in the v1 envelope shape::

    {"uuid": "...", "token": "...", "ts": "...", "type": "event_callback",
     "event": {"type": "leave_approval", "instance_code": "...", ...}}

Only the ``event`` object is interesting to the handlers; the envelope itself
is checked by the dispatch layer.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, tzinfo
from typing import Any
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from leave_helper.errors import DecodeError, TimeParseError

LEAVE_APPROVAL_EVENT = "leave_approval"
LEAVE_APPROVAL_V2_EVENT = "leave_approvalV2"
LEAVE_APPROVAL_REVERT_EVENT = "leave_approval_revert"

DEFAULT_TIMEZONE = "Asia/Shanghai"
LEAVE_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
# ASCII digits only; str patterns and strptime both accept any Unicode digit.
_LEAVE_TIME_PATTERN = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2} [0-9]{2}:[0-9]{2}:[0-9]{2}")


class LeaveApproval(BaseModel):
    """An approved leave request (``leave_approval`` v1 event)."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    instance_code: str = Field(min_length=1)
    employee_id: str = Field(min_length=1)
    leave_start_time: str
    leave_end_time: str

    app_id: str | None = None
    tenant_key: str | None = None
    type: str | None = None
    open_id: str | None = None
    # Approval workflow start/end, epoch seconds.
    start_time: int | None = None
    end_time: int | None = None
    leave_type: str | None = None
    leave_unit: int | None = None
    leave_interval: int | None = None
    leave_reason: str | None = None


class LeaveRevert(BaseModel):
    """A previously approved leave that was taken back (``leave_approval_revert``)."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    instance_code: str = Field(min_length=1)

    app_id: str | None = None
    tenant_key: str | None = None
    type: str | None = None
    operate_time: int | None = None


def _load_event_object(body: bytes | str | dict[str, Any]) -> dict[str, Any]:
    if isinstance(body, dict):
        payload: Any = body
    else:
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise DecodeError(f"event body is not valid JSON: {exc}") from exc

    if not isinstance(payload, dict):
        raise DecodeError("event body must decode to a JSON object")

    event = payload.get("event")
    if not isinstance(event, dict):
        raise DecodeError("event body is missing the 'event' object")
    return event


def decode_leave_approval(body: bytes | str | dict[str, Any]) -> LeaveApproval:
    """Decode a callback body into a :class:`LeaveApproval`.

    Raises:
        DecodeError: when the body is not JSON, has no ``event`` object, or
            the event lacks required fields.
    """
    event = _load_event_object(body)
    try:
        return LeaveApproval.model_validate(event)
    except ValidationError as exc:
        raise DecodeError(f"invalid leave_approval event: {exc}") from exc


def decode_leave_revert(body: bytes | str | dict[str, Any]) -> LeaveRevert:
    """Decode a callback body into a :class:`LeaveRevert`."""
    event = _load_event_object(body)
    try:
        return LeaveRevert.model_validate(event)
    except ValidationError as exc:
        raise DecodeError(f"invalid leave_approval_revert event: {exc}") from exc


def resolve_timezone(name: str) -> tzinfo:
    return ZoneInfo(name)


def parse_leave_time(
    value: Any,
    *,
    field: str,
    tz: tzinfo | None = None,
) -> datetime:
    """Parse a ``YYYY-MM-DD HH:MM:SS`` civil timestamp into an aware datetime.

    The string carries no offset; it is interpreted in *tz* (Asia/Shanghai by
    default).
    """
    zone = tz or resolve_timezone(DEFAULT_TIMEZONE)
    if not isinstance(value, str) or not _LEAVE_TIME_PATTERN.fullmatch(value):
        raise TimeParseError(field=field, value=value, expected=LEAVE_TIME_FORMAT)
    try:
        parsed = datetime.strptime(value, LEAVE_TIME_FORMAT)
    except ValueError as exc:
        raise TimeParseError(field=field, value=value, expected=LEAVE_TIME_FORMAT) from exc
    return parsed.replace(tzinfo=zone)


def leave_period(approval: LeaveApproval, tz: tzinfo | None = None) -> tuple[datetime, datetime]:
    """Return the parsed ``(start, end)`` of an approval."""
    start = parse_leave_time(approval.leave_start_time, field="leave_start_time", tz=tz)
    end = parse_leave_time(approval.leave_end_time, field="leave_end_time", tz=tz)
    return start, end
