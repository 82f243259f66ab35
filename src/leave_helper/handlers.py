"""Leave event handlers: reconcile approvals and reverts with the calendar.

Handlers are the terminal error boundary.  Every handler returns a
:class:`HandlerOutcome` with ``handled=True`` no matter what failed inside,
because the dispatcher treats anything else as "redeliver" and none of these
operations are safe to blindly repeat (a redelivered approval would create a
second time-off entry).  Failures are logged and kept on the outcome as
``StepResult`` values so callers and tests can inspect them.

Per instance code the lifecycle is encoded in the correlation store::

    ABSENT --(approval, leave end in future)--> CACHED
    CACHED --(revert)--> calendar entry deleted (key lingers until expiry)
    ABSENT --(revert)--> no-op
    CACHED --(leave end passes)--> ABSENT
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, tzinfo
from enum import StrEnum
from typing import Any

from leave_helper.calendar import TimeOffCalendar
from leave_helper.core.telemetry import handler_span
from leave_helper.correlation import CorrelationState, CorrelationStore
from leave_helper.errors import RemoteCallError
from leave_helper.events import (
    DEFAULT_TIMEZONE,
    LEAVE_APPROVAL_EVENT,
    LEAVE_APPROVAL_REVERT_EVENT,
    LEAVE_APPROVAL_V2_EVENT,
    decode_leave_approval,
    decode_leave_revert,
    leave_period,
    resolve_timezone,
)

logger = logging.getLogger(__name__)

EventBody = bytes | str | dict[str, Any]

STEP_DECODE = "decode"
STEP_PARSE_TIME = "parse_time"
STEP_CREATE_TIME_OFF = "create_time_off"
STEP_STORE_CORRELATION = "store_correlation"
STEP_LOOKUP_CORRELATION = "lookup_correlation"
STEP_DELETE_TIME_OFF = "delete_time_off"


class StepStatus(StrEnum):
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class StepResult:
    """Outcome of a single handler step."""

    step: str
    status: StepStatus
    detail: str | None = None
    error: Exception | None = None


@dataclass
class HandlerOutcome:
    """Everything a handler did for one event.

    ``handled`` is always ``True``; it is what the dispatcher sees.
    """

    handler: str
    event_type: str
    instance_code: str | None = None
    steps: list[StepResult] = field(default_factory=list)
    handled: bool = True

    def record(
        self,
        step: str,
        status: StepStatus,
        detail: str | None = None,
        error: Exception | None = None,
    ) -> StepResult:
        result = StepResult(step=step, status=status, detail=detail, error=error)
        self.steps.append(result)
        return result

    @property
    def ok(self) -> bool:
        return all(step.status is not StepStatus.FAILED for step in self.steps)

    @property
    def failed_step(self) -> StepResult | None:
        for step in self.steps:
            if step.status is StepStatus.FAILED:
                return step
        return None

    def step(self, name: str) -> StepResult | None:
        for result in self.steps:
            if result.step == name:
                return result
        return None


def _error_fields(exc: Exception) -> dict[str, Any]:
    fields: dict[str, Any] = {"error": str(exc), "error_type": type(exc).__name__}
    if isinstance(exc, RemoteCallError):
        fields["request_id"] = exc.request_id
        fields["error_code"] = exc.code
    return fields


def _utc_now() -> datetime:
    return datetime.now(UTC)


class LeaveEventHandlers:
    """Reconciliation logic for the three leave approval event types.

    Collaborators are injected so tests can substitute fakes.  ``clock`` must
    return an aware datetime.
    """

    def __init__(
        self,
        store: CorrelationStore,
        calendar: TimeOffCalendar,
        *,
        timezone: str = DEFAULT_TIMEZONE,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._calendar = calendar
        self._tz: tzinfo = resolve_timezone(timezone)
        self._clock = clock

    def _fail(
        self,
        outcome: HandlerOutcome,
        step: str,
        exc: Exception,
        message: str,
    ) -> HandlerOutcome:
        outcome.record(step, StepStatus.FAILED, detail=str(exc), error=exc)
        logger.error(
            message,
            extra={
                "handler": outcome.handler,
                "operation": step,
                "instance_code": outcome.instance_code,
                **_error_fields(exc),
            },
        )
        return outcome

    async def on_approval_created(self, body: EventBody) -> HandlerOutcome:
        """Create a time-off entry for an approved leave and remember its id."""
        outcome = HandlerOutcome(handler="on_approval_created", event_type=LEAVE_APPROVAL_EVENT)
        with handler_span(outcome.handler, event_type=outcome.event_type) as span:
            try:
                approval = decode_leave_approval(body)
            except Exception as exc:
                return self._fail(outcome, STEP_DECODE, exc, "Failed to decode leave approval")
            outcome.instance_code = approval.instance_code
            outcome.record(STEP_DECODE, StepStatus.OK)
            span.set_attribute("leave_helper.instance_code", approval.instance_code)

            try:
                start, end = leave_period(approval, self._tz)
            except Exception as exc:
                return self._fail(outcome, STEP_PARSE_TIME, exc, "Failed to parse leave period")
            outcome.record(STEP_PARSE_TIME, StepStatus.OK)

            try:
                event_id = await self._calendar.create_time_off(approval.employee_id, start, end)
            except Exception as exc:
                return self._fail(
                    outcome, STEP_CREATE_TIME_OFF, exc, "Failed to create time-off event"
                )
            outcome.record(STEP_CREATE_TIME_OFF, StepStatus.OK, detail=event_id)
            logger.info(
                "Created time-off event for leave approval",
                extra={
                    "instance_code": approval.instance_code,
                    "employee_id": approval.employee_id,
                    "timeoff_event_id": event_id,
                    "leave_type": approval.leave_type,
                    "leave_start": start.isoformat(),
                    "leave_end": end.isoformat(),
                },
            )

            now = self._clock()
            if end <= now:
                outcome.record(STEP_STORE_CORRELATION, StepStatus.SKIPPED, detail="leave ended")
                logger.info(
                    "Leave already ended, not caching time-off event id",
                    extra={"instance_code": approval.instance_code, "timeoff_event_id": event_id},
                )
                return outcome

            try:
                await self._store.put(approval.instance_code, event_id, end - now)
            except Exception as exc:
                return self._fail(
                    outcome, STEP_STORE_CORRELATION, exc, "Failed to save time-off event id"
                )
            outcome.record(STEP_STORE_CORRELATION, StepStatus.OK, detail=event_id)
            return outcome

    async def on_approval_created_v2(self, body: EventBody) -> HandlerOutcome:  # noqa: ARG002
        """Acknowledge ``leave_approvalV2`` without doing anything."""
        outcome = HandlerOutcome(
            handler="on_approval_created_v2", event_type=LEAVE_APPROVAL_V2_EVENT
        )
        logger.debug("Ignoring leave_approvalV2 event")
        return outcome

    async def on_approval_reverted(self, body: EventBody) -> HandlerOutcome:
        """Delete the time-off entry created for a leave that was taken back."""
        outcome = HandlerOutcome(
            handler="on_approval_reverted", event_type=LEAVE_APPROVAL_REVERT_EVENT
        )
        with handler_span(outcome.handler, event_type=outcome.event_type) as span:
            try:
                revert = decode_leave_revert(body)
            except Exception as exc:
                return self._fail(outcome, STEP_DECODE, exc, "Failed to decode leave revert")
            outcome.instance_code = revert.instance_code
            outcome.record(STEP_DECODE, StepStatus.OK)
            span.set_attribute("leave_helper.instance_code", revert.instance_code)

            try:
                lookup = await self._store.lookup(revert.instance_code)
            except Exception as exc:
                return self._fail(
                    outcome, STEP_LOOKUP_CORRELATION, exc, "Failed to look up time-off event id"
                )

            if lookup.state is CorrelationState.ABSENT:
                outcome.record(
                    STEP_LOOKUP_CORRELATION, StepStatus.SKIPPED, detail=CorrelationState.ABSENT
                )
                logger.info(
                    "Time-off event id not found, nothing to revert",
                    extra={"instance_code": revert.instance_code},
                )
                return outcome
            outcome.record(STEP_LOOKUP_CORRELATION, StepStatus.OK, detail=lookup.event_id)

            assert lookup.event_id is not None
            try:
                await self._calendar.delete_time_off(lookup.event_id)
            except Exception as exc:
                return self._fail(
                    outcome, STEP_DELETE_TIME_OFF, exc, "Failed to delete time-off event"
                )
            outcome.record(STEP_DELETE_TIME_OFF, StepStatus.OK, detail=lookup.event_id)
            logger.info(
                "Deleted time-off event for reverted leave",
                extra={
                    "instance_code": revert.instance_code,
                    "timeoff_event_id": lookup.event_id,
                },
            )
            return outcome

    def routes(self) -> dict[str, Callable[[EventBody], Any]]:
        """Map Lark event types to handler coroutines."""
        return {
            LEAVE_APPROVAL_EVENT: self.on_approval_created,
            LEAVE_APPROVAL_V2_EVENT: self.on_approval_created_v2,
            LEAVE_APPROVAL_REVERT_EVENT: self.on_approval_reverted,
        }
