"""Shared test fixtures for the leave-helper test suite."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from leave_helper.handlers import LeaveEventHandlers
from leave_helper.testing import FakeCorrelationStore, FakeTimeOffCalendar, FixedClock

# 2025-06-01 12:00:00 Asia/Shanghai
DEFAULT_NOW = datetime(2025, 6, 1, 4, 0, tzinfo=UTC)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(DEFAULT_NOW)


@pytest.fixture
def fake_store(clock: FixedClock) -> FakeCorrelationStore:
    return FakeCorrelationStore(clock=clock)


@pytest.fixture
def fake_calendar() -> FakeTimeOffCalendar:
    return FakeTimeOffCalendar()


@pytest.fixture
def handlers(
    fake_store: FakeCorrelationStore,
    fake_calendar: FakeTimeOffCalendar,
    clock: FixedClock,
) -> LeaveEventHandlers:
    return LeaveEventHandlers(fake_store, fake_calendar, clock=clock)
