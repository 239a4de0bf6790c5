"""Shared fixtures: a controllable clock, an event sink and aiohttp response mocks."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from feedguard.contracts.events import DataFetchEvent
from feedguard.errors import OperationCancelledError

# 2026-01-15T10:00:00Z
START_MS = 1_768_471_200_000
# 2026-01-16T00:00:00Z, the next default daily reset after START_MS
NEXT_MIDNIGHT_MS = 1_768_521_600_000


class FakeClock:
    """
    Epoch-ms clock advanced only by tests or by its own sleep().

    Pass the instance as time_fn and clock.sleep as sleep_fn.
    """

    def __init__(self, start_ms: int = START_MS) -> None:
        self.now_ms = start_ms
        self.sleeps: list[int] = []

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms

    async def sleep(self, delay_ms: int, cancel_event: asyncio.Event | None = None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError("cancelled")
        self.sleeps.append(delay_ms)
        self.now_ms += delay_ms
        await asyncio.sleep(0)


def make_response(
    status: int = 200,
    json_data: Any = None,
    text: str = "",
    headers: dict[str, str] | None = None,
) -> MagicMock:
    """Mock aiohttp response usable as an async context manager."""
    response = MagicMock()
    response.status = status
    response.headers = headers or {}
    response.json = AsyncMock(return_value={} if json_data is None else json_data)
    response.text = AsyncMock(return_value=text)
    response.__aenter__ = AsyncMock(return_value=response)
    response.__aexit__ = AsyncMock(return_value=None)
    return response


class RecordingSink:
    """DataFetchSink collecting events in memory."""

    def __init__(self) -> None:
        self.events: list[DataFetchEvent] = []

    def record_fetch(self, event: DataFetchEvent) -> None:
        self.events.append(event)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()
