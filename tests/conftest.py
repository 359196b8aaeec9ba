"""Shared fixtures: a controllable clock and a sleep that advances it."""

import json

import httpx
import pytest

from event_reports.config import Settings


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Records requested delays and advances the clock instead of waiting."""

    def __init__(self, clock: FakeClock = None):
        self.calls = []
        self.clock = clock

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps(clock):
    return RecordingSleep(clock)


@pytest.fixture
def settings():
    return Settings(TAVILY_API_KEY="test-key", _env_file=None)


def json_response(payload, status_code=200, headers=None):
    return httpx.Response(status_code, content=json.dumps(payload), headers={
        "content-type": "application/json", **(headers or {})
    })
