"""Shared fixtures for runner tests."""
from __future__ import annotations

import io
import json
from typing import Any

import pytest

from replicate_runner.reporter import Reporter


class FakeClock:
    """Monotonic clock whose time only moves when ``sleep`` is awaited."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def read_records(stream: io.StringIO) -> list[dict[str, Any]]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


@pytest.fixture
def stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def reporter(stream: io.StringIO) -> Reporter:
    return Reporter(stream)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
