"""
Tests for the Timeout Guard.

Tests cover:
  - Result returned when the work beats the deadline
  - Work exceptions propagate unchanged
  - Deadline → RoutingTimeout (a TimeoutError), work NOT cancelled
  - on_abandon fires exactly when the deadline passes
  - Late results discarded, late exceptions logged
"""

import asyncio
import logging

import pytest

from kaapav.pipeline.errors import RoutingTimeout
from kaapav.pipeline.timeout import TimeoutGuard


class TestWithinDeadline:

    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def quick():
            return "menu sent"

        assert await TimeoutGuard().with_deadline(quick(), 100) == "menu sent"

    @pytest.mark.asyncio
    async def test_exception_propagates(self):
        async def broken():
            raise ValueError("bad payload")

        with pytest.raises(ValueError):
            await TimeoutGuard().with_deadline(broken(), 100)

    @pytest.mark.asyncio
    async def test_on_abandon_not_called_when_in_time(self):
        abandoned = []

        async def quick():
            return True

        await TimeoutGuard().with_deadline(quick(), 100,
                                           on_abandon=lambda: abandoned.append(1))
        assert abandoned == []


class TestDeadlinePassed:

    @pytest.mark.asyncio
    async def test_raises_routing_timeout(self):
        guard = TimeoutGuard()

        async def slow():
            await asyncio.sleep(0.2)

        with pytest.raises(RoutingTimeout) as exc_info:
            await guard.with_deadline(slow(), 20)

        assert isinstance(exc_info.value, TimeoutError)
        assert exc_info.value.timeout_ms == 20
        assert guard.timeouts == 1

    @pytest.mark.asyncio
    async def test_work_keeps_running_in_background(self):
        guard = TimeoutGuard()
        finished = []
        abandoned = []

        async def slow():
            await asyncio.sleep(0.05)
            finished.append(True)
            return "late"

        with pytest.raises(RoutingTimeout):
            await guard.with_deadline(slow(), 10, on_abandon=lambda: abandoned.append(True))

        assert abandoned == [True]
        assert finished == []
        assert guard.abandoned_count == 1

        await asyncio.sleep(0.15)

        assert finished == [True]
        assert guard.abandoned_count == 0

    @pytest.mark.asyncio
    async def test_late_exception_is_logged(self, caplog):
        guard = TimeoutGuard()

        async def slow_failure():
            await asyncio.sleep(0.03)
            raise RuntimeError("gateway said no")

        with caplog.at_level(logging.ERROR, logger="pipeline.timeout"):
            with pytest.raises(RoutingTimeout):
                await guard.with_deadline(slow_failure(), 5, label="text:wamid.9")
            await asyncio.sleep(0.1)

        assert "failed late" in caplog.text
        assert "text:wamid.9" in caplog.text

    @pytest.mark.asyncio
    async def test_default_timeout_used(self):
        guard = TimeoutGuard(default_timeout_ms=10)

        async def slow():
            await asyncio.sleep(0.1)

        with pytest.raises(RoutingTimeout) as exc_info:
            await guard.with_deadline(slow())
        assert exc_info.value.timeout_ms == 10
        await guard.drain(timeout=0.5)
        assert guard.abandoned_count == 0
