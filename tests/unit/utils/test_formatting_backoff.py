"""Unit tests for formatting helpers, backoff and the task group."""

from __future__ import annotations

import asyncio

import pytest

from swarmget.utils.backoff import Cooldowns, backoff_delay
from swarmget.utils.formatting import format_bytes, format_time
from swarmget.utils.tasks import BackgroundTaskGroup

pytestmark = [pytest.mark.unit]


class TestFormatting:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [(0, "0 B"), (512, "512 B"), (1536, "1.5 KB"), (5 * 1024**3, "5 GB")],
    )
    def test_format_bytes(self, value, expected):
        assert format_bytes(value) == expected

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(None, "unknown"), (-1, "unknown"), (5, "5s"), (65, "1m 5s"), (3725, "1h 2m")],
    )
    def test_format_time(self, value, expected):
        assert format_time(value) == expected


class TestBackoff:
    def test_grows_and_caps_without_jitter(self):
        assert [backoff_delay(i, 1.0, 5.0) for i in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_stays_in_band(self):
        for _ in range(50):
            assert 9.0 <= backoff_delay(0, 10.0, 60.0, jitter=0.1) <= 11.0


class TestCooldowns:
    """Per-key failure history."""

    def test_failures_extend_block(self, fake_clock):
        cooldowns = Cooldowns(2.0, 10.0, clock=fake_clock)
        assert cooldowns.record_failure("a") == 2.0
        assert cooldowns.record_failure("a") == 4.0
        assert cooldowns.failures["a"] == 2
        assert cooldowns.blocked("a")
        assert not cooldowns.blocked("b")
        fake_clock.advance(4.0)
        assert not cooldowns.blocked("a")

    def test_fixed_delay_and_clear(self, fake_clock):
        cooldowns = Cooldowns(2.0, 10.0, clock=fake_clock)
        assert cooldowns.record_failure("a", delay=100.0) == 100.0
        assert cooldowns.until["a"] == fake_clock.now() + 100.0
        cooldowns.clear("a")
        assert not cooldowns.blocked("a")
        assert "a" not in cooldowns.failures
        assert cooldowns.record_failure("a") == 2.0


class TestBackgroundTaskGroup:
    @pytest.mark.asyncio
    async def test_cancel_and_wait(self):
        group = BackgroundTaskGroup()
        started = asyncio.Event()

        async def sleeper():
            started.set()
            await asyncio.sleep(10)

        task = group.create(sleeper(), name="sleeper")
        await started.wait()
        assert len(group) == 1
        await group.cancel_and_wait(timeout=1.0)
        assert task.cancelled()
        assert len(group) == 0

    @pytest.mark.asyncio
    async def test_finished_tasks_are_forgotten(self):
        group = BackgroundTaskGroup()
        await group.create(asyncio.sleep(0))
        await asyncio.sleep(0)
        assert len(group) == 0
