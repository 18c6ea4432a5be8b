"""Tests for the quota-aware polling manager."""

import asyncio
import random
import time

import pytest

from conftest import FakeClock, NoSleepPollingManager
from print_streamer.cancellation import CancellationToken
from print_streamer.config import PollingConfig
from print_streamer.errors import Cancelled, NotFoundError, TransientPlatformError
from print_streamer.polling import PollingManager


def constant(value):
    calls = []

    async def reader():
        calls.append(value)
        return value

    return reader, calls


class TestObserve:
    """Cache, single flight and statistics."""

    def test_concurrent_reads_share_one_request(self, polling):
        calls = []

        async def scenario():
            gate = asyncio.Event()

            async def reader():
                calls.append(1)
                await gate.wait()
                return "ready"

            first = asyncio.ensure_future(polling.observe("broadcast", "bc1", reader))
            second = asyncio.ensure_future(polling.observe("broadcast", "bc1", reader))
            await asyncio.sleep(0.01)
            gate.set()
            return await asyncio.gather(first, second)

        assert asyncio.run(scenario()) == ["ready", "ready"]
        assert len(calls) == 1
        assert polling.snapshot().requests == 1

    def test_follower_survives_cancelled_leader(self, polling):
        calls = []

        async def scenario():
            gate = asyncio.Event()

            async def reader():
                calls.append(1)
                await gate.wait()
                return "active"

            leader_token = CancellationToken()
            follower_token = CancellationToken()
            leader = asyncio.ensure_future(polling.observe("stream", "st1", reader, cancel=leader_token))
            await asyncio.sleep(0.01)
            follower = asyncio.ensure_future(polling.observe("stream", "st1", reader, cancel=follower_token))
            await asyncio.sleep(0.01)
            leader_token.cancel()
            with pytest.raises(Cancelled):
                await leader
            await asyncio.sleep(0.01)
            gate.set()
            return await follower, follower_token.cancelled

        value, follower_cancelled = asyncio.run(asyncio.wait_for(scenario(), timeout=5))

        assert value == "active"
        assert not follower_cancelled
        assert len(calls) == 2
        assert polling.cache.get(("stream", "st1")) == "active"

    def test_cancelled_follower_leaves_leader_running(self, polling):
        async def scenario():
            gate = asyncio.Event()

            async def reader():
                await gate.wait()
                return "ready"

            follower_token = CancellationToken()
            leader = asyncio.ensure_future(polling.observe("broadcast", "bc1", reader))
            await asyncio.sleep(0.01)
            follower = asyncio.ensure_future(polling.observe("broadcast", "bc1", reader, cancel=follower_token))
            await asyncio.sleep(0.01)
            follower_token.cancel()
            with pytest.raises(Cancelled):
                await follower
            gate.set()
            return await leader

        assert asyncio.run(asyncio.wait_for(scenario(), timeout=5)) == "ready"

    def test_cached_value_served_within_ttl(self, polling, clock):
        reader, calls = constant("live")

        async def scenario():
            await polling.observe("broadcast", "bc1", reader)
            clock.advance(4)
            await polling.observe("broadcast", "bc1", reader)
            clock.advance(2)
            await polling.observe("broadcast", "bc1", reader)

        asyncio.run(scenario())

        assert len(calls) == 2
        stats = polling.snapshot()
        assert stats.requests == 2
        assert stats.cache_hits == 1

    def test_clear_cache_forces_next_read_upstream(self, polling):
        reader, calls = constant("ready")

        async def scenario():
            await polling.observe("stream", "st1", reader)
            polling.clear_cache()
            await polling.observe("stream", "st1", reader)

        asyncio.run(scenario())
        assert len(calls) == 2

    def test_invalidate_drops_one_key(self, polling):
        reader, calls = constant("ready")

        async def scenario():
            await polling.observe("stream", "st1", reader)
            await polling.observe("stream", "st2", reader)
            polling.invalidate("stream", "st1")
            await polling.observe("stream", "st1", reader)
            await polling.observe("stream", "st2", reader)

        asyncio.run(scenario())
        assert len(calls) == 3

    def test_disabled_polling_calls_reader_every_time(self, clock):
        manager = NoSleepPollingManager(PollingConfig(enabled=False), clock)
        reader, calls = constant("ready")

        async def scenario():
            for _ in range(3):
                await manager.observe("broadcast", "bc1", reader)

        asyncio.run(scenario())

        assert len(calls) == 3
        assert manager.snapshot().cache_hits == 0
        assert manager.pauses == []

    def test_non_transient_errors_are_not_retried(self, polling):
        calls = []

        async def reader():
            calls.append(1)
            raise NotFoundError("gone", status=404)

        with pytest.raises(NotFoundError):
            asyncio.run(polling.observe("broadcast", "bc1", reader))
        assert len(calls) == 1
        assert polling.pauses == []


class TestBackoff:
    def test_transient_errors_back_off_geometrically(self, polling):
        attempts = []

        async def reader():
            attempts.append(1)
            if len(attempts) <= 3:
                raise TransientPlatformError("429", reason="rateLimitExceeded", status=429)
            return "ok"

        assert asyncio.run(polling.observe("stream", "st1", reader)) == "ok"
        assert polling.pauses == pytest.approx([15.0, 22.5, 33.75])
        assert polling.snapshot().requests == 4

    def test_rate_limit_storm_schedule(self, polling):
        attempts = []

        async def reader():
            attempts.append(1)
            if len(attempts) <= 5:
                raise TransientPlatformError("429", reason="rateLimitExceeded", status=429)
            return "ok"

        assert asyncio.run(polling.observe("stream", "st1", reader)) == "ok"
        assert polling.pauses == pytest.approx([15.0, 22.5, 33.75, 50.625, 60.0])
        assert len(attempts) == 6

    def test_rate_limit_storm_schedule_with_jitter(self, clock):
        manager = NoSleepPollingManager(PollingConfig(max_jitter_seconds=5.0), clock, rng=random.Random(11))
        attempts = []

        async def reader():
            attempts.append(clock())
            if len(attempts) <= 5:
                raise TransientPlatformError("429", reason="rateLimitExceeded", status=429)
            return "ok"

        asyncio.run(manager.observe("stream", "st1", reader))

        for pause, expected in zip(manager.pauses, [15.0, 22.5, 33.75, 50.625, 60.0]):
            assert expected <= pause <= expected + 5.0
        assert all(later - earlier >= 1.0 for earlier, later in zip(attempts, attempts[1:]))

    def test_gives_up_after_max_retries(self, clock):
        manager = NoSleepPollingManager(PollingConfig(max_jitter_seconds=0, max_retries=2), clock)
        calls = []

        async def reader():
            calls.append(1)
            raise TransientPlatformError("503", status=503)

        with pytest.raises(TransientPlatformError):
            asyncio.run(manager.observe("broadcast", "bc1", reader))
        assert len(calls) == 3
        assert manager.pauses == pytest.approx([15.0, 22.5])

    def test_interval_is_clamped_before_jitter(self, clock):
        manager = PollingManager(PollingConfig(max_jitter_seconds=5.0), clock=clock, rng=random.Random(3))
        for attempt in range(1, 30):
            interval = manager.next_interval(attempt)
            assert 10.0 <= interval <= 65.0
        samples = [manager.next_interval(12) for _ in range(50)]
        assert all(60.0 <= value <= 65.0 for value in samples)
        assert len(set(samples)) > 1

    def test_rate_limit_delays_requests_over_budget(self, clock):
        manager = NoSleepPollingManager(PollingConfig(max_jitter_seconds=0, requests_per_minute=2), clock)
        reader, calls = constant("ready")

        async def scenario():
            for stream_id in ("st1", "st2", "st3"):
                await manager.observe("stream", stream_id, reader)

        asyncio.run(scenario())

        assert len(calls) == 3
        assert manager.pauses == pytest.approx([60.0])
        assert manager.snapshot().rate_limit_waits == 1


class TestIdle:
    def test_idle_raises_base_interval_until_next_activity(self, polling, clock):
        reader, _ = constant("ready")

        async def scenario():
            await polling.observe("broadcast", "a", reader)
            assert polling.current_base_interval == 15.0

            clock.advance(5 * 60)
            assert polling.snapshot().idle

            await polling.observe("broadcast", "b", reader)
            assert polling.current_base_interval == 60.0
            assert polling.next_interval(1) == 60.0
            assert not polling.snapshot().idle

            await polling.observe("broadcast", "c", reader)
            assert polling.current_base_interval == 15.0

        asyncio.run(scenario())


class TestRisingEdge:
    def test_matches_once_predicate_holds(self, polling):
        statuses = ["ready", "ready", "active"]

        async def reader():
            return statuses.pop(0)

        result = asyncio.run(
            polling.wait_until_rising_edge("stream", "st1", reader, lambda value: value == "active", timeout=120)
        )

        assert result.matched
        assert result.attempts == 3
        assert result.last_value == "active"
        assert polling.pauses == pytest.approx([15.0, 22.5])

    def test_timeout_bounds_the_wait(self, polling):
        reader, _ = constant("ready")

        result = asyncio.run(
            polling.wait_until_rising_edge("stream", "st1", reader, lambda value: value == "active", timeout=30)
        )

        assert not result.matched
        assert result.attempts == 3
        assert sum(polling.pauses) == pytest.approx(30.0)

    def test_abort_state_stops_early(self, polling):
        reader, _ = constant("error")

        result = asyncio.run(
            polling.wait_until_rising_edge(
                "stream",
                "st1",
                reader,
                lambda value: value == "active",
                timeout=120,
                abort=lambda value: value == "error",
            )
        )

        assert not result.matched
        assert result.attempts == 1

    def test_cancellation_interrupts_wait(self):
        calls = []

        async def reader():
            calls.append(1)
            return "ready"

        async def scenario():
            token = CancellationToken()
            manager = PollingManager(PollingConfig(), clock=FakeClock(), cancel=token)
            reads_at_cancel = []

            def fire():
                reads_at_cancel.append(len(calls))
                token.cancel()

            asyncio.get_running_loop().call_later(0.05, fire)
            started = time.monotonic()
            with pytest.raises(Cancelled):
                await manager.wait_until_rising_edge(
                    "stream", "st1", reader, lambda value: value == "active", timeout=45
                )
            elapsed = time.monotonic() - started
            await asyncio.sleep(0.05)
            return reads_at_cancel, elapsed

        reads_at_cancel, elapsed = asyncio.run(asyncio.wait_for(scenario(), timeout=5))

        assert elapsed < 1.0
        assert reads_at_cancel == [1]
        assert len(calls) == 1
