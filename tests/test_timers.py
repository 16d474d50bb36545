"""Tests for the cancellable timer schedulers and per-key locks."""

import asyncio
from datetime import timedelta

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from callbacks.locks import KeyedLock
from callbacks.timers import AsyncioTaskScheduler, ManualTaskScheduler
from conftest import START


class TestManualTaskScheduler:
    @pytest.mark.asyncio
    async def test_fires_only_when_due(self):
        clock = ManualTaskScheduler(START)
        fired = []

        async def callback():
            fired.append(clock.now())

        handle = clock.call_later(60, callback, name="t")
        await clock.advance(59)
        assert fired == []
        assert handle.active

        await clock.advance(1)
        assert fired == [START + timedelta(seconds=60)]
        assert handle.fired
        assert not handle.active

    @pytest.mark.asyncio
    async def test_runs_in_due_order(self):
        clock = ManualTaskScheduler(START)
        order = []

        async def make(tag):
            order.append(tag)

        clock.call_later(30, lambda: make("b"))
        clock.call_later(10, lambda: make("a"))
        clock.call_at(START + timedelta(seconds=30), lambda: make("c"))
        await clock.advance(100)
        assert order == ["a", "b", "c"]
        assert clock.now() == START + timedelta(seconds=100)

    @pytest.mark.asyncio
    async def test_cancelled_task_never_fires(self):
        clock = ManualTaskScheduler(START)
        fired = []

        async def callback():
            fired.append(True)

        handle = clock.call_later(5, callback)
        handle.cancel()
        handle.cancel()
        await clock.advance(10)
        assert fired == []
        assert handle.cancelled
        assert clock.pending == []

    @pytest.mark.asyncio
    async def test_timer_armed_by_callback_runs_within_same_advance(self):
        clock = ManualTaskScheduler(START)
        fired = []

        async def second():
            fired.append("second")

        async def first():
            fired.append("first")
            clock.call_later(5, second)

        clock.call_later(5, first)
        await clock.advance(10)
        assert fired == ["first", "second"]

    @pytest.mark.asyncio
    async def test_callback_error_is_contained(self):
        clock = ManualTaskScheduler(START)
        fired = []

        async def broken():
            raise RuntimeError("boom")

        async def fine():
            fired.append(True)

        clock.call_later(1, broken)
        clock.call_later(2, fine)
        await clock.advance(5)
        assert fired == [True]

    @pytest.mark.asyncio
    async def test_aclose_cancels_everything(self):
        clock = ManualTaskScheduler(START)
        handle = clock.call_later(5, lambda: asyncio.sleep(0))
        await clock.aclose()
        assert handle.cancelled


class TestAsyncioTaskScheduler:
    @pytest.mark.asyncio
    async def test_fires_after_delay(self):
        scheduler = AsyncioTaskScheduler()
        done = asyncio.Event()

        async def callback():
            done.set()

        handle = scheduler.call_later(0.01, callback)
        await asyncio.wait_for(done.wait(), 1.0)
        assert handle.fired
        await scheduler.aclose()

    @pytest.mark.asyncio
    async def test_cancel_prevents_callback(self):
        scheduler = AsyncioTaskScheduler()
        fired = []

        async def callback():
            fired.append(True)

        handle = scheduler.call_later(0.05, callback)
        handle.cancel()
        await asyncio.sleep(0.1)
        assert fired == []
        assert scheduler.pending == []

    @pytest.mark.asyncio
    async def test_callback_cancelling_its_own_handle_keeps_running(self):
        scheduler = AsyncioTaskScheduler()
        steps = []
        holder = {}

        async def callback():
            holder["handle"].cancel()
            await asyncio.sleep(0)
            steps.append("finished")

        holder["handle"] = scheduler.call_later(0, callback)
        await asyncio.sleep(0.05)
        assert steps == ["finished"]
        assert not holder["handle"].cancelled

    @pytest.mark.asyncio
    async def test_aclose_cancels_pending(self):
        scheduler = AsyncioTaskScheduler()
        handle = scheduler.call_later(60, lambda: asyncio.sleep(0))
        await scheduler.aclose()
        assert handle.cancelled
        assert scheduler.pending == []


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_serialises_same_key(self):
        locks = KeyedLock()
        order = []

        async def worker(tag, delay):
            async with locks.hold("R1"):
                order.append(f"{tag}-in")
                await asyncio.sleep(delay)
                order.append(f"{tag}-out")

        await asyncio.gather(worker("a", 0.02), worker("b", 0))
        assert order == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self):
        locks = KeyedLock()
        async with locks.hold("R1"):
            assert locks.locked("R1")
            async with locks.hold("R2"):
                assert locks.locked("R2")

    @pytest.mark.asyncio
    async def test_forgets_idle_keys(self):
        locks = KeyedLock()
        async with locks.hold("R1"):
            assert len(locks) == 1
        assert len(locks) == 0
        assert not locks.locked("R1")
