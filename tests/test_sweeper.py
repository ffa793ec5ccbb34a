"""Tests for StaleSweeper."""

import asyncio

import pytest

from chatcache.core.exceptions import StoreUnavailableError
from chatcache.models import MessageRole
from chatcache.services.sweeper import StaleSweeper, SweepReport


@pytest.fixture
def sweeper(local_activity, local_sessions, local_settings) -> StaleSweeper:
    return StaleSweeper(activity=local_activity, sessions=local_sessions, settings=local_settings)


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_removes_stale_sessions_and_their_data(self, sessions, clock):
        sweeper = StaleSweeper(activity=sessions.activity, sessions=sessions, settings=sessions.settings)
        old = await sessions.create_session("u-old")
        await sessions.append_message(old.id, MessageRole.USER, "hi")
        clock.advance(1000)
        fresh = await sessions.create_session("u-new")

        report = await sweeper.run_once(500)

        assert report.sessions_removed == 1
        assert report.users_removed == 1
        assert report.sessions_purged == 1
        assert await sessions.get_session(old.id) is None
        assert await sessions.get_messages(old.id) == []
        assert await sessions.get_session(fresh.id) is not None

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, sweeper: StaleSweeper, local_sessions):
        await local_sessions.create_session("u1")
        report = await sweeper.run_once()
        assert report.__dict__ == {
            "sessions_removed": 0,
            "users_removed": 0,
            "sessions_purged": 0,
            "sessions_expired": 0,
        }


class TestBackgroundLoop:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, sweeper: StaleSweeper):
        sweeper.start()
        assert sweeper.running is True
        task = sweeper._task

        sweeper.start()
        assert sweeper._task is task

        await sweeper.stop()
        assert sweeper.running is False
        assert task.cancelled()

    @pytest.mark.asyncio
    async def test_loop_runs_cycles(self, sweeper: StaleSweeper, monkeypatch: pytest.MonkeyPatch):
        sweeper.settings.sweep_interval_seconds = 1
        cycles = asyncio.Event()
        original = sweeper.run_once

        async def counting_run_once(*args, **kwargs):
            result = await original(*args, **kwargs)
            cycles.set()
            return result

        monkeypatch.setattr(sweeper, "run_once", counting_run_once)
        sweeper.start()
        await asyncio.wait_for(cycles.wait(), timeout=3)
        await sweeper.stop()

    @pytest.mark.asyncio
    async def test_loop_survives_store_error(self, sweeper: StaleSweeper, monkeypatch: pytest.MonkeyPatch):
        sweeper.settings.sweep_interval_seconds = 0
        second_cycle = asyncio.Event()
        calls = 0

        async def flaky_run_once(*args, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise StoreUnavailableError("purge_sessions", "down")
            second_cycle.set()
            return SweepReport()

        monkeypatch.setattr(sweeper, "run_once", flaky_run_once)
        sweeper.start()
        await asyncio.wait_for(second_cycle.wait(), timeout=3)

        assert sweeper.running is True
        await sweeper.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, sweeper: StaleSweeper):
        await sweeper.stop()
        assert sweeper.running is False
