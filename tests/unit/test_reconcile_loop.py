"""Tests for the reconciliation loop (allowsync/reconcile/loop.py).

Collaborators are fakes: an async fetch returning scripted results and an
async hook recording its invocations.

Tests:
  - run_cycle: fetch → update → hook ordering, hook only on change
  - run_cycle: FetchError / PersistError / HookError propagation and effects
  - ReconcileLoop.tick: failures swallowed, state back to IDLE, stats
  - ReconcileLoop.run_forever: constant interval, max_cycles, stop()
  - hook invocation count == number of changed cycles
"""

from __future__ import annotations

import asyncio
import os
from typing import Iterable, Optional, Union

import pytest
from structlog.testing import capture_logs

from allowsync.allowlist.store import AllowListStore, parse_cidr
from allowsync.errors import FetchError, HookError, PersistError
from allowsync.reconcile.loop import LoopState, ReconcileLoop, run_cycle

NET_A = parse_cidr("10.0.0.0/24")
NET_B = parse_cidr("192.168.1.1/32")

FetchResult = Union[Iterable, Exception]


class FakeFetch:
    """Returns scripted results in order; repeats the last one when exhausted."""

    def __init__(self, *results: FetchResult) -> None:
        self._results = list(results)
        self.calls = 0

    async def __call__(self):
        result = self._results[min(self.calls, len(self._results) - 1)]
        self.calls += 1
        if isinstance(result, Exception):
            raise result
        return frozenset(result)


class FakeHook:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.commands: list[str] = []
        self._error = error

    async def __call__(self, command: str) -> None:
        self.commands.append(command)
        if self._error is not None:
            raise self._error


def _read(path: str) -> str:
    with open(path) as fh:
        return fh.read()


# ─── run_cycle ────────────────────────────────────────────────────────────────


class TestRunCycle:
    @pytest.mark.asyncio
    async def test_change_persists_and_runs_hook(self, allow_file):
        store = AllowListStore.load(allow_file)
        hook = FakeHook()
        changed = await run_cycle(FakeFetch({NET_A, NET_B}), store, "reload", hook)
        assert changed is True
        assert hook.commands == ["reload"]
        assert _read(allow_file) == "allow 10.0.0.0/24;\nallow 192.168.1.1/32;\n"

    @pytest.mark.asyncio
    async def test_no_change_skips_hook(self, allow_file):
        store = AllowListStore.load(allow_file)
        store.update({NET_A})
        hook = FakeHook()
        assert await run_cycle(FakeFetch({NET_A}), store, "reload", hook) is False
        assert hook.commands == []

    @pytest.mark.asyncio
    async def test_fetch_error_mutates_nothing(self, allow_file):
        store = AllowListStore.load(allow_file)
        store.update({NET_A})
        hook = FakeHook()
        with pytest.raises(FetchError):
            await run_cycle(FakeFetch(FetchError("boom")), store, "reload", hook)
        assert store.entries == {NET_A}
        assert _read(allow_file) == "allow 10.0.0.0/24;\n"
        assert hook.commands == []

    @pytest.mark.asyncio
    async def test_arbitrary_fetch_exception_wrapped(self, allow_file):
        store = AllowListStore.load(allow_file)
        with pytest.raises(FetchError) as exc_info:
            await run_cycle(FakeFetch(RuntimeError("socket closed")), store, "x", FakeHook())
        assert "socket closed" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_persist_error_skips_hook(self, allow_file, monkeypatch):
        store = AllowListStore.load(allow_file)

        def failing_replace(src, dst):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(os, "replace", failing_replace)
        hook = FakeHook()
        with pytest.raises(PersistError):
            await run_cycle(FakeFetch({NET_A}), store, "reload", hook)
        assert hook.commands == []

    @pytest.mark.asyncio
    async def test_hook_error_keeps_persisted_state(self, allow_file):
        store = AllowListStore.load(allow_file)
        hook = FakeHook(error=HookError("after_update_hook exited with non zero code"))
        with pytest.raises(HookError):
            await run_cycle(FakeFetch({NET_A}), store, "reload", hook)
        assert store.entries == {NET_A}
        assert _read(allow_file) == "allow 10.0.0.0/24;\n"
        assert hook.commands == ["reload"]


# ─── ReconcileLoop.tick ───────────────────────────────────────────────────────


def _loop(store: AllowListStore, fetch: FakeFetch, hook: FakeHook, interval: float = 0) -> ReconcileLoop:
    return ReconcileLoop(
        fetch=fetch,
        store=store,
        hook_command="nginx -s reload",
        run_hook=hook,
        interval=interval,
    )


class TestTick:
    @pytest.mark.asyncio
    async def test_successful_change(self, allow_file):
        loop = _loop(AllowListStore.load(allow_file), FakeFetch({NET_A}), FakeHook())
        outcome = await loop.tick()
        assert outcome.ok
        assert outcome.changed is True
        assert outcome.stage is None
        assert outcome.duration_ms >= 0
        assert loop.state is LoopState.IDLE
        assert loop.stats.cycles == 1
        assert loop.stats.changes == 1
        assert loop.stats.hook_runs == 1

    @pytest.mark.asyncio
    async def test_fetch_failure_swallowed(self, allow_file):
        loop = _loop(AllowListStore.load(allow_file), FakeFetch(FetchError("down")), FakeHook())
        outcome = await loop.tick()
        assert not outcome.ok
        assert outcome.stage == "fetch"
        assert loop.state is LoopState.IDLE
        assert loop.stats.failures == 1
        assert loop.stats.last_error.startswith("fetch:")

    @pytest.mark.asyncio
    async def test_hook_failure_swallowed(self, allow_file):
        hook = FakeHook(error=HookError("exit 1"))
        loop = _loop(AllowListStore.load(allow_file), FakeFetch({NET_A}), hook)
        outcome = await loop.tick()
        assert outcome.stage == "hook"
        assert loop.store.entries == {NET_A}
        assert loop.stats.hook_runs == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_swallowed(self, allow_file, monkeypatch):
        store = AllowListStore.load(allow_file)

        def exploding_update(candidate):
            raise KeyError("bug")

        monkeypatch.setattr(store, "update", exploding_update)
        loop = _loop(store, FakeFetch({NET_A}), FakeHook())
        outcome = await loop.tick()
        assert outcome.stage == "unexpected"
        assert loop.state is LoopState.IDLE

    @pytest.mark.asyncio
    async def test_failure_logged_with_stage(self, allow_file):
        loop = _loop(AllowListStore.load(allow_file), FakeFetch(FetchError("down")), FakeHook())
        with capture_logs() as logs:
            await loop.tick()
        failures = [entry for entry in logs if entry["event"] == "Update cycle failed"]
        assert len(failures) == 1
        assert failures[0]["stage"] == "fetch"
        assert failures[0]["log_level"] == "error"

    @pytest.mark.asyncio
    async def test_change_and_no_change_logged(self, allow_file):
        loop = _loop(AllowListStore.load(allow_file), FakeFetch({NET_A}), FakeHook())
        with capture_logs() as logs:
            await loop.tick()
            await loop.tick()
        events = [entry["event"] for entry in logs]
        assert events.count("Update cycle completed") == 2
        assert "Allow list is CHANGED" in events
        assert "Allow list is UNCHANGED" in events

    @pytest.mark.asyncio
    async def test_state_is_running_during_cycle(self, allow_file):
        seen: list[LoopState] = []

        async def fetch():
            seen.append(loop.state)
            return frozenset()

        loop = ReconcileLoop(
            fetch=fetch,
            store=AllowListStore.load(allow_file),
            hook_command="x",
            run_hook=FakeHook(),
            interval=0,
        )
        await loop.tick()
        assert seen == [LoopState.RUNNING]
        assert loop.state is LoopState.IDLE

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, allow_file):
        async def fetch():
            raise asyncio.CancelledError

        loop = ReconcileLoop(
            fetch=fetch,
            store=AllowListStore.load(allow_file),
            hook_command="x",
            run_hook=FakeHook(),
            interval=0,
        )
        with pytest.raises(asyncio.CancelledError):
            await loop.tick()
        assert loop.state is LoopState.IDLE


# ─── Hook invocation count ────────────────────────────────────────────────────


class TestHookCount:
    @pytest.mark.asyncio
    async def test_hook_runs_once_per_changed_cycle(self, allow_file):
        fetch = FakeFetch(
            {NET_A},            # change
            {NET_A},            # no change
            FetchError("down"),  # failure
            {NET_A, NET_B},     # change
            [NET_B, NET_A],     # reorder only, no change
            set(),              # change
        )
        hook = FakeHook()
        loop = _loop(AllowListStore.load(allow_file), fetch, hook)
        outcomes = [await loop.tick() for _ in range(6)]

        changed_cycles = sum(1 for outcome in outcomes if outcome.changed)
        assert changed_cycles == 3
        assert len(hook.commands) == changed_cycles
        assert loop.stats.hook_runs == changed_cycles
        assert loop.stats.cycles == 6
        assert loop.stats.failures == 1


# ─── run_forever ──────────────────────────────────────────────────────────────


class TestRunForever:
    @pytest.mark.asyncio
    async def test_max_cycles(self, allow_file):
        fetch = FakeFetch({NET_A})
        loop = _loop(AllowListStore.load(allow_file), fetch, FakeHook())
        await loop.run_forever(max_cycles=3)
        assert fetch.calls == 3
        assert loop.stats.cycles == 3

    @pytest.mark.asyncio
    async def test_continues_after_failures(self, allow_file):
        fetch = FakeFetch(FetchError("down"), FetchError("still down"), {NET_A})
        hook = FakeHook()
        loop = _loop(AllowListStore.load(allow_file), fetch, hook)
        await loop.run_forever(max_cycles=3)
        assert loop.stats.failures == 2
        assert hook.commands == ["nginx -s reload"]
        assert loop.store.entries == {NET_A}

    @pytest.mark.asyncio
    async def test_constant_interval_between_cycles(self, allow_file, monkeypatch):
        waits: list[float] = []
        real_wait_for = asyncio.wait_for

        async def recording_wait_for(awaitable, timeout):
            waits.append(timeout)
            return await real_wait_for(awaitable, timeout=0)

        monkeypatch.setattr(asyncio, "wait_for", recording_wait_for)
        fetch = FakeFetch(FetchError("down"), {NET_A}, {NET_A}, FetchError("down"))
        loop = _loop(AllowListStore.load(allow_file), fetch, FakeHook(), interval=42)
        await loop.run_forever(max_cycles=4)
        # no sleep after the last cycle, same interval after success and failure
        assert waits == [42, 42, 42]

    @pytest.mark.asyncio
    async def test_stop_ends_loop_after_current_cycle(self, allow_file):
        fetch = FakeFetch({NET_A})
        loop = _loop(AllowListStore.load(allow_file), fetch, FakeHook(), interval=3600)
        task = asyncio.create_task(loop.run_forever())
        while fetch.calls == 0:
            await asyncio.sleep(0.01)
        loop.stop()
        await asyncio.wait_for(task, timeout=5)
        assert loop.stats.cycles == 1
        assert loop.stopping

    @pytest.mark.asyncio
    async def test_stop_before_start_runs_nothing(self, allow_file):
        fetch = FakeFetch({NET_A})
        loop = _loop(AllowListStore.load(allow_file), fetch, FakeHook())
        loop.stop()
        await loop.run_forever()
        assert fetch.calls == 0
