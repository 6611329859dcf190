"""Reconciliation loop for allowsync.

One cycle:
  1. fetch()                  → candidate CIDR set (FetchError: nothing mutated)
  2. store.update(candidate)  → changed? (PersistError propagates)
  3. run_hook(command)        → only if changed (HookError: file stays written)

ReconcileLoop runs one cycle per tick, on a constant interval, forever:

    IDLE ──tick──▶ RUNNING ──cycle done (ok or failed)──▶ IDLE ──sleep(interval)──▶ …

Every cycle failure is logged with its stage and swallowed; the next tick is
scheduled regardless. There is no backoff, jitter or failure escalation.
Everything runs in one asyncio task, so cycles never overlap.
"""

from __future__ import annotations

import asyncio
import enum
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Optional

from allowsync.allowlist.store import CIDR, AllowListStore
from allowsync.errors import AllowSyncError, FetchError
from allowsync.utils.logger import cycle_context, get_logger
from allowsync.utils.ulid import generate_ulid

logger = get_logger(__name__)

FetchFn = Callable[[], Awaitable[Iterable[CIDR]]]
HookFn = Callable[[str], Awaitable[None]]


# ─── Single cycle ─────────────────────────────────────────────────────────────


async def run_cycle(
    fetch: FetchFn,
    store: AllowListStore,
    hook_command: str,
    run_hook: HookFn,
) -> bool:
    """Run one fetch → compare → persist → hook cycle.

    Returns:
        True if the allow-list changed (and the hook ran successfully).

    Raises:
        FetchError:   candidate could not be obtained; nothing was mutated.
        PersistError: candidate differs but could not be written.
        HookError:    allow-list was persisted but the hook failed.
    """
    try:
        candidate = await fetch()
    except FetchError:
        raise
    except Exception as exc:  # noqa: BLE001  any collaborator failure is a fetch failure
        raise FetchError("Failed to get hook server ip addresses", str(exc)) from exc

    changed = store.update(candidate)
    if changed:
        await run_hook(hook_command)
    return changed


# ─── Loop state ───────────────────────────────────────────────────────────────


class LoopState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class CycleOutcome:
    """Result of one tick."""

    changed: bool = False
    error: Optional[BaseException] = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def stage(self) -> Optional[str]:
        """Stage that failed (fetch / persist / hook / unexpected), or None."""
        if self.error is None:
            return None
        if isinstance(self.error, AllowSyncError):
            return self.error.stage
        return "unexpected"


@dataclass
class LoopStats:
    """Counters since process start.

    hook_runs counts hook invocations, which happen exactly once per cycle
    that persisted a change.
    """

    cycles: int = 0
    changes: int = 0
    failures: int = 0
    hook_runs: int = 0
    last_error: Optional[str] = None


@dataclass
class ReconcileLoop:
    """Fixed-interval reconciliation state machine.

    Holds every piece of loop state explicitly (no module globals).

    Usage:
        loop = ReconcileLoop(fetch=fetcher, store=store, hook_command=cmd,
                             run_hook=run_hook, interval=3600)
        await loop.run_forever()
    """

    fetch: FetchFn
    store: AllowListStore
    hook_command: str
    run_hook: HookFn
    interval: float
    state: LoopState = LoopState.IDLE
    stats: LoopStats = field(default_factory=LoopStats)
    _stop_requested: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)

    def __post_init__(self) -> None:
        self._hook = self._counting_hook(self.run_hook)

    def stop(self) -> None:
        """Ask run_forever() to return after the in-flight cycle, if any.

        A pending sleep is cut short; a running cycle is never interrupted.
        """
        self._stop_requested.set()

    @property
    def stopping(self) -> bool:
        return self._stop_requested.is_set()

    def _counting_hook(self, hook: HookFn) -> HookFn:
        async def _run(command: str) -> None:
            self.stats.hook_runs += 1
            await hook(command)

        return _run

    async def tick(self) -> CycleOutcome:
        """Run exactly one cycle and return to IDLE, whatever happens.

        Never raises except for asyncio.CancelledError.
        """
        outcome = CycleOutcome()
        self.state = LoopState.RUNNING
        self.stats.cycles += 1
        with cycle_context(generate_ulid()):
            started = time.perf_counter()
            try:
                outcome.changed = await run_cycle(
                    self.fetch, self.store, self.hook_command, self._hook
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001  a failed cycle never ends the loop
                outcome.error = exc
            finally:
                outcome.duration_ms = (time.perf_counter() - started) * 1000
                self.state = LoopState.IDLE
            self._record(outcome)
        return outcome

    def _record(self, outcome: CycleOutcome) -> None:
        if outcome.error is not None:
            self.stats.failures += 1
            self.stats.last_error = f"{outcome.stage}: {outcome.error}"
            logger.error(
                "Update cycle failed",
                stage=outcome.stage,
                error=str(outcome.error),
                error_type=type(outcome.error).__name__,
                duration_ms=outcome.duration_ms,
            )
            return

        if outcome.changed:
            self.stats.changes += 1
        logger.info(
            "Update cycle completed",
            changed=outcome.changed,
            entries=len(self.store),
            duration_ms=outcome.duration_ms,
        )
        if outcome.changed:
            logger.info("Allow list is CHANGED", path=self.store.path)
        else:
            logger.info("Allow list is UNCHANGED", path=self.store.path)

    async def run_forever(self, max_cycles: Optional[int] = None) -> None:
        """Tick, sleep ``interval`` seconds, repeat.

        Runs until stop() is called, or for ``max_cycles`` ticks if given (no
        sleep after the last one). asyncio.CancelledError propagates.
        """
        logger.info(
            "Reconciliation loop started",
            interval_s=self.interval,
            path=self.store.path,
        )
        ticks = 0
        while not self.stopping:
            await self.tick()
            ticks += 1
            if max_cycles is not None and ticks >= max_cycles:
                break
            await self._sleep()
        logger.info("Reconciliation loop stopped", cycles=self.stats.cycles)

    async def _sleep(self) -> None:
        try:
            await asyncio.wait_for(self._stop_requested.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            pass
