"""The push reactor and the pull timer.

Both controllers run as threads of the daemon and share one Interlock. The
push side coalesces change notifications with a bounded debounce and backs
off after failures; the pull side ticks at a fixed interval and never lets a
failed tick stop the schedule.
"""

import logging
import threading
import time
from collections.abc import Callable
from enum import Enum

from .constants import APP_NAME
from .interlock import Interlock
from .ops import SyncContext, run_direction
from .outcomes import Outcome, RunResult
from .state import RunLedger
from .watcher import Watcher

push_log = logging.getLogger(f"{APP_NAME}.push")
pull_log = logging.getLogger(f"{APP_NAME}.pull")

BACKOFF_CAP = 10
"""int: Cooldown cap, in multiples of the backoff base."""

ABORT_BACKOFF_CAP = 3
"""int: Lower cooldown cap for unclassified adapter failures."""

MAX_POLL = 1.0
"""float: Longest single wait, so a stop request is noticed promptly."""

_RETRY_OUTCOMES = {Outcome.TRANSIENT, Outcome.ADAPTER_ABORT, Outcome.RACE_LOST}


class PushState(Enum):
    IDLE = "Idle"
    DEBOUNCING = "Debouncing"
    RUNNING = "Running"
    COOLDOWN = "Cooldown"


class DebounceScheduler:
    """Decides when the push pipeline runs. Pure state; time is passed in.

    A burst of events starts a debounce window. Each further event moves the
    deadline to `now + window`, but never past `burst_start + 2 * window`, so
    continuous edits cannot postpone a push indefinitely. Events seen while a
    run is in progress (or cooling down) are remembered and start the next
    burst once it ends.

    Attributes:
        window (float): The debounce window in seconds (0 means eager).
        base (float): Backoff base, the window but at least one second.
    """

    def __init__(self, window: float):
        self.window = float(window)
        self.base = max(self.window, 1.0)
        self.state = PushState.IDLE
        self.burst_start: float | None = None
        self.deadline: float | None = None
        self.cooldown_until: float | None = None
        self.failures = 0
        self._pending_first: float | None = None
        self._pending_last: float | None = None

    @property
    def pending(self) -> bool:
        return self._pending_first is not None

    def _debounce(self, first: float, last: float, now: float) -> None:
        self.state = PushState.DEBOUNCING
        self.burst_start = first
        ceiling = first + 2 * self.window
        self.deadline = max(now, min(last + self.window, ceiling))

    def on_event(self, now: float, first_seen: float | None = None) -> None:
        """Registers a change notification observed at `now`."""
        first = min(now, first_seen) if first_seen is not None else now
        if self.state in (PushState.RUNNING, PushState.COOLDOWN):
            if self._pending_first is None:
                self._pending_first = first
            self._pending_last = now
            return
        if self.state is PushState.IDLE:
            self._debounce(first, now, now)
            return
        assert self.burst_start is not None
        self._debounce(self.burst_start, now, now)

    def next_wakeup(self) -> float | None:
        """Monotonic time of the next scheduled transition, if any."""
        if self.state is PushState.DEBOUNCING:
            return self.deadline
        if self.state is PushState.COOLDOWN:
            return self.cooldown_until
        return None

    def tick(self, now: float) -> None:
        """Ends an expired cooldown."""
        if self.state is not PushState.COOLDOWN:
            return
        assert self.cooldown_until is not None
        if now < self.cooldown_until:
            return
        self.cooldown_until = None
        if self.pending:
            self._resume_pending(now)
        else:
            self.state = PushState.IDLE

    def due(self, now: float) -> bool:
        return (
            self.state is PushState.DEBOUNCING
            and self.deadline is not None
            and now >= self.deadline
        )

    def start_run(self) -> None:
        self.state = PushState.RUNNING
        self.burst_start = None
        self.deadline = None

    def _resume_pending(self, now: float) -> None:
        first, last = self._pending_first, self._pending_last
        self._pending_first = self._pending_last = None
        assert first is not None and last is not None
        self._debounce(first, last, now)

    def backoff(self, outcome: Outcome) -> float:
        """Cooldown length after the current streak of failures."""
        cap = ABORT_BACKOFF_CAP if outcome is Outcome.ADAPTER_ABORT else BACKOFF_CAP
        return min(self.base * 2 ** (self.failures - 1), self.base * cap)

    def finish_run(self, now: float, result: RunResult) -> None:
        """Transitions out of RUNNING according to the run's outcome."""
        outcome = result.outcome

        if outcome.is_failure:
            self.failures += 1
            self.state = PushState.COOLDOWN
            self.cooldown_until = now + self.backoff(outcome)
            if outcome in _RETRY_OUTCOMES and not self.pending:
                self._pending_first = self._pending_last = now
            return

        if outcome is Outcome.OK:
            self.failures = 0

        if outcome is Outcome.SKIPPED_BUSY:
            # Still owed a run: retry one base interval later.
            first = self._pending_first if self.pending else now
            self._pending_first = self._pending_last = None
            self.state = PushState.DEBOUNCING
            self.burst_start = first
            self.deadline = now + self.base
            return

        if outcome in (Outcome.CANCELLED, Outcome.SKIPPED_DEV_MODE):
            self._pending_first = self._pending_last = None

        if self.pending:
            self._resume_pending(now)
        else:
            self.state = PushState.IDLE


class PushController:
    """Reactor thread turning change notifications into push pipeline runs."""

    def __init__(
        self,
        ctx: SyncContext,
        interlock: Interlock,
        ledger: RunLedger,
        watcher: Watcher,
        stop_event: threading.Event,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ctx = ctx
        self.interlock = interlock
        self.ledger = ledger
        self.watcher = watcher
        self.stop_event = stop_event
        self.clock = clock
        self.scheduler = DebounceScheduler(ctx.config.push_debounce)
        self._thread: threading.Thread | None = None

    def step(self) -> RunResult | None:
        """Runs one reactor iteration: wait, absorb events, maybe push."""
        now = self.clock()
        wake = self.scheduler.next_wakeup()
        timeout = MAX_POLL if wake is None else min(MAX_POLL, max(0.0, wake - now))

        batch = self.watcher.poll(timeout)
        now = self.clock()
        if batch:
            push_log.debug(f"Change batch: {len(batch.paths)} path(s)")
            self.scheduler.on_event(now, batch.first_seen)

        self.scheduler.tick(now)
        if self.scheduler.due(now) and not self.stop_event.is_set():
            return self.run_once()
        return None

    def run_once(self) -> RunResult:
        """Executes the push pipeline under the interlock.

        The wait for the interlock is bounded by the debounce window; losing
        the wait yields Skipped(Busy) and a rescheduled attempt.
        """
        self.scheduler.start_run()
        result = run_direction(
            "push",
            self.ctx,
            self.interlock,
            self.ledger,
            timeout=self.scheduler.base,
        )
        self.scheduler.finish_run(self.clock(), result)
        if self.scheduler.state is PushState.COOLDOWN:
            assert self.scheduler.cooldown_until is not None
            wait = self.scheduler.cooldown_until - self.clock()
            push_log.info(f"Cooling down for {wait:.0f}s")
        return result

    def run(self) -> None:
        push_log.info(f"Push reactor started (debounce {self.scheduler.window:g}s).")
        while not self.stop_event.is_set():
            try:
                self.step()
            except Exception:
                push_log.exception("Push reactor iteration failed")
                self.stop_event.wait(MAX_POLL)
        push_log.info("Push reactor stopped.")

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self.run, name="push-reactor", daemon=True
        )
        self._thread.start()

    def join(self, timeout: float | None = None) -> bool:
        """Waits for the thread; returns True if it has finished."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()


class PullController:
    """Timer thread running the pull pipeline every PULL_INTERVAL_SECONDS."""

    def __init__(
        self,
        ctx: SyncContext,
        interlock: Interlock,
        ledger: RunLedger,
        stop_event: threading.Event,
    ):
        self.ctx = ctx
        self.interlock = interlock
        self.ledger = ledger
        self.stop_event = stop_event
        self.interval = ctx.config.pull_interval
        self._thread: threading.Thread | None = None

    def tick(self) -> RunResult:
        """Runs one pull attempt; contention is recorded as Skipped(Busy)."""
        if self.ctx.gate.is_enabled():
            result = RunResult(Outcome.SKIPPED_DEV_MODE)
            self.ledger.record(result)
            pull_log.info(result.outcome.value)
            return result

        return run_direction(
            "pull", self.ctx, self.interlock, self.ledger, timeout=0
        )

    def run(self) -> None:
        pull_log.info(f"Pull timer started (every {self.interval}s).")
        while not self.stop_event.is_set():
            try:
                self.tick()
            except Exception:
                pull_log.exception("Pull tick failed")
            if self.stop_event.wait(self.interval):
                break
        pull_log.info("Pull timer stopped.")

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self.run, name="pull-timer", daemon=True
        )
        self._thread.start()

    def join(self, timeout: float | None = None) -> bool:
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()
