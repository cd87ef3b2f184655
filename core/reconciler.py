"""
Reconciler - deadline watchdog for crowdfunding projects

Nobody calls closeProject() for a project that simply ran out of time, so
this loop does. Every tick:

  1. sample `now` once (every comparison in the tick uses the same value)
  2. list all projects; if that fails, skip the whole tick
  3. per project, concurrently: fetch snapshot → should_close? → closeProject()
     authorized as the owner recorded in that snapshot
  4. per-project failures are logged and counted, never raised

Ticks start on a fixed interval (start-to-start). At most one tick is in
flight: a tick whose start finds the guard held is skipped, not queued.
The guard is released in `finally`, and the sweep runs under a
max-duration watchdog so a hung ledger cannot wedge it.

A close against an already-closed project is rejected by the contract;
that rejection (AlreadyClosed) is a normal outcome of a stale snapshot.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Callable, Optional

from .errors import AlreadyClosed, LedgerUnavailable, StaleRead, Unauthorized
from .ledger import ProjectSnapshot

logger = logging.getLogger("crowdfund.reconciler")


def should_close(snapshot: ProjectSnapshot, now: int) -> bool:
    """Open, strictly past deadline, and short of goal. Integer wei comparison only."""
    return (
        snapshot.is_open
        and now > snapshot.deadline
        and snapshot.amount_raised < snapshot.goal
    )


class Outcome(Enum):
    KEPT = "kept"                      # no close needed
    CLOSED = "closed"                  # closeProject mined
    ALREADY_CLOSED = "already_closed"  # lost a race; benign
    FAILED = "failed"                  # fetch or close failed; retry next tick


@dataclass
class TickReport:
    started_at: float
    now: int = 0
    projects: int = 0
    kept: int = 0
    closed: int = 0
    already_closed: int = 0
    failed: int = 0
    duration: float = 0.0
    aborted: str = ""    # "" | "registry_unavailable" | "watchdog" | "error: ..."

    def count(self, outcome: Outcome) -> None:
        if outcome is Outcome.KEPT:
            self.kept += 1
        elif outcome is Outcome.CLOSED:
            self.closed += 1
        elif outcome is Outcome.ALREADY_CLOSED:
            self.already_closed += 1
        else:
            self.failed += 1


class Reconciler:
    """
    Usage:
        reconciler = Reconciler(registry, ledger, interval=30)
        reconciler.start()          # background schedule
        await reconciler.tick()     # or drive one sweep by hand
        await reconciler.stop()
    """

    def __init__(
        self,
        registry,
        ledger,
        interval: float = 30.0,
        max_tick_seconds: float = 180.0,
        call_timeout: float = 15.0,
        close_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._registry = registry
        self._ledger = ledger
        self._interval = interval
        self._max_tick = max_tick_seconds
        self._call_timeout = call_timeout
        self._close_timeout = close_timeout or call_timeout
        self._clock = clock

        # In-flight guard. Only tick() touches these.
        self._tick_running: bool = False
        self._tick_started_mono: float = 0.0
        self._tick_seq: int = 0

        self._schedule_task: Optional[asyncio.Task] = None
        self._tick_tasks: set = set()

        self.last_report: Optional[TickReport] = None
        self.ticks_run: int = 0
        self.ticks_skipped: int = 0
        self.total_closed: int = 0

    @property
    def tick_running(self) -> bool:
        return self._tick_running

    # ============================================================
    # ONE TICK
    # ============================================================

    async def tick(self) -> None:
        """Run one sweep unless one is already in flight. Never raises."""
        if self._tick_running:
            held = time.monotonic() - self._tick_started_mono
            if held <= self._max_tick:
                self.ticks_skipped += 1
                logger.warning(
                    f"Reconcile: previous tick still running ({held:.1f}s): skipping this tick"
                )
                return
            # Watchdog should have ended it already; do not stay wedged.
            logger.error(
                f"Reconcile: guard held {held:.1f}s > {self._max_tick}s: forcing release"
            )

        self._tick_seq += 1
        seq = self._tick_seq
        self._tick_running = True
        started_mono = time.monotonic()
        self._tick_started_mono = started_mono
        report = TickReport(started_at=time.time())
        try:
            await asyncio.wait_for(self._sweep(report), timeout=self._max_tick)
        except asyncio.TimeoutError:
            report.aborted = "watchdog"
            logger.warning(
                f"Reconcile: tick exceeded {self._max_tick}s: cancelled "
                f"({report.closed} closed, {report.failed} failed before cutoff)"
            )
        except Exception as e:
            report.aborted = f"error: {type(e).__name__}: {e}"
            logger.error(f"Reconcile: tick crashed: {type(e).__name__}: {e}", exc_info=True)
        finally:
            # A force-released tick must not clear the guard of its successor.
            if self._tick_seq == seq:
                self._tick_running = False
            report.duration = time.monotonic() - started_mono
            self.last_report = report
            self.ticks_run += 1
            self.total_closed += report.closed

        if not report.aborted:
            logger.info(
                f"Reconcile tick: {report.projects} projects | closed={report.closed} "
                f"already_closed={report.already_closed} failed={report.failed} "
                f"| {report.duration:.2f}s"
            )

    async def _sweep(self, report: TickReport) -> None:
        now = int(self._clock())
        report.now = now
        logger.debug(f"Reconcile tick start: now={now}")

        try:
            project_ids = await asyncio.wait_for(
                self._registry.list_project_ids(), timeout=self._call_timeout
            )
        except (LedgerUnavailable, asyncio.TimeoutError) as e:
            report.aborted = "registry_unavailable"
            logger.warning(f"Reconcile: cannot list projects, skipping tick: {e or 'timeout'}")
            return

        report.projects = len(project_ids)
        if not project_ids:
            return

        async def _unit(pid: str) -> None:
            report.count(await self._reconcile_project(pid, now))

        # Counted as they finish so a watchdog cutoff still reports partial progress.
        results = await asyncio.gather(*(_unit(pid) for pid in project_ids), return_exceptions=True)
        for pid, result in zip(project_ids, results):
            if isinstance(result, Exception):
                report.count(Outcome.FAILED)
                logger.error(f"Reconcile [{pid}]: unexpected {type(result).__name__}: {result}")

    async def _reconcile_project(self, project_id: str, now: int) -> Outcome:
        """Fetch → decide → maybe close, for one project. Isolated from siblings."""
        try:
            snapshot = await asyncio.wait_for(
                self._registry.fetch_snapshot(project_id), timeout=self._call_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Reconcile [{project_id}]: snapshot timed out after {self._call_timeout}s")
            return Outcome.FAILED
        except (LedgerUnavailable, StaleRead) as e:
            logger.warning(f"Reconcile [{project_id}]: snapshot failed: {e}")
            return Outcome.FAILED
        except Exception as e:
            logger.warning(f"Reconcile [{project_id}]: snapshot failed: {type(e).__name__}: {e}")
            return Outcome.FAILED

        if not should_close(snapshot, now):
            return Outcome.KEPT

        logger.info(
            f"Reconcile [{project_id}]: deadline {snapshot.deadline} passed (now {now}), "
            f"raised {snapshot.amount_raised} < goal {snapshot.goal}: closing as {snapshot.owner}"
        )
        try:
            await asyncio.wait_for(
                self._ledger.close_project(project_id, authorized_as=snapshot.owner),
                timeout=self._close_timeout,
            )
        except AlreadyClosed as e:
            logger.info(f"Reconcile [{project_id}]: already closed ({e.reason})")
            return Outcome.ALREADY_CLOSED
        except Unauthorized as e:
            logger.warning(f"Reconcile [{project_id}]: close refused for owner {snapshot.owner}: {e.reason}")
            return Outcome.FAILED
        except asyncio.TimeoutError:
            logger.warning(f"Reconcile [{project_id}]: close timed out after {self._close_timeout}s")
            return Outcome.FAILED
        except Exception as e:
            logger.warning(f"Reconcile [{project_id}]: close failed: {type(e).__name__}: {e}")
            return Outcome.FAILED

        logger.info(f"Reconcile [{project_id}]: closed")
        return Outcome.CLOSED

    # ============================================================
    # SCHEDULE
    # ============================================================

    def _spawn_tick(self) -> None:
        task = asyncio.create_task(self.tick(), name="reconcile_tick")
        self._tick_tasks.add(task)
        task.add_done_callback(self._tick_tasks.discard)

    async def run_forever(self) -> None:
        """
        Start a tick every `interval` seconds, measured start-to-start.
        Slots missed while the event loop was stalled are dropped, not replayed.
        """
        logger.info(
            f"Reconciler started (interval: {self._interval}s, max tick: {self._max_tick}s)"
        )
        loop = asyncio.get_running_loop()
        next_start = loop.time()
        while True:
            self._spawn_tick()
            next_start += self._interval
            delay = next_start - loop.time()
            if delay < 0:
                missed = int(-delay // self._interval) + 1
                next_start += missed * self._interval
                delay = next_start - loop.time()
                logger.warning(f"Reconcile: schedule fell behind, dropped {missed} slot(s)")
            await asyncio.sleep(delay)

    def start(self) -> asyncio.Task:
        if self._schedule_task is None or self._schedule_task.done():
            self._schedule_task = asyncio.create_task(self.run_forever(), name="reconciler")
        return self._schedule_task

    async def stop(self) -> None:
        tasks = list(self._tick_tasks)
        if self._schedule_task is not None:
            tasks.append(self._schedule_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._schedule_task = None
        logger.info("Reconciler stopped")

    # ============================================================
    # STATUS
    # ============================================================

    def status(self) -> dict:
        return {
            "running": self._schedule_task is not None and not self._schedule_task.done(),
            "interval_seconds": self._interval,
            "max_tick_seconds": self._max_tick,
            "tick_in_flight": self._tick_running,
            "ticks_run": self.ticks_run,
            "ticks_skipped": self.ticks_skipped,
            "total_closed": self.total_closed,
            "last_tick": asdict(self.last_report) if self.last_report else None,
        }
