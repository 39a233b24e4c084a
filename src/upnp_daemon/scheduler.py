"""
Scheduler: drives reconciliation cycles once or at a fixed interval.
"""
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog

from upnp_daemon.config_source import LoadResult
from upnp_daemon.cycle import CycleReport, CycleRunner
from upnp_daemon.errors import ConfigLoadError
from upnp_daemon.metrics import MetricsCollector, get_metrics


RuleLoader = Callable[[], Awaitable[LoadResult]]


class SchedulerState(Enum):
    """Scheduler lifecycle states."""
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(frozen=True)
class RunMode:
    """Either a single cycle or cycles repeated every ``interval`` seconds."""
    interval: Optional[float] = None

    def __post_init__(self):
        if self.interval is not None and self.interval <= 0:
            raise ValueError(f"Interval must be positive: {self.interval}")

    @classmethod
    def oneshot(cls) -> "RunMode":
        return cls(interval=None)

    @classmethod
    def continuous(cls, interval: float) -> "RunMode":
        return cls(interval=float(interval))

    @property
    def is_oneshot(self) -> bool:
        return self.interval is None

    def __str__(self) -> str:
        return "oneshot" if self.is_oneshot else f"continuous({self.interval:g}s)"


@dataclass
class RunSummary:
    """What a scheduler run did, reported back to the process."""
    cycles_run: int = 0
    load_failures: int = 0
    rejected_rows: int = 0
    last_report: Optional[CycleReport] = None
    last_error: Optional[str] = None

    @property
    def all_applied(self) -> bool:
        """True if the most recent cycle ran and every rule in it was applied."""
        return self.last_report is not None and self.last_report.all_applied


class Scheduler:
    """
    Runs cycles until told to stop.

    State moves ``IDLE -> RUNNING`` for each cycle, back to ``IDLE`` while
    waiting, and to ``STOPPED`` once the run ends. Cancellation interrupts the
    wait between cycles but never aborts a cycle in flight.
    """

    def __init__(
        self,
        load_rules: RuleLoader,
        cycle_runner: CycleRunner,
        metrics: Optional[MetricsCollector] = None
    ):
        """
        Initialize scheduler.

        Args:
            load_rules: Coroutine function returning the current rule set
            cycle_runner: Runner executing one cycle
            metrics: Metrics collector (global one if not provided)
        """
        self.load_rules = load_rules
        self.cycle_runner = cycle_runner
        self.metrics = metrics or get_metrics()
        self.state = SchedulerState.IDLE
        self._active = False
        self.logger = structlog.get_logger()

    async def _run_one(self, summary: RunSummary) -> CycleReport:
        """Load the rules and run a cycle; raises ConfigLoadError if loading fails."""
        self.state = SchedulerState.RUNNING
        try:
            loaded = await self.load_rules()
        except ConfigLoadError as e:
            summary.load_failures += 1
            summary.last_error = str(e)
            self.metrics.increment_counter("cycles.load_failures")
            raise

        if loaded.rejected:
            summary.rejected_rows += len(loaded.rejected)
            self.metrics.increment_counter("rules.rejected_rows.total", len(loaded.rejected))

        report = await self.cycle_runner.run_cycle(loaded.rules)
        summary.cycles_run += 1
        summary.last_report = report
        summary.last_error = None
        return report

    async def run(self, mode: RunMode, cancel: Optional[asyncio.Event] = None) -> RunSummary:
        """
        Run cycles according to the mode.

        Args:
            mode: Oneshot or continuous with an interval
            cancel: Event that stops the run once set

        Returns:
            RunSummary of everything that ran

        Raises:
            ConfigLoadError: In oneshot mode, if the rule set cannot be loaded
        """
        if self._active:
            raise RuntimeError("Scheduler is already running")
        self._active = True

        cancel = cancel or asyncio.Event()
        summary = RunSummary()
        self.logger.info("scheduler_started", mode=str(mode))

        try:
            if mode.is_oneshot:
                await self._run_one(summary)
            else:
                await self._run_continuous(mode.interval, cancel, summary)
        finally:
            self._active = False
            self.state = SchedulerState.STOPPED
            self.logger.info(
                "scheduler_stopped",
                cycles=summary.cycles_run,
                load_failures=summary.load_failures,
            )

        return summary

    async def _run_continuous(self, interval: float, cancel: asyncio.Event, summary: RunSummary):
        loop = asyncio.get_running_loop()

        while not cancel.is_set():
            started = loop.time()
            try:
                await self._run_one(summary)
            except ConfigLoadError as e:
                # A broken rule file must not kill the daemon; try again next tick
                self.logger.error("config_load_failed", error=str(e), retry_in=interval)

            self.state = SchedulerState.IDLE
            remaining = interval - (loop.time() - started)
            if remaining <= 0:
                self.logger.warning("cycle_overran_interval", interval=interval, overrun=-remaining)
                continue

            try:
                await asyncio.wait_for(cancel.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass
