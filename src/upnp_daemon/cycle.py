"""
Cycle runner: reconciles every configured rule once.
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Sequence

import structlog

from upnp_daemon.errors import reason_of
from upnp_daemon.metrics import MetricsCollector, get_metrics
from upnp_daemon.reconciler import Reconciler
from upnp_daemon.rules import PortMappingRule, ReconciliationOutcome


@dataclass
class CycleReport:
    """Outcomes of one cycle, in rule order."""
    outcomes: List[ReconciliationOutcome] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    duration: float = 0.0

    def __iter__(self) -> Iterator[ReconciliationOutcome]:
        return iter(self.outcomes)

    def __len__(self) -> int:
        return len(self.outcomes)

    @property
    def applied(self) -> List[ReconciliationOutcome]:
        return [outcome for outcome in self.outcomes if outcome.applied]

    @property
    def failed(self) -> List[ReconciliationOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.applied]

    @property
    def all_applied(self) -> bool:
        return all(outcome.applied for outcome in self.outcomes)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at,
            "duration": self.duration,
            "applied": len(self.applied),
            "failed": len(self.failed),
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


class CycleRunner:
    """
    Runs the reconciler over a rule set with bounded concurrency.

    A failing rule never prevents the others from being attempted, and the
    cycle never raises because rules failed.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        max_concurrency: int = 4,
        metrics: Optional[MetricsCollector] = None
    ):
        """
        Initialize cycle runner.

        Args:
            reconciler: Reconciler applied to each rule
            max_concurrency: Maximum rules reconciled at the same time
            metrics: Metrics collector (global one if not provided)
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        self.reconciler = reconciler
        self.max_concurrency = max_concurrency
        self.metrics = metrics or get_metrics()
        self.logger = structlog.get_logger()

    async def _reconcile(self, rule: PortMappingRule, semaphore: asyncio.Semaphore) -> ReconciliationOutcome:
        async with semaphore:
            try:
                return await self.reconciler.apply(rule)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.exception("rule_internal_error", rule=rule.describe())
                return ReconciliationOutcome.failed(rule, type(e).__name__, reason_of(e))

    async def run_cycle(self, rules: Sequence[PortMappingRule]) -> CycleReport:
        """
        Reconcile every rule once.

        Args:
            rules: Rule set loaded for this cycle; not modified

        Returns:
            CycleReport with one outcome per rule, in input order
        """
        report = CycleReport()
        semaphore = asyncio.Semaphore(self.max_concurrency)

        self.logger.info("cycle_started", rules=len(rules))
        self.metrics.set_gauge("rules.configured", len(rules))

        with self.metrics.timer("cycle.duration.seconds") as timer:
            outcomes = await asyncio.gather(*(self._reconcile(rule, semaphore) for rule in rules))
        report.outcomes = list(outcomes)
        report.duration = timer.elapsed or 0.0

        self._record(report)
        return report

    def _record(self, report: CycleReport):
        self.metrics.increment_counter("cycles.total")

        for outcome in report:
            attempted = len(outcome.attempted_interfaces)
            failed_attempts = sum(1 for attempt in outcome.attempted_interfaces if not attempt.succeeded)
            self.metrics.increment_counter("candidates.attempted.total", attempted)
            self.metrics.increment_counter("candidates.failed.total", failed_attempts)

            if outcome.applied:
                self.metrics.increment_counter("rules.applied.total")
                self.logger.info(
                    "rule_applied",
                    rule=outcome.rule.describe(),
                    comment=outcome.rule.comment,
                    gateway=outcome.gateway_used,
                    via=outcome.attempted_addresses[-1] if attempted else None,
                )
            else:
                self.metrics.increment_counter("rules.failed.total")
                self.logger.warning(
                    "rule_failed",
                    rule=outcome.rule.describe(),
                    comment=outcome.rule.comment,
                    error_type=outcome.error_type,
                    reason=outcome.reason,
                    attempts=[
                        f"{attempt.local_address}: {attempt.reason}"
                        for attempt in outcome.attempted_interfaces
                    ],
                )

        self.logger.info(
            "cycle_completed",
            applied=len(report.applied),
            failed=len(report.failed),
            duration=round(report.duration, 3),
        )
