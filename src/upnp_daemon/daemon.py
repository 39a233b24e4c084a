"""
Daemon class that wires the reconciliation engine together.
"""
import asyncio
from typing import Optional

import structlog
from asyncio_throttle import Throttler

from upnp_daemon.config import DaemonConfig
from upnp_daemon.config_source import RuleSource
from upnp_daemon.cycle import CycleRunner
from upnp_daemon.gateway import GatewayClient, MiniUPnPGatewayClient
from upnp_daemon.interfaces import InterfaceEnumerator, PsutilInterfaceEnumerator, StaticInterfaceEnumerator
from upnp_daemon.metrics import MetricsCollector, get_metrics
from upnp_daemon.reconciler import Reconciler
from upnp_daemon.scheduler import RunMode, RunSummary, Scheduler


class Daemon:
    """Keeps the configured port mappings applied on the reachable gateways."""

    def __init__(
        self,
        config: Optional[DaemonConfig] = None,
        gateway_client: Optional[GatewayClient] = None,
        interface_enumerator: Optional[InterfaceEnumerator] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        """
        Initialize the daemon.

        Args:
            config: Daemon configuration (uses defaults if not provided)
            gateway_client: Gateway capability (miniupnpc-backed if not provided)
            interface_enumerator: Candidate address source (psutil-backed, or
                the pinned ``config.interfaces`` when set)
            metrics: Metrics collector (global one if not provided)
        """
        self.config = config or DaemonConfig()
        self.config.validate()

        self.logger = structlog.get_logger()
        self.metrics = metrics or get_metrics()

        self.gateway_client = gateway_client or MiniUPnPGatewayClient(
            discovery_timeout=self.config.discovery_timeout,
            control_timeout=self.config.control_timeout,
        )
        if interface_enumerator is None:
            if self.config.interfaces:
                interface_enumerator = StaticInterfaceEnumerator(self.config.interfaces)
            else:
                interface_enumerator = PsutilInterfaceEnumerator()
        self.interface_enumerator = interface_enumerator

        self.rule_source = RuleSource(self.config.rules_file)
        self.reconciler = Reconciler(
            self.gateway_client,
            self.interface_enumerator,
            throttler=Throttler(rate_limit=self.config.discovery_rate_limit, period=1.0),
        )
        self.cycle_runner = CycleRunner(
            self.reconciler,
            max_concurrency=self.config.max_concurrency,
            metrics=self.metrics,
        )
        self.scheduler = Scheduler(self.rule_source.load, self.cycle_runner, metrics=self.metrics)

    @property
    def mode(self) -> RunMode:
        if self.config.oneshot:
            return RunMode.oneshot()
        return RunMode.continuous(self.config.interval)

    async def run(self, cancel: Optional[asyncio.Event] = None) -> RunSummary:
        """
        Run the scheduler in the configured mode until done or cancelled.

        Raises:
            ConfigLoadError: In oneshot mode, if the rule file cannot be loaded
        """
        self.logger.info(
            "daemon_starting",
            rules_file=self.config.rules_file,
            mode=str(self.mode),
        )
        return await self.scheduler.run(self.mode, cancel)

    def get_stats(self) -> dict:
        """Get daemon statistics."""
        return {
            "state": self.scheduler.state.value,
            "mode": str(self.mode),
            "rules_file": self.config.rules_file,
            **self.metrics.get_summary(),
        }
