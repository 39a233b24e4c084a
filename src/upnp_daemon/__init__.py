"""
UPnP Daemon - keeps port forwardings open on UPnP gateways.

This package continuously re-applies a set of desired port mappings:
- Rules re-read from a ';'-separated file on every cycle
- Gateway discovery per local interface, with fallback across interfaces
- Idempotent remove-then-add application of each mapping
- Per-rule failure isolation and bounded concurrency
- Oneshot or periodic operation, foreground or as a background daemon
"""

__version__ = "0.1.0"

from upnp_daemon.config import DaemonConfig
from upnp_daemon.daemon import Daemon
from upnp_daemon.rules import PortMappingRule, Protocol, ReconciliationOutcome

__all__ = ["Daemon", "DaemonConfig", "PortMappingRule", "Protocol", "ReconciliationOutcome"]
