"""
Runtime configuration for the UPnP daemon.
"""
from dataclasses import dataclass, field, fields
from typing import List, Optional
import json
import os


LOG_LEVEL_ENV = "UPNP_DAEMON_LOG"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class DaemonConfig:
    """Settings for one daemon process. The port mappings themselves live in ``rules_file``."""

    # Rule source
    rules_file: str = "ports.csv"

    # Scheduling
    interval: float = 60.0  # Seconds between the starts of two cycles
    oneshot: bool = False

    # Process lifecycle
    foreground: bool = False
    pid_file: str = "/tmp/upnp-daemon.pid"

    # Gateway access
    discovery_timeout: float = 2.0  # SSDP wait per candidate
    control_timeout: float = 5.0  # Per add/remove request
    max_concurrency: int = 4  # Rules reconciled at the same time
    discovery_rate_limit: int = 4  # Discovery broadcasts per second
    interfaces: List[str] = field(default_factory=list)  # Pinned candidates; empty means enumerate

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None
    json_logs: bool = False

    @classmethod
    def from_file(cls, path: str) -> "DaemonConfig":
        """Load configuration from a JSON file. Unknown keys are rejected."""
        with open(path, "r") as f:
            data = json.load(f)

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**data)

    def to_file(self, path: str):
        """Save configuration to a JSON file."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        with open(path, "w") as f:
            json.dump(data, f, indent=2)

    def apply_environment(self):
        """Take the log level from the environment when set."""
        level = os.environ.get(LOG_LEVEL_ENV)
        if level:
            self.log_level = level.upper()

    def validate(self) -> bool:
        """Validate configuration parameters."""
        if self.interval <= 0:
            raise ValueError(f"interval must be positive: {self.interval}")

        if self.discovery_timeout <= 0 or self.control_timeout <= 0:
            raise ValueError("timeouts must be positive")

        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        if self.discovery_rate_limit < 1:
            raise ValueError("discovery_rate_limit must be at least 1")

        if self.log_level.upper() not in LOG_LEVELS:
            raise ValueError(f"Invalid log level: {self.log_level}")

        if not self.rules_file:
            raise ValueError("rules_file must be set")

        return True
