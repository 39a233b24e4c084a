"""
Port mapping rules and per-rule reconciliation outcomes.
"""
from enum import Enum
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Tuple
import ipaddress


class Protocol(str, Enum):
    """Transport protocols a port forwarding can be requested for."""
    UDP = "UDP"
    TCP = "TCP"

    @classmethod
    def parse(cls, value: str) -> "Protocol":
        """Parse a protocol name, ignoring case and surrounding whitespace."""
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise ValueError(f"Unknown protocol: {value!r} (expected UDP or TCP)") from None


def parse_ipv4(value: str) -> str:
    """Validate an IPv4 address and return its canonical string form."""
    try:
        return str(ipaddress.IPv4Address(value.strip()))
    except ipaddress.AddressValueError as e:
        raise ValueError(f"Invalid IPv4 address: {value!r}") from e


@dataclass(frozen=True)
class PortMappingRule:
    """
    One desired port forwarding.

    The gateway stores mappings by ``(external_port, protocol)``; applying a rule
    with an identity that is already mapped updates the existing entry.
    """
    external_port: int
    protocol: Protocol
    lease_seconds: int = 0
    comment: str = ""
    address: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.external_port, bool) or not isinstance(self.external_port, int):
            raise ValueError(f"Port must be an integer: {self.external_port!r}")
        if not 1 <= self.external_port <= 65535:
            raise ValueError(f"Invalid port: {self.external_port}")
        if not isinstance(self.protocol, Protocol):
            object.__setattr__(self, "protocol", Protocol.parse(str(self.protocol)))
        if isinstance(self.lease_seconds, bool) or not isinstance(self.lease_seconds, int):
            raise ValueError(f"Lease duration must be an integer: {self.lease_seconds!r}")
        if self.lease_seconds < 0:
            raise ValueError(f"Lease duration must be non-negative: {self.lease_seconds}")
        if self.address is not None:
            object.__setattr__(self, "address", parse_ipv4(self.address))

    @property
    def identity(self) -> Tuple[int, Protocol]:
        """Key under which the gateway stores this mapping."""
        return (self.external_port, self.protocol)

    @property
    def is_address_agnostic(self) -> bool:
        """True when any local interface may serve this rule."""
        return self.address is None

    def describe(self) -> str:
        """Human-readable one-line description, e.g. ``12345/UDP -> *``."""
        target = self.address or "*"
        return f"{self.external_port}/{self.protocol.value} -> {target}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging and JSON output."""
        return {
            "address": self.address,
            "port": self.external_port,
            "protocol": self.protocol.value,
            "duration": self.lease_seconds,
            "comment": self.comment,
        }


class OutcomeStatus(str, Enum):
    """Final status of one rule in one cycle."""
    APPLIED = "applied"
    FAILED = "failed"


@dataclass(frozen=True)
class CandidateAttempt:
    """Result of trying one candidate interface for a rule."""
    local_address: str
    succeeded: bool
    gateway: Optional[str] = None
    error_type: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "local_address": self.local_address,
            "succeeded": self.succeeded,
            "gateway": self.gateway,
            "error_type": self.error_type,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ReconciliationOutcome:
    """
    Per-rule result of one cycle.

    Used only for reporting; outcomes never influence later cycles.
    """
    rule: PortMappingRule
    status: OutcomeStatus
    gateway_used: Optional[str] = None
    error_type: Optional[str] = None
    reason: Optional[str] = None
    attempted_interfaces: List[CandidateAttempt] = field(default_factory=list)

    @property
    def applied(self) -> bool:
        return self.status is OutcomeStatus.APPLIED

    @property
    def attempted_addresses(self) -> List[str]:
        """Candidate addresses in the order they were tried."""
        return [attempt.local_address for attempt in self.attempted_interfaces]

    @classmethod
    def applied_via(
        cls,
        rule: PortMappingRule,
        gateway: str,
        attempts: List[CandidateAttempt]
    ) -> "ReconciliationOutcome":
        return cls(
            rule=rule,
            status=OutcomeStatus.APPLIED,
            gateway_used=gateway,
            attempted_interfaces=list(attempts),
        )

    @classmethod
    def failed(
        cls,
        rule: PortMappingRule,
        error_type: str,
        reason: str,
        attempts: Optional[List[CandidateAttempt]] = None
    ) -> "ReconciliationOutcome":
        return cls(
            rule=rule,
            status=OutcomeStatus.FAILED,
            error_type=error_type,
            reason=reason,
            attempted_interfaces=list(attempts or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "rule": self.rule.describe(),
            "status": self.status.value,
            "gateway": self.gateway_used,
            "error_type": self.error_type,
            "reason": self.reason,
            "attempts": [attempt.to_dict() for attempt in self.attempted_interfaces],
        }
