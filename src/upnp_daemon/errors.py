"""
Exception hierarchy for the UPnP daemon.

Errors are isolated at the smallest possible scope: candidate -> rule -> cycle.
Only configuration load failures and lifecycle errors ever reach the process.
"""
from typing import Optional


class UPnPDaemonError(Exception):
    """Base class for all daemon errors."""


class ConfigLoadError(UPnPDaemonError):
    """
    Raised when the rule source itself cannot be read.

    Row-level problems never raise this; they are reported as rejected rows.
    """

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class DiscoveryError(UPnPDaemonError):
    """Gateway discovery from a candidate address failed."""

    def __init__(self, message: str, local_address: Optional[str] = None):
        super().__init__(message)
        self.local_address = local_address


class NoGatewayFound(DiscoveryError):
    """No gateway answered the discovery broadcast within the timeout."""


class GatewayRejected(UPnPDaemonError):
    """The gateway refused (or timed out on) a control request."""

    def __init__(self, message: str, operation: str = "", gateway: Optional[str] = None):
        super().__init__(message)
        self.operation = operation
        self.gateway = gateway


class AllCandidatesExhausted(UPnPDaemonError):
    """Every candidate interface failed for a rule."""

    def __init__(self, message: str, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.last_error = last_error


class AlreadyRunningError(UPnPDaemonError):
    """Another daemon instance holds the PID file lock."""

    def __init__(self, pid_file: str, pid: Optional[int] = None):
        detail = f" (pid {pid})" if pid else ""
        super().__init__(f"Another instance is already running{detail}, lock held on {pid_file}")
        self.pid_file = pid_file
        self.pid = pid


def reason_of(error: BaseException) -> str:
    """Short, log-friendly failure reason: the exception class plus its message."""
    message = str(error)
    name = type(error).__name__
    return f"{name}: {message}" if message else name
