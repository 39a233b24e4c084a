"""
Process lifecycle: single-instance PID file, daemonization and stop signals.

None of this touches reconciliation state; the scheduler only sees the
cancellation event produced by :func:`install_signal_handlers`.
"""
import asyncio
import fcntl
import os
import signal
import sys
from typing import Iterable, Optional

import structlog

from upnp_daemon.errors import AlreadyRunningError


class PidFile:
    """
    Exclusively locked PID file.

    The lock is held for the lifetime of the process; a second instance fails
    to acquire it and raises :class:`AlreadyRunningError`.
    """

    def __init__(self, path: str):
        self.path = path
        self._fd: Optional[int] = None
        self.logger = structlog.get_logger()

    @property
    def locked(self) -> bool:
        return self._fd is not None

    def _read_owner(self) -> Optional[int]:
        try:
            with open(self.path, "r") as f:
                return int(f.read().strip() or 0) or None
        except (OSError, ValueError):
            return None

    def acquire(self):
        """Lock the file and record this process's PID in it."""
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise AlreadyRunningError(self.path, self._read_owner()) from None

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        os.fsync(fd)
        self._fd = fd
        self.logger.debug("pid_file_locked", path=self.path, pid=os.getpid())

    def release(self):
        """Remove the file and drop the lock."""
        if self._fd is None:
            return
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass
        finally:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
            os.close(self._fd)
            self._fd = None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def daemonize(working_directory: str = "/"):
    """
    Detach from the controlling terminal (double fork).

    Standard streams are redirected to ``/dev/null``; run in the foreground to
    see log output.
    """
    if os.fork() > 0:
        os._exit(0)

    os.setsid()

    if os.fork() > 0:
        os._exit(0)

    os.chdir(working_directory)
    os.umask(0o022)

    sys.stdout.flush()
    sys.stderr.flush()
    devnull = os.open(os.devnull, os.O_RDWR)
    for stream in (sys.stdin, sys.stdout, sys.stderr):
        os.dup2(devnull, stream.fileno())
    os.close(devnull)


def install_signal_handlers(
    cancel: asyncio.Event,
    signals: Iterable[int] = (signal.SIGINT, signal.SIGTERM)
) -> None:
    """
    Set ``cancel`` when a stop signal arrives.

    Must be called from within the running event loop.
    """
    loop = asyncio.get_running_loop()
    logger = structlog.get_logger()

    def _stop(signum: int):
        logger.info("stop_requested", signal=signal.Signals(signum).name)
        cancel.set()

    for sig in signals:
        try:
            loop.add_signal_handler(sig, _stop, sig)
        except NotImplementedError:
            pass
