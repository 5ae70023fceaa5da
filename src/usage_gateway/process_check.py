"""Single-instance guard backed by a PID file.

The PID file lives at a well-known path. Its state is one of:

    ABSENT              no file
    RECORDED_AND_LIVE   file names a running process -> "already running"
    RECORDED_BUT_STALE  file names a dead process, or is unreadable

A stale record is treated exactly like an absent one. Graceful shutdown
(SIGINT/SIGTERM) removes the record synchronously; an abrupt kill leaves a
stale record behind, which the liveness probe recovers from on next start.
"""

import enum
import os
import signal
import sys
import tempfile
from pathlib import Path

import logfire
import psutil

from .config import DEFAULT_PID_FILE


class PidState(enum.Enum):
    ABSENT = "absent"
    RECORDED_AND_LIVE = "recorded_and_live"
    RECORDED_BUT_STALE = "recorded_but_stale"


def _pid_alive(pid: int) -> bool:
    """Check whether a process with this PID exists and isn't a zombie."""
    if pid == os.getpid():
        return True
    if pid <= 0 or not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists, just owned by someone else
        return True


class SingleInstanceGuard:
    """Best-effort mutual exclusion between gateway processes.

    Usage:
        guard = SingleInstanceGuard()
        if not guard.acquire(os.getpid()):
            print("already running")
            return
        guard.install_signal_handlers()
    """

    def __init__(self, pid_file: Path | str = DEFAULT_PID_FILE):
        self.pid_file = Path(pid_file)

    def read_pid(self) -> int | None:
        """Return the recorded PID, or None if absent or unreadable."""
        try:
            return int(self.pid_file.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None
        except OSError as e:
            logfire.warning(f"Could not read PID file {self.pid_file}: {e}")
            return None

    def probe(self) -> PidState:
        """Classify the current PID record."""
        if not self.pid_file.exists():
            return PidState.ABSENT

        pid = self.read_pid()
        if pid is None or not _pid_alive(pid):
            return PidState.RECORDED_BUT_STALE
        return PidState.RECORDED_AND_LIVE

    def is_service_running(self) -> bool:
        """True if a PID record exists AND its process is alive."""
        return self.probe() is PidState.RECORDED_AND_LIVE

    def save_pid(self, pid: int) -> None:
        """Persist a PID, replacing whatever record is there.

        Written to a temp file and renamed so a concurrent reader never
        sees a half-written PID.
        """
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.pid_file.parent, prefix=".pid-")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(str(pid))
            os.replace(tmp_path, self.pid_file)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise
        logfire.debug(f"Saved PID {pid} to {self.pid_file}")

    def acquire(self, pid: int) -> bool:
        """Record ``pid`` unless a live instance already holds the record.

        The first attempt is an exclusive create, so of two processes
        starting at the same moment only one can win it; the loser then
        probes, finds the winner alive, and backs off.

        Returns:
            True if this process now owns the record, False if another
            live instance does.
        """
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.pid_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            state = self.probe()
            if state is PidState.RECORDED_AND_LIVE:
                logfire.info(f"Gateway already running (PID {self.read_pid()})")
                return False
            logfire.info(f"Replacing stale PID record {self.pid_file}")
            self.save_pid(pid)
            return True

        with os.fdopen(fd, "w") as f:
            f.write(str(pid))
        logfire.debug(f"Saved PID {pid} to {self.pid_file}")
        return True

    def cleanup_pid_file(self, only_if_owned: bool = False) -> None:
        """Remove the PID record.

        Args:
            only_if_owned: Leave the file alone unless it names this process.
        """
        if only_if_owned and self.read_pid() not in (None, os.getpid()):
            return
        try:
            self.pid_file.unlink()
        except FileNotFoundError:
            return
        logfire.debug(f"Removed PID file {self.pid_file}")

    def install_signal_handlers(self) -> None:
        """Remove the PID record and exit 0 on SIGINT or SIGTERM."""

        def _handle(signum: int, frame) -> None:
            if signum == signal.SIGINT:
                print("Received SIGINT, cleaning up...")
            self.cleanup_pid_file(only_if_owned=True)
            sys.exit(0)

        signal.signal(signal.SIGINT, _handle)
        signal.signal(signal.SIGTERM, _handle)

