"""PID lock file giving one harness process exclusive use of a mode."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from devpilot.harness.errors import HarnessLocked

logger = logging.getLogger(__name__)


class HarnessLock:
    """Exclusive `<state_dir>/<mode>.lock` holding the owner PID."""

    def __init__(self, lock_path: Path, *, pid: int | None = None) -> None:
        self.lock_path = lock_path
        self.pid = pid if pid is not None else os.getpid()
        self._held = False

    def acquire(self) -> None:
        """Publish the PID file atomically; readers never see a half-written lock."""

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        staging = self.lock_path.with_name(f"{self.lock_path.name}.{self.pid}.tmp")
        staging.write_text(f"{self.pid}\n", "utf-8")
        try:
            while True:
                try:
                    os.link(staging, self.lock_path)
                except FileExistsError:
                    owner = _read_pid(self.lock_path)
                    if owner is not None and owner != self.pid and _pid_alive(owner):
                        raise HarnessLocked(owner, self.lock_path) from None
                    logger.warning(
                        "Taking over stale harness lock %s (pid=%s)",
                        self.lock_path,
                        owner,
                    )
                    self.lock_path.unlink(missing_ok=True)
                    continue
                self._held = True
                return
        finally:
            staging.unlink(missing_ok=True)

    def release(self) -> None:
        if not self._held:
            return
        if _read_pid(self.lock_path) == self.pid:
            self.lock_path.unlink(missing_ok=True)
        self._held = False


@contextmanager
def run_lock(lock_path: Path) -> Iterator[HarnessLock]:
    lock = HarnessLock(lock_path)
    lock.acquire()
    try:
        yield lock
    finally:
        lock.release()


def _read_pid(lock_path: Path) -> int | None:
    try:
        raw = lock_path.read_text("utf-8").strip()
    except FileNotFoundError:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True
