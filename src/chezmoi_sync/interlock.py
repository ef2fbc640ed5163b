"""Mutual exclusion between the push and pull pipelines.

The in-process lock serializes the two controller threads of one daemon; the
advisory file lock extends the same policy to the second daemon of a
two-service deployment and to manual runs from the command line.
"""

import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from filelock import FileLock, Timeout

from .constants import APP_NAME, INTERLOCK_FILE, INTERLOCK_HOLDER_FILE

logger = logging.getLogger(APP_NAME)


@dataclass
class Holder:
    """Diagnostic identity of the current interlock holder."""

    direction: str
    pid: int
    acquired_at: float


class Interlock:
    """A try/wait mutual-exclusion token shared by push and pull.

    Attributes:
        lock_path (Path): Advisory lock file.
        holder_path (Path): JSON file describing the holder while held.
    """

    def __init__(
        self,
        lock_path: Path = INTERLOCK_FILE,
        holder_path: Path = INTERLOCK_HOLDER_FILE,
    ):
        self.lock_path = lock_path
        self.holder_path = holder_path
        self._thread_lock = threading.Lock()
        self._file_lock: FileLock | None = None
        self._holder: Holder | None = None

    def _get_file_lock(self) -> FileLock:
        if self._file_lock is None:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            self._file_lock = FileLock(str(self.lock_path))
        return self._file_lock

    def acquire(self, direction: str, timeout: float | None = None) -> bool:
        """Acquires the interlock.

        Args:
            direction (str): 'push' or 'pull' (recorded as the holder).
            timeout (float | None): Seconds to wait. 0 means try-acquire;
                None waits indefinitely.

        Returns:
            bool: True if acquired, False on contention/timeout.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        if timeout is None:
            got = self._thread_lock.acquire()
        elif timeout <= 0:
            got = self._thread_lock.acquire(blocking=False)
        else:
            got = self._thread_lock.acquire(timeout=timeout)
        if not got:
            return False

        remaining = -1 if deadline is None else max(0.0, deadline - time.monotonic())
        try:
            self._get_file_lock().acquire(timeout=remaining)
        except Timeout:
            self._thread_lock.release()
            return False

        self._holder = Holder(direction, os.getpid(), time.time())
        self._write_holder(self._holder)
        logging.getLogger(f"{APP_NAME}.{direction}").debug("Interlock acquired")
        return True

    def try_acquire(self, direction: str) -> bool:
        """Non-blocking acquire; returns False immediately on contention."""
        return self.acquire(direction, timeout=0)

    def release(self) -> None:
        """Releases the interlock held by the calling controller."""
        holder = self._holder
        self._holder = None
        try:
            self.holder_path.unlink(missing_ok=True)
        except OSError as e:
            logger.debug(f"Could not remove holder file: {e}")
        try:
            self._get_file_lock().release()
        finally:
            self._thread_lock.release()
        if holder:
            logging.getLogger(f"{APP_NAME}.{holder.direction}").debug(
                "Interlock released"
            )

    @contextmanager
    def held(self, direction: str, timeout: float | None = None) -> Iterator[bool]:
        """Context manager yielding whether the interlock was acquired."""
        acquired = self.acquire(direction, timeout=timeout)
        try:
            yield acquired
        finally:
            if acquired:
                self.release()

    @property
    def holder(self) -> Holder | None:
        """The in-process holder, if this process holds the interlock."""
        return self._holder

    def _write_holder(self, holder: Holder) -> None:
        try:
            self.holder_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_file = self.holder_path.with_suffix(".tmp")
            tmp_file.write_text(json.dumps(holder.__dict__))
            os.replace(tmp_file, self.holder_path)
        except OSError as e:
            logger.debug(f"Could not record interlock holder: {e}")


def read_holder(holder_path: Path = INTERLOCK_HOLDER_FILE) -> Holder | None:
    """Reads the holder record written by whichever process holds the interlock.

    Records left behind by a process that no longer exists are ignored.
    """
    try:
        data = json.loads(holder_path.read_text())
        holder = Holder(
            str(data["direction"]), int(data["pid"]), float(data["acquired_at"])
        )
    except (OSError, ValueError, KeyError, TypeError):
        return None
    return holder if process_alive(holder.pid) else None


def process_alive(pid: int) -> bool:
    """True unless no process with this pid exists."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        pass
    return True
