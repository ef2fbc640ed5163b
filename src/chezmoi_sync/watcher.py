"""Filesystem change notifications for chezmoi's source tree.

The watcher only collects and coalesces events; all timing decisions belong
to the push controller, which pulls batches with `poll`.
"""

import logging
import math
import os
import queue
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from watchdog.events import (
    FileSystemEvent,
    FileSystemEventHandler,
    FileSystemMovedEvent,
)
from watchdog.observers import Observer

from .constants import APP_NAME, IGNORED_DIRS, MERGE_MARKER_FILE
from .interlock import process_alive

logger = logging.getLogger(f"{APP_NAME}.push")

_READ_ONLY_EVENTS = ("opened", "closed", "closed_no_write")

MERGE_LINGER = 1.0
"""float: Seconds after a merge during which late notifications are ignored."""


@dataclass
class ChangeBatch:
    """Coalesced change notifications.

    Attributes:
        paths (set[str]): Paths touched, relative to the watched root.
        first_seen (float): Monotonic time of the earliest event in the batch.
        last_seen (float): Monotonic time of the latest event in the batch.
    """

    paths: set[str] = field(default_factory=set)
    first_seen: float = 0.0
    last_seen: float = 0.0

    def merge(self, other: "ChangeBatch") -> None:
        if not self.paths:
            self.first_seen = other.first_seen
        self.paths |= other.paths
        self.last_seen = max(self.last_seen, other.last_seen)

    def __bool__(self) -> bool:
        return bool(self.paths)


class MergeMarker:
    """Flags the window in which a pull rewrites the watched tree.

    The flag is a file so that a push reactor running in another process
    ignores the pull's writes as well. It holds "<pid> <until>": `until` is
    "inf" while the merge runs, then a short linger for late notifications.
    A marker left behind by a dead process is ignored.

    Example:
        with MergeMarker().hold():
            repo.fast_forward_or_merge(remote, branch, strategy)
    """

    def __init__(
        self,
        path: Path = MERGE_MARKER_FILE,
        linger: float = MERGE_LINGER,
        clock=time.time,
    ):
        self.path = path
        self.linger = linger
        self.clock = clock

    @contextmanager
    def hold(self) -> Iterator[None]:
        self._write(math.inf)
        try:
            yield
        finally:
            self._write(self.clock() + self.linger)

    def active(self) -> bool:
        try:
            pid_text, until_text = self.path.read_text().split()
            pid, until = int(pid_text), float(until_text)
        except (OSError, ValueError):
            return False
        if math.isinf(until):
            return process_alive(pid)
        return self.clock() < until

    def _write(self, until: float) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_file = self.path.with_suffix(".tmp")
            tmp_file.write_text(f"{os.getpid()} {until}")
            os.replace(tmp_file, self.path)
        except OSError as e:
            logger.debug(f"Could not update merge marker: {e}")


class _QueueingHandler(FileSystemEventHandler):
    """Converts watchdog events into single-path batches on a queue."""

    def __init__(
        self,
        root: Path,
        sink: "queue.Queue[ChangeBatch]",
        clock=time.monotonic,
        marker: MergeMarker | None = None,
    ):
        super().__init__()
        self.root = root
        self.sink = sink
        self.clock = clock
        self.marker = marker

    def _relative(self, raw: str | bytes) -> str | None:
        path = Path(raw.decode() if isinstance(raw, bytes) else raw)
        try:
            rel = path.relative_to(self.root)
        except ValueError:
            return None
        if any(part in IGNORED_DIRS for part in rel.parts):
            return None
        return str(rel)

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type in _READ_ONLY_EVENTS:
            return

        candidates = [event.src_path]
        if isinstance(event, FileSystemMovedEvent):
            candidates.append(event.dest_path)

        paths = {p for p in map(self._relative, candidates) if p}
        if not paths:
            return

        if self.marker is not None and self.marker.active():
            logger.debug(f"Ignoring pull write: {', '.join(sorted(paths))}")
            return

        now = self.clock()
        logger.debug(f"{event.event_type}: {', '.join(sorted(paths))}")
        self.sink.put(ChangeBatch(paths, now, now))


class Watcher:
    """Recursive watch on one directory, exposed as a stream of ChangeBatch.

    Example:
        watcher = Watcher(Path("~/.local/share/chezmoi").expanduser())
        watcher.start()
        batch = watcher.poll(timeout=5)
        watcher.close()
    """

    def __init__(
        self,
        root: Path,
        observer_factory=Observer,
        marker: MergeMarker | None = None,
    ):
        self.root = root
        self._queue: "queue.Queue[ChangeBatch]" = queue.Queue()
        self._handler = _QueueingHandler(root, self._queue, marker=marker)
        self._observer_factory = observer_factory
        self._observer = None
        self._closed = False

    def start(self) -> "Watcher":
        if self._observer is None:
            self._observer = self._observer_factory()
            self._observer.schedule(self._handler, str(self.root), recursive=True)
            self._observer.start()
            logger.info(f"Watching: {self.root}")
        return self

    def poll(self, timeout: float | None) -> ChangeBatch | None:
        """Waits up to `timeout` seconds and returns all queued changes merged.

        Returns:
            ChangeBatch | None: None if nothing arrived (or the watcher closed).
        """
        try:
            batch = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        while True:
            try:
                batch.merge(self._queue.get_nowait())
            except queue.Empty:
                break
        return batch or None

    def events(self, idle_timeout: float = 1.0) -> Iterator[ChangeBatch]:
        """Lazily yields coalesced batches until the watcher is closed."""
        while not self._closed:
            batch = self.poll(idle_timeout)
            if batch:
                yield batch

    def close(self) -> None:
        """Stops the observer; pending `poll` calls return on their timeout."""
        self._closed = True
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
            logger.info("File watcher stopped")
