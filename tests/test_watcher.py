import os
import queue
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from watchdog.events import DirModifiedEvent, FileModifiedEvent, FileMovedEvent

from chezmoi_sync.watcher import ChangeBatch, MergeMarker, Watcher, _QueueingHandler


@pytest.fixture
def sink() -> "queue.Queue[ChangeBatch]":
    return queue.Queue()


@pytest.fixture
def handler(tmp_path: Path, sink: "queue.Queue[ChangeBatch]") -> _QueueingHandler:
    return _QueueingHandler(tmp_path, sink, clock=lambda: 42.0)


def test_file_events_become_relative_batches(
    handler: _QueueingHandler, sink: "queue.Queue[ChangeBatch]", tmp_path: Path
) -> None:
    """Verifies that modifications are queued relative to the watched root.

    Args:
        handler (_QueueingHandler): The handler fixture.
        sink (queue.Queue[ChangeBatch]): The handler's queue.
        tmp_path (Path): Pytest fixture for a temporary directory.
    """
    handler.on_any_event(FileModifiedEvent(str(tmp_path / "dot_config" / "git")))

    batch = sink.get_nowait()
    assert batch.paths == {"dot_config/git"}
    assert batch.first_seen == batch.last_seen == 42.0


def test_moves_report_both_paths(
    handler: _QueueingHandler, sink: "queue.Queue[ChangeBatch]", tmp_path: Path
) -> None:
    """Verifies that renames cover the old and the new name.

    Args:
        handler (_QueueingHandler): The handler fixture.
        sink (queue.Queue[ChangeBatch]): The handler's queue.
        tmp_path (Path): Pytest fixture for a temporary directory.
    """
    handler.on_any_event(
        FileMovedEvent(str(tmp_path / "dot_vimrc"), str(tmp_path / "dot_vimrc.tmpl"))
    )
    assert sink.get_nowait().paths == {"dot_vimrc", "dot_vimrc.tmpl"}


def test_git_internals_and_directories_are_ignored(
    handler: _QueueingHandler, sink: "queue.Queue[ChangeBatch]", tmp_path: Path
) -> None:
    """Verifies that our own commits do not re-trigger the reactor.

    Args:
        handler (_QueueingHandler): The handler fixture.
        sink (queue.Queue[ChangeBatch]): The handler's queue.
        tmp_path (Path): Pytest fixture for a temporary directory.
    """
    handler.on_any_event(FileModifiedEvent(str(tmp_path / ".git" / "index")))
    handler.on_any_event(DirModifiedEvent(str(tmp_path / "dot_config")))
    handler.on_any_event(FileModifiedEvent("/somewhere/else"))

    assert sink.empty()


def test_poll_merges_queued_batches(tmp_path: Path) -> None:
    """Verifies coalescing of everything queued since the last poll.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
    """
    watcher = Watcher(tmp_path, observer_factory=MagicMock())
    watcher._queue.put(ChangeBatch({"a"}, 1.0, 1.0))
    watcher._queue.put(ChangeBatch({"b"}, 2.0, 2.0))
    watcher._queue.put(ChangeBatch({"a"}, 3.0, 3.0))

    batch = watcher.poll(0)

    assert batch is not None
    assert batch.paths == {"a", "b"}
    assert batch.first_seen == 1.0
    assert batch.last_seen == 3.0
    assert watcher.poll(0) is None


def test_merge_marker_drops_pull_writes(tmp_path: Path) -> None:
    """Verifies that writes made during a merge and its linger are ignored.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
    """
    now = [1000.0]
    marker = MergeMarker(tmp_path / "pull-merging", linger=1.0, clock=lambda: now[0])
    root = tmp_path / "src"
    watcher = Watcher(root, observer_factory=MagicMock(), marker=marker)

    def touch() -> ChangeBatch | None:
        watcher._handler.on_any_event(FileModifiedEvent(str(root / "dot_zshrc")))
        return watcher.poll(0)

    assert touch() is not None
    with marker.hold():
        assert marker.active()
        assert touch() is None
    assert touch() is None

    now[0] += 1.5
    assert not marker.active()
    assert touch() is not None


def test_merge_marker_of_a_dead_process_is_ignored(
    tmp_path: Path, mocker: MagicMock
) -> None:
    """Verifies that a crash mid-merge does not blind the watcher forever.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        mocker (MagicMock): Pytest fixture for mocking.
    """
    path = tmp_path / "pull-merging"
    marker = MergeMarker(path)
    assert not marker.active()

    path.write_text(f"{os.getpid()} inf")
    assert marker.active()

    mocker.patch("chezmoi_sync.watcher.process_alive", return_value=False)
    assert not marker.active()

    path.write_text("garbage")
    assert not marker.active()


def test_start_and_close_drive_the_observer(tmp_path: Path) -> None:
    """Verifies the observer lifecycle.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
    """
    factory = MagicMock()
    observer = factory.return_value
    watcher = Watcher(tmp_path, observer_factory=factory)

    watcher.start()
    watcher.start()
    watcher.close()

    factory.assert_called_once()
    observer.schedule.assert_called_once_with(
        watcher._handler, str(tmp_path), recursive=True
    )
    observer.start.assert_called_once()
    observer.stop.assert_called_once()
    assert list(watcher.events(idle_timeout=0)) == []
