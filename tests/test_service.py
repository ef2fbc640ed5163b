import subprocess
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from chezmoi_sync import service
from chezmoi_sync.config import Config
from chezmoi_sync.constants import EXIT_TOOL_MISSING, SYSTEMD_UNITS


def test_control_linux_drives_both_units(mocker: MagicMock) -> None:
    """Verifies a single systemctl call covering push and pull.

    Args:
        mocker (MagicMock): Pytest fixture for mocking.
    """
    mocker.patch("chezmoi_sync.service.sys.platform", "linux")
    run = mocker.patch("chezmoi_sync.service.subprocess.run")
    run.return_value.returncode = 0

    assert service.control("restart") == 0
    run.assert_called_once_with(["systemctl", "--user", "restart", *SYSTEMD_UNITS])


def test_control_darwin_reports_first_failure(mocker: MagicMock) -> None:
    """Verifies that the service manager's exit status is passed through.

    Args:
        mocker (MagicMock): Pytest fixture for mocking.
    """
    mocker.patch("chezmoi_sync.service.sys.platform", "darwin")
    run = mocker.patch("chezmoi_sync.service.subprocess.run")
    run.side_effect = [MagicMock(returncode=0), MagicMock(returncode=3)]

    assert service.control("stop") == 3
    assert run.call_args_list[0].args[0] == [
        "brew",
        "services",
        "stop",
        "chezmoi-sync",
    ]


def test_control_without_service_manager(mocker: MagicMock) -> None:
    """Verifies exit 127 when systemctl is not installed.

    Args:
        mocker (MagicMock): Pytest fixture for mocking.
    """
    mocker.patch("chezmoi_sync.service.sys.platform", "linux")
    mocker.patch(
        "chezmoi_sync.service.subprocess.run", side_effect=FileNotFoundError
    )
    assert service.control("start") == EXIT_TOOL_MISSING


def test_control_rejects_unknown_action() -> None:
    with pytest.raises(ValueError):
        service.control("reload")


def test_is_service_enabled(mocker: MagicMock) -> None:
    """Verifies the per-direction service check.

    Args:
        mocker (MagicMock): Pytest fixture for mocking.
    """
    mocker.patch("chezmoi_sync.service.sys.platform", "linux")
    mocker.patch(
        "chezmoi_sync.service.subprocess.run",
        side_effect=[MagicMock(returncode=0), MagicMock(returncode=3)],
    )
    assert service.is_service_enabled() == {"push": True, "pull": False}


def test_render_units() -> None:
    """Verifies ExecStart, restart policy and the minimal environment."""
    config = Config(push_debounce=7, pull_interval=120)

    units = service.render_units("/opt/venv/bin/chezmoi-sync-daemon", config)

    push = units["chezmoi-sync-push.service"]
    pull = units["chezmoi-sync-pull.service"]
    assert "ExecStart=/opt/venv/bin/chezmoi-sync-daemon --only push" in push
    assert "RestartSec=7" in push
    assert "ExecStart=/opt/venv/bin/chezmoi-sync-daemon --only pull" in pull
    assert "every 120s" in pull
    for unit in (push, pull):
        assert "Restart=on-failure" in unit
        assert "Environment=PATH=/opt/venv/bin:/usr/local/bin:/usr/bin:/bin" in unit


def test_render_units_eager_push_restarts_after_one_second() -> None:
    config = Config(push_debounce=0)
    units = service.render_units("/usr/bin/chezmoi-sync-daemon", config)
    push = units["chezmoi-sync-push.service"]
    assert "RestartSec=1" in push
    assert "Environment=PATH=/usr/bin:/usr/local/bin:/bin" in push


def test_install_linux_writes_and_enables(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies that both units are written then enabled.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        mocker (MagicMock): Pytest fixture for mocking.
    """
    run = mocker.patch("chezmoi_sync.service.subprocess.run")

    service.install_linux(tmp_path / "user", "/usr/bin/chezmoi-sync-daemon", Config())

    for name in SYSTEMD_UNITS:
        assert (tmp_path / "user" / name).exists()
    assert run.call_args_list[-1].args[0] == [
        "systemctl",
        "--user",
        "enable",
        "--now",
        *SYSTEMD_UNITS,
    ]


def test_uninstall_removes_units(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies that uninstall disables and deletes both units.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        mocker (MagicMock): Pytest fixture for mocking.
    """
    mocker.patch("chezmoi_sync.service.sys.platform", "linux")
    mocker.patch("chezmoi_sync.service.unit_dir", return_value=tmp_path)
    run = mocker.patch("chezmoi_sync.service.subprocess.run")
    for name in SYSTEMD_UNITS:
        (tmp_path / name).write_text("[Unit]\n")

    service.uninstall()

    assert not any((tmp_path / name).exists() for name in SYSTEMD_UNITS)
    run.assert_any_call(
        ["systemctl", "--user", "disable", "--now", *SYSTEMD_UNITS],
        stderr=subprocess.DEVNULL,
    )


def test_missing_executable_exits(mocker: MagicMock) -> None:
    mocker.patch("chezmoi_sync.service.shutil.which", return_value=None)
    with pytest.raises(SystemExit):
        service.get_executable()
