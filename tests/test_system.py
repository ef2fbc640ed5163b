from pathlib import Path
from unittest.mock import MagicMock

import pytest

from chezmoi_sync import system
from chezmoi_sync.constants import UNKNOWN_HOST


@pytest.fixture
def no_local_name() -> system.SystemStrategy:
    """A strategy without a platform hostname, forcing the socket fallback."""
    return system.SystemStrategy()


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("My-Laptop", "my-laptop"),
        ("work_station 2", "work-station-2"),
        ("büro", "b-ro"),
        ("!!!", UNKNOWN_HOST),
        ("", UNKNOWN_HOST),
    ],
)
def test_normalize_identity(raw: str, expected: str) -> None:
    """Verifies lowercasing, character replacement and the empty fallback.

    Args:
        raw (str): The raw hostname label.
        expected (str): The expected token.
    """
    assert system.normalize_identity(raw) == expected


def test_cold_start_creates_identity(
    tmp_path: Path, mocker: MagicMock, no_local_name: system.SystemStrategy
) -> None:
    """Verifies that a fresh host named `My.Laptop.local` becomes `my-laptop`.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        mocker (MagicMock): Pytest fixture for mocking.
        no_local_name (system.SystemStrategy): Strategy fixture.
    """
    mocker.patch("socket.gethostname", return_value="My.Laptop.local")
    id_file = tmp_path / "state" / "machine-id"

    token = system.ensure_identity(id_file, tmp_path / "legacy", no_local_name)

    assert token == "my-laptop"
    assert id_file.read_text() == "my-laptop\n"


def test_fqdn_is_cut_to_first_label(
    mocker: MagicMock, no_local_name: system.SystemStrategy
) -> None:
    """Verifies that non-mDNS hostnames keep only their first label.

    Args:
        mocker (MagicMock): Pytest fixture for mocking.
        no_local_name (system.SystemStrategy): Strategy fixture.
    """
    mocker.patch("socket.gethostname", return_value="Build01.corp.example.com")
    assert system.derive_identity(no_local_name) == "build01"


def test_platform_hostname_is_preferred(mocker: MagicMock) -> None:
    """Verifies that macOS LocalHostName wins over the socket hostname.

    Args:
        mocker (MagicMock): Pytest fixture for mocking.
    """
    mock_run = mocker.patch("subprocess.run")
    mock_run.return_value = MagicMock(returncode=0, stdout="Work-MBP\n")
    mocker.patch("socket.gethostname", return_value="ignored.local")

    assert system.derive_identity(system.MacOSStrategy()) == "work-mbp"
    assert mock_run.call_args[0][0] == ["scutil", "--get", "LocalHostName"]


def test_existing_identity_is_never_rewritten(
    tmp_path: Path, mocker: MagicMock
) -> None:
    """Verifies that an operator-edited identity survives restarts.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        mocker (MagicMock): Pytest fixture for mocking.
    """
    id_file = tmp_path / "machine-id"
    id_file.write_text("Custom_Name\n")
    derive = mocker.patch("chezmoi_sync.system.derive_identity")

    assert system.ensure_identity(id_file, tmp_path / "legacy") == "Custom_Name"
    assert system.ensure_identity(id_file, tmp_path / "legacy") == "Custom_Name"
    assert id_file.read_text() == "Custom_Name\n"
    derive.assert_not_called()


def test_legacy_identity_is_migrated(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies that a manual-install machine-id is copied to the state dir.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        mocker (MagicMock): Pytest fixture for mocking.
    """
    legacy = tmp_path / "legacy" / "machine-id"
    legacy.parent.mkdir()
    legacy.write_text("old-laptop\n")
    id_file = tmp_path / "state" / "machine-id"
    derive = mocker.patch("chezmoi_sync.system.derive_identity")

    assert system.ensure_identity(id_file, legacy) == "old-laptop"
    assert id_file.read_text() == "old-laptop\n"
    assert legacy.exists()
    derive.assert_not_called()


def test_get_system_by_platform(mocker: MagicMock) -> None:
    """Verifies the platform strategy factory.

    Args:
        mocker (MagicMock): Pytest fixture for mocking.
    """
    mocker.patch("sys.platform", "darwin")
    assert isinstance(system.get_system(), system.MacOSStrategy)
    mocker.patch("sys.platform", "linux")
    assert isinstance(system.get_system(), system.LinuxStrategy)


def test_linux_notify_requires_notify_send(mocker: MagicMock) -> None:
    """Verifies that notifications are silently skipped without notify-send.

    Args:
        mocker (MagicMock): Pytest fixture for mocking.
    """
    mocker.patch("shutil.which", return_value=None)
    mock_run = mocker.patch("subprocess.run")

    system.LinuxStrategy().notify("title", "body")

    mock_run.assert_not_called()
