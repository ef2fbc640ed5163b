"""Tests for the configuration management subsystem."""

import logging
from pathlib import Path

import pytest

from chezmoi_sync.config import (
    DEFAULT_COMMIT_TEMPLATE,
    Config,
    parse_bool,
    parse_size,
    parse_time,
)
from chezmoi_sync.outcomes import ConfigError


def test_config_defaults() -> None:
    """Verifies that the configuration initializes with the documented defaults."""
    conf = Config()
    assert conf.pull_interval == 300
    assert conf.push_debounce == 5
    assert conf.remote_name == "origin"
    assert conf.branch_name == "main"
    assert conf.auto_resolve is True
    assert conf.verify_apply_after_push is False
    assert conf.commit_message_template == DEFAULT_COMMIT_TEMPLATE
    assert conf.validate() == []


def test_load_missing_file_uses_defaults(tmp_path: Path) -> None:
    """Verifies that an absent config file is not an error.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
    """
    conf = Config.load(tmp_path / "nope.conf")
    assert conf == Config()
    assert conf.source is None


def test_load_parses_shell_style_file(tmp_path: Path) -> None:
    """Verifies KEY=VALUE parsing, quoting, comments and unit suffixes.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
    """
    conf_file = tmp_path / "chezmoi-sync.conf"
    conf_file.write_text(
        "# chezmoi-sync configuration\n"
        "PULL_INTERVAL_SECONDS=10m\n"
        'PUSH_DEBOUNCE_SECONDS="2"\n'
        "REMOTE_NAME=upstream\n"
        "BRANCH_NAME='dotfiles'\n"
        "AUTO_RESOLVE=false\n"
        f"WATCH_PATH={tmp_path / 'src'}\n"
        "MAX_LOG_SIZE=1mb\n"
        "LOG_LEVEL=debug\n"
    )

    conf = Config.load(conf_file)

    assert conf.source == conf_file
    assert conf.pull_interval == 600
    assert conf.push_debounce == 2
    assert conf.remote_name == "upstream"
    assert conf.branch_name == "dotfiles"
    assert conf.auto_resolve is False
    assert conf.watch_path == tmp_path / "src"
    assert conf.max_log_size == 1024 * 1024
    assert conf.log_level == "DEBUG"


def test_unknown_keys_are_logged_and_ignored(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    """Verifies that unrecognised keys produce a warning but no failure.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        caplog (pytest.LogCaptureFixture): Pytest fixture for capturing logs.
    """
    conf_file = tmp_path / "chezmoi-sync.conf"
    conf_file.write_text("REMOTE_NAME=origin\nSOMETHING_ELSE=1\n")

    with caplog.at_level(logging.WARNING):
        conf = Config.load(conf_file)

    assert conf.remote_name == "origin"
    assert "SOMETHING_ELSE" in caplog.text


@pytest.mark.parametrize(
    "line, expected",
    [
        ("PULL_INTERVAL_SECONDS=0", "PULL_INTERVAL_SECONDS: must be >= 1"),
        ("PULL_INTERVAL_SECONDS=often", "Invalid time format"),
        ("PUSH_DEBOUNCE_SECONDS=-1", "PUSH_DEBOUNCE_SECONDS: must be >= 0"),
        ("AUTO_RESOLVE=maybe", "Invalid boolean"),
        ("WATCH_PATH=relative/dir", "WATCH_PATH: must be absolute"),
        ("LOG_LEVEL=LOUD", "LOG_LEVEL"),
        ("REMOTE_NAME=", "REMOTE_NAME: must not be empty"),
        ("PULL_INTERVAL_SECONDS", "missing '='"),
    ],
)
def test_invalid_values_fail_fast(tmp_path: Path, line: str, expected: str) -> None:
    """Verifies that bad values raise ConfigError instead of falling back.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        line (str): The offending config line.
        expected (str): A fragment of the expected problem description.
    """
    conf_file = tmp_path / "chezmoi-sync.conf"
    conf_file.write_text(line + "\n")

    with pytest.raises(ConfigError) as exc:
        Config.load(conf_file)

    assert expected in str(exc.value)
    assert exc.value.exit_code == 78


def test_unparsable_lines_fail_fast(tmp_path: Path) -> None:
    """Verifies that malformed lines are errors instead of silent defaults.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
    """
    conf_file = tmp_path / "chezmoi-sync.conf"
    conf_file.write_text(
        "PUSH_DEBOUNCE_SECONDS 2 3\n"
        "REMOTE_NAME=origin\n"
        'PULL_INTERVAL_SECONDS = "30\n'
    )

    with pytest.raises(ConfigError) as exc:
        Config.load(conf_file)

    problems = exc.value.problems
    assert len(problems) == 2
    assert "line 1" in problems[0]
    assert "PUSH_DEBOUNCE_SECONDS 2 3" in problems[0]
    assert "line 3" in problems[1]
    assert exc.value.exit_code == 78


def test_all_problems_are_reported_together() -> None:
    """Verifies that validation collects every problem in one error."""
    with pytest.raises(ConfigError) as exc:
        Config.from_mapping({"PULL_INTERVAL_SECONDS": "0", "BRANCH_NAME": ""})
    assert len(exc.value.problems) == 2


def test_commit_template_placeholders_are_validated() -> None:
    """Verifies that only {machine}, {timestamp} and {files} are accepted."""
    ok = Config.from_mapping({"COMMIT_MESSAGE_TEMPLATE": "sync {machine}\\n{files}"})
    assert ok.commit_message_template == "sync {machine}\n{files}"

    with pytest.raises(ConfigError, match=r"\{host\}"):
        Config.from_mapping({"COMMIT_MESSAGE_TEMPLATE": "sync {host}"})

    with pytest.raises(ConfigError, match="COMMIT_MESSAGE_TEMPLATE"):
        Config.from_mapping({"COMMIT_MESSAGE_TEMPLATE": "sync {machine"})


def test_as_dict_uses_config_file_keys() -> None:
    """Verifies that the effective settings are reported under their file keys."""
    settings = Config(pull_interval=60).as_dict()
    assert settings["PULL_INTERVAL_SECONDS"] == "60"
    assert "source" not in settings
    assert set(settings) >= {"WATCH_PATH", "AUTO_RESOLVE", "MAX_LOG_SIZE"}


def test_parsers() -> None:
    """Verifies the human-readable value parsers."""
    assert parse_time("45") == 45
    assert parse_time("5m") == 300
    assert parse_time("1.5h") == 5400
    assert parse_size("5mb") == 5 * 1024 * 1024
    assert parse_size("512") == 512
    assert parse_bool("Yes") is True
    assert parse_bool("off") is False

    with pytest.raises(ValueError):
        parse_size("huge")
