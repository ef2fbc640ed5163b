import logging
import re
import string
from dataclasses import dataclass, field, fields
from pathlib import Path

from dotenv.parser import parse_stream

from .constants import (
    APP_NAME,
    CONFIG_FILE,
    DEFAULT_LOG_DIR,
    DEFAULT_WATCH_PATH,
)
from .outcomes import ConfigError

logger = logging.getLogger(APP_NAME)

DEFAULT_COMMIT_TEMPLATE = "chezmoi-sync({machine}): {timestamp}\n\n{files}"
TEMPLATE_FIELDS = {"machine", "timestamp", "files"}
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def parse_size(value: int | str) -> int:
    """Converts human-readable size strings (e.g., '100MB') to bytes."""
    if isinstance(value, int):
        return value
    text = str(value).strip().lower()
    if text.isdigit():
        return int(text)
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kmg]b?)$", text)
    if not match:
        raise ValueError(f"Invalid size format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "k": 1024,
        "kb": 1024,
        "m": 1024**2,
        "mb": 1024**2,
        "g": 1024**3,
        "gb": 1024**3,
    }
    return int(num * multiplier[unit])


def parse_time(value: int | str) -> int:
    """Converts seconds or human-readable time strings (e.g., '5m') to seconds."""
    if isinstance(value, int):
        return value
    text = str(value).strip().lower()
    if re.fullmatch(r"-?\d+", text):
        return int(text)
    match = re.match(r"^(\d+(?:\.\d+)?)\s*(s|sec|m|min|h|hr)s?$", text)
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {"s": 1, "sec": 1, "m": 60, "min": 60, "h": 3600, "hr": 3600}
    return int(num * multiplier[unit])


def parse_bool(value: str) -> bool:
    """Parses shell-style booleans (true/false, yes/no, on/off, 1/0)."""
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"Invalid boolean '{value}'")


def template_fields(template: str) -> set[str]:
    """Returns the replacement field names used by a str.format template.

    Raises:
        ValueError: If the template is malformed (e.g. an unbalanced brace).
    """
    names = set()
    for _, name, _, _ in string.Formatter().parse(template):
        if name is None:
            continue
        names.add(name)
    return names


@dataclass(frozen=True)
class Config:
    """Effective daemon configuration, read once at startup.

    Attributes:
        log_dir (Path): Directory for the push/pull log files.
        pull_interval (int): Seconds between pull ticks (>= 1).
        push_debounce (int): Debounce window for local edits in seconds (>= 0).
        commit_message_template (str): Template with {machine}, {timestamp}
            and {files} placeholders.
        remote_name (str): Upstream git remote.
        branch_name (str): Upstream branch.
        watch_path (Path): chezmoi's source directory.
        auto_resolve (bool): True for fast-forward-only pulls, False to fall
            back to a merge.
        verify_apply_after_push (bool): Run `chezmoi apply` after each push.
        notifications (bool): Raise desktop notifications for sticky errors.
        log_level (str): Logging threshold.
        max_log_size (int): Bytes before a log file rotates.
        shutdown_grace (int): Seconds to wait for in-flight pipelines on exit.
        merge_strategy_option (str): `-X` option for the fallback merge.
    """

    log_dir: Path = DEFAULT_LOG_DIR
    pull_interval: int = 300
    push_debounce: int = 5
    commit_message_template: str = DEFAULT_COMMIT_TEMPLATE
    remote_name: str = "origin"
    branch_name: str = "main"
    watch_path: Path = DEFAULT_WATCH_PATH
    auto_resolve: bool = True
    verify_apply_after_push: bool = False
    notifications: bool = True
    log_level: str = "INFO"
    max_log_size: int = 5 * 1024 * 1024
    shutdown_grace: int = 10
    merge_strategy_option: str = ""
    source: Path | None = field(default=None, compare=False)

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Loads and validates the configuration file.

        A missing file yields the defaults. Unknown keys are logged and ignored.

        Args:
            path (Path | None): The file to read. Defaults to CONFIG_FILE.

        Returns:
            Config: The validated configuration.

        Raises:
            ConfigError: If any value is unparsable or out of range.
        """
        path = path or CONFIG_FILE
        if not path.exists():
            logger.debug(f"No config file at {path}; using defaults.")
            return cls(source=None)

        raw: dict[str, str | None] = {}
        problems = []
        try:
            with open(path, encoding="utf-8") as stream:
                for binding in parse_stream(stream):
                    if binding.error:
                        text = binding.original.string.strip()
                        problems.append(
                            f"{path.name} line {binding.original.line}: "
                            f"cannot parse {text!r}"
                        )
                    elif binding.key is not None:
                        raw[binding.key] = binding.value
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError([f"Cannot read {path}: {e}"]) from e

        return cls.from_mapping(raw, source=path, problems=problems)

    @classmethod
    def from_mapping(
        cls,
        raw: dict[str, str | None],
        source: Path | None = None,
        problems: list[str] | None = None,
    ) -> "Config":
        """Builds a validated Config from raw KEY -> VALUE strings.

        Args:
            raw (dict[str, str | None]): Parsed entries; None marks a key
                written without '='.
            source (Path | None): The file the entries came from.
            problems (list[str] | None): Errors already found while parsing.

        Raises:
            ConfigError: Listing every invalid entry.
        """
        unknown = set(raw) - set(_KEYS)
        if unknown:
            logger.warning(
                f"Unknown config keys in {source or 'config'}: "
                f"{', '.join(sorted(unknown))}. Ignoring."
            )

        values = {}
        problems = list(problems or [])
        for key, (attr, parser) in _KEYS.items():
            if key not in raw:
                continue
            value = raw[key]
            if value is None:
                problems.append(f"{key}: missing '=' (expected KEY=VALUE)")
                continue
            try:
                values[attr] = parser(value)
            except ValueError as e:
                problems.append(f"{key}: {e}")

        instance = cls(source=source, **values)
        problems.extend(instance.validate())
        if problems:
            raise ConfigError(problems)
        return instance

    def validate(self) -> list[str]:
        """Returns a list of range/consistency problems (empty when valid)."""
        problems = []
        if self.pull_interval < 1:
            problems.append(
                f"PULL_INTERVAL_SECONDS: must be >= 1 (got {self.pull_interval})"
            )
        if self.push_debounce < 0:
            problems.append(
                f"PUSH_DEBOUNCE_SECONDS: must be >= 0 (got {self.push_debounce})"
            )
        if self.shutdown_grace < 0:
            problems.append(
                f"SHUTDOWN_GRACE_SECONDS: must be >= 0 (got {self.shutdown_grace})"
            )
        if not self.watch_path.is_absolute():
            problems.append(f"WATCH_PATH: must be absolute (got {self.watch_path})")
        if not self.remote_name:
            problems.append("REMOTE_NAME: must not be empty")
        if not self.branch_name:
            problems.append("BRANCH_NAME: must not be empty")
        if self.log_level not in LOG_LEVELS:
            problems.append(
                f"LOG_LEVEL: must be one of {', '.join(sorted(LOG_LEVELS))}"
            )

        try:
            unknown_fields = template_fields(self.commit_message_template)
            unknown_fields -= TEMPLATE_FIELDS
            if unknown_fields:
                problems.append(
                    "COMMIT_MESSAGE_TEMPLATE: unknown placeholder(s) "
                    + ", ".join("{" + f + "}" for f in sorted(unknown_fields))
                )
        except ValueError as e:
            problems.append(f"COMMIT_MESSAGE_TEMPLATE: {e}")

        return problems

    def as_dict(self) -> dict[str, str]:
        """Returns the effective settings keyed by their config-file names."""
        by_attr = {attr: key for key, (attr, _) in _KEYS.items()}
        return {
            by_attr[f.name]: str(getattr(self, f.name))
            for f in fields(self)
            if f.name in by_attr
        }


def _path(value: str) -> Path:
    return Path(value.strip()).expanduser()


def _text(value: str) -> str:
    return value.strip()


def _template(value: str) -> str:
    # Allow escaped newlines in unquoted values.
    return value.replace("\\n", "\n")


def _level(value: str) -> str:
    return value.strip().upper()


_KEYS = {
    "LOG_DIR": ("log_dir", _path),
    "PULL_INTERVAL_SECONDS": ("pull_interval", parse_time),
    "PUSH_DEBOUNCE_SECONDS": ("push_debounce", parse_time),
    "COMMIT_MESSAGE_TEMPLATE": ("commit_message_template", _template),
    "REMOTE_NAME": ("remote_name", _text),
    "BRANCH_NAME": ("branch_name", _text),
    "WATCH_PATH": ("watch_path", _path),
    "AUTO_RESOLVE": ("auto_resolve", parse_bool),
    "VERIFY_APPLY_AFTER_PUSH": ("verify_apply_after_push", parse_bool),
    "NOTIFICATIONS": ("notifications", parse_bool),
    "LOG_LEVEL": ("log_level", _level),
    "MAX_LOG_SIZE": ("max_log_size", parse_size),
    "SHUTDOWN_GRACE_SECONDS": ("shutdown_grace", parse_time),
    "MERGE_STRATEGY_OPTION": ("merge_strategy_option", _text),
}
"""dict[str, tuple[str, Callable]]: Config-file key -> (attribute, parser)."""
