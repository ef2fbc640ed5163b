import os
from pathlib import Path

"""Global constants and filesystem layout for chezmoi-sync.

When installed through Homebrew (``HOMEBREW_PREFIX`` is set) the layout follows
the formula: configuration under ``etc``, logs under ``var/log`` and runtime
state under ``var/lib``. Otherwise XDG locations are used.
"""

# --- Identity ---
APP_NAME = "chezmoi-sync"
"""str: The human-readable application name (also the root logger name)."""

PUSH_LABEL = "com.chezmoi.sync.push"
"""str: The launchd label of the push service."""

PULL_LABEL = "com.chezmoi.sync.pull"
"""str: The launchd label of the pull service."""

BREW_SERVICES = ("chezmoi-sync", "chezmoi-sync-pull")
"""tuple[str, str]: Homebrew service names (push, pull)."""

SYSTEMD_UNITS = ("chezmoi-sync-push.service", "chezmoi-sync-pull.service")
"""tuple[str, str]: systemd user unit names (push, pull)."""

DIRECTIONS = ("push", "pull")
"""tuple[str, str]: The two synchronization directions."""

# --- Paths ---
_BREW_PREFIX = os.environ.get("HOMEBREW_PREFIX")
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_XDG_CONFIG = os.environ.get("XDG_CONFIG_HOME")

_CONFIG_BASE = Path(_XDG_CONFIG) if _XDG_CONFIG else Path.home() / ".config"

if _BREW_PREFIX:
    STATE_DIR = Path(_BREW_PREFIX) / "var/lib/chezmoi-sync"
    DEFAULT_LOG_DIR = Path(_BREW_PREFIX) / "var/log/chezmoi-sync"
    _DEFAULT_CONFIG = Path(_BREW_PREFIX) / "etc/chezmoi-sync/chezmoi-sync.conf"
else:
    _BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"
    STATE_DIR = _BASE_STATE / "chezmoi-sync"
    DEFAULT_LOG_DIR = STATE_DIR / "logs"
    _DEFAULT_CONFIG = _CONFIG_BASE / "chezmoi-sync/chezmoi-sync.conf"

CONFIG_FILE: Path = Path(os.environ.get("CHEZMOI_SYNC_CONFIG") or _DEFAULT_CONFIG)
"""Path: The KEY=VALUE configuration file."""

MACHINE_ID_FILE: Path = STATE_DIR / "machine-id"
"""Path: The file storing this host's identity token."""

LEGACY_MACHINE_ID_FILE: Path = Path.home() / ".config/chezmoi-sync/machine-id"
"""Path: Identity location used by manual (pre-Homebrew) installations."""

DEV_MODE_FILE: Path = STATE_DIR / "dev-mode"
"""Path: Sentinel whose presence disables automated synchronization."""

INTERLOCK_FILE: Path = STATE_DIR / "interlock.lock"
"""Path: Advisory lock serializing push and pull across processes."""

INTERLOCK_HOLDER_FILE: Path = STATE_DIR / "interlock.json"
"""Path: Diagnostic record of the current interlock holder."""

MERGE_MARKER_FILE: Path = STATE_DIR / "pull-merging"
"""Path: Present while (and shortly after) a pull rewrites the source tree."""

DEFAULT_WATCH_PATH = Path.home() / ".local/share/chezmoi"
"""Path: chezmoi's default source directory."""

# --- Logic Constants ---
UNKNOWN_HOST = "unknown-host"
"""str: Identity used when the hostname normalizes to nothing usable."""

MAX_FILES_IN_MESSAGE = 10
"""int: Number of changed paths listed in a commit message before truncating."""

IGNORED_DIRS = {".git"}
"""set[str]: Directory names inside the source tree whose events are ignored."""

# --- Exit Codes ---
EXIT_OK = 0
EXIT_CONFIG = 78
"""int: EX_CONFIG from sysexits.h."""
EXIT_TOOL_MISSING = 127

STATUS_HEALTHY = 0
STATUS_DEV_MODE = 1
STATUS_STICKY_ERROR = 2
STATUS_DEGRADED = 3


def state_file(direction: str) -> Path:
    """Returns the run-record checkpoint path for a direction."""
    return STATE_DIR / f"{direction}.state.json"


def pid_file(topology: str) -> Path:
    """Returns the PID file path for a daemon topology ('all', 'push', 'pull')."""
    return STATE_DIR / f"daemon-{topology}.pid"
