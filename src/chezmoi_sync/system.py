import logging
import os
import re
import shutil
import socket
import subprocess
import sys
from pathlib import Path

from .constants import (
    APP_NAME,
    LEGACY_MACHINE_ID_FILE,
    MACHINE_ID_FILE,
    UNKNOWN_HOST,
)

logger = logging.getLogger(APP_NAME)

_FORBIDDEN = re.compile(r"[^a-z0-9-]")


class SystemStrategy:
    """Base class defining the interface for system-level interactions."""

    def local_hostname(self) -> str | None:
        """Returns the platform-preferred local hostname, if one is available."""
        return None

    def notify(self, title: str, message: str) -> None:
        """Sends a desktop notification.

        Args:
            title (str): The notification title.
            message (str): The notification body text.
        """
        pass


class MacOSStrategy(SystemStrategy):
    """System strategy implementation for macOS."""

    def local_hostname(self) -> str | None:
        """Queries the Bonjour name via `scutil --get LocalHostName`."""
        try:
            res = subprocess.run(
                ["scutil", "--get", "LocalHostName"],
                capture_output=True,
                text=True,
                timeout=1,
            )
            if res.returncode == 0 and res.stdout.strip():
                return res.stdout.strip()
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug(f"scutil lookup failed: {e}")
        return None

    def notify(self, title: str, message: str) -> None:
        """Sends a notification using AppleScript."""
        # Sanitize quotes to prevent AppleScript syntax errors.
        clean_msg = message.replace('"', "'")
        script = f'display notification "{clean_msg}" with title "{title}"'
        try:
            subprocess.run(["osascript", "-e", script], stderr=subprocess.DEVNULL)
        except OSError as e:
            logger.debug(f"Notification failed: {e}")


class LinuxStrategy(SystemStrategy):
    """System strategy implementation for Linux."""

    def notify(self, title: str, message: str) -> None:
        """Sends a notification using `notify-send`."""
        if not shutil.which("notify-send"):
            return
        try:
            subprocess.run(["notify-send", title, message], stderr=subprocess.DEVNULL)
        except OSError as e:
            logger.debug(f"Notification failed: {e}")


def get_system() -> SystemStrategy:
    """Factory function to retrieve the platform-specific system strategy.

    Returns:
        SystemStrategy: An instance of MacOSStrategy, LinuxStrategy, or the base
        SystemStrategy depending on the operating system.
    """
    if sys.platform == "darwin":
        return MacOSStrategy()
    elif sys.platform.startswith("linux"):
        return LinuxStrategy()
    else:
        return SystemStrategy()


def normalize_identity(name: str) -> str:
    """Normalizes a hostname into an identity token.

    The name is lowercased and every character outside ``[a-z0-9-]`` becomes a
    hyphen. A result made only of hyphens (or empty) is replaced by
    UNKNOWN_HOST, so the token is always non-empty and a fixed point of this
    function.

    Args:
        name (str): The raw hostname label.

    Returns:
        str: The normalized token.
    """
    token = _FORBIDDEN.sub("-", name.lower())
    if not token.strip("-"):
        return UNKNOWN_HOST
    return token


def derive_identity(strategy: SystemStrategy | None = None) -> str:
    """Derives an identity token from the host's name.

    Prefers the platform's local hostname (macOS LocalHostName) and falls back
    to the hostname reported by the socket layer. An mDNS name ("x.local") has
    its ".local" suffix dropped; any other FQDN is cut to its first label.
    """
    strategy = strategy or get_system()
    name = strategy.local_hostname()
    if not name:
        hostname = socket.gethostname()
        if hostname.lower().endswith(".local"):
            name = hostname[: -len(".local")]
        else:
            name = hostname.split(".")[0]
    return normalize_identity(name)


def _write_atomic(path: Path, content: str) -> None:
    """Writes a file via a temporary sibling and an atomic rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_file = path.with_name(f".{path.name}.tmp")
    try:
        with open(tmp_file, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_file, path)
    except OSError:
        tmp_file.unlink(missing_ok=True)
        raise


def ensure_identity(
    id_file: Path = MACHINE_ID_FILE,
    legacy_file: Path = LEGACY_MACHINE_ID_FILE,
    strategy: SystemStrategy | None = None,
) -> str:
    """Returns this host's identity token, creating it on first use.

    Resolution order:
    1. The persisted token in ``id_file``.
    2. A token migrated from ``legacy_file`` (copied across, not moved).
    3. A token derived from the hostname and written atomically.

    The persisted file is never rewritten once it exists; operators may edit
    it out-of-band.

    Returns:
        str: The identity token.
    """
    if id_file.exists():
        token = id_file.read_text().strip()
        if token:
            return token
        logger.warning(f"Identity file {id_file} is empty; regenerating.")

    if legacy_file.exists() and not id_file.exists():
        token = legacy_file.read_text().strip()
        if token:
            logger.info(f"Migrating machine ID from {legacy_file}")
            _write_atomic(id_file, token + "\n")
            return token

    token = derive_identity(strategy)
    _write_atomic(id_file, token + "\n")
    logger.info(f"Created machine ID: {token}")
    return token
