"""The dev-mode kill-switch: a sentinel file that suspends automated sync."""

import logging
import os
from pathlib import Path

from .constants import APP_NAME, DEV_MODE_FILE

logger = logging.getLogger(APP_NAME)


class DevModeGate:
    """Presence check and toggle for the dev-mode sentinel file.

    Attributes:
        path (Path): The sentinel file. Its content is irrelevant.
    """

    def __init__(self, path: Path = DEV_MODE_FILE):
        self.path = path

    def is_enabled(self) -> bool:
        return self.path.exists()

    def set(self, enabled: bool) -> None:
        """Creates or removes the sentinel.

        Creation goes through a temporary file and an atomic rename so readers
        never observe a partially created flag.
        """
        if enabled:
            if self.path.exists():
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_file = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
            tmp_file.touch()
            os.replace(tmp_file, self.path)
            logger.info("Dev-mode enabled: automated sync suspended.")
        else:
            try:
                self.path.unlink()
                logger.info("Dev-mode disabled: automated sync resumed.")
            except FileNotFoundError:
                pass

    def toggle(self) -> bool:
        """Flips the flag and returns the new state."""
        enabled = not self.is_enabled()
        self.set(enabled)
        return enabled
