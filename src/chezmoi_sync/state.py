"""Per-direction run records, checkpointed to disk for the status reporter."""

import contextlib
import json
import logging
import os
import re
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path

from .constants import APP_NAME, state_file
from .outcomes import STICKY_KINDS, ErrorKind, Outcome, RunResult

_URL_CREDENTIALS = re.compile(r"(\w+://)[^/\s@]+@")
_TOKEN_PARAMS = re.compile(r"((?:access_)?token=)[^&\s]+", re.IGNORECASE)


def redact(message: str) -> str:
    """Removes credentials embedded in URLs from an error message."""
    message = _URL_CREDENTIALS.sub(r"\1***@", message)
    return _TOKEN_PARAMS.sub(r"\1***", message)


@dataclass
class RunRecord:
    """Observable history of one sync direction.

    Attributes:
        direction (str): 'push' or 'pull'.
        attempts (int): Monotonic count of pipeline invocations.
        last_attempt (float | None): Unix time of the latest invocation.
        last_success (float | None): Unix time of the latest Ok outcome.
        last_outcome (str | None): Terminal outcome of the latest invocation.
        last_error_kind (str | None): Error kind of the latest failure.
        last_error_message (str): Redacted detail of the latest failure.
        last_error_at (float | None): Unix time of the latest failure.
        sticky (bool): A sticky error awaits a success or operator action.
        sticky_kind (str | None): The error kind that made the record sticky.
        consecutive_failures (int): Failures since the last success.
        commit_id (str | None): HEAD after the latest success.
        rebases (int): Rebases performed by the latest success.
        skipped_paths (list[str]): Targets the latest apply could not write.
    """

    direction: str
    attempts: int = 0
    last_attempt: float | None = None
    last_success: float | None = None
    last_outcome: str | None = None
    last_error_kind: str | None = None
    last_error_message: str = ""
    last_error_at: float | None = None
    sticky: bool = False
    sticky_kind: str | None = None
    consecutive_failures: int = 0
    commit_id: str | None = None
    rebases: int = 0
    skipped_paths: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, direction: str, data: dict) -> "RunRecord":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["direction"] = direction
        return cls(**values)

    @property
    def never_run(self) -> bool:
        return self.attempts == 0

    @property
    def blocks_writes(self) -> bool:
        """True while an unresolved conflict suppresses automated writes.

        Other sticky kinds (an authentication failure, for instance) stay
        visible in status but do not stop automated retries, so a later
        success can clear them.
        """
        kind = self.sticky_kind or self.last_error_kind
        return self.sticky and kind == ErrorKind.CONFLICT_NEEDS_OPERATOR.value

    @property
    def last_failed(self) -> bool:
        """True if the latest invocation ended in a failure outcome."""
        if self.last_outcome is None:
            return False
        try:
            return Outcome(self.last_outcome).is_failure
        except ValueError:
            return False


class RunLedger:
    """Reads and updates the checkpointed RunRecord of one direction.

    Every update re-reads the checkpoint before writing so that the daemon
    and a manual CLI run can both record outcomes.
    """

    def __init__(
        self,
        direction: str,
        path: Path | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.direction = direction
        self.path = path or state_file(direction)
        self.clock = clock
        self.log = logging.getLogger(f"{APP_NAME}.{direction}")
        self.current = self.load()

    def load(self) -> RunRecord:
        """Loads the checkpoint, returning an empty record if absent/corrupt."""
        if not self.path.exists():
            return RunRecord(self.direction)
        try:
            content = self.path.read_text().strip()
            if not content:
                return RunRecord(self.direction)
            return RunRecord.from_dict(self.direction, json.loads(content))
        except (OSError, ValueError, TypeError) as e:
            self.log.warning(f"Ignoring unreadable run record {self.path}: {e}")
            return RunRecord(self.direction)

    def record(self, result: RunResult) -> RunRecord:
        """Records the terminal outcome of one pipeline invocation.

        Args:
            result (RunResult): The pipeline's result.

        Returns:
            RunRecord: The updated record.
        """
        rec = self.load()
        now = self.clock()
        rec.attempts += 1
        rec.last_attempt = now
        rec.last_outcome = result.outcome.value

        if result.ok:
            rec.last_success = now
            rec.sticky = False
            rec.sticky_kind = None
            rec.consecutive_failures = 0
            rec.last_error_kind = None
            rec.last_error_message = ""
            rec.commit_id = result.commit_id
            rec.rebases = result.rebases
            rec.skipped_paths = list(result.skipped_paths)
        elif (kind := result.error_kind) is not None:
            rec.last_error_kind = kind.value
            rec.last_error_message = redact(result.message)
            rec.last_error_at = now
            if kind in STICKY_KINDS:
                rec.sticky = True
                rec.sticky_kind = kind.value
            if result.outcome.is_failure:
                rec.consecutive_failures += 1

        self._save(rec)
        return rec

    def clear_sticky(self) -> RunRecord:
        """Operator action: clears a sticky error without running a pipeline."""
        rec = self.load()
        if rec.sticky:
            self.log.info(f"Sticky {rec.last_error_kind} cleared for {self.direction}.")
        rec.sticky = False
        rec.sticky_kind = None
        self._save(rec)
        return rec

    def _save(self, rec: RunRecord) -> None:
        """Persists the record atomically (temp file, fsync, rename)."""
        self.current = rec
        tmp_file = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_file, "w") as f:
                json.dump(asdict(rec), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_file, self.path)
        except OSError as e:
            self.log.error(f"Failed to checkpoint {self.direction} run record: {e}")
            with contextlib.suppress(OSError):
                tmp_file.unlink()
