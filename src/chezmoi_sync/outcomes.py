"""Outcome enumerations, run results and error types.

Adapter operations classify the external tools' results into the enumerations
below; everything downstream branches on these values, never on raw output.
"""

from dataclasses import dataclass, field
from enum import Enum

from .constants import EXIT_CONFIG, EXIT_TOOL_MISSING


class CommitOutcome(Enum):
    COMMITTED = "Committed"
    NOTHING_TO_COMMIT = "NothingToCommit"


class PushOutcome(Enum):
    OK = "Ok"
    NON_FAST_FORWARD = "NonFastForward"
    NETWORK_ERROR = "NetworkError"
    AUTH_ERROR = "AuthError"
    OTHER = "Other"


class FetchOutcome(Enum):
    OK = "Ok"
    NETWORK_ERROR = "NetworkError"
    AUTH_ERROR = "AuthError"
    OTHER = "Other"


class MergeOutcome(Enum):
    UP_TO_DATE = "UpToDate"
    FAST_FORWARDED = "FastForwarded"
    REBASED = "Rebased"
    MERGED = "Merged"
    CONFLICT = "Conflict"
    ABORTED = "Aborted"


class MergeStrategy(Enum):
    """How fetched upstream changes are integrated into the local branch."""

    FF_ONLY = "ff-only"
    REBASE = "rebase"
    MERGE = "merge"


class ApplyStatus(Enum):
    OK = "Ok"
    PARTIAL_SKIP = "PartialSkip"
    ERROR = "Error"


@dataclass
class ApplyOutcome:
    """Result of materializing the source state into the home directory.

    Attributes:
        status (ApplyStatus): The classified outcome.
        paths (list[str]): Targets chezmoi skipped (only for PARTIAL_SKIP).
        message (str): stderr of the apply run when it did not succeed.
    """

    status: ApplyStatus
    paths: list[str] = field(default_factory=list)
    message: str = ""


class ErrorKind(Enum):
    TRANSIENT = "Transient"
    PERMANENT = "Permanent"
    RACE_LOST = "RaceLost"
    CONFLICT_NEEDS_OPERATOR = "ConflictNeedsOperator"
    DEFERRED_LOCAL_CHANGES = "DeferredLocalChanges"
    ADAPTER_ABORT = "AdapterAbort"


STICKY_KINDS = {ErrorKind.PERMANENT, ErrorKind.CONFLICT_NEEDS_OPERATOR}
"""set[ErrorKind]: Kinds that persist until a success or operator action."""


class Outcome(Enum):
    """Terminal outcome of one pipeline invocation."""

    OK = "Ok"
    SKIPPED_DEV_MODE = "Skipped(DevMode)"
    SKIPPED_CLEAN = "Skipped(Clean)"
    SKIPPED_BUSY = "Skipped(Busy)"
    SKIPPED_BLOCKED = "Skipped(Blocked)"
    DEFERRED_LOCAL_CHANGES = "DeferredLocalChanges"
    CONFLICT_NEEDS_OPERATOR = "ConflictNeedsOperator"
    RACE_LOST = "RaceLost"
    TRANSIENT = "Transient"
    PERMANENT = "Permanent"
    ADAPTER_ABORT = "AdapterAbort"
    CANCELLED = "Cancelled"

    @property
    def error_kind(self) -> ErrorKind | None:
        """The error kind recorded for this outcome, if it is an error."""
        return _OUTCOME_KINDS.get(self)

    @property
    def is_failure(self) -> bool:
        """True for outcomes that should trigger a cooldown before retrying."""
        return self in {
            Outcome.TRANSIENT,
            Outcome.PERMANENT,
            Outcome.ADAPTER_ABORT,
            Outcome.RACE_LOST,
            Outcome.CONFLICT_NEEDS_OPERATOR,
        }


_OUTCOME_KINDS = {
    Outcome.DEFERRED_LOCAL_CHANGES: ErrorKind.DEFERRED_LOCAL_CHANGES,
    Outcome.CONFLICT_NEEDS_OPERATOR: ErrorKind.CONFLICT_NEEDS_OPERATOR,
    Outcome.RACE_LOST: ErrorKind.RACE_LOST,
    Outcome.TRANSIENT: ErrorKind.TRANSIENT,
    Outcome.PERMANENT: ErrorKind.PERMANENT,
    Outcome.ADAPTER_ABORT: ErrorKind.ADAPTER_ABORT,
}


@dataclass
class RunResult:
    """The single terminal result of a push or pull pipeline invocation.

    Attributes:
        outcome (Outcome): The terminal outcome.
        message (str): Human-readable detail (error text for failures).
        commit_id (str | None): HEAD after a successful run.
        rebases (int): Number of times local commits were replayed on upstream.
        skipped_paths (list[str]): Targets chezmoi could not apply.
    """

    outcome: Outcome
    message: str = ""
    commit_id: str | None = None
    rebases: int = 0
    skipped_paths: list[str] = field(default_factory=list)

    @property
    def error_kind(self) -> ErrorKind | None:
        return self.outcome.error_kind

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK


class ConfigError(ValueError):
    """The configuration file is unparsable or holds out-of-range values."""

    exit_code = EXIT_CONFIG

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("; ".join(problems))


class ToolMissingError(RuntimeError):
    """A required external executable is not on PATH."""

    exit_code = EXIT_TOOL_MISSING

    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(f"Required tool not found on PATH: {tool}")


class PipelineCancelled(Exception):
    """Raised at an adapter call boundary once shutdown has been requested."""


class CommandError(RuntimeError):
    """An external command exited non-zero.

    Attributes:
        args_list (list[str]): The command line.
        returncode (int): The exit status.
        stderr (str): The command's stderr, verbatim.
    """

    def __init__(self, args_list: list[str], returncode: int, stderr: str):
        self.args_list = args_list
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"{' '.join(args_list[:2])} failed ({returncode}): {stderr.strip()}"
        )
