import logging
import os
import re
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path

from .constants import APP_NAME
from .outcomes import (
    ApplyOutcome,
    ApplyStatus,
    CommandError,
    CommitOutcome,
    FetchOutcome,
    MergeOutcome,
    MergeStrategy,
    PipelineCancelled,
    PushOutcome,
    ToolMissingError,
)

logger = logging.getLogger(APP_NAME)

_NON_FAST_FORWARD = ("non-fast-forward", "fetch first", "[rejected]")
_RATE_LIMITED = ("rate limit", "429", "too many requests")
_AUTH = (
    "authentication failed",
    "permission denied",
    "could not read username",
    "terminal prompts disabled",
    "403",
    "access denied",
    "repository not found",
)
_NETWORK = (
    "could not resolve host",
    "unable to access",
    "connection timed out",
    "operation timed out",
    "connection refused",
    "network is unreachable",
    "could not read from remote repository",
    "the remote end hung up",
    "early eof",
    "temporary failure",
)
_CONFLICT = ("conflict", "could not apply")
_APPLY_TARGET = re.compile(r"^chezmoi: ([^:]+): ", re.MULTILINE)


def classify_remote_error(stderr: str) -> str:
    """Classifies a failed fetch/push by its stderr.

    Returns:
        str: One of 'non-fast-forward', 'network', 'auth' or 'other'.
    """
    text = stderr.lower()
    if any(p in text for p in _NON_FAST_FORWARD):
        return "non-fast-forward"
    # Rate limiting is reported like an auth failure but clears by itself.
    if any(p in text for p in _RATE_LIMITED):
        return "network"
    if any(p in text for p in _AUTH):
        return "auth"
    if any(p in text for p in _NETWORK):
        return "network"
    return "other"


def parse_apply_failures(stderr: str) -> list[str]:
    """Extracts the target paths chezmoi reported as failed."""
    return list(dict.fromkeys(_APPLY_TARGET.findall(stderr)))


@dataclass
class CommandResult:
    """Captured result of an external command."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}"


class ChezmoiRepo:
    """A typed façade over chezmoi and the git repository behind its source tree.

    Every method runs one or more subprocesses, surfaces their stderr into the
    log verbatim, and classifies the result into the enumerations from
    `outcomes`. Callers branch on those values, never on raw output.

    Attributes:
        path (Path): chezmoi's source directory (a git work tree).
        chezmoi (str): The chezmoi executable.
        cancel_event (threading.Event | None): When set, the next command
            raises PipelineCancelled instead of starting.
        log (logging.Logger): Receives command stderr. The running pipeline
            points it at its direction logger.
    """

    log: logging.Logger = logger

    def __init__(
        self,
        path: Path,
        chezmoi: str = "chezmoi",
        cancel_event: threading.Event | None = None,
    ):
        """Initializes the ChezmoiRepo instance.

        Args:
            path (Path): The chezmoi source directory.
            chezmoi (str, optional): The chezmoi executable. Defaults to "chezmoi".
            cancel_event (threading.Event | None, optional): Shutdown signal.

        Raises:
            ValueError: If the path is not a git work tree.
        """
        self.path = path
        self.chezmoi = chezmoi
        self.cancel_event = cancel_event
        self._children: set[subprocess.Popen] = set()
        self._children_lock = threading.Lock()
        if not (self.path / ".git").exists():
            raise ValueError(f"Not a git repository: {self.path}")

    def _env(self) -> dict[str, str]:
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
        return env

    def _run(self, args: list[str], check: bool = True) -> CommandResult:
        """Executes an external command from the source directory.

        Args:
            args (list[str]): The full command line.
            check (bool, optional): Raise CommandError on a non-zero exit.
                                    Defaults to True.

        Returns:
            CommandResult: The captured exit status and output.

        Raises:
            PipelineCancelled: If cancellation was requested before starting.
            ToolMissingError: If the executable does not exist.
            CommandError: If check is True and the command failed.
        """
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise PipelineCancelled(f"Cancelled before: {' '.join(args[:2])}")

        try:
            proc = subprocess.Popen(
                args,
                cwd=self.path,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                env=self._env(),
            )
        except FileNotFoundError as e:
            raise ToolMissingError(args[0]) from e

        with self._children_lock:
            self._children.add(proc)
        try:
            stdout, stderr = proc.communicate()
        finally:
            with self._children_lock:
                self._children.discard(proc)

        result = CommandResult(proc.returncode, stdout or "", stderr or "")
        label = " ".join(args[:2])
        if stderr and stderr.strip():
            level = logging.DEBUG if result.ok else logging.WARNING
            self.log.log(level, f"{label}: {stderr.strip()}")

        if check and not result.ok:
            raise CommandError(args, result.returncode, result.stderr)
        return result

    def _git(self, args: list[str], check: bool = True) -> CommandResult:
        return self._run(["git", *args], check=check)

    def terminate_children(self) -> None:
        """Terminates any subprocess still running (shutdown grace expired)."""
        with self._children_lock:
            children = list(self._children)
        for proc in children:
            self.log.warning(f"Terminating child process {proc.pid}")
            proc.terminate()

    # --- Queries ---

    def status_porcelain(self) -> list[str]:
        """Returns the lines of `git status --porcelain`."""
        output = self._git(["status", "--porcelain"]).stdout
        return [line for line in output.splitlines() if line.strip()]

    def local_dirty(self) -> bool:
        """True iff the source tree has uncommitted (or untracked) changes."""
        return bool(self.status_porcelain())

    def changed_paths(self) -> list[str]:
        """Paths with uncommitted changes, renames reported by their new name."""
        paths = []
        for line in self.status_porcelain():
            entry = line[3:]
            if " -> " in entry:
                entry = entry.split(" -> ", 1)[1]
            paths.append(entry.strip('"'))
        return paths

    def staged_changes(self) -> list[str]:
        """Paths currently staged in the index."""
        output = self._git(["diff", "--cached", "--name-only"]).stdout
        return [line for line in output.splitlines() if line.strip()]

    def head(self) -> str | None:
        """Resolves HEAD to a full SHA-1, or None on an unborn branch."""
        res = self._git(["rev-parse", "--verify", "--quiet", "HEAD"], check=False)
        return res.stdout.strip() if res.ok and res.stdout.strip() else None

    def _count(self, revs: str) -> int:
        res = self._git(["rev-list", "--count", revs], check=False)
        if not res.ok:
            return 0
        try:
            return int(res.stdout.strip())
        except ValueError:
            return 0

    def upstream_ahead(self, remote: str, branch: str) -> int:
        """Number of fetched upstream commits not yet in HEAD."""
        return self._count(f"HEAD..{remote}/{branch}")

    def local_ahead(self, remote: str, branch: str) -> int:
        """Number of local commits not yet on the fetched upstream."""
        return self._count(f"{remote}/{branch}..HEAD")

    # --- Writes ---

    def commit_all(self, message: str) -> CommitOutcome:
        """Stages every modification under the source tree and commits it.

        Args:
            message (str): The commit message.

        Returns:
            CommitOutcome: NOTHING_TO_COMMIT if the tree was clean.
        """
        self._git(["add", "--all"])
        if self._git(["diff", "--cached", "--quiet"], check=False).ok:
            return CommitOutcome.NOTHING_TO_COMMIT
        self._git(["commit", "--no-verify", "-m", message])
        return CommitOutcome.COMMITTED

    def fetch(self, remote: str, branch: str) -> FetchOutcome:
        """Updates the remote-tracking ref for the upstream branch."""
        res = self._git(["fetch", "--quiet", remote, branch], check=False)
        if res.ok:
            return FetchOutcome.OK
        kind = classify_remote_error(res.stderr)
        if kind == "auth":
            return FetchOutcome.AUTH_ERROR
        if kind == "network":
            return FetchOutcome.NETWORK_ERROR
        return FetchOutcome.OTHER

    def push(self, remote: str, branch: str) -> PushOutcome:
        """Pushes HEAD to the upstream branch."""
        res = self._git(["push", "--porcelain", remote, f"HEAD:{branch}"], check=False)
        if res.ok:
            return PushOutcome.OK
        # --porcelain reports rejections on stdout.
        kind = classify_remote_error(res.output)
        return {
            "non-fast-forward": PushOutcome.NON_FAST_FORWARD,
            "auth": PushOutcome.AUTH_ERROR,
            "network": PushOutcome.NETWORK_ERROR,
        }.get(kind, PushOutcome.OTHER)

    def abort_merge(self) -> None:
        """Restores the work tree after a conflicted merge or rebase."""
        git_dir = self.path / ".git"
        if (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists():
            self._git(["rebase", "--abort"], check=False)
        if (git_dir / "MERGE_HEAD").exists():
            self._git(["merge", "--abort"], check=False)

    def fast_forward_or_merge(
        self,
        remote: str,
        branch: str,
        strategy: MergeStrategy = MergeStrategy.FF_ONLY,
        strategy_option: str = "",
    ) -> MergeOutcome:
        """Integrates fetched upstream changes into the local branch.

        Args:
            remote (str): The upstream remote.
            branch (str): The upstream branch.
            strategy (MergeStrategy): FF_ONLY refuses divergent history,
                REBASE replays local commits on upstream, MERGE creates a merge
                commit.
            strategy_option (str): `-X` option for MERGE (e.g. 'theirs').

        Returns:
            MergeOutcome: CONFLICT leaves the work tree restored to HEAD.
        """
        target = f"{remote}/{branch}"
        if self.upstream_ahead(remote, branch) == 0:
            return MergeOutcome.UP_TO_DATE

        if strategy is MergeStrategy.FF_ONLY or (
            strategy is MergeStrategy.REBASE
            and self.local_ahead(remote, branch) == 0
        ):
            res = self._git(["merge", "--ff-only", target], check=False)
            return MergeOutcome.FAST_FORWARDED if res.ok else MergeOutcome.ABORTED

        if strategy is MergeStrategy.REBASE:
            res = self._git(["rebase", target], check=False)
            success = MergeOutcome.REBASED
        else:
            cmd = ["merge", "--no-edit"]
            if strategy_option:
                cmd.extend(["-X", strategy_option])
            cmd.append(target)
            res = self._git(cmd, check=False)
            success = MergeOutcome.MERGED

        if res.ok:
            if "fast-forward" in res.stdout.lower():
                return MergeOutcome.FAST_FORWARDED
            return success

        conflicted = any(p in res.output.lower() for p in _CONFLICT)
        self.abort_merge()
        return MergeOutcome.CONFLICT if conflicted else MergeOutcome.ABORTED

    def apply(self) -> ApplyOutcome:
        """Asks chezmoi to materialize the committed source state into $HOME."""
        res = self._run(
            [
                self.chezmoi,
                "--source",
                str(self.path),
                "apply",
                "--no-tty",
                "--force",
                "--keep-going",
            ],
            check=False,
        )
        if res.ok:
            return ApplyOutcome(ApplyStatus.OK)
        paths = parse_apply_failures(res.stderr)
        if paths:
            return ApplyOutcome(ApplyStatus.PARTIAL_SKIP, paths, res.stderr.strip())
        return ApplyOutcome(ApplyStatus.ERROR, message=res.stderr.strip())
