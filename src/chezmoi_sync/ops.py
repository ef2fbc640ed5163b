"""The push and pull pipelines: ordered adapter calls in each direction.

A pipeline body assumes the interlock is held by its caller and returns
exactly one RunResult. `run_direction` is the single entry point used by the
controllers and the CLI: it takes the interlock, runs the body, records the
outcome and raises a notification when a sticky error appears.
"""

import datetime
import logging
from collections.abc import Callable
from contextlib import AbstractContextManager, nullcontext
from dataclasses import dataclass, field

from .chezmoi_wrapper import ChezmoiRepo
from .config import Config
from .constants import APP_NAME, MAX_FILES_IN_MESSAGE
from .devmode import DevModeGate
from .interlock import Interlock
from .outcomes import (
    ApplyStatus,
    CommandError,
    CommitOutcome,
    FetchOutcome,
    MergeOutcome,
    MergeStrategy,
    Outcome,
    PipelineCancelled,
    PushOutcome,
    RunResult,
)
from .state import RunLedger
from .system import SystemStrategy, get_system

logger = logging.getLogger(APP_NAME)
push_log = logging.getLogger(f"{APP_NAME}.push")
pull_log = logging.getLogger(f"{APP_NAME}.pull")

MAX_PUSH_ATTEMPTS = 2


@dataclass
class SyncContext:
    """Everything a pipeline needs; built once at startup.

    Attributes:
        config (Config): The validated configuration.
        repo (ChezmoiRepo): The adapter for chezmoi's source tree.
        gate (DevModeGate): The dev-mode kill-switch.
        machine_id (str): This host's identity token.
        system (SystemStrategy): Platform helpers (notifications).
        now (Callable[[], datetime.datetime]): Clock for commit timestamps.
        merging (Callable[[], AbstractContextManager]): Wraps the pull's merge
            so the push reactor ignores the writes it makes.
    """

    config: Config
    repo: ChezmoiRepo
    gate: DevModeGate
    machine_id: str
    system: SystemStrategy = field(default_factory=get_system)
    now: Callable[[], datetime.datetime] = datetime.datetime.now
    merging: Callable[[], AbstractContextManager] = nullcontext


class _DevModeEngaged(Exception):
    """Dev-mode was switched on while a pipeline was running."""


def _check_gate(ctx: SyncContext, bypass: bool) -> None:
    if not bypass and ctx.gate.is_enabled():
        raise _DevModeEngaged()


def compose_commit_message(
    template: str,
    machine: str,
    files: list[str],
    timestamp: datetime.datetime,
    limit: int = MAX_FILES_IN_MESSAGE,
) -> str:
    """Renders the commit message template.

    Args:
        template (str): Template with {machine}, {timestamp} and {files}.
        machine (str): The identity token.
        files (list[str]): Changed paths; only the first `limit` are listed.
        timestamp (datetime.datetime): Commit time.
        limit (int): Maximum number of paths listed.

    Returns:
        str: The commit message.
    """
    listed = [f"- {p}" for p in files[:limit]]
    if len(files) > limit:
        listed.append(f"- ... and {len(files) - limit} more")
    return template.format(
        machine=machine,
        timestamp=timestamp.strftime("%Y-%m-%d %H:%M:%S"),
        files="\n".join(listed),
    ).strip()


def _remote_failure(outcome: FetchOutcome | PushOutcome, action: str) -> RunResult:
    """Maps a failed fetch/push to its terminal outcome."""
    if outcome in (FetchOutcome.NETWORK_ERROR, PushOutcome.NETWORK_ERROR):
        return RunResult(Outcome.TRANSIENT, f"{action} failed: network unavailable")
    if outcome in (FetchOutcome.AUTH_ERROR, PushOutcome.AUTH_ERROR):
        return RunResult(Outcome.PERMANENT, f"{action} failed: authentication error")
    return RunResult(Outcome.ADAPTER_ABORT, f"{action} failed: {outcome.value}")


def _push_body(
    ctx: SyncContext, automated: bool, bypass: bool, blocked: bool
) -> RunResult:
    cfg, repo = ctx.config, ctx.repo
    remote, branch = cfg.remote_name, cfg.branch_name

    _check_gate(ctx, bypass)
    if blocked and automated:
        return RunResult(
            Outcome.SKIPPED_BLOCKED,
            "Unresolved conflict pending; run 'chezmoi-sync push' "
            "or 'chezmoi-sync clear push'.",
        )

    dirty = repo.local_dirty()
    if not dirty and repo.local_ahead(remote, branch) == 0:
        return RunResult(Outcome.SKIPPED_CLEAN)

    if dirty:
        files = repo.changed_paths()
        message = compose_commit_message(
            cfg.commit_message_template, ctx.machine_id, files, ctx.now()
        )
        _check_gate(ctx, bypass)
        if repo.commit_all(message) is CommitOutcome.COMMITTED:
            push_log.info(f"Committed {len(files)} change(s).")

    rebases = 0
    for attempt in range(MAX_PUSH_ATTEMPTS):
        fetched = repo.fetch(remote, branch)
        if fetched is not FetchOutcome.OK:
            return _remote_failure(fetched, "fetch")

        if repo.upstream_ahead(remote, branch) > 0:
            _check_gate(ctx, bypass)
            merged = repo.fast_forward_or_merge(remote, branch, MergeStrategy.REBASE)
            if merged in (MergeOutcome.CONFLICT, MergeOutcome.ABORTED):
                return RunResult(
                    Outcome.CONFLICT_NEEDS_OPERATOR,
                    f"Local commits cannot be replayed on {remote}/{branch} "
                    f"({merged.value}); resolve in {repo.path}.",
                )
            if merged is MergeOutcome.REBASED:
                rebases += 1
                push_log.info(f"Rebased local commits onto {remote}/{branch}.")

        _check_gate(ctx, bypass)
        pushed = repo.push(remote, branch)
        if pushed is PushOutcome.OK:
            break
        if pushed is PushOutcome.NON_FAST_FORWARD:
            if attempt + 1 < MAX_PUSH_ATTEMPTS:
                push_log.info("Upstream moved during push; retrying once.")
                continue
            return RunResult(
                Outcome.RACE_LOST,
                "Upstream kept moving; the next push will retry.",
                rebases=rebases,
            )
        return _remote_failure(pushed, "push")

    result = RunResult(Outcome.OK, commit_id=repo.head(), rebases=rebases)

    if cfg.verify_apply_after_push:
        _check_gate(ctx, bypass)
        applied = repo.apply()
        if applied.status is not ApplyStatus.OK:
            push_log.warning(
                f"Post-push apply: {applied.status.value} {applied.paths}"
            )
            result.skipped_paths = applied.paths
    return result


def _pull_body(
    ctx: SyncContext, automated: bool, bypass: bool, blocked: bool
) -> RunResult:
    cfg, repo = ctx.config, ctx.repo
    remote, branch = cfg.remote_name, cfg.branch_name

    _check_gate(ctx, bypass)
    fetched = repo.fetch(remote, branch)
    if fetched is not FetchOutcome.OK:
        return _remote_failure(fetched, "fetch")

    if repo.local_dirty():
        return RunResult(
            Outcome.DEFERRED_LOCAL_CHANGES,
            "Uncommitted local changes; pull deferred until they are pushed.",
        )

    if blocked and automated:
        return RunResult(
            Outcome.CONFLICT_NEEDS_OPERATOR,
            "Merge skipped: previous conflict awaits 'chezmoi-sync pull'.",
        )

    strategy = MergeStrategy.FF_ONLY if cfg.auto_resolve else MergeStrategy.MERGE
    _check_gate(ctx, bypass)
    with ctx.merging():
        merged = repo.fast_forward_or_merge(
            remote, branch, strategy, cfg.merge_strategy_option
        )

    if merged is MergeOutcome.UP_TO_DATE:
        return RunResult(Outcome.OK, commit_id=repo.head())
    if merged is MergeOutcome.CONFLICT:
        return RunResult(
            Outcome.CONFLICT_NEEDS_OPERATOR,
            f"Merge of {remote}/{branch} conflicted and was aborted.",
        )
    if merged is MergeOutcome.ABORTED:
        if strategy is MergeStrategy.FF_ONLY:
            return RunResult(
                Outcome.DEFERRED_LOCAL_CHANGES,
                "Local commits not yet pushed; fast-forward impossible.",
            )
        return RunResult(Outcome.ADAPTER_ABORT, f"Merge of {remote}/{branch} aborted.")

    pull_log.info(f"Integrated {remote}/{branch} ({merged.value}); applying.")
    _check_gate(ctx, bypass)
    applied = repo.apply()
    if applied.status is ApplyStatus.ERROR:
        return RunResult(
            Outcome.ADAPTER_ABORT, f"chezmoi apply failed: {applied.message}"
        )
    if applied.status is ApplyStatus.PARTIAL_SKIP:
        pull_log.warning(f"chezmoi apply skipped: {', '.join(applied.paths)}")
    return RunResult(Outcome.OK, commit_id=repo.head(), skipped_paths=applied.paths)


_BODIES = {"push": _push_body, "pull": _pull_body}


def run_pipeline(
    direction: str,
    ctx: SyncContext,
    automated: bool = True,
    bypass_dev_mode: bool = False,
    blocked: bool = False,
) -> RunResult:
    """Runs one pipeline body and converts every exit path into a RunResult.

    The caller must hold the interlock.

    Args:
        direction (str): 'push' or 'pull'.
        ctx (SyncContext): The sync context.
        automated (bool): False for operator-initiated runs.
        bypass_dev_mode (bool): Ignore the dev-mode gate (manual --force).
        blocked (bool): An unresolved conflict is pending in this direction.

    Returns:
        RunResult: The terminal result.
    """
    log = logging.getLogger(f"{APP_NAME}.{direction}")
    previous, ctx.repo.log = ctx.repo.log, log
    try:
        return _BODIES[direction](ctx, automated, bypass_dev_mode, blocked)
    except _DevModeEngaged:
        return RunResult(Outcome.SKIPPED_DEV_MODE)
    except PipelineCancelled as e:
        return RunResult(Outcome.CANCELLED, str(e))
    except CommandError as e:
        return RunResult(Outcome.ADAPTER_ABORT, str(e))
    except Exception as e:
        log.exception(f"Unexpected {direction} pipeline error")
        return RunResult(Outcome.ADAPTER_ABORT, f"{type(e).__name__}: {e}")
    finally:
        ctx.repo.log = previous


def run_direction(
    direction: str,
    ctx: SyncContext,
    interlock: Interlock,
    ledger: RunLedger,
    timeout: float | None = 0,
    automated: bool = True,
    bypass_dev_mode: bool = False,
) -> RunResult:
    """Takes the interlock, runs one pipeline and records its outcome.

    Args:
        direction (str): 'push' or 'pull'.
        ctx (SyncContext): The sync context.
        interlock (Interlock): The shared interlock.
        ledger (RunLedger): The direction's run record.
        timeout (float | None): Interlock wait; 0 is try-acquire.
        automated (bool): False for operator-initiated runs.
        bypass_dev_mode (bool): Ignore the dev-mode gate.

    Returns:
        RunResult: The recorded result.
    """
    log = logging.getLogger(f"{APP_NAME}.{direction}")
    before = ledger.load()
    was_sticky = before.sticky

    with interlock.held(direction, timeout=timeout) as acquired:
        if not acquired:
            result = RunResult(
                Outcome.SKIPPED_BUSY, "Interlock held by the other direction."
            )
        else:
            result = run_pipeline(
                direction,
                ctx,
                automated=automated,
                bypass_dev_mode=bypass_dev_mode,
                blocked=before.blocks_writes,
            )

    record = ledger.record(result)
    _log_result(log, result)

    if record.sticky and not was_sticky and ctx.config.notifications:
        ctx.system.notify(
            f"chezmoi-sync {direction} needs attention",
            result.message or result.outcome.value,
        )
    return result


def _log_result(log: logging.Logger, result: RunResult) -> None:
    text = result.outcome.value
    if result.message:
        text += f": {result.message}"
    if result.outcome is Outcome.OK:
        detail = f" ({result.commit_id[:12]})" if result.commit_id else ""
        if result.rebases:
            detail += f" after {result.rebases} rebase(s)"
        log.info(f"SUCCESS{detail}")
    elif result.outcome.is_failure:
        log.error(text)
    else:
        log.info(text)
