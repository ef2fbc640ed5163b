import re

from hypothesis import given
from hypothesis import strategies as st

from chezmoi_sync.controllers import DebounceScheduler
from chezmoi_sync.outcomes import Outcome
from chezmoi_sync.system import normalize_identity


@given(name=st.text())
def test_identity_normalization_is_a_fixed_point(name: str) -> None:
    """
    Property: Normalizing any hostname yields a non-empty token made of
    [a-z0-9-] that normalizes to itself.
    """
    token = normalize_identity(name)

    assert token
    assert re.fullmatch(r"[a-z0-9-]+", token)
    assert normalize_identity(token) == token


@given(
    window=st.integers(min_value=0, max_value=60),
    gaps=st.lists(
        st.floats(min_value=0, max_value=30, allow_nan=False), min_size=1, max_size=50
    ),
)
def test_debounce_never_exceeds_twice_the_window(
    window: int, gaps: list[float]
) -> None:
    """
    Property: However edits are spaced, the push starts no later than two
    debounce windows after the first edit of the burst, and never before the
    latest edit it covers.
    """
    sched = DebounceScheduler(window)
    now = 0.0
    first = None
    last = None
    for gap in gaps:
        now += gap
        if sched.due(now):
            break
        sched.on_event(now)
        if first is None:
            first = now
        last = now

    assert sched.deadline is not None
    assert sched.deadline <= first + 2 * window
    assert sched.deadline >= last


@given(
    window=st.integers(min_value=0, max_value=60),
    failures=st.integers(min_value=1, max_value=40),
    outcome=st.sampled_from([Outcome.TRANSIENT, Outcome.ADAPTER_ABORT]),
)
def test_backoff_is_bounded(window: int, failures: int, outcome: Outcome) -> None:
    """
    Property: The cooldown starts at the base interval and never exceeds ten
    base intervals.
    """
    sched = DebounceScheduler(window)
    sched.failures = failures

    delay = sched.backoff(outcome)

    assert sched.base <= delay <= 10 * sched.base
