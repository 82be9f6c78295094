from __future__ import annotations

import pytest

from libs.core.models import RunState
from libs.core.state_machine import RunStateTracker, validate_run_transition


def test_run_state_transitions() -> None:
    assert validate_run_transition(RunState.validating, RunState.reviewing_files)
    assert validate_run_transition(RunState.aggregating, RunState.done)
    assert not validate_run_transition(RunState.validating, RunState.aggregating)
    assert not validate_run_transition(RunState.done, RunState.validating)


def test_tracker_walks_the_happy_path() -> None:
    tracker = RunStateTracker()
    for state in (
        RunState.reviewing_files,
        RunState.generating_docs,
        RunState.aggregating,
        RunState.done,
    ):
        tracker.advance(state)
    assert tracker.state == RunState.done
    assert tracker.history[0] == RunState.validating
    assert len(tracker.history) == 5


def test_tracker_rejects_skipping_a_state() -> None:
    tracker = RunStateTracker()
    tracker.advance(RunState.reviewing_files)
    with pytest.raises(RuntimeError, match="invalid_run_transition:reviewing_files->aggregating"):
        tracker.advance(RunState.aggregating)
    assert tracker.state == RunState.reviewing_files
