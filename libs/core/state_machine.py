from __future__ import annotations

from typing import Dict, Set

from .models import RunState

RUN_TRANSITIONS: Dict[RunState, Set[RunState]] = {
    RunState.validating: {RunState.reviewing_files},
    RunState.reviewing_files: {RunState.generating_docs},
    RunState.generating_docs: {RunState.aggregating},
    RunState.aggregating: {RunState.done},
    RunState.done: set(),
}


def validate_run_transition(current: RunState, new: RunState) -> bool:
    return new in RUN_TRANSITIONS.get(current, set())


class RunStateTracker:
    def __init__(self) -> None:
        self.state = RunState.validating
        self.history = [RunState.validating]

    def advance(self, new: RunState) -> None:
        if not validate_run_transition(self.state, new):
            raise RuntimeError(f"invalid_run_transition:{self.state.value}->{new.value}")
        self.state = new
        self.history.append(new)
