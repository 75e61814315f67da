"""
Step state machines for multi-step engine operations.

Container recreation and the self-update handoff are strictly ordered
sequences of fallible steps. Each is described by a transition table
``(state, event) -> state``; the runner executes the step for the current
state, feeds the outcome back as an event, and stops on a terminal state.

Usage:
    machine = StepStateMachine('recreate web', RECREATE_TRANSITIONS,
                               initial=RecreateState.INSPECTING,
                               terminal={RecreateState.DONE, RecreateState.FAILED})
    machine.fire(StepEvent.SUCCEEDED)   # INSPECTING -> STOPPING
    machine.fire(StepEvent.FAILED)      # STOPPING -> FAILED
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Hashable, Iterable, List, Tuple

logger = logging.getLogger(__name__)


class StepEvent(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class InvalidTransition(Exception):
    """No transition defined for (state, event)."""


def next_state(transitions: Dict[Tuple[Hashable, StepEvent], Hashable], state, event: StepEvent):
    """Pure transition function."""
    try:
        return transitions[(state, event)]
    except KeyError:
        raise InvalidTransition(f"No transition from {state} on {event}")


def linear_transitions(steps: Iterable, failed) -> Dict[Tuple[Hashable, StepEvent], Hashable]:
    """
    Transition table for a straight pipeline.

    Each step advances to the next on success and to ``failed`` on failure.
    The last element is the success terminal.
    """
    steps = list(steps)
    table = {}
    for current, following in zip(steps, steps[1:]):
        table[(current, StepEvent.SUCCEEDED)] = following
        table[(current, StepEvent.FAILED)] = failed
    return table


class StepStateMachine:
    """
    Current state plus history for one run.

    The history records every state entered with a timestamp so a failure
    can be reported by the step it happened in.
    """

    def __init__(self, label: str, transitions, initial, terminal):
        self.label = label
        self.transitions = transitions
        self.state = initial
        self.terminal = set(terminal)
        self.history: List[Tuple[Hashable, datetime]] = [(initial, datetime.now(timezone.utc))]
        self.last_step = initial

    @property
    def is_terminal(self) -> bool:
        return self.state in self.terminal

    def fire(self, event: StepEvent):
        if self.is_terminal:
            raise InvalidTransition(f"{self.label}: already in terminal state {self.state}")
        target = next_state(self.transitions, self.state, event)
        logger.debug(f"{self.label}: {_name(self.state)} -> {_name(target)}")
        self.last_step = self.state
        self.state = target
        self.history.append((target, datetime.now(timezone.utc)))
        return target

    def states_visited(self) -> List[str]:
        return [_name(state) for state, _ in self.history]


def _name(state) -> str:
    return state.value if isinstance(state, Enum) else str(state)
