"""
Pipeline state machine.

Each stream moves through pending -> analyzing -> completed -> published,
with failed as the per-attempt failure state. Every status change in the
package goes through check_transition() so the rules live in one table.
"""

from enum import Enum
from typing import Dict, FrozenSet, Tuple

from .errors import InvalidTransitionError
from .models import PipelineStatus


class Actor(str, Enum):
    """Component requesting a status change"""
    DISPATCHER = "dispatcher"
    TRACKER = "tracker"
    OPERATOR = "operator"
    REVIEWER = "reviewer"


# current status -> {(target status, actor allowed to make the move)}
TRANSITIONS: Dict[PipelineStatus, FrozenSet[Tuple[PipelineStatus, Actor]]] = {
    PipelineStatus.PENDING: frozenset({
        (PipelineStatus.ANALYZING, Actor.DISPATCHER),
    }),
    PipelineStatus.ANALYZING: frozenset({
        (PipelineStatus.ANALYZING, Actor.TRACKER),
        (PipelineStatus.COMPLETED, Actor.TRACKER),
        (PipelineStatus.FAILED, Actor.TRACKER),
    }),
    PipelineStatus.COMPLETED: frozenset({
        (PipelineStatus.PUBLISHED, Actor.REVIEWER),
    }),
    PipelineStatus.PUBLISHED: frozenset(),
    PipelineStatus.FAILED: frozenset({
        (PipelineStatus.ANALYZING, Actor.DISPATCHER),
        (PipelineStatus.PENDING, Actor.OPERATOR),
    }),
}

_missing = set(PipelineStatus) - set(TRANSITIONS)
if _missing:
    raise RuntimeError(f"Pipeline statuses without transition rules: {sorted(s.value for s in _missing)}")


def can_transition(current: PipelineStatus, target: PipelineStatus, actor: Actor) -> bool:
    return (target, actor) in TRANSITIONS[current]


def check_transition(current: PipelineStatus, target: PipelineStatus, actor: Actor) -> None:
    """Raise InvalidTransitionError unless `actor` may move `current` to `target`"""
    if not can_transition(current, target, actor):
        raise InvalidTransitionError(
            f"{actor.value} cannot move stream from '{current.value}' to '{target.value}'"
        )


def is_dispatchable(status: PipelineStatus) -> bool:
    return can_transition(status, PipelineStatus.ANALYZING, Actor.DISPATCHER)
