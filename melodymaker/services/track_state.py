"""
Track State Machine.

Explicit state transitions for the generation lifecycle.
Never write ``tracks.status`` directly; go through the repository, which
predicates its conditional UPDATE on sources_for(), so the write only lands
when the stored status may legally move to the target.

States:
    GENERATING: Record exists; the Replicate prediction is pending or running
    COMPLETED : Audio relocated into owned storage; file_url is set
    FAILED    : Submission, generation or relocation failed; error_message is set

Invariants:
    1. GENERATING is the only initial state.
    2. COMPLETED and FAILED are final; late or replayed provider events for a
       terminal track are no-ops.
    3. A track maps to exactly one prediction id, set once while GENERATING.
"""

from __future__ import annotations

from enum import Enum


class TrackStatus(str, Enum):
    """Canonical track lifecycle states (wire values are exact)."""

    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES: frozenset[TrackStatus] = frozenset({
    TrackStatus.COMPLETED,
    TrackStatus.FAILED,
})

_TRANSITIONS: dict[TrackStatus, frozenset[TrackStatus]] = {
    TrackStatus.GENERATING: frozenset({
        TrackStatus.COMPLETED,
        TrackStatus.FAILED,
    }),
    # Terminal states have no outgoing transitions.
    TrackStatus.COMPLETED: frozenset(),
    TrackStatus.FAILED: frozenset(),
}


class InvalidTransitionError(Exception):
    """Raised when a state transition violates the state machine."""

    def __init__(self, from_state: TrackStatus, to_state: TrackStatus):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid transition: {from_state.value} → {to_state.value}"
        )


def assert_transition(
    from_state: TrackStatus,
    to_state: TrackStatus,
) -> None:
    """
    Validate that a state transition is allowed.

    Raises InvalidTransitionError if the transition violates the state machine.
    """
    allowed = _TRANSITIONS.get(from_state, frozenset())
    if to_state not in allowed:
        raise InvalidTransitionError(from_state, to_state)


def sources_for(to_state: TrackStatus) -> frozenset[TrackStatus]:
    """
    States from which ``to_state`` may be entered.

    Raises InvalidTransitionError (from GENERATING, the initial state) when
    nothing may transition into ``to_state``.
    """
    sources = frozenset(
        state for state, targets in _TRANSITIONS.items() if to_state in targets
    )
    if not sources:
        raise InvalidTransitionError(TrackStatus.GENERATING, to_state)
    return sources


def is_terminal(status: TrackStatus | str) -> bool:
    """Check if a status is terminal (no further transitions)."""
    return TrackStatus(status) in TERMINAL_STATES
