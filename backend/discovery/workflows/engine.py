"""Turn Engine: state machine + transition table for a conversational turn.

RECEIVED → PLANNING → EXECUTING → SYNTHESIZING → DELIVERED, with FAILED
reachable from every non-terminal state.
"""

from __future__ import annotations

from discovery.models.messages import AgentTurn

# === State Transition Table ===
# Key: (from_state, to_state) → guard description
# Absent pair → illegal transition

LEGAL_TRANSITIONS: dict[tuple[str, str], str] = {
    # From RECEIVED
    ("RECEIVED", "PLANNING"): "Message accepted, session lock held",
    ("RECEIVED", "FAILED"): "Cancelled before planning",
    # From PLANNING
    ("PLANNING", "EXECUTING"): "Plan validated (possibly the fallback plan)",
    ("PLANNING", "FAILED"): "Cancelled during planning",
    # From EXECUTING
    ("EXECUTING", "SYNTHESIZING"): "All stages finished or the turn deadline passed",
    ("EXECUTING", "FAILED"): "Cancelled during tool execution",
    # From SYNTHESIZING
    ("SYNTHESIZING", "DELIVERED"): "Answer streamed and citations validated",
    ("SYNTHESIZING", "FAILED"): "Synthesizer unavailable or cancelled mid-stream",
    # Terminal states: DELIVERED, FAILED: no transitions out
}

TERMINAL_STATES = {"DELIVERED", "FAILED"}


class IllegalTransitionError(Exception):
    """Raised when attempting an illegal state transition."""

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Illegal transition: {from_state} → {to_state}. "
            f"See LEGAL_TRANSITIONS for valid transitions."
        )


class TurnEngine:
    """Stateless transition enforcement; all state lives on the AgentTurn.

    Usage:
        engine = TurnEngine()
        turn = AgentTurn(session_id="s1", message="lights over lakes?")

        engine.transition(turn, "PLANNING")
        engine.transition(turn, "EXECUTING")
        engine.fail(turn, "cancelled")
    """

    def transition(self, turn: AgentTurn, to_state: str) -> None:
        """Move a turn to a new state.

        Raises:
            IllegalTransitionError: If the transition is not legal.
        """
        from_state = turn.state
        if from_state in TERMINAL_STATES or (from_state, to_state) not in LEGAL_TRANSITIONS:
            raise IllegalTransitionError(from_state, to_state)
        turn.state = to_state  # type: ignore[assignment]

    def fail(self, turn: AgentTurn, reason: str) -> None:
        """Mark a turn FAILED, keeping whatever outcomes it gathered."""
        self.transition(turn, "FAILED")
        turn.failure_reason = reason

    def deliver(self, turn: AgentTurn) -> None:
        self.transition(turn, "DELIVERED")
