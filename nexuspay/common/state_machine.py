"""Payment flow state machine enforced by the orchestrator."""

IDLE = "IDLE"
ORDER_CREATING = "ORDER_CREATING"
AWAITING_PROOF = "AWAITING_PROOF"
VERIFYING = "VERIFYING"
SUCCEEDED = "SUCCEEDED"
FAILED = "FAILED"
CANCELLED = "CANCELLED"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    IDLE: {ORDER_CREATING},
    ORDER_CREATING: {AWAITING_PROOF, FAILED},
    AWAITING_PROOF: {VERIFYING, CANCELLED, FAILED},
    VERIFYING: {SUCCEEDED, FAILED},
    SUCCEEDED: set(),
    FAILED: set(),
    CANCELLED: set(),
}

TERMINAL_STATES = frozenset({SUCCEEDED, FAILED, CANCELLED})


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")


def is_terminal(state: str) -> bool:
    return state in TERMINAL_STATES
