"""Payment link state machine enforced by the store."""

from paylink.common.errors import InvalidTransition

PENDING = "pending"
SUCCEEDED = "succeeded"
FAILED = "failed"
CANCELLED = "cancelled"
EXPIRED = "expired"

TERMINAL_STATUSES: frozenset[str] = frozenset({SUCCEEDED, FAILED, CANCELLED, EXPIRED})

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {SUCCEEDED, FAILED, CANCELLED, EXPIRED},
    SUCCEEDED: set(),
    FAILED: set(),
    CANCELLED: set(),
    EXPIRED: set(),
}

# Transaction row statuses.
TXN_PENDING = "pending"
TXN_COMPLETED = "completed"
TXN_FAILED = "failed"
TXN_CANCELLED = "cancelled"
TXN_REFUNDED = "refunded"

SETTLED_TRANSACTION_STATUSES: frozenset[str] = frozenset({TXN_COMPLETED})


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Invalid transition: {current} -> {new}")
