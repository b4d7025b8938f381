"""Payment status machine enforced by the payment façade."""

from bgpay.common.errors import InvalidTransition

CREATED = "created"
PENDING = "pending"
CONFIRMED = "confirmed"
EXPIRED = "expired"
FAILED = "failed"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    CREATED: {PENDING, FAILED},
    PENDING: {CONFIRMED, EXPIRED, FAILED},
    CONFIRMED: set(),
    EXPIRED: set(),
    FAILED: set(),
}

TERMINAL_STATES = frozenset(state for state, targets in ALLOWED_TRANSITIONS.items() if not targets)


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATES


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(current, new)
