"""Broadcast and request state machines: validate transitions and actors.

Broadcast: active -> {completed, expired, cancelled}; nothing leaves a
terminal state. Request: pending -> priced -> customer decision, with
expiry and cancellation reachable from both open states.
"""

from order_broadcast.domain.enums import Actor, BroadcastStatus, RequestStatus
from order_broadcast.domain.errors import InvalidStateError

B = BroadcastStatus
R = RequestStatus
A = Actor


# ---------------------------------------------------------------------------
# Transition maps: from_status -> {to_status: set_of_allowed_actors}
# ---------------------------------------------------------------------------

BROADCAST_TRANSITIONS: dict[BroadcastStatus, dict[BroadcastStatus, set[Actor]]] = {
    B.ACTIVE: {
        B.COMPLETED: {A.CUSTOMER},
        B.EXPIRED: {A.SYSTEM},
        B.CANCELLED: {A.CUSTOMER, A.ADMIN},
    },
}

REQUEST_TRANSITIONS: dict[RequestStatus, dict[RequestStatus, set[Actor]]] = {
    R.PENDING: {
        R.PRICED: {A.MERCHANT},
        R.EXPIRED: {A.SYSTEM},
        R.CANCELLED: {A.CUSTOMER, A.ADMIN, A.SYSTEM},
    },
    R.PRICED: {
        R.CUSTOMER_APPROVED: {A.CUSTOMER},
        R.CUSTOMER_REJECTED: {A.CUSTOMER},
        R.EXPIRED: {A.SYSTEM},
        R.CANCELLED: {A.CUSTOMER, A.ADMIN, A.SYSTEM},
    },
}

BROADCAST_TERMINAL_STATES: set[BroadcastStatus] = {B.COMPLETED, B.EXPIRED, B.CANCELLED}

REQUEST_TERMINAL_STATES: set[RequestStatus] = {
    R.CUSTOMER_APPROVED,
    R.CUSTOMER_REJECTED,
    R.EXPIRED,
    R.CANCELLED,
}

# Requests still "in the running" for a broadcast
OPEN_REQUEST_STATES: set[RequestStatus] = {R.PENDING, R.PRICED}


def _as_broadcast_status(value) -> BroadcastStatus:
    return value if isinstance(value, BroadcastStatus) else BroadcastStatus(value)


def _as_request_status(value) -> RequestStatus:
    return value if isinstance(value, RequestStatus) else RequestStatus(value)


def _validate(transitions, current, target, actor: Actor, kind: str) -> bool:
    allowed_targets = transitions.get(current)
    if allowed_targets is None:
        raise InvalidStateError(
            f"{kind} is already {current.value}; no further transitions are allowed",
            current_status=current.value,
        )

    if target not in allowed_targets:
        raise InvalidStateError(
            f"{kind} cannot move from {current.value} to {target.value}",
            current_status=current.value,
        )

    allowed_actors = allowed_targets[target]
    if actor not in allowed_actors:
        raise InvalidStateError(
            f"Actor {actor.value} is not permitted to move {kind.lower()} "
            f"from {current.value} to {target.value} "
            f"(allowed: {', '.join(sorted(a.value for a in allowed_actors))})",
            current_status=current.value,
        )
    return True


class BroadcastStateMachine:
    """Validates broadcast and request transitions."""

    def validate_broadcast_transition(self, current, target, actor: Actor) -> bool:
        """Return True if the transition is valid. Raise InvalidStateError if not."""
        return _validate(
            BROADCAST_TRANSITIONS,
            _as_broadcast_status(current),
            _as_broadcast_status(target),
            actor,
            "Broadcast",
        )

    def validate_request_transition(self, current, target, actor: Actor) -> bool:
        """Return True if the transition is valid. Raise InvalidStateError if not."""
        return _validate(
            REQUEST_TRANSITIONS,
            _as_request_status(current),
            _as_request_status(target),
            actor,
            "Request",
        )

    def get_allowed_request_transitions(self, current, actor: Actor) -> list[RequestStatus]:
        """Return the request statuses *actor* may move to from *current*."""
        targets = REQUEST_TRANSITIONS.get(_as_request_status(current), {})
        return [target for target, actors in targets.items() if actor in actors]

    def is_broadcast_terminal(self, status) -> bool:
        return _as_broadcast_status(status) in BROADCAST_TERMINAL_STATES

    def is_request_terminal(self, status) -> bool:
        return _as_request_status(status) in REQUEST_TERMINAL_STATES
