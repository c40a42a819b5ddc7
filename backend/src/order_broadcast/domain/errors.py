"""Error taxonomy for broadcast, quoting and resolution operations.

Every error carries a stable ``code`` that the HTTP layer passes through to
clients, so the customer app can tell "try another quote" apart from
"this order was already decided".
"""


class BroadcastError(Exception):
    """Base class for all reported outcomes of the broadcasting core."""

    code = "broadcast_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class PreconditionError(BroadcastError):
    """Malformed input, rejected before anything is written."""

    code = "precondition"


class NotFoundError(BroadcastError):
    code = "not_found"


class InvalidStateError(BroadcastError):
    """Operation attempted from a status that does not permit it."""

    code = "invalid_state"

    def __init__(self, message: str, current_status: str | None = None):
        self.current_status = current_status
        super().__init__(message)


class TooLateToQuoteError(InvalidStateError):
    """Quote submitted after the broadcast's pricing deadline."""

    code = "too_late_to_quote"


class StaleQuoteError(BroadcastError):
    """Approval attempted after the quote's validity window closed."""

    code = "stale_quote"


class RaceLostError(BroadcastError):
    """The broadcast was already completed by another approval."""

    code = "already_resolved"
