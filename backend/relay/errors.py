"""
Exception taxonomy for the relay.

Only RelayConnectionError ends a session. Every other kind is contained
within the turn it happens in.
"""


class RelayError(Exception):
    """Base class for relay errors."""


class RelayConnectionError(RelayError, ConnectionError):
    """
    The client transport failed (disconnect, send failure, send timeout).

    Fatal to the session: no further sends are attempted.
    """


class GenerationError(RelayError):
    """
    The backend failed or produced nothing usable for this turn.

    The session answers with the fallback message and keeps going.
    """


class ActionDecodeError(GenerationError):
    """
    Grammar-constrained output could not be parsed into Do or Say.

    Carries the raw text so it can be logged.
    """

    def __init__(self, raw: str, details: str | None = None):
        self.raw = raw
        self.details = details or "output does not match the Do/Say grammar"
        super().__init__(f"{self.details}: {raw[:200]!r}")


class PersistenceError(RelayError):
    """
    The record store was unreachable or rejected a write.

    Logged by the recorder and never shown to the client.
    """
