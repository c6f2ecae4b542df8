"""Relay error taxonomy.

Learn: Each error maps to one failure site. Only SubscriptionError ever
reaches the subscription manager; the rest are caught where they happen
and turned into a log line plus (for SendError) a session removal.
"""


class RelayError(Exception):
    """Base class for all relay errors."""


class SubscriptionError(RelayError):
    """The broker subscription could not be established or was lost."""


class SendError(RelayError):
    """A write to one client session failed, timed out, or overflowed."""

    def __init__(self, session_id: str, reason: str):
        super().__init__(f"send to session {session_id} failed: {reason}")
        self.session_id = session_id
        self.reason = reason


class PublishError(RelayError):
    """Publishing a payload onto the broker channel failed."""


class TransportAcceptError(RelayError):
    """A new client connection failed during the handshake."""
