"""
Error types for the voice relay.

Only ConnectError is fatal for a call. The rest are recovered where they are
raised: the offending event or frame is logged and skipped.
"""


class RelayError(Exception):
    """Base class for relay errors."""
    pass


class ConnectError(RelayError):
    """The AI channel handshake failed, was rejected, or timed out."""
    pass


class ChannelNotReady(RelayError):
    """A control event was sent on an AI channel that is not connected."""
    pass


class ParseError(RelayError, ValueError):
    """An inbound message on either channel could not be decoded."""
    pass


class RouteUnavailable(RelayError):
    """Caller-bound audio was sent before the stream route was known."""
    pass


class NotifyError(RelayError):
    """The call summary could not be delivered."""
    pass
