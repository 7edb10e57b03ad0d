from __future__ import annotations


class RoundtripError(Exception):
    pass


class ConfigError(RoundtripError):
    """Configuration-related error."""
    pass


class DestinationError(ConfigError):
    """
    A destination entry could not be parsed.

    Carries the offending raw entry so callers can report it once at startup
    and continue with the well-formed entries.
    """

    def __init__(self, entry: str, reason: str) -> None:
        super().__init__(f"Invalid destination {entry!r}: {reason}")
        self.entry = entry
        self.reason = reason


class RequestDeserializationError(RoundtripError):
    """Raised when a direct method request body is structurally invalid."""
    pass


class ForwardError(RoundtripError):
    """Raised by an output channel when a message could not be handed to the hub."""
    pass


class TransportError(RoundtripError):
    """Transport-level failure while performing a remote call."""
    pass


class ConnectionNotReadyError(TransportError):
    """The transport connection did not become ready within its timeout."""
    pass
