"""Error kinds raised by the caseworker session components.

Everything here is caught at a component boundary by LiveAgent and turned into
a state change plus a human-readable message. Nothing is allowed to escape into
PyAudio callback threads.
"""


class SessionError(Exception):
    """Base class for recoverable session failures."""

    user_message = "Something went wrong. Please retry."

    def __init__(self, message: str = "", user_message: str | None = None):
        super().__init__(message or self.user_message)
        if user_message:
            self.user_message = user_message


class PermissionDenied(SessionError):
    """Microphone (or output device) could not be opened."""

    user_message = "Failed to initialize audio. Please allow microphone access."


class ConnectionFailed(SessionError):
    """Handshake or transport failure while opening the session."""

    user_message = "Connection error. Please retry."


class NotConnected(SessionError):
    """An outbound send was attempted without an open session handle."""

    user_message = "Not connected to the caseworker."


class MalformedEvent(SessionError):
    """Inbound server message with an unexpected shape."""
