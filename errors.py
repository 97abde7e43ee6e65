"""
Chat errors.

Raised by the message store, the user registry and the frame decoder.
The WebSocket coordinator turns them into `error` frames for the
originating connection; the HTTP layer maps them to status codes.
"""

from typing import Iterable


class ChatError(Exception):
    """Base class for user-correctable chat failures."""

    default_message = "Chat error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ChatError):
    """Bad author, content or username. Maps to HTTP 400."""

    default_message = "Validation failed"

    def __init__(self, errors: Iterable[str]):
        self.errors = list(errors)
        super().__init__(", ".join(self.errors) or None)


class NotFoundError(ChatError):
    """Unknown message identifier. Maps to HTTP 404."""

    default_message = "Message not found"


class PreconditionError(ChatError):
    """Command issued in the wrong connection state."""

    default_message = "Must join with username first"


class UsernameTakenError(ChatError):
    default_message = "Username already taken"


class ProtocolError(ChatError):
    """Undecodable or malformed inbound frame."""

    default_message = "Invalid message format"


class TransportError(ChatError):
    """Delivery to a single connection failed."""

    default_message = "Failed to deliver frame"
