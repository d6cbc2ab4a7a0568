"""
Typed failures raised by the messaging core.

Each error carries the HTTP status it maps to; main.py registers a single
handler that renders them as {"detail": message}.
"""


class ChatError(Exception):
    """Base class for known, user-facing messaging errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BadRequest(ChatError):
    """Malformed or empty input, e.g. a message with no content and no attachment."""

    status_code = 400


class Forbidden(ChatError):
    """The acting user may not perform this operation."""

    status_code = 403


class NotFound(ChatError):
    """The channel or message does not exist."""

    status_code = 404
