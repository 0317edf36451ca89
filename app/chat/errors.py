"""Error taxonomy shared by the chat store, gateway, REST layer and client."""


class ChatError(Exception):
    """Base class. ``message`` is safe to show to the end user."""

    code = "chat_error"
    default_message = "Chat request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class AuthenticationError(ChatError):
    code = "authentication_failed"
    default_message = "Authentication failed"


class AccessDenied(ChatError):
    code = "access_denied"
    default_message = "Access denied to chat room"


class ValidationError(ChatError):
    code = "validation_error"
    default_message = "Invalid message"


class RateLimited(ChatError):
    code = "rate_limited"
    default_message = "Message rate limit exceeded. Please slow down."


class PersistenceError(ChatError):
    code = "persistence_error"
    default_message = "Failed to save chat data"


class ChatNotFound(ChatError):
    code = "not_found"
    default_message = "Chat not found"
