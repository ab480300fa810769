"""Error taxonomy for the realtime chat subsystem.

Every error carries a machine-readable ``code``, a human ``message`` and the
HTTP status the REST surface maps it to. The realtime layer reports them as
``error`` events to the originating connection; only :class:`AuthError`
terminates a connection (and only during the handshake).
"""
from typing import Optional


class ChatError(Exception):
    """Base class for all chat subsystem failures."""

    code: str = "chat_error"
    status_code: int = 500

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_payload(self) -> dict:
        return {"message": self.message, "code": self.code}


class AuthError(ChatError):
    """Connection-level authentication failure."""

    status_code = 401

    MISSING_TOKEN = "missing_token"
    INVALID_TOKEN = "invalid_token"
    USER_NOT_FOUND = "user_not_found"

    _MESSAGES = {
        MISSING_TOKEN: "Authentication error: Token not provided",
        INVALID_TOKEN: "Authentication error: Invalid token",
        USER_NOT_FOUND: "Authentication error: User not found",
    }

    def __init__(self, code: str) -> None:
        super().__init__(self._MESSAGES.get(code, "Authentication error"), code=code)


class NotFoundError(ChatError):
    code = "not_found"
    status_code = 404


class ForbiddenError(ChatError):
    code = "forbidden"
    status_code = 403


class ValidationError(ChatError):
    code = "validation_error"
    status_code = 400


class PersistenceError(ChatError):
    code = "persistence_error"
    status_code = 500
