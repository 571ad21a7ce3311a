from __future__ import annotations


class ChatSyncError(Exception):
    """Base class for failures surfaced to the caller of a chat operation."""

    code = "error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(ChatSyncError):
    code = "invalid_request"


class AuthError(ChatSyncError):
    code = "unauthorized"


class EmailNotVerified(AuthError):
    code = "email_not_verified"


class WriteError(ChatSyncError):
    code = "write_failed"


class ReadError(ChatSyncError):
    code = "read_failed"


class NotFoundError(ChatSyncError):
    code = "not_found"
