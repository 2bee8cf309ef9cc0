"""
Error taxonomy for mailbox mirroring.

Every error carries a human-readable message and a machine code so a failed
job can be reported to users and matched on by callers.
"""

from __future__ import annotations


class SyncError(Exception):
    code = "SYNC_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"message": self.message, "code": self.code}


# Connection-class errors: fatal to the attempted connection.


class ImapConnectionError(SyncError):
    code = "CONNECTION_ERROR"


class ConnectionTimeout(ImapConnectionError):
    code = "CONNECTION_TIMEOUT"


class AuthenticationError(ImapConnectionError):
    """Credentials were rejected. Never retried automatically."""

    code = "AUTH_FAILED"

    def __init__(self, message: str, code: str | None = None, hint: str | None = None):
        super().__init__(message, code)
        self.hint = hint

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.hint:
            data["hint"] = self.hint
        return data


class OAuth2Error(AuthenticationError):
    code = "OAUTH2_FAILED"


class TransportError(ImapConnectionError):
    code = "TLS_ERROR"


class ConnectionLostError(ImapConnectionError):
    """The session dropped unexpectedly while a command was in flight."""

    code = "CONNECTION_LOST"


class MaxReconnectAttemptsReached(ImapConnectionError):
    code = "MAX_RECONNECT_ATTEMPTS"

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


# Folder enumeration errors: fatal to the job.


class EnumerationError(SyncError):
    code = "FOLDER_ENUMERATION_FAILED"


# Command-level errors: recovered locally by the caller.


class ImapCommandError(SyncError):
    code = "IMAP_COMMAND_FAILED"


class FolderExistsError(ImapCommandError):
    code = "FOLDER_EXISTS"


# Control API errors.


class InvalidStateTransition(SyncError):
    code = "INVALID_STATE"


class JobNotFound(SyncError):
    code = "JOB_NOT_FOUND"
