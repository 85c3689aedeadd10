"""
Error taxonomy for backup runs.

Per-item errors (one database, one group, one upload, one deletion) are caught
and logged by the stage that raised them. Stage-level errors (ConfigError,
EmptyResultError, a failed single-unit export) terminate the run.
"""

from typing import Optional


class BackupError(Exception):
    """Base class for all backup errors."""

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage


class ConfigError(BackupError):
    """Raised when required configuration is missing or invalid."""
    pass


class ProcessError(BackupError):
    """Raised when an external export process exits with a non-zero code."""

    def __init__(self, message: str, unit: Optional[str] = None,
                 exit_code: Optional[int] = None, stderr: str = '',
                 stage: Optional[str] = None):
        super().__init__(message, stage=stage)
        self.unit = unit
        self.exit_code = exit_code
        self.stderr = stderr


class CompressionError(ProcessError):
    """Raised when a group archive cannot be created."""
    pass


class EmptyResultError(BackupError):
    """Raised when a run produced no artifacts to upload."""
    pass


class StorageError(BackupError):
    """Raised when a remote store operation fails."""
    pass


class AuthError(StorageError):
    """Raised when credentials are invalid, expired or cannot be refreshed."""
    pass


class DestinationNotFoundError(StorageError):
    """Raised when the destination folder does not exist in the remote store."""
    pass


class NotFoundError(StorageError):
    """Raised when a remote entry targeted for deletion is already gone."""
    pass


class TransferError(StorageError):
    """
    Raised when an upload fails terminally.

    ``kind`` records how the last failure was classified:
    'auth', 'destination' or 'terminal'.
    """

    AUTH = 'auth'
    DESTINATION = 'destination'
    TERMINAL = 'terminal'

    def __init__(self, message: str, kind: str = TERMINAL, attempts: int = 1,
                 stage: Optional[str] = None):
        super().__init__(message, stage=stage)
        self.kind = kind
        self.attempts = attempts
