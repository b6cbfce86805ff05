"""Exception types shared by the sync and parser services."""


class NotepadError(Exception):
    """Base class for notepad errors."""


class ValidationError(NotepadError):
    """Raised when input to the router or a parser is empty or malformed."""

    error_type = "VALIDATION_ERROR"


class DecryptError(NotepadError):
    """Raised when a ciphertext token fails authentication or decoding."""


class SyncError(NotepadError):
    """Raised when a remote store operation fails after all retries."""


class RemoteStoreError(SyncError):
    """Raised when the remote store answers with an error status."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class ExpressionError(NotepadError, ValueError):
    """Raised for arithmetic the safe evaluator refuses to run."""
