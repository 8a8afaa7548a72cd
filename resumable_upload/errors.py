"""
Upload Errors

Every failure the session engine reports belongs to one of these classes.
Each carries a stable ``code`` (used on the wire) and the HTTP status the
REST binding answers with, so a remote caller re-raises exactly what the
engine raised.
"""

from typing import Dict, Optional, Type


class UploadError(Exception):
    """Base class for all resumable upload errors."""
    code = "upload_error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class InvalidArgument(UploadError):
    """Malformed initialize parameters or chunk payload."""
    code = "invalid_argument"
    status_code = 400


class NotFound(UploadError):
    """Unknown session id."""
    code = "not_found"
    status_code = 404


class OutOfRange(UploadError):
    """Chunk number outside [1, total_chunks]."""
    code = "out_of_range"
    status_code = 416


class InvalidState(UploadError):
    """Operation not valid for the session's current status."""
    code = "invalid_state"
    status_code = 409


class IncompleteUpload(UploadError):
    """Finalize found chunk records missing despite a complete status."""
    code = "incomplete_upload"
    status_code = 422

    def __init__(self, message: str = "", missing: Optional[list] = None):
        super().__init__(message)
        self.missing = list(missing or [])


class StorageFailure(UploadError):
    """Underlying chunk or session store I/O error."""
    code = "storage_failure"
    status_code = 500


class TransportError(UploadError):
    """The client could not reach the server or got an unreadable answer."""
    code = "transport_error"
    status_code = 502


class UploadAttemptFailed(UploadError):
    """
    An upload attempt stopped before finalize succeeded.

    The session itself is still resumable with ``session_id``; the error
    that stopped the attempt is available as ``__cause__``.
    """
    code = "upload_attempt_failed"
    status_code = 500

    def __init__(self, message: str = "", session_id: Optional[str] = None):
        super().__init__(message)
        self.session_id = session_id


_ERRORS_BY_CODE: Dict[str, Type[UploadError]] = {
    cls.code: cls
    for cls in (
        InvalidArgument, NotFound, OutOfRange, InvalidState,
        IncompleteUpload, StorageFailure, TransportError,
    )
}


def error_from_code(code: str, message: str = "") -> UploadError:
    """Rebuild the error class named by a wire ``code``."""
    cls = _ERRORS_BY_CODE.get(code, UploadError)
    return cls(message)
