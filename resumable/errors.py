"""
Error taxonomy shared by the client session and the server store.

Every error carries an HTTP-style status code so the server can turn it into
a response and the client can decide whether it is worth retrying.
"""
from typing import Optional


class UploadError(Exception):
    """Base error for upload operations."""

    kind = "upload"
    retryable = False
    default_status = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code if status_code is not None else self.default_status


class ValidationError(UploadError):
    """Missing or malformed metadata, rejected request. Never retried."""

    kind = "validation"
    default_status = 400


class TransportError(UploadError):
    """Network failure or unexpected server error. Retried per backoff."""

    kind = "transport"
    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        # status_code stays None for pure network failures
        super().__init__(message)
        self.status_code = status_code


class ConflictError(UploadError):
    """Chunk offset does not match the server's offset."""

    kind = "conflict"
    retryable = True
    default_status = 409


class IntegrityError(UploadError):
    """Completed upload failed the post-transfer consistency check."""

    kind = "integrity"


class ResourceError(UploadError):
    """Filesystem or storage failure."""

    kind = "resource"


class SessionNotFoundError(UploadError):
    """No session record exists for the resource id."""

    kind = "not_found"
    default_status = 404
