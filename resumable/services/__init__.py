"""Services for the resumable package."""
from .finalize import FinalizationHandler, sanitize_filename, sanitize_group_id
from .session_store import UploadSessionStore
from .transport import HTTPTransferClient

__all__ = [
    "FinalizationHandler",
    "UploadSessionStore",
    "HTTPTransferClient",
    "sanitize_filename",
    "sanitize_group_id",
]
