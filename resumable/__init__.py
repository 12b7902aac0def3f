"""
Resumable - chunked, resumable batch uploads over the tus protocol.

Client side: an ``UploadScheduler`` queues files per group and runs one
``TransferSession`` per file under a concurrency cap; sessions retry with
backoff and resume from the server's confirmed offset.

Server side: an ``UploadSessionStore`` accepts chunks strictly in offset
order and hands completed uploads to a ``FinalizationHandler``, which moves
them to ``<uploads>/<group>/<filename>``.

Usage:
    from resumable import UploadScheduler, UploadConfig, UploadFile, HTTPTransferClient

    config = UploadConfig(endpoint="http://localhost:3000/files/")
    async with HTTPTransferClient(config.endpoint) as transport:
        async with UploadScheduler(transport, config) as scheduler:
            scheduler.on_all_complete(lambda: print("All done"))
            scheduler.enqueue([UploadFile.from_path("video.mp4")], group_id="batch-1")
            await scheduler.wait()

    # Server
    from resumable import create_app
    app = create_app(ServerConfig(uploads_dir=Path("uploads")))
"""
from .errors import (
    ConflictError,
    IntegrityError,
    ResourceError,
    SessionNotFoundError,
    TransportError,
    UploadError,
    ValidationError,
)
from .models import (
    FailureRecord,
    ServerConfig,
    SuccessRecord,
    TaskState,
    UploadConfig,
    UploadFile,
)
from .orchestrator import SessionState, TransferSession, UploadScheduler
from .services import FinalizationHandler, HTTPTransferClient, UploadSessionStore
from .app import create_app, create_upload_router

__version__ = "0.1.0"
__all__ = [
    # Client
    "UploadScheduler",
    "TransferSession",
    "HTTPTransferClient",
    # Server
    "UploadSessionStore",
    "FinalizationHandler",
    "create_app",
    "create_upload_router",
    # Models
    "UploadFile",
    "UploadConfig",
    "ServerConfig",
    "SuccessRecord",
    "FailureRecord",
    "TaskState",
    "SessionState",
    # Errors
    "UploadError",
    "ValidationError",
    "TransportError",
    "ConflictError",
    "IntegrityError",
    "ResourceError",
    "SessionNotFoundError",
]
