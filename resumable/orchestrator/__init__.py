"""Orchestrator package - client-side scheduling of resumable uploads."""
from .models import EventKind, SessionEvent, SessionState, UploadTask
from .scheduler import UploadScheduler
from .session import TransferSession
from .task_ids import derive_task_id

__all__ = [
    "UploadScheduler",
    "TransferSession",
    "UploadTask",
    "SessionState",
    "SessionEvent",
    "EventKind",
    "derive_task_id",
]
