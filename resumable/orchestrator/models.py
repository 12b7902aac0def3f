"""Orchestrator data models."""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from ..models import TaskState, UploadFile


class SessionState(Enum):
    """State of a resumable transfer session."""
    CREATED = "created"
    CREATING = "creating"
    TRANSFERRING = "transferring"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.SUCCEEDED, SessionState.FAILED)


class EventKind(Enum):
    PROGRESS = "progress"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class UploadTask:
    """One file queued for upload."""
    file: UploadFile
    group_id: str
    task_id: str
    state: TaskState = TaskState.WAITING
    extra_metadata: Optional[Dict[str, str]] = None

    def metadata(self) -> Dict[str, str]:
        """Metadata sent on resource creation."""
        metadata = dict(self.extra_metadata or {})
        metadata.update({
            "filename": self.file.name,
            "filetype": self.file.content_type,
            "groupId": str(self.group_id),
        })
        return metadata


@dataclass(frozen=True)
class SessionEvent:
    """Tagged notification from a session to its scheduler."""
    kind: EventKind
    task_id: str
    offset: int = 0
    total: int = 0
    remote_id: Optional[str] = None
    body: Optional[Dict[str, Any]] = None
    error_kind: str = ""
    error_detail: str = ""

    @property
    def fraction(self) -> float:
        if self.total <= 0:
            return 1.0 if self.kind == EventKind.SUCCESS else 0.0
        return self.offset / self.total
