"""
Models for the resumable upload package.

Client-side payloads, records and configuration, plus the server-side
session bookkeeping shared by the store and the finalization handler.
"""
import asyncio
import json
import logging
import mimetypes
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"
DEFAULT_ENDPOINT = "/files/"
DEFAULT_MAX_CONCURRENT = 3
DEFAULT_RETRY_DELAYS: Tuple[int, ...] = (0, 3000, 5000, 10000)
DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024
REQUIRED_METADATA = ("filename", "groupId")


class TaskState(Enum):
    """Lifecycle state of a queued file."""
    WAITING = "waiting"
    UPLOADING = "uploading"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class UploadFile:
    """
    Byte source with a known length, name and MIME type.

    Either ``path`` or ``data`` provides the bytes.
    """
    name: str
    size: int
    content_type: str = DEFAULT_CONTENT_TYPE
    last_modified: int = 0  # milliseconds since epoch
    path: Optional[Path] = None
    data: Optional[bytes] = field(default=None, repr=False)

    @classmethod
    def from_path(cls, path: Union[str, Path], content_type: Optional[str] = None) -> "UploadFile":
        path = Path(path)
        stat = path.stat()
        guessed, _ = mimetypes.guess_type(path.name)
        return cls(
            name=path.name,
            size=stat.st_size,
            content_type=content_type or guessed or DEFAULT_CONTENT_TYPE,
            last_modified=int(stat.st_mtime * 1000),
            path=path,
        )

    @classmethod
    def from_bytes(
        cls,
        name: str,
        data: bytes,
        content_type: Optional[str] = None,
        last_modified: int = 0,
    ) -> "UploadFile":
        return cls(
            name=name,
            size=len(data),
            content_type=content_type or DEFAULT_CONTENT_TYPE,
            last_modified=last_modified,
            data=bytes(data),
        )

    async def read_chunk(self, offset: int, size: int) -> bytes:
        """Read up to ``size`` bytes starting at ``offset``."""
        end = min(offset + size, self.size)
        if offset >= end:
            return b""
        if self.data is not None:
            return self.data[offset:end]
        if self.path is None:
            raise ValueError(f"UploadFile {self.name!r} has no byte source")

        def _read():
            with open(self.path, "rb") as f:
                f.seek(offset)
                return f.read(end - offset)

        return await asyncio.to_thread(_read)


@dataclass(frozen=True)
class SuccessRecord:
    """Immutable record of a finished upload."""
    task_id: str
    file_name: str
    file_size: int
    file_type: str
    group_id: str
    remote_id: Optional[str]
    completed_at: datetime
    final_path: Optional[str] = None


@dataclass(frozen=True)
class FailureRecord:
    """Immutable record of a failed upload."""
    task_id: str
    file_name: str
    error_kind: str
    error_detail: str


def parse_max_concurrent(value: Any, default: int = DEFAULT_MAX_CONCURRENT) -> int:
    """Positive integer, or ``default`` for anything else."""
    if isinstance(value, bool):
        return default
    try:
        number = int(str(value).strip()) if isinstance(value, str) else value
    except ValueError:
        return default
    if isinstance(number, int) and number > 0:
        return number
    return default


def parse_retry_delays(
    value: Any,
    default: Tuple[int, ...] = DEFAULT_RETRY_DELAYS,
) -> Tuple[int, ...]:
    """
    Normalize a retry-delay sequence in milliseconds.

    Accepts a sequence of non-negative numbers or its JSON text. Anything
    else yields ``default``.
    """
    if value is None:
        return default
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            logger.warning(f"[config] Could not parse retry delays {value!r}")
            return default
    if not isinstance(value, (list, tuple)):
        logger.warning(f"[config] Invalid retry delays {value!r}, expected an array of numbers")
        return default
    delays = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, (int, float)) or item < 0:
            logger.warning(f"[config] Invalid retry delays {value!r}, expected an array of numbers")
            return default
        delays.append(int(item))
    return tuple(delays)


@dataclass(frozen=True)
class UploadConfig:
    """Immutable client configuration; invalid values fall back to defaults."""
    endpoint: str = DEFAULT_ENDPOINT
    max_concurrent_uploads: int = DEFAULT_MAX_CONCURRENT
    retry_delays: Tuple[int, ...] = DEFAULT_RETRY_DELAYS
    chunk_size: int = DEFAULT_CHUNK_SIZE
    timeout: float = 60.0

    def __post_init__(self):
        object.__setattr__(self, "max_concurrent_uploads", parse_max_concurrent(self.max_concurrent_uploads))
        object.__setattr__(self, "retry_delays", parse_retry_delays(self.retry_delays))
        object.__setattr__(
            self, "chunk_size", parse_max_concurrent(self.chunk_size, default=DEFAULT_CHUNK_SIZE)
        )
        if not self.endpoint or not str(self.endpoint).strip():
            object.__setattr__(self, "endpoint", DEFAULT_ENDPOINT)

    @classmethod
    def from_env(cls, **overrides) -> "UploadConfig":
        """Build from ``UPLOADER_*`` environment variables; overrides win."""
        values: Dict[str, Any] = {
            "endpoint": os.getenv("UPLOADER_ENDPOINT", DEFAULT_ENDPOINT),
            "max_concurrent_uploads": os.getenv("UPLOADER_MAX_CONCURRENT", DEFAULT_MAX_CONCURRENT),
            "retry_delays": os.getenv("UPLOADER_RETRY_DELAYS"),
            "chunk_size": os.getenv("UPLOADER_CHUNK_SIZE", DEFAULT_CHUNK_SIZE),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass(frozen=True)
class ServerConfig:
    """Immutable server configuration."""
    uploads_dir: Path = Path("uploads")
    tmp_dir: Path = Path("uploads_tmp")
    mount_path: str = "/files"
    host: str = "127.0.0.1"
    port: int = 3000

    @classmethod
    def from_env(cls, **overrides) -> "ServerConfig":
        values: Dict[str, Any] = {
            "uploads_dir": Path(os.getenv("UPLOADS_DIR", "uploads")),
            "tmp_dir": Path(os.getenv("UPLOADS_TMP_DIR", "uploads_tmp")),
            "mount_path": os.getenv("UPLOADS_MOUNT_PATH", "/files"),
            "host": os.getenv("HOST", "127.0.0.1"),
            "port": int(os.getenv("PORT", "3000")),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass
class SessionRecord:
    """Server-side bookkeeping for one in-progress upload."""
    resource_id: str
    temp_path: Path
    declared_length: int
    metadata: Dict[str, str]
    offset: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_complete(self) -> bool:
        return self.offset == self.declared_length

    @property
    def bookkeeping_path(self) -> Path:
        return self.temp_path.with_name(f"{self.temp_path.name}.json")

    def missing_metadata(self) -> Sequence[str]:
        return missing_metadata(self.metadata)

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.resource_id,
            "size": self.declared_length,
            "offset": self.offset,
            "metadata": dict(self.metadata),
            "creation_date": self.created_at.isoformat(),
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any], temp_path: Path) -> "SessionRecord":
        return cls(
            resource_id=data["id"],
            temp_path=temp_path,
            declared_length=int(data["size"]),
            metadata=dict(data.get("metadata") or {}),
            offset=int(data.get("offset", 0)),
            created_at=datetime.fromisoformat(data["creation_date"]),
        )


def missing_metadata(metadata: Optional[Dict[str, str]]) -> Sequence[str]:
    metadata = metadata or {}
    return [key for key in REQUIRED_METADATA if not metadata.get(key)]


@dataclass(frozen=True)
class FinalizeResult:
    """Outcome of a successful finalize step."""
    final_path: Path
    status_code: int = 200
    body: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AppendResult:
    """Outcome of an accepted chunk."""
    offset: int
    finalized: Optional[FinalizeResult] = None
