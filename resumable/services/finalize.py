"""
Finalization - move a completed upload into permanent storage.

Layout: ``<uploads_dir>/<sanitized groupId>/<sanitized filename>``.
"""
import asyncio
import inspect
import logging
import os
import re
from pathlib import Path
from typing import Optional, Union

from ..errors import IntegrityError, ResourceError, UploadError
from ..models import FinalizeResult, SessionRecord
from ..protocols import IFinishHook

logger = logging.getLogger(__name__)

UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1F]')
UNSAFE_GROUP_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def sanitize_filename(filename: str) -> str:
    """Strip directories and replace characters unsafe on common filesystems."""
    base = re.split(r"[\\/]", str(filename))[-1]
    safe = UNSAFE_FILENAME_CHARS.sub("_", base)
    if safe.strip(".") == "":
        # "", "." and ".." would point at the group directory or its parent
        safe = "_" * max(len(safe), 1)
    return safe


def sanitize_group_id(group_id: str) -> str:
    """Keep alphanumerics, underscore and hyphen; replace everything else."""
    return UNSAFE_GROUP_CHARS.sub("_", str(group_id)) or "_"


def _unlink(path: Path, label: str):
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"[finalize] Could not delete {label} {path}: {e}")


def discard_upload(record: SessionRecord):
    """Best-effort removal of an upload's temporary bytes and bookkeeping."""
    _unlink(record.temp_path, "temp file")
    _unlink(record.bookkeeping_path, "bookkeeping file")


class FinalizationHandler:
    """
    Relocates completed temporary files.

    Invoked by the session store exactly once per upload, when its offset
    reaches the declared length.

    Usage:
        handler = FinalizationHandler(Path("uploads"))
        result = await handler.finalize(record)
        print(result.final_path)
    """

    def __init__(self, uploads_dir: Union[str, Path], on_finish: Optional[IFinishHook] = None):
        self._uploads_dir = Path(uploads_dir).resolve()
        self._uploads_dir.mkdir(parents=True, exist_ok=True)
        self._on_finish = on_finish

    @property
    def uploads_dir(self) -> Path:
        return self._uploads_dir

    def destination_for(self, filename: str, group_id: str) -> Path:
        """Final path for a file, confined to the uploads directory."""
        destination = self._uploads_dir / sanitize_group_id(group_id) / sanitize_filename(filename)
        if not destination.resolve().is_relative_to(self._uploads_dir):
            raise IntegrityError(f"Destination escapes uploads directory: {destination}")
        return destination

    async def finalize(self, record: SessionRecord) -> FinalizeResult:
        """
        Validate, relocate and clean up a completed upload.

        Raises:
            IntegrityError: required metadata vanished since creation
            ResourceError: the file could not be moved into place
            UploadError: raised by the on_finish hook
        """
        metadata = record.metadata or {}
        missing = record.missing_metadata()
        if missing:
            logger.error(
                f"[finalize] Integrity error: missing {', '.join(missing)} for completed upload "
                f"{record.resource_id}. Metadata: {metadata}"
            )
            await asyncio.to_thread(discard_upload, record)
            raise IntegrityError(f"Server integrity error processing upload {record.resource_id}")

        try:
            final_path = self.destination_for(metadata["filename"], metadata["groupId"])
        except IntegrityError:
            await asyncio.to_thread(discard_upload, record)
            raise
        group = final_path.parent.name
        logger.info(f"[finalize] Group: {group} - Moving {record.temp_path} to {final_path}")

        try:
            await asyncio.to_thread(self._relocate, record.temp_path, final_path)
        except OSError as e:
            logger.error(f"[finalize] Group: {group} - Error moving finished upload {record.resource_id}: {e}")
            await asyncio.to_thread(discard_upload, record)
            raise ResourceError(f"Server error storing file {final_path.name}") from e

        logger.info(f"[finalize] Group: {group} - Successfully moved file to: {final_path}")
        await asyncio.to_thread(_unlink, record.bookkeeping_path, "bookkeeping file")

        body = {
            "message": f"File {final_path.name} uploaded to group {group}.",
            "finalPath": str(final_path),
        }
        if self._on_finish is not None:
            body.update(await self._run_hook(final_path, dict(metadata)))
        return FinalizeResult(final_path=final_path, status_code=200, body=body)

    async def _run_hook(self, final_path: Path, metadata: dict) -> dict:
        try:
            extra = self._on_finish(final_path, metadata)
            if inspect.isawaitable(extra):
                extra = await extra
        except UploadError:
            await asyncio.to_thread(_unlink, final_path, "destination file")
            raise
        except Exception as e:
            logger.exception(f"[finalize] on_finish hook failed for {final_path}: {e}")
            await asyncio.to_thread(_unlink, final_path, "destination file")
            raise ResourceError(f"Server error storing file {final_path.name}") from e
        return extra if isinstance(extra, dict) else {}

    @staticmethod
    def _relocate(source: Path, destination: Path):
        destination.parent.mkdir(parents=True, exist_ok=True)
        if destination.exists():
            logger.warning(f"[finalize] Replacing existing file {destination}")
        # rename, never copy: the destination is either absent or complete
        os.replace(source, destination)

