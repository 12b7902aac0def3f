"""
Upload session store - server-side bookkeeping for resumable uploads.

Each upload owns ``<directory>/<id>`` (received bytes) and
``<directory>/<id>.json`` (length, offset, metadata). Mutations on one id
are serialized by a per-id lock; different ids never wait on each other.
"""
import asyncio
import inspect
import json
import logging
import os
import re
import uuid
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

from ..errors import ConflictError, ResourceError, SessionNotFoundError, ValidationError
from ..models import AppendResult, FinalizeResult, SessionRecord, missing_metadata
from ..protocols import ICreateHook
from .finalize import FinalizationHandler, discard_upload

logger = logging.getLogger(__name__)

RESOURCE_ID = re.compile(r"[0-9a-f]{32}")


def _missing_message(missing) -> str:
    return f"Missing {' and '.join(repr(key) for key in missing)} in metadata"


class UploadSessionStore:
    """
    Durable map from resource id to SessionRecord.

    Usage:
        store = UploadSessionStore(tmp_dir, FinalizationHandler(uploads_dir))
        record = await store.create(len(data), {"filename": "a.txt", "groupId": "g1"})
        result = await store.append_chunk(record.resource_id, 0, data)
        assert result.finalized is not None
    """

    def __init__(
        self,
        directory: Union[str, Path],
        finalizer: FinalizationHandler,
        on_create: Optional[ICreateHook] = None,
    ):
        self._directory = Path(directory).resolve()
        self._directory.mkdir(parents=True, exist_ok=True)
        self._finalizer = finalizer
        self._on_create = on_create
        self._records: Dict[str, SessionRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def finalizer(self) -> FinalizationHandler:
        return self._finalizer

    def _lock_for(self, resource_id: str) -> asyncio.Lock:
        lock = self._locks.get(resource_id)
        if lock is None:
            lock = self._locks[resource_id] = asyncio.Lock()
        return lock

    async def create(self, declared_length: int, metadata: Mapping[str, str]) -> SessionRecord:
        """
        Allocate a new upload.

        Raises:
            ValidationError: negative length or missing filename/groupId
            UploadError: rejection raised by the on_create hook
        """
        logger.info(f"[store] Upload creation requested. Metadata: {dict(metadata or {})}")
        if declared_length is None or declared_length < 0:
            raise ValidationError(f"Invalid upload length: {declared_length}")
        missing = missing_metadata(dict(metadata or {}))
        if missing:
            logger.warning(f"[store] Upload rejected. Missing metadata: {', '.join(missing)}")
            raise ValidationError(_missing_message(missing))

        if self._on_create is not None:
            result = self._on_create(dict(metadata))
            if inspect.isawaitable(result):
                await result

        resource_id = uuid.uuid4().hex
        record = SessionRecord(
            resource_id=resource_id,
            temp_path=self._directory / resource_id,
            declared_length=declared_length,
            metadata=dict(metadata),
        )
        try:
            await asyncio.to_thread(self._initialize, record)
        except OSError as e:
            logger.error(f"[store] Could not allocate storage for {resource_id}: {e}")
            raise ResourceError("Server error allocating upload") from e
        self._records[resource_id] = record
        logger.info(
            f"[store] Allowing creation for group {metadata['groupId']}, file {metadata['filename']} "
            f"({resource_id}, {declared_length} bytes)"
        )

        if declared_length == 0:
            async with self._lock_for(resource_id):
                await self._finalize(record)
        return record

    async def get(self, resource_id: str) -> SessionRecord:
        """Return the record for ``resource_id``, loading it from disk if needed."""
        record = self._records.get(resource_id)
        if record is not None:
            return record
        if not RESOURCE_ID.fullmatch(resource_id or ""):
            raise SessionNotFoundError(f"Upload {resource_id} not found")
        record = await asyncio.to_thread(self._load, resource_id)
        if record is None:
            raise SessionNotFoundError(f"Upload {resource_id} not found")
        # a concurrent load or an append may have cached it first
        return self._records.setdefault(resource_id, record)

    async def _locked_get(self, resource_id: str) -> SessionRecord:
        """get() for a caller holding the id's lock; unknown ids leave no lock entry behind."""
        try:
            return await self.get(resource_id)
        except SessionNotFoundError:
            self._locks.pop(resource_id, None)
            raise

    async def query_offset(self, resource_id: str) -> int:
        return (await self.get(resource_id)).offset

    async def append_chunk(self, resource_id: str, start_offset: int, data: bytes) -> AppendResult:
        """
        Append ``data`` at ``start_offset``.

        Raises:
            SessionNotFoundError: unknown or already finalized upload
            ConflictError: ``start_offset`` is not the current offset
            ValidationError: the chunk would run past the declared length
            ResourceError: the bytes could not be stored
        """
        async with self._lock_for(resource_id):
            record = await self._locked_get(resource_id)
            if start_offset != record.offset:
                logger.warning(
                    f"[store] Offset mismatch for {resource_id}: expected {record.offset}, got {start_offset}"
                )
                raise ConflictError(f"Upload-Offset mismatch: expected {record.offset}, got {start_offset}")
            if start_offset + len(data) > record.declared_length:
                raise ValidationError(
                    f"Chunk of {len(data)} bytes at offset {start_offset} exceeds "
                    f"declared length {record.declared_length}"
                )

            if data:
                await asyncio.to_thread(self._write, record, data)
                record.offset += len(data)
                await asyncio.to_thread(self._save, record)
                logger.debug(f"[store] {resource_id} at {record.offset}/{record.declared_length}")

            finalized = None
            if record.is_complete:
                finalized = await self._finalize(record)
            return AppendResult(offset=record.offset, finalized=finalized)

    async def delete_session(self, resource_id: str):
        """Remove an upload and its temporary bytes."""
        async with self._lock_for(resource_id):
            record = await self._locked_get(resource_id)
            await asyncio.to_thread(discard_upload, record)
            self._forget(resource_id)
            logger.info(f"[store] Deleted upload {resource_id}")

    async def _finalize(self, record: SessionRecord) -> FinalizeResult:
        logger.info(f"[store] Upload finished: {record.resource_id}. Metadata: {record.metadata}")
        try:
            return await self._finalizer.finalize(record)
        finally:
            self._forget(record.resource_id)

    def _forget(self, resource_id: str):
        self._records.pop(resource_id, None)
        self._locks.pop(resource_id, None)

    # Blocking helpers, run in a worker thread
    def _initialize(self, record: SessionRecord):
        record.temp_path.touch(exist_ok=False)
        self._save(record)

    @staticmethod
    def _save(record: SessionRecord):
        tmp = record.bookkeeping_path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(record.to_json()), encoding="utf-8")
        os.replace(tmp, record.bookkeeping_path)

    def _load(self, resource_id: str) -> Optional[SessionRecord]:
        temp_path = self._directory / resource_id
        bookkeeping = temp_path.with_name(f"{resource_id}.json")
        if not temp_path.exists() or not bookkeeping.exists():
            return None
        try:
            record = SessionRecord.from_json(json.loads(bookkeeping.read_text(encoding="utf-8")), temp_path)
        except (OSError, ValueError, KeyError) as e:
            logger.error(f"[store] Unreadable bookkeeping for {resource_id}: {e}")
            return None
        # the stored bytes are the authority for the offset
        record.offset = min(temp_path.stat().st_size, record.declared_length)
        return record

    @staticmethod
    def _write(record: SessionRecord, data: bytes):
        try:
            with open(record.temp_path, "r+b") as f:
                f.seek(record.offset)
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            logger.error(f"[store] Failed to write chunk for {record.resource_id}: {e}")
            try:
                os.truncate(record.temp_path, record.offset)
            except OSError as trunc_error:
                logger.error(f"[store] Could not roll back {record.temp_path}: {trunc_error}")
            raise ResourceError(f"Server error storing chunk for upload {record.resource_id}") from e
