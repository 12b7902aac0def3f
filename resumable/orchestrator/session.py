"""
Resumable transfer session - one file, one remote upload resource.

State machine::

    CREATED -> CREATING -> TRANSFERRING -> SUCCEEDED
                   \\            \\
                    +------------+-----> FAILED

Chunks are sent strictly one after another. Retryable failures wait out the
configured delay, re-query the server offset and resume from there.
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Sequence

from ..errors import IntegrityError, ResourceError, SessionNotFoundError, UploadError
from ..models import DEFAULT_CHUNK_SIZE, DEFAULT_RETRY_DELAYS
from ..protocols import ITransferClient
from .models import EventKind, SessionEvent, SessionState, UploadTask

logger = logging.getLogger(__name__)

MAX_ERROR_DETAIL = 200


def truncate_detail(detail: str, limit: int = MAX_ERROR_DETAIL) -> str:
    detail = str(detail)
    if len(detail) <= limit:
        return detail
    return f"{detail[:limit]}..."


class TransferSession:
    """
    Resumable transfer of one task's bytes.

    Every state change the scheduler cares about is pushed onto ``events``
    as a ``SessionEvent``; exactly one terminal event is emitted.

    Usage:
        session = TransferSession(task, transport, events, retry_delays=[0, 3000])
        state = await session.run()
    """

    def __init__(
        self,
        task: UploadTask,
        transport: ITransferClient,
        events: "asyncio.Queue[SessionEvent]",
        retry_delays: Sequence[int] = DEFAULT_RETRY_DELAYS,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._task = task
        self._transport = transport
        self._events = events
        self._retry_delays = list(retry_delays)
        self._max_attempts = max(len(self._retry_delays), 1)
        self._chunk_size = chunk_size

        self._state = SessionState.CREATED
        self._remote_id: Optional[str] = None
        self._offset = 0
        self._total = task.file.size
        self._attempts = 0
        self._body: Optional[Dict[str, Any]] = None
        self._aborted = False
        self._abort_event = asyncio.Event()
        self._error_kind = ""
        self._error_detail = ""

    @property
    def task(self) -> UploadTask:
        return self._task

    @property
    def task_id(self) -> str:
        return self._task.task_id

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def remote_id(self) -> Optional[str]:
        return self._remote_id

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def total(self) -> int:
        return self._total

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def error_detail(self) -> str:
        return self._error_detail

    async def run(self) -> SessionState:
        """Drive the session to a terminal state. Never raises UploadError."""
        if self._aborted:
            return self._state
        if self._state != SessionState.CREATED:
            raise RuntimeError(f"Cannot run session in state: {self._state}")

        try:
            await self._create()
            if not self._aborted:
                await self._transfer()
        except UploadError as exc:
            logger.warning(f"[session] {self.task_id} failed ({exc.kind}): {exc.message}")
            self._fail(exc.kind, exc.message)
        except Exception as exc:
            logger.exception(f"[session] Unexpected error for {self.task_id}: {exc}")
            self._fail("unexpected", str(exc) or type(exc).__name__)
        return self._state

    def abort(self, reason: str = "Upload aborted") -> bool:
        """
        Move a non-terminal session straight to FAILED.

        The server record is left in place. Responses arriving after the
        abort are discarded.
        """
        if self._state.terminal:
            return False
        self._aborted = True
        self._abort_event.set()
        logger.info(f"[session] Aborting {self.task_id}: {reason}")
        self._fail("aborted", reason)
        return True

    async def _create(self):
        self._state = SessionState.CREATING
        metadata = self._task.metadata()
        while True:
            try:
                remote_id = await self._transport.create(self._total, metadata)
                break
            except UploadError as exc:
                if self._aborted:
                    return
                if not exc.retryable:
                    raise
                await self._backoff(exc)
                if self._aborted:
                    return

        if self._aborted:
            return
        self._remote_id = remote_id
        self._state = SessionState.TRANSFERRING
        self._attempts = 0
        logger.debug(f"[session] {self.task_id} created remote resource {remote_id}")

    async def _transfer(self):
        while self._offset < self._total:
            chunk = await self._task.file.read_chunk(self._offset, self._chunk_size)
            if self._aborted:
                return
            if not chunk:
                raise ResourceError(
                    f"Source for {self._task.file.name} ended at byte {self._offset} of {self._total}"
                )

            try:
                new_offset, body = await self._transport.append(self._remote_id, self._offset, chunk)
            except UploadError as exc:
                if self._aborted:
                    return
                if not exc.retryable:
                    raise
                await self._recover(exc)
                continue

            if self._aborted:
                return
            self._confirm(new_offset)
            self._attempts = 0
            if body is not None:
                self._body = body

        if self._aborted:
            return
        self._state = SessionState.SUCCEEDED
        logger.info(f"[session] {self.task_id} completed ({self._total} bytes)")
        self._emit(EventKind.SUCCESS)

    async def _recover(self, exc: UploadError):
        """Back off, then resynchronise the offset with the server."""
        while True:
            await self._backoff(exc)
            if self._aborted:
                return
            try:
                offset = await self._transport.query_offset(self._remote_id)
            except UploadError as query_exc:
                if self._aborted:
                    return
                if not query_exc.retryable:
                    if isinstance(query_exc, SessionNotFoundError) and exc.status_code is not None:
                        # the server dropped the upload while handling the failed chunk
                        raise exc from query_exc
                    raise
                exc = query_exc
                continue

            if self._aborted:
                return
            if offset != self._offset:
                self._confirm(offset)
            logger.info(f"[session] {self.task_id} resuming at offset {self._offset}/{self._total}")
            return

    async def _backoff(self, exc: UploadError):
        self._attempts += 1
        if self._attempts >= self._max_attempts:
            logger.warning(
                f"[session] {self.task_id} giving up after {self._attempts} attempt(s): {exc.message}"
            )
            raise exc
        delay = self._retry_delays[self._attempts - 1]
        logger.warning(
            f"[session] {self.task_id} attempt {self._attempts} failed ({exc.message}), "
            f"retrying in {delay} ms"
        )
        await self._sleep(delay / 1000)

    async def _sleep(self, seconds: float):
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._abort_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def _confirm(self, offset: int):
        if offset < self._offset or offset > self._total:
            raise IntegrityError(
                f"Server reported offset {offset} outside [{self._offset}, {self._total}]"
            )
        self._offset = offset
        self._emit(EventKind.PROGRESS)

    def _fail(self, kind: str, detail: str):
        if self._state.terminal:
            return
        self._state = SessionState.FAILED
        self._error_kind = kind
        self._error_detail = truncate_detail(detail)
        self._emit(EventKind.ERROR)

    def _emit(self, kind: EventKind):
        self._events.put_nowait(
            SessionEvent(
                kind=kind,
                task_id=self.task_id,
                offset=self._offset,
                total=self._total,
                remote_id=self._remote_id,
                body=self._body,
                error_kind=self._error_kind,
                error_detail=self._error_detail,
            )
        )
