"""
Upload scheduler - queues files and runs their sessions under a concurrency cap.

Usage:
    async with HTTPTransferClient(endpoint) as transport:
        scheduler = UploadScheduler(transport, UploadConfig(max_concurrent_uploads=2))
        scheduler.on_success(lambda record: print(f"Done: {record.file_name}"))
        scheduler.on_failure(lambda failure: print(f"Failed: {failure.error_detail}"))
        scheduler.enqueue([UploadFile.from_path(p) for p in paths], group_id="batch-1")
        await scheduler.wait()
"""
import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List, Optional, Sequence, Set

from ..models import FailureRecord, SuccessRecord, TaskState, UploadConfig, UploadFile
from ..protocols import ITransferClient
from ..utils.events import (
    ALL_UPLOADS_COMPLETE,
    UPLOAD_FAILED,
    UPLOAD_PROGRESS,
    UPLOAD_SUCCEEDED,
    EventEmitter,
    FileProgress,
)
from .models import EventKind, SessionEvent, UploadTask
from .session import TransferSession
from .task_ids import task_id_for

logger = logging.getLogger(__name__)

SessionFactory = Callable[[UploadTask, "asyncio.Queue[SessionEvent]"], TransferSession]


class UploadScheduler:
    """
    Owns the upload queue and the set of running sessions.

    ``drain_queue`` is the only place sessions are started; it runs after
    every enqueue and after every terminal session event.
    """

    def __init__(
        self,
        transport: ITransferClient,
        config: Optional[UploadConfig] = None,
        session_factory: Optional[SessionFactory] = None,
    ):
        self._transport = transport
        self._config = config or UploadConfig()
        self._session_factory = session_factory or self._default_session

        self._queue: Deque[UploadTask] = deque()
        self._active: Dict[str, TransferSession] = {}
        self._active_count = 0
        self._runners: Set[asyncio.Task] = set()
        self._seen_ids: Dict[str, int] = {}
        self._base_ids: Dict[str, str] = {}
        self._progress: Dict[str, FileProgress] = {}
        self._successful: List[SuccessRecord] = []
        self._failed: List[FailureRecord] = []

        self._events = EventEmitter()
        self._channel: "asyncio.Queue[SessionEvent]" = asyncio.Queue()
        self._dispatcher: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()

    # Event subscription methods
    def on_progress(self, callback: Callable[[str, float], None]):
        """Called with (task_id, fraction) after each confirmed chunk."""
        return self._events.on(UPLOAD_PROGRESS, callback)

    def on_success(self, callback: Callable[[SuccessRecord], None]):
        """Called when a file finishes. Receives SuccessRecord."""
        return self._events.on(UPLOAD_SUCCEEDED, callback)

    def on_failure(self, callback: Callable[[FailureRecord], None]):
        """Called when a file fails. Receives FailureRecord."""
        return self._events.on(UPLOAD_FAILED, callback)

    def on_all_complete(self, callback: Callable[[], None]):
        """Called when nothing is queued or running any more."""
        return self._events.on(ALL_UPLOADS_COMPLETE, callback)

    # State
    @property
    def config(self) -> UploadConfig:
        return self._config

    @property
    def active_count(self) -> int:
        return self._active_count

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def successful_uploads(self) -> List[SuccessRecord]:
        return list(self._successful)

    @property
    def failed_uploads(self) -> List[FailureRecord]:
        return list(self._failed)

    @property
    def progress(self) -> Dict[str, FileProgress]:
        return dict(self._progress)

    def is_uploading(self) -> bool:
        return self._active_count > 0

    def get_files(self) -> List[Dict[str, object]]:
        """Name, size and type of every successful upload."""
        return [
            {"file_name": r.file_name, "file_size": r.file_size, "file_type": r.file_type}
            for r in self._successful
        ]

    def clear_successful_uploads(self):
        for record in self._successful:
            self._progress.pop(record.task_id, None)
        self._successful = []
        logger.info("[queue] List of successful uploads cleared")

    # Submission
    def enqueue(
        self,
        files: Sequence[UploadFile],
        group_id: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> List[str]:
        """
        Queue files for upload under ``group_id``.

        Files already queued or running are skipped. Must be called from
        inside a running event loop.

        Returns:
            Task ids that were added
        """
        if not files:
            logger.warning("[queue] enqueue called with no files")
            return []
        if group_id is None or str(group_id).strip() == "":
            logger.error("[queue] enqueue requires a non-empty group id")
            return []

        group_id = str(group_id)
        added = []
        logger.info(f"[queue] Adding {len(files)} file(s) for group {group_id}")
        for file in files:
            base_id = task_id_for(file, group_id)
            if self._is_pending(base_id):
                logger.warning(
                    f"[queue] {file.name} (ID: {base_id}) is already queued or uploading, skipping"
                )
                continue
            task_id = self._disambiguate(base_id)
            self._base_ids[task_id] = base_id

            task = UploadTask(file=file, group_id=group_id, task_id=task_id, extra_metadata=metadata)
            self._progress[task_id] = FileProgress(filename=file.name, total_bytes=file.size)
            self._queue.append(task)
            added.append(task_id)

        if added:
            self._idle.clear()
        self.drain_queue()
        return added

    def _is_pending(self, base_id: str) -> bool:
        pending = list(self._active) + [t.task_id for t in self._queue]
        return any(self._base_ids.get(task_id) == base_id for task_id in pending)

    def _disambiguate(self, task_id: str) -> str:
        """Suffix ids that a finished task already used."""
        count = self._seen_ids.get(task_id)
        self._seen_ids[task_id] = (count or 0) + 1
        if count is None:
            return task_id
        return f"{task_id}-{count}"

    def drain_queue(self):
        """Start queued tasks while below the concurrency limit."""
        logger.debug(f"[queue] Processing... active: {self._active_count}, queued: {len(self._queue)}")
        while self._active_count < self._config.max_concurrent_uploads and self._queue:
            task = self._queue.popleft()
            self._active_count += 1
            logger.info(
                f"[queue] Starting {task.file.name} (ID: {task.task_id}, group: {task.group_id}). "
                f"Active count: {self._active_count}"
            )
            self._start_session(task)

        if not self._queue and self._active_count == 0:
            logger.debug("[queue] Queue empty and no active uploads")
            self._idle.set()

    def _default_session(self, task: UploadTask, channel) -> TransferSession:
        return TransferSession(
            task,
            self._transport,
            channel,
            retry_delays=self._config.retry_delays,
            chunk_size=self._config.chunk_size,
        )

    def _start_session(self, task: UploadTask):
        self._ensure_dispatcher()
        task.state = TaskState.UPLOADING
        self._progress[task.task_id].status = TaskState.UPLOADING.value

        session = self._session_factory(task, self._channel)
        self._active[task.task_id] = session
        runner = asyncio.create_task(session.run(), name=f"upload-{task.task_id}")
        self._runners.add(runner)
        runner.add_done_callback(self._runners.discard)

    def _ensure_dispatcher(self):
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self._dispatch_events(), name="upload-events")

    async def _dispatch_events(self):
        while True:
            event = await self._channel.get()
            try:
                await self._handle_event(event)
            except Exception as e:
                logger.exception(f"[queue] Failed to handle {event.kind.value} for {event.task_id}: {e}")
            finally:
                self._channel.task_done()

    async def _handle_event(self, event: SessionEvent):
        session = self._active.get(event.task_id)
        if event.kind == EventKind.PROGRESS:
            progress = self._progress.get(event.task_id)
            if progress:
                progress.update(event.offset, event.total)
            await self._events.emit(UPLOAD_PROGRESS, event.task_id, event.fraction)
            return

        if session is not None:
            task = session.task
            progress = self._progress.get(task.task_id)
            if event.kind == EventKind.SUCCESS:
                task.state = TaskState.SUCCEEDED
                record = SuccessRecord(
                    task_id=task.task_id,
                    file_name=task.file.name,
                    file_size=task.file.size,
                    file_type=task.file.content_type,
                    group_id=task.group_id,
                    remote_id=event.remote_id,
                    completed_at=datetime.now(timezone.utc),
                    final_path=(event.body or {}).get("finalPath"),
                )
                self._successful.append(record)
                if progress:
                    progress.update(event.total, event.total)
                    progress.status = TaskState.SUCCEEDED.value
                logger.info(f"[queue] Finished {task.file.name} (group: {task.group_id})")
                await self._events.emit(UPLOAD_SUCCEEDED, record)
            else:
                task.state = TaskState.FAILED
                failure = FailureRecord(
                    task_id=task.task_id,
                    file_name=task.file.name,
                    error_kind=event.error_kind,
                    error_detail=event.error_detail,
                )
                self._failed.append(failure)
                if progress:
                    progress.status = TaskState.FAILED.value
                    progress.error = event.error_detail
                logger.error(f"[queue] {task.file.name} failed: {event.error_detail}")
                await self._events.emit(UPLOAD_FAILED, failure)

        await self._task_finished(event.task_id)

    async def _task_finished(self, task_id: str):
        self._base_ids.pop(task_id, None)
        if self._active.pop(task_id, None) is not None:
            self._active_count -= 1
            logger.debug(f"[queue] Released slot for {task_id}. Active count: {self._active_count}")
        else:
            logger.warning(f"[queue] Termination for unknown or already finished task {task_id}")
            if self._active_count < 0:
                self._active_count = 0

        await self._check_idle()
        self.drain_queue()

    async def _check_idle(self):
        # fires on the transition into idle only
        if self._active_count == 0 and not self._queue and not self._idle.is_set():
            logger.info("[queue] All known uploads finished and queue is empty")
            self._idle.set()
            await self._events.emit(ALL_UPLOADS_COMPLETE)

    # Control
    async def cancel(self, task_id: str) -> bool:
        """Abort a running task or drop a queued one."""
        session = self._active.get(task_id)
        if session is not None:
            return session.abort("Upload cancelled")

        for task in list(self._queue):
            if task.task_id == task_id:
                self._queue.remove(task)
                self._base_ids.pop(task_id, None)
                task.state = TaskState.FAILED
                failure = FailureRecord(task_id, task.file.name, "aborted", "Upload cancelled")
                self._failed.append(failure)
                progress = self._progress.get(task_id)
                if progress:
                    progress.status = TaskState.FAILED.value
                    progress.error = failure.error_detail
                await self._events.emit(UPLOAD_FAILED, failure)
                await self._check_idle()
                return True
        return False

    async def abort_all(self):
        """Drop every queued task and abort every running session."""
        dropped = len(self._queue)
        for task in self._queue:
            self._base_ids.pop(task.task_id, None)
        self._queue.clear()
        for session in list(self._active.values()):
            session.abort("Upload aborted")
        if dropped:
            logger.info(f"[queue] Dropped {dropped} queued task(s)")
        if self._active:
            await self._channel.join()
        if self._active_count == 0:
            self._idle.set()

    async def wait(self):
        """Wait until nothing is queued or running."""
        await self._idle.wait()
        await self._channel.join()

    async def close(self):
        await self.abort_all()
        if self._runners:
            await asyncio.gather(*self._runners, return_exceptions=True)
        if self._dispatcher and not self._dispatcher.done():
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
        self._dispatcher = None
