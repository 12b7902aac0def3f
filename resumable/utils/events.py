"""Scheduler notifications: event names, per-file progress and the emitter."""
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, DefaultDict, List

logger = logging.getLogger(__name__)

UPLOAD_PROGRESS = "upload-progress"
UPLOAD_SUCCEEDED = "upload-succeeded"
UPLOAD_FAILED = "upload-failed"
ALL_UPLOADS_COMPLETE = "all-uploads-complete"


@dataclass
class FileProgress:
    """Progress of one queued file, kept for display."""
    filename: str
    bytes_uploaded: int = 0
    total_bytes: int = 0
    percent: float = 0.0
    status: str = "waiting"  # waiting, uploading, succeeded, failed
    error: str = ""

    def update(self, bytes_uploaded: int, total_bytes: int):
        self.bytes_uploaded = bytes_uploaded
        self.total_bytes = total_bytes
        self.percent = (bytes_uploaded / total_bytes * 100) if total_bytes > 0 else 100.0


class EventEmitter:
    """
    Named events with sync or async listeners.

    A failing listener is logged and skipped; the remaining listeners still
    run and the emitter never raises.
    """

    def __init__(self):
        self._listeners: DefaultDict[str, List[Callable]] = defaultdict(list)

    def on(self, event_name: str, callback: Callable) -> Callable[[], None]:
        """Subscribe; returns a function that unsubscribes again."""
        listeners = self._listeners[event_name]
        if callback not in listeners:
            listeners.append(callback)
        return lambda: self.off(event_name, callback)

    def off(self, event_name: str, callback: Callable):
        listeners = self._listeners.get(event_name)
        if listeners and callback in listeners:
            listeners.remove(callback)

    def listener_count(self, event_name: str) -> int:
        return len(self._listeners.get(event_name, ()))

    async def emit(self, event_name: str, *args):
        # listeners may emit re-entrantly, e.g. scheduler.cancel() from a listener
        for callback in list(self._listeners.get(event_name, ())):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"[events] Listener for {event_name} failed: {e}")
