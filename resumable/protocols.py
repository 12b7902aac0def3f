"""
Protocols (Interfaces) for Dependency Inversion.

The session depends on a transfer client, the store on its hooks.
"""
from pathlib import Path
from typing import Any, Awaitable, Dict, Mapping, Optional, Protocol, Tuple, runtime_checkable


@runtime_checkable
class ITransferClient(Protocol):
    """Client side of the resumable transfer protocol."""

    async def create(self, length: int, metadata: Mapping[str, str]) -> str:
        """Create a remote upload resource and return its identifier."""
        ...

    async def query_offset(self, resource: str) -> int:
        """Return the offset the server has confirmed for ``resource``."""
        ...

    async def append(
        self, resource: str, offset: int, chunk: bytes
    ) -> Tuple[int, Optional[Dict[str, Any]]]:
        """Send a chunk at ``offset``; return the new offset and any response body."""
        ...


class ICreateHook(Protocol):
    """Called with the declared metadata before a session is created.

    Raise an ``UploadError`` to reject; its status and message reach the client.
    """

    def __call__(self, metadata: Dict[str, str]) -> Optional[Awaitable[None]]:
        ...


class IFinishHook(Protocol):
    """Called with the relocated file and its metadata after finalize.

    May return a dict merged into the response body, or raise an ``UploadError``.
    """

    def __call__(self, final_path: Path, metadata: Dict[str, str]) -> Any:
        ...
