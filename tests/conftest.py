"""Shared fixtures: an in-memory stand-in for the tus server."""
import asyncio
from typing import Dict, List, Optional

import pytest

from resumable.errors import ConflictError, SessionNotFoundError


class FakeTransport:
    """
    In-memory ITransferClient.

    ``create_errors`` / ``append_errors`` / ``query_errors`` are consumed one
    per call; ``None`` entries let the call through. ``lose_responses``
    applies that many chunks and then raises, as if the response was lost.
    """

    def __init__(self):
        self.create_errors: List[Optional[Exception]] = []
        self.append_errors: List[Optional[Exception]] = []
        self.query_errors: List[Optional[Exception]] = []
        self.lose_responses = 0
        self.lost_response_error: Optional[Exception] = None
        self.offset_override: Optional[int] = None
        self.gate: Optional[asyncio.Event] = None

        self.data: Dict[str, bytearray] = {}
        self.lengths: Dict[str, int] = {}
        self.metadata: Dict[str, dict] = {}
        self.create_calls = 0
        self.append_calls = 0
        self.query_calls = 0
        self.open_resources = 0
        self.max_open_resources = 0
        self.append_failed = asyncio.Event()

    async def create(self, length, metadata):
        self.create_calls += 1
        if self.create_errors:
            error = self.create_errors.pop(0)
            if error is not None:
                raise error
        resource = f"http://test/files/res-{self.create_calls}"
        self.data[resource] = bytearray()
        self.lengths[resource] = length
        self.metadata[resource] = dict(metadata)
        if length > 0:
            self.open_resources += 1
            self.max_open_resources = max(self.max_open_resources, self.open_resources)
        return resource

    async def query_offset(self, resource):
        self.query_calls += 1
        if self.query_errors:
            error = self.query_errors.pop(0)
            if error is not None:
                raise error
        if resource not in self.data:
            raise SessionNotFoundError("Network Error (404)", 404)
        return len(self.data[resource])

    async def append(self, resource, offset, chunk):
        self.append_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)
        if self.append_errors:
            error = self.append_errors.pop(0)
            if error is not None:
                self.append_failed.set()
                raise error
        stored = self.data[resource]
        if offset != len(stored):
            raise ConflictError(f"Network Error (409: expected {len(stored)})", 409)
        stored.extend(chunk)
        if len(stored) == self.lengths[resource]:
            self.open_resources -= 1
        if self.lose_responses:
            self.lose_responses -= 1
            self.append_failed.set()
            raise self.lost_response_error
        new_offset = self.offset_override if self.offset_override is not None else len(stored)
        body = None
        if len(stored) == self.lengths[resource]:
            body = {"message": "done", "finalPath": f"/uploads/{self.metadata[resource]['filename']}"}
        return new_offset, body


@pytest.fixture
def transport():
    return FakeTransport()
