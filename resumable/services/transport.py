"""HTTP adapter for the tus transfer protocol."""
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urljoin

import httpx

from ..errors import (
    ConflictError,
    SessionNotFoundError,
    TransportError,
    UploadError,
    ValidationError,
)
from .. import tus

logger = logging.getLogger(__name__)

MAX_RESPONSE_TEXT = 100


def _response_text(response: httpx.Response) -> str:
    try:
        return response.text
    except Exception:
        return ""


def error_from_response(response: httpx.Response, action: str) -> UploadError:
    """Map a non-2xx response to the error taxonomy."""
    status = response.status_code
    text = _response_text(response)
    if len(text) > MAX_RESPONSE_TEXT:
        text = f"{text[:MAX_RESPONSE_TEXT]}..."
    message = f"Network Error ({status}: {text})" if text else f"Network Error ({status})"

    if status == 409:
        return ConflictError(message, status)
    if status in (404, 410):
        return SessionNotFoundError(message, status)
    if status == 423 or status >= 500:
        return TransportError(message, status)
    logger.debug(f"[transport] {action} rejected with {status}")
    return ValidationError(message, status)


class HTTPTransferClient:
    """
    HTTP client adapter for tus uploads.

    Implements ITransferClient protocol.
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = 60,
        client: Optional[httpx.AsyncClient] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self._endpoint = endpoint
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._headers = {tus.H_RESUMABLE: tus.TUS_VERSION, **(headers or {})}

    async def __aenter__(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self

    async def __aexit__(self, *args):
        await self.aclose()

    async def aclose(self):
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        if not self._client:
            raise RuntimeError("HTTPTransferClient not initialized. Use 'async with' context.")
        headers = {**self._headers, **kwargs.pop("headers", {})}
        try:
            return await self._client.request(method, url, headers=headers, **kwargs)
        except (httpx.RequestError, httpx.TimeoutException) as exc:
            raise TransportError(f"Network Error ({type(exc).__name__}: {exc})") from exc

    def _resolve(self, resource: str) -> str:
        return urljoin(self._endpoint, resource)

    async def create(self, length: int, metadata: Mapping[str, str]) -> str:
        response = await self._request(
            "POST",
            self._endpoint,
            headers={
                tus.H_UPLOAD_LENGTH: str(length),
                tus.H_UPLOAD_METADATA: tus.encode_metadata(metadata),
            },
        )
        if response.status_code != 201:
            raise error_from_response(response, "create")
        location = response.headers.get("Location")
        if not location:
            raise TransportError("Network Error (create response has no Location header)")
        return self._resolve(location)

    async def query_offset(self, resource: str) -> int:
        response = await self._request("HEAD", resource, headers={"Cache-Control": "no-store"})
        if response.status_code >= 300:
            raise error_from_response(response, "offset query")
        return self._read_offset(response)

    async def append(
        self, resource: str, offset: int, chunk: bytes
    ) -> Tuple[int, Optional[Dict[str, Any]]]:
        response = await self._request(
            "PATCH",
            resource,
            content=chunk,
            headers={
                tus.H_UPLOAD_OFFSET: str(offset),
                "Content-Type": tus.OFFSET_CONTENT_TYPE,
            },
        )
        if response.status_code >= 300:
            raise error_from_response(response, "append")

        body = None
        if response.content:
            try:
                body = response.json()
            except ValueError:
                body = {"message": _response_text(response)}
        return self._read_offset(response), body

    async def terminate(self, resource: str) -> None:
        """Ask the server to delete an upload (termination extension)."""
        response = await self._request("DELETE", resource)
        if response.status_code >= 300:
            raise error_from_response(response, "terminate")

    @staticmethod
    def _read_offset(response: httpx.Response) -> int:
        try:
            return tus.parse_non_negative(response.headers.get(tus.H_UPLOAD_OFFSET), tus.H_UPLOAD_OFFSET)
        except ValueError as exc:
            raise TransportError(f"Network Error ({exc})", response.status_code) from exc
