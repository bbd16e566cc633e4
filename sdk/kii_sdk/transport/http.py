"""
REST transport over httpx.

Every request opens a fresh httpx.AsyncClient, so a transport instance can
be shared by coroutines running on different event loops (blocking calls
on the caller's thread and callback calls on the worker loop).

Invariants:
    - App credentials are sent on every request, the bearer token only when
      a session exists
    - Bodies are uploaded and downloaded in chunks of settings.chunk_size
    - A failed download never leaves a file at its destination
    - httpx errors never escape; they become TransportError with status None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import httpx

from ..config import KiiSettings
from ..errors import TransportError
from .base import (
    JSON_CONTENT_TYPE,
    OCTET_STREAM,
    ProgressCallback,
    TransportResponse,
    error_for_status,
)

logger = logging.getLogger(__name__)

APP_ID_HEADER = "X-Kii-AppID"
APP_KEY_HEADER = "X-Kii-AppKey"


class HttpTransport:
    """Transport that talks to the Kii REST API.

    Attributes:
        settings: Application credentials, site and timeouts

    Example:
        >>> transport = HttpTransport(KiiSettings(app_id="a", app_key="k"))
        >>> response = await transport.send("GET", "/apps/a/users/me", access_token=token)
    """

    def __init__(
        self,
        settings: KiiSettings,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            settings: SDK settings
            http_transport: Optional httpx transport (httpx.MockTransport in tests)
        """
        self.settings = settings
        self._http_transport = http_transport

    @property
    def base_url(self) -> str:
        return self.settings.base_url

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.settings.timeout,
            transport=self._http_transport,
        )

    def _headers(self, access_token: str | None, content_type: str | None) -> dict[str, str]:
        headers = {
            APP_ID_HEADER: self.settings.app_id,
            APP_KEY_HEADER: self.settings.app_key,
        }
        if content_type:
            headers["Content-Type"] = content_type
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    async def send(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        content: bytes | None = None,
        content_type: str | None = None,
        access_token: str | None = None,
        progress: ProgressCallback | None = None,
    ) -> TransportResponse:
        kwargs: dict[str, Any] = {}
        if content is not None:
            content_type = content_type or OCTET_STREAM
            kwargs["content"] = self._chunks(content, progress)
        elif json is not None:
            content_type = content_type or JSON_CONTENT_TYPE
            kwargs["json"] = json

        headers = self._headers(access_token, content_type)
        if content is not None:
            headers["Content-Length"] = str(len(content))

        try:
            async with self._client() as client:
                response = await client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise TransportError(
                f"{method} {path} failed: {e}", status=None, method=method, path=path
            ) from e

        logger.debug(f"{method} {path} -> {response.status_code}")
        if not response.is_success:
            raise error_for_status(response.status_code, method, path, _decode(response))

        if content is not None and progress is not None:
            progress(1.0)
        return _to_transport_response(response)

    async def download(
        self,
        path: str,
        destination: Path,
        *,
        access_token: str | None = None,
        progress: ProgressCallback | None = None,
    ) -> int:
        """Stream a body into destination.

        Chunks go to a ".part" sibling that replaces destination only once
        the whole body arrived, so a failed transfer leaves no file behind.
        Disk writes run in worker threads.
        """
        headers = self._headers(access_token, None)
        partial = destination.with_name(destination.name + ".part")
        written = 0
        try:
            async with self._client() as client:
                async with client.stream("GET", path, headers=headers) as response:
                    if not response.is_success:
                        await response.aread()
                        raise error_for_status(
                            response.status_code, "GET", path, _decode(response)
                        )
                    total = int(response.headers.get("Content-Length") or 0)
                    await asyncio.to_thread(destination.parent.mkdir, parents=True, exist_ok=True)
                    f = await asyncio.to_thread(open, partial, "wb")
                    try:
                        async for chunk in response.aiter_bytes(self.settings.chunk_size):
                            await asyncio.to_thread(f.write, chunk)
                            written += len(chunk)
                            if progress is not None and total:
                                progress(written / total)
                    finally:
                        await asyncio.to_thread(f.close)
            await asyncio.to_thread(partial.replace, destination)
        except httpx.HTTPError as e:
            logger.warning(f"GET {path} download failed after {written} bytes: {e}")
            raise TransportError(
                f"GET {path} failed: {e}", status=None, method="GET", path=path
            ) from e
        finally:
            await asyncio.to_thread(partial.unlink, missing_ok=True)

        if progress is not None:
            progress(1.0)
        logger.debug(f"Downloaded {written} bytes from {path} to {destination}")
        return written

    async def close(self) -> None:
        # Clients are opened per request; nothing is held between calls
        return None

    async def _chunks(
        self,
        content: bytes,
        progress: ProgressCallback | None,
    ) -> AsyncIterator[bytes]:
        total = len(content)
        size = self.settings.chunk_size
        for offset in range(0, total, size):
            chunk = content[offset:offset + size]
            yield chunk
            if progress is not None and total:
                progress((offset + len(chunk)) / total)


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _to_transport_response(response: httpx.Response) -> TransportResponse:
    headers = dict(response.headers)
    content_type = response.headers.get("Content-Type", "")
    if JSON_CONTENT_TYPE in content_type:
        return TransportResponse(
            status=response.status_code,
            data=_decode(response),
            headers=headers,
        )
    return TransportResponse(
        status=response.status_code,
        content=response.content,
        headers=headers,
    )
