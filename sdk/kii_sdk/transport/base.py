"""
Base protocol and types for the transport abstraction.

This module defines the Transport protocol that every backend connector
implements, along with the response type and helpers shared by
implementations.

Invariants:
    - A 2xx status yields a TransportResponse, anything else a TransportError
    - Network failures surface as TransportError with status None
    - Progress callbacks receive fractions in [0, 1]

How to change safely:
    - Protocol changes require updating HttpTransport and InMemoryTransport
    - Resource paths are built by the entities, not by transports
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from ..acl import AclEntry
from ..errors import AclEntryRejectedError, TransportError, ValidationError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

JSON_CONTENT_TYPE = "application/json"
OCTET_STREAM = "application/octet-stream"


@dataclass
class TransportResponse:
    """Response from the backend.

    Attributes:
        status: HTTP status code
        data: Decoded JSON body (None for empty or binary responses)
        content: Raw body for binary responses
        headers: Response headers
    """

    status: int
    data: Any = None
    content: bytes | None = None
    headers: dict[str, str] | None = None

    def json(self) -> dict[str, Any]:
        """Decoded body as a dict (empty when the body was not an object)."""
        return self.data if isinstance(self.data, dict) else {}


@runtime_checkable
class Transport(Protocol):
    """Protocol for backend connectors.

    Implementations:
        - HttpTransport: REST over httpx
        - InMemoryTransport: Simulated backend for tests and offline use
    """

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
        """Send a request.

        Args:
            method: HTTP method
            path: Resource path relative to the API root
            json: JSON payload
            content: Binary payload (file bodies)
            content_type: Content type of the binary payload
            access_token: Bearer token of the current session
            progress: Upload progress callback

        Returns:
            TransportResponse for 2xx statuses

        Raises:
            TransportError: On network failure or non-2xx status
        """
        ...

    async def download(
        self,
        path: str,
        destination: Path,
        *,
        access_token: str | None = None,
        progress: ProgressCallback | None = None,
    ) -> int:
        """Stream a binary resource into destination.

        Returns:
            Number of bytes written

        Raises:
            TransportError: On network failure or non-2xx status
        """
        ...

    async def close(self) -> None:
        """Release resources held by the transport."""
        ...


def error_for_status(
    status: int,
    method: str,
    path: str,
    body: Any,
) -> TransportError:
    """Build the error for a non-2xx response.

    An ACL batch rejected because of one entry becomes an
    AclEntryRejectedError naming that entry.
    """
    message = f"{method} {path} failed with status {status}"
    if isinstance(body, dict):
        detail = body.get("message") or body.get("errorCode")
        if detail:
            message = f"{message}: {detail}"
        rejected = body.get("rejectedEntry")
        if body.get("errorCode") == "ACL_ENTRY_REJECTED":
            entry = None
            if isinstance(rejected, dict):
                try:
                    entry = AclEntry.from_dict(rejected)
                except (KeyError, ValueError, ValidationError) as e:
                    logger.warning(f"Unparseable rejected ACL entry {rejected}: {e}")
            return AclEntryRejectedError(
                message, entry, status=status, method=method, path=path, body=body
            )
    return TransportError(message, status=status, method=method, path=path, body=body)
