"""
Transport layer for the Kii SDK.

Implementations:
    - HttpTransport: REST API over httpx
    - InMemoryTransport: Simulated backend for tests and offline development
"""

from .base import (
    JSON_CONTENT_TYPE,
    OCTET_STREAM,
    ProgressCallback,
    Transport,
    TransportResponse,
    error_for_status,
)
from .http import HttpTransport
from .memory import InMemoryTransport, RecordedRequest

__all__ = [
    "JSON_CONTENT_TYPE",
    "OCTET_STREAM",
    "ProgressCallback",
    "Transport",
    "TransportResponse",
    "error_for_status",
    "HttpTransport",
    "InMemoryTransport",
    "RecordedRequest",
]
