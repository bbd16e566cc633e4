"""
Kii SDK Test Suite.

This package contains:
- unit/: Unit tests (in-memory backend, no network)
- integration/: HTTP transport against httpx.MockTransport and full client flows
"""
