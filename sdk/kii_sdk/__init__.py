"""
Kii Python SDK - Client library for the Kii mobile backend.

This SDK synchronizes application entities with the backend:
- Users and groups, with registration and authentication
- Key/value objects in buckets, with server-side queries
- Files with body transfer, trash lifecycle and publication
- ACLs staged locally and saved as one batch

Every remote operation comes in three forms: a coroutine (asave), a
blocking call (save) and a callback call (save_in_background) that runs on
a caller-managed EventLoopWorker.

Example:
    >>> from kii_sdk import Clause, KiiClient, KiiSettings, Query
    >>>
    >>> client = KiiClient(KiiSettings(app_id="my-app", app_key="secret"))
    >>> client.authenticate("alice123", "abc123$$")
    >>>
    >>> notes = client.bucket("notes")
    >>> note = notes.object()
    >>> note.set("text", "hello")
    >>> note.save()
    >>>
    >>> query = Query.with_clause(Clause.starts_with("text", "he"))
    >>> query.sort_by_desc("text")
    >>> result = notes.execute_query(query)

Invariants:
    - Reserved keys are never accepted as custom fields
    - Local validation errors are raised before any round-trip
    - Failed saves keep local changes

Version: 1.0.0
"""

__version__ = "1.0.0"
BUILD_NUMBER = "100"

from .acl import Acl, AclEntry, Permission, Subject, SubjectKind
from .bucket import Bucket
from .client import KiiClient
from .config import KiiSettings, Site
from .entity import Entity, EntityState
from .errors import (
    AclEntryRejectedError,
    FieldTypeError,
    InvalidQueryError,
    InvalidStateError,
    KiiError,
    NoBodyError,
    PartialFailureError,
    PreconditionError,
    StaleEntityError,
    TransportError,
    ValidationError,
)
from .file_bucket import FileBucket
from .files import KiiFile, TrashState
from .group import KiiGroup
from .invocation import EventLoopWorker, Invoker, ProgressReporter
from .logs import setup_logging
from .objects import KiiObject
from .query import Clause, ClauseOp, Query, QueryResult
from .scope import Scope, ScopeKind
from .session import FileTokenStore, MemoryTokenStore, Session, TokenStore
from .transport import HttpTransport, InMemoryTransport, Transport, TransportResponse
from .user import KiiUser

__all__ = [
    # Version
    "__version__",
    "BUILD_NUMBER",
    # Client and configuration
    "KiiClient",
    "KiiSettings",
    "Site",
    "setup_logging",
    # Entities
    "Entity",
    "EntityState",
    "KiiObject",
    "KiiFile",
    "TrashState",
    "KiiUser",
    "KiiGroup",
    # Buckets
    "Bucket",
    "FileBucket",
    "Scope",
    "ScopeKind",
    # Queries
    "Clause",
    "ClauseOp",
    "Query",
    "QueryResult",
    # ACL
    "Acl",
    "AclEntry",
    "Permission",
    "Subject",
    "SubjectKind",
    # Invocation and session
    "EventLoopWorker",
    "Invoker",
    "ProgressReporter",
    "Session",
    "TokenStore",
    "MemoryTokenStore",
    "FileTokenStore",
    # Transport
    "Transport",
    "TransportResponse",
    "HttpTransport",
    "InMemoryTransport",
    # Errors
    "KiiError",
    "TransportError",
    "AclEntryRejectedError",
    "ValidationError",
    "FieldTypeError",
    "InvalidQueryError",
    "PreconditionError",
    "InvalidStateError",
    "StaleEntityError",
    "NoBodyError",
    "PartialFailureError",
]
