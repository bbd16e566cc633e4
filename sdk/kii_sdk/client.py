"""
Client facade for the Kii SDK.

KiiClient ties together settings, the transport, the authenticated
session and the invoker. Every entity keeps a reference to the client it
was built with and sends its requests through KiiClient.request(), which
adds the session's access token.

Invariants:
    - One client has one session; authenticate replaces it, logout clears it
    - Resource paths are rooted at /apps/{app_id}
    - The client never starts threads; pass an EventLoopWorker to enable
      the callback forms

Example:
    >>> client = KiiClient(KiiSettings(app_id="my-app", app_key="secret"))
    >>> user = client.user_with_username("alice123", "abc123$$")
    >>> user.perform_registration()
    >>> client.authenticate("alice123", "abc123$$")
    >>> obj = client.bucket("notes").object()
    >>> obj.set("text", "hello")
    >>> obj.save()
"""

from __future__ import annotations

import logging
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Iterable

from . import BUILD_NUMBER, __version__
from .bucket import Bucket
from .config import KiiSettings
from .errors import ValidationError
from .file_bucket import FileBucket
from .files import KiiFile
from .group import KiiGroup
from .invocation import EventLoopWorker, Invoker, OnComplete
from .objects import KiiObject
from .session import FileTokenStore, Session
from .transport.base import ProgressCallback, Transport, TransportResponse
from .transport.http import HttpTransport
from .user import KiiUser, identifier_path

logger = logging.getLogger(__name__)


class KiiClient:
    """Entry point of the SDK.

    Attributes:
        settings: Application credentials and SDK options
        transport: Backend connector (HttpTransport unless one is given)
        session: Authenticated identity of this client
        invoker: Runs operations in blocking or callback form
    """

    def __init__(
        self,
        settings: KiiSettings | None = None,
        *,
        transport: Transport | None = None,
        session: Session | None = None,
        worker: EventLoopWorker | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            settings: SDK settings (read from KII_* variables when omitted)
            transport: Backend connector, InMemoryTransport in tests
            session: Session to use; a new one persisting to
                settings.token_path when omitted
            worker: Worker enabling the *_in_background forms
        """
        self.settings = settings or KiiSettings()
        self.transport = transport or HttpTransport(self.settings)
        if session is None:
            token_store = (
                FileTokenStore(self.settings.token_path) if self.settings.token_path else None
            )
            session = Session(token_store)
        self.session = session
        self.invoker = Invoker(worker)

    @property
    def worker(self) -> EventLoopWorker | None:
        return self.invoker.worker

    @property
    def sdk_version(self) -> str:
        return __version__

    @property
    def build_number(self) -> str:
        return BUILD_NUMBER

    def app_path(self, suffix: str = "") -> str:
        """Resource path under this application."""
        return f"/apps/{self.settings.app_id}{suffix}"

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        content: bytes | None = None,
        content_type: str | None = None,
        progress: ProgressCallback | None = None,
    ) -> TransportResponse:
        """Send a request with the current session's token."""
        return await self.transport.send(
            method,
            path,
            json=json,
            content=content,
            content_type=content_type,
            access_token=self.session.access_token,
            progress=progress,
        )

    async def download(
        self,
        path: str,
        destination: Path,
        *,
        progress: ProgressCallback | None = None,
    ) -> int:
        return await self.transport.download(
            path, destination, access_token=self.session.access_token, progress=progress
        )

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    def bucket(self, name: str) -> Bucket:
        """Application-scope object bucket."""
        return Bucket(self, name)

    def file_bucket(self, name: str) -> FileBucket:
        """Application-scope file bucket."""
        return FileBucket(self, name)

    def object_with_uri(self, uri: str) -> KiiObject:
        return KiiObject.from_uri(self, uri)

    def file_with_uri(self, uri: str) -> KiiFile:
        return KiiFile.from_uri(self, uri)

    def user_with_username(self, username: str, password: str) -> KiiUser:
        return KiiUser.with_username(self, username, password)

    def user_with_email(self, email: str, password: str) -> KiiUser:
        return KiiUser.with_email(self, email, password)

    def user_with_phone(self, phone: str, password: str) -> KiiUser:
        return KiiUser.with_phone(self, phone, password)

    def user_with_username_and_email(self, username: str, email: str, password: str) -> KiiUser:
        return KiiUser.with_username_and_email(self, username, email, password)

    def user_with_username_and_phone(self, username: str, phone: str, password: str) -> KiiUser:
        return KiiUser.with_username_and_phone(self, username, phone, password)

    def user_with_uri(self, uri: str) -> KiiUser:
        return KiiUser.from_uri(self, uri)

    def group_with_name(self, name: str, members: Iterable[Any] | None = None) -> KiiGroup:
        """New LOCAL group; members are saved users or user uuids."""
        return KiiGroup(self, name=name, members=members)

    def group_with_uri(self, uri: str) -> KiiGroup:
        return KiiGroup.from_uri(self, uri)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    @property
    def current_user(self) -> KiiUser | None:
        return self.session.current_user

    @property
    def logged_in(self) -> bool:
        return self.session.logged_in

    @property
    def access_token(self) -> str | None:
        return self.session.access_token

    async def aauthenticate(self, identifier: str, password: str) -> KiiUser:
        """Log in with a login name, email address or phone number.

        Returns:
            The logged-in user, with access_token set

        Raises:
            ValidationError: If identifier or password is empty
            TransportError: If the credentials were refused
        """
        if not identifier or not password:
            raise ValidationError("Identifier and password are required", field_name="identifier")
        response = await self.transport.send(
            "POST",
            self.app_path("/oauth2/token"),
            json={"username": identifier, "password": password},
        )
        token = response.json().get("access_token")
        if not token:
            raise ValidationError("Login response carried no access token")
        return await self._open_session(token)

    async def aauthenticate_with_token(self, access_token: str) -> KiiUser:
        """Log in with a token from an earlier session."""
        if not access_token:
            raise ValidationError("Access token is required", field_name="access_token")
        return await self._open_session(access_token)

    async def aresume_session(self) -> KiiUser | None:
        """Log in with the token persisted by the token store, if any."""
        token = self.session.stored_token()
        if token is None:
            return None
        return await self._open_session(token)

    async def _open_session(self, access_token: str) -> KiiUser:
        response = await self.transport.send(
            "GET", self.app_path("/users/me"), access_token=access_token
        )
        user = KiiUser._from_wire(self, response.json())
        user._access_token = access_token
        previous = self.session.current_user
        if previous is not None and previous is not user:
            previous._access_token = None
        self.session.login(user, access_token)
        return user

    def logout(self) -> None:
        """Clear the session. Local only; no round-trip."""
        user = self.session.current_user
        if user is not None:
            user._access_token = None
        self.session.logout()

    async def areset_password(self, identifier: str) -> None:
        """Ask the backend to send a password reset to the user."""
        await self.transport.send(
            "POST", self.app_path(f"/users/{identifier_path(identifier)}/password/request-reset")
        )
        logger.info("Password reset requested")

    def authenticate(self, identifier: str, password: str) -> KiiUser:
        return self.invoker.run(self.aauthenticate(identifier, password))

    def authenticate_in_background(
        self,
        identifier: str,
        password: str,
        on_complete: OnComplete | None = None,
    ) -> Future[KiiUser]:
        return self.invoker.submit(self.aauthenticate(identifier, password), on_complete)

    def authenticate_with_token(self, access_token: str) -> KiiUser:
        return self.invoker.run(self.aauthenticate_with_token(access_token))

    def authenticate_with_token_in_background(
        self,
        access_token: str,
        on_complete: OnComplete | None = None,
    ) -> Future[KiiUser]:
        return self.invoker.submit(self.aauthenticate_with_token(access_token), on_complete)

    def resume_session(self) -> KiiUser | None:
        return self.invoker.run(self.aresume_session())

    def reset_password(self, identifier: str) -> None:
        self.invoker.run(self.areset_password(identifier))

    def reset_password_in_background(
        self,
        identifier: str,
        on_complete: OnComplete | None = None,
    ) -> Future[None]:
        return self.invoker.submit(self.areset_password(identifier), on_complete)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        """Release the transport."""
        await self.transport.close()

    def close(self) -> None:
        self.invoker.run(self.aclose())

    def __enter__(self) -> KiiClient:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    async def __aenter__(self) -> KiiClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        return f"<KiiClient app={self.settings.app_id} site={self.settings.site.value}>"
