"""
Application users.

A KiiUser is an entity with typed account attributes (login name, email
address, phone number, display name, country) on top of custom fields.
Users are built LOCAL by a factory, registered with
perform_registration(), and logged in through KiiClient.authenticate().

Invariants:
    - Credentials are validated when the user is built, before any round-trip
    - Registration never logs the user in; access_token stays None until
      an authenticate call succeeds
    - The password is sent on registration only and is never logged
"""

from __future__ import annotations

import logging
import re
from concurrent.futures import Future
from typing import TYPE_CHECKING, Any

from .bucket import Bucket
from .entity import Entity, parse_uri
from .errors import PreconditionError, ValidationError
from .file_bucket import FileBucket
from .group import KiiGroup
from .invocation import OnComplete
from .scope import Scope

if TYPE_CHECKING:
    from .client import KiiClient

logger = logging.getLogger(__name__)

USERNAME_PATTERN = re.compile(r"[A-Za-z0-9_.]{3,64}")
PASSWORD_PATTERN = re.compile(r"[A-Za-z0-9@#$%^&]{4,}")
EMAIL_PATTERN = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")
PHONE_PATTERN = re.compile(r"\+?[0-9]{7,15}")

LOGIN_NAME = "loginName"
EMAIL_ADDRESS = "emailAddress"
PHONE_NUMBER = "phoneNumber"
DISPLAY_NAME = "displayName"
COUNTRY = "country"
EMAIL_VERIFIED = "emailAddressVerified"
PHONE_VERIFIED = "phoneNumberVerified"


def validate_username(username: str) -> str:
    if not isinstance(username, str) or not USERNAME_PATTERN.fullmatch(username):
        raise ValidationError(
            "Username must be 3-64 characters of letters, digits, '_' or '.'",
            field_name="username",
        )
    return username


def validate_password(password: str) -> str:
    if not isinstance(password, str) or not PASSWORD_PATTERN.fullmatch(password):
        raise ValidationError(
            "Password must be at least 4 characters of letters, digits or @#$%^&",
            field_name="password",
        )
    return password


def validate_email(email: str) -> str:
    if not isinstance(email, str) or not EMAIL_PATTERN.fullmatch(email):
        raise ValidationError(f"Invalid email address: {email!r}", field_name="email")
    return email


def validate_phone(phone: str) -> str:
    if not isinstance(phone, str) or not PHONE_PATTERN.fullmatch(phone):
        raise ValidationError(f"Invalid phone number: {phone!r}", field_name="phone_number")
    return phone


def identifier_path(identifier: str) -> str:
    """Path segment naming a user by email, phone or login name."""
    if not isinstance(identifier, str) or not identifier:
        raise ValidationError("User identifier is required", field_name="identifier")
    if EMAIL_PATTERN.fullmatch(identifier):
        return f"EMAIL:{identifier}"
    if PHONE_PATTERN.fullmatch(identifier):
        return f"PHONE:{identifier}"
    return f"LOGIN_NAME:{identifier}"


class KiiUser(Entity):
    """Application user.

    Example:
        >>> user = client.user_with_username("alice123", "abc123$$")
        >>> user.display_name = "Alice"
        >>> user.perform_registration()
        >>> client.authenticate("alice123", "abc123$$").access_token is not None
        True
    """

    TYPE_NAME = "user"
    EXTRA_RESERVED_KEYS = frozenset({
        LOGIN_NAME, EMAIL_ADDRESS, PHONE_NUMBER, DISPLAY_NAME, COUNTRY,
        EMAIL_VERIFIED, PHONE_VERIFIED, "password",
    })

    def __init__(self, client: KiiClient, uuid: str | None = None) -> None:
        super().__init__(client, uuid)
        self._password: str | None = None
        self._access_token: str | None = None

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    @classmethod
    def _new(cls, client: KiiClient, password: str, **attributes: str) -> KiiUser:
        user = cls(client)
        user._password = validate_password(password)
        for key, value in attributes.items():
            user._put(key, value)
        return user

    @classmethod
    def with_username(cls, client: KiiClient, username: str, password: str) -> KiiUser:
        return cls._new(client, password, **{LOGIN_NAME: validate_username(username)})

    @classmethod
    def with_email(cls, client: KiiClient, email: str, password: str) -> KiiUser:
        return cls._new(client, password, **{EMAIL_ADDRESS: validate_email(email)})

    @classmethod
    def with_phone(cls, client: KiiClient, phone: str, password: str) -> KiiUser:
        return cls._new(client, password, **{PHONE_NUMBER: validate_phone(phone)})

    @classmethod
    def with_username_and_email(
        cls, client: KiiClient, username: str, email: str, password: str
    ) -> KiiUser:
        return cls._new(client, password, **{
            LOGIN_NAME: validate_username(username),
            EMAIL_ADDRESS: validate_email(email),
        })

    @classmethod
    def with_username_and_phone(
        cls, client: KiiClient, username: str, phone: str, password: str
    ) -> KiiUser:
        return cls._new(client, password, **{
            LOGIN_NAME: validate_username(username),
            PHONE_NUMBER: validate_phone(phone),
        })

    @classmethod
    def from_uri(cls, client: KiiClient, uri: str) -> KiiUser:
        """Handle for the user named by uri, with no attributes loaded."""
        segments = parse_uri(uri)
        if len(segments) != 2 or segments[0] != "users":
            raise ValidationError(f"Not a user URI: {uri}", field_name="uri")
        return cls(client, uuid=segments[1])

    # ------------------------------------------------------------------
    # Attributes
    # ------------------------------------------------------------------

    @property
    def username(self) -> str | None:
        return self._fields.get(LOGIN_NAME)

    @property
    def email(self) -> str | None:
        return self._fields.get(EMAIL_ADDRESS)

    @property
    def phone_number(self) -> str | None:
        return self._fields.get(PHONE_NUMBER)

    @property
    def display_name(self) -> str | None:
        return self._fields.get(DISPLAY_NAME)

    @display_name.setter
    def display_name(self, value: str | None) -> None:
        self._ensure_not_stale()
        self._put(DISPLAY_NAME, value)

    @property
    def country(self) -> str | None:
        return self._fields.get(COUNTRY)

    @country.setter
    def country(self, value: str | None) -> None:
        self._ensure_not_stale()
        self._put(COUNTRY, value)

    @property
    def email_verified(self) -> bool:
        return bool(self._fields.get(EMAIL_VERIFIED))

    @property
    def phone_verified(self) -> bool:
        return bool(self._fields.get(PHONE_VERIFIED))

    @property
    def access_token(self) -> str | None:
        """Token of this user, only set while it is the logged-in user."""
        return self._access_token

    # ------------------------------------------------------------------
    # Entity hooks
    # ------------------------------------------------------------------

    def _collection_path(self) -> str:
        return self._client.app_path("/users")

    def _resource_path(self) -> str:
        return self._client.app_path(f"/users/{self._uuid}")

    def _uri_path(self) -> str:
        return f"users/{self._uuid}"

    def _create_payload(self) -> dict[str, Any]:
        payload = dict(self._fields)
        payload["password"] = self._password
        return payload

    def _after_create(self) -> None:
        self._password = None

    # ------------------------------------------------------------------
    # Buckets
    # ------------------------------------------------------------------

    def bucket_with_name(self, name: str) -> Bucket:
        """Object bucket owned by this user."""
        return Bucket(self._client, name, Scope.user(self._uuid))

    def file_bucket_with_name(self, name: str) -> FileBucket:
        """File bucket owned by this user."""
        return FileBucket(self._client, name, Scope.user(self._uuid))

    # ------------------------------------------------------------------
    # Account operations
    # ------------------------------------------------------------------

    async def aperform_registration(self) -> KiiUser:
        """Register the user. Does not log it in.

        Raises:
            PreconditionError: If the user is already registered
            TransportError: If the backend refused the registration
        """
        if self._uuid is not None:
            raise PreconditionError("User is already registered", operation="register")
        if self._password is None:
            raise PreconditionError(
                "User was not built with credentials", operation="register"
            )
        await self.asave()
        logger.info(f"Registered user {self._uuid}")
        return self

    async def aupdate_password(self, old_password: str, new_password: str) -> KiiUser:
        self._ensure_remote("update_password")
        validate_password(new_password)
        await self._client.request(
            "PUT",
            self._resource_path() + "/password",
            json={"oldPassword": old_password, "newPassword": new_password},
        )
        return self

    async def averify_phone_number(self, code: str) -> KiiUser:
        self._ensure_remote("verify_phone_number")
        if not code:
            raise ValidationError("Verification code is required", field_name="code")
        await self._client.request(
            "POST",
            self._resource_path() + "/phone-number/verify",
            json={"verificationCode": code},
        )
        self._fields[PHONE_VERIFIED] = True
        return self

    async def aresend_email_verification(self) -> KiiUser:
        self._ensure_remote("resend_email_verification")
        await self._client.request(
            "POST", self._resource_path() + "/email-address/resend-verification"
        )
        return self

    async def aresend_phone_verification(self) -> KiiUser:
        self._ensure_remote("resend_phone_verification")
        await self._client.request(
            "POST", self._resource_path() + "/phone-number/resend-verification"
        )
        return self

    async def achange_email(self, email: str) -> KiiUser:
        """Replace the email address; it has to be verified again."""
        self._ensure_remote("change_email")
        validate_email(email)
        response = await self._client.request(
            "PUT", self._resource_path() + "/email-address", json={EMAIL_ADDRESS: email}
        )
        self._apply_timestamps(response.json())
        self._fields[EMAIL_ADDRESS] = email
        self._fields[EMAIL_VERIFIED] = False
        return self

    async def achange_phone(self, phone: str) -> KiiUser:
        """Replace the phone number; it has to be verified again."""
        self._ensure_remote("change_phone")
        validate_phone(phone)
        response = await self._client.request(
            "PUT", self._resource_path() + "/phone-number", json={PHONE_NUMBER: phone}
        )
        self._apply_timestamps(response.json())
        self._fields[PHONE_NUMBER] = phone
        self._fields[PHONE_VERIFIED] = False
        return self

    async def amember_of_groups(self) -> list[KiiGroup]:
        """Groups this user belongs to."""
        self._ensure_remote("member_of_groups")
        response = await self._client.request(
            "GET", self._client.app_path(f"/groups?is_member={self._uuid}")
        )
        return [
            KiiGroup._from_wire(self._client, row)
            for row in response.json().get("groups", [])
        ]

    # ------------------------------------------------------------------
    # Blocking and callback forms
    # ------------------------------------------------------------------

    def perform_registration(self) -> KiiUser:
        return self._client.invoker.run(self.aperform_registration())

    def perform_registration_in_background(
        self, on_complete: OnComplete | None = None
    ) -> Future[KiiUser]:
        return self._client.invoker.submit(self.aperform_registration(), on_complete)

    def update_password(self, old_password: str, new_password: str) -> KiiUser:
        return self._client.invoker.run(self.aupdate_password(old_password, new_password))

    def update_password_in_background(
        self,
        old_password: str,
        new_password: str,
        on_complete: OnComplete | None = None,
    ) -> Future[KiiUser]:
        return self._client.invoker.submit(
            self.aupdate_password(old_password, new_password), on_complete
        )

    def verify_phone_number(self, code: str) -> KiiUser:
        return self._client.invoker.run(self.averify_phone_number(code))

    def verify_phone_number_in_background(
        self, code: str, on_complete: OnComplete | None = None
    ) -> Future[KiiUser]:
        return self._client.invoker.submit(self.averify_phone_number(code), on_complete)

    def resend_email_verification(self) -> KiiUser:
        return self._client.invoker.run(self.aresend_email_verification())

    def resend_email_verification_in_background(
        self, on_complete: OnComplete | None = None
    ) -> Future[KiiUser]:
        return self._client.invoker.submit(self.aresend_email_verification(), on_complete)

    def resend_phone_verification(self) -> KiiUser:
        return self._client.invoker.run(self.aresend_phone_verification())

    def resend_phone_verification_in_background(
        self, on_complete: OnComplete | None = None
    ) -> Future[KiiUser]:
        return self._client.invoker.submit(self.aresend_phone_verification(), on_complete)

    def change_email(self, email: str) -> KiiUser:
        return self._client.invoker.run(self.achange_email(email))

    def change_email_in_background(
        self, email: str, on_complete: OnComplete | None = None
    ) -> Future[KiiUser]:
        return self._client.invoker.submit(self.achange_email(email), on_complete)

    def change_phone(self, phone: str) -> KiiUser:
        return self._client.invoker.run(self.achange_phone(phone))

    def change_phone_in_background(
        self, phone: str, on_complete: OnComplete | None = None
    ) -> Future[KiiUser]:
        return self._client.invoker.submit(self.achange_phone(phone), on_complete)

    def member_of_groups(self) -> list[KiiGroup]:
        return self._client.invoker.run(self.amember_of_groups())

    def member_of_groups_in_background(
        self, on_complete: OnComplete | None = None
    ) -> Future[list[KiiGroup]]:
        return self._client.invoker.submit(self.amember_of_groups(), on_complete)

    def _describe_lines(self) -> list[str]:
        lines = super()._describe_lines()
        lines.insert(1, f"  logged_in={self._access_token is not None}")
        return lines
