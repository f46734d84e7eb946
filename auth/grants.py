"""
auth/grants.py -- Token issuance and client credential management.

TokenIssuer implements the two grants of the token endpoint and the
operations that change what a client may present:

  password             username + password -> short-lived user token
  client_credentials   client_id + client_secret -> short-lived client token
  long-lived tokens    generate (hash stored, plaintext returned once) / remove
  revocation           set / clear the client's revoked flag

Security:
  Unknown login and wrong password produce the same error (401200 / 401100)
  and the same bcrypt cost (DUMMY_HASH), so responses do not reveal which
  logins exist. Client secrets are compared with hmac.compare_digest.

  Credentials are verified before revocation is checked, so an
  unauthenticated caller cannot probe which clients are revoked.

  A client that holds a long-lived token may not mint short-lived ones:
  its long-lived token is the only credential it may use (403101).

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass, field

from auth.denormalize import group_adjacent
from auth.errors import AuthenticationError, AuthorizationError, LockedError, NotFoundError
from auth.lockout import LoginAttemptTracker
from auth.models import Client, Principal, SubjectType
from auth.store import IdentityStore
from auth.tokens import (
    DUMMY_HASH,
    decrypt_secret,
    encrypt_secret,
    generate_client_id,
    generate_secret,
    hash_long_lived_token,
    mint_token,
    verify_password,
)

logger = logging.getLogger("gatehouse.grants")

BAD_CLIENT_CREDENTIALS = 401100
BAD_USER_CREDENTIALS = 401200
LONG_LIVED_REQUIRED = 403101
CLIENT_NOT_FOUND = 404200


@dataclass
class IssuedToken:
    access_token: str
    principal: Principal
    expires_in: int | None = None
    roles: list[str] = field(default_factory=list)


@dataclass
class ProvisionedClient:
    """A new client plus the plaintext credentials shown exactly once."""

    client: Client
    client_secret: str
    long_lived_token: str | None = None


class TokenIssuer:
    def __init__(
        self,
        store: IdentityStore,
        jwt_secret: str,
        crypto_secret: str,
        expire_seconds: int = 86400,
        tracker: LoginAttemptTracker | None = None,
        client_id_suffix: str = "",
    ) -> None:
        self.store = store
        self.jwt_secret = jwt_secret
        self.crypto_secret = crypto_secret
        self.expire_seconds = expire_seconds
        self.tracker = tracker if tracker is not None else LoginAttemptTracker()
        self.client_id_suffix = client_id_suffix

    def _check_lock(self, key: str) -> None:
        if self.tracker.is_locked(key):
            logger.warning("Rejected login for locked key %s", key)
            raise LockedError()

    def _fail(self, key: str) -> None:
        if self.tracker.record_failure(key):
            logger.warning("Locked %s after repeated failed logins", key)

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def issue_for_user(self, username: str, password: str) -> IssuedToken:
        key = f"user:{username.lower()}"
        self._check_lock(key)

        rows = self.store.get_login_rows(username)
        if not rows:
            verify_password(password, DUMMY_HASH)
            raise AuthenticationError("Incorrect username or password", BAD_USER_CREDENTIALS)

        login = group_adjacent(rows, "id", ["role_identifier"])[0]
        if not verify_password(password, login["password"]):
            self._fail(key)
            raise AuthenticationError("Incorrect username or password", BAD_USER_CREDENTIALS)

        self.tracker.reset(key)
        principal = Principal(subject_id=login["subject_id"], subject_type=SubjectType.USER, name=login["username"])
        logger.info("Issued user token for %s", principal.name)
        return IssuedToken(
            access_token=mint_token(principal, self.jwt_secret, self.expire_seconds),
            principal=principal,
            expires_in=self.expire_seconds,
            roles=[role for role in login["role_identifier"] if role is not None],
        )

    def issue_for_client(self, client_id: str, client_secret: str) -> IssuedToken:
        key = f"client:{client_id}"
        self._check_lock(key)

        client = self.store.get_client_by_client_id(client_id)
        if client is None or not client.is_active:
            # unknown logins are not tracked; only real accounts can be locked
            raise AuthenticationError("Incorrect client credentials", BAD_CLIENT_CREDENTIALS)

        expected = decrypt_secret(client.client_secret, self.crypto_secret)
        if not hmac.compare_digest(expected.encode("utf-8"), client_secret.encode("utf-8")):
            self._fail(key)
            raise AuthenticationError("Incorrect client credentials", BAD_CLIENT_CREDENTIALS)
        self.tracker.reset(key)

        if client.revoked:
            raise AuthorizationError("Client has been revoked")
        if client.has_long_lived_token:
            raise AuthorizationError("Client must use its long-lived token", LONG_LIVED_REQUIRED)

        principal = Principal(subject_id=client.subject_id, subject_type=SubjectType.CLIENT, name=client.identifier)
        logger.info("Issued client token for %s", principal.name)
        return IssuedToken(
            access_token=mint_token(principal, self.jwt_secret, self.expire_seconds),
            principal=principal,
            expires_in=self.expire_seconds,
        )

    # ------------------------------------------------------------------
    # Client credential management
    # ------------------------------------------------------------------

    def _active_client(self, subject_id: int) -> Client:
        client = self.store.get_client(subject_id)
        if client is None or not client.is_active:
            raise NotFoundError("Client not found", CLIENT_NOT_FOUND)
        return client

    def provision_client(
        self,
        identifier: str,
        name: str,
        role_ids: list[int],
        description: str | None = None,
        long_live: bool = False,
    ) -> ProvisionedClient:
        """Create a client with a generated client_id and secret (optionally a long-lived token)."""
        secret = generate_secret()
        client = self.store.create_client(
            identifier=identifier,
            client_id=generate_client_id(self.client_id_suffix),
            encrypted_secret=encrypt_secret(secret, self.crypto_secret),
            name=name,
            role_ids=role_ids,
            description=description,
        )
        token = self.issue_long_lived(client.subject_id) if long_live else None
        if token is not None:
            client.access_token = self.store.get_client(client.subject_id).access_token
        return ProvisionedClient(client=client, client_secret=secret, long_lived_token=token)

    def reveal_secret(self, subject_id: int) -> str:
        return decrypt_secret(self._active_client(subject_id).client_secret, self.crypto_secret)

    def issue_long_lived(self, subject_id: int) -> str:
        """Mint a non-expiring token, store only its hash, return the plaintext.

        Replaces any previous long-lived token: the old one stops verifying
        immediately.
        """
        client = self._active_client(subject_id)
        if client.revoked:
            raise AuthorizationError("Client has been revoked")
        principal = Principal(subject_id=client.subject_id, subject_type=SubjectType.CLIENT, name=client.identifier)
        token = mint_token(principal, self.jwt_secret, expire_seconds=None)
        self.store.set_client_access_token(subject_id, hash_long_lived_token(token))
        logger.info("Issued long-lived token for client %s", client.identifier)
        return token

    def remove_long_lived(self, subject_id: int) -> None:
        client = self._active_client(subject_id)
        self.store.set_client_access_token(subject_id, None)
        logger.info("Removed long-lived token for client %s", client.identifier)

    def set_revoked(self, subject_id: int, revoked: bool) -> None:
        client = self._active_client(subject_id)
        self.store.set_client_revoked(subject_id, revoked)
        logger.info("Client %s revoked=%s", client.identifier, revoked)
