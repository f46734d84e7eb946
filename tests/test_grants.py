"""
tests/test_grants.py -- TokenIssuer: password and client_credentials grants,
lockout, long-lived tokens, revocation and client provisioning.
"""

from __future__ import annotations

import pytest

from auth.errors import AuthenticationError, AuthorizationError, LockedError, NotFoundError
from auth.grants import BAD_CLIENT_CREDENTIALS, BAD_USER_CREDENTIALS, LONG_LIVED_REQUIRED, TokenIssuer
from auth.lockout import LoginAttemptTracker
from auth.models import SubjectType
from auth.tokens import verify_long_lived_token, verify_token
from conftest import CLIENT_ID_SUFFIX, CRYPTO_SECRET, SECRET_KEY


@pytest.fixture
def issuer(seeded) -> TokenIssuer:
    store, _ = seeded
    return TokenIssuer(
        store,
        jwt_secret=SECRET_KEY,
        crypto_secret=CRYPTO_SECRET,
        expire_seconds=300,
        tracker=LoginAttemptTracker(max_failed_attempts=2, cooldown_minutes=1),
        client_id_suffix=CLIENT_ID_SUFFIX,
    )


@pytest.fixture
def credentials(seeded):
    return seeded[1].credentials


@pytest.fixture
def admin_role_id(seeded) -> int:
    return next(r.id for r in seeded[0].list_roles(0, 100).items if r.identifier == "admin")


class TestPasswordGrant:
    def test_valid_login(self, issuer: TokenIssuer, credentials) -> None:
        issued = issuer.issue_for_user("ADMIN", credentials.password)
        assert issued.principal.name == "admin"
        assert issued.principal.subject_type is SubjectType.USER
        assert issued.roles == ["admin"]
        assert issued.expires_in == 300
        assert verify_token(issued.access_token, SECRET_KEY) == issued.principal

    def test_wrong_password_and_unknown_user_look_the_same(self, issuer: TokenIssuer) -> None:
        with pytest.raises(AuthenticationError) as wrong:
            issuer.issue_for_user("admin", "not-the-password")
        with pytest.raises(AuthenticationError) as unknown:
            issuer.issue_for_user("nobody", "whatever")
        assert wrong.value.code == unknown.value.code == BAD_USER_CREDENTIALS
        assert wrong.value.message == unknown.value.message

    def test_lockout_after_repeated_failures(self, issuer: TokenIssuer, credentials) -> None:
        for _ in range(3):
            with pytest.raises(AuthenticationError):
                issuer.issue_for_user("admin", "bad")
        with pytest.raises(LockedError) as exc_info:
            issuer.issue_for_user("admin", credentials.password)
        assert exc_info.value.code == 401300

    def test_unknown_usernames_are_not_tracked(self, issuer: TokenIssuer) -> None:
        for i in range(5):
            with pytest.raises(AuthenticationError) as exc_info:
                issuer.issue_for_user("ghost", "whatever")
            assert not isinstance(exc_info.value, LockedError)
            with pytest.raises(AuthenticationError):
                issuer.issue_for_client(f"ghost{i}::client.app", "whatever")
        assert len(issuer.tracker) == 0

    def test_success_resets_failures(self, issuer: TokenIssuer, credentials) -> None:
        for _ in range(2):
            with pytest.raises(AuthenticationError):
                issuer.issue_for_user("admin", "bad")
        issuer.issue_for_user("admin", credentials.password)
        for _ in range(2):
            with pytest.raises(AuthenticationError) as exc_info:
                issuer.issue_for_user("admin", "bad")
            assert not isinstance(exc_info.value, LockedError)


class TestClientCredentialsGrant:
    def test_valid_client(self, issuer: TokenIssuer, credentials) -> None:
        issued = issuer.issue_for_client(credentials.client_id, credentials.client_secret)
        assert issued.principal.subject_type is SubjectType.CLIENT
        assert issued.principal.name == "admin"

    def test_bad_secret(self, issuer: TokenIssuer, credentials) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            issuer.issue_for_client(credentials.client_id, "wrong")
        assert exc_info.value.code == BAD_CLIENT_CREDENTIALS

    def test_unknown_client(self, issuer: TokenIssuer) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            issuer.issue_for_client("missing::client.app", "whatever")
        assert exc_info.value.code == BAD_CLIENT_CREDENTIALS

    def test_revoked_client_gets_no_token(self, issuer: TokenIssuer, admin_role_id: int) -> None:
        provisioned = issuer.provision_client("robot", "Robot", [admin_role_id])
        issuer.set_revoked(provisioned.client.subject_id, True)
        with pytest.raises(AuthorizationError):
            issuer.issue_for_client(provisioned.client.client_id, provisioned.client_secret)
        # bad credentials are reported before revocation
        with pytest.raises(AuthenticationError):
            issuer.issue_for_client(provisioned.client.client_id, "wrong")

    def test_long_lived_client_cannot_mint_short_lived(self, issuer: TokenIssuer, admin_role_id: int) -> None:
        provisioned = issuer.provision_client("robot", "Robot", [admin_role_id], long_live=True)
        with pytest.raises(AuthorizationError) as exc_info:
            issuer.issue_for_client(provisioned.client.client_id, provisioned.client_secret)
        assert exc_info.value.code == LONG_LIVED_REQUIRED


class TestClientManagement:
    def test_provision_client(self, issuer: TokenIssuer, admin_role_id: int) -> None:
        provisioned = issuer.provision_client("Robot", "Robot", [admin_role_id], description="CI")
        assert provisioned.client.identifier == "robot"
        assert provisioned.client.client_id.endswith(CLIENT_ID_SUFFIX)
        assert provisioned.long_lived_token is None
        assert issuer.reveal_secret(provisioned.client.subject_id) == provisioned.client_secret

    def test_provision_with_long_lived_token(self, issuer: TokenIssuer, admin_role_id: int) -> None:
        provisioned = issuer.provision_client("robot", "Robot", [admin_role_id], long_live=True)
        assert provisioned.long_lived_token is not None
        assert verify_long_lived_token(provisioned.long_lived_token, provisioned.client.access_token)

    def test_reissue_replaces_previous_token(self, issuer: TokenIssuer, seeded, admin_role_id: int) -> None:
        store, _ = seeded
        provisioned = issuer.provision_client("robot", "Robot", [admin_role_id])
        subject_id = provisioned.client.subject_id
        first = issuer.issue_long_lived(subject_id)
        second = issuer.issue_long_lived(subject_id)
        stored = store.get_client(subject_id).access_token
        assert not verify_long_lived_token(first, stored)
        assert verify_long_lived_token(second, stored)

        issuer.remove_long_lived(subject_id)
        assert store.get_client(subject_id).access_token is None
        # short-lived tokens work again once the long-lived token is gone
        issuer.issue_for_client(provisioned.client.client_id, provisioned.client_secret)

    def test_revoked_client_cannot_get_long_lived_token(self, issuer: TokenIssuer, admin_role_id: int) -> None:
        provisioned = issuer.provision_client("robot", "Robot", [admin_role_id])
        issuer.set_revoked(provisioned.client.subject_id, True)
        with pytest.raises(AuthorizationError):
            issuer.issue_long_lived(provisioned.client.subject_id)

    def test_unknown_client_operations(self, issuer: TokenIssuer) -> None:
        for operation in (issuer.reveal_secret, issuer.issue_long_lived, issuer.remove_long_lived):
            with pytest.raises(NotFoundError):
                operation(9999)
        with pytest.raises(NotFoundError):
            issuer.set_revoked(9999, True)
