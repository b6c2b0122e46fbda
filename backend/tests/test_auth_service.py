"""
Unit tests for login, logout and re-authentication
"""
import pytest

from lumen_pg.core.exceptions import (
    CryptoError,
    EmptyCredentials,
    InvalidCredentials,
    NoAccessibleDB,
    SessionExpired,
    SessionNotFound,
)
from lumen_pg.services.auth_service import AuthService


@pytest.fixture
def auth_service(broker, metadata_cache, session_store, transaction_engine, crypto, clock):
    return AuthService(
        broker,
        metadata_cache,
        session_store,
        transaction_engine=transaction_engine,
        crypto=crypto,
        clock=clock,
    )


class TestLogin:
    """Login flow"""

    def test_login(self, auth_service, server):
        result = auth_service.login("alice", "alice-pw")
        assert result.success
        assert result.initial_db == "analytics"
        assert result.initial_schema == "reporting"
        assert result.initial_table == "daily"
        assert server.open_connections == 0

    def test_session_usable_after_login(self, auth_service):
        result = auth_service.login("bob", "bob-pw")
        session = auth_service.authenticate(result.session_id)
        assert session.username == "bob"
        assert auth_service.credential_for(session).secret == "bob-pw"

    def test_username_is_trimmed(self, auth_service):
        assert auth_service.login("  bob ", "bob-pw").username == "bob"

    @pytest.mark.parametrize("username,password", [("", "pw"), ("   ", "pw"), ("alice", ""), (None, None)])
    def test_empty_credentials(self, auth_service, server, username, password):
        with pytest.raises(EmptyCredentials):
            auth_service.login(username, password)
        assert server.connections_opened == 0

    def test_wrong_password(self, auth_service, session_store):
        with pytest.raises(InvalidCredentials):
            auth_service.login("alice", "nope")
        assert len(session_store) == 0

    def test_no_accessible_database(self, auth_service, session_store):
        with pytest.raises(NoAccessibleDB):
            auth_service.login("carol", "carol-pw")
        assert len(session_store) == 0

    def test_unknown_role_refreshed_once(self, auth_service, catalog_reader):
        with pytest.raises(NoAccessibleDB):
            auth_service.login("dave", "dave-pw")
        assert catalog_reader.privilege_reads[-1] == ["dave"]

    def test_login_again_replaces_session(self, auth_service):
        first = auth_service.login("alice", "alice-pw")
        second = auth_service.login("alice", "alice-pw")
        with pytest.raises(SessionNotFound):
            auth_service.authenticate(first.session_id)
        assert auth_service.authenticate(second.session_id).username == "alice"


class TestLogout:

    def test_logout_discards_transaction(self, auth_service, transaction_engine):
        result = auth_service.login("alice", "alice-pw")
        transaction_engine.start("alice", "appdb", "public", "orders")
        auth_service.logout(result.session_id)
        assert not transaction_engine.has_active("alice")
        with pytest.raises(SessionNotFound):
            auth_service.authenticate(result.session_id)

    def test_logout_unknown_session(self, auth_service):
        auth_service.logout("0" * 64)


class TestPasswordToken:
    """Re-authentication with the short-lived password token"""

    def test_re_authenticate(self, auth_service, clock):
        session = auth_service.authenticate(auth_service.login("alice", "alice-pw").session_id)
        token = auth_service.issue_password_token(session)
        assert "alice-pw" not in token

        clock.advance(14 * 60)
        result = auth_service.re_authenticate("alice", token)
        assert result.session_id != session.session_id
        assert result.initial_db == "analytics"

    def test_expired_token(self, auth_service, clock):
        session = auth_service.authenticate(auth_service.login("alice", "alice-pw").session_id)
        token = auth_service.issue_password_token(session)
        clock.advance(15 * 60)
        with pytest.raises(SessionExpired):
            auth_service.re_authenticate("alice", token)

    def test_token_for_other_user(self, auth_service):
        session = auth_service.authenticate(auth_service.login("bob", "bob-pw").session_id)
        token = auth_service.issue_password_token(session)
        with pytest.raises(CryptoError):
            auth_service.re_authenticate("alice", token)

    def test_tampered_token(self, auth_service):
        with pytest.raises(CryptoError):
            auth_service.re_authenticate("alice", "AAAA" * 20)

    @pytest.mark.parametrize("plaintext", [
        "not json at all",
        '{"u": "alice"}',
        '["alice", "secret", 0]',
        '{"u": "alice", "s": "x", "iat": "yesterday"}',
    ])
    def test_other_encrypted_values_rejected(self, auth_service, crypto, plaintext):
        with pytest.raises(CryptoError):
            auth_service.re_authenticate("alice", crypto.encrypt_value(plaintext))
