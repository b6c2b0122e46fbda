"""
Authentication Service
Login, logout and re-authentication against the user's own PostgreSQL role.
"""
from typing import Optional
import json

import structlog

from lumen_pg.core.cancellation import CancellationToken
from lumen_pg.core.clock import Clock, system_clock
from lumen_pg.core.crypto import Crypto
from lumen_pg.core.exceptions import (
    CryptoError,
    EmptyCredentials,
    InvalidCredentials,
    NoAccessibleDB,
    SessionExpired,
)
from lumen_pg.models.session import Credential, Session
from lumen_pg.schemas.results import LoginResult

logger = structlog.get_logger()

PASSWORD_TOKEN_TTL_SECONDS = 15 * 60


class AuthService:
    """Authentication service using the PostgreSQL server as identity provider."""

    def __init__(
        self,
        broker,
        metadata_cache,
        session_store,
        transaction_engine=None,
        crypto: Optional[Crypto] = None,
        clock: Clock = system_clock,
        password_token_ttl_seconds: int = PASSWORD_TOKEN_TTL_SECONDS,
    ):
        self.broker = broker
        self.metadata_cache = metadata_cache
        self.session_store = session_store
        self.transaction_engine = transaction_engine
        self.crypto = crypto or session_store.crypto
        self.clock = clock
        self.password_token_ttl_seconds = password_token_ttl_seconds

    def login(
        self,
        username: str,
        password: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> LoginResult:
        """
        Probe the server as ``username`` and open a session.

        Raises:
            EmptyCredentials: username or password missing
            InvalidCredentials: the server rejected the password
            NoAccessibleDB: the role cannot reach any database
        """
        username = (username or "").strip()
        if not username or not password:
            raise EmptyCredentials()

        if not self.metadata_cache.has_role(username):
            self.metadata_cache.refresh_role(username)

        databases = self.metadata_cache.accessible_databases(username)
        try:
            initial_db = self.broker.probe(username, password, databases, cancel_token=cancel_token)
        except (InvalidCredentials, NoAccessibleDB) as e:
            logger.info("login_failed", username=username, reason=e.code)
            raise

        initial_schema = self.metadata_cache.first_accessible_schema(username, initial_db)
        initial_table = None
        if initial_schema is not None:
            initial_table = self.metadata_cache.first_accessible_table(username, initial_db, initial_schema)

        session = self.session_store.create(username, password, initial_db, initial_schema, initial_table)
        logger.info("login_succeeded", username=username, database=initial_db)
        return self._login_result(session)

    def logout(self, session_id: str) -> None:
        """Delete the session and roll back the user's open transaction, if any."""
        session = self.session_store.delete(session_id)
        if session is None:
            return
        if self.transaction_engine is not None:
            self.transaction_engine.discard(session.username)
        logger.info("logout", username=session.username)

    def authenticate(self, session_id: str) -> Session:
        return self.session_store.validate(session_id)

    def credential_for(self, session: Session) -> Credential:
        return self.session_store.credential_for(session)

    # ------------------------------------------------------------------
    # Password tokens
    # ------------------------------------------------------------------

    def issue_password_token(self, session: Session) -> str:
        """Short-lived encrypted token that can rebuild ``session`` without a live session."""
        payload = {
            "u": session.username,
            "s": session.encrypted_secret,
            "iat": self.clock.now_unix(),
        }
        return self.crypto.encrypt_value(json.dumps(payload))

    def re_authenticate(
        self,
        username: str,
        password_token: str,
    ) -> LoginResult:
        """
        Raises:
            CryptoError: the token was tampered with or issued for another user
            SessionExpired: the token is older than its TTL
        """
        plaintext = self.crypto.decrypt_value(password_token)
        try:
            payload = json.loads(plaintext)
            token_user, secret, issued_at = payload["u"], payload["s"], float(payload["iat"])
        except (ValueError, TypeError, KeyError) as e:
            logger.warning("crypto_tamper_detected", detail="value is not a password token")
            raise CryptoError("value is not a password token", cause=e)

        if token_user != username:
            logger.warning("crypto_tamper_detected", detail="password token user mismatch")
            raise CryptoError("password token was issued for another user")

        deadline = self.clock.add_seconds(self.password_token_ttl_seconds, base=issued_at)
        if self.clock.is_expired(deadline):
            raise SessionExpired("password token expired")

        session = self.session_store.re_authenticate(username, secret)
        return self._login_result(session)

    @staticmethod
    def _login_result(session: Session) -> LoginResult:
        return LoginResult(
            success=True,
            session_id=session.session_id,
            username=session.username,
            initial_db=session.initial_db,
            initial_schema=session.initial_schema,
            initial_table=session.initial_table,
            expires_at=session.expires_at,
        )
