"""
Session Store - in-memory sessions with encrypted secrets
"""
from dataclasses import replace
from typing import Dict, List, Optional
import re
import threading

import structlog

from lumen_pg.core.clock import Clock, system_clock
from lumen_pg.core.crypto import Crypto
from lumen_pg.core.exceptions import (
    InvalidSession,
    SessionExpired,
    SessionNotFound,
)
from lumen_pg.models.session import Credential, Session

logger = structlog.get_logger()

SESSION_TTL_SECONDS = 24 * 60 * 60
SESSION_TOKEN_BYTES = 32
_SESSION_ID = re.compile(r'^[0-9a-f]{%d}$' % (SESSION_TOKEN_BYTES * 2))


class SessionStore:
    """
    ``session_id -> Session`` plus a ``username -> session_id`` index so a
    user never holds more than one session.

    Sessions are immutable records; every change stores a new record under
    the lock and callers only ever see copies.
    """

    def __init__(
        self,
        crypto: Crypto,
        clock: Clock = system_clock,
        ttl_seconds: int = SESSION_TTL_SECONDS,
        broker=None,
        metadata_cache=None,
    ):
        self.crypto = crypto
        self.clock = clock
        self.ttl_seconds = ttl_seconds
        self.broker = broker
        self.metadata_cache = metadata_cache
        self._sessions: Dict[str, Session] = {}
        self._by_user: Dict[str, str] = {}
        self._lock = threading.Lock()

    def create(
        self,
        username: str,
        secret: str,
        initial_db: Optional[str] = None,
        initial_schema: Optional[str] = None,
        initial_table: Optional[str] = None,
    ) -> Session:
        """Create a session for ``username``, replacing any session it already has."""
        now = self.clock.now_unix()
        session = Session(
            session_id=Crypto.random_token(SESSION_TOKEN_BYTES),
            username=username,
            encrypted_secret=self.crypto.encrypt_value(secret),
            created_at=now,
            expires_at=self.clock.add_seconds(self.ttl_seconds, base=now),
            initial_db=initial_db,
            initial_schema=initial_schema,
            initial_table=initial_table,
        )

        with self._lock:
            previous = self._by_user.pop(username, None)
            if previous is not None:
                self._sessions.pop(previous, None)
            self._sessions[session.session_id] = session
            self._by_user[username] = session.session_id

        logger.info("session_created", username=username, replaced=previous is not None)
        return session

    def validate(self, session_id: str) -> Session:
        """
        Raises:
            InvalidSession: malformed session id
            SessionNotFound: unknown session id
            SessionExpired: the session has expired; it is removed
        """
        if not session_id or not _SESSION_ID.match(session_id):
            raise InvalidSession()

        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound()
            if self.clock.is_expired(session.expires_at):
                self._remove(session)
                expired = True
            else:
                expired = False

        if expired:
            logger.info("session_expired", username=session.username)
            raise SessionExpired()
        return session

    def refresh(self, session_id: str) -> Session:
        """Push ``expires_at`` to now + TTL for a currently valid session."""
        session = self.validate(session_id)
        refreshed = replace(session, expires_at=self.clock.add_seconds(self.ttl_seconds))
        with self._lock:
            if self._sessions.get(session_id) is not session:
                raise SessionNotFound()
            self._sessions[session_id] = refreshed
        return refreshed

    def delete(self, session_id: str) -> Optional[Session]:
        """Remove a session. Unknown ids are ignored."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                self._remove(session)
        if session is not None:
            logger.info("session_deleted", username=session.username)
        return session

    def get_by_username(self, username: str) -> Optional[Session]:
        with self._lock:
            session_id = self._by_user.get(username)
            return self._sessions.get(session_id) if session_id else None

    def credential_for(self, session: Session) -> Credential:
        """Decrypt the session's secret for the duration of one call."""
        return Credential(username=session.username, secret=self.crypto.decrypt_value(session.encrypted_secret))

    def re_authenticate(self, username: str, encrypted_secret: str) -> Session:
        """
        Rebuild a session from an encrypted secret without a live session.

        The secret is decrypted (``CryptoError`` means tampering), re-probed
        against the role's accessible databases and, on success, a fresh
        session replaces any existing one.
        """
        secret = self.crypto.decrypt_value(encrypted_secret)
        databases = self.metadata_cache.accessible_databases(username)
        initial_db = self.broker.probe(username, secret, databases)
        initial_schema = self.metadata_cache.first_accessible_schema(username, initial_db)
        initial_table = None
        if initial_schema is not None:
            initial_table = self.metadata_cache.first_accessible_table(username, initial_db, initial_schema)

        logger.info("session_reauthenticated", username=username, database=initial_db)
        return self.create(username, secret, initial_db, initial_schema, initial_table)

    def purge_expired(self) -> List[str]:
        """Drop every expired session and return the affected usernames."""
        with self._lock:
            expired = [s for s in self._sessions.values() if self.clock.is_expired(s.expires_at)]
            for session in expired:
                self._remove(session)
        return [s.username for s in expired]

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _remove(self, session: Session) -> None:
        self._sessions.pop(session.session_id, None)
        if self._by_user.get(session.username) == session.session_id:
            del self._by_user[session.username]
