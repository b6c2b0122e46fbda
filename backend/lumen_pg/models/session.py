"""
Session and credential records
"""
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Credential:
    """A role name plus its plaintext secret. Held only for the duration of a call."""
    username: str
    secret: str

    def __repr__(self) -> str:
        return f"<Credential(username={self.username!r})>"


@dataclass(frozen=True)
class Session:
    session_id: str
    username: str
    encrypted_secret: str
    created_at: float
    expires_at: float
    initial_db: Optional[str] = None
    initial_schema: Optional[str] = None
    initial_table: Optional[str] = None

    def __repr__(self) -> str:
        return f"<Session(username={self.username!r}, expires_at={self.expires_at})>"

    def is_valid_at(self, now: float) -> bool:
        return self.created_at <= now < self.expires_at
