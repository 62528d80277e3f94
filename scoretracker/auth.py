"""
Session authentication for activity leaders.

A single shared admin password (salted SHA-256, constant-time compare)
establishes a server-side session that is valid for a fixed window measured
from login. Sessions live in a SessionStore keyed by an opaque id that the
web layer hands to the client in a cookie.
"""

import abc
import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .errors import InvalidCredentials, InvalidOrExpiredToken, Unauthorized


@dataclass
class Session:
    """Server-held proof that a caller has logged in."""

    session_id: str
    authenticated: bool = False
    established_at: Optional[float] = None
    data: Dict[str, Any] = field(default_factory=dict)


class SessionStore(abc.ABC):
    """Storage for sessions keyed by session id."""

    def new_id(self) -> str:
        return secrets.token_urlsafe(32)

    @abc.abstractmethod
    def get(self, session_id: str) -> Optional[Session]:
        pass

    @abc.abstractmethod
    def set(self, session: Session) -> None:
        pass

    @abc.abstractmethod
    def delete(self, session_id: str) -> None:
        pass

    @abc.abstractmethod
    def purge_expired(self, cutoff: float) -> int:
        """
        Drop sessions established before cutoff.

        @param cutoff: Oldest establishment time that is still valid
        @return: Number of sessions removed
        """


class InMemorySessionStore(SessionStore):
    """Process-local session store. Sessions do not survive a restart."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def set(self, session: Session) -> None:
        self._sessions[session.session_id] = session

    def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def purge_expired(self, cutoff: float) -> int:
        expired = [
            session_id
            for session_id, session in self._sessions.items()
            if session.established_at is None or session.established_at < cutoff
        ]
        for session_id in expired:
            del self._sessions[session_id]
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)


class SessionAuthenticator:
    """Gatekeeper for every mutating operation and personalized page."""

    def __init__(
        self,
        config: Any,
        store: SessionStore,
        qr_tokens: Any = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.store = store
        self.qr_tokens = qr_tokens
        self.clock = clock

    @property
    def session_lifetime(self) -> int:
        return self.config.session_lifetime

    def hash_password(self, password: str) -> str:
        """
        Hash a password with the configured salt.

        @param password: Plain text password
        @return: Hex SHA-256 digest of password + salt
        """
        salt = str(self.config.get("auth", "password_salt"))
        return hashlib.sha256((password + salt).encode("utf-8")).hexdigest()

    def verify_password(self, password: str) -> bool:
        if not isinstance(password, str):
            return False
        expected = self.hash_password(str(self.config.get("auth", "admin_password")))
        return hmac.compare_digest(expected, self.hash_password(password))

    def establish_session(self) -> Session:
        """
        Create and store a fresh authenticated session.

        Sessions whose window has already closed are purged first.
        """
        now = self.clock()
        self.store.purge_expired(now - self.session_lifetime)

        session = Session(
            session_id=self.store.new_id(),
            authenticated=True,
            established_at=now,
        )
        self.store.set(session)
        return session

    def login(self, password: str) -> Session:
        """
        Log in with the shared admin password.

        @param password: Password supplied by the caller
        @return: The newly established session
        @raise InvalidCredentials: If the password does not match
        """
        if not self.verify_password(password):
            raise InvalidCredentials()
        return self.establish_session()

    async def login_with_qr_token(self, token: str) -> Session:
        """
        Log in by presenting a QR token; consumes one use of the token.

        @raise InvalidOrExpiredToken: If the token is unknown, expired or used up
        """
        if self.qr_tokens is None or not await self.qr_tokens.validate(token):
            raise InvalidOrExpiredToken()
        return self.establish_session()

    def load(self, session_id: Optional[str]) -> Optional[Session]:
        """Look up a session by the id the client presented."""
        if not session_id:
            return None
        return self.store.get(session_id)

    def is_authenticated(self, session: Optional[Session]) -> bool:
        """
        Check whether a session is currently authorized.

        An expired session is invalidated here, on first access after its
        window has elapsed.
        """
        if session is None or session.authenticated is not True:
            return False

        if session.established_at is None:
            return False

        elapsed = self.clock() - session.established_at
        if elapsed > self.session_lifetime:
            self.logout(session)
            return False

        return True

    def require_auth(self, session: Optional[Session]) -> Session:
        """
        @return: The session if authenticated
        @raise Unauthorized: Otherwise
        """
        if not self.is_authenticated(session):
            raise Unauthorized()
        return session

    def remaining_seconds(self, session: Optional[Session]) -> int:
        if not self.is_authenticated(session):
            return 0
        elapsed = self.clock() - session.established_at
        return max(0, int(self.session_lifetime - elapsed))

    def refresh(self, session: Optional[Session]) -> bool:
        """Restart the session window. Not used by the default flows."""
        if not self.is_authenticated(session):
            return False
        session.established_at = self.clock()
        self.store.set(session)
        return True

    def logout(self, session: Optional[Session]) -> None:
        if session is None:
            return
        session.authenticated = False
        session.established_at = None
        session.data.clear()
        self.store.delete(session.session_id)
