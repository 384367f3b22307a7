"""
In-memory admin session store.

Tokens are issued after a successful password login and checked by the
privileged bypass. Sessions don't survive a restart.
"""

import logging
import secrets
import threading
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 24 * 60 * 60


class AdminSessionStore:
    def __init__(
        self,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sessions: dict[str, float] = {}
        self._lock = threading.Lock()

    def _purge_expired(self, now: float) -> None:
        expired = [token for token, expires_at in self._sessions.items() if expires_at <= now]
        for token in expired:
            del self._sessions[token]

    def create_session(self) -> tuple[str, float]:
        """Issue a new session token. Returns (token, expires_at epoch seconds)."""
        token = secrets.token_urlsafe(32)
        with self._lock:
            now = self._clock()
            self._purge_expired(now)
            expires_at = now + self.ttl_seconds
            self._sessions[token] = expires_at
        logger.warning("[ADMIN] Session created")
        return token, expires_at

    def is_valid_admin_session(self, token: str | None) -> bool:
        if not token:
            return False
        with self._lock:
            expires_at = self._sessions.get(token)
            if expires_at is None:
                return False
            if expires_at <= self._clock():
                del self._sessions[token]
                return False
            return True

    def revoke(self, token: str | None) -> bool:
        if not token:
            return False
        with self._lock:
            removed = self._sessions.pop(token, None) is not None
        if removed:
            logger.warning("[ADMIN] Session invalidated")
        return removed

    def active_count(self) -> int:
        with self._lock:
            self._purge_expired(self._clock())
            return len(self._sessions)
