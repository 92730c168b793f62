from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from typing import Dict, Set


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Session:
    user_id: str
    session_token: str
    expires_at_ms: int


class SessionStore:
    """Tracks issued session tokens and the user identity each one is bound to."""

    def __init__(self, ttl_ms: int = 24 * 60 * 60 * 1000, *, now_func=_now_ms) -> None:
        self._ttl_ms = ttl_ms
        self._now = now_func
        self._by_token: Dict[str, Session] = {}
        self._by_user: Dict[str, Set[str]] = {}

    def create(self, user_id: str) -> Session:
        session = Session(
            user_id=user_id,
            session_token=f"st_{secrets.token_urlsafe(16)}",
            expires_at_ms=self._now() + self._ttl_ms,
        )
        self._by_token[session.session_token] = session
        self._by_user.setdefault(user_id, set()).add(session.session_token)
        return session

    def get_by_session(self, session_token: str) -> Session | None:
        session = self._by_token.get(session_token)
        if session is None:
            return None
        if session.expires_at_ms <= self._now():
            self.invalidate(session)
            return None
        return session

    def invalidate(self, session: Session) -> None:
        self._by_token.pop(session.session_token, None)
        tokens = self._by_user.get(session.user_id)
        if tokens is None:
            return
        tokens.discard(session.session_token)
        if not tokens:
            self._by_user.pop(session.user_id, None)

    def invalidate_user(self, user_id: str) -> int:
        """Drop every token issued to ``user_id`` and return how many were revoked."""

        tokens = self._by_user.pop(user_id, set())
        for token in tokens:
            self._by_token.pop(token, None)
        return len(tokens)
