from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import Any, Dict, List

from .messages import InvalidRequest
from .sessions import _now_ms

PASSWORD_ITERATIONS = 200_000
MAX_USERNAME_LENGTH = 32
THEMES = ("light", "dark")


class UsernameTaken(Exception):
    pass


def hash_password(password: str, salt: str | None = None, iterations: int = PASSWORD_ITERATIONS) -> str:
    if salt is None:
        salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("ascii"), iterations)
    return f"pbkdf2_sha256${iterations}${salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        scheme, iterations, salt, _ = stored.split("$", 3)
        rounds = int(iterations)
    except ValueError:
        return False
    if scheme != "pbkdf2_sha256":
        return False
    return hmac.compare_digest(hash_password(password, salt, rounds), stored)


@dataclass
class User:
    user_id: str
    username: str
    password_hash: str
    created_at_ms: int
    avatar: str | None = None
    theme: str = "light"

    def profile(self) -> dict[str, Any]:
        return {"id": self.user_id, "username": self.username, "avatar": self.avatar}

    def private_profile(self) -> dict[str, Any]:
        return {**self.profile(), "theme": self.theme}


def _clean_username(username: Any) -> str:
    if not isinstance(username, str) or not username.strip():
        raise InvalidRequest("username required")
    cleaned = username.strip()
    if len(cleaned) > MAX_USERNAME_LENGTH:
        raise InvalidRequest("username too long")
    if any(not ch.isprintable() for ch in cleaned):
        raise InvalidRequest("username contains control characters")
    return cleaned


def _require_password(password: Any) -> str:
    if not isinstance(password, str) or not password:
        raise InvalidRequest("password required")
    return password


class UserDirectory:
    """In-memory user accounts keyed by id with case-insensitive unique names."""

    def __init__(self, *, password_iterations: int = PASSWORD_ITERATIONS, now_func=_now_ms) -> None:
        self._iterations = password_iterations
        self._now = now_func
        self._users: Dict[str, User] = {}
        self._by_name: Dict[str, str] = {}

    def register(self, username: Any, password: Any) -> User:
        name = _clean_username(username)
        secret = _require_password(password)
        if name.lower() in self._by_name:
            raise UsernameTaken("username already taken")
        user = User(
            user_id=f"u_{secrets.token_hex(6)}",
            username=name,
            password_hash=hash_password(secret, iterations=self._iterations),
            created_at_ms=self._now(),
        )
        self._users[user.user_id] = user
        self._by_name[name.lower()] = user.user_id
        return user

    def authenticate(self, username: Any, password: Any) -> User | None:
        if not isinstance(username, str) or not isinstance(password, str):
            return None
        user_id = self._by_name.get(username.strip().lower())
        if user_id is None:
            return None
        user = self._users[user_id]
        if not verify_password(password, user.password_hash):
            return None
        return user

    def get(self, user_id: str) -> User | None:
        return self._users.get(user_id)

    def profile(self, user_id: str) -> dict[str, Any] | None:
        user = self._users.get(user_id)
        return user.profile() if user is not None else None

    def search(self, query: str, *, exclude: str | None = None) -> List[dict[str, Any]]:
        needle = query.strip().lower()
        if not needle:
            return []
        return [
            user.profile()
            for user in self._users.values()
            if user.user_id != exclude and needle in user.username.lower()
        ]

    def all_profiles(self, *, exclude: str | None = None) -> List[dict[str, Any]]:
        return [user.profile() for user in self._users.values() if user.user_id != exclude]

    def set_avatar(self, user_id: str, avatar: str | None) -> User | None:
        user = self._users.get(user_id)
        if user is None:
            return None
        if avatar is not None and not isinstance(avatar, str):
            raise InvalidRequest("avatar must be a string")
        user.avatar = avatar
        return user

    def rename(self, user_id: str, username: Any) -> User | None:
        user = self._users.get(user_id)
        if user is None:
            return None
        name = _clean_username(username)
        owner = self._by_name.get(name.lower())
        if owner is not None and owner != user_id:
            raise UsernameTaken("username already taken")
        self._by_name.pop(user.username.lower(), None)
        user.username = name
        self._by_name[name.lower()] = user_id
        return user

    def set_password(self, user_id: str, password: Any) -> User | None:
        user = self._users.get(user_id)
        if user is None:
            return None
        user.password_hash = hash_password(_require_password(password), iterations=self._iterations)
        return user

    def set_theme(self, user_id: str, theme: Any) -> User | None:
        user = self._users.get(user_id)
        if user is None:
            return None
        if theme not in THEMES:
            raise InvalidRequest(f"theme must be one of {', '.join(THEMES)}")
        user.theme = theme
        return user

    def delete(self, user_id: str) -> bool:
        user = self._users.pop(user_id, None)
        if user is None:
            return False
        self._by_name.pop(user.username.lower(), None)
        return True
