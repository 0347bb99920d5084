"""Users, roles and bearer tokens.

A user carries a role tag; what the role may do is looked up in
``ROLE_CAPABILITIES`` rather than encoded in a class hierarchy. Passwords
are stored as salted PBKDF2-SHA256 hashes and tokens are random strings
with an expiry, kept in the ``auth_tokens`` table.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import sqlite3
from datetime import datetime, timedelta
from typing import Callable, Dict, FrozenSet, Optional, Union

from .config import settings
from .database import Database
from .errors import Conflict, Forbidden, NotFound, Unauthorized, ValidationError
from .models import Role, User

logger = logging.getLogger(__name__)

_READER = frozenset({"view_catalog", "borrow_books", "reserve_books", "view_history"})
_LIBRARIAN = _READER | {"manage_loans", "manage_books", "manage_readers", "view_reports"}
_ADMIN = _LIBRARIAN | {"manage_users", "manage_system", "change_roles", "view_all_data"}

ROLE_CAPABILITIES: Dict[Role, FrozenSet[str]] = {
    Role.READER: _READER,
    Role.LIBRARIAN: frozenset(_LIBRARIAN),
    Role.ADMIN: frozenset(_ADMIN),
}

_USER_COLUMNS = "user_id, email, first_name, last_name, phone, address, role, is_active, created_at"


def capabilities(role: Union[Role, str]) -> FrozenSet[str]:
    return ROLE_CAPABILITIES.get(Role(role), frozenset())


def has_capability(user: Optional[User], capability: str) -> bool:
    return user is not None and user.is_active and capability in capabilities(user.role)


def require_capability(user: Optional[User], capability: str) -> User:
    if user is None:
        raise Unauthorized("Authentication required.")
    if not has_capability(user, capability):
        raise Forbidden(f"Role {user.role.value} lacks permission {capability}.")
    return user


def hash_password(password: str, iterations: Optional[int] = None) -> str:
    iterations = iterations or settings.password_iterations
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return f"pbkdf2_sha256${iterations}${salt.hex()}${digest.hex()}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        algorithm, iterations, salt_hex, digest_hex = encoded.split("$")
    except ValueError:
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt_hex), int(iterations))
    return hmac.compare_digest(digest.hex(), digest_hex)


class UserDirectory:
    def __init__(self, db: Database, clock: Callable[[], datetime] = datetime.now,
                 token_ttl_minutes: Optional[int] = None, password_iterations: Optional[int] = None) -> None:
        self.db = db
        self.clock = clock
        self.token_ttl = timedelta(minutes=token_ttl_minutes or settings.token_ttl_minutes)
        self.password_iterations = password_iterations or settings.password_iterations

    def register(self, email: str, password: str, first_name: str, last_name: str,
                 phone: Optional[str] = None, address: Optional[str] = None,
                 role: Union[Role, str] = Role.READER) -> User:
        email = (email or "").strip()
        if "@" not in email:
            raise ValidationError("A valid email address is required.")
        if not password or len(password) < 6:
            raise ValidationError("Password must be at least 6 characters long.")
        if not first_name or not last_name:
            raise ValidationError("First and last name are required.")
        role = Role(role)
        with self.db.connection() as c:
            try:
                cursor = c.execute(
                    "INSERT INTO users (email, password_hash, first_name, last_name, phone, address, role) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (email, hash_password(password, self.password_iterations), first_name.strip(), last_name.strip(), phone, address, role.value),
                )
            except sqlite3.IntegrityError as e:
                raise Conflict(f"Email {email} is already registered.") from e
            user = self.get(cursor.lastrowid, conn=c)
        logger.info(f"User registered: {user.user_id} ({user.role.value})")
        return user

    def find(self, user_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[User]:
        with self.db.connection(conn) as c:
            row = c.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE user_id = ?", (user_id,)).fetchone()
        return User.from_dict(dict(row)) if row else None

    def get(self, user_id: int, conn: Optional[sqlite3.Connection] = None) -> User:
        user = self.find(user_id, conn=conn)
        if user is None:
            raise NotFound("User", user_id)
        return user

    def authenticate(self, email: str, password: str) -> Optional[User]:
        """Return the active user with these credentials, or None."""
        with self.db.connection() as c:
            row = c.execute(
                f"SELECT {_USER_COLUMNS}, password_hash FROM users WHERE email = ? AND is_active = 1",
                ((email or "").strip(),),
            ).fetchone()
        if row is None or not verify_password(password, row["password_hash"]):
            return None
        data = dict(row)
        data.pop("password_hash")
        return User.from_dict(data)

    def update_profile(self, user_id: int, *, first_name: Optional[str] = None, last_name: Optional[str] = None,
                       phone: Optional[str] = None, address: Optional[str] = None) -> User:
        changes = {
            key: value
            for key, value in (("first_name", first_name), ("last_name", last_name), ("phone", phone), ("address", address))
            if value is not None
        }
        with self.db.connection() as c:
            self.get(user_id, conn=c)
            if changes:
                assignments = ", ".join(f"{key} = ?" for key in changes)
                c.execute(f"UPDATE users SET {assignments} WHERE user_id = ?", (*changes.values(), user_id))
            return self.get(user_id, conn=c)

    def set_role(self, user_id: int, role: Union[Role, str]) -> User:
        role = Role(role)
        with self.db.connection() as c:
            self.get(user_id, conn=c)
            c.execute("UPDATE users SET role = ? WHERE user_id = ?", (role.value, user_id))
            user = self.get(user_id, conn=c)
        logger.info(f"User {user_id} role changed to {role.value}")
        return user

    def set_active(self, user_id: int, active: bool) -> User:
        with self.db.connection() as c:
            self.get(user_id, conn=c)
            c.execute("UPDATE users SET is_active = ? WHERE user_id = ?", (1 if active else 0, user_id))
            if not active:
                c.execute("DELETE FROM auth_tokens WHERE user_id = ?", (user_id,))
            return self.get(user_id, conn=c)

    # ------------------------- Tokens ------------------------- #
    def issue_token(self, user: User) -> str:
        expires_at = (self.clock() + self.token_ttl).isoformat(timespec="seconds")
        token = secrets.token_hex(32)
        with self.db.connection() as c:
            c.execute(
                "INSERT INTO auth_tokens (token, user_id, expires_at) VALUES (?, ?, ?)",
                (token, user.user_id, expires_at),
            )
        return token

    def resolve_token(self, token: str) -> Optional[User]:
        """Return the active user owning an unexpired token, or None."""
        if not token:
            return None
        now = self.clock().isoformat(timespec="seconds")
        with self.db.connection() as c:
            row = c.execute(
                "SELECT user_id FROM auth_tokens WHERE token = ? AND expires_at > ?", (token, now)
            ).fetchone()
            if row is None:
                return None
            user = self.find(row["user_id"], conn=c)
        return user if user and user.is_active else None

    def revoke_token(self, token: str) -> bool:
        with self.db.connection() as c:
            cursor = c.execute("DELETE FROM auth_tokens WHERE token = ?", (token,))
        return cursor.rowcount > 0
