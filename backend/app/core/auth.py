"""Minimal identity helpers: resolve a bearer session token to a user."""

from __future__ import annotations

import hashlib
import logging
import re
import secrets
import time
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ..db.models import DbSession, DbUser
from ..services.credits import CreditsLedger
from .database import Database
from .errors import ValidationError

logger = logging.getLogger(__name__)

_EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+$")


@dataclass
class User:
    """Represents an authenticated user profile."""

    id: str
    email: str
    name: str
    created_at: int | None = None


class UserStore:
    """Provisions user rows; every new user starts with a zero-balance ledger."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def create_user(self, email: str, name: str = "") -> User:
        email = email.strip().lower()
        if not _EMAIL_PATTERN.match(email):
            raise ValidationError("Invalid email format")
        user = User(
            id=secrets.token_hex(8),
            email=email,
            name=name.strip() or email.split("@")[0],
            created_at=int(time.time()),
        )
        try:
            with self.db.session() as session:
                session.add(DbUser(id=user.id, email=user.email, name=user.name, created_at=user.created_at))
        except IntegrityError as exc:
            raise ValidationError("User already exists") from exc

        CreditsLedger(self.db).get_or_create(user.id)
        return user


class SessionStore:
    """Persistent bearer session tokens."""

    SESSION_TTL_SECONDS = 60 * 60 * 24 * 30  # 30 days

    def __init__(self, db: Database) -> None:
        self.db = db

    def issue_session(self, user: User, user_agent: str | None = None) -> str:
        token = secrets.token_urlsafe(32)
        now = int(time.time())
        with self.db.session() as session:
            session.merge(
                DbSession(
                    token_hash=_hash_token(token),
                    user_id=user.id,
                    created_at=now,
                    expires_at=now + self.SESSION_TTL_SECONDS,
                    user_agent=user_agent,
                )
            )
        return token

    def authenticate(self, token: str) -> Optional[User]:
        if not token:
            return None
        now = int(time.time())
        with self.db.session() as session:
            stmt = (
                select(DbUser)
                .join(DbSession, DbSession.user_id == DbUser.id)
                .where(DbSession.token_hash == _hash_token(token), DbSession.expires_at > now)
                .order_by(DbSession.created_at.desc())
                .limit(1)
            )
            user = session.scalar(stmt)
            if not user:
                return None
            return _user_from_db(user)


def _user_from_db(user: DbUser) -> User:
    return User(
        id=user.id,
        email=user.email or "",
        name=user.name or user.email or "User",
        created_at=user.created_at,
    )


def _hash_token(token: str) -> str:
    return hashlib.sha256(f"session:{token}".encode("utf-8")).hexdigest()
