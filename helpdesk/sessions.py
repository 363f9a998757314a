from __future__ import annotations

import hashlib
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping, Optional

from sqlalchemy.orm import Session

from helpdesk import config
from helpdesk.models import AuthSession, User, now_utc
from helpdesk.roles import ANONYMOUS, Principal, principal_for_user

logger = logging.getLogger(__name__)

SESSION_COOKIE_KEY = "session_token"
_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{20,128}$")


@dataclass(frozen=True)
class RequestCredentials:
    session_token: Optional[str] = None
    bearer_token: Optional[str] = None

    @property
    def token(self) -> Optional[str]:
        return self.session_token or self.bearer_token


def credentials_from_request(request, cookie_session: Mapping) -> RequestCredentials:
    """Collect the transport-level credential material a request carries."""

    bearer = None
    header = request.headers.get("Authorization") or ""
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        bearer = value.strip()
    token = cookie_session.get(SESSION_COOKIE_KEY)
    return RequestCredentials(
        session_token=token if isinstance(token, str) else None,
        bearer_token=bearer,
    )


def normalize_email(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SessionTokenVerifier:
    """Credential verifier backed by the ``auth_sessions`` table."""

    def __init__(self, db: Session):
        self.db = db

    def verify(self, token: Optional[str]) -> Optional[str]:
        if not token or not _TOKEN_PATTERN.match(token):
            return None
        row = (
            self.db.query(AuthSession.user_id)
            .filter(
                AuthSession.token_hash == hash_token(token),
                AuthSession.revoked_at.is_(None),
                AuthSession.expires_at > now_utc(),
            )
            .one_or_none()
        )
        return row.user_id if row else None


def resolve_principal(
    db: Session,
    credentials: Optional[RequestCredentials],
    verifier: Optional[SessionTokenVerifier] = None,
) -> Principal:
    """Map request credentials to a principal; anything unverifiable is anonymous."""

    if credentials is None or not credentials.token:
        return ANONYMOUS
    verifier = verifier or SessionTokenVerifier(db)
    user_id = verifier.verify(credentials.token)
    if not user_id:
        return ANONYMOUS
    user = db.get(User, user_id)
    if user is None:
        return ANONYMOUS
    return principal_for_user(user)


def refresh_principal(db: Session, principal: Principal) -> Principal:
    """Re-read the persisted role for ``principal`` so a check sees current state."""

    if principal.is_anonymous:
        return principal
    user = db.get(User, principal.id, populate_existing=True)
    if user is None:
        logger.info("Principal %s no longer exists; treating as anonymous", principal.id)
        return ANONYMOUS
    return principal_for_user(user)


# --------------------------------------------------------------------------------------
# Sign-in / sign-out
# --------------------------------------------------------------------------------------


def open_session(db: Session, user: User, ttl: Optional[timedelta] = None) -> str:
    token = secrets.token_urlsafe(32)
    now = now_utc()
    db.add(
        AuthSession(
            token_hash=hash_token(token),
            user_id=user.id,
            created_at=now,
            expires_at=now + (ttl or config.SESSION_TTL),
        )
    )
    db.commit()
    return token


def revoke_session(db: Session, token: Optional[str]) -> bool:
    if not token:
        return False
    record = db.query(AuthSession).filter(AuthSession.token_hash == hash_token(token)).one_or_none()
    if record is None or record.revoked_at is not None:
        return False
    record.revoked_at = now_utc()
    db.commit()
    return True


def upsert_user_by_email(db: Session, email: str, name: Optional[str] = None) -> User:
    """Resolve or create the account for ``email``, refreshing its name.

    Never changes the role of an existing account. Addresses in ADMIN_EMAILS
    start out as admins when their account is first created.
    Flushes but does not commit.
    """
    normalized = normalize_email(email)
    user = db.query(User).filter(User.email == normalized).one_or_none()
    if user is None:
        role = "admin" if normalized in config.ADMIN_EMAILS else "user"
        user = User(email=normalized, name=(name or "").strip() or None, role=role)
        db.add(user)
        db.flush()
        logger.info("Created account %s for %s", user.id, normalized)
        return user
    cleaned = (name or "").strip()
    if cleaned and cleaned != user.name:
        user.name = cleaned
        user.updated_at = now_utc()
    return user
