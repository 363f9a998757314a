from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    inspect,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship, scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()

TICKET_STATUSES = ["open", "in_progress", "waiting_customer", "resolved", "closed"]
DEFAULT_PRIORITIES = [("Low", 1), ("Medium", 2), ("High", 3), ("Critical", 4)]


def new_id() -> str:
    return uuid.uuid4().hex


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


# --------------------------------------------------------------------------------------
# Accounts & sessions
# --------------------------------------------------------------------------------------


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, nullable=False, unique=True, index=True)
    name = Column(String)
    # Only update_user_role may write this column; apply_input() skips it.
    role = Column(String, nullable=False, default="user", info={"write_protected": True})
    email_verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    sessions = relationship(
        "AuthSession",
        back_populates="user",
        lazy="select",
        cascade="all, delete-orphan",
    )
    tickets = relationship(
        "Ticket",
        back_populates="user",
        foreign_keys="Ticket.user_id",
        lazy="select",
        cascade="all, delete-orphan",
    )


class AuthSession(Base):
    __tablename__ = "auth_sessions"

    id = Column(String, primary_key=True, default=new_id)
    token_hash = Column(String, nullable=False, unique=True, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked_at = Column(DateTime(timezone=True))

    user = relationship("User", back_populates="sessions", lazy="select")


class TeamMember(Base):
    __tablename__ = "team_members"

    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    role = Column(String, nullable=False, default="staff")
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    kb_articles = relationship("KbArticle", back_populates="author", lazy="select")


# --------------------------------------------------------------------------------------
# Tickets
# --------------------------------------------------------------------------------------


class Category(Base):
    __tablename__ = "categories"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False, unique=True)
    parent_id = Column(String, ForeignKey("categories.id"))
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    parent = relationship("Category", remote_side=[id], back_populates="children", lazy="select")
    children = relationship("Category", back_populates="parent", lazy="select")
    tickets = relationship("Ticket", back_populates="category", lazy="select")
    kb_articles = relationship("KbArticle", back_populates="category", lazy="select")


class Priority(Base):
    __tablename__ = "priorities"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False, unique=True)
    level = Column(Integer, nullable=False)

    tickets = relationship("Ticket", back_populates="priority", lazy="select")


class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(String, primary_key=True, default=new_id)
    subject = Column(String, nullable=False)
    status = Column(String, nullable=False, default="open")
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    category_id = Column(String, ForeignKey("categories.id"))
    priority_id = Column(String, ForeignKey("priorities.id"))
    assigned_to = Column(String, ForeignKey("users.id", ondelete="SET NULL"))
    open_date = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    last_update = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    user = relationship("User", back_populates="tickets", foreign_keys=[user_id], lazy="select")
    assignee = relationship("User", foreign_keys=[assigned_to], lazy="select")
    category = relationship("Category", back_populates="tickets", lazy="select")
    priority = relationship("Priority", back_populates="tickets", lazy="select")
    replies = relationship(
        "TicketReply",
        back_populates="ticket",
        lazy="select",
        cascade="all, delete-orphan",
    )


class TicketReply(Base):
    __tablename__ = "ticket_replies"

    id = Column(String, primary_key=True, default=new_id)
    ticket_id = Column(String, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    author_id = Column(String)
    author_type = Column(String, nullable=False, default="customer")
    message = Column(Text, nullable=False)
    is_internal = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    ticket = relationship("Ticket", back_populates="replies", lazy="select")


# --------------------------------------------------------------------------------------
# Knowledge base
# --------------------------------------------------------------------------------------


class KbArticle(Base):
    __tablename__ = "kb_articles"

    id = Column(String, primary_key=True, default=new_id)
    title = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    keywords = Column(String, nullable=False, default="")
    published = Column(Boolean, nullable=False, default=False)
    published_at = Column(DateTime(timezone=True))
    author_id = Column(String, ForeignKey("team_members.id"), nullable=False)
    category_id = Column(String, ForeignKey("categories.id"))
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    author = relationship("TeamMember", back_populates="kb_articles", lazy="select")
    category = relationship("Category", back_populates="kb_articles", lazy="select")


# --------------------------------------------------------------------------------------
# Admin configuration
# --------------------------------------------------------------------------------------


class Setting(Base):
    __tablename__ = "settings"

    id = Column(String, primary_key=True, default=new_id)
    key = Column(String, nullable=False, unique=True)
    value = Column(Text, nullable=False, default="")
    category = Column(String, nullable=False, default="general")
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)


class EmailTemplate(Base):
    __tablename__ = "email_templates"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False, unique=True)
    subject = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    variables = Column(Text, nullable=False, default="")
    description = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)


class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id = Column(String, primary_key=True, default=new_id)
    # No foreign key: entries must outlive the users they mention.
    user_id = Column(String)
    action = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String)
    details = Column(Text)
    ip_address = Column(String)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc, index=True)


# --------------------------------------------------------------------------------------
# Input helpers
# --------------------------------------------------------------------------------------


def is_write_protected(model: type, attribute: str) -> bool:
    column = inspect(model).columns.get(attribute)
    return bool(column is not None and column.info.get("write_protected"))


def apply_input(entity: Any, data: Mapping[str, Any], allowed: set[str]) -> set[str]:
    """Copy client-supplied fields onto ``entity``; returns the names that changed.

    Fields outside ``allowed`` and write-protected columns are dropped.
    """
    changed: set[str] = set()
    for key, value in data.items():
        if key not in allowed or is_write_protected(type(entity), key):
            logger.debug("Ignoring input field %s for %s", key, type(entity).__name__)
            continue
        if getattr(entity, key) != value:
            setattr(entity, key, value)
            changed.add(key)
    return changed


# --------------------------------------------------------------------------------------
# Engine / session factory
# --------------------------------------------------------------------------------------


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in {"sqlite://", "sqlite:///"}:
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return create_engine(url, pool_pre_ping=True, connect_args={"sslmode": "require"})


def build_session_factory(engine: Engine) -> scoped_session:
    return scoped_session(sessionmaker(bind=engine, autoflush=False, autocommit=False))


def init_db(engine: Engine, session_factory) -> None:
    """Create missing tables and seed default priorities; existing rows are kept."""
    Base.metadata.create_all(engine)
    db = session_factory()
    try:
        existing = {name for (name,) in db.query(Priority.name).all()}
        for name, level in DEFAULT_PRIORITIES:
            if name not in existing:
                db.add(Priority(name=name, level=level))
        db.commit()
    finally:
        db.close()
