"""Database models for the Plork federation core."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.pool import StaticPool


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""
    pass


class User(Base):
    """A local actor.

    Actor URLs are derived from the username at creation time:
    https://m2np.com/users/alice, .../inbox, .../outbox and so on.
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    username: Mapped[str] = mapped_column(String(128), unique=True, nullable=False, index=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    profile_image: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    # ActivityPub endpoints
    actor_url: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)
    inbox_url: Mapped[str] = mapped_column(String(512), nullable=False)
    outbox_url: Mapped[str] = mapped_column(String(512), nullable=False)
    followers_url: Mapped[str] = mapped_column(String(512), nullable=False)
    following_url: Mapped[str] = mapped_column(String(512), nullable=False)

    # RSA key pair for HTTP signatures
    public_key_pem: Mapped[str] = mapped_column(Text, nullable=False)
    private_key_pem: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)

    posts: Mapped[list["Post"]] = relationship(back_populates="author")


class Post(Base):
    """A post authored by a local actor."""
    __tablename__ = "posts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    author_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    # Create activity that produced the post, if any
    activity_id: Mapped[Optional[str]] = mapped_column(String(512), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)

    author: Mapped[User] = relationship(back_populates="posts")

    __table_args__ = (
        Index("ix_posts_author", "author_id"),
    )


class Follow(Base):
    """Directed follow edge follower -> following."""
    __tablename__ = "follows"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    follower_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    following_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)

    # Follow activity ID, used by Accept/Reject/Undo lookups
    activity_id: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)

    # Pending until accepted
    accepted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    follower: Mapped[User] = relationship(foreign_keys=[follower_id])
    following: Mapped[User] = relationship(foreign_keys=[following_id])

    __table_args__ = (
        Index("ix_follows_following", "following_id"),
        UniqueConstraint("follower_id", "following_id", name="uq_follow_pair"),
    )


class Like(Base):
    """Directed like edge user -> post.

    post_id is taken from the liked object's URI and is not checked
    against the posts table.
    """
    __tablename__ = "likes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    post_id: Mapped[str] = mapped_column(String(512), nullable=False)
    activity_id: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "post_id", name="uq_like_pair"),
    )


class InboxItem(Base):
    """Append-only record of an activity received by a local actor."""
    __tablename__ = "inbox_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    # Not unique: redeliveries are recorded too
    activity_id: Mapped[str] = mapped_column(String(512), nullable=False, index=True)
    activity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    activity_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_inbox_items_user", "user_id"),
    )


class OutboxItem(Base):
    """Append-only record of an activity published by a local actor."""
    __tablename__ = "outbox_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    activity_id: Mapped[str] = mapped_column(String(512), nullable=False, index=True)
    activity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    activity_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_outbox_items_user", "user_id"),
    )


async def init_db(database_url: str) -> async_sessionmaker:
    """Initialize database and return session maker."""
    engine_kwargs = {}
    if database_url.endswith(":memory:"):
        # Every connection to :memory: is a new database
        engine_kwargs["poolclass"] = StaticPool
    engine = create_async_engine(database_url, echo=False, **engine_kwargs)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return async_sessionmaker(engine, expire_on_commit=False)
