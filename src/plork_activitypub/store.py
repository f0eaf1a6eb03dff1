"""Persistence capability consumed by the inbox and outbox processors.

Processors depend on the ``Store`` protocol only; ``SqlStore`` is the
SQLAlchemy implementation used by the server and the tests.
"""

from datetime import datetime, timezone
from typing import Protocol

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from .models import Follow, InboxItem, Like, OutboxItem, Post, User

logger = structlog.get_logger()


class DuplicateRecordError(Exception):
    """A uniqueness constraint rejected the write (record already exists)."""
    pass


class Store(Protocol):
    """Persistence operations the federation core relies on."""

    async def get_user_by_username(self, username: str) -> User | None: ...

    async def create_user(self, **fields) -> User: ...

    async def create_post(self, author_id: str, content: str, activity_id: str | None = None) -> Post: ...

    async def count_posts(self, author_id: str) -> int: ...

    async def create_follow(
        self, follower_id: str, following_id: str, activity_id: str, accepted: bool = False
    ) -> Follow: ...

    async def get_follow(self, follower_id: str, following_id: str) -> Follow | None: ...

    async def accept_follow(self, follow_id: str) -> None: ...

    async def delete_follow(self, follower_id: str, following_id: str) -> None: ...

    async def get_follow_by_activity_id(self, activity_id: str) -> Follow | None: ...

    async def get_followers(self, user_id: str) -> list[User]: ...

    async def get_following(self, user_id: str) -> list[User]: ...

    async def create_like(self, user_id: str, post_id: str, activity_id: str) -> Like: ...

    async def delete_like(self, user_id: str, post_id: str) -> None: ...

    async def get_like_by_activity_id(self, activity_id: str) -> Like | None: ...

    async def add_to_inbox(
        self, user_id: str, activity_id: str, activity_type: str, activity_json: str
    ) -> InboxItem: ...

    async def add_to_outbox(
        self, user_id: str, activity_id: str, activity_type: str, activity_json: str
    ) -> OutboxItem: ...

    async def get_inbox(self, user_id: str, limit: int = 20) -> list[InboxItem]: ...

    async def get_outbox(self, user_id: str, limit: int = 20) -> list[OutboxItem]: ...


class SqlStore:
    """Store backed by an async SQLAlchemy session maker.

    Every operation runs in its own session and commits before returning,
    so one instance can be shared by all request handlers.
    """

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def _add(self, record):
        async with self.session_maker() as session:
            session.add(record)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.debug("Uniqueness constraint rejected write", model=type(record).__name__)
                raise DuplicateRecordError(
                    f"{type(record).__name__} violates a uniqueness constraint"
                ) from e
        return record

    # === Users ===

    async def get_user_by_username(self, username: str) -> User | None:
        async with self.session_maker() as session:
            result = await session.execute(select(User).where(User.username == username))
            return result.scalar_one_or_none()

    async def create_user(self, **fields) -> User:
        return await self._add(User(**fields))

    # === Posts ===

    async def create_post(self, author_id: str, content: str, activity_id: str | None = None) -> Post:
        return await self._add(Post(author_id=author_id, content=content, activity_id=activity_id))

    async def count_posts(self, author_id: str) -> int:
        async with self.session_maker() as session:
            total = await session.scalar(
                select(func.count()).select_from(Post).where(Post.author_id == author_id)
            )
            return total or 0

    # === Follows ===

    async def create_follow(
        self,
        follower_id: str,
        following_id: str,
        activity_id: str,
        accepted: bool = False,
    ) -> Follow:
        follow = Follow(
            follower_id=follower_id,
            following_id=following_id,
            activity_id=activity_id,
            accepted=accepted,
            accepted_at=datetime.now(timezone.utc) if accepted else None,
        )
        return await self._add(follow)

    async def get_follow(self, follower_id: str, following_id: str) -> Follow | None:
        async with self.session_maker() as session:
            result = await session.execute(
                select(Follow).where(
                    Follow.follower_id == follower_id,
                    Follow.following_id == following_id,
                )
            )
            return result.scalar_one_or_none()

    async def accept_follow(self, follow_id: str) -> None:
        async with self.session_maker() as session:
            follow = await session.get(Follow, follow_id)
            if follow and not follow.accepted:
                follow.accepted = True
                follow.accepted_at = datetime.now(timezone.utc)
                await session.commit()

    async def delete_follow(self, follower_id: str, following_id: str) -> None:
        async with self.session_maker() as session:
            await session.execute(
                delete(Follow).where(
                    Follow.follower_id == follower_id,
                    Follow.following_id == following_id,
                )
            )
            await session.commit()

    async def get_follow_by_activity_id(self, activity_id: str) -> Follow | None:
        async with self.session_maker() as session:
            result = await session.execute(select(Follow).where(Follow.activity_id == activity_id))
            return result.scalar_one_or_none()

    async def get_followers(self, user_id: str) -> list[User]:
        """Users with an accepted follow edge towards user_id."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(User)
                .join(Follow, Follow.follower_id == User.id)
                .where(Follow.following_id == user_id, Follow.accepted == True)  # noqa: E712
                .order_by(Follow.created_at)
            )
            return list(result.scalars().all())

    async def get_following(self, user_id: str) -> list[User]:
        """Users that user_id follows with an accepted edge."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(User)
                .join(Follow, Follow.following_id == User.id)
                .where(Follow.follower_id == user_id, Follow.accepted == True)  # noqa: E712
                .order_by(Follow.created_at)
            )
            return list(result.scalars().all())

    # === Likes ===

    async def create_like(self, user_id: str, post_id: str, activity_id: str) -> Like:
        return await self._add(Like(user_id=user_id, post_id=post_id, activity_id=activity_id))

    async def delete_like(self, user_id: str, post_id: str) -> None:
        async with self.session_maker() as session:
            await session.execute(
                delete(Like).where(Like.user_id == user_id, Like.post_id == post_id)
            )
            await session.commit()

    async def get_like_by_activity_id(self, activity_id: str) -> Like | None:
        async with self.session_maker() as session:
            result = await session.execute(select(Like).where(Like.activity_id == activity_id))
            return result.scalar_one_or_none()

    # === Inbox/Outbox ledgers ===

    async def add_to_inbox(
        self,
        user_id: str,
        activity_id: str,
        activity_type: str,
        activity_json: str,
    ) -> InboxItem:
        return await self._add(InboxItem(
            user_id=user_id,
            activity_id=activity_id,
            activity_type=activity_type,
            activity_json=activity_json,
        ))

    async def add_to_outbox(
        self,
        user_id: str,
        activity_id: str,
        activity_type: str,
        activity_json: str,
    ) -> OutboxItem:
        return await self._add(OutboxItem(
            user_id=user_id,
            activity_id=activity_id,
            activity_type=activity_type,
            activity_json=activity_json,
        ))

    async def get_inbox(self, user_id: str, limit: int = 20) -> list[InboxItem]:
        """Newest inbox entries first."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(InboxItem)
                .where(InboxItem.user_id == user_id)
                .order_by(InboxItem.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_outbox(self, user_id: str, limit: int = 20) -> list[OutboxItem]:
        """Newest outbox entries first."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(OutboxItem)
                .where(OutboxItem.user_id == user_id)
                .order_by(OutboxItem.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
