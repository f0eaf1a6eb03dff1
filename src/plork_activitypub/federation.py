"""Federation handlers for ActivityPub Inbox/Outbox.

Implements:
- Inbox: receive activities from remote servers, log them, apply follow
  and like side effects
- Outbox: accept activities from local actors, apply local side effects,
  record them for the delivery worker

Inbox handlers never raise past dispatch: once an activity is in the
ledger the remote caller gets a success, and handler errors are logged.
Outbox errors propagate to the local caller.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

import structlog

from .activitypub_types import (
    Activity,
    ActivityType,
    JsonDict,
    ObjectType,
    create_activity,
    parse_activity,
    trailing_segment,
)
from .errors import (
    ActorNotFound,
    HandlerFailure,
    InvalidActivity,
    UnsupportedActivityType,
)
from .models import User
from .store import DuplicateRecordError, Store

logger = structlog.get_logger()

RawActivity = JsonDict | str | bytes


class ProcessingStatus(str, Enum):
    """What a handler did with an activity."""
    APPLIED = "applied"  # Side effect written
    PENDING = "pending"  # Follow stored awaiting approval
    DUPLICATE = "duplicate"  # Already processed; nothing changed
    IGNORED = "ignored"  # Nothing to do (unknown type, unknown actor, missing edge)
    STORED = "stored"  # Logged only
    FAILED = "failed"  # Handler raised; logged


@dataclass
class InboxResult:
    activity_id: str
    activity_type: str
    status: ProcessingStatus
    error: str | None = None


@dataclass
class OutboxResult:
    activity_id: str
    activity_type: str
    status: ProcessingStatus
    post_id: str | None = None


def _decode(raw_activity: RawActivity) -> tuple[Activity, str]:
    """Parse an activity and return it with its verbatim JSON text.

    Request bodies must be UTF-8; the text that is parsed is the text
    that goes to the ledger.
    """
    if isinstance(raw_activity, (bytes, bytearray)):
        try:
            raw_activity = raw_activity.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidActivity(f"Activity is not valid UTF-8: {e}") from e

    activity = parse_activity(raw_activity)
    if isinstance(raw_activity, str):
        return activity, raw_activity
    return activity, activity.to_json()


class InboxProcessor:
    """Applies activities delivered to local actors' inboxes."""

    def __init__(
        self,
        store: Store,
        auto_accept_follows: bool = True,
        emit_accept_activities: bool = True,
    ):
        """Initialize inbox processor.

        Args:
            store: Persistence capability
            auto_accept_follows: Accept Follow requests immediately; when
                False they stay pending until the target accepts
            emit_accept_activities: On auto-accept, record an Accept in the
                target's outbox for delivery back to the follower
        """
        self.store = store
        self.auto_accept_follows = auto_accept_follows
        self.emit_accept_activities = emit_accept_activities

        self._handlers: dict[ActivityType, Callable[[User, Activity], Awaitable[ProcessingStatus]]] = {
            ActivityType.FOLLOW: self._handle_follow,
            ActivityType.ACCEPT: self._handle_accept,
            ActivityType.REJECT: self._handle_reject,
            ActivityType.CREATE: self._handle_create,
            ActivityType.LIKE: self._handle_like,
            ActivityType.UNDO: self._handle_undo,
        }

    async def receive(self, local_username: str, raw_activity: RawActivity) -> InboxResult:
        """Handle an activity addressed to a local actor's inbox.

        Args:
            local_username: Username of the receiving actor
            raw_activity: Activity JSON (text, bytes or decoded dict)

        Returns:
            InboxResult describing what the handler did

        Raises:
            ActorNotFound: If the username is unknown
            InvalidActivity: If the activity cannot be parsed
        """
        user = await self.store.get_user_by_username(local_username)
        if not user:
            raise ActorNotFound(f"Unknown actor: {local_username}")

        activity, activity_json = _decode(raw_activity)

        logger.info(
            "Processing inbox activity",
            type=activity.type,
            activity_id=activity.id,
            from_actor=activity.actor,
            to_actor=local_username,
        )

        # The ledger entry is written before any handler runs
        await self.store.add_to_inbox(
            user_id=user.id,
            activity_id=activity.id,
            activity_type=activity.type,
            activity_json=activity_json,
        )

        handler = self._handlers.get(activity.activity_type)
        if handler is None:
            logger.debug("Ignoring unsupported activity type", type=activity.type)
            return InboxResult(activity.id, activity.type, ProcessingStatus.IGNORED)

        try:
            status = await handler(user, activity)
        except DuplicateRecordError:
            # Lost a race with a concurrent delivery of the same activity
            logger.info("Duplicate delivery", type=activity.type, activity_id=activity.id)
            status = ProcessingStatus.DUPLICATE
        except Exception as e:
            failure = HandlerFailure(activity.id, activity.type, e)
            logger.warning(
                "Inbox handler failed",
                type=activity.type,
                activity_id=activity.id,
                error=str(failure),
                exc_info=True,
            )
            return InboxResult(activity.id, activity.type, ProcessingStatus.FAILED, error=str(e))

        return InboxResult(activity.id, activity.type, status)

    async def _local_actor(self, actor_uri: str) -> User | None:
        """Resolve an actor URI to a local user.

        The username is the last path segment; the full URI must still be
        that user's actor URL.
        """
        user = await self.store.get_user_by_username(trailing_segment(actor_uri))
        if not user or user.actor_url != actor_uri:
            return None
        return user

    async def _handle_follow(self, target: User, activity: Activity) -> ProcessingStatus:
        """Handle incoming Follow activity."""
        if await self.store.get_follow_by_activity_id(activity.id):
            return ProcessingStatus.DUPLICATE

        follower = await self._local_actor(activity.actor)
        if not follower:
            logger.info("Follow from unknown actor", from_actor=activity.actor)
            return ProcessingStatus.IGNORED

        existing = await self.store.get_follow(follower.id, target.id)
        if existing:
            logger.info(
                "Already following",
                from_actor=activity.actor,
                to_actor=target.actor_url,
                original_activity_id=existing.activity_id,
            )
            return ProcessingStatus.DUPLICATE

        accepted = self.auto_accept_follows
        await self.store.create_follow(
            follower_id=follower.id,
            following_id=target.id,
            activity_id=activity.id,
            accepted=accepted,
        )

        if not accepted:
            logger.info("Follow pending approval", from_actor=activity.actor, to_actor=target.actor_url)
            return ProcessingStatus.PENDING

        if self.emit_accept_activities:
            await self._record_accept(target, activity)

        logger.info("Accepted follow", from_actor=activity.actor, to_actor=target.actor_url)
        return ProcessingStatus.APPLIED

    async def _record_accept(self, target: User, follow: Activity) -> None:
        """Queue an Accept for the follower via the target's outbox."""
        accept = create_activity(
            actor_url=target.actor_url,
            activity_type=ActivityType.ACCEPT,
            activity_object=follow.raw,
        )
        await self.store.add_to_outbox(
            user_id=target.id,
            activity_id=accept["id"],
            activity_type=accept["type"],
            activity_json=json.dumps(accept),
        )

    async def _handle_accept(self, target: User, activity: Activity) -> ProcessingStatus:
        """Handle Accept activity (follow accepted)."""
        if activity.object_type != ActivityType.FOLLOW.value or not activity.object_id:
            return ProcessingStatus.IGNORED

        follow = await self.store.get_follow_by_activity_id(activity.object_id)
        if not follow:
            return ProcessingStatus.IGNORED

        await self.store.accept_follow(follow.id)
        logger.info("Follow accepted", by_actor=activity.actor, follow_id=activity.object_id)
        return ProcessingStatus.APPLIED

    async def _handle_reject(self, target: User, activity: Activity) -> ProcessingStatus:
        """Handle Reject activity (follow refused)."""
        if activity.object_type != ActivityType.FOLLOW.value or not activity.object_id:
            return ProcessingStatus.IGNORED

        follow = await self.store.get_follow_by_activity_id(activity.object_id)
        if not follow:
            return ProcessingStatus.IGNORED

        await self.store.delete_follow(follow.follower_id, follow.following_id)
        logger.info("Follow rejected", by_actor=activity.actor, follow_id=activity.object_id)
        return ProcessingStatus.APPLIED

    async def _handle_create(self, target: User, activity: Activity) -> ProcessingStatus:
        """Remote posts are kept in the ledger only."""
        return ProcessingStatus.STORED

    async def _handle_like(self, target: User, activity: Activity) -> ProcessingStatus:
        """Handle incoming Like activity."""
        if not activity.object_id:
            return ProcessingStatus.IGNORED
        if await self.store.get_like_by_activity_id(activity.id):
            return ProcessingStatus.DUPLICATE

        post_id = trailing_segment(activity.object_id)
        liker = await self._local_actor(activity.actor)
        if not liker:
            logger.info("Like from unknown actor", from_actor=activity.actor)
            return ProcessingStatus.IGNORED

        await self.store.create_like(user_id=liker.id, post_id=post_id, activity_id=activity.id)
        logger.info("Received Like", from_actor=activity.actor, post_id=post_id)
        return ProcessingStatus.APPLIED

    async def _handle_undo(self, target: User, activity: Activity) -> ProcessingStatus:
        """Handle incoming Undo activity (unfollow, unlike)."""
        object_id = activity.object_id
        if not object_id:
            return ProcessingStatus.IGNORED

        # An embedded object without a type is looked up like a bare URI
        object_type = activity.object_type or None
        if object_type in (None, ActivityType.FOLLOW.value):
            follow = await self.store.get_follow_by_activity_id(object_id)
            if follow:
                await self.store.delete_follow(follow.follower_id, follow.following_id)
                logger.info("Processed unfollow", from_actor=activity.actor, follow_id=object_id)
                return ProcessingStatus.APPLIED

        if object_type in (None, ActivityType.LIKE.value):
            like = await self.store.get_like_by_activity_id(object_id)
            if like:
                await self.store.delete_like(like.user_id, like.post_id)
                logger.info("Processed unlike", from_actor=activity.actor, like_id=object_id)
                return ProcessingStatus.APPLIED

        return ProcessingStatus.IGNORED


class OutboxProcessor:
    """Applies activities published by local actors."""

    SUPPORTED_TYPES = frozenset({
        ActivityType.CREATE,
        ActivityType.FOLLOW,
        ActivityType.LIKE,
        ActivityType.UNDO,
        ActivityType.ACCEPT,
        ActivityType.REJECT,
    })

    def __init__(self, store: Store):
        self.store = store

    async def publish(self, local_username: str, raw_activity: RawActivity) -> OutboxResult:
        """Publish an activity on behalf of a local actor.

        Args:
            local_username: Username of the publishing actor
            raw_activity: Activity JSON (text, bytes or decoded dict)

        Returns:
            OutboxResult

        Raises:
            ActorNotFound: If the username is unknown
            InvalidActivity: If the activity is malformed
            UnsupportedActivityType: If the type cannot be published
        """
        user = await self.store.get_user_by_username(local_username)
        if not user:
            raise ActorNotFound(f"Unknown actor: {local_username}")

        activity, activity_json = _decode(raw_activity)
        activity_type = activity.activity_type
        if activity_type not in self.SUPPORTED_TYPES:
            raise UnsupportedActivityType(activity.type)

        logger.info(
            "Processing outbox activity",
            type=activity.type,
            activity_id=activity.id,
            actor=local_username,
        )

        result = OutboxResult(activity.id, activity.type, ProcessingStatus.STORED)
        if activity_type == ActivityType.CREATE:
            result = await self._handle_create(user, activity)
        elif activity_type in (ActivityType.ACCEPT, ActivityType.REJECT):
            result = await self._handle_follow_response(user, activity)
        # Follow, Like and Undo are handed to the delivery worker via the ledger

        await self.store.add_to_outbox(
            user_id=user.id,
            activity_id=activity.id,
            activity_type=activity.type,
            activity_json=activity_json,
        )
        return result

    async def _handle_create(self, user: User, activity: Activity) -> OutboxResult:
        """Create a local post for a Create(Note)."""
        if activity.object_type != ObjectType.NOTE.value:
            return OutboxResult(activity.id, activity.type, ProcessingStatus.STORED)

        content = activity.object.content
        if content is None:
            raise InvalidActivity("Note is missing string 'content'")

        post = await self.store.create_post(
            author_id=user.id,
            content=content,
            activity_id=activity.id,
        )
        logger.info("Created post", actor=user.username, post_id=post.id, activity_id=activity.id)
        return OutboxResult(activity.id, activity.type, ProcessingStatus.APPLIED, post_id=post.id)

    async def _handle_follow_response(self, user: User, activity: Activity) -> OutboxResult:
        """Approve or refuse a pending Follow addressed to this actor."""
        if activity.object_type != ActivityType.FOLLOW.value or not activity.object_id:
            raise InvalidActivity(f"{activity.type} must embed the Follow it answers")

        follow = await self.store.get_follow_by_activity_id(activity.object_id)
        if not follow or follow.following_id != user.id:
            raise InvalidActivity(f"No follow request {activity.object_id} for {user.username}")

        if activity.activity_type == ActivityType.ACCEPT:
            await self.store.accept_follow(follow.id)
            logger.info("Approved follow request", actor=user.username, follow_id=follow.activity_id)
        else:
            await self.store.delete_follow(follow.follower_id, follow.following_id)
            logger.info("Refused follow request", actor=user.username, follow_id=follow.activity_id)
        return OutboxResult(activity.id, activity.type, ProcessingStatus.APPLIED)
