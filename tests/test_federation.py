"""Tests for federation processors (Inbox/Outbox handlers)."""

import json

import pytest
from unittest.mock import AsyncMock

from plork_activitypub.errors import ActorNotFound, InvalidActivity, UnsupportedActivityType
from plork_activitypub.federation import (
    InboxProcessor,
    OutboxProcessor,
    ProcessingStatus,
)
from plork_activitypub.store import DuplicateRecordError


def follow_activity(follower, target, n: int = 1) -> dict:
    return {
        "id": f"{follower.actor_url}/follows/{n}",
        "type": "Follow",
        "actor": follower.actor_url,
        "object": target.actor_url,
    }


def like_activity(liker, post_id: str, n: int = 1) -> dict:
    return {
        "id": f"{liker.actor_url}/likes/{n}",
        "type": "Like",
        "actor": liker.actor_url,
        "object": f"https://test.plork.social/posts/{post_id}",
    }


def wrap(actor, activity_type: str, obj, n: int = 1) -> dict:
    return {
        "id": f"{actor.actor_url}/{activity_type.lower()}/{n}",
        "type": activity_type,
        "actor": actor.actor_url,
        "object": obj,
    }


async def inbox_count(store, user) -> int:
    return len(await store.get_inbox(user.id, limit=500))


async def outbox_items(store, user) -> list[dict]:
    return [json.loads(item.activity_json) for item in await store.get_outbox(user.id, limit=500)]


@pytest.fixture
def inbox(store) -> InboxProcessor:
    return InboxProcessor(store)


@pytest.fixture
def manual_inbox(store) -> InboxProcessor:
    """Inbox that leaves follows pending."""
    return InboxProcessor(store, auto_accept_follows=False)


@pytest.fixture
def outbox(store) -> OutboxProcessor:
    return OutboxProcessor(store)


class TestInboxLedger:
    """Every valid delivery is logged exactly once."""

    @pytest.mark.asyncio
    async def test_ledger_entry_per_delivery(self, inbox, store, alice, bob):
        """Test each activity type adds one inbox entry."""
        deliveries = [
            follow_activity(alice, bob),
            like_activity(alice, "post-1"),
            wrap(alice, "Create", {"id": "https://r/notes/1", "type": "Note", "content": "hi"}),
            wrap(alice, "Announce", "https://r/notes/1"),
            wrap(alice, "Undo", "https://r/nothing"),
        ]
        for n, activity in enumerate(deliveries, start=1):
            await inbox.receive("bob", activity)
            assert await inbox_count(store, bob) == n

    @pytest.mark.asyncio
    async def test_verbatim_json(self, inbox, store, alice, bob):
        """Test the ledger keeps the delivered text as-is."""
        body = json.dumps(follow_activity(alice, bob), indent=2).encode()
        await inbox.receive("bob", body)

        items = await store.get_inbox(bob.id)
        assert items[0].activity_json == body.decode()
        assert items[0].activity_type == "Follow"

    @pytest.mark.asyncio
    async def test_unknown_local_actor(self, inbox, store, alice):
        """Test deliveries to unknown users raise ActorNotFound."""
        with pytest.raises(ActorNotFound):
            await inbox.receive("nobody", follow_activity(alice, alice))

    @pytest.mark.asyncio
    async def test_invalid_activity_not_logged(self, inbox, store, bob):
        """Test malformed activities raise and are not logged."""
        with pytest.raises(InvalidActivity):
            await inbox.receive("bob", b'{"type": "Follow"}')
        assert await inbox_count(store, bob) == 0

    @pytest.mark.asyncio
    async def test_non_utf8_body_invalid(self, inbox, store, alice, bob):
        """Test bodies that are not UTF-8 are rejected as invalid."""
        body = json.dumps(follow_activity(alice, bob)).encode("utf-16")

        with pytest.raises(InvalidActivity):
            await inbox.receive("bob", body)
        assert await inbox_count(store, bob) == 0

    @pytest.mark.asyncio
    async def test_unsupported_type_ignored(self, inbox, store, alice, bob):
        """Test unknown types are logged and ignored."""
        result = await inbox.receive("bob", wrap(alice, "Move", alice.actor_url))
        assert result.status == ProcessingStatus.IGNORED
        assert result.activity_type == "Move"


class TestInboxFollow:
    """Tests for Follow/Accept/Reject/Undo in the inbox."""

    @pytest.mark.asyncio
    async def test_follow_auto_accepted(self, inbox, store, alice, bob):
        """Test an auto-accepted follow creates an accepted edge."""
        result = await inbox.receive("bob", follow_activity(alice, bob))

        assert result.status == ProcessingStatus.APPLIED
        follow = await store.get_follow(alice.id, bob.id)
        assert follow.accepted is True
        assert follow.activity_id == f"{alice.actor_url}/follows/1"
        assert [u.username for u in await store.get_followers(bob.id)] == ["alice"]

    @pytest.mark.asyncio
    async def test_follow_records_accept(self, inbox, store, alice, bob):
        """Test auto-accept queues an Accept in the target's outbox."""
        follow = follow_activity(alice, bob)
        await inbox.receive("bob", follow)

        items = await outbox_items(store, bob)
        assert len(items) == 1
        assert items[0]["type"] == "Accept"
        assert items[0]["actor"] == bob.actor_url
        assert items[0]["object"] == follow

    @pytest.mark.asyncio
    async def test_follow_without_accept_activity(self, store, alice, bob):
        """Test the Accept can be switched off."""
        inbox = InboxProcessor(store, emit_accept_activities=False)
        await inbox.receive("bob", follow_activity(alice, bob))

        assert await outbox_items(store, bob) == []
        assert (await store.get_follow(alice.id, bob.id)).accepted is True

    @pytest.mark.asyncio
    async def test_follow_pending(self, manual_inbox, store, alice, bob):
        """Test follows stay pending without auto-accept."""
        result = await manual_inbox.receive("bob", follow_activity(alice, bob))

        assert result.status == ProcessingStatus.PENDING
        assert (await store.get_follow(alice.id, bob.id)).accepted is False
        assert await store.get_followers(bob.id) == []
        assert await outbox_items(store, bob) == []

    @pytest.mark.asyncio
    async def test_duplicate_follow_idempotent(self, inbox, store, alice, bob):
        """Test redelivering the same Follow leaves one edge."""
        await inbox.receive("bob", follow_activity(alice, bob))
        result = await inbox.receive("bob", follow_activity(alice, bob))

        assert result.status == ProcessingStatus.DUPLICATE
        assert len(await store.get_followers(bob.id)) == 1
        assert await inbox_count(store, bob) == 2
        # Only the first delivery is answered
        assert len(await outbox_items(store, bob)) == 1

    @pytest.mark.asyncio
    async def test_second_follow_same_pair(self, inbox, store, alice, bob):
        """Test a new Follow id for an existing edge is a duplicate."""
        await inbox.receive("bob", follow_activity(alice, bob, n=1))
        result = await inbox.receive("bob", follow_activity(alice, bob, n=2))

        assert result.status == ProcessingStatus.DUPLICATE
        follow = await store.get_follow(alice.id, bob.id)
        assert follow.activity_id == f"{alice.actor_url}/follows/1"

    @pytest.mark.asyncio
    async def test_follow_race_reported_as_duplicate(self, inbox, store, alice, bob, monkeypatch):
        """Test a uniqueness violation from a concurrent delivery is absorbed."""
        monkeypatch.setattr(store, "create_follow", AsyncMock(side_effect=DuplicateRecordError("race")))

        result = await inbox.receive("bob", follow_activity(alice, bob))

        assert result.status == ProcessingStatus.DUPLICATE
        assert result.error is None

    @pytest.mark.asyncio
    async def test_follow_from_remote_actor_ignored(self, inbox, store, bob):
        """Test follows from actors with no local user are logged only."""
        activity = {
            "id": "https://remote.example/follows/1",
            "type": "Follow",
            "actor": "https://remote.example/users/zoe",
            "object": bob.actor_url,
        }
        result = await inbox.receive("bob", activity)

        assert result.status == ProcessingStatus.IGNORED
        assert await store.get_followers(bob.id) == []
        assert await inbox_count(store, bob) == 1

    @pytest.mark.asyncio
    async def test_follow_from_lookalike_actor_ignored(self, inbox, store, alice, bob):
        """Test a remote actor sharing a local username is not the local user."""
        activity = {
            "id": "https://evil.example/follows/1",
            "type": "Follow",
            "actor": "https://evil.example/users/alice",
            "object": bob.actor_url,
        }
        result = await inbox.receive("bob", activity)

        assert result.status == ProcessingStatus.IGNORED
        assert await store.get_follow(alice.id, bob.id) is None

    @pytest.mark.asyncio
    async def test_accept_marks_follow_accepted(self, manual_inbox, store, alice, bob):
        """Test an Accept referencing a stored Follow accepts the edge."""
        follow = follow_activity(alice, bob)
        await manual_inbox.receive("bob", follow)

        result = await manual_inbox.receive("alice", wrap(bob, "Accept", follow))

        assert result.status == ProcessingStatus.APPLIED
        assert (await store.get_follow(alice.id, bob.id)).accepted is True

    @pytest.mark.asyncio
    async def test_accept_without_follow_is_noop(self, manual_inbox, store, alice, bob):
        """Test an Accept for an unknown Follow changes nothing."""
        await manual_inbox.receive("bob", follow_activity(alice, bob))

        result = await manual_inbox.receive(
            "alice",
            wrap(bob, "Accept", {"id": "https://nowhere/follows/9", "type": "Follow"}),
        )

        assert result.status == ProcessingStatus.IGNORED
        assert (await store.get_follow(alice.id, bob.id)).accepted is False

    @pytest.mark.asyncio
    async def test_accept_of_non_follow_ignored(self, inbox, alice, bob):
        """Test Accepts of other object types are ignored."""
        result = await inbox.receive("alice", wrap(bob, "Accept", {"id": "https://x/1", "type": "Offer"}))
        assert result.status == ProcessingStatus.IGNORED

    @pytest.mark.asyncio
    async def test_reject_removes_follow(self, manual_inbox, store, alice, bob):
        """Test a Reject deletes the pending edge."""
        follow = follow_activity(alice, bob)
        await manual_inbox.receive("bob", follow)

        result = await manual_inbox.receive("alice", wrap(bob, "Reject", follow))

        assert result.status == ProcessingStatus.APPLIED
        assert await store.get_follow(alice.id, bob.id) is None

    @pytest.mark.asyncio
    async def test_undo_follow(self, inbox, store, alice, bob):
        """Test Undo(Follow) removes the edge."""
        follow = follow_activity(alice, bob)
        await inbox.receive("bob", follow)

        result = await inbox.receive("bob", wrap(alice, "Undo", follow))

        assert result.status == ProcessingStatus.APPLIED
        assert await store.get_follow(alice.id, bob.id) is None
        assert await store.get_followers(bob.id) == []

    @pytest.mark.asyncio
    async def test_undo_follow_by_uri(self, inbox, store, alice, bob):
        """Test Undo referencing the Follow by id only."""
        follow = follow_activity(alice, bob)
        await inbox.receive("bob", follow)

        result = await inbox.receive("bob", wrap(alice, "Undo", follow["id"]))

        assert result.status == ProcessingStatus.APPLIED
        assert await store.get_follow(alice.id, bob.id) is None

    @pytest.mark.asyncio
    async def test_undo_untyped_embedded_object(self, inbox, store, alice, bob):
        """Test an embedded object without a type is looked up by id."""
        follow = follow_activity(alice, bob)
        await inbox.receive("bob", follow)

        result = await inbox.receive("bob", wrap(alice, "Undo", {"id": follow["id"]}))

        assert result.status == ProcessingStatus.APPLIED
        assert await store.get_follow(alice.id, bob.id) is None

    @pytest.mark.asyncio
    async def test_undo_missing_follow_is_noop(self, inbox, store, alice, bob):
        """Test undoing a Follow that does not exist is not an error."""
        result = await inbox.receive("bob", wrap(alice, "Undo", follow_activity(alice, bob)))

        assert result.status == ProcessingStatus.IGNORED
        assert result.error is None


class TestInboxLike:
    """Tests for Like/Undo(Like) in the inbox."""

    @pytest.mark.asyncio
    async def test_like(self, inbox, store, alice, bob):
        """Test a Like stores an edge keyed by the post's trailing segment."""
        result = await inbox.receive("bob", like_activity(alice, "post-1"))

        assert result.status == ProcessingStatus.APPLIED
        like = await store.get_like_by_activity_id(f"{alice.actor_url}/likes/1")
        assert like.user_id == alice.id
        assert like.post_id == "post-1"

    @pytest.mark.asyncio
    async def test_duplicate_like(self, inbox, store, alice, bob):
        """Test redelivered Likes are duplicates."""
        await inbox.receive("bob", like_activity(alice, "post-1"))
        result = await inbox.receive("bob", like_activity(alice, "post-1"))

        assert result.status == ProcessingStatus.DUPLICATE

    @pytest.mark.asyncio
    async def test_like_same_post_new_id(self, inbox, store, alice, bob):
        """Test a second Like of the same post is absorbed by the pair constraint."""
        await inbox.receive("bob", like_activity(alice, "post-1", n=1))
        result = await inbox.receive("bob", like_activity(alice, "post-1", n=2))

        assert result.status == ProcessingStatus.DUPLICATE
        assert await store.get_like_by_activity_id(f"{alice.actor_url}/likes/2") is None

    @pytest.mark.asyncio
    async def test_undo_like(self, inbox, store, alice, bob):
        """Test Undo(Like) removes the edge."""
        like = like_activity(alice, "post-1")
        await inbox.receive("bob", like)

        result = await inbox.receive("bob", wrap(alice, "Undo", like))

        assert result.status == ProcessingStatus.APPLIED
        assert await store.get_like_by_activity_id(like["id"]) is None

    @pytest.mark.asyncio
    async def test_undo_like_by_uri(self, inbox, store, alice, bob):
        """Test a bare-URI Undo falls through to the Like index."""
        like = like_activity(alice, "post-1")
        await inbox.receive("bob", like)

        result = await inbox.receive("bob", wrap(alice, "Undo", like["id"]))

        assert result.status == ProcessingStatus.APPLIED
        assert await store.get_like_by_activity_id(like["id"]) is None

    @pytest.mark.asyncio
    async def test_handler_failure_logged_not_raised(self, inbox, store, alice, bob, monkeypatch):
        """Test a failing handler leaves the ledger entry and reports FAILED."""
        monkeypatch.setattr(store, "create_like", AsyncMock(side_effect=RuntimeError("db down")))

        result = await inbox.receive("bob", like_activity(alice, "post-1"))

        assert result.status == ProcessingStatus.FAILED
        assert result.error == "db down"
        assert await inbox_count(store, bob) == 1


class TestInboxCreate:
    """Tests for Create in the inbox."""

    @pytest.mark.asyncio
    async def test_create_logged_only(self, inbox, store, alice, bob):
        """Test remote posts are stored in the ledger and nowhere else."""
        note = {"id": "https://r/notes/1", "type": "Note", "content": "hello"}
        result = await inbox.receive("bob", wrap(alice, "Create", note))

        assert result.status == ProcessingStatus.STORED
        assert await store.count_posts(alice.id) == 0
        assert await inbox_count(store, bob) == 1


class TestOutboxCreate:
    """Tests for Create in the outbox."""

    @pytest.mark.asyncio
    async def test_create_note(self, outbox, store, alice):
        """Test publishing a Note creates exactly one post."""
        activity = wrap(alice, "Create", {"type": "Note", "content": "hello"})

        result = await outbox.publish("alice", activity)

        assert result.status == ProcessingStatus.APPLIED
        assert result.post_id is not None
        assert await store.count_posts(alice.id) == 1
        items = await outbox_items(store, alice)
        assert items == [activity]

    @pytest.mark.asyncio
    async def test_create_note_unknown_user(self, outbox, store, alice):
        """Test publishing as an unknown user creates nothing."""
        with pytest.raises(ActorNotFound):
            await outbox.publish("nobody", wrap(alice, "Create", {"type": "Note", "content": "hello"}))
        assert await store.count_posts(alice.id) == 0

    @pytest.mark.asyncio
    async def test_create_note_without_content(self, outbox, store, alice):
        """Test a Note must carry content."""
        with pytest.raises(InvalidActivity):
            await outbox.publish("alice", wrap(alice, "Create", {"type": "Note"}))
        assert await store.count_posts(alice.id) == 0
        assert await outbox_items(store, alice) == []

    @pytest.mark.asyncio
    async def test_create_other_object(self, outbox, store, alice):
        """Test non-Note objects are recorded without a post."""
        result = await outbox.publish(
            "alice", wrap(alice, "Create", {"type": "Image", "url": "https://cdn/x.png"})
        )

        assert result.status == ProcessingStatus.STORED
        assert await store.count_posts(alice.id) == 0
        assert len(await outbox_items(store, alice)) == 1


class TestOutboxPublish:
    """Tests for other outbox activity types."""

    @pytest.mark.asyncio
    async def test_unsupported_type(self, outbox, store, alice):
        """Test Announce is refused before anything is written."""
        with pytest.raises(UnsupportedActivityType) as exc_info:
            await outbox.publish("alice", wrap(alice, "Announce", "https://r/notes/1"))

        assert exc_info.value.activity_type == "Announce"
        assert await outbox_items(store, alice) == []
        assert await store.count_posts(alice.id) == 0

    @pytest.mark.asyncio
    async def test_invalid_activity(self, outbox, alice):
        """Test malformed bodies are rejected."""
        with pytest.raises(InvalidActivity):
            await outbox.publish("alice", b"not json")

    @pytest.mark.asyncio
    async def test_non_utf8_body(self, outbox, store, alice):
        """Test a UTF-16 body is rejected and nothing is written."""
        activity = wrap(alice, "Create", {"type": "Note", "content": "hello"})

        with pytest.raises(InvalidActivity):
            await outbox.publish("alice", json.dumps(activity).encode("utf-16"))
        assert await outbox_items(store, alice) == []
        assert await store.count_posts(alice.id) == 0

    @pytest.mark.parametrize("activity_type", ["Follow", "Like", "Undo"])
    @pytest.mark.asyncio
    async def test_ledger_only_types(self, outbox, store, alice, activity_type):
        """Test Follow, Like and Undo are recorded for delivery."""
        result = await outbox.publish("alice", wrap(alice, activity_type, "https://r/x/1"))

        assert result.status == ProcessingStatus.STORED
        items = await outbox_items(store, alice)
        assert [item["type"] for item in items] == [activity_type]

    @pytest.mark.asyncio
    async def test_accept_pending_follow(self, manual_inbox, outbox, store, alice, bob):
        """Test a local actor can approve a pending follow request."""
        follow = follow_activity(alice, bob)
        await manual_inbox.receive("bob", follow)

        result = await outbox.publish("bob", wrap(bob, "Accept", follow))

        assert result.status == ProcessingStatus.APPLIED
        assert (await store.get_follow(alice.id, bob.id)).accepted is True
        assert [item["type"] for item in await outbox_items(store, bob)] == ["Accept"]

    @pytest.mark.asyncio
    async def test_reject_pending_follow(self, manual_inbox, outbox, store, alice, bob):
        """Test a local actor can refuse a pending follow request."""
        follow = follow_activity(alice, bob)
        await manual_inbox.receive("bob", follow)

        await outbox.publish("bob", wrap(bob, "Reject", follow))

        assert await store.get_follow(alice.id, bob.id) is None

    @pytest.mark.asyncio
    async def test_accept_someone_elses_follow(self, manual_inbox, outbox, store, alice, bob):
        """Test only the followed actor can answer a follow request."""
        follow = follow_activity(alice, bob)
        await manual_inbox.receive("bob", follow)

        with pytest.raises(InvalidActivity):
            await outbox.publish("alice", wrap(alice, "Accept", follow))
        assert (await store.get_follow(alice.id, bob.id)).accepted is False

    @pytest.mark.asyncio
    async def test_accept_requires_follow_object(self, outbox, bob):
        """Test Accept must embed a Follow."""
        with pytest.raises(InvalidActivity):
            await outbox.publish("bob", wrap(bob, "Accept", "https://r/follows/1"))
