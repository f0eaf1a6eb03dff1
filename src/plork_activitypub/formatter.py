"""Render local state as ActivityPub documents.

All functions are pure: they take already-loaded values and return plain
dicts. ``with_context`` adds the JSON-LD ``@context`` for top-level
responses.
"""

from typing import Any, Iterable

from .activitypub_types import (
    AP_CONTEXT,
    Actor,
    Collection,
    JsonDict,
    OrderedCollection,
    PublicKey,
)
from .models import User


def format_actor(user: User) -> JsonDict:
    """Build the Person document for a local user."""
    icon = None
    if user.profile_image:
        icon = {"type": "Image", "url": user.profile_image}

    actor = Actor(
        id=user.actor_url,
        preferred_username=user.username,
        name=user.display_name or user.username,
        summary=user.summary or "",
        inbox=user.inbox_url,
        outbox=user.outbox_url,
        followers=user.followers_url,
        following=user.following_url,
        public_key=PublicKey(
            id=f"{user.actor_url}#main-key",
            owner=user.actor_url,
            public_key_pem=user.public_key_pem,
        ),
        icon=icon,
    )
    return actor.to_dict()


def format_collection(self_url: str, items: Iterable[str]) -> JsonDict:
    return Collection(id=self_url, items=list(items)).to_dict()


def format_ordered_collection(self_url: str, items: Iterable[Any]) -> JsonDict:
    """Items keep the order given; callers choose oldest- or newest-first."""
    return OrderedCollection(id=self_url, items=list(items)).to_dict()


def with_context(document: JsonDict) -> JsonDict:
    return {"@context": AP_CONTEXT, **document}
