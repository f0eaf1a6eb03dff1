"""ActivityPub protocol types for the Plork federation core.

This module implements the ActivityPub/ActivityStreams data types the
inbox and outbox processors work with: the activity envelope parsed from
wire JSON, and the actor and collection documents rendered for remote
servers.

References:
- ActivityPub: https://www.w3.org/TR/activitypub/
- ActivityStreams 2.0: https://www.w3.org/TR/activitystreams-core/
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeAlias

from .errors import InvalidActivity

# JSON-LD contexts for ActivityPub
ACTIVITY_STREAMS_CONTEXT = "https://www.w3.org/ns/activitystreams"
SECURITY_CONTEXT = "https://w3id.org/security/v1"

# Standard ActivityPub context
AP_CONTEXT: list[str | dict] = [
    ACTIVITY_STREAMS_CONTEXT,
    SECURITY_CONTEXT,
]

# Content types
AP_CONTENT_TYPE = "application/activity+json"
LD_CONTENT_TYPE = "application/ld+json"
JRD_CONTENT_TYPE = "application/jrd+json"

# Type aliases
JsonDict: TypeAlias = dict[str, Any]


class ActivityType(str, Enum):
    """Activity types the processors recognize."""
    CREATE = "Create"
    FOLLOW = "Follow"
    ACCEPT = "Accept"
    REJECT = "Reject"
    LIKE = "Like"
    UNDO = "Undo"
    ANNOUNCE = "Announce"
    DELETE = "Delete"


class ObjectType(str, Enum):
    """ActivityPub object types."""
    PERSON = "Person"
    NOTE = "Note"
    IMAGE = "Image"
    COLLECTION = "Collection"
    ORDERED_COLLECTION = "OrderedCollection"


def _activity_type(value: str) -> ActivityType | None:
    try:
        return ActivityType(value)
    except ValueError:
        return None


@dataclass
class EmbeddedObject:
    """An object carried inline in an activity (Note, Follow, Like, ...).

    Nested documents come from the remote server as-is; only ``id``,
    ``type`` and ``content`` are pulled out, the rest stays in ``raw``.
    """
    id: str | None
    type: str
    raw: JsonDict
    content: str | None = None

    @classmethod
    def from_dict(cls, data: JsonDict) -> "EmbeddedObject":
        obj_id = data.get("id")
        obj_type = data.get("type")
        content = data.get("content")
        return cls(
            id=obj_id if isinstance(obj_id, str) else None,
            type=obj_type if isinstance(obj_type, str) else "",
            raw=data,
            content=content if isinstance(content, str) else None,
        )


@dataclass
class Activity:
    """Parsed activity envelope.

    ``type`` is the wire string; ``activity_type`` is the recognized enum
    member, or None for types this server does not know (the raw payload
    is still kept for the ledger).
    """
    id: str
    type: str
    actor: str
    object: str | EmbeddedObject
    raw: JsonDict = field(default_factory=dict)

    @property
    def activity_type(self) -> ActivityType | None:
        return _activity_type(self.type)

    @property
    def object_id(self) -> str | None:
        """ID of the object, whether embedded or referenced by URI."""
        if isinstance(self.object, EmbeddedObject):
            return self.object.id
        return self.object

    @property
    def object_type(self) -> str | None:
        """Type of an embedded object; None for bare URI references."""
        if isinstance(self.object, EmbeddedObject):
            return self.object.type
        return None

    def to_json(self) -> str:
        """Serialize the verbatim wire document."""
        return json.dumps(self.raw)


def parse_activity(data: JsonDict | str | bytes) -> Activity:
    """Parse an Activity from wire JSON.

    Args:
        data: Activity document, either decoded or as a JSON string/bytes

    Returns:
        Activity instance

    Raises:
        InvalidActivity: If the JSON is malformed or id/type/actor/object
            are missing
    """
    if isinstance(data, (str, bytes, bytearray)):
        try:
            if not isinstance(data, str):
                data = data.decode("utf-8")
            data = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidActivity(f"Activity is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise InvalidActivity("Activity must be a JSON object")

    for name in ("id", "type", "actor"):
        value = data.get(name)
        if not isinstance(value, str) or not value:
            raise InvalidActivity(f"Activity is missing required field '{name}'")

    obj = data.get("object")
    if isinstance(obj, dict):
        activity_object: str | EmbeddedObject = EmbeddedObject.from_dict(obj)
    elif isinstance(obj, str) and obj:
        activity_object = obj
    else:
        raise InvalidActivity("Activity is missing required field 'object'")

    return Activity(
        id=data["id"],
        type=data["type"],
        actor=data["actor"],
        object=activity_object,
        raw=data,
    )


def create_activity(
    actor_url: str,
    activity_type: ActivityType,
    activity_object: str | JsonDict,
    activity_id: str | None = None,
) -> JsonDict:
    """Create an activity document authored by a local actor.

    Args:
        actor_url: Actor performing the activity
        activity_type: Type of activity
        activity_object: Object ID or inline object
        activity_id: Optional activity ID (generated under the actor if not provided)

    Returns:
        Activity document ready for the outbox ledger
    """
    if not activity_id:
        activity_id = f"{actor_url}/activities/{uuid.uuid4()}"

    return {
        "@context": AP_CONTEXT,
        "id": activity_id,
        "type": activity_type.value,
        "actor": actor_url,
        "object": activity_object,
        "published": datetime.now(timezone.utc).isoformat(),
    }


def trailing_segment(uri: str) -> str:
    """Last path segment of a URI (https://x/users/alice -> alice)."""
    return uri.rstrip("/").rsplit("/", 1)[-1]


@dataclass
class PublicKey:
    """RSA public key for HTTP signatures."""
    id: str  # e.g., https://m2np.com/users/alice#main-key
    owner: str  # Actor ID
    public_key_pem: str

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        return {
            "id": self.id,
            "owner": self.owner,
            "publicKeyPem": self.public_key_pem,
        }


@dataclass
class Actor:
    """ActivityPub Actor (Person) for a local user."""
    id: str  # https://m2np.com/users/alice
    preferred_username: str = ""
    name: str = ""  # Display name
    summary: str = ""  # Bio/about
    inbox: str = ""
    outbox: str = ""
    followers: str = ""
    following: str = ""
    public_key: PublicKey | None = None
    icon: JsonDict | None = None  # Avatar
    type: ObjectType = ObjectType.PERSON

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        actor = {
            "id": self.id,
            "type": self.type.value,
            "preferredUsername": self.preferred_username,
            "name": self.name or self.preferred_username,
            "summary": self.summary,
            "inbox": self.inbox,
            "outbox": self.outbox,
            "followers": self.followers,
            "following": self.following,
        }

        if self.icon:
            actor["icon"] = self.icon

        if self.public_key:
            actor["publicKey"] = self.public_key.to_dict()

        return actor


@dataclass
class Collection:
    """Unordered collection of actor URIs (followers/following)."""
    id: str
    items: list[str] = field(default_factory=list)

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        return {
            "id": self.id,
            "type": ObjectType.COLLECTION.value,
            "totalItems": len(self.items),
            "items": list(self.items),
        }


@dataclass
class OrderedCollection:
    """OrderedCollection of activity documents (outbox)."""
    id: str
    items: list[JsonDict] = field(default_factory=list)

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        return {
            "id": self.id,
            "type": ObjectType.ORDERED_COLLECTION.value,
            "totalItems": len(self.items),
            "orderedItems": list(self.items),
        }
