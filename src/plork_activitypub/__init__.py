"""Plork ActivityPub federation core.

This package implements the federation side of the Plork social network:
it receives and publishes ActivityPub activities for local actors and
authenticates server-to-server requests with HTTP Signatures.

Key components:
- activitypub_types: Activity envelope and ActivityPub document types
- config: Pydantic configuration management
- models: SQLAlchemy database models
- store: Persistence capability used by the processors
- signatures: HTTP Signature signing and verification
- federation: Inbox/Outbox processors
- formatter: Actor and collection rendering
- identity: Local actors, WebFinger and signing keys
- main: HTTP server entry point
"""

from .activitypub_types import (
    Activity,
    ActivityType,
    Actor,
    Collection,
    EmbeddedObject,
    ObjectType,
    OrderedCollection,
    PublicKey,
    parse_activity,
)
from .config import (
    ActivityPubConfig,
    DatabaseConfig,
    FederationConfig,
    PlorkConfig,
    load_config,
)
from .errors import (
    ActorNotFound,
    FederationError,
    HandlerFailure,
    InvalidActivity,
    SignatureInvalid,
    UnsupportedActivityType,
)
from .federation import (
    InboxProcessor,
    InboxResult,
    OutboxProcessor,
    OutboxResult,
    ProcessingStatus,
)
from .formatter import format_actor, format_collection, format_ordered_collection
from .identity import IdentityError, IdentityService, generate_rsa_keypair
from .models import Follow, InboxItem, Like, OutboxItem, Post, User, init_db
from .signatures import sign_request, verify_request, verify_signature
from .store import DuplicateRecordError, SqlStore, Store

__version__ = "0.1.0"

__all__ = [
    # Types
    "Activity",
    "ActivityType",
    "Actor",
    "Collection",
    "EmbeddedObject",
    "ObjectType",
    "OrderedCollection",
    "PublicKey",
    "parse_activity",
    # Config
    "ActivityPubConfig",
    "DatabaseConfig",
    "FederationConfig",
    "PlorkConfig",
    "load_config",
    # Errors
    "ActorNotFound",
    "FederationError",
    "HandlerFailure",
    "InvalidActivity",
    "SignatureInvalid",
    "UnsupportedActivityType",
    # Federation
    "InboxProcessor",
    "InboxResult",
    "OutboxProcessor",
    "OutboxResult",
    "ProcessingStatus",
    # Formatter
    "format_actor",
    "format_collection",
    "format_ordered_collection",
    # Identity
    "IdentityError",
    "IdentityService",
    "generate_rsa_keypair",
    # Models
    "Follow",
    "InboxItem",
    "Like",
    "OutboxItem",
    "Post",
    "User",
    "init_db",
    # Signatures
    "sign_request",
    "verify_request",
    "verify_signature",
    # Store
    "DuplicateRecordError",
    "SqlStore",
    "Store",
]
