"""Local identities and WebFinger discovery.

Implements:
- Local user provisioning with RSA key pairs for HTTP signatures
- WebFinger discovery (RFC 7033)
- keyId -> public key resolution for inbox signature checks
"""

import re
from typing import Any

import structlog
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .activitypub_types import AP_CONTENT_TYPE, trailing_segment
from .models import User
from .signatures import key_id_to_actor_url
from .store import DuplicateRecordError, Store

logger = structlog.get_logger()

USERNAME_RE = re.compile(r"^[A-Za-z0-9_]+$")


class IdentityError(Exception):
    """Error while provisioning a local identity."""
    pass


def generate_rsa_keypair() -> tuple[str, str]:
    """Generate RSA key pair for HTTP signatures.

    Returns:
        Tuple of (public_key_pem, private_key_pem)
    """
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
    )

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()

    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()

    return public_pem, private_pem


class IdentityService:
    """Service for local actors and their discovery documents."""

    def __init__(self, store: Store, base_url: str, domain: str):
        """Initialize identity service.

        Args:
            store: Persistence capability
            base_url: ActivityPub server base URL (e.g., https://m2np.com)
            domain: Domain for actor handles (e.g., m2np.com)
        """
        self.store = store
        self.base_url = base_url.rstrip("/")
        self.domain = domain

    def actor_url(self, username: str) -> str:
        return f"{self.base_url}/users/{username}"

    # === Local Actor Management ===

    async def create_user(
        self,
        username: str,
        display_name: str | None = None,
        summary: str | None = None,
        profile_image: str | None = None,
    ) -> User:
        """Create a local actor with a fresh key pair.

        Args:
            username: Unique username ([A-Za-z0-9_]+)
            display_name: Optional display name
            summary: Optional bio
            profile_image: Optional avatar URL

        Returns:
            The stored User

        Raises:
            IdentityError: If the username is invalid or already taken
        """
        if not USERNAME_RE.match(username):
            raise IdentityError(f"Invalid username: {username!r}")

        actor_url = self.actor_url(username)
        public_key_pem, private_key_pem = generate_rsa_keypair()

        try:
            user = await self.store.create_user(
                username=username,
                display_name=display_name,
                summary=summary,
                profile_image=profile_image,
                actor_url=actor_url,
                inbox_url=f"{actor_url}/inbox",
                outbox_url=f"{actor_url}/outbox",
                followers_url=f"{actor_url}/followers",
                following_url=f"{actor_url}/following",
                public_key_pem=public_key_pem,
                private_key_pem=private_key_pem,
            )
        except DuplicateRecordError as e:
            raise IdentityError(f"Username already taken: {username}") from e

        logger.info("Created local actor", username=username, actor_id=actor_url)
        return user

    async def get_user(self, username: str) -> User | None:
        return await self.store.get_user_by_username(username)

    # === WebFinger Support ===

    async def webfinger_lookup(self, resource: str) -> dict[str, Any] | None:
        """Perform WebFinger lookup for a resource.

        Args:
            resource: Resource URI (e.g., acct:alice@m2np.com or an actor URL)

        Returns:
            WebFinger JRD document or None if not found
        """
        if resource.startswith("acct:"):
            acct = resource[5:]
            if "@" not in acct:
                return None
            username, domain = acct.rsplit("@", 1)
            if domain != self.domain:
                return None
        elif resource.startswith(f"{self.base_url}/users/"):
            username = resource[len(f"{self.base_url}/users/"):]
        else:
            return None

        if not username or "/" in username:
            return None

        user = await self.store.get_user_by_username(username)
        if not user:
            return None

        return {
            "subject": f"acct:{user.username}@{self.domain}",
            "aliases": [
                user.actor_url,
            ],
            "links": [
                {
                    "rel": "self",
                    "type": AP_CONTENT_TYPE,
                    "href": user.actor_url,
                },
                {
                    "rel": "http://webfinger.net/rel/profile-page",
                    "type": "text/html",
                    "href": user.actor_url,
                },
            ],
        }

    # === Signature Keys ===

    async def resolve_public_key(self, key_id: str) -> str | None:
        """Resolve a signature keyId to a PEM public key.

        Only keys of local actors resolve; remote actors are not fetched.

        Args:
            key_id: keyId from a Signature header (actor URL + #main-key)

        Returns:
            PEM public key, or None if the key is unknown
        """
        actor_url = key_id_to_actor_url(key_id)
        if not actor_url.startswith(f"{self.base_url}/users/"):
            return None

        user = await self.store.get_user_by_username(trailing_segment(actor_url))
        if not user or user.actor_url != actor_url:
            return None
        return user.public_key_pem
