"""Main entry point for the Plork ActivityPub server.

Implements an aiohttp-based HTTP server with:
- WebFinger endpoint (/.well-known/webfinger)
- Actor endpoints (/users/{username})
- Inbox/Outbox endpoints
- Followers/Following collections
"""

import asyncio
import json
import logging
import signal

import structlog
from aiohttp import web
from sqlalchemy.ext.asyncio import async_sessionmaker

from .activitypub_types import AP_CONTENT_TYPE, JRD_CONTENT_TYPE, LD_CONTENT_TYPE
from .config import PlorkConfig, load_config
from .errors import ActorNotFound, InvalidActivity, SignatureInvalid, UnsupportedActivityType
from .federation import InboxProcessor, OutboxProcessor
from .formatter import format_actor, format_collection, format_ordered_collection, with_context
from .identity import IdentityService
from .models import init_db
from .signatures import key_id_to_actor_url, parse_signature_header, verify_request
from .store import SqlStore

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


class ActivityPubServer:
    """Plork federation server."""

    def __init__(self, config: PlorkConfig):
        """Initialize server.

        Args:
            config: Service configuration
        """
        self.config = config
        self.app = web.Application()
        self.session_maker = None
        self.store = None
        self.identity_service = None
        self.inbox_processor = None
        self.outbox_processor = None

    async def setup(self, session_maker: async_sessionmaker | None = None) -> None:
        """Set up server components.

        Args:
            session_maker: Existing session maker; a database is initialized
                from the config when omitted
        """
        self.session_maker = session_maker or await init_db(self.config.database.url)
        self.store = SqlStore(self.session_maker)

        self.identity_service = IdentityService(
            store=self.store,
            base_url=self.config.activitypub.base_url,
            domain=self.config.activitypub.domain,
        )
        self.inbox_processor = InboxProcessor(
            store=self.store,
            auto_accept_follows=self.config.federation.auto_accept_follows,
            emit_accept_activities=self.config.federation.emit_accept_activities,
        )
        self.outbox_processor = OutboxProcessor(store=self.store)

        self._setup_routes()

        # Store services in app for handlers
        self.app["config"] = self.config
        self.app["store"] = self.store
        self.app["identity"] = self.identity_service
        self.app["inbox"] = self.inbox_processor
        self.app["outbox"] = self.outbox_processor

        logger.info(
            "Server setup complete",
            domain=self.config.activitypub.domain,
            base_url=self.config.activitypub.base_url,
            verify_signatures=self.config.federation.verify_signatures,
        )

    def _setup_routes(self) -> None:
        """Set up HTTP routes."""
        self.app.router.add_get("/.well-known/webfinger", handle_webfinger)

        self.app.router.add_get("/users/{username}", handle_actor)
        self.app.router.add_post("/users/{username}/inbox", handle_inbox)
        self.app.router.add_get("/users/{username}/outbox", handle_outbox)
        self.app.router.add_post("/users/{username}/outbox", handle_outbox_post)
        self.app.router.add_get("/users/{username}/followers", handle_followers)
        self.app.router.add_get("/users/{username}/following", handle_following)

        # Health check
        self.app.router.add_get("/health", handle_health)

    async def run(self) -> None:
        """Run the server."""
        await self.setup()

        runner = web.AppRunner(self.app)
        await runner.setup()

        site = web.TCPSite(
            runner,
            self.config.activitypub.host,
            self.config.activitypub.port,
        )

        await site.start()

        logger.info(
            "Server started",
            host=self.config.activitypub.host,
            port=self.config.activitypub.port,
        )

        # Wait for shutdown signal
        stop_event = asyncio.Event()

        def signal_handler():
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)

        await stop_event.wait()

        logger.info("Shutting down...")
        await runner.cleanup()


def _ap_response(document: dict) -> web.Response:
    return web.json_response(with_context(document), content_type=AP_CONTENT_TYPE)


def _not_found() -> web.Response:
    return web.json_response({"error": "User not found"}, status=404)


async def _check_inbox_signature(request: web.Request, body: bytes) -> None:
    """Check the Signature header against the signer's key and the activity actor.

    Raises:
        SignatureInvalid: If the delivery must be dropped
    """
    params = parse_signature_header(request.headers.get("Signature", ""))
    key_id = params.get("keyId")
    if not key_id:
        raise SignatureInvalid("Missing Signature header")

    public_key_pem = await request.app["identity"].resolve_public_key(key_id)
    if not public_key_pem:
        raise SignatureInvalid(f"Unknown signing key: {key_id}")

    if not verify_request(request, public_key_pem, body=body):
        raise SignatureInvalid(f"Signature does not verify for {key_id}")

    # The signer must be the actor the activity claims
    try:
        actor = json.loads(body).get("actor")
    except (ValueError, AttributeError):
        return
    if isinstance(actor, str) and actor != key_id_to_actor_url(key_id):
        raise SignatureInvalid(f"{key_id} cannot sign for {actor}")


# === Route Handlers ===

async def handle_webfinger(request: web.Request) -> web.Response:
    """Handle WebFinger discovery requests."""
    resource = request.query.get("resource", "")
    if not resource:
        return web.json_response(
            {"error": "Resource parameter is required"},
            status=400,
        )

    result = await request.app["identity"].webfinger_lookup(resource)
    if not result:
        return web.json_response(
            {"error": "Resource not found"},
            status=404,
        )

    return web.json_response(result, content_type=JRD_CONTENT_TYPE)


async def handle_actor(request: web.Request) -> web.Response:
    """Handle actor profile request."""
    username = request.match_info["username"]
    store = request.app["store"]

    user = await request.app["identity"].get_user(username)
    if not user:
        return _not_found()

    # Check Accept header for ActivityPub
    accept = request.headers.get("Accept", "")
    if AP_CONTENT_TYPE in accept or LD_CONTENT_TYPE in accept:
        return _ap_response(format_actor(user))

    followers = await store.get_followers(user.id)
    following = await store.get_following(user.id)
    posts_count = await store.count_posts(user.id)

    return web.json_response({
        "id": user.id,
        "username": user.username,
        "displayName": user.display_name,
        "summary": user.summary,
        "profileImage": user.profile_image,
        "actorUrl": user.actor_url,
        "followersCount": len(followers),
        "followingCount": len(following),
        "postsCount": posts_count,
    })


async def handle_inbox(request: web.Request) -> web.Response:
    """Handle incoming ActivityPub activities."""
    username = request.match_info["username"]
    config = request.app["config"]

    user = await request.app["identity"].get_user(username)
    if not user:
        return _not_found()

    body = await request.read()

    if config.federation.verify_signatures:
        try:
            await _check_inbox_signature(request, body)
        except SignatureInvalid as e:
            logger.info("Rejected inbox delivery", username=username, reason=str(e))
            return web.json_response({"error": "Invalid signature"}, status=401)

    try:
        result = await request.app["inbox"].receive(username, body)
    except ActorNotFound:
        return _not_found()
    except InvalidActivity as e:
        return web.json_response({"error": str(e)}, status=400)
    except Exception as e:
        logger.error("Inbox processing error", username=username, error=str(e), exc_info=True)
        return web.json_response({"error": "Error processing activity"}, status=500)

    logger.info(
        "Received inbox activity",
        username=username,
        activity_type=result.activity_type,
        activity_id=result.activity_id,
        status=result.status.value,
    )
    return web.json_response({"status": "ok"})


async def handle_outbox(request: web.Request) -> web.Response:
    """Handle outbox collection request."""
    username = request.match_info["username"]
    store = request.app["store"]

    user = await store.get_user_by_username(username)
    if not user:
        return _not_found()

    limit = request.app["config"].activitypub.outbox_limit
    items = await store.get_outbox(user.id, limit=limit)
    activities = [json.loads(item.activity_json) for item in items]

    return _ap_response(format_ordered_collection(user.outbox_url, activities))


async def handle_outbox_post(request: web.Request) -> web.Response:
    """Handle an activity published by a local actor."""
    username = request.match_info["username"]
    body = await request.read()

    try:
        await request.app["outbox"].publish(username, body)
    except ActorNotFound:
        return _not_found()
    except UnsupportedActivityType:
        return web.json_response({"error": "Unsupported activity type"}, status=400)
    except InvalidActivity as e:
        return web.json_response({"error": str(e)}, status=400)
    except Exception as e:
        logger.error("Outbox processing error", username=username, error=str(e), exc_info=True)
        return web.json_response({"error": "Error processing activity"}, status=500)

    return web.json_response({"status": "ok"})


async def handle_followers(request: web.Request) -> web.Response:
    """Handle followers collection request."""
    username = request.match_info["username"]
    store = request.app["store"]

    user = await store.get_user_by_username(username)
    if not user:
        return _not_found()

    followers = await store.get_followers(user.id)
    return _ap_response(format_collection(user.followers_url, [f.actor_url for f in followers]))


async def handle_following(request: web.Request) -> web.Response:
    """Handle following collection request."""
    username = request.match_info["username"]
    store = request.app["store"]

    user = await store.get_user_by_username(username)
    if not user:
        return _not_found()

    following = await store.get_following(user.id)
    return _ap_response(format_collection(user.following_url, [f.actor_url for f in following]))


async def handle_health(request: web.Request) -> web.Response:
    """Health check endpoint."""
    return web.json_response({"status": "ok"})


def main() -> None:
    """Main entry point."""
    # Configure standard logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(message)s",
    )

    config = load_config()

    # Set log level from config
    log_level = getattr(logging, config.log_level.upper(), logging.INFO)
    logging.getLogger().setLevel(log_level)

    server = ActivityPubServer(config)

    try:
        asyncio.run(server.run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
