"""Main entry point for the Matrix <-> Twitter bridge.

Runs the application service HTTP server (transactions, alias and user
queries from the homeserver, provisioning API) and the background timers
that poll Twitter and deliver tweets.
"""

import asyncio
import logging
import signal
from datetime import datetime, timezone
from typing import Any

import structlog
from aiohttp import web

from .client_factory import ClientFactory
from .config import BridgeConfig, load_config
from .dedup import DedupCache
from .direct_message import DirectMessage
from .errors import ValidationError
from .handlers import (
    AccountServicesHandler,
    DirectMessageHandler,
    HashtagHandler,
    TimelineHandler,
)
from .identity import IdentityService
from .matrix import AppserviceRuntime, MatrixRoom, RemoteRoom, notify_matrix_user
from .matrix import upload_content_from_url
from .models import init_db
from .outbound import OutboundRouter
from .pipeline import TweetPipeline
from .profile import TwitterProfile, full_size_avatar
from .router import RoomTypeRouter
from .scheduler import FeedScheduler
from .storage import BridgeStore, SqlRoomStore
from .stream import UserStream
from .util import is_str_integer, is_twitter_screenname

logger = structlog.get_logger()

# Processed transaction ids kept to ignore homeserver retries
MAX_SEEN_TRANSACTIONS = 1000


class TwitterBridge:
    """Main bridge application."""

    def __init__(self, config: BridgeConfig):
        """Initialize bridge.

        Args:
            config: Bridge configuration
        """
        self.config = config
        self.session_maker = None
        self.store = None
        self.runtime = None
        self.client_factory = None
        self.profile = None
        self.pipeline = None
        self.scheduler = None
        self.direct_messages = None
        self.user_stream = None
        self.identity = None
        self.outbound = None
        self.router = None
        self.app = None
        self._running = False
        self._seen_transactions: list[str] = []

    async def setup(self) -> None:
        """Initialize database, clients and services."""
        config = self.config
        self.session_maker = await init_db(config.database.url)
        self.store = BridgeStore(self.session_maker)

        self.runtime = AppserviceRuntime(
            homeserver_url=config.matrix.homeserver_url,
            domain=config.matrix.domain,
            as_token=config.matrix.as_token,
            sender_localpart=config.matrix.sender_localpart,
            user_prefix=config.matrix.user_prefix,
            room_store=SqlRoomStore(self.session_maker),
        )

        self.client_factory = ClientFactory(config.twitter, self.store)
        self.profile = TwitterProfile(
            runtime=self.runtime,
            store=self.store,
            client_factory=self.client_factory,
            displayname_format=config.displayname_format,
            enable_profile_images=config.media.enable_profile_images,
        )
        self.client_factory.profile = self.profile

        # Shared by inbound delivery and outbound posting
        dedup = DedupCache()
        self.pipeline = TweetPipeline(
            runtime=self.runtime,
            store=self.store,
            client_factory=self.client_factory,
            profile=self.profile,
            dedup=dedup,
            enable_media=config.media.enable_download,
            user_prefix=config.matrix.user_prefix,
        )
        self.scheduler = FeedScheduler(
            timelines_config=config.timelines,
            hashtags_config=config.hashtags,
            store=self.store,
            client_factory=self.client_factory,
            pipeline=self.pipeline,
            runtime=self.runtime,
            member_check_interval=config.matrix.member_check_interval_seconds,
        )
        self.direct_messages = DirectMessage(
            self.runtime, self.store, self.client_factory, self.profile
        )
        self.user_stream = UserStream(
            client_factory=self.client_factory,
            store=self.store,
            pipeline=self.pipeline,
            direct_messages=self.direct_messages,
            notify=self._notify_user,
        )
        self.identity = IdentityService(self.store, self.client_factory, self.user_stream)
        self.outbound = OutboundRouter(
            runtime=self.runtime,
            store=self.store,
            client_factory=self.client_factory,
            profile=self.profile,
            dedup=dedup,
            max_tweet_length=config.twitter.max_tweet_length,
            max_tweet_chain=config.twitter.max_tweet_chain,
        )

        prefix = config.matrix.user_prefix
        self.router = RoomTypeRouter(
            runtime=self.runtime,
            services=AccountServicesHandler(
                self.runtime, self.store, self.identity, self.profile, self.scheduler,
                self.user_stream,
            ),
            timeline=TimelineHandler(
                self.runtime, self.store, self.scheduler, self.profile, self.outbound,
                self.user_stream, alias_prefix=prefix,
            ),
            hashtag=HashtagHandler(self.runtime, self.scheduler, self.outbound, alias_prefix=prefix),
            direct_message=DirectMessageHandler(self.runtime, self.direct_messages),
            alias_prefix=prefix,
        )

        logger.info("Bridge initialized")

    async def _notify_user(self, user_id: str, message: str) -> bool:
        return await notify_matrix_user(self.runtime, user_id, message)

    async def restore_rooms(self) -> int:
        """Resume polling for every bridged room found in the room store.

        Returns:
            Number of feeds registered
        """
        room_store = self.runtime.room_store
        registered = 0
        for entry in await room_store.get_entries_by_matrix_room_data({}):
            twitter_type = entry.remote.twitter_type
            room_id = entry.matrix.room_id
            try:
                if twitter_type == "timeline":
                    if self.scheduler.add_timeline(
                        entry.remote.get("twitter_user"),
                        room_id,
                        exclude_replies=bool(entry.remote.get("twitter_exclude_replies")),
                    ):
                        registered += 1
                elif twitter_type == "hashtag":
                    hashtag = entry.remote.get("twitter_hashtag") or entry.remote.room_id[len("hashtag_"):]
                    if self.scheduler.add_hashtag(hashtag, room_id):
                        registered += 1
                elif twitter_type == "user_timeline" and entry.remote.get("twitter_bidirectional") is not True:
                    # Older personal timeline rooms were created one-way
                    entry.remote.set("twitter_bidirectional", True)
                    await room_store.upsert_entry(entry)
            except ValidationError as e:
                logger.warning("Skipping invalid bridged room", room_id=room_id, error=str(e))
        logger.info("Restored bridged rooms", feeds=registered)
        return registered

    async def start(self) -> None:
        """Register the bot, restore rooms and start the timers."""
        try:
            await self.runtime.get_intent().ensure_registered()
        except Exception as e:
            logger.error("Failed to register bot user", error=str(e))

        await self.restore_rooms()
        self.pipeline.start()
        if self.config.timelines.enable:
            self.scheduler.start_timeline()
        if self.config.hashtags.enable:
            self.scheduler.start_hashtag()
        self.scheduler.start_member_checker()
        self.user_stream.start()
        await self.user_stream.attach_all()

    async def cleanup(self) -> None:
        """Clean up resources."""
        self._running = False

        if self.scheduler:
            self.scheduler.stop_all()
        if self.pipeline and self.pipeline.running:
            self.pipeline.stop()
        if self.user_stream:
            await self.user_stream.stop()
        if self.client_factory:
            await self.client_factory.close()
        if self.runtime:
            await self.runtime.close()

        logger.info("Bridge cleaned up")

    # === Application service API ===

    def _authorized(self, request: web.Request) -> bool:
        token = request.query.get("access_token")
        header = request.headers.get("Authorization", "")
        if header.startswith("Bearer "):
            token = header[len("Bearer "):]
        return bool(token) and token == self.config.matrix.hs_token

    @staticmethod
    def _forbidden() -> web.Response:
        return web.json_response(
            {"errcode": "M_FORBIDDEN", "error": "Bad token supplied"}, status=403
        )

    def _mark_transaction(self, txn_id: str) -> bool:
        """Remember a transaction id; False if it was already processed."""
        if txn_id in self._seen_transactions:
            return False
        self._seen_transactions.append(txn_id)
        if len(self._seen_transactions) > MAX_SEEN_TRANSACTIONS:
            del self._seen_transactions[:MAX_SEEN_TRANSACTIONS // 10]
        return True

    async def handle_transaction(self, request: web.Request) -> web.Response:
        """Events pushed by the homeserver.

        PUT /_matrix/app/v1/transactions/{txn_id}
        """
        if not self._authorized(request):
            return self._forbidden()
        txn_id = request.match_info["txn_id"]
        if not self._mark_transaction(txn_id):
            logger.debug("Ignoring repeated transaction", txn_id=txn_id)
            return web.json_response({})

        try:
            data = await request.json()
        except ValueError:
            return web.json_response(
                {"errcode": "M_NOT_JSON", "error": "Body is not JSON"}, status=400
            )

        for event in data.get("events", []):
            try:
                await self.router.on_event(event)
            except Exception as e:
                logger.error(
                    "Failed to handle event",
                    event_id=event.get("event_id"),
                    room_id=event.get("room_id"),
                    error=str(e),
                )
        return web.json_response({})

    async def handle_room_query(self, request: web.Request) -> web.Response:
        """Create the room behind an alias in the bridge's namespace.

        GET /_matrix/app/v1/rooms/{alias}
        """
        if not self._authorized(request):
            return self._forbidden()
        alias = request.match_info["alias"]
        localpart = alias.lstrip("#").split(":", 1)[0]

        try:
            provisioned = await self.router.on_alias_query(localpart)
            if provisioned is None:
                return web.json_response({"errcode": "M_NOT_FOUND"}, status=404)
            room_id = await self.runtime.get_intent().create_room(provisioned.creation_opts)
            await self.router.on_room_created(alias, room_id, provisioned)
        except Exception as e:
            logger.error("Couldn't provision room for alias", alias=alias, error=str(e))
            return web.json_response({"errcode": "M_UNKNOWN", "error": str(e)}, status=500)

        logger.info("Provisioned room for alias", alias=alias, room_id=room_id)
        return web.json_response({})

    async def handle_user_query(self, request: web.Request) -> web.Response:
        """Create the ghost of a Twitter user.

        GET /_matrix/app/v1/users/{user_id}
        """
        if not self._authorized(request):
            return self._forbidden()
        user_id = request.match_info["user_id"]
        localpart = user_id.lstrip("@").split(":", 1)[0]
        twitter_id = localpart[len(self.config.matrix.user_prefix):]
        if not localpart.startswith(self.config.matrix.user_prefix) or not is_str_integer(twitter_id):
            return web.json_response({"errcode": "M_NOT_FOUND"}, status=404)

        try:
            profile = await self.profile.get_by_id(twitter_id)
            if profile is None:
                return web.json_response({"errcode": "M_NOT_FOUND"}, status=404)
            intent = self.runtime.get_twitter_intent(twitter_id)
            await intent.ensure_registered()
            await intent.set_display_name(self.profile.format_displayname(profile))
            image = profile.get("profile_image_url_https")
            if image and self.config.media.enable_profile_images:
                uploaded = await upload_content_from_url(intent, full_size_avatar(image))
                await intent.set_avatar_url(uploaded.mxc_url)
        except Exception as e:
            logger.error("Couldn't find the user", user_id=user_id, error=str(e))
            return web.json_response({"errcode": "M_NOT_FOUND"}, status=404)
        return web.json_response({})

    # === Provisioning API ===

    async def _resolve_feed(self, data: dict[str, Any]) -> tuple[str, str]:
        """Feed kind and id named by a provisioning request.

        Raises:
            ValidationError: If the request names no valid feed
        """
        if data.get("hashtag"):
            return "hashtag", str(data["hashtag"]).lstrip("#")
        if data.get("twitter_id"):
            return "timeline", str(data["twitter_id"])
        screen_name = str(data.get("screen_name") or "").lstrip("@")
        if screen_name:
            if not is_twitter_screenname(screen_name):
                raise ValidationError(f"Invalid screen name: {screen_name!r}")
            profile = await self.profile.get_by_screenname(screen_name)
            if profile is None:
                raise ValidationError(f"Twitter user @{screen_name} not found")
            return "timeline", profile["id_str"]
        raise ValidationError("hashtag, twitter_id or screen_name is required")

    async def handle_provision_link(self, request: web.Request) -> web.Response:
        """Bridge a room to a timeline or hashtag.

        POST /_matrix/provision/link
        Body: {"room_id": "!..", "twitter_id" | "screen_name" | "hashtag": ".."}
        """
        try:
            data = await request.json()
            room_id = data.get("room_id")
            kind, feed = await self._resolve_feed(data)
            if kind == "hashtag":
                added = self.scheduler.add_hashtag(feed, room_id, is_new=True)
                remote = RemoteRoom(f"hashtag_{feed}", {
                    "twitter_type": "hashtag",
                    "twitter_hashtag": feed,
                    "twitter_bidirectional": False,
                })
            else:
                added = self.scheduler.add_timeline(feed, room_id, is_new=True)
                remote = RemoteRoom(f"timeline_{feed}", {
                    "twitter_type": "timeline",
                    "twitter_user": feed,
                    "twitter_exclude_replies": False,
                    "twitter_bidirectional": False,
                })
            if not added:
                return web.json_response({"error": f"Bridging {kind}s is disabled"}, status=403)
            await self.runtime.get_intent().join(room_id)
            await self.runtime.room_store.link_rooms(MatrixRoom(room_id), remote)
        except ValidationError as e:
            return web.json_response({"error": str(e)}, status=400)
        except ValueError:
            return web.json_response({"error": "Body is not JSON"}, status=400)
        except Exception as e:
            logger.error("Provisioning link failed", error=str(e))
            return web.json_response({"error": str(e)}, status=500)

        logger.info("Provisioned link", room_id=room_id, kind=kind, feed=feed)
        return web.json_response({"success": True, "room_id": room_id, kind: feed})

    async def handle_provision_unlink(self, request: web.Request) -> web.Response:
        """Remove a room's link to a timeline or hashtag.

        POST /_matrix/provision/unlink
        Body: {"room_id": "!..", "twitter_id" | "screen_name" | "hashtag": ".."}
        """
        try:
            data = await request.json()
            room_id = data.get("room_id")
            kind, feed = await self._resolve_feed(data)
            if kind == "hashtag":
                removed = self.scheduler.remove_hashtag(feed, room_id)
                remote_id = f"hashtag_{feed}"
            else:
                removed = self.scheduler.remove_timeline(feed, room_id)
                remote_id = f"timeline_{feed}"
            await self.runtime.room_store.remove_link(room_id, remote_id)
        except ValidationError as e:
            return web.json_response({"error": str(e)}, status=400)
        except ValueError:
            return web.json_response({"error": "Body is not JSON"}, status=400)
        except Exception as e:
            logger.error("Provisioning unlink failed", error=str(e))
            return web.json_response({"error": str(e)}, status=500)

        if not removed:
            return web.json_response({"error": "No such link"}, status=404)
        return web.json_response({"success": True})

    async def handle_health(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        GET /health
        """
        running = bool(self.pipeline and self.pipeline.running)
        return web.json_response({
            "status": "healthy" if running else "degraded",
            "pipeline_running": running,
            "queued_batches": len(self.pipeline.msg_queue) if self.pipeline else 0,
            "timelines": len(self.scheduler.timelines) if self.scheduler else 0,
            "hashtags": len(self.scheduler.hashtags) if self.scheduler else 0,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    # === Server Setup ===

    def create_app(self) -> web.Application:
        """Create aiohttp web application."""
        app = web.Application()

        for prefix in ("/_matrix/app/v1", ""):
            app.router.add_put(f"{prefix}/transactions/{{txn_id}}", self.handle_transaction)
            app.router.add_get(f"{prefix}/rooms/{{alias}}", self.handle_room_query)
            app.router.add_get(f"{prefix}/users/{{user_id}}", self.handle_user_query)
        if self.config.server.provisioning_enabled:
            app.router.add_post("/_matrix/provision/link", self.handle_provision_link)
            app.router.add_post("/_matrix/provision/unlink", self.handle_provision_unlink)
        app.router.add_get("/health", self.handle_health)

        return app

    async def run(self) -> None:
        """Run the bridge server."""
        await self.setup()
        self._running = True

        self.app = self.create_app()

        runner = web.AppRunner(self.app)
        await runner.setup()
        site = web.TCPSite(
            runner,
            self.config.server.host,
            self.config.server.port,
        )
        await site.start()

        logger.info(
            "Bridge server started",
            host=self.config.server.host,
            port=self.config.server.port,
        )

        await self.start()

        # Wait for shutdown signal
        try:
            while self._running:
                await asyncio.sleep(1)
        finally:
            await self.cleanup()
            await runner.cleanup()


async def async_main(config: BridgeConfig | None = None) -> None:
    """Async main entry point."""
    if config is None:
        config = load_config()

    # Configure logging
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, config.log_level.upper(), logging.INFO)
        ),
    )

    bridge = TwitterBridge(config)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    def shutdown():
        bridge._running = False

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown)

    await bridge.run()


def main() -> None:
    """Main entry point."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
