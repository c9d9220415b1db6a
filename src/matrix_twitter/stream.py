"""Live user streams.

Stream payloads are turned into one of a closed set of event types as soon
as they leave the client; ``UserStream`` supervises one stream per linked
user and reattaches with backoff when a stream fails.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from .twitter_client import DirectMessage, Tweet

logger = structlog.get_logger()

# Seconds
STREAM_RETRY_INTERVAL = 5.0
BACKOFF_NOTIFY_USER_AT = 2 * 60.0
STREAM_LOCKOUT_RETRY_INTERVAL = 60 * 60.0
# Twitter sends a keepalive every 30s
STREAM_CONCERN_TIMER = 40 * 60.0
TWEET_REPLY_MAX_DEPTH = 0

DISCONNECT_DUPLICATE_STREAM = 2
DISCONNECT_TOKEN_REVOKED = 6

MSG_DISRUPTED = "We had an issue connecting to your Twitter account. Services may be distrupted"
MSG_TOKEN_REVOKED = (
    "Your Twitter access token was revoked, so your timeline is no longer bridged. "
    "Link your account again to restore it."
)


@dataclass
class TweetEvent:
    tweet: Tweet


@dataclass
class DirectMessageEvent:
    message: DirectMessage


@dataclass
class WarningEvent:
    code: str
    message: str


@dataclass
class DisconnectEvent:
    code: int
    reason: str


@dataclass
class OtherEvent:
    kind: str
    data: dict[str, Any] = field(default_factory=dict, repr=False)


StreamEvent = TweetEvent | DirectMessageEvent | WarningEvent | DisconnectEvent | OtherEvent


def parse_stream_message(data: dict[str, Any]) -> StreamEvent:
    """Classify a decoded stream message."""
    if "direct_message" in data:
        return DirectMessageEvent(DirectMessage.from_api(data["direct_message"]))
    if "warning" in data:
        warning = data["warning"]
        return WarningEvent(code=str(warning.get("code", "")), message=warning.get("message", ""))
    if "disconnect" in data:
        disconnect = data["disconnect"]
        return DisconnectEvent(
            code=int(disconnect.get("code", 0)),
            reason=disconnect.get("reason", ""),
        )
    # Tweets are the only payloads with an id at the top level
    if "id" in data or "id_str" in data:
        return TweetEvent(Tweet.from_api(data))
    if "event" in data:
        return OtherEvent(kind=str(data["event"]), data=data)
    return OtherEvent(kind=",".join(sorted(data.keys())), data=data)


class UserStream:
    """Keeps a live stream open for every linked user."""

    def __init__(
        self,
        client_factory,
        store,
        pipeline,
        direct_messages,
        notify: Callable[[str, str], Awaitable[Any]],
    ):
        """Initialize stream supervisor.

        Args:
            client_factory: ClientFactory for per-user clients
            store: BridgeStore
            pipeline: TweetPipeline receiving stream tweets
            direct_messages: DirectMessage handler receiving stream DMs
            notify: Coroutine function sending a notice to a Matrix user
        """
        self.client_factory = client_factory
        self.store = store
        self.pipeline = pipeline
        self.direct_messages = direct_messages
        self.notify = notify
        self._streams: dict[str, asyncio.Task | None] = {}
        self._backoff: dict[str, float] = {}
        self._keepalive: dict[str, float] = {}
        self._retries: dict[str, asyncio.Task] = {}
        self._keepalive_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

    def start(self) -> None:
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())

    async def stop(self) -> None:
        if self._keepalive_task:
            self._keepalive_task.cancel()
            self._keepalive_task = None
        for task in self._retries.values():
            task.cancel()
        self._retries.clear()
        self.detach_all()

    def is_attached(self, user_id: str) -> bool:
        return user_id in self._streams

    async def attach_all(self) -> None:
        logger.info("Attaching streams of all linked users")
        for user_id in await self.store.get_linked_user_ids():
            await self.attach(user_id)

    async def attach(self, user_id: str) -> bool:
        """Start reading a user's stream.

        Returns:
            True if a stream task was started
        """
        if user_id in self._streams:
            logger.warning("Not attaching stream, one is already connected", user_id=user_id)
            return False

        # Placeholder blocks a concurrent attach while we look things up
        self._streams[user_id] = None
        try:
            client = await self.client_factory.get_client(user_id)
            room = await self.store.get_timeline_room(user_id)
        except Exception as e:
            self._streams.pop(user_id, None)
            logger.error("Stream could not be attached", user_id=user_id, error=str(e))
            return False

        if room is None:
            self._streams.pop(user_id, None)
            logger.error("User has no timeline room, stream not attached", user_id=user_id)
            return False

        self._keepalive[user_id] = time.monotonic()
        self._streams[user_id] = asyncio.create_task(self._run(user_id, client, room))
        logger.info("Attached stream", user_id=user_id)
        return True

    def detach(self, user_id: str) -> None:
        task = self._streams.pop(user_id, None)
        self._keepalive.pop(user_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        if task is not None:
            logger.info("Detached stream", user_id=user_id)

    def detach_all(self) -> None:
        for user_id in list(self._streams):
            self.detach(user_id)

    def _touch(self, user_id: str) -> None:
        self._keepalive[user_id] = time.monotonic()

    async def _run(self, user_id: str, client, room) -> None:
        try:
            async for event in client.stream_user(
                with_=room.with_filter,
                replies=room.replies,
                on_keepalive=lambda: self._touch(user_id),
            ):
                self._backoff.pop(user_id, None)
                self._touch(user_id)
                if not await self._on_event(user_id, client, event):
                    return
            logger.info("Stream ended", user_id=user_id)
            self._on_error("stream ended", user_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._on_error(e, user_id)

    async def _on_event(self, user_id: str, client, event: StreamEvent) -> bool:
        """Handle one stream event.

        Returns:
            False if the stream must not be read any further
        """
        if isinstance(event, DirectMessageEvent):
            await self.direct_messages.process_dm(event.message)
        elif isinstance(event, WarningEvent):
            logger.warning(
                "Warning from user stream",
                user_id=user_id,
                code=event.code,
                message=event.message,
            )
        elif isinstance(event, DisconnectEvent):
            self._handle_disconnect(user_id, event)
            return False
        elif isinstance(event, TweetEvent):
            await self._process_tweet(user_id, client, event.tweet)
        else:
            logger.debug("Unhandled stream event", user_id=user_id, kind=event.kind)
        return True

    async def _process_tweet(self, user_id: str, client, tweet: Tweet) -> None:
        room = await self.store.get_timeline_room(user_id)
        if room is None:
            logger.debug("No timeline room for stream tweet", user_id=user_id)
            return
        try:
            await self.pipeline.process(
                room.room_id, tweet, depth=TWEET_REPLY_MAX_DEPTH, client=client
            )
        except Exception as e:
            logger.error(
                "Could not bridge stream tweet",
                user_id=user_id,
                tweet_id=tweet.id,
                error=str(e),
            )

    def _on_error(self, error, user_id: str) -> None:
        backoff = 2 * self._backoff.get(user_id, STREAM_RETRY_INTERVAL / 2)
        self._backoff[user_id] = backoff
        if backoff >= BACKOFF_NOTIFY_USER_AT:
            self._spawn(self.notify(
                user_id,
                "Currently experiencing connection issues with Twitter. "
                f"Will retry to connect in {int(backoff)} seconds. "
                "If this continues, notify the bridge maintainer.",
            ))
        self.detach(user_id)
        self._schedule_attach(user_id, backoff)
        logger.error("Stream failed, detaching", user_id=user_id, error=str(error), retry_in=backoff)

    def _handle_disconnect(self, user_id: str, event: DisconnectEvent) -> None:
        self.detach(user_id)
        if event.code == DISCONNECT_DUPLICATE_STREAM:
            logger.error(
                "Disconnected for too many duplicate streams",
                user_id=user_id,
                reason=event.reason,
            )
            self._schedule_attach(user_id, STREAM_LOCKOUT_RETRY_INTERVAL)
            self._spawn(self.notify(user_id, MSG_DISRUPTED))
        elif event.code == DISCONNECT_TOKEN_REVOKED:
            logger.error("Token revoked, not reattaching", user_id=user_id, reason=event.reason)
            self._spawn(self.notify(user_id, MSG_TOKEN_REVOKED))
        else:
            logger.warning(
                "Stream disconnected, restarting",
                user_id=user_id,
                code=event.code,
                reason=event.reason,
            )
            self._schedule_attach(user_id, STREAM_RETRY_INTERVAL)

    def _schedule_attach(self, user_id: str, delay: float) -> None:
        previous = self._retries.pop(user_id, None)
        if previous is not None:
            previous.cancel()

        async def reattach():
            await asyncio.sleep(delay)
            self._retries.pop(user_id, None)
            await self.attach(user_id)

        self._retries[user_id] = asyncio.create_task(reattach())

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(STREAM_CONCERN_TIMER)
            logger.debug("Checking stream keepalives")
            self.check_keepalives()

    def check_keepalives(self, now: float | None = None) -> list[str]:
        """Restart streams that have been silent for too long.

        Returns:
            Users whose stream was restarted
        """
        now = time.monotonic() if now is None else now
        expired = [
            user_id for user_id, last in self._keepalive.items()
            if now - last > STREAM_CONCERN_TIMER
        ]
        for user_id in expired:
            logger.warning("Stream stopped responding, restarting", user_id=user_id)
            self._on_error("keepalive expired", user_id)
        return expired
