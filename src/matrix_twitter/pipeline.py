"""Tweet processing pipeline.

Turns tweets into Matrix messages: resolves reply chains, drops duplicates,
uploads photos and queues the resulting batches in chronological order. A
drain timer sends the oldest batch every ``queue_interval`` seconds.
"""

import asyncio
import bisect
import html
import mimetypes
import time
from dataclasses import dataclass, field
from typing import Any

import structlog

from .dedup import DedupCache
from .errors import ChainResolutionError, RemoteUnavailable
from .matrix import upload_content_from_url
from .twitter_client import Media, Tweet, TwitterApiError
from .util import expand_urls

logger = structlog.get_logger()

TWITTER_MSG_QUEUE_INTERVAL = 0.15
MSG_QUEUE_LAGGING_THRESHOLD = 50
DEFAULT_TWEET_DEPTH = 1
MAX_CONCURRENT_TWEETS = 8


@dataclass
class QueuedDelivery:
    """One Matrix event waiting to be sent."""
    user_localpart: str
    room_id: str
    time: int
    event_type: str
    content: dict[str, Any]


@dataclass
class Batch:
    """All messages derived from one tweet, delivered together."""
    time: int
    order: int
    messages: list[QueuedDelivery] = field(default_factory=list)

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.time, self.order)


@dataclass
class ProcessResult:
    """Outcome of handing a page of tweets to the pipeline."""
    queued: int = 0
    failed: list[Tweet] = field(default_factory=list)


def _tweet_order(tweet_id: str) -> int:
    return int(tweet_id) if tweet_id.isdigit() else 0


class TweetPipeline:
    """Resolves tweets and delivers them to rooms in timestamp order."""

    def __init__(
        self,
        runtime,
        store,
        client_factory,
        profile=None,
        dedup: DedupCache | None = None,
        enable_media: bool = True,
        user_prefix: str = "_twitter_",
        queue_interval: float = TWITTER_MSG_QUEUE_INTERVAL,
    ):
        """Initialize pipeline.

        Args:
            runtime: BridgeRuntime used to send events and upload media
            store: BridgeStore recording bridged events
            client_factory: ClientFactory providing the default client
            profile: TwitterProfile refreshed for every tweet author
            dedup: Per-room cache of recently bridged texts
            enable_media: Upload attached photos
            user_prefix: Localpart prefix of ghost users
            queue_interval: Seconds between two queue drains
        """
        self.runtime = runtime
        self.store = store
        self.client_factory = client_factory
        self.profile = profile
        self.dedup = dedup or DedupCache()
        self.enable_media = enable_media
        self.user_prefix = user_prefix
        self.queue_interval = queue_interval
        self.msg_queue: list[Batch] = []
        self._drain_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

    # === Lifecycle ===

    def start(self) -> None:
        if self._drain_task is not None:
            logger.warning("Tweet pipeline already running")
            return
        self._drain_task = asyncio.create_task(self._drain_loop())

    def stop(self) -> None:
        if self._drain_task is None:
            logger.warning("Tweet pipeline is not running")
            return
        self._drain_task.cancel()
        self._drain_task = None

    @property
    def running(self) -> bool:
        return self._drain_task is not None

    async def _drain_loop(self) -> None:
        while True:
            await asyncio.sleep(self.queue_interval)
            await self._process_head_of_msg_queue()

    async def _process_head_of_msg_queue(self) -> int:
        """Deliver the oldest queued batch.

        Returns:
            Number of messages delivered successfully
        """
        if not self.msg_queue:
            return 0
        logger.debug("Messages in send queue", length=len(self.msg_queue))
        if len(self.msg_queue) >= MSG_QUEUE_LAGGING_THRESHOLD:
            logger.warning(
                "Message queue has a large number of unsent events",
                length=len(self.msg_queue),
                threshold=MSG_QUEUE_LAGGING_THRESHOLD,
            )

        batch = self.msg_queue.pop(0)
        delivered = 0
        for msg in batch.messages:
            try:
                await self._send(msg)
            except Exception as e:
                logger.error("Failed to send tweet to room", room_id=msg.room_id, error=str(e))
            else:
                delivered += 1
        return delivered

    async def _send(self, msg: QueuedDelivery) -> None:
        intent = self.runtime.get_intent(msg.user_localpart)
        event_id = await intent.send_event(msg.room_id, msg.event_type, msg.content)
        if msg.content.get("msgtype") == "m.text":
            await self.store.add_event(
                event_id,
                intent.user_id,
                msg.room_id,
                msg.content.get("tweet_id", ""),
                int(time.time() * 1000),
            )

    # === Content ===

    def tweet_to_matrix_content(
        self,
        tweet: Tweet,
        msgtype: str,
        on_behalf_of: str | None = None,
    ) -> dict[str, Any]:
        """Build the content of an ``m.room.message`` for a tweet.

        Raises:
            ValueError: If the tweet has no author
        """
        if tweet.user is None:
            raise ValueError(f"Tweet {tweet.id} has no user field")

        text = tweet.text
        if tweet.urls:
            text = expand_urls(text, tweet.urls)
        text = html.unescape(text)
        if on_behalf_of:
            text = f"@{tweet.user.screen_name}: {text}"

        content = {
            "body": text,
            "created_at": tweet.created_at,
            "likes": tweet.favorite_count,
            "reblogs": tweet.retweet_count,
            "tweet_id": tweet.id,
            "tags": list(tweet.hashtags),
            "msgtype": msgtype,
            "external_url": f"https://twitter.com/{tweet.user.screen_name}/status/{tweet.id}",
        }
        if tweet.retweet_info:
            content["retweet"] = tweet.retweet_info
        if on_behalf_of:
            content["on_behalf_of"] = on_behalf_of
        return content

    async def _upload_photo(self, localpart: str, room_id: str, when: int, media: Media):
        intent = self.runtime.get_intent(localpart)
        uploaded = await upload_content_from_url(intent, media.media_url)
        info = {
            "w": media.width,
            "h": media.height,
            "mimetype": mimetypes.guess_type(media.media_url)[0] or uploaded.content_type,
            "size": uploaded.size,
        }
        return QueuedDelivery(
            user_localpart=localpart,
            room_id=room_id,
            time=when,
            event_type="m.room.message",
            content={
                "body": media.display_url,
                "info": info,
                "msgtype": "m.image",
                "url": uploaded.mxc_url,
            },
        )

    async def _build_batch(
        self,
        localpart: str,
        room_id: str,
        tweet: Tweet,
        msgtype: str,
        on_behalf_of: str | None,
    ) -> Batch:
        when = tweet.timestamp_ms
        batch = Batch(time=when, order=_tweet_order(tweet.id))
        batch.messages.append(QueuedDelivery(
            user_localpart=localpart,
            room_id=room_id,
            time=when,
            event_type="m.room.message",
            content=self.tweet_to_matrix_content(tweet, msgtype, on_behalf_of),
        ))

        photos = [m for m in tweet.media if m.type == "photo"] if self.enable_media else []
        if photos:
            results = await asyncio.gather(
                *(self._upload_photo(localpart, room_id, when, m) for m in photos),
                return_exceptions=True,
            )
            for media, result in zip(photos, results):
                if isinstance(result, BaseException):
                    logger.error(
                        "Failed to upload tweet media",
                        tweet_id=tweet.id,
                        url=media.media_url,
                        error=str(result),
                    )
                else:
                    batch.messages.append(result)
        return batch

    def _enqueue(self, batch: Batch) -> None:
        bisect.insort(self.msg_queue, batch, key=lambda b: b.sort_key)

    # === Processing ===

    async def _resolve_chain(self, tweet: Tweet, depth: int, client) -> list[Tweet]:
        """Fetch up to ``depth`` ancestors of a reply.

        Returns:
            The chain, root first

        Raises:
            ChainResolutionError: A parent could not be fetched or the chain loops
        """
        chain = [tweet]
        visited = {tweet.id}
        current = tweet
        while current.is_reply and depth > 0:
            parent_id = current.in_reply_to_status_id
            if parent_id in visited:
                raise ChainResolutionError(f"Reply chain of {tweet.id} loops at {parent_id}")
            try:
                parent = await client.get_status(parent_id)
            except (TwitterApiError, RemoteUnavailable) as e:
                raise ChainResolutionError(
                    f"Could not fetch parent {parent_id} of {current.id}: {e}"
                ) from e
            visited.add(parent_id)
            chain.append(parent)
            current = parent
            depth -= 1
        chain.reverse()
        return chain

    def _refresh_profile(self, tweet: Tweet) -> None:
        if self.profile is None or tweet.user is None:
            return
        task = asyncio.create_task(self.profile.update(tweet.user))
        self._background.add(task)
        task.add_done_callback(self._profile_done)

    def _profile_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Profile update failed", error=str(task.exception()))

    async def process(
        self,
        rooms: str | list[str],
        tweet: Tweet,
        depth: int = DEFAULT_TWEET_DEPTH,
        client=None,
        force_user_id: str | None = None,
    ) -> int:
        """Queue a tweet, and up to ``depth`` of its parents first, for rooms.

        Args:
            rooms: Destination room or rooms
            tweet: The tweet
            depth: How many parent tweets to resolve for replies
            client: Twitter client used for parent lookups
            force_user_id: Localpart to post as instead of the author's ghost

        Returns:
            Number of batches queued

        Raises:
            ChainResolutionError: If the reply chain could not be resolved
        """
        if isinstance(rooms, str):
            rooms = [rooms]
        if client is None:
            client = await self.client_factory.get_client()

        chain = await self._resolve_chain(tweet, depth, client)
        queued = 0
        for item in chain:
            queued += await self._queue_tweet(rooms, item, force_user_id)
        return queued

    async def process_tweets(
        self,
        rooms: str | list[str],
        tweets: list[Tweet],
        depth: int = DEFAULT_TWEET_DEPTH,
        client=None,
    ) -> ProcessResult:
        """Queue many tweets concurrently.

        Failures of single tweets are logged and do not affect the others.

        Returns:
            Number of batches queued and the tweets that could not be processed
        """
        if client is None:
            client = await self.client_factory.get_client()
        semaphore = asyncio.Semaphore(MAX_CONCURRENT_TWEETS)

        async def one(tweet: Tweet) -> int:
            async with semaphore:
                return await self.process(rooms, tweet, depth, client)

        # API responses are newest first
        ordered = list(reversed(tweets))
        results = await asyncio.gather(*(one(t) for t in ordered), return_exceptions=True)
        outcome = ProcessResult()
        for tweet, result in zip(ordered, results):
            if isinstance(result, BaseException):
                logger.error("Failed to process tweet", tweet_id=tweet.id, error=str(result))
                outcome.failed.append(tweet)
            else:
                outcome.queued += result
        return outcome

    async def _queue_tweet(
        self,
        rooms: list[str],
        tweet: Tweet,
        force_user_id: str | None,
    ) -> int:
        msgtype = "m.notice" if tweet.is_reply else "m.text"
        self._refresh_profile(tweet)
        if tweet.retweeted_status is not None:
            root = tweet.retweeted_status
            root.retweet_info = {
                "id": tweet.id,
                "tweet": tweet.user.id if tweet.user else "",
            }
            tweet = root
            self._refresh_profile(tweet)

        if tweet.user is None:
            logger.error("Tweet is missing its user field", tweet_id=tweet.id)
            return 0

        real_localpart = f"{self.user_prefix}{tweet.user.id}"
        localpart = force_user_id or real_localpart
        on_behalf_of = real_localpart if force_user_id else None

        queued = 0
        for room_id in rooms:
            if self.dedup.contains(room_id, tweet.text):
                logger.debug("Dropping duplicate tweet", room_id=room_id, tweet_id=tweet.id)
                continue
            # Claim the text before awaiting so concurrent paths see it
            self.dedup.push(room_id, tweet.text)
            if await self.store.room_has_tweet(room_id, tweet.id):
                logger.debug("Tweet already in room", room_id=room_id, tweet_id=tweet.id)
                continue
            batch = await self._build_batch(localpart, room_id, tweet, msgtype, on_behalf_of)
            self._enqueue(batch)
            queued += 1
        return queued
