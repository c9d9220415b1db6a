"""Round-robin polling of Twitter timelines and hashtag searches.

Timelines and hashtags live in two independent queues, each with its own
timer and round-robin cursor. Every tick polls one feed: a freshly added
feed first, otherwise the next feed in turn whose rooms are not all empty.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

import structlog

from .errors import AuthError, LifecycleError, RemoteUnavailable, ValidationError
from .twitter_client import TwitterApiError
from .util import is_room_id, is_str_integer, is_twitter_hashtag

logger = structlog.get_logger()


class FeedKind(str, Enum):
    """Kind of a polled feed."""
    TIMELINE = "timeline"
    HASHTAG = "hashtag"


@dataclass
class FeedEntry:
    """A polled feed and the rooms it is delivered to."""
    id: str
    kind: FeedKind
    rooms: list[str] = field(default_factory=list)
    is_new: bool = False
    exclude_replies: bool = False

    @property
    def since_key(self) -> str:
        """Key of the feed's since cursor."""
        return f"@{self.id}" if self.kind == FeedKind.TIMELINE else self.id


class FeedScheduler:
    """Polls timelines and hashtags and hands new tweets to the pipeline."""

    def __init__(
        self,
        timelines_config,
        hashtags_config,
        store,
        client_factory,
        pipeline,
        runtime,
        member_check_interval: float = 300,
    ):
        """Initialize scheduler.

        Args:
            timelines_config: TimelinesConfig
            hashtags_config: HashtagsConfig
            store: BridgeStore holding since cursors
            client_factory: ClientFactory providing the application client
            pipeline: TweetPipeline receiving fetched tweets
            runtime: BridgeRuntime used for room membership
            member_check_interval: Seconds between empty room recomputations
        """
        self.timelines_config = timelines_config
        self.hashtags_config = hashtags_config
        self.store = store
        self.client_factory = client_factory
        self.pipeline = pipeline
        self.runtime = runtime
        self.member_check_interval = member_check_interval

        self._feeds: dict[FeedKind, list[FeedEntry]] = {
            FeedKind.TIMELINE: [],
            FeedKind.HASHTAG: [],
        }
        # Index of the next feed to poll
        self._cursors: dict[FeedKind, int] = {FeedKind.TIMELINE: 0, FeedKind.HASHTAG: 0}
        self._timers: dict[FeedKind, asyncio.Task | None] = {
            FeedKind.TIMELINE: None,
            FeedKind.HASHTAG: None,
        }
        self._member_timer: asyncio.Task | None = None
        self._empty_rooms: set[str] = set()
        self._ticks: set[asyncio.Task] = set()

    # === Registry ===

    @property
    def timelines(self) -> list[FeedEntry]:
        return list(self._feeds[FeedKind.TIMELINE])

    @property
    def hashtags(self) -> list[FeedEntry]:
        return list(self._feeds[FeedKind.HASHTAG])

    @property
    def empty_rooms(self) -> frozenset[str]:
        return frozenset(self._empty_rooms)

    def _config(self, kind: FeedKind):
        return self.timelines_config if kind == FeedKind.TIMELINE else self.hashtags_config

    def _find(self, kind: FeedKind, feed_id: str) -> int:
        for i, entry in enumerate(self._feeds[kind]):
            if entry.id == feed_id:
                return i
        return -1

    def _add(self, kind: FeedKind, feed_id: str, room_id: str, is_new: bool, **extra) -> bool:
        feeds = self._feeds[kind]
        i = self._find(kind, feed_id)
        if i == -1:
            entry = FeedEntry(id=feed_id, kind=kind, is_new=is_new, **extra)
            feeds.append(entry)
        else:
            entry = feeds[i]
        if room_id not in entry.rooms:
            entry.rooms.append(room_id)
        logger.info(f"Added {kind.value}", feed=feed_id, room_id=room_id, is_new=entry.is_new)
        return True

    def add_timeline(
        self,
        twitter_id: str,
        room_id: str,
        is_new: bool = False,
        exclude_replies: bool = False,
    ) -> bool:
        """Deliver a user's timeline to a room.

        Args:
            twitter_id: Twitter user ID
            room_id: Matrix room ID
            is_new: Only seed the since cursor on the first poll
            exclude_replies: Do not fetch replies

        Returns:
            False if timelines are disabled

        Raises:
            ValidationError: If the twitter id or room id is malformed
        """
        if not self.timelines_config.enable:
            return False
        if not is_str_integer(twitter_id):
            raise ValidationError(f"Invalid Twitter user id: {twitter_id!r}")
        if not is_room_id(room_id):
            raise ValidationError(f"Invalid room id: {room_id!r}")
        return self._add(
            FeedKind.TIMELINE, twitter_id, room_id, is_new, exclude_replies=exclude_replies
        )

    def add_hashtag(self, hashtag: str, room_id: str, is_new: bool = False) -> bool:
        """Deliver a hashtag search (without the ``#``) to a room.

        Raises:
            ValidationError: If the hashtag or room id is malformed
        """
        if not self.hashtags_config.enable:
            return False
        if not is_twitter_hashtag(hashtag):
            raise ValidationError(f"Invalid hashtag: {hashtag!r}")
        if not is_room_id(room_id):
            raise ValidationError(f"Invalid room id: {room_id!r}")
        return self._add(FeedKind.HASHTAG, hashtag.lower(), room_id, is_new)

    def remove_timeline(self, twitter_id: str, room_id: str | None = None) -> bool:
        """Stop delivering a timeline to one room, or to all rooms."""
        return self._remove(FeedKind.TIMELINE, twitter_id, room_id)

    def remove_hashtag(self, hashtag: str, room_id: str | None = None) -> bool:
        return self._remove(FeedKind.HASHTAG, hashtag.lower(), room_id)

    def _remove(self, kind: FeedKind, feed_id: str, room_id: str | None) -> bool:
        feeds = self._feeds[kind]
        i = self._find(kind, feed_id)
        if i == -1:
            logger.warning(f"Tried to remove unknown {kind.value}", feed=feed_id)
            return False

        entry = feeds[i]
        if room_id is not None:
            if room_id not in entry.rooms:
                logger.warning(
                    f"Tried to remove a room that does not receive this {kind.value}",
                    feed=feed_id,
                    room_id=room_id,
                )
                return False
            entry.rooms.remove(room_id)
        else:
            entry.rooms.clear()

        if not entry.rooms:
            del feeds[i]
            # Keep the cursor on the feed that was next in line
            if i < self._cursors[kind]:
                self._cursors[kind] -= 1
            if self._cursors[kind] >= len(feeds):
                self._cursors[kind] = 0
            logger.info(f"Removed {kind.value}", feed=feed_id)
        return True

    # === Polling ===

    def _is_empty(self, entry: FeedEntry) -> bool:
        return all(room_id in self._empty_rooms for room_id in entry.rooms)

    def _next_entry(self, kind: FeedKind) -> tuple[FeedEntry, bool] | None:
        """Pick the feed to poll this tick.

        Returns:
            The feed and whether it is a first poll of a new feed, or None
        """
        feeds = self._feeds[kind]
        if not feeds:
            return None

        for entry in feeds:
            if entry.is_new:
                entry.is_new = False
                return entry, True

        poll_if_empty = self._config(kind).poll_if_empty
        for _ in range(len(feeds)):
            if self._cursors[kind] >= len(feeds):
                self._cursors[kind] = 0
            entry = feeds[self._cursors[kind]]
            self._cursors[kind] = (self._cursors[kind] + 1) % len(feeds)
            if poll_if_empty or not self._is_empty(entry):
                return entry, False
            logger.debug(f"Skipping {kind.value} with only empty rooms", feed=entry.id)
        return None

    async def _process_timeline(self) -> bool:
        """Poll the next timeline.

        Returns:
            True if a feed was polled successfully
        """
        return await self._process(FeedKind.TIMELINE)

    async def _process_hashtags(self) -> bool:
        return await self._process(FeedKind.HASHTAG)

    async def _process(self, kind: FeedKind) -> bool:
        picked = self._next_entry(kind)
        if picked is None:
            return False
        entry, seed = picked
        return await self._poll(entry, seed)

    async def _fetch(self, entry: FeedEntry, count: int, since: str | None):
        client = await self.client_factory.get_client()
        if entry.kind == FeedKind.TIMELINE:
            tweets = await client.get_user_timeline(
                entry.id, count, since_id=since, exclude_replies=entry.exclude_replies
            )
        else:
            tweets = await client.search_hashtag(entry.id, count, since_id=since)
        return client, tweets

    async def _poll(self, entry: FeedEntry, seed: bool = False) -> bool:
        """Fetch a feed since its cursor and queue what is new.

        A first poll of a new feed fetches a single tweet to seed the cursor
        and delivers nothing. The cursor is only moved once the tweets have
        been handed to the pipeline.
        """
        config = self._config(entry.kind)
        count = 1 if seed else config.fetch_count
        rooms = list(entry.rooms)
        try:
            since = await self.store.get_since(entry.since_key)
            logger.debug(f"Polling {entry.kind.value}", feed=entry.id, since=since, count=count)
            client, tweets = await self._fetch(entry, count, since)
        except (TwitterApiError, RemoteUnavailable, AuthError) as e:
            logger.error(f"Failed to poll {entry.kind.value}", feed=entry.id, error=str(e))
            return False

        if not tweets:
            return True
        if not seed and len(tweets) >= count:
            logger.info(
                f"{entry.kind.value.capitalize()} poll hit the count limit, request likely incomplete",
                feed=entry.id,
                count=count,
            )

        newest = max(tweets, key=lambda t: int(t.id)).id
        if not seed:
            depth = getattr(config, "reply_depth", 0)
            result = await self.pipeline.process_tweets(rooms, tweets, depth=depth, client=client)
            if result.failed:
                # Stop below the oldest failure so it is fetched again next time
                oldest_failed = min(int(t.id) for t in result.failed)
                older = [int(t.id) for t in tweets if int(t.id) < oldest_failed]
                logger.warning(
                    f"Some {entry.kind.value} tweets failed, holding the cursor back",
                    feed=entry.id,
                    failed=len(result.failed),
                )
                if not older:
                    return True
                newest = str(max(older))
        await self.store.set_since(entry.since_key, newest)
        logger.debug("Stored since", key=entry.since_key, since=newest)
        return True

    # === Timers ===

    def _spawn_tick(self, tick: Callable[[], Awaitable[bool]], name: str) -> None:
        async def run():
            try:
                await tick()
            except Exception:
                logger.exception("Unexpected error while polling", queue=name)

        task = asyncio.create_task(run())
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)

    async def _timer(self, kind: FeedKind) -> None:
        interval = self._config(kind).poll_interval_seconds
        tick = self._process_timeline if kind == FeedKind.TIMELINE else self._process_hashtags
        while True:
            await asyncio.sleep(interval)
            # A stalled poll must not hold up the next tick
            self._spawn_tick(tick, kind.value)

    def _start(self, kind: FeedKind) -> None:
        if self._timers[kind] is not None:
            logger.warning(f"{kind.value} timer already running")
            return
        self._timers[kind] = asyncio.create_task(self._timer(kind))

    def _stop(self, kind: FeedKind) -> None:
        task = self._timers[kind]
        if task is None:
            raise LifecycleError(f"Stopped the {kind.value} timer without starting it")
        task.cancel()
        self._timers[kind] = None

    def start_timeline(self) -> None:
        self._start(FeedKind.TIMELINE)

    def stop_timeline(self) -> None:
        """Stop polling timelines.

        Raises:
            LifecycleError: If the timer was not started
        """
        self._stop(FeedKind.TIMELINE)

    def start_hashtag(self) -> None:
        self._start(FeedKind.HASHTAG)

    def stop_hashtag(self) -> None:
        self._stop(FeedKind.HASHTAG)

    # === Empty rooms ===

    async def _check_members(self) -> set[str]:
        """Recompute the rooms without real members.

        Returns:
            The new set of empty rooms
        """
        try:
            member_lists = await self.runtime.get_member_lists()
        except Exception as e:
            logger.error("Could not fetch room members", error=str(e))
            return set(self._empty_rooms)

        empty = {
            room_id
            for room_id, members in member_lists.items()
            if not any(not self.runtime.is_bridge_user(m) for m in members)
        }
        self._empty_rooms = empty
        logger.debug("Recomputed empty rooms", rooms=len(member_lists), empty=len(empty))
        return empty

    async def _member_loop(self) -> None:
        while True:
            await self._check_members()
            await asyncio.sleep(self.member_check_interval)

    def start_member_checker(self) -> None:
        if self._member_timer is not None:
            logger.warning("Member checker already running")
            return
        self._member_timer = asyncio.create_task(self._member_loop())

    def stop_member_checker(self) -> None:
        if self._member_timer is None:
            raise LifecycleError("Stopped the member checker without starting it")
        self._member_timer.cancel()
        self._member_timer = None

    def stop_all(self) -> None:
        """Stop every running timer."""
        for kind, task in self._timers.items():
            if task is not None:
                self._stop(kind)
        if self._member_timer is not None:
            self.stop_member_checker()
        for task in list(self._ticks):
            task.cancel()
