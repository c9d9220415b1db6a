"""Persistent state of the bridge.

``BridgeStore`` is the query surface the bridge components use (since
cursors, linked accounts, cached profiles, DM and timeline rooms, bridged
events). ``SqlRoomStore`` keeps the Matrix room <-> remote room links.
"""

import time
from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from .matrix import MatrixRoom, RemoteRoom, RoomEntry
from .models import (
    AccessType,
    DmRoom,
    EventTweet,
    RoomLink,
    TimelineRoom,
    TwitterAccount,
    TwitterSince,
    UserCache,
)

logger = structlog.get_logger()

# Cached profiles older than this are refreshed from Twitter
PROFILE_STALE_MS = 10 * 60 * 1000


@dataclass
class CachedProfile:
    """A cached Twitter profile and whether it should be refreshed."""
    profile: dict[str, Any]
    timestamp: int
    stale: bool


def _now_ms() -> int:
    return int(time.time() * 1000)


class BridgeStore:
    """Key/value and relational queries over the bridge database."""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    # === Since cursors ===

    async def get_since(self, key: str) -> str | None:
        """Get the newest tweet id seen for a feed."""
        async with self.session_maker() as session:
            row = await session.get(TwitterSince, key)
            return str(row.since) if row else None

    async def set_since(self, key: str, since: str) -> bool:
        """Store the newest tweet id seen for a feed.

        The cursor never moves backwards.

        Returns:
            True if the stored value changed
        """
        value = int(since)
        async with self.session_maker() as session:
            row = await session.get(TwitterSince, key)
            if row is None:
                session.add(TwitterSince(id=key, since=value))
            elif value > row.since:
                row.since = value
            else:
                logger.debug("Ignoring older since value", key=key, since=since, stored=row.since)
                return False
            await session.commit()
        return True

    # === Linked accounts ===

    async def get_twitter_account(self, user_id: str) -> TwitterAccount | None:
        async with self.session_maker() as session:
            return await session.get(TwitterAccount, user_id)

    async def set_twitter_account(
        self,
        user_id: str,
        twitter_id: str,
        access_token: str,
        access_token_secret: str,
        access_type: AccessType | None = None,
    ) -> TwitterAccount:
        """Create or replace a user's linked account.

        ``access_type`` defaults to the one requested when the link started.
        """
        async with self.session_maker() as session:
            account = await session.get(TwitterAccount, user_id)
            if account is None:
                account = TwitterAccount(user_id=user_id)
                session.add(account)
            account.twitter_id = twitter_id
            account.access_token = access_token
            account.access_token_secret = access_token_secret
            if access_type is not None:
                account.access_type = access_type
            account.oauth_token = None
            account.oauth_secret = None
            await session.commit()
            logger.info("Stored Twitter account", user_id=user_id, twitter_id=twitter_id)
            return account

    async def set_pending_account(
        self,
        user_id: str,
        oauth_token: str,
        oauth_secret: str,
        access_type: AccessType,
    ) -> None:
        """Remember the request token of a link that waits for the user's PIN."""
        async with self.session_maker() as session:
            account = await session.get(TwitterAccount, user_id)
            if account is None:
                account = TwitterAccount(user_id=user_id)
                session.add(account)
            account.oauth_token = oauth_token
            account.oauth_secret = oauth_secret
            account.access_token = None
            account.access_token_secret = None
            account.access_type = access_type
            await session.commit()

    async def remove_twitter_account(self, user_id: str) -> bool:
        async with self.session_maker() as session:
            result = await session.execute(
                delete(TwitterAccount).where(TwitterAccount.user_id == user_id)
            )
            await session.commit()
            return result.rowcount > 0

    async def get_linked_user_ids(self) -> list[str]:
        """Matrix users with a usable linked account."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(TwitterAccount.user_id).where(TwitterAccount.access_token.is_not(None))
            )
            return list(result.scalars().all())

    async def get_matrixid_from_twitterid(self, twitter_id: str) -> str | None:
        async with self.session_maker() as session:
            result = await session.execute(
                select(TwitterAccount.user_id).where(TwitterAccount.twitter_id == twitter_id)
            )
            return result.scalars().first()

    # === Profile cache ===

    async def _get_profile(self, *where) -> CachedProfile | None:
        async with self.session_maker() as session:
            result = await session.execute(select(UserCache).where(*where))
            row = result.scalars().first()
        if row is None:
            return None
        return CachedProfile(
            profile=row.profile,
            timestamp=row.timestamp,
            stale=_now_ms() - row.timestamp >= PROFILE_STALE_MS,
        )

    async def get_profile_by_id(self, twitter_id: str) -> CachedProfile | None:
        return await self._get_profile(UserCache.id == twitter_id)

    async def get_profile_by_name(self, screenname: str) -> CachedProfile | None:
        return await self._get_profile(UserCache.screenname == screenname.lower())

    async def get_profile_from_userid(self, user_id: str) -> CachedProfile | None:
        """Cached profile of the Twitter account a Matrix user has linked."""
        account = await self.get_twitter_account(user_id)
        if account is None or account.twitter_id is None:
            return None
        return await self.get_profile_by_id(account.twitter_id)

    async def cache_user_profile(
        self,
        twitter_id: str,
        screenname: str,
        profile: dict[str, Any],
        timestamp: int | None = None,
    ) -> None:
        async with self.session_maker() as session:
            row = await session.get(UserCache, twitter_id)
            if row is None:
                row = UserCache(id=twitter_id)
                session.add(row)
            row.screenname = screenname.lower()
            row.profile = profile
            row.timestamp = timestamp if timestamp is not None else _now_ms()
            await session.commit()

    # === DM rooms ===

    async def get_dm_room(self, users: str) -> str | None:
        async with self.session_maker() as session:
            result = await session.execute(select(DmRoom.room_id).where(DmRoom.users == users))
            return result.scalars().first()

    async def get_users_from_dm_room(self, room_id: str) -> str | None:
        async with self.session_maker() as session:
            row = await session.get(DmRoom, room_id)
            return row.users if row else None

    async def add_dm_room(self, room_id: str, users: str) -> None:
        async with self.session_maker() as session:
            session.add(DmRoom(room_id=room_id, users=users))
            await session.commit()
        logger.info("Stored DM room", room_id=room_id, users=users)

    async def remove_dm_room(self, users: str) -> None:
        async with self.session_maker() as session:
            await session.execute(delete(DmRoom).where(DmRoom.users == users))
            await session.commit()
        logger.info("Deleted DM room", users=users)

    # === Timeline rooms ===

    async def get_timeline_room(self, user_id: str) -> TimelineRoom | None:
        async with self.session_maker() as session:
            return await session.get(TimelineRoom, user_id)

    async def set_timeline_room(
        self,
        user_id: str,
        room_id: str,
        with_filter: str = "user",
        replies: str = "all",
    ) -> None:
        async with self.session_maker() as session:
            row = await session.get(TimelineRoom, user_id)
            if row is None:
                row = TimelineRoom(user_id=user_id)
                session.add(row)
            row.room_id = room_id
            row.with_filter = with_filter
            row.replies = replies
            await session.commit()

    async def remove_timeline_room(self, user_id: str) -> None:
        async with self.session_maker() as session:
            await session.execute(delete(TimelineRoom).where(TimelineRoom.user_id == user_id))
            await session.commit()

    # === Bridged events ===

    async def add_event(
        self,
        event_id: str,
        sender: str,
        room_id: str,
        tweet_id: str,
        timestamp: int,
    ) -> None:
        async with self.session_maker() as session:
            session.add(EventTweet(
                event_id=event_id,
                sender=sender,
                room_id=room_id,
                tweet_id=tweet_id,
                timestamp=timestamp,
            ))
            await session.commit()

    async def room_has_tweet(self, room_id: str, tweet_id: str) -> bool:
        async with self.session_maker() as session:
            result = await session.execute(
                select(EventTweet.id)
                .where(EventTweet.room_id == room_id, EventTweet.tweet_id == tweet_id)
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def get_tweet_for_event(self, event_id: str) -> str | None:
        async with self.session_maker() as session:
            result = await session.execute(
                select(EventTweet.tweet_id).where(EventTweet.event_id == event_id)
            )
            return result.scalar_one_or_none()


def _entry(link: RoomLink) -> RoomEntry:
    return RoomEntry(
        matrix=MatrixRoom(link.matrix_id, dict(link.matrix_data or {})),
        remote=RemoteRoom(link.remote_id, dict(link.remote_data or {})),
    )


def _matches(data: dict[str, Any], query: dict[str, Any]) -> bool:
    return all(data.get(key) == value for key, value in query.items())


class SqlRoomStore:
    """Room links stored in the ``room_links`` table."""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def link_rooms(self, matrix: MatrixRoom, remote: RemoteRoom) -> None:
        await self.upsert_entry(RoomEntry(matrix=matrix, remote=remote))

    async def upsert_entry(self, entry: RoomEntry) -> None:
        async with self.session_maker() as session:
            result = await session.execute(
                select(RoomLink).where(
                    RoomLink.matrix_id == entry.matrix.room_id,
                    RoomLink.remote_id == entry.remote.room_id,
                )
            )
            link = result.scalar_one_or_none()
            if link is None:
                link = RoomLink(matrix_id=entry.matrix.room_id, remote_id=entry.remote.room_id)
                session.add(link)
            link.matrix_data = dict(entry.matrix.data)
            link.remote_data = dict(entry.remote.data)
            await session.commit()
        logger.debug(
            "Stored room link",
            matrix_id=entry.matrix.room_id,
            remote_id=entry.remote.room_id,
        )

    async def _all(self) -> list[RoomLink]:
        async with self.session_maker() as session:
            result = await session.execute(select(RoomLink).order_by(RoomLink.id))
            return list(result.scalars().all())

    async def get_entries_by_remote_id(self, remote_id: str) -> list[RoomEntry]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(RoomLink).where(RoomLink.remote_id == remote_id).order_by(RoomLink.id)
            )
            return [_entry(link) for link in result.scalars().all()]

    async def get_entries_by_matrix_id(self, room_id: str) -> list[RoomEntry]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(RoomLink).where(RoomLink.matrix_id == room_id).order_by(RoomLink.id)
            )
            return [_entry(link) for link in result.scalars().all()]

    # JSON columns are matched in Python to stay portable across backends
    async def get_entries_by_matrix_room_data(self, data: dict[str, Any]) -> list[RoomEntry]:
        return [_entry(link) for link in await self._all() if _matches(link.matrix_data or {}, data)]

    async def get_entries_by_remote_room_data(self, data: dict[str, Any]) -> list[RoomEntry]:
        return [_entry(link) for link in await self._all() if _matches(link.remote_data or {}, data)]

    async def remove_entries_by_remote_id(self, remote_id: str) -> int:
        async with self.session_maker() as session:
            result = await session.execute(delete(RoomLink).where(RoomLink.remote_id == remote_id))
            await session.commit()
        logger.info("Removed room links", remote_id=remote_id, count=result.rowcount)
        return result.rowcount

    async def remove_entries_by_matrix_id(self, room_id: str) -> int:
        async with self.session_maker() as session:
            result = await session.execute(delete(RoomLink).where(RoomLink.matrix_id == room_id))
            await session.commit()
        return result.rowcount

    async def remove_link(self, matrix_id: str, remote_id: str) -> bool:
        """Unlink one Matrix room from one remote room."""
        async with self.session_maker() as session:
            result = await session.execute(
                delete(RoomLink).where(
                    RoomLink.matrix_id == matrix_id, RoomLink.remote_id == remote_id
                )
            )
            await session.commit()
        logger.info("Removed room link", matrix_id=matrix_id, remote_id=remote_id)
        return result.rowcount > 0
