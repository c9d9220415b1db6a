"""Posting Matrix messages to Twitter.

Decides whether a message may be tweeted from the rooms it was sent to,
splits it into a chain of replies and posts the chain in order.
"""

import re
from dataclasses import dataclass, field
from typing import Any

import structlog

from .dedup import DedupCache
from .errors import (
    AuthError,
    ContextError,
    MessageTooLongError,
    NotLinkedError,
    OutboundRejected,
    ReadOnlyAccountError,
    RemoteUnavailable,
    UnsupportedContentError,
)
from .matrix import RemoteRoom
from .models import AccessType
from .twitter_client import TwitterApiError

logger = structlog.get_logger()

# Screen names are limited to 15 characters by Twitter
MAX_SCREENNAME_LENGTH = 15
# Reply target placeholder for the tweet sent just before
PREVIOUS = "previous"

# A tag starts after a non-word, non-tag character and ends at whitespace,
# another tag marker or the end of the text
TAG_RE = re.compile(r"(?<![\w@#])([@#])(\w+)(?=[@#\s]|$)")

TEXT_MSGTYPES = ("m.text", "m.notice")
MEDIA_MSGTYPES = ("m.image", "m.video", "m.audio", "m.file")


@dataclass
class TweetContext:
    """Screen names and hashtags a message mentions."""
    screennames: list[str] = field(default_factory=list)
    hashtags: list[str] = field(default_factory=list)


@dataclass
class RoomContext:
    """Screen names and hashtags a message may address from its rooms."""
    screennames: list[str] = field(default_factory=list)
    hashtags: list[str] = field(default_factory=list)
    # Posting is allowed without any tag
    pass_: bool = False


@dataclass
class OutgoingTweet:
    status: str
    in_reply_to_status_id: str | None = None


@dataclass
class PostResult:
    """Result of posting a message."""
    success: bool
    tweet_ids: list[str] = field(default_factory=list)
    error: str | None = None


def _lower(items: list[str]) -> set[str]:
    return {item.lower() for item in items}


def _check_msgtype(msgtype: str | None) -> None:
    if msgtype in MEDIA_MSGTYPES:
        raise UnsupportedContentError(f"{msgtype} cannot be tweeted")


class OutboundRouter:
    """Sends Matrix messages to Twitter on behalf of linked users."""

    def __init__(
        self,
        runtime,
        store,
        client_factory,
        profile,
        dedup: DedupCache | None = None,
        max_tweet_length: int = 280,
        max_tweet_chain: int = 3,
    ):
        """Initialize router.

        Args:
            runtime: BridgeRuntime used to notify rooms
            store: BridgeStore with linked accounts
            client_factory: ClientFactory providing user clients
            profile: TwitterProfile resolving screen names
            dedup: Inbound dedup cache fed with what was posted
            max_tweet_length: Length limit of one tweet
            max_tweet_chain: Maximum number of tweets one message becomes
        """
        self.runtime = runtime
        self.store = store
        self.client_factory = client_factory
        self.profile = profile
        self.dedup = dedup
        self.max_tweet_length = max_tweet_length
        self.max_tweet_chain = max_tweet_chain

    async def _can_send(self, user_id: str | None) -> bool:
        """Check the user may tweet.

        Raises:
            NotLinkedError: If no account is linked
            ReadOnlyAccountError: If the account has read access only
        """
        if user_id is None:
            raise NotLinkedError("User isn't known by the bridge")
        account = await self.store.get_twitter_account(user_id)
        if account is None or not account.access_token:
            raise NotLinkedError(f"{user_id} isn't linked to any Twitter account")
        if not AccessType(account.access_type).can_tweet:
            raise ReadOnlyAccountError(
                f"Account only has {AccessType(account.access_type).value} permissions"
            )
        return True

    async def _screenname_of_twitter_id(self, twitter_id: str) -> str | None:
        profile = await self.profile.get_by_id(twitter_id)
        return profile.get("screen_name") if profile else None

    async def _screenname_of_user(self, user_id: str) -> str | None:
        cached = await self.store.get_profile_from_userid(user_id)
        return cached.profile.get("screen_name") if cached else None

    async def _get_room_context(self, remotes: list[RemoteRoom]) -> RoomContext:
        """Collect what the bidirectional rooms allow a message to address."""
        context = RoomContext()
        for remote in remotes:
            if not remote.get("twitter_bidirectional"):
                continue
            kind = remote.get("twitter_type")
            if kind == "timeline" and remote.get("twitter_user"):
                name = await self._screenname_of_twitter_id(remote.get("twitter_user"))
                if name:
                    context.screennames.append(name)
            elif kind == "user_timeline" and remote.get("twitter_owner"):
                name = await self._screenname_of_user(remote.get("twitter_owner"))
                if name:
                    context.screennames.append(name)
                context.pass_ = True
            elif kind == "hashtag" and remote.get("twitter_hashtag"):
                context.hashtags.append(remote.get("twitter_hashtag"))
        return context

    @staticmethod
    def _get_tweet_context(text: str) -> TweetContext:
        context = TweetContext()
        for match in TAG_RE.finditer(text):
            marker, name = match.groups()
            if marker == "@":
                if len(name) <= MAX_SCREENNAME_LENGTH:
                    context.screennames.append(name)
            else:
                context.hashtags.append(name)
        return context

    @staticmethod
    def _strip_hashtags(text: str, allowed: set[str]) -> str:
        """Remove hashtags not in ``allowed`` (lower case) from the text."""
        def replace(match: re.Match) -> str:
            marker, name = match.groups()
            if marker == "#" and name.lower() not in allowed:
                return ""
            return match.group(0)

        stripped = TAG_RE.sub(replace, text)
        if stripped == text:
            return text
        return re.sub(r"[ \t]{2,}", " ", stripped).strip()

    def _check_context(self, text: str, room: RoomContext) -> str:
        """Apply the room context to a message.

        Returns:
            The text to post

        Raises:
            ContextError: If the message addresses nothing the rooms allow
        """
        if room.pass_:
            return text
        tweet = self._get_tweet_context(text)
        room_tags = _lower(room.hashtags)
        names = _lower(tweet.screennames) & _lower(room.screennames)
        tags = _lower(tweet.hashtags) & room_tags
        if not names and not tags:
            raise ContextError(
                f"Message context {tweet} does not intersect room context {room}"
            )
        return self._strip_hashtags(text, room_tags)

    def _build_tweets(self, content: dict[str, Any], screen_name: str, text: str | None = None):
        """Split a message into a chain of tweets.

        Returns:
            List of OutgoingTweet, later ones replying to the one before

        Raises:
            UnsupportedContentError: For media messages
            MessageTooLongError: If the chain would be too long
        """
        msgtype = content.get("msgtype")
        body = content.get("body", "") if text is None else text
        _check_msgtype(msgtype)
        if msgtype == "m.emote":
            body = f"*{body}*" if body else ""
        elif msgtype not in TEXT_MSGTYPES:
            logger.debug("Ignoring message type", msgtype=msgtype)
            return []
        if not body:
            return []

        prefix = f"@{screen_name} "
        limit = self.max_tweet_length
        if len(body) > limit and len(prefix) >= limit:
            raise MessageTooLongError(f"Reply prefix {prefix!r} leaves no room for text")

        tweets = [OutgoingTweet(body[:limit])]
        rest = body[limit:]
        while rest:
            if len(tweets) >= self.max_tweet_chain:
                raise MessageTooLongError(
                    f"Message of {len(body)} characters needs more than "
                    f"{self.max_tweet_chain} tweets"
                )
            room_left = limit - len(prefix)
            tweets.append(OutgoingTweet(prefix + rest[:room_left], PREVIOUS))
            rest = rest[room_left:]
        return tweets

    async def _send_tweets(self, client, tweets: list[OutgoingTweet], reply_to: str | None = None):
        """Post tweets one after the other.

        Returns:
            IDs of the posted tweets
        """
        ids = []
        previous = reply_to
        for tweet in tweets:
            target = previous if tweet.in_reply_to_status_id == PREVIOUS else (
                tweet.in_reply_to_status_id
            )
            result = await client.update_status(tweet.status, in_reply_to_status_id=target)
            previous = result.id
            ids.append(result.id)
        return ids

    async def _notify(self, room_id: str | None, message: str) -> None:
        if room_id is None:
            return
        try:
            await self.runtime.get_intent().send_message(
                room_id, {"msgtype": "m.notice", "body": message}
            )
        except Exception as e:
            logger.warning("Could not notify room", room_id=room_id, error=str(e))

    async def send(
        self,
        event: dict[str, Any],
        user_id: str | None,
        remotes: list[RemoteRoom],
    ) -> PostResult:
        """Tweet a Matrix message.

        Args:
            event: The ``m.room.message`` event
            user_id: Matrix user who sent it
            remotes: Remote rooms bound to the event's room

        Returns:
            PostResult with the posted tweet IDs
        """
        room_id = event.get("room_id")
        content = event.get("content") or {}
        try:
            await self._can_send(user_id)
            _check_msgtype(content.get("msgtype"))
            room_context = await self._get_room_context(remotes)
            text = self._check_context(content.get("body", ""), room_context)
            client = await self.client_factory.get_client(user_id)
            screen_name = client.profile.screen_name if client.profile else (
                await self._screenname_of_user(user_id) or ""
            )
            tweets = self._build_tweets(content, screen_name, text)
        except OutboundRejected as e:
            logger.info("Couldn't send tweet", user_id=user_id, room_id=room_id, reason=e.error)
            await self._notify(room_id, e.notify)
            return PostResult(success=False, error=e.error)
        except (AuthError, TwitterApiError, RemoteUnavailable) as e:
            logger.error("Couldn't prepare tweet", user_id=user_id, error=str(e))
            await self._notify(room_id, OutboundRejected.default_notify)
            return PostResult(success=False, error=str(e))

        if not tweets:
            return PostResult(success=False, error="Nothing to tweet")

        try:
            ids = await self._send_tweets(client, tweets)
        except (TwitterApiError, RemoteUnavailable) as e:
            logger.error("Failed to post tweet", user_id=user_id, error=str(e))
            await self._notify(room_id, OutboundRejected.default_notify)
            return PostResult(success=False, error=str(e))

        if self.dedup is not None and room_id:
            for tweet in tweets:
                self.dedup.push(room_id, tweet.status)
        logger.info("Sent tweets", user_id=user_id, room_id=room_id, tweet_ids=ids)
        return PostResult(success=True, tweet_ids=ids)
