"""Handlers for the kinds of rooms the bridge manages.

Each handler receives events already classified by ``RoomTypeRouter``:

- ``TimelineHandler``: rooms following one Twitter user, and personal
  timeline rooms of linked users
- ``HashtagHandler``: rooms following a hashtag search
- ``DirectMessageHandler``: rooms of a DM conversation
- ``AccountServicesHandler``: 1:1 rooms with the bridge bot for account
  management commands
"""

import asyncio
import re
from typing import Any

import structlog

from .errors import OutboundRejected, ValidationError
from .identity import IdentityLinkError
from .matrix import EventContext, MatrixRoom, ProvisionedRoom, RemoteRoom, RoomEntry
from .matrix import upload_content_from_url
from .util import is_room_id, is_str_integer, is_twitter_hashtag, is_twitter_screenname
from .util import room_powers

logger = structlog.get_logger()

RETRY_INVITE_COUNT = 5
RETRY_INVITE_INTERVAL = 2.5
HASHTAG_ALIAS_RE = re.compile(r"^[a-z0-9]+$", re.IGNORECASE)

GREETING = (
    "This bot can help you link/unlink your twitter account with the "
    "Matrix Twitter Bridge. If this was not your intention, please kick the bot."
)
UNKNOWN_COMMAND = "Unknown command or invalid arguments"
HELP_TEXT = """\
Matrix Twitter Bridge Help

help    This help text.
account.link [type]    Link your Twitter account to your Matrix Account
'read'    Read-only access to your account. Reading your Timeline.
'write'    Read and Write such as sending Tweets from rooms.
'dm'    Read and Write to 1:1 DM rooms.

account.unlink    Removes your account from the bridge. All personal rooms will cease to function.

account.list    List details about your account.

bridge.room [room_id] [twitter_feed]    Bridge an existing room to a @ or #. The room *must* be public.
'room_id'    A Matrix Room ID (Not an alias).
'twitter_feed'    Either a #hashtag or a @timeline

bridge.unbridge [room_id] [twitter_feed]
'room_id'    A Matrix Room ID (Not an alias).
'twitter_feed'    Either a #hashtag or a @timeline. Leave blank to remove ALL links.

timeline.filter [option] Filter the type of tweets coming in.
'followings'    Tweets of the user and of the accounts they follow.
'user'    Only tweets of the user.

timeline.replies [option]
'all'
'mutual'
"""


def notice(body: str) -> dict[str, str]:
    return {"msgtype": "m.notice", "body": body}


async def create_user_timeline(runtime, store, user_id: str) -> str:
    """Create the personal timeline room of a linked user if it does not exist.

    Returns:
        ID of the user's timeline room
    """
    existing = await store.get_timeline_room(user_id)
    if existing is not None:
        return existing.room_id

    intent = runtime.get_intent()
    room_id = await intent.create_room({
        "invite": [user_id],
        "name": "[Twitter] Your Timeline",
        "visibility": "private",
        "initial_state": [
            room_powers({runtime.bot_user_id: 100, user_id: 100}),
            {
                "type": "m.room.join_rules",
                "content": {"join_rule": "invite"},
                "state_key": "",
            },
        ],
    })
    logger.info("Created user timeline room", user_id=user_id, room_id=room_id)
    await runtime.room_store.link_rooms(
        MatrixRoom(room_id),
        RemoteRoom(f"tl_{user_id}", {
            "twitter_type": "user_timeline",
            "twitter_bidirectional": True,
            "twitter_owner": user_id,
        }),
    )
    await store.set_timeline_room(user_id, room_id, "user", "all")
    return room_id


class TimelineHandler:
    """Timeline room provisioning, posting and teardown."""

    def __init__(self, runtime, store, scheduler, profile, outbound, user_stream=None,
                 alias_prefix: str = "_twitter_"):
        self.runtime = runtime
        self.store = store
        self.scheduler = scheduler
        self.profile = profile
        self.outbound = outbound
        self.user_stream = user_stream
        self.alias_prefix = alias_prefix

    async def process_alias_query(self, name: str) -> ProvisionedRoom | None:
        """Provision a room for ``#<prefix>@<name>``.

        Returns:
            The room to create, or None if the user can't be followed
        """
        logger.info("Looking up timeline alias", name=name)
        if not is_twitter_screenname(name):
            return None
        user = await self.profile.get_by_screenname(name)
        if user is None:
            logger.warning("Twitter user not found", screen_name=name)
            return None
        if user.get("protected"):
            logger.warning("Protected account, can't read its timeline", screen_name=name)
            return None

        avatar = None
        if user.get("profile_image_url_https"):
            try:
                uploaded = await upload_content_from_url(
                    self.runtime.get_intent(), user["profile_image_url_https"]
                )
                avatar = uploaded.mxc_url
            except Exception as e:
                logger.warning("Could not upload timeline avatar", screen_name=name, error=str(e))
        return self._construct_timeline_room(user, name, avatar)

    def _construct_timeline_room(
        self, user: dict[str, Any], alias: str, avatar: str | None
    ) -> ProvisionedRoom:
        owner = self.runtime.twitter_user_id(user["id_str"])
        remote = RemoteRoom(f"timeline_{user['id_str']}", {
            "twitter_type": "timeline",
            "twitter_user": user["id_str"],
            "twitter_exclude_replies": False,
            "twitter_bidirectional": True,
        })
        description = user.get("description") or ""
        initial_state = [
            room_powers({self.runtime.bot_user_id: 100, owner: 75}),
            {"type": "m.room.join_rules", "content": {"join_rule": "public"}, "state_key": ""},
            {"type": "org.matrix.twitter.data", "content": user, "state_key": ""},
        ]
        if avatar:
            initial_state.append({"type": "m.room.avatar", "content": {"url": avatar}, "state_key": ""})
        return ProvisionedRoom(
            creation_opts={
                "visibility": "public",
                "room_alias_name": f"{self.alias_prefix}@{alias}",
                "name": f"[Twitter] {user.get('name', alias)}",
                "topic": f"{description} | https://twitter.com/{user.get('screen_name', alias)}",
                "invite": [owner],
                "initial_state": initial_state,
            },
            remote=remote,
        )

    async def on_room_created(self, alias: str, entry: RoomEntry) -> None:
        twitter_id = entry.remote.get("twitter_user")
        entry.matrix.set("twitter_user", twitter_id)
        await self.runtime.room_store.upsert_entry(entry)
        self.scheduler.add_timeline(twitter_id, entry.matrix.room_id, is_new=True)

    async def process_message(self, event: dict[str, Any], ctx: EventContext) -> None:
        result = await self.outbound.send(event, ctx.sender, ctx.remotes)
        if not result.success:
            logger.info("Failed to send tweet", room_id=ctx.room_id, error=result.error)

    async def process_leave(self, event: dict[str, Any], ctx: EventContext) -> None:
        """Tear down a personal timeline room when its owner leaves."""
        remote = ctx.remote
        if remote is None or remote.twitter_type != "user_timeline":
            return
        if remote.get("twitter_owner") != ctx.sender:
            return
        logger.info("Owner left their timeline room, leaving", user_id=ctx.sender)
        if self.user_stream is not None:
            self.user_stream.detach(ctx.sender)
        await self.store.remove_timeline_room(ctx.sender)
        await self.runtime.get_intent().leave(ctx.room_id)
        await self.runtime.room_store.remove_link(ctx.room_id, remote.room_id)


class HashtagHandler:
    """Hashtag room provisioning and posting."""

    def __init__(self, runtime, scheduler, outbound, alias_prefix: str = "_twitter_"):
        self.runtime = runtime
        self.scheduler = scheduler
        self.outbound = outbound
        self.alias_prefix = alias_prefix

    async def process_alias_query(self, name: str) -> ProvisionedRoom | None:
        logger.info("Got hashtag alias request", name=name)
        if not HASHTAG_ALIAS_RE.match(name):
            return None
        remote = RemoteRoom(f"hashtag_{name}", {
            "twitter_type": "hashtag",
            "twitter_hashtag": name,
            "twitter_bidirectional": True,
        })
        return ProvisionedRoom(
            creation_opts={
                "visibility": "public",
                "room_alias_name": f"{self.alias_prefix}#{name}",
                "name": f"[Twitter] #{name}",
                "topic": f"Twitter feed for #{name}",
                "initial_state": [{
                    "type": "m.room.join_rules",
                    "content": {"join_rule": "public"},
                    "state_key": "",
                }],
            },
            remote=remote,
        )

    async def on_room_created(self, alias: str, entry: RoomEntry) -> None:
        hashtag = entry.remote.room_id[len("hashtag_"):]
        self.scheduler.add_hashtag(hashtag, entry.matrix.room_id, is_new=True)

    async def process_message(self, event: dict[str, Any], ctx: EventContext) -> None:
        result = await self.outbound.send(event, ctx.sender, ctx.remotes)
        if not result.success:
            logger.info("Failed to send tweet", room_id=ctx.room_id, error=result.error)


class DirectMessageHandler:
    """Messages typed in DM rooms."""

    def __init__(self, runtime, direct_messages):
        self.runtime = runtime
        self.direct_messages = direct_messages

    async def process_invite(self, event: dict[str, Any], ctx: EventContext) -> None:
        # Conversations are only started from Twitter
        logger.info(
            "Ignoring invite of a Twitter user to a new room",
            room_id=ctx.room_id,
            invitee=event.get("state_key"),
        )

    async def process_message(self, event: dict[str, Any], ctx: EventContext) -> None:
        content = event.get("content") or {}
        if content.get("msgtype") != "m.text":
            return
        try:
            await self.direct_messages.can_use(ctx.sender)
        except OutboundRejected as e:
            logger.info("Couldn't send DM", user_id=ctx.sender, reason=e.error)
            await self.runtime.get_intent().send_message(ctx.room_id, notice(e.notify))
            return
        await self.direct_messages.send(ctx.sender, ctx.room_id, content.get("body", ""))


class AccountServicesHandler:
    """Conversation between a user and the bridge bot."""

    def __init__(self, runtime, store, identity, profile, scheduler, user_stream=None,
                 client_factory=None):
        self.runtime = runtime
        self.store = store
        self.identity = identity
        self.profile = profile
        self.scheduler = scheduler
        self.user_stream = user_stream
        self.client_factory = client_factory

    async def _reply(self, room_id: str, body: str) -> None:
        await self.runtime.get_intent().send_message(room_id, notice(body))

    async def process_invite(self, event: dict[str, Any], ctx: EventContext) -> None:
        """Join the room and set it up as the inviter's service room."""
        logger.info("Got invite to a service room", room_id=ctx.room_id, user_id=ctx.sender)
        intent = self.runtime.get_intent()
        interval = RETRY_INVITE_INTERVAL
        for attempt in range(1, RETRY_INVITE_COUNT + 1):
            try:
                await intent.join(ctx.room_id)
                break
            except Exception as e:
                if attempt == RETRY_INVITE_COUNT:
                    logger.error("Couldn't join service room", room_id=ctx.room_id, error=str(e))
                    return
                logger.warning("Join failed, retrying", room_id=ctx.room_id, attempt=attempt)
                await asyncio.sleep(interval)
                interval *= 2

        await self.runtime.room_store.link_rooms(
            MatrixRoom(ctx.room_id),
            RemoteRoom(f"service_{ctx.sender}", {"twitter_type": "service"}),
        )
        await self._reply(ctx.room_id, GREETING)

    async def process_leave(self, event: dict[str, Any], ctx: EventContext) -> None:
        logger.info("User left service room, leaving", user_id=ctx.sender)
        await self.runtime.get_intent().leave(ctx.room_id)
        if ctx.remote is not None:
            await self.runtime.room_store.remove_link(ctx.room_id, ctx.remote.room_id)

    async def process_message(self, event: dict[str, Any], ctx: EventContext) -> None:
        """Run a command typed in the service room."""
        if ctx.sender == self.runtime.bot_user_id:
            return
        raw = ((event.get("content") or {}).get("body") or "").strip()
        body = raw.lower()
        room_id = ctx.room_id

        if body.startswith("account.link"):
            await self._begin_link_account(ctx.sender, room_id, body[len("account.link"):].strip())
        elif body == "account.unlink":
            await self._unlink_account(ctx.sender, room_id)
        elif body == "account.list":
            await self._list_account_details(ctx.sender, room_id)
        elif body.startswith("bridge.room "):
            await self._bridge_room(room_id, raw.split())
        elif body.startswith("bridge.unbridge "):
            await self._unbridge_room(room_id, raw.split())
        elif body.startswith("timeline.filter"):
            await self._set_timeline_option(
                ctx.sender, room_id, "with_filter", body[len("timeline.filter"):].strip(),
                ("followings", "user"),
            )
        elif body.startswith("timeline.replies"):
            await self._set_timeline_option(
                ctx.sender, room_id, "replies", body[len("timeline.replies"):].strip(),
                ("all", "mutual"),
            )
        elif body == "help":
            await self._reply(room_id, HELP_TEXT)
        elif is_str_integer(raw):
            await self._process_pin(ctx.sender, room_id, raw)
        else:
            await self._reply(room_id, UNKNOWN_COMMAND)

    # === Account linking ===

    async def _begin_link_account(self, user_id: str, room_id: str, access_type: str) -> None:
        logger.info("User requested an account link", user_id=user_id, access_type=access_type)
        try:
            request = await self.identity.initiate_link(user_id, access_type)
        except IdentityLinkError as e:
            logger.error("Couldn't start account link", user_id=user_id, error=str(e))
            await self._reply(room_id, str(e))
            return
        await self._reply(
            room_id,
            f"Go to {request.authorization_url} to receive your PIN, and then type it in below.",
        )

    async def _process_pin(self, user_id: str, room_id: str, pin: str) -> None:
        logger.info("User sent a PIN", user_id=user_id)
        try:
            await self.identity.complete_link(user_id, pin)
        except IdentityLinkError as e:
            logger.error("OAuth access token failed", user_id=user_id, error=str(e))
            await self._reply(
                room_id,
                "We couldn't verify this PIN :(. Maybe you typed it wrong or you "
                "might need to request it again.",
            )
            return
        await self._reply(
            room_id, "All good. You should now be able to use your Twitter account on Matrix."
        )
        await create_user_timeline(self.runtime, self.store, user_id)
        if self.user_stream is not None:
            await self.user_stream.attach(user_id)

    async def _unlink_account(self, user_id: str, room_id: str) -> None:
        try:
            await self.identity.unlink(user_id)
        except Exception as e:
            logger.error("Couldn't unlink account", user_id=user_id, error=str(e))
            await self._reply(room_id, "Your account could not be unlinked from Matrix.")
            return
        await self._reply(room_id, "Your account (if it was linked) is now unlinked from Matrix.")

    async def _list_account_details(self, user_id: str, room_id: str) -> None:
        account = await self.store.get_twitter_account(user_id)
        if account is None or not account.access_token:
            await self._reply(room_id, "No account linked.")
            return
        profile = await self.profile.get_by_id(account.twitter_id)
        screen_name = profile.get("screen_name") if profile else "[Unknown]"
        timeline = await self.store.get_timeline_room(user_id)
        lines = [
            f"Linked Twitter Account: {screen_name}",
            f"Access Type: {account.access_type.value}",
            f"Timeline Room: {timeline.room_id if timeline else 'No Timeline Room'}",
        ]
        if timeline:
            lines.append(f"Timeline Settings: filter={timeline.with_filter} replies={timeline.replies}")
        await self._reply(room_id, "\n".join(lines))

    async def _set_timeline_option(
        self, user_id: str, room_id: str, option: str, value: str, allowed: tuple[str, ...]
    ) -> None:
        if value not in allowed:
            await self._reply(room_id, f"Please select one of: {', '.join(allowed)}.")
            return
        timeline = await self.store.get_timeline_room(user_id)
        if timeline is None:
            await self._reply(room_id, "Your account isn't linked yet.")
            return
        with_filter = value if option == "with_filter" else timeline.with_filter
        replies = value if option == "replies" else timeline.replies
        await self.store.set_timeline_room(user_id, timeline.room_id, with_filter, replies)
        if self.user_stream is not None:
            # Streams pick up their options when attached
            self.user_stream.detach(user_id)
            await self.user_stream.attach(user_id)
        await self._reply(room_id, f"Timeline {option.replace('with_', '')} set to {value}.")

    # === Bridging existing rooms ===

    async def _bridge_room(self, room_id: str, args: list[str]) -> None:
        if len(args) < 3:
            await self._reply(room_id, UNKNOWN_COMMAND)
            return
        target, feed = args[1], args[2]
        try:
            if not is_room_id(target):
                raise ValidationError("Room ID was in the wrong format")
            remote = await self._feed_remote(feed)
            await self.runtime.get_intent().join(target)
            if remote.twitter_type == "hashtag":
                self.scheduler.add_hashtag(remote.get("twitter_hashtag"), target, is_new=True)
            else:
                self.scheduler.add_timeline(remote.get("twitter_user"), target, is_new=True)
            await self.runtime.room_store.link_rooms(MatrixRoom(target), remote)
        except ValidationError as e:
            await self._reply(room_id, str(e))
            return
        except Exception as e:
            logger.error("Couldn't bridge room", room_id=target, feed=feed, error=str(e))
            await self._reply(room_id, "Error occurred while bridging the room.")
            return
        await self._reply(room_id, f"The room is now bridged to {feed}")

    async def _feed_remote(self, feed: str) -> RemoteRoom:
        """Remote room for ``#hashtag`` or ``@screenname``.

        Raises:
            ValidationError: If the feed is neither or the user is unknown
        """
        symbol, name = feed[:1], feed[1:]
        if symbol == "#" and is_twitter_hashtag(name):
            return RemoteRoom(f"hashtag_{name}", {
                "twitter_type": "hashtag",
                "twitter_hashtag": name,
                "twitter_bidirectional": False,
            })
        if symbol == "@" and is_twitter_screenname(name):
            user = await self.profile.get_by_screenname(name)
            if user is None:
                raise ValidationError("Unable to find Twitter feed.")
            return RemoteRoom(f"timeline_{user['id_str']}", {
                "twitter_type": "timeline",
                "twitter_user": user["id_str"],
                "twitter_exclude_replies": False,
                "twitter_bidirectional": False,
            })
        raise ValidationError("You need to specify a valid Twitter username or hashtag.")

    async def _unbridge_room(self, room_id: str, args: list[str]) -> None:
        target = args[1]
        entries = await self.runtime.room_store.get_entries_by_matrix_id(target)
        if len(args) >= 3:
            feed = args[2]
            symbol, name = feed[:1], feed[1:]
            if symbol == "@" and is_twitter_screenname(name):
                user = await self.profile.get_by_screenname(name)
                twitter_id = user["id_str"] if user else None
                entries = [
                    e for e in entries
                    if e.remote.twitter_type == "timeline" and e.remote.get("twitter_user") == twitter_id
                ]
            elif symbol == "#" and is_twitter_hashtag(name):
                entries = [
                    e for e in entries
                    if e.remote.twitter_type == "hashtag"
                    and (e.remote.get("twitter_hashtag") or "").lower() == name.lower()
                ]
            else:
                await self._reply(room_id, "The feed was neither a valid timeline or a valid hashtag.")
                return
        entries = [e for e in entries if e.remote.twitter_type in ("timeline", "hashtag")]
        if not entries:
            await self._reply(room_id, "No linked rooms were found.")
            return

        for entry in entries:
            await self.runtime.room_store.remove_link(target, entry.remote.room_id)
            if entry.remote.twitter_type == "hashtag":
                self.scheduler.remove_hashtag(entry.remote.get("twitter_hashtag"), target)
            else:
                self.scheduler.remove_timeline(entry.remote.get("twitter_user"), target)
        await self._reply(room_id, "Unbridge successful.")
