"""Dispatch of Matrix events to the handler of the room's type."""

from typing import Any

import structlog

from .matrix import EventContext, MatrixRoom, ProvisionedRoom, RoomEntry

logger = structlog.get_logger()


class RoomTypeRouter:
    """Routes events by the ``twitter_type`` of the room they happen in."""

    def __init__(
        self,
        runtime,
        services,
        timeline,
        hashtag,
        direct_message,
        alias_prefix: str = "_twitter_",
    ):
        """Initialize router.

        Args:
            runtime: BridgeRuntime
            services: AccountServicesHandler
            timeline: TimelineHandler
            hashtag: HashtagHandler
            direct_message: DirectMessageHandler
            alias_prefix: Localpart prefix of provisioned aliases
        """
        self.runtime = runtime
        self.services = services
        self.timeline = timeline
        self.hashtag = hashtag
        self.direct_message = direct_message
        self.alias_prefix = alias_prefix
        self._handlers = {
            "service": services,
            "timeline": timeline,
            "user_timeline": timeline,
            "hashtag": hashtag,
            "dm": direct_message,
        }

    def handler_for(self, twitter_type: str | None):
        return self._handlers.get(twitter_type)

    async def _context(self, event: dict[str, Any]) -> EventContext:
        entries = await self.runtime.room_store.get_entries_by_matrix_id(event["room_id"])
        return EventContext(
            sender=event.get("sender", ""),
            room_id=event["room_id"],
            remotes=[entry.remote for entry in entries],
        )

    async def on_event(self, event: dict[str, Any]) -> bool:
        """Handle one event pushed by the homeserver.

        Returns:
            True if a handler was called
        """
        event_type = event.get("type")
        if event_type == "m.room.member":
            membership = (event.get("content") or {}).get("membership")
            if membership == "invite":
                return await self._on_invite(event)
            if membership == "leave":
                return await self._on_leave(event)
            return False
        if event_type == "m.room.message":
            return await self._on_message(event)
        return False

    async def _on_invite(self, event: dict[str, Any]) -> bool:
        invitee = event.get("state_key")
        if event.get("sender") == self.runtime.bot_user_id:
            # Our own invites coming back
            return False

        ctx = await self._context(event)
        if ctx.remote is not None:
            logger.warning(
                "Got an invite to an already bridged room",
                room_id=ctx.room_id,
                invitee=invitee,
            )
            return False
        if invitee == self.runtime.bot_user_id:
            await self.services.process_invite(event, ctx)
            return True
        if invitee and self.runtime.is_bridge_user(invitee):
            await self.direct_message.process_invite(event, ctx)
            return True
        return False

    async def _on_leave(self, event: dict[str, Any]) -> bool:
        if self.runtime.is_bridge_user(event.get("state_key") or ""):
            return False
        ctx = await self._context(event)
        if ctx.remote is None:
            return False
        handler = self.handler_for(ctx.remote.twitter_type)
        if handler is None or not hasattr(handler, "process_leave"):
            return False
        await handler.process_leave(event, ctx)
        return True

    async def _on_message(self, event: dict[str, Any]) -> bool:
        if self.runtime.is_bridge_user(event.get("sender", "")):
            return False
        ctx = await self._context(event)
        remote = ctx.remote
        if remote is None:
            logger.debug("Got message from a non-bridged room", room_id=ctx.room_id)
            return False

        twitter_type = remote.twitter_type
        if twitter_type == "user_timeline" and remote.get("twitter_owner") != ctx.sender:
            logger.debug(
                "Ignoring message of a non-owner in a user timeline room",
                room_id=ctx.room_id,
                sender=ctx.sender,
            )
            return False

        handler = self.handler_for(twitter_type)
        if handler is None:
            logger.warning("Unknown room type", room_id=ctx.room_id, twitter_type=twitter_type)
            return False
        await handler.process_message(event, ctx)
        return True

    # === Aliases ===

    async def on_alias_query(self, alias_localpart: str) -> ProvisionedRoom | None:
        """Provision a room for an alias in the bridge's namespace."""
        timeline_prefix = f"{self.alias_prefix}@"
        hashtag_prefix = f"{self.alias_prefix}#"
        if alias_localpart.startswith(timeline_prefix):
            return await self.timeline.process_alias_query(alias_localpart[len(timeline_prefix):])
        if alias_localpart.startswith(hashtag_prefix):
            return await self.hashtag.process_alias_query(alias_localpart[len(hashtag_prefix):])
        logger.info("Alias is not in a known namespace", alias=alias_localpart)
        return None

    async def on_room_created(self, alias: str, room_id: str, provisioned: ProvisionedRoom) -> None:
        """Link a provisioned room and let its handler finish the setup."""
        entry = RoomEntry(matrix=MatrixRoom(room_id), remote=provisioned.remote)
        await self.runtime.room_store.link_rooms(entry.matrix, entry.remote)
        handler = self.handler_for(provisioned.remote.twitter_type)
        if handler is not None and hasattr(handler, "on_room_created"):
            await handler.on_room_created(alias, entry)
