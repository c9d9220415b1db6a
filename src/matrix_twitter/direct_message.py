"""Direct messages between Twitter users, bridged into per-pair rooms."""

import asyncio

import structlog

from .dedup import DedupCache
from .errors import (
    AuthError,
    NotLinkedError,
    ReadOnlyAccountError,
    RemoteUnavailable,
)
from .matrix import MatrixRoom, RemoteRoom
from .models import AccessType
from .twitter_client import DirectMessage as TwitterDirectMessage
from .twitter_client import TwitterApiError, TwitterUser

logger = structlog.get_logger()


def dm_users_key(*twitter_ids: str) -> str:
    """Key of a conversation: the participants' ids, sorted and joined by ``;``."""
    return ";".join(sorted(twitter_ids))


class DirectMessage:
    """Receives DMs from user streams and sends DMs typed in DM rooms."""

    def __init__(self, runtime, store, client_factory, profile=None):
        """Initialize DM handler.

        Args:
            runtime: BridgeRuntime for ghost intents and room links
            store: BridgeStore with DM rooms and linked accounts
            client_factory: ClientFactory providing user clients
            profile: TwitterProfile refreshed for DM participants
        """
        self.runtime = runtime
        self.store = store
        self.client_factory = client_factory
        self.profile = profile
        # Last text sent by the bridge per conversation, to skip its echo
        self._sent_dms = DedupCache(capacity=1, evict_chunk=1)
        self._background: set[asyncio.Task] = set()

    async def can_use(self, user_id: str | None) -> bool:
        """Check the user may send DMs.

        Raises:
            NotLinkedError: If no account is linked
            ReadOnlyAccountError: If the account lacks DM access
        """
        if user_id is None:
            raise NotLinkedError("User isn't known by the bridge")
        account = await self.store.get_twitter_account(user_id)
        if account is None or not account.access_token:
            raise NotLinkedError("Matrix account isn't linked to any Twitter account")
        if AccessType(account.access_type) != AccessType.DM:
            raise ReadOnlyAccountError(
                f"Account only has {AccessType(account.access_type).value} permissions",
                notify="Your account doesn't have the correct permission level to send DMs.",
            )
        return True

    async def set_room(self, sender: TwitterUser, recipient: TwitterUser, room_id: str) -> str:
        """Make ``room_id`` the room of a conversation, replacing any previous one."""
        users = dm_users_key(sender.id, recipient.id)
        if await self.store.get_dm_room(users):
            await self.store.remove_dm_room(users)
        await self.store.add_dm_room(room_id, users)
        await self.runtime.room_store.link_rooms(
            MatrixRoom(room_id),
            RemoteRoom(f"dm_{users}", {"twitter_type": "dm", "twitter_users": users}),
        )
        return room_id

    async def get_room(self, sender: TwitterUser, recipient: TwitterUser) -> str:
        """Get the room of a conversation, creating it if needed."""
        users = dm_users_key(sender.id, recipient.id)
        room_id = await self.store.get_dm_room(users)
        if room_id:
            return room_id
        room_id = await self._create_dm_room(sender, recipient)
        return await self.set_room(sender, recipient, room_id)

    async def _create_dm_room(self, sender: TwitterUser, recipient: TwitterUser) -> str:
        logger.info(
            "Creating a new room for DMs",
            sender=sender.screen_name,
            recipient=recipient.screen_name,
        )
        invitees = [
            self.runtime.twitter_user_id(sender.id),
            self.runtime.twitter_user_id(recipient.id),
        ]
        for twitter_id in (sender.id, recipient.id):
            user_id = await self.store.get_matrixid_from_twitterid(twitter_id)
            if user_id is not None and user_id not in invitees:
                invitees.append(user_id)

        intent = self.runtime.get_twitter_intent(sender.id)
        own_id = intent.user_id
        return await intent.create_room({
            "invite": [user_id for user_id in invitees if user_id != own_id],
            "is_direct": True,
            "name": f"[Twitter] DM {sender.screen_name} : {recipient.screen_name}",
            "visibility": "private",
            "initial_state": [{
                "type": "m.room.join_rules",
                "content": {"join_rule": "invite"},
                "state_key": "",
            }],
        })

    def _refresh_profile(self, user: TwitterUser) -> None:
        if self.profile is None:
            return
        task = asyncio.create_task(self.profile.update(user))
        self._background.add(task)
        task.add_done_callback(self._profile_done)

    def _profile_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Profile update failed", error=str(task.exception()))

    async def process_dm(self, msg: TwitterDirectMessage) -> bool:
        """Put a received DM into its conversation room.

        Returns:
            True if the DM was delivered
        """
        users = dm_users_key(msg.sender.id, msg.recipient.id)
        self._refresh_profile(msg.sender)
        self._refresh_profile(msg.recipient)

        if self._sent_dms.contains(users, msg.text):
            logger.debug("DM was sent by the bridge, ignoring", users=users, dm_id=msg.id)
            return False

        try:
            room_id = await self.get_room(msg.sender, msg.recipient)
            intent = self.runtime.get_twitter_intent(msg.sender.id)
            logger.debug(
                "Received DM",
                sender=msg.sender.screen_name,
                recipient=msg.recipient.screen_name,
            )
            await intent.send_message(room_id, {"msgtype": "m.text", "body": msg.text})
        except Exception as e:
            logger.error("Couldn't process incoming DM", users=users, error=str(e))
            return False
        return True

    async def send(self, user_id: str, room_id: str, text: str) -> bool:
        """Send a DM on a user's behalf from one of their DM rooms.

        Returns:
            True if the DM was posted
        """
        users = await self.store.get_users_from_dm_room(room_id)
        if users is None:
            logger.error("DM sent from a room that is not a DM room", user_id=user_id, room_id=room_id)
            return False

        try:
            client = await self.client_factory.get_client(user_id)
        except (AuthError, TwitterApiError, RemoteUnavailable) as e:
            logger.error("Failed to send DM", user_id=user_id, error=str(e))
            return False

        others = [twitter_id for twitter_id in users.split(";") if twitter_id != client.profile.id]
        if not others:
            logger.error("DM room has no other participant", room_id=room_id, users=users)
            return False

        logger.info(
            "Sending DM",
            sender=client.profile.screen_name,
            recipient=others[0],
        )
        try:
            await client.new_direct_message(others[0], text)
        except (TwitterApiError, RemoteUnavailable) as e:
            logger.error("direct_messages/new failed", user_id=user_id, error=str(e))
            return False
        self._sent_dms.push(users, text)
        return True
