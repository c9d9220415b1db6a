"""Twitter profile cache and ghost user profile mirroring."""

from typing import Any

import structlog

from .matrix import upload_content_from_url
from .twitter_client import TwitterApiError, TwitterUser
from .util import format_string_from_object

logger = structlog.get_logger()

ROOMNAME_FORMAT = "[Twitter] %name"
ROOMTOPIC_FORMAT = "%description | https://twitter.com/%screen_name"


def full_size_avatar(url: str) -> str:
    """URL of the original image instead of the small ``_normal`` variant."""
    return url.replace("_normal", "")


class TwitterProfile:
    """Keeps cached profiles, ghost users and timeline rooms in sync with Twitter."""

    def __init__(
        self,
        runtime,
        store,
        client_factory,
        displayname_format: str = "%name (@%screen_name)",
        enable_profile_images: bool = True,
    ):
        """Initialize profile service.

        Args:
            runtime: BridgeRuntime for ghost intents and the room store
            store: BridgeStore with the profile cache
            client_factory: ClientFactory used for profile lookups
            displayname_format: Template of ghost display names
            enable_profile_images: Mirror avatars onto ghosts and rooms
        """
        self.runtime = runtime
        self.store = store
        self.client_factory = client_factory
        self.displayname_format = displayname_format
        self.enable_profile_images = enable_profile_images

    def format_displayname(self, profile: dict[str, Any]) -> str:
        return format_string_from_object(self.displayname_format, _template_values(profile))

    async def update(self, user: TwitterUser) -> bool:
        """Push changes of a Twitter profile to its ghost and rooms.

        Returns:
            True if anything had to be updated
        """
        if user is None:
            raise ValueError("Tried to update a profile without a user")

        new_profile = user.as_profile()
        if not self.enable_profile_images:
            new_profile["profile_image_url_https"] = None

        cached = await self.store.get_profile_by_id(user.id)
        old_profile = cached.profile if cached else None

        update_name = new_profile.get("name") is not None
        update_avatar = new_profile.get("profile_image_url_https") is not None
        update_description = new_profile.get("description") is not None
        if old_profile:
            update_name = update_name and (
                self.format_displayname(old_profile) != self.format_displayname(new_profile)
            )
            update_avatar = update_avatar and (
                old_profile.get("profile_image_url_https")
                != new_profile.get("profile_image_url_https")
            )
            update_description = update_description and (
                old_profile.get("description") != new_profile.get("description")
            )

        if not (update_name or update_avatar or update_description):
            logger.debug("Profile unchanged", screen_name=user.screen_name)
            if cached and cached.stale:
                await self.store.cache_user_profile(user.id, user.screen_name, new_profile)
            return False

        logger.info(
            "Updating profile",
            screen_name=user.screen_name,
            name=update_name,
            avatar=update_avatar,
            description=update_description,
        )
        intent = self.runtime.get_twitter_intent(user.id)
        entries = await self.runtime.room_store.get_entries_by_matrix_room_data(
            {"twitter_user": user.id}
        )
        values = _template_values(new_profile)

        if update_name:
            await intent.set_display_name(self.format_displayname(new_profile))
            for entry in entries:
                await intent.set_room_name(
                    entry.matrix.room_id, format_string_from_object(ROOMNAME_FORMAT, values)
                )

        if update_description:
            for entry in entries:
                await intent.set_room_topic(
                    entry.matrix.room_id, format_string_from_object(ROOMTOPIC_FORMAT, values)
                )

        if update_avatar:
            image_url = full_size_avatar(new_profile["profile_image_url_https"])
            uploaded = await upload_content_from_url(intent, image_url)
            await intent.set_avatar_url(uploaded.mxc_url)
            for entry in entries:
                await intent.set_room_avatar(entry.matrix.room_id, uploaded.mxc_url)

        await self.store.cache_user_profile(user.id, user.screen_name, new_profile)
        return True

    async def get_by_id(self, twitter_id: str) -> dict[str, Any] | None:
        """Get a profile, asking Twitter only if the cache is missing or stale."""
        cached = await self.store.get_profile_by_id(twitter_id)
        if cached is not None and not cached.stale:
            return cached.profile
        return await self._get_profile(user_id=twitter_id)

    async def get_by_screenname(self, screen_name: str) -> dict[str, Any] | None:
        cached = await self.store.get_profile_by_name(screen_name)
        if cached is not None and not cached.stale:
            return cached.profile
        return await self._get_profile(screen_name=screen_name)

    async def _get_profile(self, **lookup) -> dict[str, Any] | None:
        client = await self.client_factory.get_client()
        try:
            user = await client.get_user(**lookup)
        except TwitterApiError as e:
            logger.error("users/show failed", lookup=lookup, error=str(e))
            return None
        if user is None:
            return None
        try:
            await self.update(user)
        except Exception as e:
            logger.warning("Could not update profile", twitter_id=user.id, error=str(e))
        return user.as_profile()


def _template_values(profile: dict[str, Any]) -> dict[str, Any]:
    return {
        key: "" if value is None else value
        for key, value in profile.items()
        if isinstance(value, (str, int, float)) or value is None
    }
