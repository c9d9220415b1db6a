"""Account linking between Matrix users and Twitter accounts.

Uses the OAuth 1.0a PIN flow: the user opens an authorization URL, Twitter
shows a PIN, and the user sends the PIN back to the bridge bot.
"""

from dataclasses import dataclass

import structlog

from .errors import RemoteUnavailable
from .models import AccessType
from .twitter_client import TwitterApiError, TwitterUser

logger = structlog.get_logger()


class IdentityLinkError(Exception):
    """Error during account linking."""
    pass


@dataclass
class LinkRequest:
    """A started link waiting for the user's PIN."""
    oauth_token: str
    authorization_url: str
    access_type: AccessType


class IdentityService:
    """Links, verifies and unlinks Twitter accounts of Matrix users."""

    def __init__(self, store, client_factory, user_stream=None):
        """Initialize identity service.

        Args:
            store: BridgeStore with linked accounts
            client_factory: ClientFactory building OAuth clients
            user_stream: UserStream detached when credentials change
        """
        self.store = store
        self.client_factory = client_factory
        self.user_stream = user_stream

    def _detach(self, user_id: str) -> None:
        if self.user_stream is not None:
            self.user_stream.detach(user_id)

    async def initiate_link(self, user_id: str, access_type: str) -> LinkRequest:
        """Start linking a Twitter account.

        Args:
            user_id: Matrix user ID
            access_type: ``read``, ``write`` or ``dm``

        Returns:
            LinkRequest with the URL the user must open

        Raises:
            IdentityLinkError: If the access type is invalid, the user is
                already linked or Twitter refused the request
        """
        try:
            access = AccessType(access_type)
        except ValueError:
            raise IdentityLinkError("You must specify either read, write or dm access.")

        existing = await self.store.get_twitter_account(user_id)
        if existing is not None and existing.access_token:
            raise IdentityLinkError(f"Account already exists for user {user_id}")

        client = self.client_factory.new_oauth_client()
        try:
            token, secret = await client.get_request_token(access.value, callback="oob")
            url = client.get_authenticate_url(token)
        except (TwitterApiError, RemoteUnavailable) as e:
            raise IdentityLinkError(f"Could not retrieve an OAuth URL for your account: {e}")
        finally:
            await client.close()

        # Credentials are about to change
        self._detach(user_id)
        await self.store.set_pending_account(user_id, token, secret, access)

        logger.info("Initiated Twitter link", user_id=user_id, access_type=access.value)
        return LinkRequest(oauth_token=token, authorization_url=url, access_type=access)

    async def complete_link(self, user_id: str, pin: str) -> TwitterUser:
        """Finish a link with the PIN shown by Twitter.

        Returns:
            The linked Twitter user

        Raises:
            IdentityLinkError: If no link was started or the PIN is rejected
        """
        account = await self.store.get_twitter_account(user_id)
        if account is None or not account.oauth_token or not account.oauth_secret:
            raise IdentityLinkError("You must request access with 'account.link' first.")

        client = self.client_factory.new_oauth_client()
        try:
            access_token, access_secret = await client.get_access_token(
                account.oauth_token, account.oauth_secret, pin
            )
        except (TwitterApiError, RemoteUnavailable) as e:
            raise IdentityLinkError(f"Failed to exchange PIN: {e}")
        finally:
            await client.close()

        verifier = self.client_factory.new_oauth_client(
            access_token=access_token, access_token_secret=access_secret
        )
        try:
            profile = await verifier.verify_credentials()
        except (TwitterApiError, RemoteUnavailable) as e:
            raise IdentityLinkError(f"Twitter account could not be authenticated: {e}")
        finally:
            await verifier.close()

        await self.store.set_twitter_account(user_id, profile.id, access_token, access_secret)
        self.client_factory.invalidate_twitter_client(user_id)
        logger.info(
            "Twitter link completed",
            user_id=user_id,
            twitter_id=profile.id,
            screen_name=profile.screen_name,
        )
        return profile

    async def unlink(self, user_id: str) -> bool:
        """Forget a user's account and personal timeline room.

        Returns:
            True if an account was removed
        """
        removed = await self.store.remove_twitter_account(user_id)
        await self.store.remove_timeline_room(user_id)
        self._detach(user_id)
        self.client_factory.invalidate_twitter_client(user_id)
        logger.info("Twitter link removed", user_id=user_id, removed=removed)
        return removed
