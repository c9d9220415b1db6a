"""Authenticated Twitter clients for the application and for linked users."""

import asyncio
import time
from pathlib import Path

import structlog

from .config import TwitterAuthConfig
from .errors import AuthError, RemoteUnavailable
from .twitter_client import TwitterApiError, TwitterClient

logger = structlog.get_logger()


def _is_rejection(error: Exception) -> bool:
    return isinstance(error, AuthError) or (
        isinstance(error, TwitterApiError) and error.status_code == 401
    )


class ClientFactory:
    """Creates and caches ``TwitterClient`` instances.

    The application client uses an app-only bearer token persisted in
    ``bearer_token_file``. User clients are signed with the user's stored
    OAuth tokens and re-verified once they are older than
    ``client_reverify_seconds``.
    """

    def __init__(self, config: TwitterAuthConfig, store, client_cls=TwitterClient):
        """Initialize client factory.

        Args:
            config: Twitter application settings
            store: BridgeStore holding linked accounts
            client_cls: Client class to instantiate
        """
        self.config = config
        self.store = store
        self.client_cls = client_cls
        # Set to a TwitterProfile to refresh profiles after verification
        self.profile = None
        self._app_client: TwitterClient | None = None
        self._app_lock = asyncio.Lock()
        self._clients: dict[str, TwitterClient] = {}
        self._user_locks: dict[str, asyncio.Lock] = {}
        self._background: set[asyncio.Task] = set()

    async def get_client(self, user_id: str | None = None) -> TwitterClient:
        """Get the application client (no user) or a user's client."""
        if user_id is None:
            return await self.get_application_client()
        return await self._get_twitter_client(user_id)

    def _new_client(self, **kwargs) -> TwitterClient:
        return self.client_cls(
            consumer_key=self.config.consumer_key,
            consumer_secret=self.config.consumer_secret,
            api_base_url=self.config.api_base_url,
            stream_base_url=self.config.stream_base_url,
            **kwargs,
        )

    def new_oauth_client(self, access_token: str = "", access_token_secret: str = "") -> TwitterClient:
        """Uncached client for the account link flow; the caller closes it."""
        return self._new_client(access_token=access_token, access_token_secret=access_token_secret)

    # === Application client ===

    async def get_application_client(self) -> TwitterClient:
        async with self._app_lock:
            if self._app_client is None:
                token = await self._get_bearer_token()
                logger.info("Retrieved bearer token")
                self._app_client = self._new_client(bearer_token=token)
            return self._app_client

    def _read_token_file(self) -> str | None:
        try:
            token = Path(self.config.bearer_token_file).read_text(encoding="utf-8").strip()
        except OSError as e:
            logger.warning("Token file not found or unreadable", error=str(e))
            return None
        return token or None

    def _write_token_file(self, token: str) -> None:
        try:
            Path(self.config.bearer_token_file).write_text(token, encoding="utf-8")
        except OSError as e:
            logger.error("Could not write bearer token file", error=str(e))

    def _remove_token_file(self) -> None:
        try:
            Path(self.config.bearer_token_file).unlink()
        except OSError:
            logger.warning("Could not delete bearer token file")

    async def _get_bearer_token(self) -> str:
        """Read, validate and if needed replace the bearer token.

        Raises:
            AuthError: If the token could not be validated or obtained
        """
        token = self._read_token_file()
        if token is None:
            return await self._request_bearer_token()

        probe = self._new_client(bearer_token=token)
        try:
            status = await probe.get_rate_limit_status()
        finally:
            await probe.close()

        if status == 200:
            logger.info("Existing bearer token OK")
            return token
        if status == 401:
            logger.warning("Authentication with existing bearer token failed")
            self._remove_token_file()
            return await self._request_bearer_token()
        raise AuthError(
            f"Unexpected response {status} to application/rate_limit_status "
            "during bearer token validation"
        )

    async def _request_bearer_token(self) -> str:
        client = self._new_client()
        try:
            token = await client.request_bearer_token()
        except (TwitterApiError, RemoteUnavailable) as e:
            raise AuthError(f"Could not obtain bearer token: {e}") from e
        finally:
            await client.close()
        self._write_token_file(token)
        return token

    # === User clients ===

    async def _get_twitter_client(self, user_id: str) -> TwitterClient:
        lock = self._user_locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            return await self._verified_client(user_id)

    async def _verified_client(self, user_id: str, retry: bool = True) -> TwitterClient:
        """Return the cached client of a user, verifying it when it is stale.

        Raises:
            AuthError: If the user is not linked or the credentials were rejected
            RemoteUnavailable: If Twitter could not be reached
            TwitterApiError: For other API failures during verification
        """
        account = await self.store.get_twitter_account(user_id)
        if account is None or not account.access_token:
            raise AuthError(f"{user_id} has no linked Twitter account")

        cached = self._clients.get(user_id)
        client = cached
        if client is None:
            client = self._new_client(
                access_token=account.access_token,
                access_token_secret=account.access_token_secret or "",
            )

        now = time.monotonic()
        if client.last_auth and now - client.last_auth < self.config.client_reverify_seconds:
            return client

        logger.info("Verifying user credentials", user_id=user_id)
        try:
            profile = await client.verify_credentials()
        except (TwitterApiError, RemoteUnavailable, AuthError) as e:
            if not _is_rejection(e):
                logger.warning("Could not verify user credentials", user_id=user_id, error=str(e))
                if cached is None:
                    await client.close()
                raise
            logger.info("User credentials are no longer valid", user_id=user_id, error=str(e))
            self.invalidate_twitter_client(user_id)
            await client.close()
            if retry:
                return await self._verified_client(user_id, retry=False)
            raise AuthError(f"Could not authenticate {user_id} with Twitter: {e}") from e

        client.profile = profile
        client.last_auth = now
        self._clients[user_id] = client
        self._refresh_profile(profile)
        return client

    def _refresh_profile(self, profile) -> None:
        if self.profile is None:
            return
        task = asyncio.create_task(self.profile.update(profile))
        self._background.add(task)
        task.add_done_callback(self._profile_done)

    def _profile_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Profile refresh failed", error=str(task.exception()))

    def invalidate_twitter_client(self, user_id: str) -> None:
        self._clients.pop(user_id, None)

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
        if self._app_client is not None:
            await self._app_client.close()
            self._app_client = None
