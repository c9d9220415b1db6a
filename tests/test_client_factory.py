"""Tests for the client factory."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from matrix_twitter.client_factory import ClientFactory
from matrix_twitter.config import TwitterAuthConfig
from matrix_twitter.errors import AuthError, RemoteUnavailable
from matrix_twitter.models import TwitterAccount
from matrix_twitter.twitter_client import TwitterApiError, TwitterClient


@pytest.fixture
def auth_config(tmp_path) -> TwitterAuthConfig:
    return TwitterAuthConfig(
        consumer_key="key",
        consumer_secret="secret",
        bearer_token_file=str(tmp_path / "bearer.tok"),
        client_reverify_seconds=60,
    )


@pytest.fixture
def created_clients() -> list:
    return []


@pytest.fixture
def client_cls(created_clients, sample_twitter_user) -> MagicMock:
    """Client class recording every instance it creates."""

    def create(**kwargs):
        client = MagicMock(spec=TwitterClient)
        client.kwargs = kwargs
        client.profile = None
        client.last_auth = 0
        client.get_rate_limit_status = AsyncMock(return_value=200)
        client.request_bearer_token = AsyncMock(return_value="new_bearer")
        client.verify_credentials = AsyncMock(return_value=sample_twitter_user)
        client.close = AsyncMock()
        created_clients.append(client)
        return client

    return MagicMock(side_effect=create)


@pytest.fixture
def account_store() -> MagicMock:
    store = MagicMock()
    store.get_twitter_account = AsyncMock(return_value=TwitterAccount(
        user_id="@alice:example.org",
        twitter_id="12345678",
        access_token="access_token",
        access_token_secret="access_secret",
    ))
    return store


class TestApplicationClient:
    """Tests for the bearer token client."""

    async def test_existing_token_is_validated(self, auth_config, account_store, client_cls, created_clients, tmp_path):
        (tmp_path / "bearer.tok").write_text("saved_bearer")
        factory = ClientFactory(auth_config, account_store, client_cls=client_cls)

        client = await factory.get_client()
        probe = created_clients[0]
        probe.get_rate_limit_status.assert_awaited_once()
        probe.close.assert_awaited_once()
        assert client.kwargs["bearer_token"] == "saved_bearer"
        assert client.kwargs["consumer_key"] == "key"

        # Cached
        assert await factory.get_client() is client
        assert len(created_clients) == 2

    async def test_missing_token_is_requested(self, auth_config, account_store, client_cls, tmp_path):
        factory = ClientFactory(auth_config, account_store, client_cls=client_cls)
        client = await factory.get_application_client()
        assert client.kwargs["bearer_token"] == "new_bearer"
        assert (tmp_path / "bearer.tok").read_text() == "new_bearer"

    async def test_rejected_token_is_replaced(
        self, auth_config, account_store, client_cls, created_clients, tmp_path
    ):
        (tmp_path / "bearer.tok").write_text("expired_bearer")
        factory = ClientFactory(auth_config, account_store, client_cls=client_cls)
        original = client_cls.side_effect

        def probe_rejected(**kwargs):
            client = original(**kwargs)
            client.get_rate_limit_status = AsyncMock(return_value=401)
            return client

        client_cls.side_effect = probe_rejected
        client = await factory.get_application_client()
        assert client.kwargs["bearer_token"] == "new_bearer"
        assert (tmp_path / "bearer.tok").read_text() == "new_bearer"

    async def test_unexpected_status(self, auth_config, account_store, client_cls, tmp_path):
        (tmp_path / "bearer.tok").write_text("saved_bearer")
        original = client_cls.side_effect

        def broken(**kwargs):
            client = original(**kwargs)
            client.get_rate_limit_status = AsyncMock(return_value=503)
            return client

        client_cls.side_effect = broken
        factory = ClientFactory(auth_config, account_store, client_cls=client_cls)
        with pytest.raises(AuthError):
            await factory.get_application_client()

    async def test_bearer_request_refused(self, auth_config, account_store, client_cls):
        original = client_cls.side_effect

        def refused(**kwargs):
            client = original(**kwargs)
            client.request_bearer_token = AsyncMock(side_effect=TwitterApiError(403, "Forbidden"))
            return client

        client_cls.side_effect = refused
        factory = ClientFactory(auth_config, account_store, client_cls=client_cls)
        with pytest.raises(AuthError):
            await factory.get_application_client()


class TestUserClients:
    """Tests for per-user clients."""

    async def test_user_client_is_verified_and_cached(
        self, auth_config, account_store, client_cls, created_clients, sample_twitter_user
    ):
        factory = ClientFactory(auth_config, account_store, client_cls=client_cls)
        client = await factory.get_client("@alice:example.org")
        assert client.kwargs["access_token"] == "access_token"
        assert client.kwargs["access_token_secret"] == "access_secret"
        assert client.profile == sample_twitter_user
        assert client.last_auth > 0

        assert await factory.get_client("@alice:example.org") is client
        client.verify_credentials.assert_awaited_once()
        assert len(created_clients) == 1

    async def test_reverified_after_timeout(self, auth_config, account_store, client_cls):
        factory = ClientFactory(auth_config, account_store, client_cls=client_cls)
        client = await factory.get_client("@alice:example.org")
        client.last_auth -= 61
        assert await factory.get_client("@alice:example.org") is client
        assert client.verify_credentials.await_count == 2

    async def test_unlinked_user(self, auth_config, account_store, client_cls):
        account_store.get_twitter_account = AsyncMock(return_value=None)
        factory = ClientFactory(auth_config, account_store, client_cls=client_cls)
        with pytest.raises(AuthError):
            await factory.get_client("@bob:example.org")

    async def test_invalid_credentials(self, auth_config, account_store, client_cls, created_clients):
        original = client_cls.side_effect

        def invalid(**kwargs):
            client = original(**kwargs)
            client.verify_credentials = AsyncMock(side_effect=TwitterApiError(401, "Invalid or expired token."))
            return client

        client_cls.side_effect = invalid
        factory = ClientFactory(auth_config, account_store, client_cls=client_cls)
        with pytest.raises(AuthError):
            await factory.get_client("@alice:example.org")
        # Retried once with a fresh client
        assert len(created_clients) == 2
        for client in created_clients:
            client.close.assert_awaited()

    async def test_concurrent_first_calls_share_one_client(
        self, auth_config, account_store, client_cls, created_clients
    ):
        factory = ClientFactory(auth_config, account_store, client_cls=client_cls)
        first, second = await asyncio.gather(
            factory.get_client("@alice:example.org"),
            factory.get_client("@alice:example.org"),
        )
        assert first is second
        assert len(created_clients) == 1
        first.verify_credentials.assert_awaited_once()

    async def test_outage_keeps_cached_client(self, auth_config, account_store, client_cls, created_clients):
        factory = ClientFactory(auth_config, account_store, client_cls=client_cls)
        client = await factory.get_client("@alice:example.org")
        client.last_auth -= 61
        client.verify_credentials = AsyncMock(side_effect=RemoteUnavailable("Twitter is unavailable"))

        with pytest.raises(RemoteUnavailable):
            await factory.get_client("@alice:example.org")
        client.close.assert_not_awaited()
        assert factory._clients["@alice:example.org"] is client
        assert len(created_clients) == 1

    async def test_server_error_on_first_verification(
        self, auth_config, account_store, client_cls, created_clients
    ):
        original = client_cls.side_effect

        def overloaded(**kwargs):
            client = original(**kwargs)
            client.verify_credentials = AsyncMock(side_effect=TwitterApiError(503, "Over capacity"))
            return client

        client_cls.side_effect = overloaded
        factory = ClientFactory(auth_config, account_store, client_cls=client_cls)
        with pytest.raises(TwitterApiError):
            await factory.get_client("@alice:example.org")
        assert len(created_clients) == 1
        created_clients[0].close.assert_awaited_once()
        assert factory._clients == {}

    async def test_profile_refreshed_after_verification(
        self, auth_config, account_store, client_cls, sample_twitter_user
    ):
        factory = ClientFactory(auth_config, account_store, client_cls=client_cls)
        factory.profile = MagicMock()
        factory.profile.update = AsyncMock(return_value=True)
        await factory.get_client("@alice:example.org")
        for task in list(factory._background):
            await task
        factory.profile.update.assert_awaited_once_with(sample_twitter_user)

    async def test_invalidate_and_close(self, auth_config, account_store, client_cls):
        factory = ClientFactory(auth_config, account_store, client_cls=client_cls)
        client = await factory.get_client("@alice:example.org")
        factory.invalidate_twitter_client("@alice:example.org")
        assert await factory.get_client("@alice:example.org") is not client

        await factory.close()
        assert factory._clients == {}

    def test_new_oauth_client_is_not_cached(self, auth_config, account_store, client_cls):
        factory = ClientFactory(auth_config, account_store, client_cls=client_cls)
        client = factory.new_oauth_client("token", "secret")
        assert client.kwargs["access_token"] == "token"
        assert factory._clients == {}
