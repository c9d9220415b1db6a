"""Pytest configuration and fixtures for Matrix <-> Twitter bridge tests."""

import itertools
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from matrix_twitter.client_factory import ClientFactory
from matrix_twitter.config import BridgeConfig, HashtagsConfig, TimelinesConfig
from matrix_twitter.matrix import AppserviceRuntime, MatrixIntent
from matrix_twitter.models import AccessType, Base
from matrix_twitter.storage import BridgeStore, SqlRoomStore
from matrix_twitter.twitter_client import Tweet, TwitterClient, TwitterUser

DOMAIN = "example.org"
BOT_USER_ID = f"@_twitter_bot:{DOMAIN}"


@pytest.fixture
def config() -> BridgeConfig:
    """Create test configuration."""
    return BridgeConfig(
        twitter={
            "consumer_key": "test_consumer_key",
            "consumer_secret": "test_consumer_secret",
        },
        matrix={
            "homeserver_url": "http://localhost:8008",
            "domain": DOMAIN,
            "as_token": "test_as_token",
            "hs_token": "test_hs_token",
        },
        database={"url": "sqlite+aiosqlite:///:memory:"},
        server={"host": "127.0.0.1", "port": 9000},
    )


@pytest_asyncio.fixture
async def session_maker():
    """Create in-memory database session maker for tests."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(engine, expire_on_commit=False)
    yield maker

    await engine.dispose()


@pytest.fixture
def store(session_maker) -> BridgeStore:
    return BridgeStore(session_maker)


@pytest.fixture
def room_store(session_maker) -> SqlRoomStore:
    return SqlRoomStore(session_maker)


def make_intent(user_id: str) -> MagicMock:
    """Create a mock intent acting as ``user_id``."""
    intent = MagicMock(spec=MatrixIntent)
    intent.user_id = user_id
    counter = itertools.count()
    intent.send_event = AsyncMock(side_effect=lambda *args, **kwargs: f"$event{next(counter)}")
    intent.send_message = AsyncMock(side_effect=lambda *args, **kwargs: f"$msg{next(counter)}")
    intent.send_state_event = AsyncMock(return_value="$state")
    intent.ensure_registered = AsyncMock()
    intent.join = AsyncMock()
    intent.leave = AsyncMock()
    intent.invite = AsyncMock()
    intent.create_room = AsyncMock(return_value=f"!created:{DOMAIN}")
    intent.upload_content = AsyncMock(return_value=f"mxc://{DOMAIN}/media")
    intent.set_display_name = AsyncMock()
    intent.set_avatar_url = AsyncMock()
    intent.set_room_name = AsyncMock()
    intent.set_room_topic = AsyncMock()
    intent.set_room_avatar = AsyncMock()
    return intent


@pytest.fixture
def runtime(room_store) -> AppserviceRuntime:
    """Appservice runtime whose intents are mocks, backed by a real room store."""
    runtime = AppserviceRuntime(
        homeserver_url="http://localhost:8008",
        domain=DOMAIN,
        as_token="test_as_token",
        sender_localpart="_twitter_bot",
        user_prefix="_twitter_",
        room_store=room_store,
    )
    intents: dict[str, MagicMock] = {}

    def get_intent(localpart=None):
        user_id = BOT_USER_ID if localpart is None else f"@{localpart}:{DOMAIN}"
        if user_id not in intents:
            intents[user_id] = make_intent(user_id)
        return intents[user_id]

    runtime.get_intent = MagicMock(side_effect=get_intent)
    runtime.get_member_lists = AsyncMock(return_value={})
    runtime.intents = intents
    return runtime


@pytest.fixture
def bot_intent(runtime) -> MagicMock:
    return runtime.get_intent()


@pytest.fixture
def sample_twitter_user() -> TwitterUser:
    """Sample Twitter user."""
    return TwitterUser(
        id="12345678",
        screen_name="testuser",
        name="Test User",
        description="Just testing",
        profile_image_url="https://pbs.twimg.com/profile_images/1/test_normal.jpg",
    )


@pytest.fixture
def tweet_factory():
    """Build tweets with sequential creation times."""

    def make(
        tweet_id: str,
        text: str | None = None,
        user_id: str = "12345678",
        screen_name: str = "testuser",
        second: int | None = None,
        in_reply_to: str | None = None,
        **kwargs,
    ) -> Tweet:
        second = int(tweet_id) % 60 if second is None else second
        return Tweet(
            id=tweet_id,
            text=text if text is not None else f"Tweet number {tweet_id}",
            user=TwitterUser(id=user_id, screen_name=screen_name, name=screen_name.title()),
            created_at=f"Wed Oct 10 20:19:{second:02d} +0000 2018",
            in_reply_to_status_id=in_reply_to,
            **kwargs,
        )

    return make


@pytest.fixture
def mock_twitter_client(sample_twitter_user) -> MagicMock:
    """Create mock Twitter client."""
    client = MagicMock(spec=TwitterClient)
    client.profile = sample_twitter_user
    client.last_auth = 0

    # OAuth methods
    client.get_request_token = AsyncMock(return_value=("request_token", "request_secret"))
    client.get_authenticate_url = MagicMock(
        return_value="https://api.twitter.com/oauth/authenticate?oauth_token=request_token"
    )
    client.get_access_token = AsyncMock(return_value=("access_token", "access_secret"))
    client.verify_credentials = AsyncMock(return_value=sample_twitter_user)

    # Read methods
    client.get_user = AsyncMock(return_value=sample_twitter_user)
    client.get_user_timeline = AsyncMock(return_value=[])
    client.search_hashtag = AsyncMock(return_value=[])
    client.get_status = AsyncMock()

    # Write methods
    ids = itertools.count(1000)
    client.update_status = AsyncMock(
        side_effect=lambda text, in_reply_to_status_id=None: Tweet(
            id=str(next(ids)),
            text=text,
            user=sample_twitter_user,
            in_reply_to_status_id=in_reply_to_status_id,
        )
    )
    client.new_direct_message = AsyncMock()

    client.close = AsyncMock()
    return client


@pytest.fixture
def mock_client_factory(mock_twitter_client) -> MagicMock:
    """Create mock client factory handing out the mock client."""
    factory = MagicMock(spec=ClientFactory)
    factory.get_client = AsyncMock(return_value=mock_twitter_client)
    factory.get_application_client = AsyncMock(return_value=mock_twitter_client)
    factory.new_oauth_client = MagicMock(return_value=mock_twitter_client)
    factory.invalidate_twitter_client = MagicMock()
    factory.close = AsyncMock()
    return factory


@pytest.fixture
def timelines_config() -> TimelinesConfig:
    return TimelinesConfig(fetch_count=100, reply_depth=0)


@pytest.fixture
def hashtags_config() -> HashtagsConfig:
    return HashtagsConfig(fetch_count=100)


@pytest_asyncio.fixture
async def linked_account(store, sample_twitter_user):
    """A Matrix user linked with write access and a cached profile."""
    user_id = f"@alice:{DOMAIN}"
    await store.set_pending_account(user_id, "req", "req_secret", AccessType.WRITE)
    await store.set_twitter_account(
        user_id, sample_twitter_user.id, "access_token", "access_secret"
    )
    await store.cache_user_profile(
        sample_twitter_user.id, sample_twitter_user.screen_name, sample_twitter_user.as_profile()
    )
    return user_id
