"""Tests for user stream supervision."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from matrix_twitter.errors import AuthError
from matrix_twitter.models import TimelineRoom
from matrix_twitter.stream import (
    BACKOFF_NOTIFY_USER_AT,
    MSG_DISRUPTED,
    MSG_TOKEN_REVOKED,
    STREAM_CONCERN_TIMER,
    STREAM_LOCKOUT_RETRY_INTERVAL,
    DirectMessageEvent,
    DisconnectEvent,
    OtherEvent,
    TweetEvent,
    UserStream,
    WarningEvent,
    parse_stream_message,
)
from matrix_twitter.twitter_client import DirectMessage, TwitterUser

USER_ID = "@alice:example.org"


class FakeStreamClient:
    """Client whose stream yields a fixed list of events."""

    def __init__(self, events, error: Exception | None = None):
        self.events = events
        self.error = error
        self.options = None

    async def stream_user(self, with_="user", replies="all", on_keepalive=None):
        self.options = (with_, replies)
        for event in self.events:
            yield event
        if self.error is not None:
            raise self.error
        # Stay connected until cancelled
        await asyncio.Event().wait()


@pytest.fixture
def timeline_room() -> TimelineRoom:
    return TimelineRoom(user_id=USER_ID, room_id="!tl:example.org", with_filter="followings", replies="all")


@pytest.fixture
def stream_store(timeline_room) -> MagicMock:
    store = MagicMock()
    store.get_timeline_room = AsyncMock(return_value=timeline_room)
    store.get_linked_user_ids = AsyncMock(return_value=[USER_ID])
    return store


@pytest.fixture
def pipeline() -> MagicMock:
    pipeline = MagicMock()
    pipeline.process = AsyncMock(return_value=1)
    return pipeline


@pytest.fixture
def direct_messages() -> MagicMock:
    dms = MagicMock()
    dms.process_dm = AsyncMock(return_value=True)
    return dms


@pytest.fixture
def notify() -> AsyncMock:
    return AsyncMock(return_value=True)


def make_stream(client, store, pipeline, direct_messages, notify) -> UserStream:
    factory = MagicMock()
    factory.get_client = AsyncMock(return_value=client)
    return UserStream(factory, store, pipeline, direct_messages, notify)


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


class TestParseStreamMessage:
    """Tests for classifying stream payloads."""

    def test_tweet(self):
        event = parse_stream_message({
            "id_str": "1",
            "text": "hello",
            "user": {"id_str": "42", "screen_name": "a", "name": "A"},
        })
        assert isinstance(event, TweetEvent)
        assert event.tweet.user.id == "42"

    def test_direct_message(self):
        user = {"id_str": "42", "screen_name": "a", "name": "A"}
        event = parse_stream_message({"direct_message": {
            "id_str": "5", "text": "psst", "sender": user, "recipient": dict(user, id_str="43"),
        }})
        assert isinstance(event, DirectMessageEvent)
        assert event.message.text == "psst"

    def test_warning(self):
        event = parse_stream_message({"warning": {"code": "FALLING_BEHIND", "message": "slow"}})
        assert event == WarningEvent(code="FALLING_BEHIND", message="slow")

    def test_disconnect(self):
        event = parse_stream_message({"disconnect": {"code": 2, "reason": "duplicate"}})
        assert event == DisconnectEvent(code=2, reason="duplicate")

    def test_other_event(self):
        event = parse_stream_message({"event": "favorite", "source": {}})
        assert isinstance(event, OtherEvent)
        assert event.kind == "favorite"

    def test_unknown_payload(self):
        event = parse_stream_message({"friends": [1, 2]})
        assert isinstance(event, OtherEvent)
        assert event.kind == "friends"


class TestAttach:
    """Tests for attaching and detaching streams."""

    async def test_attach_and_detach(self, stream_store, pipeline, direct_messages, notify):
        client = FakeStreamClient([])
        stream = make_stream(client, stream_store, pipeline, direct_messages, notify)

        assert await stream.attach(USER_ID) is True
        assert stream.is_attached(USER_ID)
        await settle()
        assert client.options == ("followings", "all")

        assert await stream.attach(USER_ID) is False

        stream.detach(USER_ID)
        assert not stream.is_attached(USER_ID)
        await stream.stop()

    async def test_attach_without_timeline_room(
        self, stream_store, pipeline, direct_messages, notify
    ):
        stream_store.get_timeline_room = AsyncMock(return_value=None)
        stream = make_stream(FakeStreamClient([]), stream_store, pipeline, direct_messages, notify)
        assert await stream.attach(USER_ID) is False
        assert not stream.is_attached(USER_ID)

    async def test_attach_with_bad_credentials(
        self, stream_store, pipeline, direct_messages, notify
    ):
        stream = make_stream(FakeStreamClient([]), stream_store, pipeline, direct_messages, notify)
        stream.client_factory.get_client = AsyncMock(side_effect=AuthError("revoked"))
        assert await stream.attach(USER_ID) is False
        assert not stream.is_attached(USER_ID)

    async def test_attach_all(self, stream_store, pipeline, direct_messages, notify):
        stream = make_stream(FakeStreamClient([]), stream_store, pipeline, direct_messages, notify)
        await stream.attach_all()
        assert stream.is_attached(USER_ID)
        await stream.stop()
        assert not stream.is_attached(USER_ID)


class TestStreamEvents:
    """Tests for handling stream events."""

    async def test_tweet_goes_to_timeline_room(
        self, stream_store, pipeline, direct_messages, notify, tweet_factory
    ):
        tweet = tweet_factory("1001")
        client = FakeStreamClient([TweetEvent(tweet)])
        stream = make_stream(client, stream_store, pipeline, direct_messages, notify)
        await stream.attach(USER_ID)
        await settle()

        pipeline.process.assert_awaited_once()
        args, kwargs = pipeline.process.call_args
        assert args == ("!tl:example.org", tweet)
        assert kwargs["depth"] == 0
        assert kwargs["client"] is client
        await stream.stop()

    async def test_direct_message_is_forwarded(
        self, stream_store, pipeline, direct_messages, notify
    ):
        user = TwitterUser(id="1", screen_name="a", name="A")
        dm = DirectMessage(id="5", text="hi", sender=user, recipient=user)
        client = FakeStreamClient([DirectMessageEvent(dm)])
        stream = make_stream(client, stream_store, pipeline, direct_messages, notify)
        await stream.attach(USER_ID)
        await settle()

        direct_messages.process_dm.assert_awaited_once_with(dm)
        await stream.stop()

    async def test_token_revoked_is_not_reattached(
        self, stream_store, pipeline, direct_messages, notify
    ):
        client = FakeStreamClient([DisconnectEvent(code=6, reason="revoked")])
        stream = make_stream(client, stream_store, pipeline, direct_messages, notify)
        await stream.attach(USER_ID)
        await settle()

        assert not stream.is_attached(USER_ID)
        assert USER_ID not in stream._retries
        notify.assert_called_once_with(USER_ID, MSG_TOKEN_REVOKED)
        await stream.stop()

    async def test_duplicate_stream_locks_out(
        self, stream_store, pipeline, direct_messages, notify, monkeypatch
    ):
        delays = []
        stream = make_stream(
            FakeStreamClient([DisconnectEvent(code=2, reason="duplicate")]),
            stream_store, pipeline, direct_messages, notify,
        )
        original = stream._schedule_attach
        monkeypatch.setattr(
            stream, "_schedule_attach",
            lambda user_id, delay: (delays.append(delay), original(user_id, delay)),
        )
        await stream.attach(USER_ID)
        await settle()

        assert not stream.is_attached(USER_ID)
        assert delays == [STREAM_LOCKOUT_RETRY_INTERVAL]
        notify.assert_called_once_with(USER_ID, MSG_DISRUPTED)
        await stream.stop()

    async def test_other_disconnect_retries_soon(
        self, stream_store, pipeline, direct_messages, notify, monkeypatch
    ):
        delays = []
        stream = make_stream(
            FakeStreamClient([DisconnectEvent(code=7, reason="admin logout")]),
            stream_store, pipeline, direct_messages, notify,
        )
        monkeypatch.setattr(stream, "_schedule_attach", lambda user_id, delay: delays.append(delay))
        await stream.attach(USER_ID)
        await settle()

        assert delays == [5.0]
        notify.assert_not_called()
        await stream.stop()

    async def test_stream_error_detaches(
        self, stream_store, pipeline, direct_messages, notify, monkeypatch
    ):
        delays = []
        stream = make_stream(
            FakeStreamClient([], error=RuntimeError("connection reset")),
            stream_store, pipeline, direct_messages, notify,
        )
        monkeypatch.setattr(stream, "_schedule_attach", lambda user_id, delay: delays.append(delay))
        await stream.attach(USER_ID)
        await settle()

        assert not stream.is_attached(USER_ID)
        assert delays == [5.0]
        await stream.stop()


class TestBackoff:
    """Tests for retry backoff and keepalives."""

    async def test_backoff_doubles_and_notifies(
        self, stream_store, pipeline, direct_messages, notify, monkeypatch
    ):
        delays = []
        stream = make_stream(FakeStreamClient([]), stream_store, pipeline, direct_messages, notify)
        monkeypatch.setattr(stream, "_schedule_attach", lambda user_id, delay: delays.append(delay))

        for _ in range(5):
            stream._on_error("boom", USER_ID)
        assert delays == [5.0, 10.0, 20.0, 40.0, 80.0]
        notify.assert_not_called()

        stream._on_error("boom", USER_ID)
        assert delays[-1] == 160.0
        assert delays[-1] >= BACKOFF_NOTIFY_USER_AT
        assert notify.call_count == 1
        await settle()

    async def test_expired_keepalive_restarts(
        self, stream_store, pipeline, direct_messages, notify, monkeypatch
    ):
        stream = make_stream(FakeStreamClient([]), stream_store, pipeline, direct_messages, notify)
        monkeypatch.setattr(stream, "_schedule_attach", lambda user_id, delay: None)
        stream._keepalive[USER_ID] = 0.0
        stream._keepalive["@bob:example.org"] = STREAM_CONCERN_TIMER

        expired = stream.check_keepalives(now=STREAM_CONCERN_TIMER + 1)
        assert expired == [USER_ID]
        assert USER_ID not in stream._keepalive
        assert "@bob:example.org" in stream._keepalive
