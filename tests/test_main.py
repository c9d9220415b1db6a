"""Tests for the bridge application and its HTTP API."""

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from aiohttp import test_utils

from matrix_twitter.main import MAX_SEEN_TRANSACTIONS, TwitterBridge
from matrix_twitter.matrix import MatrixRoom, ProvisionedRoom, RemoteRoom
from matrix_twitter.router import RoomTypeRouter
from matrix_twitter.scheduler import FeedScheduler

TOKEN = "test_hs_token"


@pytest.fixture
def bridge(config, runtime, store, mock_client_factory, timelines_config, hashtags_config) -> TwitterBridge:
    """Bridge wired with a mock runtime instead of running setup()."""
    bridge = TwitterBridge(config)
    bridge.runtime = runtime
    bridge.store = store
    bridge.client_factory = mock_client_factory
    bridge.pipeline = MagicMock()
    bridge.pipeline.running = True
    bridge.pipeline.msg_queue = []
    bridge.scheduler = FeedScheduler(
        timelines_config, hashtags_config, store, mock_client_factory, bridge.pipeline, runtime
    )
    bridge.profile = MagicMock()
    bridge.profile.get_by_id = AsyncMock(return_value={"id_str": "42", "screen_name": "jack", "name": "Jack"})
    bridge.profile.get_by_screenname = AsyncMock(return_value={"id_str": "42", "screen_name": "jack"})
    bridge.profile.format_displayname = MagicMock(return_value="Jack (@jack)")
    bridge.router = MagicMock(spec=RoomTypeRouter)
    return bridge


@pytest_asyncio.fixture
async def client(bridge):
    async with test_utils.TestClient(test_utils.TestServer(bridge.create_app())) as client:
        yield client


class TestRestoreRooms:
    """Tests for resuming bridged rooms on startup."""

    async def test_restore(self, bridge, room_store):
        await room_store.link_rooms(
            MatrixRoom("!tl:example.org"),
            RemoteRoom("timeline_42", {
                "twitter_type": "timeline", "twitter_user": "42", "twitter_exclude_replies": True,
            }),
        )
        await room_store.link_rooms(
            MatrixRoom("!tag:example.org"),
            RemoteRoom("hashtag_Matrix", {"twitter_type": "hashtag", "twitter_hashtag": "Matrix"}),
        )
        await room_store.link_rooms(
            MatrixRoom("!bad:example.org"),
            RemoteRoom("timeline_jack", {"twitter_type": "timeline", "twitter_user": "jack"}),
        )
        await room_store.link_rooms(
            MatrixRoom("!mine:example.org"),
            RemoteRoom("tl_@alice:example.org", {"twitter_type": "user_timeline"}),
        )

        assert await bridge.restore_rooms() == 2
        timelines = bridge.scheduler.timelines
        assert [(t.id, t.rooms, t.exclude_replies) for t in timelines] == [
            ("42", ["!tl:example.org"], True)
        ]
        assert [h.id for h in bridge.scheduler.hashtags] == ["matrix"]

        entries = await room_store.get_entries_by_matrix_id("!mine:example.org")
        assert entries[0].remote.get("twitter_bidirectional") is True


class TestTransactions:
    """Tests for events pushed by the homeserver."""

    def test_mark_transaction(self, bridge):
        assert bridge._mark_transaction("1") is True
        assert bridge._mark_transaction("1") is False

    def test_seen_transactions_are_bounded(self, bridge):
        for i in range(MAX_SEEN_TRANSACTIONS + 1):
            bridge._mark_transaction(str(i))
        assert len(bridge._seen_transactions) == MAX_SEEN_TRANSACTIONS + 1 - MAX_SEEN_TRANSACTIONS // 10
        assert bridge._mark_transaction("0") is True

    async def test_requires_token(self, client, bridge):
        resp = await client.put("/_matrix/app/v1/transactions/1", json={"events": []})
        assert resp.status == 403
        assert (await resp.json())["errcode"] == "M_FORBIDDEN"

        resp = await client.put("/_matrix/app/v1/transactions/1?access_token=wrong", json={"events": []})
        assert resp.status == 403

    async def test_events_are_routed_once(self, client, bridge):
        events = [{"type": "m.room.message", "room_id": "!a:example.org"}, {"type": "m.room.member"}]
        bridge.router.on_event = AsyncMock(side_effect=[True, RuntimeError("broken handler")])

        resp = await client.put(
            f"/_matrix/app/v1/transactions/txn1?access_token={TOKEN}", json={"events": events}
        )
        assert resp.status == 200
        assert bridge.router.on_event.await_count == 2

        resp = await client.put(
            "/transactions/txn1", json={"events": events}, headers={"Authorization": f"Bearer {TOKEN}"}
        )
        assert resp.status == 200
        assert bridge.router.on_event.await_count == 2

    async def test_invalid_json(self, client):
        resp = await client.put(f"/_matrix/app/v1/transactions/2?access_token={TOKEN}", data=b"nope")
        assert resp.status == 400


class TestQueries:
    """Tests for alias and user queries."""

    async def test_room_query(self, client, bridge, bot_intent):
        provisioned = ProvisionedRoom(creation_opts={"name": "[Twitter] #matrix"}, remote=RemoteRoom("hashtag_matrix"))
        bridge.router.on_alias_query = AsyncMock(return_value=provisioned)

        resp = await client.get(f"/_matrix/app/v1/rooms/%23_twitter_%23matrix:example.org?access_token={TOKEN}")
        assert resp.status == 200
        bridge.router.on_alias_query.assert_awaited_once_with("_twitter_#matrix")
        bot_intent.create_room.assert_awaited_once_with({"name": "[Twitter] #matrix"})
        bridge.router.on_room_created.assert_awaited_once_with(
            "#_twitter_#matrix:example.org", "!created:example.org", provisioned
        )

    async def test_unknown_alias(self, client, bridge):
        bridge.router.on_alias_query = AsyncMock(return_value=None)
        resp = await client.get(f"/_matrix/app/v1/rooms/%23other:example.org?access_token={TOKEN}")
        assert resp.status == 404

    async def test_user_query(self, client, runtime):
        resp = await client.get(f"/_matrix/app/v1/users/@_twitter_42:example.org?access_token={TOKEN}")
        assert resp.status == 200
        ghost = runtime.get_twitter_intent("42")
        ghost.ensure_registered.assert_awaited_once()
        ghost.set_display_name.assert_awaited_once_with("Jack (@jack)")

    async def test_user_query_outside_namespace(self, client):
        resp = await client.get(f"/_matrix/app/v1/users/@bob:example.org?access_token={TOKEN}")
        assert resp.status == 404
        resp = await client.get(f"/_matrix/app/v1/users/@_twitter_bot:example.org?access_token={TOKEN}")
        assert resp.status == 404

    async def test_user_query_unknown_twitter_user(self, client, bridge):
        bridge.profile.get_by_id = AsyncMock(return_value=None)
        resp = await client.get(f"/_matrix/app/v1/users/@_twitter_42:example.org?access_token={TOKEN}")
        assert resp.status == 404


class TestProvisioning:
    """Tests for the provisioning API."""

    async def test_link_hashtag(self, client, bridge, bot_intent, room_store):
        resp = await client.post(
            "/_matrix/provision/link", json={"room_id": "!pub:example.org", "hashtag": "#Matrix"}
        )
        assert resp.status == 200
        assert await resp.json() == {"success": True, "room_id": "!pub:example.org", "hashtag": "Matrix"}
        assert [h.id for h in bridge.scheduler.hashtags] == ["matrix"]
        bot_intent.join.assert_awaited_once_with("!pub:example.org")
        entries = await room_store.get_entries_by_matrix_id("!pub:example.org")
        assert entries[0].remote.room_id == "hashtag_Matrix"

    async def test_link_screen_name(self, client, bridge):
        resp = await client.post(
            "/_matrix/provision/link", json={"room_id": "!pub:example.org", "screen_name": "@jack"}
        )
        assert resp.status == 200
        bridge.profile.get_by_screenname.assert_awaited_once_with("jack")
        assert bridge.scheduler.timelines[0].id == "42"

    async def test_link_invalid(self, client):
        resp = await client.post("/_matrix/provision/link", json={"room_id": "!pub:example.org"})
        assert resp.status == 400
        resp = await client.post(
            "/_matrix/provision/link", json={"room_id": "not-a-room", "twitter_id": "42"}
        )
        assert resp.status == 400

    async def test_link_disabled(self, client, bridge):
        bridge.scheduler.hashtags_config.enable = False
        resp = await client.post(
            "/_matrix/provision/link", json={"room_id": "!pub:example.org", "hashtag": "matrix"}
        )
        assert resp.status == 403

    async def test_unlink(self, client, bridge, room_store):
        await client.post("/_matrix/provision/link", json={"room_id": "!pub:example.org", "twitter_id": "42"})
        resp = await client.post("/_matrix/provision/unlink", json={"room_id": "!pub:example.org", "twitter_id": "42"})
        assert resp.status == 200
        assert bridge.scheduler.timelines == []
        assert await room_store.get_entries_by_matrix_id("!pub:example.org") == []

    async def test_unlink_unknown(self, client):
        resp = await client.post("/_matrix/provision/unlink", json={"room_id": "!pub:example.org", "hashtag": "matrix"})
        assert resp.status == 404


class TestHealth:
    """Tests for the health endpoint."""

    async def test_health(self, client, bridge):
        resp = await client.get("/health")
        data = await resp.json()
        assert data["status"] == "healthy"
        assert data["pipeline_running"] is True
        assert data["queued_batches"] == 0

    async def test_degraded(self, client, bridge):
        bridge.pipeline.running = False
        data = await (await client.get("/health")).json()
        assert data["status"] == "degraded"
