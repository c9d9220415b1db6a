"""Matrix side of the bridge.

The room-type routing, posting and polling code only talks to the chat
network through the small contracts defined here (``Intent``, ``RoomStore``,
``BridgeRuntime``). ``AppserviceRuntime`` / ``MatrixIntent`` implement them
against the Matrix client-server API as an application service.
"""

import mimetypes
import secrets
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import quote

import aiohttp
import httpx
import structlog

logger = structlog.get_logger()


# === Value types ===


@dataclass
class MatrixRoom:
    """A Matrix room with bridge-private data."""
    room_id: str
    data: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.data[key] = value


@dataclass
class RemoteRoom:
    """The remote entity a Matrix room is bound to.

    ``data["twitter_type"]`` is one of ``service``, ``timeline``, ``hashtag``,
    ``dm`` or ``user_timeline``.
    """
    room_id: str
    data: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.data[key] = value

    @property
    def twitter_type(self) -> str | None:
        return self.data.get("twitter_type")


@dataclass
class RoomEntry:
    """A link between a Matrix room and a remote room."""
    matrix: MatrixRoom
    remote: RemoteRoom


@dataclass
class EventContext:
    """What the bridge knows about the room and sender of an event."""
    sender: str
    room_id: str
    remotes: list[RemoteRoom] = field(default_factory=list)

    @property
    def remote(self) -> RemoteRoom | None:
        """The first remote room bound to the event's room."""
        return self.remotes[0] if self.remotes else None


@dataclass
class ProvisionedRoom:
    """Answer to an alias query: how to create the room and what to link it to."""
    creation_opts: dict[str, Any]
    remote: RemoteRoom


@dataclass
class UploadedContent:
    """Result of uploading media to the homeserver."""
    mxc_url: str
    size: int
    content_type: str


# === Contracts ===


class Intent(Protocol):
    """Acts on the homeserver as one user (the bot or a Twitter ghost)."""

    user_id: str

    async def send_event(self, room_id: str, event_type: str, content: dict) -> str: ...

    async def send_message(self, room_id: str, content: dict) -> str: ...

    async def join(self, room_id: str) -> None: ...

    async def leave(self, room_id: str) -> None: ...

    async def create_room(self, options: dict) -> str: ...

    async def upload_content(self, data: bytes, name: str, content_type: str) -> str: ...

    async def set_display_name(self, name: str) -> None: ...

    async def set_avatar_url(self, url: str) -> None: ...

    async def set_room_name(self, room_id: str, name: str) -> None: ...

    async def set_room_topic(self, room_id: str, topic: str) -> None: ...

    async def set_room_avatar(self, room_id: str, url: str) -> None: ...


class RoomStore(Protocol):
    """Persistent links between Matrix rooms and remote rooms."""

    async def link_rooms(self, matrix: MatrixRoom, remote: RemoteRoom) -> None: ...

    async def upsert_entry(self, entry: RoomEntry) -> None: ...

    async def get_entries_by_remote_id(self, remote_id: str) -> list[RoomEntry]: ...

    async def get_entries_by_matrix_id(self, room_id: str) -> list[RoomEntry]: ...

    async def get_entries_by_matrix_room_data(self, data: dict) -> list[RoomEntry]: ...

    async def get_entries_by_remote_room_data(self, data: dict) -> list[RoomEntry]: ...

    async def remove_entries_by_remote_id(self, remote_id: str) -> int: ...

    async def remove_link(self, matrix_id: str, remote_id: str) -> bool: ...


class BridgeRuntime(Protocol):
    """Everything the bridge needs from the chat network."""

    domain: str
    bot_user_id: str
    room_store: RoomStore

    def get_intent(self, localpart: str | None = None) -> Intent: ...

    def get_twitter_intent(self, twitter_id: str) -> Intent: ...

    def twitter_user_id(self, twitter_id: str) -> str: ...

    def is_bridge_user(self, user_id: str) -> bool: ...

    async def get_member_lists(self) -> dict[str, list[str]]: ...


# === Client-server API implementation ===


class MatrixApiError(Exception):
    """Error from the homeserver."""

    def __init__(self, status: int, errcode: str, message: str):
        self.status = status
        self.errcode = errcode
        self.message = message
        super().__init__(f"Matrix API Error {status} {errcode}: {message}")


class MatrixIntent:
    """Client-server API calls made as one appservice-controlled user."""

    def __init__(
        self,
        session_getter,
        homeserver_url: str,
        as_token: str,
        user_id: str,
    ):
        """Initialize intent.

        Args:
            session_getter: Coroutine function returning the shared aiohttp session
            homeserver_url: Client-server API base URL
            as_token: Application service token
            user_id: User to act as
        """
        self._get_session = session_getter
        self.homeserver_url = homeserver_url.rstrip("/")
        self.as_token = as_token
        self.user_id = user_id
        self._registered = False

    async def _request(
        self,
        method: str,
        path: str,
        json_data: dict[str, Any] | None = None,
        data: bytes | None = None,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Make an authenticated call, masquerading as ``user_id``."""
        session = await self._get_session()
        query = {"user_id": self.user_id}
        if params:
            query.update(params)
        all_headers = {"Authorization": f"Bearer {self.as_token}"}
        if headers:
            all_headers.update(headers)

        async with session.request(
            method,
            f"{self.homeserver_url}{path}",
            json=json_data,
            data=data,
            params=query,
            headers=all_headers,
        ) as response:
            try:
                body = await response.json(content_type=None)
            except ValueError:
                body = {}
            if response.status >= 400:
                body = body or {}
                raise MatrixApiError(
                    response.status,
                    body.get("errcode", "M_UNKNOWN"),
                    body.get("error", "Unknown error"),
                )
        return body or {}

    async def ensure_registered(self) -> None:
        """Register the user with the homeserver if needed."""
        if self._registered:
            return
        localpart = self.user_id[1:].split(":", 1)[0]
        try:
            await self._request(
                "POST",
                "/_matrix/client/v3/register",
                json_data={"type": "m.login.application_service", "username": localpart},
            )
        except MatrixApiError as e:
            if e.errcode != "M_USER_IN_USE":
                raise
        self._registered = True

    async def send_event(self, room_id: str, event_type: str, content: dict) -> str:
        await self.ensure_registered()
        txn_id = secrets.token_hex(12)
        result = await self._request(
            "PUT",
            f"/_matrix/client/v3/rooms/{quote(room_id, safe='')}/send/"
            f"{quote(event_type, safe='')}/{txn_id}",
            json_data=content,
        )
        return result["event_id"]

    async def send_message(self, room_id: str, content: dict) -> str:
        return await self.send_event(room_id, "m.room.message", content)

    async def send_state_event(
        self, room_id: str, event_type: str, content: dict, state_key: str = ""
    ) -> str:
        await self.ensure_registered()
        result = await self._request(
            "PUT",
            f"/_matrix/client/v3/rooms/{quote(room_id, safe='')}/state/"
            f"{quote(event_type, safe='')}/{quote(state_key, safe='')}",
            json_data=content,
        )
        return result.get("event_id", "")

    async def join(self, room_id: str) -> None:
        await self.ensure_registered()
        await self._request("POST", f"/_matrix/client/v3/join/{quote(room_id, safe='')}", {})

    async def leave(self, room_id: str) -> None:
        await self._request(
            "POST", f"/_matrix/client/v3/rooms/{quote(room_id, safe='')}/leave", {}
        )

    async def invite(self, room_id: str, user_id: str) -> None:
        await self._request(
            "POST",
            f"/_matrix/client/v3/rooms/{quote(room_id, safe='')}/invite",
            {"user_id": user_id},
        )

    async def create_room(self, options: dict) -> str:
        await self.ensure_registered()
        result = await self._request("POST", "/_matrix/client/v3/createRoom", options)
        return result["room_id"]

    async def upload_content(self, data: bytes, name: str, content_type: str) -> str:
        result = await self._request(
            "POST",
            "/_matrix/media/v3/upload",
            data=data,
            params={"filename": name},
            headers={"Content-Type": content_type},
        )
        return result["content_uri"]

    async def set_display_name(self, name: str) -> None:
        await self.ensure_registered()
        await self._request(
            "PUT",
            f"/_matrix/client/v3/profile/{quote(self.user_id, safe='')}/displayname",
            {"displayname": name},
        )

    async def set_avatar_url(self, url: str) -> None:
        await self.ensure_registered()
        await self._request(
            "PUT",
            f"/_matrix/client/v3/profile/{quote(self.user_id, safe='')}/avatar_url",
            {"avatar_url": url},
        )

    async def set_room_name(self, room_id: str, name: str) -> None:
        await self.send_state_event(room_id, "m.room.name", {"name": name})

    async def set_room_topic(self, room_id: str, topic: str) -> None:
        await self.send_state_event(room_id, "m.room.topic", {"topic": topic})

    async def set_room_avatar(self, room_id: str, url: str) -> None:
        await self.send_state_event(room_id, "m.room.avatar", {"url": url})

    async def get_joined_rooms(self) -> list[str]:
        result = await self._request("GET", "/_matrix/client/v3/joined_rooms")
        return list(result.get("joined_rooms", []))

    async def get_joined_members(self, room_id: str) -> list[str]:
        result = await self._request(
            "GET", f"/_matrix/client/v3/rooms/{quote(room_id, safe='')}/joined_members"
        )
        return list(result.get("joined", {}).keys())


class AppserviceRuntime:
    """Bridge runtime backed by a homeserver and a persistent room store."""

    def __init__(
        self,
        homeserver_url: str,
        domain: str,
        as_token: str,
        sender_localpart: str,
        user_prefix: str,
        room_store: RoomStore,
    ):
        self.homeserver_url = homeserver_url
        self.domain = domain
        self.as_token = as_token
        self.sender_localpart = sender_localpart
        self.user_prefix = user_prefix
        self.room_store = room_store
        self._intents: dict[str, MatrixIntent] = {}
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    @property
    def bot_user_id(self) -> str:
        return f"@{self.sender_localpart}:{self.domain}"

    def get_intent(self, localpart: str | None = None) -> MatrixIntent:
        """Get the intent of the bot (no localpart) or of a ghost user."""
        user_id = self.bot_user_id if localpart is None else f"@{localpart}:{self.domain}"
        if user_id not in self._intents:
            self._intents[user_id] = MatrixIntent(
                self._get_session, self.homeserver_url, self.as_token, user_id
            )
        return self._intents[user_id]

    def twitter_user_id(self, twitter_id: str) -> str:
        return f"@{self.user_prefix}{twitter_id}:{self.domain}"

    def get_twitter_intent(self, twitter_id: str) -> MatrixIntent:
        return self.get_intent(f"{self.user_prefix}{twitter_id}")

    def is_bridge_user(self, user_id: str) -> bool:
        """Whether the user is the bot or one of its ghosts."""
        if user_id == self.bot_user_id:
            return True
        return user_id.startswith(f"@{self.user_prefix}") and user_id.endswith(f":{self.domain}")

    async def get_member_lists(self) -> dict[str, list[str]]:
        """Joined members of every room the bot is in."""
        bot = self.get_intent()
        members = {}
        for room_id in await bot.get_joined_rooms():
            try:
                members[room_id] = await bot.get_joined_members(room_id)
            except MatrixApiError as e:
                logger.warning("Could not list room members", room_id=room_id, error=str(e))
        return members


# === Helpers ===


async def upload_content_from_url(
    intent: Intent,
    url: str,
    http_client: httpx.AsyncClient | None = None,
    name: str | None = None,
) -> UploadedContent:
    """Download a file and upload it to the homeserver.

    Args:
        intent: Intent to upload as
        url: URL to download
        http_client: HTTP client to download with (a temporary one otherwise)
        name: File name (the last URL segment otherwise)

    Returns:
        UploadedContent with the ``mxc://`` URL
    """
    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(timeout=30.0)
    try:
        response = await client.get(url)
        response.raise_for_status()
    finally:
        if owns_client:
            await client.aclose()

    content_type = response.headers.get("content-type")
    if not content_type:
        logger.debug("No content-type given by server, guessing from file name", url=url)
        content_type = mimetypes.guess_type(url)[0] or "application/octet-stream"
    if name is None:
        name = url.rsplit("/", 1)[-1]

    data = response.content
    mxc_url = await intent.upload_content(data, name, content_type)
    logger.debug("Media uploaded", url=url, mxc_url=mxc_url)
    return UploadedContent(mxc_url=mxc_url, size=len(data), content_type=content_type)


async def notify_matrix_user(runtime: BridgeRuntime, user_id: str, message: str) -> bool:
    """Send a notice to the user's most recent service room.

    Returns:
        True if a service room was found and the notice sent
    """
    entries = await runtime.room_store.get_entries_by_remote_id(f"service_{user_id}")
    if not entries:
        logger.warning("No service room for user, notice not sent", user_id=user_id)
        return False
    room_id = entries[-1].matrix.room_id
    logger.info("Notifying user", user_id=user_id, notice=message)
    await runtime.get_intent().send_message(room_id, {"msgtype": "m.notice", "body": message})
    return True
