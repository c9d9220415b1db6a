"""Twitter REST/stream API client for the Matrix bridge.

Handles app-only (bearer) and per-user (OAuth 1.0a) authentication.
"""

import base64
import hashlib
import hmac
import json
import secrets
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from urllib.parse import parse_qs, quote, urlencode

import httpx
import structlog

from .errors import AuthError, RemoteUnavailable

logger = structlog.get_logger()

TWITTER_API_BASE = "https://api.twitter.com"
TWITTER_STREAM_BASE = "https://userstream.twitter.com"
TWITTER_DATE_FORMAT = "%a %b %d %H:%M:%S %z %Y"


@dataclass
class TwitterUser:
    """Twitter user information."""
    id: str
    screen_name: str
    name: str
    description: str | None = None
    profile_image_url: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "TwitterUser":
        return cls(
            id=data.get("id_str") or str(data["id"]),
            screen_name=data.get("screen_name", ""),
            name=data.get("name", ""),
            description=data.get("description"),
            profile_image_url=data.get("profile_image_url_https"),
            raw=data,
        )

    def as_profile(self) -> dict[str, Any]:
        """Profile dict as cached and used for display name templates."""
        profile = dict(self.raw)
        profile.update({
            "id_str": self.id,
            "screen_name": self.screen_name,
            "name": self.name,
            "description": self.description,
            "profile_image_url_https": self.profile_image_url,
        })
        return profile


@dataclass
class Media:
    """A media attachment of a tweet."""
    id: str
    type: str
    media_url: str
    display_url: str
    width: int | None = None
    height: int | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Media":
        large = data.get("sizes", {}).get("large", {})
        return cls(
            id=data.get("id_str", ""),
            type=data.get("type", "photo"),
            media_url=data.get("media_url_https") or data.get("media_url", ""),
            display_url=data.get("display_url", ""),
            width=large.get("w"),
            height=large.get("h"),
        )


@dataclass
class Tweet:
    """A tweet/status on Twitter."""
    id: str
    text: str
    user: TwitterUser | None = None
    created_at: str | None = None
    in_reply_to_status_id: str | None = None
    favorite_count: int = 0
    retweet_count: int = 0
    hashtags: list[str] = field(default_factory=list)
    urls: list[dict[str, Any]] = field(default_factory=list)
    media: list[Media] = field(default_factory=list)
    retweeted_status: "Tweet | None" = None
    # Set on the root tweet when it is bridged as a retweet
    retweet_info: dict[str, str] | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Tweet":
        entities = data.get("entities") or {}
        extended = data.get("extended_entities") or {}
        retweeted = data.get("retweeted_status")
        user = data.get("user")
        return cls(
            id=data.get("id_str") or str(data["id"]),
            text=data.get("full_text") or data.get("text", ""),
            user=TwitterUser.from_api(user) if user else None,
            created_at=data.get("created_at"),
            in_reply_to_status_id=data.get("in_reply_to_status_id_str"),
            favorite_count=data.get("favorite_count") or 0,
            retweet_count=data.get("retweet_count") or 0,
            hashtags=[tag["text"] for tag in entities.get("hashtags", [])],
            urls=list(entities.get("urls", [])),
            media=[
                Media.from_api(m)
                for m in extended.get("media", entities.get("media", []))
            ],
            retweeted_status=cls.from_api(retweeted) if retweeted else None,
        )

    @property
    def is_reply(self) -> bool:
        return self.in_reply_to_status_id is not None

    @property
    def timestamp_ms(self) -> int:
        """Creation time in milliseconds, or now if unknown."""
        if self.created_at:
            try:
                created = datetime.strptime(self.created_at, TWITTER_DATE_FORMAT)
                return int(created.timestamp() * 1000)
            except ValueError:
                logger.debug("Unparseable tweet date", tweet_id=self.id, created_at=self.created_at)
        return int(time.time() * 1000)


@dataclass
class DirectMessage:
    """A direct message between two Twitter users."""
    id: str
    text: str
    sender: TwitterUser
    recipient: TwitterUser
    created_at: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "DirectMessage":
        return cls(
            id=data.get("id_str") or str(data["id"]),
            text=data.get("text", ""),
            sender=TwitterUser.from_api(data["sender"]),
            recipient=TwitterUser.from_api(data["recipient"]),
            created_at=data.get("created_at"),
        )


class TwitterApiError(Exception):
    """Error from Twitter API."""

    def __init__(self, status_code: int, message: str, detail: str | None = None):
        self.status_code = status_code
        self.message = message
        self.detail = detail
        super().__init__(f"Twitter API Error {status_code}: {message}")


class RateLimitError(TwitterApiError):
    """Rate limit exceeded error."""

    def __init__(self, reset_at: int | None = None):
        self.reset_at = reset_at
        super().__init__(429, "Rate limit exceeded")


# === OAuth 1.0a ===


def percent_encode(value: str) -> str:
    """RFC 3986 encoding as required by OAuth 1.0a."""
    return quote(str(value), safe="~")


def generate_nonce() -> str:
    return secrets.token_hex(16)


def oauth1_signature(
    method: str,
    url: str,
    params: dict[str, str],
    consumer_secret: str,
    token_secret: str = "",
) -> str:
    """Compute an HMAC-SHA1 request signature.

    Args:
        method: HTTP method
        url: Request URL without query string
        params: Query, body and oauth_* parameters
        consumer_secret: Application secret
        token_secret: User access token secret

    Returns:
        Base64 encoded signature
    """
    normalized = "&".join(
        f"{percent_encode(k)}={percent_encode(v)}"
        for k, v in sorted((str(k), str(v)) for k, v in params.items())
    )
    base_string = "&".join([
        method.upper(),
        percent_encode(url),
        percent_encode(normalized),
    ])
    key = f"{percent_encode(consumer_secret)}&{percent_encode(token_secret)}"
    digest = hmac.new(key.encode(), base_string.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


def oauth1_header(
    method: str,
    url: str,
    params: dict[str, Any],
    consumer_key: str,
    consumer_secret: str,
    token: str = "",
    token_secret: str = "",
    nonce: str | None = None,
    timestamp: int | None = None,
    extra_oauth: dict[str, str] | None = None,
) -> str:
    """Build the ``Authorization`` header of a signed request.

    ``token`` is left out while a user is still being authorized, and
    ``extra_oauth`` carries ``oauth_callback``/``oauth_verifier`` then.
    """
    oauth_params = {
        "oauth_consumer_key": consumer_key,
        "oauth_nonce": nonce or generate_nonce(),
        "oauth_signature_method": "HMAC-SHA1",
        "oauth_timestamp": str(timestamp if timestamp is not None else int(time.time())),
        "oauth_version": "1.0",
    }
    if token:
        oauth_params["oauth_token"] = token
    if extra_oauth:
        oauth_params.update(extra_oauth)
    signed = {str(k): str(v) for k, v in params.items()}
    signed.update(oauth_params)
    oauth_params["oauth_signature"] = oauth1_signature(
        method, url, signed, consumer_secret, token_secret
    )
    return "OAuth " + ", ".join(
        f'{percent_encode(k)}="{percent_encode(v)}"' for k, v in sorted(oauth_params.items())
    )


def _encode_params(params: dict[str, Any] | None) -> dict[str, str]:
    encoded = {}
    for key, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        encoded[key] = str(value)
    return encoded


class TwitterClient:
    """Client for the Twitter v1.1 API, bound to one identity."""

    def __init__(
        self,
        consumer_key: str,
        consumer_secret: str,
        bearer_token: str = "",
        access_token: str = "",
        access_token_secret: str = "",
        api_base_url: str = TWITTER_API_BASE,
        stream_base_url: str = TWITTER_STREAM_BASE,
    ):
        """Initialize Twitter client.

        Args:
            consumer_key: Application API key
            consumer_secret: Application API secret
            bearer_token: Bearer token for app-only auth
            access_token: User access token for OAuth 1.0a
            access_token_secret: User access token secret
            api_base_url: REST API base URL
            stream_base_url: User stream API base URL
        """
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.bearer_token = bearer_token
        self.access_token = access_token
        self.access_token_secret = access_token_secret
        self.api_base_url = api_base_url.rstrip("/")
        self.stream_base_url = stream_base_url.rstrip("/")
        # Profile and time of the last successful credentials check
        self.profile: TwitterUser | None = None
        self.last_auth: float = 0
        self._http_client: httpx.AsyncClient | None = None

    @property
    def is_user_client(self) -> bool:
        return bool(self.access_token)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=30.0,
                headers={"User-Agent": "MatrixTwitterBridge/1.0"},
            )
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    def _auth_header(self, method: str, url: str, params: dict[str, str]) -> str:
        if self.access_token:
            return oauth1_header(
                method,
                url,
                params,
                self.consumer_key,
                self.consumer_secret,
                self.access_token,
                self.access_token_secret,
            )
        if self.bearer_token:
            return f"Bearer {self.bearer_token}"
        raise AuthError("Client has neither a bearer token nor user credentials")

    def _url(self, endpoint: str) -> str:
        return f"{self.api_base_url}/1.1/{endpoint.strip('/')}.json"

    # === Application auth ===

    async def get_rate_limit_status(self) -> int:
        """Probe the bearer token.

        Returns:
            HTTP status code of ``application/rate_limit_status``
        """
        client = await self._get_client()
        url = self._url("application/rate_limit_status")
        try:
            response = await client.get(
                url, headers={"Authorization": self._auth_header("GET", url, {})}
            )
        except httpx.TransportError as e:
            raise RemoteUnavailable(f"Could not reach Twitter: {e}") from e
        return response.status_code

    async def request_bearer_token(self) -> str:
        """Obtain an app-only bearer token with the client credentials grant.

        Raises:
            TwitterApiError: If Twitter refuses the request
            AuthError: If the response is not a bearer token
        """
        client = await self._get_client()
        key = f"{self.consumer_key}:{self.consumer_secret}".encode("ascii")
        try:
            response = await client.post(
                f"{self.api_base_url}/oauth2/token",
                data={"grant_type": "client_credentials"},
                headers={
                    "Authorization": "Basic " + base64.b64encode(key).decode(),
                    "Content-Type": "application/x-www-form-urlencoded;charset=UTF-8",
                },
            )
        except httpx.TransportError as e:
            raise RemoteUnavailable(f"Could not reach Twitter: {e}") from e

        if response.status_code != 200:
            logger.error(
                "Bearer token request failed",
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise TwitterApiError(response.status_code, "Bearer token request failed")

        result = response.json()
        if result.get("token_type") != "bearer":
            raise AuthError(f"Unexpected token type {result.get('token_type')!r}")
        return result["access_token"]

    # === OAuth 1.0a PIN flow ===

    async def _oauth_call(
        self,
        endpoint: str,
        params: dict[str, str],
        token: str = "",
        token_secret: str = "",
        extra_oauth: dict[str, str] | None = None,
    ) -> dict[str, str]:
        client = await self._get_client()
        url = f"{self.api_base_url}/oauth/{endpoint}"
        header = oauth1_header(
            "POST",
            url,
            params,
            self.consumer_key,
            self.consumer_secret,
            token,
            token_secret,
            extra_oauth=extra_oauth,
        )
        try:
            response = await client.post(url, data=params, headers={"Authorization": header})
        except httpx.TransportError as e:
            raise RemoteUnavailable(f"Could not reach Twitter: {e}") from e
        if response.status_code != 200:
            raise TwitterApiError(response.status_code, f"oauth/{endpoint} failed", response.text)
        return {key: values[0] for key, values in parse_qs(response.text).items()}

    async def get_request_token(self, access_type: str, callback: str = "oob") -> tuple[str, str]:
        """Start authorizing a user.

        Args:
            access_type: One of ``read``, ``write`` or ``dm``
            callback: Callback URL, ``oob`` for the PIN flow

        Returns:
            Request token and secret
        """
        result = await self._oauth_call(
            "request_token",
            {"x_auth_access_type": access_type},
            extra_oauth={"oauth_callback": callback},
        )
        return result["oauth_token"], result["oauth_token_secret"]

    def get_authenticate_url(self, request_token: str) -> str:
        return f"{self.api_base_url}/oauth/authenticate?{urlencode({'oauth_token': request_token})}"

    async def get_access_token(
        self,
        request_token: str,
        request_secret: str,
        verifier: str,
    ) -> tuple[str, str]:
        """Exchange an authorized request token and PIN for user credentials.

        Returns:
            Access token and secret
        """
        result = await self._oauth_call(
            "access_token",
            {},
            token=request_token,
            token_secret=request_secret,
            extra_oauth={"oauth_verifier": verifier},
        )
        return result["oauth_token"], result["oauth_token_secret"]

    # === API Calls ===

    async def _api_call(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Make authenticated API call.

        Args:
            method: HTTP method
            endpoint: API endpoint without version prefix or ``.json``
            params: Query parameters (GET) or form body (POST)

        Returns:
            API response data

        Raises:
            TwitterApiError: On API error
            RateLimitError: On rate limit
            RemoteUnavailable: If Twitter could not be reached
        """
        client = await self._get_client()
        url = self._url(endpoint)
        encoded = _encode_params(params)
        headers = {"Authorization": self._auth_header(method, url, encoded)}

        try:
            if method == "GET":
                response = await client.get(url, params=encoded, headers=headers)
            else:
                response = await client.request(method, url, data=encoded, headers=headers)
        except httpx.TransportError as e:
            raise RemoteUnavailable(f"Could not reach Twitter: {e}") from e

        # Handle rate limiting
        if response.status_code == 429:
            reset_at = response.headers.get("x-rate-limit-reset")
            raise RateLimitError(int(reset_at) if reset_at else None)

        # Handle errors
        if response.status_code >= 400:
            try:
                errors = response.json().get("errors") or [{}]
                message = errors[0].get("message", "Unknown error")
                detail = str(errors[0].get("code")) if "code" in errors[0] else None
            except (ValueError, AttributeError):
                message = response.text
                detail = None
            raise TwitterApiError(response.status_code, message, detail)

        return response.json()

    async def verify_credentials(self) -> TwitterUser:
        """Get the authenticated user's profile."""
        result = await self._api_call("GET", "account/verify_credentials")
        return TwitterUser.from_api(result)

    async def get_user(
        self,
        user_id: str | None = None,
        screen_name: str | None = None,
    ) -> TwitterUser | None:
        """Get user by ID or screen name.

        Returns:
            TwitterUser or None if not found
        """
        if user_id is None and screen_name is None:
            raise ValueError("user_id or screen_name is required")
        try:
            result = await self._api_call(
                "GET", "users/show", {"user_id": user_id, "screen_name": screen_name}
            )
        except TwitterApiError as e:
            if e.status_code == 404:
                return None
            raise
        return TwitterUser.from_api(result)

    async def get_user_timeline(
        self,
        user_id: str,
        count: int,
        since_id: str | None = None,
        exclude_replies: bool = False,
    ) -> list[Tweet]:
        """Get the newest tweets of a user, newest first."""
        result = await self._api_call(
            "GET",
            "statuses/user_timeline",
            {
                "user_id": user_id,
                "count": count,
                "since_id": since_id,
                "exclude_replies": exclude_replies,
                "tweet_mode": "extended",
            },
        )
        return [Tweet.from_api(t) for t in result]

    async def search_hashtag(
        self,
        hashtag: str,
        count: int,
        since_id: str | None = None,
    ) -> list[Tweet]:
        """Get the newest tweets carrying a hashtag, newest first."""
        result = await self._api_call(
            "GET",
            "search/tweets",
            {
                "q": f"#{hashtag}",
                "result_type": "recent",
                "count": count,
                "since_id": since_id,
                "tweet_mode": "extended",
            },
        )
        return [Tweet.from_api(t) for t in result.get("statuses", [])]

    async def get_status(self, tweet_id: str) -> Tweet:
        """Get a tweet by ID."""
        result = await self._api_call(
            "GET", f"statuses/show/{tweet_id}", {"tweet_mode": "extended"}
        )
        return Tweet.from_api(result)

    async def update_status(
        self,
        text: str,
        in_reply_to_status_id: str | None = None,
    ) -> Tweet:
        """Post a tweet.

        Args:
            text: Tweet text
            in_reply_to_status_id: Tweet ID to reply to (optional)

        Returns:
            The posted tweet
        """
        result = await self._api_call(
            "POST",
            "statuses/update",
            {"status": text, "in_reply_to_status_id": in_reply_to_status_id},
        )
        return Tweet.from_api(result)

    async def new_direct_message(self, user_id: str, text: str) -> DirectMessage:
        result = await self._api_call(
            "POST", "direct_messages/new", {"user_id": user_id, "text": text}
        )
        return DirectMessage.from_api(result)

    # === Streaming ===

    async def stream_user(
        self,
        with_: str = "user",
        replies: str = "all",
        on_keepalive: Callable[[], None] | None = None,
    ) -> AsyncIterator:
        """Read the authenticated user's stream.

        Blank keepalive lines are reported through ``on_keepalive``.

        Yields:
            Stream events, see ``matrix_twitter.stream``
        """
        from .stream import parse_stream_message

        client = await self._get_client()
        url = f"{self.stream_base_url}/1.1/user.json"
        params = {"with": with_, "replies": replies}
        headers = {"Authorization": self._auth_header("GET", url, params)}

        try:
            async with client.stream(
                "GET", url, params=params, headers=headers, timeout=httpx.Timeout(30.0, read=None)
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise TwitterApiError(response.status_code, "Stream connection refused")
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line:
                        if on_keepalive:
                            on_keepalive()
                        continue
                    try:
                        data = json.loads(line)
                    except ValueError:
                        logger.warning("Malformed stream line", line=line[:200])
                        continue
                    yield parse_stream_message(data)
        except httpx.TransportError as e:
            raise RemoteUnavailable(f"Stream connection lost: {e}") from e
