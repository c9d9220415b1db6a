"""Matrix <-> X/Twitter Bridge.

This package implements a Matrix application service that follows Twitter
timelines and hashtags into Matrix rooms and posts messages from bridged
rooms back to Twitter.

Key components:
- config: Pydantic configuration management
- models: SQLAlchemy database models
- storage: Query surface over the database and the room link store
- twitter_client: Twitter API v1.1 client
- client_factory: Application and per-user authenticated clients
- scheduler: Round-robin polling of timelines and hashtags
- pipeline: Tweet -> Matrix message conversion and ordered delivery
- outbound: Matrix message -> tweet chain posting
- stream: Per-user live stream supervision
- handlers / router: Room type specific event handling
- main: HTTP server entry point
"""

from .client_factory import ClientFactory
from .config import (
    BridgeConfig,
    DatabaseConfig,
    HashtagsConfig,
    MatrixConfig,
    MediaConfig,
    ServerConfig,
    TimelinesConfig,
    TwitterAuthConfig,
    load_config,
)
from .dedup import DedupCache
from .errors import (
    AuthError,
    BridgeError,
    ChainResolutionError,
    ContextError,
    LifecycleError,
    MessageTooLongError,
    NotLinkedError,
    OutboundRejected,
    ReadOnlyAccountError,
    RemoteUnavailable,
    UnsupportedContentError,
    ValidationError,
)
from .models import AccessType, init_db
from .outbound import OutboundRouter, PostResult
from .pipeline import TweetPipeline
from .router import RoomTypeRouter
from .scheduler import FeedEntry, FeedKind, FeedScheduler
from .storage import BridgeStore, SqlRoomStore
from .twitter_client import (
    DirectMessage,
    RateLimitError,
    Tweet,
    TwitterApiError,
    TwitterClient,
    TwitterUser,
)

__version__ = "0.1.0"

__all__ = [
    # Config
    "BridgeConfig",
    "DatabaseConfig",
    "HashtagsConfig",
    "MatrixConfig",
    "MediaConfig",
    "ServerConfig",
    "TimelinesConfig",
    "TwitterAuthConfig",
    "load_config",
    # Errors
    "AuthError",
    "BridgeError",
    "ChainResolutionError",
    "ContextError",
    "LifecycleError",
    "MessageTooLongError",
    "NotLinkedError",
    "OutboundRejected",
    "ReadOnlyAccountError",
    "RemoteUnavailable",
    "UnsupportedContentError",
    "ValidationError",
    # Models
    "AccessType",
    "BridgeStore",
    "SqlRoomStore",
    "init_db",
    # Core
    "ClientFactory",
    "DedupCache",
    "FeedEntry",
    "FeedKind",
    "FeedScheduler",
    "OutboundRouter",
    "PostResult",
    "RoomTypeRouter",
    "TweetPipeline",
    # Twitter
    "DirectMessage",
    "RateLimitError",
    "Tweet",
    "TwitterApiError",
    "TwitterClient",
    "TwitterUser",
]
