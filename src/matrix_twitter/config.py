"""Configuration for the Matrix <-> X/Twitter bridge."""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TwitterAuthConfig(BaseSettings):
    """Twitter application credentials and API settings."""

    model_config = SettingsConfigDict(env_prefix="TWITTER_")

    consumer_key: str = Field(
        default="",
        description="Twitter API Key (Consumer Key)"
    )
    consumer_secret: str = Field(
        default="",
        description="Twitter API Secret (Consumer Secret)"
    )
    bearer_token_file: str = Field(
        default="bearer.tok",
        description="File the app-only bearer token is cached in"
    )
    api_base_url: str = Field(
        default="https://api.twitter.com",
        description="Base URL of the REST API"
    )
    stream_base_url: str = Field(
        default="https://userstream.twitter.com",
        description="Base URL of the user stream API"
    )
    client_reverify_seconds: int = Field(
        default=60,
        ge=1,
        description="Re-verify cached user credentials older than this"
    )

    # Outbound posting
    max_tweet_length: int = Field(
        default=280,
        ge=1,
        le=280,
        description="Maximum length of a single tweet"
    )
    max_tweet_chain: int = Field(
        default=3,
        ge=1,
        description="Maximum number of chained tweets one message may be split into"
    )

    @field_validator("consumer_key", "consumer_secret")
    @classmethod
    def warn_if_empty(cls, v: str, info) -> str:
        """Warn if critical credentials are empty."""
        if not v:
            import warnings
            warnings.warn(f"Twitter {info.field_name} is not set - Twitter features disabled")
        return v


class TimelinesConfig(BaseSettings):
    """Timeline polling settings."""

    model_config = SettingsConfigDict(env_prefix="TIMELINES_")

    enable: bool = Field(
        default=True,
        description="Bridge user timelines into rooms"
    )
    poll_if_empty: bool = Field(
        default=False,
        description="Poll timelines even if none of their rooms have real members"
    )
    # Twitter allows 300 calls per 15 minutes, plus 10ms for safety
    poll_interval_seconds: float = Field(
        default=3.01,
        gt=0,
        description="Seconds between two timeline polls"
    )
    fetch_count: int = Field(
        default=100,
        ge=1,
        le=200,
        description="Tweets requested per timeline poll"
    )
    reply_depth: int = Field(
        default=0,
        ge=0,
        le=10,
        description="How many parent tweets to resolve for replies"
    )


class HashtagsConfig(BaseSettings):
    """Hashtag search polling settings."""

    model_config = SettingsConfigDict(env_prefix="HASHTAGS_")

    enable: bool = Field(
        default=True,
        description="Bridge hashtag searches into rooms"
    )
    poll_if_empty: bool = Field(
        default=False,
        description="Poll hashtags even if none of their rooms have real members"
    )
    # Twitter allows 450 calls per 15 minutes, plus 10ms for safety
    poll_interval_seconds: float = Field(
        default=2.01,
        gt=0,
        description="Seconds between two hashtag polls"
    )
    fetch_count: int = Field(
        default=100,
        ge=1,
        le=100,
        description="Tweets requested per hashtag poll"
    )


class MediaConfig(BaseSettings):
    """Media bridging settings."""

    model_config = SettingsConfigDict(env_prefix="MEDIA_")

    enable_download: bool = Field(
        default=True,
        description="Upload tweet photos into rooms"
    )
    enable_profile_images: bool = Field(
        default=True,
        description="Mirror Twitter avatars onto ghost users"
    )


class MatrixConfig(BaseSettings):
    """Homeserver and application service settings."""

    model_config = SettingsConfigDict(env_prefix="MATRIX_")

    homeserver_url: str = Field(
        default="http://localhost:8008",
        description="Client-server API URL of the homeserver"
    )
    domain: str = Field(
        default="localhost",
        description="Server name of the homeserver"
    )
    as_token: str = Field(
        default="",
        description="Application service token"
    )
    hs_token: str = Field(
        default="",
        description="Token the homeserver uses when pushing transactions"
    )
    sender_localpart: str = Field(
        default="_twitter_bot",
        description="Localpart of the bridge bot"
    )
    user_prefix: str = Field(
        default="_twitter_",
        description="Localpart prefix of Twitter ghost users"
    )
    member_check_interval_seconds: float = Field(
        default=300,
        gt=0,
        description="How often empty rooms are recomputed"
    )


class DatabaseConfig(BaseSettings):
    """Database settings."""

    model_config = SettingsConfigDict(env_prefix="DB_")

    url: str = Field(
        default="sqlite+aiosqlite:///twitter_bridge.db",
        description="SQLAlchemy database URL"
    )


class ServerConfig(BaseSettings):
    """HTTP server settings."""

    model_config = SettingsConfigDict(env_prefix="SERVER_")

    host: str = Field(
        default="0.0.0.0",
        description="Server host address"
    )
    port: int = Field(
        default=9000,
        ge=1,
        le=65535,
        description="Server port"
    )
    provisioning_enabled: bool = Field(
        default=True,
        description="Expose the provisioning API"
    )


class BridgeConfig(BaseSettings):
    """Main bridge configuration combining all settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Sub-configs
    twitter: TwitterAuthConfig = Field(default_factory=TwitterAuthConfig)
    timelines: TimelinesConfig = Field(default_factory=TimelinesConfig)
    hashtags: HashtagsConfig = Field(default_factory=HashtagsConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    matrix: MatrixConfig = Field(default_factory=MatrixConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )
    displayname_format: str = Field(
        default="%name (@%screen_name)",
        description="Display name template for Twitter ghost users"
    )

    @classmethod
    def from_yaml(cls, path: str) -> "BridgeConfig":
        """Load configuration from YAML file."""
        import yaml
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data)


def load_config() -> BridgeConfig:
    """Load configuration from environment and .env file."""
    return BridgeConfig()
