"""Database models for the Matrix <-> X/Twitter bridge."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Enum as SQLEnum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class AccessType(str, Enum):
    """Permission level granted when the account was linked."""
    READ = "read"    # Read timelines only
    WRITE = "write"  # Read + tweet
    DM = "dm"        # Read + tweet + direct messages

    @property
    def can_tweet(self) -> bool:
        return self in (AccessType.WRITE, AccessType.DM)


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""
    pass


class TwitterSince(Base):
    """High-water mark of a polled feed.

    Keys are ``@<twitter id>`` for timelines and the bare hashtag for searches.
    """
    __tablename__ = "twitter_since"

    id: Mapped[str] = mapped_column(String(256), primary_key=True)
    since: Mapped[int] = mapped_column(BigInteger, nullable=False)


class TwitterAccount(Base):
    """Links a Matrix user to a Twitter account (OAuth 1.0a user tokens)."""
    __tablename__ = "twitter_accounts"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    twitter_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)

    oauth_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    oauth_secret: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    access_token_secret: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    access_type: Mapped[AccessType] = mapped_column(
        SQLEnum(AccessType), default=AccessType.READ, nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(timezone.utc), nullable=False
    )


class UserCache(Base):
    """Cached Twitter profile."""
    __tablename__ = "user_cache"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    screenname: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    profile: Mapped[dict] = mapped_column(JSON, nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)


class TimelineRoom(Base):
    """A Matrix user's personal timeline room."""
    __tablename__ = "timeline_rooms"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    room_id: Mapped[str] = mapped_column(String(255), nullable=False)
    with_filter: Mapped[str] = mapped_column(String(16), default="user", nullable=False)
    replies: Mapped[str] = mapped_column(String(16), default="all", nullable=False)


class DmRoom(Base):
    """A direct message room for a pair of Twitter users (``"<id>;<id>"``, sorted)."""
    __tablename__ = "dm_rooms"

    room_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    users: Mapped[str] = mapped_column(String(80), unique=True, nullable=False, index=True)


class EventTweet(Base):
    """A Matrix event that was created from a tweet."""
    __tablename__ = "event_tweets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    sender: Mapped[str] = mapped_column(String(255), nullable=False)
    room_id: Mapped[str] = mapped_column(String(255), nullable=False)
    tweet_id: Mapped[str] = mapped_column(String(32), nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        Index("ix_event_tweets_room_tweet", "room_id", "tweet_id"),
    )


class RoomLink(Base):
    """Binding of a Matrix room to a typed remote entity (``timeline_42``, ``hashtag_foo``...)."""
    __tablename__ = "room_links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    matrix_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    remote_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    matrix_data: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    remote_data: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    __table_args__ = (
        UniqueConstraint("matrix_id", "remote_id", name="uq_room_link"),
    )


async def init_db(database_url: str) -> async_sessionmaker:
    """Initialize database and return session maker."""
    engine = create_async_engine(database_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return async_sessionmaker(engine, expire_on_commit=False)
