"""
Service configuration

Collects the worker's configuration from environment variables into
validated dataclasses.
"""

import copy
import json
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

# Keep-alive interval of the PowerTrack stream, in seconds
STREAM_KEEPALIVE_INTERVAL = 30.0

DEFAULT_RULES: Dict[str, str] = {
    "boundingbox": (
        "(contains:flood OR contains:rains) "
        "(bounding_box:[80.0900 12.8400 80.3800 13.0517] OR bounding_box:[80.0900 13.0517 80.3800 13.2555])"
    ),
    "addressed": "(contains:flood OR contains:rains OR contains:prep) @riskmapindia",
    "location": (
        "(contains:flood OR contains:rains) (bio_location:chennai OR place:chennai "
        "OR bounding_box:[80.0900 12.8400 80.3800 13.0517] OR bounding_box:[80.0900 13.0517 80.3800 13.2555])"
    ),
}

# 'in' and 'id' both appear as Indonesian depending on whether Twitter or Gnip set the code
DEFAULT_MESSAGES: Dict[str, Dict[str, str]] = {
    "invite_text": {
        "en": "Hi! We are mapping flood reports, reply to @riskmapindia with #flood and your location to participate.",
        "id": "Hai! Kami memetakan laporan banjir, balas ke @riskmapindia dengan #banjir dan lokasimu untuk berpartisipasi.",
        "in": "Hai! Kami memetakan laporan banjir, balas ke @riskmapindia dengan #banjir dan lokasimu untuk berpartisipasi.",
    },
    "thanks_text": {
        "en": "Thanks for your report! Please turn on location for tweets and send it again so we can map it.",
        "id": "Terima kasih atas laporanmu! Aktifkan lokasi untuk tweet dan kirim lagi agar dapat kami petakan.",
        "in": "Terima kasih atas laporanmu! Aktifkan lokasi untuk tweet dan kirim lagi agar dapat kami petakan.",
    },
}


@dataclass
class StreamSettings:
    """Configuration for the PowerTrack stream and rules endpoints."""

    stream_url: str = ""
    rules_url: str = ""
    username: str = ""
    password: str = ""
    rules: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_RULES))
    stream_timeout: float = 60.0  # seconds of silence before the stream is considered dead
    initial_backoff: float = 1.0
    max_backoff: Optional[float] = 300.0  # None means uncapped

    def __post_init__(self) -> None:
        """Validate stream configuration."""
        if self.stream_timeout <= STREAM_KEEPALIVE_INTERVAL:
            raise ValueError(
                f"Stream timeout must exceed the {STREAM_KEEPALIVE_INTERVAL:.0f}s keep-alive interval"
            )
        if self.initial_backoff <= 0:
            raise ValueError("Initial backoff must be positive")
        if self.max_backoff is not None and self.max_backoff < self.initial_backoff:
            raise ValueError("Maximum backoff must not be below the initial backoff")


@dataclass
class DatabaseSettings:
    """Configuration for the report database."""

    url: str = "postgresql+asyncpg://postgres@localhost:5432/cognicity"
    table_tweets: str = "tweet_reports"
    table_unconfirmed: str = "tweet_reports_unconfirmed"
    table_nonspatial_tweet_reports: str = "nonspatial_tweet_reports"
    table_nonspatial_users: str = "nonspatial_tweet_users"
    table_invitees: str = "tweet_invitees"
    table_all_users: str = "tweet_all_users"


@dataclass
class TwitterSettings:
    """Configuration for outbound replies."""

    consumer_key: str = ""
    consumer_secret: str = ""
    access_token_key: str = ""
    access_token_secret: str = ""
    send_enabled: bool = False
    add_timestamp: bool = False
    reply_blacklist: List[str] = field(default_factory=list)
    default_language: str = "en"
    messages: Dict[str, Dict[str, str]] = field(default_factory=lambda: copy.deepcopy(DEFAULT_MESSAGES))


@dataclass
class Settings:
    """Top-level service configuration."""

    stream: StreamSettings
    database: DatabaseSettings
    twitter: TwitterSettings
    log_level: str = "INFO"
    health_port: int = 8000


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_json(name: str, default):
    value = os.getenv(name)
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise ValueError(f"{name} is not valid JSON: {e}") from e


def load_settings() -> Settings:
    """
    Build the service configuration from environment variables.

    Returns:
        Validated Settings object

    Raises:
        ValueError: If a variable is malformed or fails validation
    """
    max_backoff = float(os.getenv("GNIP_MAX_BACKOFF", "300"))

    stream = StreamSettings(
        stream_url=os.getenv("GNIP_STREAM_URL", ""),
        rules_url=os.getenv("GNIP_RULES_URL", ""),
        username=os.getenv("GNIP_USERNAME", ""),
        password=os.getenv("GNIP_PASSWORD", ""),
        rules=_env_json("GNIP_RULES", dict(DEFAULT_RULES)),
        stream_timeout=float(os.getenv("GNIP_STREAM_TIMEOUT", "60")),
        initial_backoff=float(os.getenv("GNIP_INITIAL_BACKOFF", "1")),
        max_backoff=max_backoff if max_backoff > 0 else None,
    )

    defaults = DatabaseSettings()
    database = DatabaseSettings(
        url=os.getenv("DATABASE_URL", defaults.url),
        table_tweets=os.getenv("PG_TABLE_TWEETS", defaults.table_tweets),
        table_unconfirmed=os.getenv("PG_TABLE_UNCONFIRMED", defaults.table_unconfirmed),
        table_nonspatial_tweet_reports=os.getenv(
            "PG_TABLE_NONSPATIAL_TWEET_REPORTS", defaults.table_nonspatial_tweet_reports
        ),
        table_nonspatial_users=os.getenv("PG_TABLE_NONSPATIAL_USERS", defaults.table_nonspatial_users),
        table_invitees=os.getenv("PG_TABLE_INVITEES", defaults.table_invitees),
        table_all_users=os.getenv("PG_TABLE_ALL_USERS", defaults.table_all_users),
    )

    blacklist = os.getenv("TWITTER_REPLY_BLACKLIST", "")
    twitter = TwitterSettings(
        consumer_key=os.getenv("TWITTER_CONSUMER_KEY", ""),
        consumer_secret=os.getenv("TWITTER_CONSUMER_SECRET", ""),
        access_token_key=os.getenv("TWITTER_ACCESS_TOKEN_KEY", ""),
        access_token_secret=os.getenv("TWITTER_ACCESS_TOKEN_SECRET", ""),
        send_enabled=_env_bool("TWITTER_SEND_ENABLED", False),
        add_timestamp=_env_bool("TWITTER_ADD_TIMESTAMP", False),
        reply_blacklist=[name.strip() for name in blacklist.split(",") if name.strip()],
        default_language=os.getenv("TWITTER_DEFAULT_LANGUAGE", "en"),
        messages=_env_json("TWITTER_MESSAGES", copy.deepcopy(DEFAULT_MESSAGES)),
    )

    return Settings(
        stream=stream,
        database=database,
        twitter=twitter,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        health_port=int(os.getenv("HEALTH_PORT", "8000")),
    )
