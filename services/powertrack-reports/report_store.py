"""
Report Store

Persists classified reports, invitees and user hashes to PostgreSQL/PostGIS.
Every write reports success or failure to its caller instead of raising, so a
failed statement only stops the steps that depend on it.
"""

import json
from typing import Any, Dict, List, Optional

import structlog
from prometheus_client import Counter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from settings import DatabaseSettings
from shared.models import StreamEvent

STORE_FAILURES = Counter('report_store_failures_total', 'Total failed database statements')


class ReportStore:
    """Parameterized statement gateway for the report tables."""

    def __init__(self, settings: DatabaseSettings, engine: Optional[AsyncEngine] = None) -> None:
        """
        Initialize the store.

        Args:
            settings: Database URL and table names
            engine: Optional pre-built engine, mainly for tests
        """
        self.settings = settings
        self.engine = engine or create_async_engine(
            settings.url,
            pool_pre_ping=True,
            pool_size=10,
            max_overflow=5,
            pool_recycle=3600,
        )
        self.logger = structlog.get_logger(__name__)

    async def execute(self, statement: str, params: Dict[str, Any]) -> Optional[List[Any]]:
        """
        Run a single statement in its own transaction.

        Args:
            statement: SQL text with named bind parameters
            params: Values for the bind parameters

        Returns:
            Result rows (empty for statements without a result set),
            or None if the statement failed
        """
        log = self.logger.bind(statement=statement, params=params)
        log.debug("Executing statement")

        try:
            async with self.engine.begin() as connection:
                result = await connection.execute(text(statement), params)
                rows = list(result.fetchall()) if result.returns_rows else []
        except (SQLAlchemyError, OSError) as e:
            STORE_FAILURES.inc()
            log.error("Statement failed", error=str(e))
            return None

        log.debug("Statement succeeded", row_count=len(rows))
        return rows

    async def is_new_user(self, username: str) -> Optional[bool]:
        """
        Check whether a user is absent from the all-users table.

        Returns:
            True if the user is unknown, False if known, None if the check failed
        """
        rows = await self.execute(
            f"SELECT user_hash FROM {self.settings.table_all_users} WHERE user_hash = md5(:username);",
            {"username": username}
        )
        if rows is None:
            return None
        return len(rows) == 0

    async def insert_confirmed(self, event: StreamEvent) -> bool:
        """Insert a confirmed report: geolocated inside the bounding box and addressed."""
        if not self._has_coordinates(event, "confirmed"):
            return False
        rows = await self.execute(
            f"INSERT INTO {self.settings.table_tweets} "
            "(created_at, text, hashtags, urls, user_mentions, lang, the_geom) "
            "VALUES (:created_at, :text, :hashtags, :urls, :user_mentions, :lang, "
            "ST_GeomFromText(:the_geom, 4326));",
            {
                **self._report_params(event),
                "the_geom": event.geo.to_wkt(),
            }
        )
        if rows is None:
            return False
        self.logger.info("Logged confirmed tweet report", username=event.username)
        return True

    async def upsert_user(self, username: str) -> bool:
        """Record a confirmed reporter, incrementing their report count."""
        rows = await self.execute(
            "SELECT upsert_tweet_users(md5(:username));",
            {"username": username}
        )
        if rows is None:
            return False
        self.logger.info("Logged confirmed tweet user", username=username)
        return True

    async def insert_unconfirmed(self, event: StreamEvent) -> bool:
        """Insert an unconfirmed report: geolocated inside the bounding box, not addressed."""
        if not self._has_coordinates(event, "unconfirmed"):
            return False
        rows = await self.execute(
            f"INSERT INTO {self.settings.table_unconfirmed} (created_at, the_geom) "
            "VALUES (:created_at, ST_GeomFromText(:the_geom, 4326));",
            {
                "created_at": event.posted_at,
                "the_geom": event.geo.to_wkt(),
            }
        )
        if rows is None:
            return False
        self.logger.info("Logged unconfirmed tweet report", username=event.username)
        return True

    async def insert_nonspatial_report(self, event: StreamEvent) -> bool:
        """Insert an addressed report that arrived without coordinates."""
        rows = await self.execute(
            f"INSERT INTO {self.settings.table_nonspatial_tweet_reports} "
            "(created_at, text, hashtags, urls, user_mentions, lang) "
            "VALUES (:created_at, :text, :hashtags, :urls, :user_mentions, :lang);",
            self._report_params(event)
        )
        if rows is None:
            return False
        self.logger.info("Inserted non-spatial tweet", username=event.username)
        return True

    async def insert_nonspatial_user(self, username: str) -> bool:
        rows = await self.execute(
            f"INSERT INTO {self.settings.table_nonspatial_users} (user_hash) "
            "VALUES (md5(:username)) ON CONFLICT DO NOTHING;",
            {"username": username}
        )
        if rows is None:
            return False
        self.logger.info("Inserted non-spatial user", username=username)
        return True

    async def insert_invitee(self, username: str) -> bool:
        rows = await self.execute(
            f"INSERT INTO {self.settings.table_invitees} (user_hash) "
            "VALUES (md5(:username)) ON CONFLICT DO NOTHING;",
            {"username": username}
        )
        if rows is None:
            return False
        self.logger.info("Logged new invitee", username=username)
        return True

    async def close(self) -> None:
        """Dispose of the connection pool."""
        await self.engine.dispose()

    def _has_coordinates(self, event: StreamEvent, kind: str) -> bool:
        # Bounding box rules also match place polygons, which carry no exact point
        if event.geo is None:
            self.logger.warning(
                "Report matched the bounding box without coordinates, not storing",
                kind=kind,
                username=event.username,
                tags=sorted(event.matching_tags)
            )
            return False
        return True

    @staticmethod
    def _report_params(event: StreamEvent) -> Dict[str, Any]:
        return {
            "created_at": event.posted_at,
            "text": event.body,
            "hashtags": json.dumps(list(event.hashtags)),
            "urls": json.dumps(list(event.urls)),
            "user_mentions": json.dumps(list(event.user_mentions)),
            "lang": event.language,
        }
