"""Relational persistence for generated roasts.

``SQLConnection`` owns the pooled SQLAlchemy engine for the lifetime of the
Lambda container. It is created lazily, discarded with ``reset()`` after a
connection-level failure and rebuilt on the next call. Only this layer retries.
"""
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
    or_,
    select,
    text,
    type_coerce,
)
from sqlalchemy.engine import URL, Connection, Engine
from sqlalchemy.exc import InterfaceError, OperationalError

from runtime import (
    ENV_CONFIG,
    compute_retry_sleep,
    get_config_secret,
    log,
    sleep_for,
)

T = TypeVar("T")

DISABLED_ROAST_ID = "dev-mode-id"
UNKNOWN_PLAYLIST = "Unknown Playlist"

SCHEMA = MetaData()

roasts = Table(
    "roasts",
    SCHEMA,
    Column("roast_id", String(36), primary_key=True),
    Column("playlist_spotify_id", String(255), nullable=False),
    Column("user_ip_address", String(45)),
    Column("user_display_name", String(255)),
    Column("roast_text", Text, nullable=False),
    Column("generated_at", DateTime, nullable=False),
    Column("playlist_metadata", JSON),
    Column("is_public", Boolean, nullable=False, default=True),
    Index("idx_generated_public", "generated_at", "is_public"),
    Index("idx_playlist_id", "playlist_spotify_id"),
    mysql_charset="utf8mb4",
)

playlist_metadata = Table(
    "playlist_metadata",
    SCHEMA,
    Column("playlist_metadata_id", String(64), primary_key=True),
    Column("playlist_spotify_id", String(255), nullable=False, unique=True),
    Column("playlist_name", String(255)),
    Column("playlist_description", Text),
    Column("playlist_owner", String(255)),
    Column("artist_count", Integer),
    Column("track_count", Integer),
    Column("popularity_score", Integer),
    Column("local_music_count", Integer),
    Column("explicit_count", Integer),
    Column("top_artist", String(255)),
    Column("metadata_fetched_at", DateTime),
    mysql_charset="utf8mb4",
)

ROAST_COLUMNS = (
    roasts.c.roast_id,
    roasts.c.playlist_spotify_id,
    roasts.c.user_ip_address,
    roasts.c.user_display_name,
    roasts.c.roast_text,
    roasts.c.generated_at,
    type_coerce(roasts.c.playlist_metadata, Text).label("playlist_metadata"),
    roasts.c.is_public,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def build_database_url() -> Union[str, URL]:
    if ENV_CONFIG.get("database_url"):
        return ENV_CONFIG["database_url"]
    return URL.create(
        "mysql+pymysql",
        username=ENV_CONFIG["rds_user"],
        password=get_config_secret("db_password", "db_password_param") or "",
        host=ENV_CONFIG["rds_host"],
        port=ENV_CONFIG["rds_port"],
        database=ENV_CONFIG["rds_database"],
        query={"charset": "utf8mb4"},
    )


def default_engine_factory() -> Engine:
    connect_args: Dict[str, Any] = {"connect_timeout": 10}
    if ENV_CONFIG.get("db_ssl"):
        connect_args["ssl"] = {"check_hostname": False}
    return create_engine(
        build_database_url(),
        pool_size=5,
        max_overflow=0,
        pool_pre_ping=True,
        pool_recycle=280,
        connect_args=connect_args,
    )


def decode_metadata(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (str, bytes)):
        try:
            value = json.loads(raw)
        except ValueError as exc:
            log("warning", "Failed to parse playlist_metadata", error=str(exc))
            return {}
        return value if isinstance(value, dict) else {}
    return {}


class SQLConnection:
    def __init__(
        self,
        engine_factory: Optional[Callable[[], Engine]] = None,
        max_attempts: Optional[int] = None,
        max_sleep_s: float = 8.0,
    ) -> None:
        self._engine_factory = engine_factory or default_engine_factory
        self._engine: Optional[Engine] = None
        self.max_attempts = max(1, max_attempts or ENV_CONFIG["db_max_attempts"])
        self.max_sleep_s = max_sleep_s
        self._schema_ready = False

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            log("info", "Creating SQL connection pool")
            self._engine = self._engine_factory()
        return self._engine

    def reset(self) -> None:
        engine, self._engine = self._engine, None
        if engine is None:
            return
        try:
            engine.dispose()
        except Exception as exc:  # pylint: disable=broad-except
            log("warning", "Failed to dispose SQL connection pool", error=str(exc))

    def run(self, work: Callable[[Connection], T]) -> T:
        """Run ``work`` inside a transaction, retrying connection failures.

        Syntax and constraint errors surface on the first attempt; only
        ``OperationalError`` and ``InterfaceError`` are treated as transient.
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                with self.engine.begin() as conn:
                    return work(conn)
            except (OperationalError, InterfaceError) as exc:
                last_error = exc
                log(
                    "warning",
                    "SQL attempt failed",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error=str(exc.orig or exc),
                )
                if attempt == self.max_attempts:
                    break
                self.reset()
                sleep_s = compute_retry_sleep(attempt, self.max_sleep_s)
                log("info", "Retrying SQL operation", sleep_s=round(sleep_s, 2))
                sleep_for(sleep_s)

        raise last_error  # type: ignore[misc]

    def ensure_schema(self) -> bool:
        if self._schema_ready:
            return True
        try:
            self.run(lambda conn: SCHEMA.create_all(conn))
        except Exception as exc:  # pylint: disable=broad-except
            log("warning", "Failed to initialize tables", error=str(exc))
            return False
        self._schema_ready = True
        log("info", "SQL tables ready")
        return True

    def health_check(self) -> bool:
        try:
            self.run(lambda conn: conn.execute(text("SELECT 1")).scalar())
        except Exception as exc:  # pylint: disable=broad-except
            log("warning", "Database health check failed", error=str(exc))
            return False
        return True


@dataclass(frozen=True)
class SaveResult:
    success: bool
    roast_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class RoastFeed:
    roasts: List[Dict[str, Any]] = field(default_factory=list)
    total_count: int = 0
    page: int = 1
    limit: int = 10
    degraded_reason: Optional[str] = None


@dataclass(frozen=True)
class DuplicateCheckResult:
    is_duplicate: bool
    playlist_name: Optional[str] = None
    original_roast_date: Optional[datetime] = None
    roast_id: Optional[str] = None
    degraded_reason: Optional[str] = None


def _row_to_record(row: Any) -> Dict[str, Any]:
    return {
        "roast_id": row["roast_id"],
        "playlist_spotify_id": row["playlist_spotify_id"],
        "user_ip_address": row["user_ip_address"],
        "user_display_name": row["user_display_name"],
        "roast_text": row["roast_text"],
        "generated_at": row["generated_at"],
        "playlist_metadata": decode_metadata(row["playlist_metadata"]),
        "is_public": bool(row["is_public"]),
    }


def _storage_enabled(enabled: Optional[bool]) -> bool:
    return ENV_CONFIG["roast_storage_enabled"] if enabled is None else enabled


class RoastStore:
    def __init__(
        self,
        connection: Optional[SQLConnection] = None,
        enabled: Optional[bool] = None,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.connection = connection or SQLConnection()
        self.enabled = _storage_enabled(enabled)
        self._clock = clock
        self._id_factory = id_factory

    def save_roast(
        self,
        playlist_spotify_id: str,
        user_ip_address: str,
        roast_text: str,
        playlist_metadata: Dict[str, Any],
        user_display_name: Optional[str] = None,
    ) -> SaveResult:
        if not self.enabled:
            return SaveResult(True, DISABLED_ROAST_ID)

        roast_id = self._id_factory()
        values = {
            "roast_id": roast_id,
            "playlist_spotify_id": playlist_spotify_id,
            "user_ip_address": user_ip_address,
            "user_display_name": user_display_name or None,
            "roast_text": roast_text,
            "generated_at": self._clock(),
            "playlist_metadata": playlist_metadata,
            "is_public": True,
        }
        try:
            self.connection.ensure_schema()
            self.connection.run(lambda conn: conn.execute(roasts.insert().values(**values)))
        except Exception as exc:  # pylint: disable=broad-except
            log("warning", "Failed to save roast", roast_id=roast_id, error=str(exc))
            return SaveResult(False, error=str(exc))

        log(
            "info",
            "roast_saved",
            roast_id=roast_id,
            playlist_spotify_id=playlist_spotify_id,
            playlist_name=playlist_metadata.get("name"),
        )
        return SaveResult(True, roast_id)

    def get_public_roast_feed(self, page: int = 1, limit: int = 10) -> RoastFeed:
        if not self.enabled:
            return RoastFeed([], 0, page, limit)

        offset = (page - 1) * limit
        public = roasts.c.is_public.is_(True)

        def work(conn: Connection):
            total = conn.execute(
                select(func.count()).select_from(roasts).where(public)
            ).scalar()
            rows = conn.execute(
                select(*ROAST_COLUMNS)
                .where(public)
                .order_by(roasts.c.generated_at.desc())
                .limit(limit)
                .offset(offset)
            ).mappings().all()
            return int(total or 0), rows

        try:
            self.connection.ensure_schema()
            total, rows = self.connection.run(work)
        except Exception as exc:  # pylint: disable=broad-except
            log("warning", "Failed to get roast feed", page=page, error=str(exc))
            return RoastFeed([], 0, page, limit, f"feed_failed: {exc}")

        records = [_row_to_record(row) for row in rows]
        log("info", "roast_feed_loaded", page=page, limit=limit, returned=len(records))
        return RoastFeed(records, total, page, limit)

    def get_roast_by_id(self, roast_id: str) -> Optional[Dict[str, Any]]:
        if not self.enabled:
            return None

        def work(conn: Connection):
            return conn.execute(
                select(*ROAST_COLUMNS).where(
                    roasts.c.roast_id == roast_id, roasts.c.is_public.is_(True)
                )
            ).mappings().first()

        try:
            self.connection.ensure_schema()
            row = self.connection.run(work)
        except Exception as exc:  # pylint: disable=broad-except
            log("warning", "Failed to get roast by id", roast_id=roast_id, error=str(exc))
            return None
        return _row_to_record(row) if row else None


class DuplicateDetector:
    """Finds an earlier roast of the same playlist by id or exact name."""

    def __init__(
        self, connection: Optional[SQLConnection] = None, enabled: Optional[bool] = None
    ) -> None:
        self.connection = connection or SQLConnection()
        self.enabled = _storage_enabled(enabled)

    def find_latest_match(self, playlist_name: str, playlist_id: str) -> Optional[Any]:
        stmt = (
            select(
                roasts.c.roast_id,
                roasts.c.generated_at,
                type_coerce(roasts.c.playlist_metadata, Text).label("playlist_metadata"),
            )
            .where(
                or_(
                    roasts.c.playlist_spotify_id == playlist_id,
                    roasts.c.playlist_metadata["name"].as_string() == playlist_name,
                )
            )
            .order_by(roasts.c.generated_at.desc())
            .limit(1)
        )
        self.connection.ensure_schema()
        return self.connection.run(lambda conn: conn.execute(stmt).mappings().first())

    def check_for_duplicate(self, playlist_name: str, playlist_id: str) -> DuplicateCheckResult:
        if not self.enabled:
            return DuplicateCheckResult(False)

        try:
            row = self.find_latest_match(playlist_name, playlist_id)
        except Exception as exc:  # pylint: disable=broad-except
            log(
                "warning",
                "Duplicate check failed, allowing request",
                playlist_id=playlist_id,
                error=str(exc),
            )
            return DuplicateCheckResult(False, degraded_reason=f"lookup_failed: {exc}")

        if row is None:
            return DuplicateCheckResult(False)

        stored = decode_metadata(row["playlist_metadata"])
        log("info", "duplicate_found", roast_id=row["roast_id"], playlist_id=playlist_id)
        return DuplicateCheckResult(
            True,
            playlist_name=stored.get("name") or UNKNOWN_PLAYLIST,
            original_roast_date=row["generated_at"],
            roast_id=row["roast_id"],
        )


class PlaylistMetadataStore:
    """Latest analysis snapshot per playlist, upserted after each stored roast."""

    def __init__(
        self,
        connection: Optional[SQLConnection] = None,
        enabled: Optional[bool] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.connection = connection or SQLConnection()
        self.enabled = _storage_enabled(enabled)
        self._clock = clock

    def save_playlist_metadata(self, metadata: Dict[str, Any], playlist_id: str) -> bool:
        if not self.enabled:
            return True

        values = {
            "playlist_name": metadata.get("name"),
            "playlist_description": metadata.get("description"),
            "playlist_owner": metadata.get("owner"),
            "artist_count": metadata.get("unique_artists"),
            "track_count": metadata.get("track_count"),
            "popularity_score": metadata.get("avg_popularity"),
            "local_music_count": metadata.get("local_music_count"),
            "explicit_count": metadata.get("explicit_count"),
            "top_artist": metadata.get("top_artist"),
            "metadata_fetched_at": self._clock(),
        }

        def work(conn: Connection) -> None:
            existing = conn.execute(
                select(playlist_metadata.c.playlist_metadata_id).where(
                    playlist_metadata.c.playlist_spotify_id == playlist_id
                )
            ).first()
            if existing:
                conn.execute(
                    playlist_metadata.update()
                    .where(playlist_metadata.c.playlist_spotify_id == playlist_id)
                    .values(**values)
                )
            else:
                conn.execute(
                    playlist_metadata.insert().values(
                        playlist_metadata_id=f"pm_{uuid.uuid4().hex}",
                        playlist_spotify_id=playlist_id,
                        **values,
                    )
                )

        try:
            self.connection.ensure_schema()
            self.connection.run(work)
        except Exception as exc:  # pylint: disable=broad-except
            log(
                "warning",
                "Failed to save playlist metadata",
                playlist_id=playlist_id,
                error=str(exc),
            )
            return False
        return True

    def get_playlist_metadata(self, playlist_id: str) -> Optional[Dict[str, Any]]:
        if not self.enabled:
            return None

        def work(conn: Connection):
            return conn.execute(
                select(playlist_metadata)
                .where(playlist_metadata.c.playlist_spotify_id == playlist_id)
                .order_by(playlist_metadata.c.metadata_fetched_at.desc())
                .limit(1)
            ).mappings().first()

        try:
            self.connection.ensure_schema()
            row = self.connection.run(work)
        except Exception as exc:  # pylint: disable=broad-except
            log(
                "warning",
                "Failed to get playlist metadata",
                playlist_id=playlist_id,
                error=str(exc),
            )
            return None
        if row is None:
            return None
        return {
            "name": row["playlist_name"],
            "description": row["playlist_description"] or "",
            "owner": row["playlist_owner"],
            "track_count": row["track_count"],
            "avg_popularity": row["popularity_score"],
            "local_music_count": row["local_music_count"],
            "explicit_count": row["explicit_count"],
            "unique_artists": row["artist_count"],
            "top_artist": row["top_artist"],
            "metadata_fetched_at": row["metadata_fetched_at"],
        }
