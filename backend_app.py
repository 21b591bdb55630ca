from __future__ import annotations
import asyncio
import html
import json
import logging
import os
import re
import secrets
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, fields
from datetime import datetime, time as dt_time, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from sse_starlette.sse import EventSourceResponse
from fastapi.middleware.cors import CORSMiddleware

from fastapi import (
    FastAPI,
    HTTPException,
    Depends,
    Header,
    Query,
    APIRouter,
    Request as FastAPIRequest,
    Response,
    Body,
    BackgroundTasks,
)
from fastapi.responses import RedirectResponse, HTMLResponse, PlainTextResponse
from pydantic import BaseModel
from sqlalchemy import create_engine, Column, Integer, String, Text, DateTime, Float
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from relay import eventsub
from relay.errors import AuthenticationError, ConfigError, RelayError, UpstreamUnavailable, ValidationError
from relay.redemption_router import RedemptionRouter, RouteResult
from relay.shadow_queue import (
    DEFAULT_RESET_TIME,
    DEFAULT_RESET_TIMEZONE,
    CurrentlyPlayingSnapshot,
    QueueChange,
    ShadowQueue,
    SongRequest,
)
from relay.spotify_gateway import SpotifyGateway
from relay.tokens import Credential, TokenStore
from relay.twitch_client import TwitchClient

# =====================================
# Config
# =====================================
API_VERSION = "0.1.0"

DEFAULT_DB_URL = "sqlite:///./data/relay.sqlite"

CONFIG_ENV_MAP: Dict[str, str] = {
    "db_url": "DB_URL",
    "admin_token": "ADMIN_TOKEN",
    "spotify_client_id": "SPOTIFY_CLIENT_ID",
    "spotify_client_secret": "SPOTIFY_CLIENT_SECRET",
    "spotify_redirect_uri": "SPOTIFY_REDIRECT_URI",
    "spotify_device_name": "SPOTIFY_DEVICE_NAME",
    "twitch_client_id": "TWITCH_CLIENT_ID",
    "twitch_client_secret": "TWITCH_CLIENT_SECRET",
    "twitch_redirect_uri": "TWITCH_REDIRECT_URI",
    "twitch_channel": "TWITCH_CHANNEL",
    "redemption_name": "TWITCH_REDEMPTION_NAME",
    "eventsub_secret": "TWITCH_EVENTSUB_SECRET",
    "app_url": "APP_URL",
    "poll_interval_seconds": "POLL_INTERVAL_SECONDS",
    "poll_enabled": "POLL_ENABLED",
    "reset_time": "RESET_TIME",
    "reset_timezone": "RESET_TIMEZONE",
    "eventsub_dedup_size": "EVENTSUB_DEDUP_SIZE",
    "eventsub_max_age_seconds": "EVENTSUB_MAX_AGE_SECONDS",
    "cors_allow_origins": "CORS_ALLOW_ORIGINS",
    "cors_allow_origin_regex": "CORS_ALLOW_ORIGIN_REGEX",
}

logger = logging.getLogger(__name__)


@dataclass
class RelayConfig:
    db_url: str = DEFAULT_DB_URL
    admin_token: str = "change-me"
    spotify_client_id: Optional[str] = None
    spotify_client_secret: Optional[str] = None
    spotify_redirect_uri: str = "http://localhost:8888/callback"
    spotify_device_name: Optional[str] = None
    twitch_client_id: Optional[str] = None
    twitch_client_secret: Optional[str] = None
    twitch_redirect_uri: str = "http://localhost:8888/twitch/callback"
    twitch_channel: Optional[str] = None
    redemption_name: str = "Song Request"
    eventsub_secret: Optional[str] = None
    app_url: Optional[str] = None
    poll_interval_seconds: float = 5.0
    poll_enabled: bool = True
    reset_time: dt_time = DEFAULT_RESET_TIME
    reset_timezone: str = DEFAULT_RESET_TIMEZONE
    eventsub_dedup_size: int = 1000
    eventsub_max_age_seconds: int = 600
    cors_allow_origins: str = ""
    cors_allow_origin_regex: str = ""

    def eventsub_callback_url(self) -> Optional[str]:
        if not self.app_url:
            return None
        return f"{self.app_url.rstrip('/')}/webhook/twitch"


def _parse_flag(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"{name} must be a boolean flag, got {value!r}")


def _parse_reset_time(value: Any) -> dt_time:
    if isinstance(value, dt_time):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        # YAML 1.1 reads an unquoted 8:00 as sexagesimal minutes.
        if 0 <= value < 24 * 60:
            return dt_time(value // 60, value % 60)
        raise ConfigError(f"RESET_TIME out of range: {value!r}")
    try:
        return datetime.strptime(str(value).strip(), "%H:%M").time()
    except ValueError as exc:
        raise ConfigError(f"RESET_TIME must be HH:MM, got {value!r}") from exc


def _parse_number(name: str, value: Any, kind: type, minimum: float) -> Any:
    try:
        number = kind(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}") from exc
    if number < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {number!r}")
    return number


def _load_yaml_overrides(path: str) -> Dict[str, Any]:
    """Read optional YAML overrides keyed by ``RelayConfig`` field name.

    Dependencies: PyYAML ``safe_load``.
    Code customers: ``load_config`` when ``RELAY_CONFIG_FILE`` is set.
    Used variables/origin: a missing file is ignored so the same environment
    works with or without a mounted config.
    """

    config_path = Path(path)
    if not config_path.is_file():
        logger.info("Config file %s not found; using environment only", config_path)
        return {}
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"could not read config file {config_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"config file {config_path} must contain a mapping")
    known = {f.name for f in fields(RelayConfig)}
    overrides: Dict[str, Any] = {}
    for key, value in data.items():
        name = str(key).strip().lower()
        if name not in known:
            logger.warning("Ignoring unknown config key %s in %s", key, config_path)
            continue
        if value is not None:
            overrides[name] = value
    return overrides


def load_config(env: Mapping[str, str] = os.environ) -> RelayConfig:
    values: Dict[str, Any] = {}
    config_file = (env.get("RELAY_CONFIG_FILE") or "").strip()
    if config_file:
        values.update(_load_yaml_overrides(config_file))
    for name, env_name in CONFIG_ENV_MAP.items():
        raw = env.get(env_name)
        if raw is None or not raw.strip():
            continue
        values[name] = raw.strip()
    return build_config(values)


def build_config(values: Mapping[str, Any]) -> RelayConfig:
    data = dict(values)
    if "poll_interval_seconds" in data:
        data["poll_interval_seconds"] = _parse_number("POLL_INTERVAL_SECONDS", data["poll_interval_seconds"], float, 0.5)
    if "eventsub_dedup_size" in data:
        data["eventsub_dedup_size"] = _parse_number("EVENTSUB_DEDUP_SIZE", data["eventsub_dedup_size"], int, 1)
    if "eventsub_max_age_seconds" in data:
        data["eventsub_max_age_seconds"] = _parse_number(
            "EVENTSUB_MAX_AGE_SECONDS", data["eventsub_max_age_seconds"], int, 0
        )
    if "poll_enabled" in data:
        data["poll_enabled"] = _parse_flag("POLL_ENABLED", data["poll_enabled"])
    if "reset_time" in data:
        data["reset_time"] = _parse_reset_time(data["reset_time"])
    for name in ("cors_allow_origins", "cors_allow_origin_regex"):
        if isinstance(data.get(name), list):
            data[name] = ",".join(str(item) for item in data[name])
    config = RelayConfig(**data)
    try:
        ZoneInfo(config.reset_timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"unknown RESET_TIMEZONE {config.reset_timezone!r}") from exc
    if not config.redemption_name.strip():
        raise ConfigError("TWITCH_REDEMPTION_NAME must not be empty")
    return config


# =====================================
# Database
# =====================================
Base = declarative_base()


class StoredCredential(Base):
    __tablename__ = "credentials"

    domain = Column(String, primary_key=True)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(Float, nullable=True)
    scopes = Column(Text, nullable=True)
    updated_at = Column(DateTime, nullable=True)


class BlacklistEntry(Base):
    __tablename__ = "blacklist_entries"

    username = Column(String, primary_key=True)
    added_at = Column(DateTime, nullable=True)


class QueueSnapshotRow(Base):
    __tablename__ = "queue_snapshot"

    id = Column(Integer, primary_key=True)
    payload = Column(Text, nullable=False)
    updated_at = Column(DateTime, nullable=True)


class SongLeaderboardEntry(Base):
    __tablename__ = "song_leaderboard"

    track_id = Column(String, primary_key=True)
    track_name = Column(String, nullable=False)
    artist_name = Column(String, nullable=False)
    play_count = Column(Integer, nullable=False, default=0)
    last_played = Column(DateTime, nullable=True)
    last_queued_by = Column(String, nullable=True)


class UserLeaderboardEntry(Base):
    __tablename__ = "user_leaderboard"

    username = Column(String, primary_key=True)
    display_name = Column(String, nullable=False)
    songs_requested = Column(Integer, nullable=False, default=0)
    last_request = Column(DateTime, nullable=True)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_db_engine(db_url: str):
    """Build the SQLAlchemy engine for ``db_url``.

    Dependencies: SQLAlchemy ``create_engine``; ``StaticPool`` for in-memory sqlite.
    Code customers: ``RelayContext`` at startup.
    Used variables/origin: sqlite file URLs get their parent directory created
    so a fresh checkout starts without manual setup.
    """

    if not db_url.startswith("sqlite"):
        return create_engine(db_url, pool_pre_ping=True)
    connect_args = {"check_same_thread": False}
    if db_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(db_url, connect_args=connect_args, poolclass=StaticPool)
    db_path = db_url.split(":///", 1)[1] if ":///" in db_url else ""
    if db_path:
        Path(db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
    return create_engine(db_url, connect_args=connect_args)


class SqlCredentialStore:
    """Durable tier of the token store; every method reports failure instead of raising."""

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    def load_all(self) -> Dict[str, Credential]:
        db = self._session_factory()
        try:
            rows = db.query(StoredCredential).all()
            return {
                row.domain: Credential(
                    access_token=row.access_token,
                    refresh_token=row.refresh_token,
                    expires_at=row.expires_at,
                    scopes=(row.scopes or "").split(),
                )
                for row in rows
            }
        except SQLAlchemyError:
            logger.warning("Could not load stored credentials", exc_info=True)
            return {}
        finally:
            db.close()

    def save(self, domain: str, credential: Credential) -> bool:
        db = self._session_factory()
        try:
            row = db.get(StoredCredential, domain)
            if row is None:
                row = StoredCredential(domain=domain)
                db.add(row)
            row.access_token = credential.access_token
            row.refresh_token = credential.refresh_token
            row.expires_at = credential.expires_at
            row.scopes = " ".join(credential.scopes)
            row.updated_at = _utcnow()
            db.commit()
            return True
        except SQLAlchemyError:
            db.rollback()
            logger.warning("Could not persist %s credentials", domain, exc_info=True)
            return False
        finally:
            db.close()

    def delete(self, domain: str) -> bool:
        db = self._session_factory()
        try:
            db.query(StoredCredential).filter(StoredCredential.domain == domain).delete()
            db.commit()
            return True
        except SQLAlchemyError:
            db.rollback()
            logger.warning("Could not delete %s credentials", domain, exc_info=True)
            return False
        finally:
            db.close()


def normalize_usernames(values: Any) -> List[str]:
    """Return the sorted, lowercased, de-duplicated usernames in ``values``.

    Raises ``ValidationError`` for anything other than a list of strings.
    """

    if not isinstance(values, list):
        raise ValidationError("blacklist must be a list of usernames")
    seen: set[str] = set()
    for value in values:
        if not isinstance(value, str):
            raise ValidationError("blacklist entries must be strings")
        name = value.strip().lower()
        if name:
            seen.add(name)
    return sorted(seen)


class BlacklistStore:
    __slots__ = ("_session_factory", "_cache", "_lock")

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory
        self._cache: Optional[frozenset[str]] = None
        self._lock = Lock()

    def snapshot(self) -> frozenset[str]:
        with self._lock:
            if self._cache is None:
                db = self._session_factory()
                try:
                    self._cache = frozenset(row.username for row in db.query(BlacklistEntry).all())
                finally:
                    db.close()
            return self._cache

    def get(self) -> List[str]:
        return sorted(self.snapshot())

    def contains(self, username: str) -> bool:
        return (username or "").strip().lower() in self.snapshot()

    def replace(self, usernames: Any) -> List[str]:
        names = normalize_usernames(usernames)
        with self._lock:
            db = self._session_factory()
            try:
                db.query(BlacklistEntry).delete()
                now = _utcnow()
                for name in names:
                    db.add(BlacklistEntry(username=name, added_at=now))
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                raise
            finally:
                db.close()
            self._cache = frozenset(names)
        logger.info("Blacklist updated (%d users)", len(names))
        return names

    def invalidate(self) -> None:
        with self._lock:
            self._cache = None


class SongLeaderboardRow(BaseModel):
    track_id: str
    track_name: str
    artist_name: str
    play_count: int
    last_played: Optional[datetime] = None
    last_queued_by: Optional[str] = None

    class Config:
        from_attributes = True


class UserLeaderboardRow(BaseModel):
    username: str
    display_name: str
    songs_requested: int
    last_request: Optional[datetime] = None

    class Config:
        from_attributes = True


def query_top_songs(db: Session, limit: int) -> List[SongLeaderboardRow]:
    rows = (
        db.query(SongLeaderboardEntry)
        .order_by(SongLeaderboardEntry.play_count.desc(), SongLeaderboardEntry.track_name.asc())
        .limit(limit)
        .all()
    )
    return [SongLeaderboardRow.model_validate(row) for row in rows]


def query_top_users(db: Session, limit: int) -> List[UserLeaderboardRow]:
    rows = (
        db.query(UserLeaderboardEntry)
        .order_by(UserLeaderboardEntry.songs_requested.desc(), UserLeaderboardEntry.username.asc())
        .limit(limit)
        .all()
    )
    return [UserLeaderboardRow.model_validate(row) for row in rows]


class SqlLeaderboard:
    """Play and request counters fed by the router and by reconciliation.

    Dependencies: SQLAlchemy sessions from ``session_factory``.
    Code customers: ``RedemptionRouter`` calls ``record_request`` after a
    successful append; the queue listener calls ``record_play`` when a request
    becomes now playing.
    Used variables/origin: usernames are keyed lowercase, the display name
    keeps the casing of the latest request.
    """

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory
        self._lock = Lock()

    def _song_row(self, db: Session, request: SongRequest) -> SongLeaderboardEntry:
        row = db.get(SongLeaderboardEntry, request.track_id)
        if row is None:
            row = SongLeaderboardEntry(
                track_id=request.track_id,
                track_name=request.track_name,
                artist_name=request.artist_name,
                play_count=0,
            )
            db.add(row)
        return row

    def record_request(self, request: SongRequest) -> None:
        with self._lock:
            db = self._session_factory()
            try:
                username = request.requested_by.strip().lower()
                user = db.get(UserLeaderboardEntry, username)
                if user is None:
                    user = UserLeaderboardEntry(username=username, display_name=request.requested_by, songs_requested=0)
                    db.add(user)
                user.display_name = request.requested_by
                user.songs_requested = (user.songs_requested or 0) + 1
                user.last_request = request.requested_at
                song = self._song_row(db, request)
                song.last_queued_by = request.requested_by
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                raise
            finally:
                db.close()

    def record_play(self, request: SongRequest) -> None:
        with self._lock:
            db = self._session_factory()
            try:
                song = self._song_row(db, request)
                song.play_count = (song.play_count or 0) + 1
                song.last_played = _utcnow()
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                raise
            finally:
                db.close()

    def top_songs(self, limit: int = 10) -> List[SongLeaderboardRow]:
        db = self._session_factory()
        try:
            return query_top_songs(db, limit)
        finally:
            db.close()

    def top_users(self, limit: int = 10) -> List[UserLeaderboardRow]:
        db = self._session_factory()
        try:
            return query_top_users(db, limit)
        finally:
            db.close()


class QueueSnapshotStore:
    """Best-effort persistence of the shadow queue across restarts.

    Changes from different threads can arrive out of order; a change older
    than the last one written is dropped so the row always holds the newest
    queue state.
    """

    SNAPSHOT_ID = 1

    __slots__ = ("_session_factory", "_lock", "_last_version")

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory
        self._lock = Lock()
        self._last_version = 0

    def save(self, change: QueueChange) -> None:
        payload = json.dumps({
            "queue": [item.to_payload() for item in change.pending],
            "nowPlaying": change.now_playing.to_payload() if change.now_playing else None,
        })
        with self._lock:
            if change.version and change.version < self._last_version:
                logger.debug("Skipping stale queue snapshot v%d (have v%d)", change.version, self._last_version)
                return
            db = self._session_factory()
            try:
                row = db.get(QueueSnapshotRow, self.SNAPSHOT_ID)
                if row is None:
                    row = QueueSnapshotRow(id=self.SNAPSHOT_ID, payload=payload)
                    db.add(row)
                row.payload = payload
                row.updated_at = _utcnow()
                db.commit()
                self._last_version = max(self._last_version, change.version)
            except SQLAlchemyError:
                db.rollback()
                logger.warning("Could not persist queue snapshot after %s", change.reason, exc_info=True)
            finally:
                db.close()

    def load(self) -> Optional[Tuple[List[SongRequest], Optional[SongRequest]]]:
        db = self._session_factory()
        try:
            row = db.get(QueueSnapshotRow, self.SNAPSHOT_ID)
            raw = row.payload if row is not None else None
        except SQLAlchemyError:
            logger.warning("Could not read queue snapshot", exc_info=True)
            return None
        finally:
            db.close()
        if not raw:
            return None
        try:
            data = json.loads(raw)
            pending = [SongRequest.from_payload(item) for item in data.get("queue") or []]
            current = data.get("nowPlaying")
            now_playing = SongRequest.from_payload(current) if current else None
        except (ValueError, TypeError, AttributeError, ValidationError):
            logger.warning("Discarding unreadable queue snapshot", exc_info=True)
            return None
        return pending, now_playing


# =====================================
# Live updates
# =====================================
class _QueueBroker:
    """Fan out queue change ticks to SSE listeners.

    Mutations happen on worker threads (sync routes, background tasks, the
    reset timer) so publishing hops onto the event loop the listeners live on.
    """

    __slots__ = ("listeners", "_loop")

    def __init__(self) -> None:
        self.listeners: set[asyncio.Queue[str]] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def subscribe(self) -> asyncio.Queue[str]:
        self._loop = asyncio.get_running_loop()
        queue: asyncio.Queue[str] = asyncio.Queue(maxsize=1000)
        self.listeners.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[str]) -> None:
        self.listeners.discard(queue)

    def has_listeners(self) -> bool:
        return bool(self.listeners)

    def _broadcast(self, message: str) -> None:
        stale: list[asyncio.Queue[str]] = []
        for queue in list(self.listeners):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                stale.append(queue)
                logger.warning("queue change notification dropped for a slow listener")
        for queue in stale:
            self.listeners.discard(queue)

    def publish(self, message: str) -> None:
        loop = self._loop
        if loop is None or not self.listeners:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._broadcast(message)
            return
        try:
            loop.call_soon_threadsafe(self._broadcast, message)
        except RuntimeError:
            # loop already closed during shutdown
            self._loop = None


# =====================================
# Playback polling
# =====================================
class PlaybackPoller:
    def __init__(self, gateway: Any, queue: ShadowQueue, interval: float) -> None:
        self.gateway = gateway
        self.queue = queue
        self.interval = interval
        self.last_playback: Optional[Dict[str, Any]] = None
        self.last_polled_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    def poll_once(self) -> Optional[Dict[str, Any]]:
        """Fetch what Spotify is playing and reconcile the shadow queue with it.

        Dependencies: ``gateway.currently_playing`` and ``ShadowQueue.reconcile``.
        Code customers: the background loop and the dashboard route.
        Used variables/origin: ``UpstreamUnavailable`` propagates to the caller;
        the raw body is kept in ``last_playback`` for the dashboard.
        """

        try:
            playback = self.gateway.currently_playing()
        except UpstreamUnavailable as exc:
            self.last_error = str(exc)
            raise
        self.last_playback = playback
        self.last_polled_at = _utcnow()
        self.last_error = None
        self.queue.reconcile(CurrentlyPlayingSnapshot.from_playback(playback))
        return playback

    async def run(self) -> None:
        try:
            while True:
                if self.gateway.is_authenticated():
                    try:
                        await asyncio.to_thread(self.poll_once)
                    except UpstreamUnavailable as exc:
                        logger.warning("Playback poll failed: %s", exc)
                    except Exception:
                        logger.exception("Unexpected playback poll failure")
                await asyncio.sleep(self.interval)
        except asyncio.CancelledError:
            raise
        finally:
            self._task = None

    def start(self) -> None:
        task = self._task
        if task and not task.done():
            return
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        task = self._task
        if not task:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()


# =====================================
# Relay context
# =====================================
OAUTH_STATE_TTL_SECONDS = 600


class RelayContext:
    """Everything the process owns, created once by ``create_app``.

    Dependencies: the relay domain modules plus SQLAlchemy persistence above.
    Code customers: route handlers through ``get_relay``.
    Used variables/origin: ``config`` drives every collaborator; ``gateway``
    and ``twitch`` may be injected (tests pass stubs).
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        gateway: Any = None,
        twitch: Any = None,
        timer_factory: Any = None,
    ) -> None:
        self.config = config
        self.engine = create_db_engine(config.db_url)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False)

        self.tokens = TokenStore(SqlCredentialStore(self.SessionLocal))
        loaded = self.tokens.load()
        if loaded:
            logger.info("Loaded %d stored credential(s)", loaded)

        self.gateway = gateway or SpotifyGateway(
            self.tokens,
            client_id=config.spotify_client_id,
            client_secret=config.spotify_client_secret,
            redirect_uri=config.spotify_redirect_uri,
            device_name=config.spotify_device_name,
        )
        self.twitch = twitch or TwitchClient(
            self.tokens,
            client_id=config.twitch_client_id,
            client_secret=config.twitch_client_secret,
            redirect_uri=config.twitch_redirect_uri,
            channel=config.twitch_channel,
        )

        self.queue = ShadowQueue(
            reset_at=config.reset_time,
            reset_timezone=config.reset_timezone,
            timer_factory=timer_factory,
        )
        self.blacklist = BlacklistStore(self.SessionLocal)
        self.leaderboard = SqlLeaderboard(self.SessionLocal)
        self.snapshots = QueueSnapshotStore(self.SessionLocal)
        self.router = RedemptionRouter(self.queue, self.gateway, self.blacklist, self.leaderboard)
        self.seen_messages = eventsub.RecentMessageCache(
            max_size=config.eventsub_dedup_size,
            # Without a freshness check, ids leave the window only by size eviction.
            ttl_seconds=max(config.eventsub_max_age_seconds, 600) if config.eventsub_max_age_seconds > 0 else 0,
        )
        if config.eventsub_secret:
            self.eventsub_secret = config.eventsub_secret
        else:
            self.eventsub_secret = secrets.token_hex(32)
            logger.info("TWITCH_EVENTSUB_SECRET not set; generated a per-process EventSub secret")
        self.broker = _QueueBroker()
        self.poller = PlaybackPoller(self.gateway, self.queue, config.poll_interval_seconds)
        self.last_revocation: Optional[Dict[str, Any]] = None
        self._oauth_states: Dict[str, Dict[str, Any]] = {}
        self._oauth_lock = Lock()

        self._restore_queue()
        self.queue.add_listener(self._on_queue_change)

    # ---- lifecycle ----
    async def startup(self) -> None:
        if self.config.poll_enabled:
            self.poller.start()
        logger.info("Song relay ready (reward %r)", self.config.redemption_name)

    async def shutdown(self) -> None:
        await self.poller.stop()
        self.queue.cancel_daily_reset()
        self.engine.dispose()

    def _restore_queue(self) -> None:
        restored = self.snapshots.load()
        if restored is None:
            return
        pending, now_playing = restored
        try:
            self.queue.restore(pending, now_playing)
        except ValidationError:
            logger.warning("Stored queue snapshot is invalid; starting empty", exc_info=True)
            return
        logger.info("Restored %d pending request(s) from the last run", len(pending))

    def _on_queue_change(self, change: QueueChange) -> None:
        self.snapshots.save(change)
        if change.started is not None:
            try:
                self.leaderboard.record_play(change.started)
            except SQLAlchemyError:
                logger.warning("Could not record play of %s", change.started.track_id, exc_info=True)
        self.broker.publish("changed")

    # ---- oauth state ----
    def issue_oauth_state(self, provider: str) -> str:
        state = secrets.token_urlsafe(24)
        with self._oauth_lock:
            self._cleanup_oauth_states()
            self._oauth_states[state] = {"provider": provider, "created_at": time.time()}
        return state

    def consume_oauth_state(self, provider: str, state: Optional[str]) -> bool:
        if not state:
            return False
        with self._oauth_lock:
            self._cleanup_oauth_states()
            meta = self._oauth_states.pop(state, None)
        return bool(meta and meta.get("provider") == provider)

    def _cleanup_oauth_states(self) -> None:
        cutoff = time.time() - OAUTH_STATE_TTL_SECONDS
        stale = [key for key, meta in self._oauth_states.items() if meta.get("created_at", 0) < cutoff]
        for key in stale:
            self._oauth_states.pop(key, None)

    # ---- redemptions ----
    def process_redemption(self, redemption: eventsub.Redemption) -> Optional[RouteResult]:
        try:
            return self.router.handle(redemption.requester, redemption.user_input)
        except Exception:
            logger.exception("Song request from %s could not be processed", redemption.requester)
            return None

    def record_revocation(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        subscription = payload.get("subscription") or {}
        if not isinstance(subscription, Mapping):
            subscription = {}
        record = {
            "id": subscription.get("id"),
            "type": subscription.get("type"),
            "status": subscription.get("status"),
            "condition": subscription.get("condition"),
            "received_at": _utcnow().isoformat(),
        }
        self.last_revocation = record
        logger.warning(
            "EventSub subscription revoked: type=%s status=%s condition=%s",
            record["type"],
            record["status"],
            record["condition"],
        )
        return record

    def subscribe_eventsub(self, callback_url: str) -> Dict[str, Any]:
        return self.twitch.subscribe_redemptions(callback_url, self.eventsub_secret)


# =====================================
# App factory
# =====================================
DEFAULT_CORS_ALLOW_ORIGIN_REGEX = r"https?://.*"


def _parse_cors_origins(raw: str) -> list[str]:
    """Split a comma or whitespace separated origin list, dropping trailing slashes."""

    if not raw:
        return []
    origins: list[str] = []
    for part in re.split(r"[\s,]+", raw):
        origin = part.strip().rstrip("/")
        if origin:
            origins.append(origin)
    return origins


def _separate_cors_origins(origins: list[str]) -> tuple[list[str], list[str]]:
    explicit: list[str] = []
    wildcard_fragments: list[str] = []
    for origin in origins:
        if "*" not in origin:
            explicit.append(origin)
            continue
        # "*" covers one host label run but never crosses a path separator.
        wildcard_fragments.append(re.escape(origin).replace(r"\*", r"[^/]+"))
    return explicit, wildcard_fragments


def _cors_settings(origins_raw: str, regex_raw: str) -> tuple[list[str], Optional[str]]:
    allow_origins, regex_fragments = _separate_cors_origins(_parse_cors_origins(origins_raw))
    if regex_raw:
        regex_fragments.append(regex_raw)
    elif not allow_origins and not regex_fragments:
        regex_fragments.append(DEFAULT_CORS_ALLOW_ORIGIN_REGEX)
    allow_origin_regex = f"^(?:{'|'.join(regex_fragments)})$" if regex_fragments else None
    return allow_origins, allow_origin_regex


router = APIRouter()


def create_app(
    config: Optional[RelayConfig] = None,
    *,
    gateway: Any = None,
    twitch: Any = None,
    timer_factory: Any = None,
) -> FastAPI:
    """Build the relay ASGI app; serve with ``uvicorn backend_app:create_app --factory``."""

    config = config or load_config()
    relay = RelayContext(config, gateway=gateway, twitch=twitch, timer_factory=timer_factory)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await relay.startup()
        try:
            yield
        finally:
            await relay.shutdown()

    app = FastAPI(title="Channel Point Song Relay", version=API_VERSION, lifespan=lifespan)
    app.state.relay = relay

    allow_origins, allow_origin_regex = _cors_settings(config.cors_allow_origins, config.cors_allow_origin_regex)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_origin_regex=allow_origin_regex,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


def get_relay(request: FastAPIRequest) -> RelayContext:
    return request.app.state.relay


def get_db(relay: RelayContext = Depends(get_relay)) -> Session:
    db = relay.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def require_admin(
    x_admin_token: Optional[str] = Header(None),
    relay: RelayContext = Depends(get_relay),
) -> None:
    expected = relay.config.admin_token
    if x_admin_token and expected and secrets.compare_digest(x_admin_token, expected):
        return
    raise HTTPException(status_code=401, detail="invalid admin token")


def _oauth_result_page(provider: str, success: bool, message: str, *, status_code: int = 200) -> HTMLResponse:
    """Render the page shown in the browser at the end of an OAuth round trip."""

    payload = json.dumps({"type": "relay-oauth-complete", "provider": provider, "success": success})
    title = f"{provider.title()} {'Connected' if success else 'Authorization Failed'}"
    body = f"""<!DOCTYPE html>
<html lang=\"en\">
  <head>
    <meta charset=\"utf-8\" />
    <title>{html.escape(title)}</title>
    <style>
      body {{ font-family: sans-serif; margin: 2rem; }}
    </style>
  </head>
  <body>
    <h1>{html.escape(title)}</h1>
    <p>{html.escape(message)}</p>
    <script>
      (function() {{
        var payload = {payload};
        try {{
          if (window.opener) {{
            window.opener.postMessage(payload, '*');
          }}
        }} catch (err) {{ /* ignore */ }}
      }})();
    </script>
  </body>
</html>
"""
    return HTMLResponse(content=body, status_code=status_code)


# =====================================
# Routes: OAuth
# =====================================
@router.get("/auth/spotify")
def auth_spotify(relay: RelayContext = Depends(get_relay)):
    if not relay.gateway.is_configured():
        raise HTTPException(status_code=503, detail="Spotify client credentials are not configured")
    state = relay.issue_oauth_state("spotify")
    return RedirectResponse(relay.gateway.authorization_url(state))


@router.get("/callback")
def spotify_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    relay: RelayContext = Depends(get_relay),
):
    if error:
        return _oauth_result_page("spotify", False, f"Spotify denied access: {error}", status_code=400)
    if not code or not relay.consume_oauth_state("spotify", state):
        return _oauth_result_page("spotify", False, "Invalid or expired authorization request.", status_code=400)
    try:
        relay.gateway.exchange_code(code)
    except RelayError as exc:
        logger.warning("Spotify code exchange failed: %s", exc)
        return _oauth_result_page("spotify", False, str(exc), status_code=502)
    return _oauth_result_page("spotify", True, "Spotify is connected. You can close this window.")


@router.get("/auth/twitch")
def auth_twitch(relay: RelayContext = Depends(get_relay)):
    if not relay.twitch.is_configured():
        raise HTTPException(status_code=503, detail="Twitch client credentials are not configured")
    state = relay.issue_oauth_state("twitch")
    return RedirectResponse(relay.twitch.authorization_url(state))


@router.get("/twitch/callback")
def twitch_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    relay: RelayContext = Depends(get_relay),
):
    if error:
        return _oauth_result_page("twitch", False, f"Twitch denied access: {error}", status_code=400)
    if not code or not relay.consume_oauth_state("twitch", state):
        return _oauth_result_page("twitch", False, "Invalid or expired authorization request.", status_code=400)
    try:
        relay.twitch.exchange_code(code)
    except RelayError as exc:
        logger.warning("Twitch code exchange failed: %s", exc)
        return _oauth_result_page("twitch", False, str(exc), status_code=502)

    message = "Twitch is connected."
    callback_url = relay.config.eventsub_callback_url()
    if callback_url:
        try:
            relay.subscribe_eventsub(callback_url)
            message += " Channel point redemptions are subscribed."
        except RelayError as exc:
            logger.warning("EventSub subscription after Twitch login failed: %s", exc)
            message += f" Subscribing to redemptions failed: {exc}"
    return _oauth_result_page("twitch", True, message)


@router.get("/api/status")
def auth_status(relay: RelayContext = Depends(get_relay)):
    return {
        "spotify": "connected" if relay.gateway.is_authenticated() else "disconnected",
        "twitch": "connected" if relay.twitch.is_authenticated() else "disconnected",
    }


# =====================================
# Routes: Dashboard
# =====================================
@router.get("/api/queue")
def get_queue(relay: RelayContext = Depends(get_relay)):
    """Snapshot for the dashboard poll loop.

    Dependencies: ``PlaybackPoller.poll_once`` for a fresh reconcile.
    Code customers: the browser dashboard, every ~10 s.
    Used variables/origin: provider failures become ``success: false`` with
    the last known queue so the page keeps rendering.
    """

    if not relay.gateway.is_authenticated():
        return {
            "success": False,
            "error": "Spotify is not authenticated. Visit /auth/spotify to connect.",
            "currentlyPlaying": None,
            "currentSongInfo": None,
            "shadowQueue": [item.to_payload() for item in relay.queue.pending()],
        }
    try:
        playback = relay.poller.poll_once()
    except UpstreamUnavailable as exc:
        return {
            "success": False,
            "error": str(exc),
            "currentlyPlaying": relay.poller.last_playback,
            "currentSongInfo": _now_playing_payload(relay),
            "shadowQueue": [item.to_payload() for item in relay.queue.pending()],
        }
    return {
        "success": True,
        "currentlyPlaying": playback,
        "currentSongInfo": _now_playing_payload(relay),
        "shadowQueue": [item.to_payload() for item in relay.queue.pending()],
    }


def _now_playing_payload(relay: RelayContext) -> Optional[Dict[str, Any]]:
    current = relay.queue.now_playing
    return current.to_payload() if current else None


@router.post("/api/queue/clear", dependencies=[Depends(require_admin)])
def clear_queue(relay: RelayContext = Depends(get_relay)):
    relay.queue.clear()
    logger.info("Queue cleared by operator")
    return {"success": True, "shadowQueue": [item.to_payload() for item in relay.queue.pending()]}


@router.get("/api/queue/stream")
async def stream_queue(relay: RelayContext = Depends(get_relay)):
    q = relay.broker.subscribe()

    async def gen():
        # initial tick so clients render immediately
        try:
            yield {"event": "queue", "data": "init"}
            while True:
                msg = await q.get()
                yield {"event": "queue", "data": msg}
        finally:
            relay.broker.unsubscribe(q)

    return EventSourceResponse(
        gen(),
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/api/blacklist")
def get_blacklist(relay: RelayContext = Depends(get_relay)):
    return {"success": True, "blacklist": relay.blacklist.get()}


@router.post("/api/blacklist", dependencies=[Depends(require_admin)])
def update_blacklist(payload: Any = Body(...), relay: RelayContext = Depends(get_relay)):
    usernames = payload.get("blacklist") if isinstance(payload, dict) else payload
    try:
        names = relay.blacklist.replace(usernames)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"success": True, "blacklist": names}


@router.get("/api/leaderboard/songs", response_model=List[SongLeaderboardRow])
def leaderboard_songs(top: int = Query(10, ge=1, le=100), db: Session = Depends(get_db)):
    return query_top_songs(db, top)


@router.get("/api/leaderboard/users", response_model=List[UserLeaderboardRow])
def leaderboard_users(top: int = Query(10, ge=1, le=100), db: Session = Depends(get_db)):
    return query_top_users(db, top)


# =====================================
# Routes: System
# =====================================
@router.get("/system/health")
def health(relay: RelayContext = Depends(get_relay)):
    try:
        with relay.engine.connect() as _:
            pass
        return {"status": "ok", "poller": relay.poller.running}
    except SQLAlchemyError as e:
        raise HTTPException(500, detail=str(e))


# =====================================
# Routes: EventSub
# =====================================
@router.get("/webhook/twitch")
def eventsub_probe(hub_challenge: Optional[str] = Query(None, alias="hub.challenge")):
    if hub_challenge:
        return PlainTextResponse(hub_challenge)
    return PlainTextResponse("Webhook endpoint is ready")


@router.post("/webhook/twitch", name="eventsub_callback")
async def eventsub_callback(
    request: FastAPIRequest,
    background_tasks: BackgroundTasks,
    relay: RelayContext = Depends(get_relay),
):
    """Receive Twitch EventSub deliveries for channel point redemptions.

    Dependencies: ``relay.eventsub`` for header parsing, HMAC verification and
    payload extraction; the ``RecentMessageCache`` on the context for dedup.
    Code customers: Twitch's EventSub webhook transport.
    Used variables/origin: the verification handshake is answered before any
    signature check; notifications are acknowledged with 204 and routed in a
    background task so Twitch never waits on Spotify.
    """

    body = await request.body()
    headers = eventsub.read_headers(request.headers)

    if headers.message_type == eventsub.MESSAGE_VERIFICATION:
        try:
            payload = eventsub.parse_body(body)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        challenge = payload.get("challenge")
        if not isinstance(challenge, str) or not challenge:
            raise HTTPException(status_code=400, detail="No challenge found")
        logger.info("Answering EventSub verification for %s", eventsub.subscription_type(payload) or "unknown")
        return PlainTextResponse(challenge)

    try:
        eventsub.authenticate(
            relay.eventsub_secret,
            headers,
            body,
            max_age_seconds=relay.config.eventsub_max_age_seconds,
        )
    except AuthenticationError as exc:
        logger.warning("Rejected EventSub message %s: %s", headers.message_id or "-", exc)
        raise HTTPException(status_code=403, detail=str(exc))

    try:
        payload = eventsub.parse_body(body)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    if not relay.seen_messages.check_and_add(headers.message_id):
        logger.info("Duplicate EventSub message %s ignored", headers.message_id)
        return Response(status_code=204)

    if headers.message_type == eventsub.MESSAGE_NOTIFICATION:
        redemption = eventsub.extract_redemption(payload, relay.config.redemption_name)
        if redemption is not None:
            background_tasks.add_task(relay.process_redemption, redemption)
        else:
            logger.info("Acknowledged %s notification without action", eventsub.subscription_type(payload) or "unknown")
    elif headers.message_type == eventsub.MESSAGE_REVOCATION:
        relay.record_revocation(payload)
    else:
        logger.info("Unhandled EventSub message type %r", headers.message_type)
    return Response(status_code=204)


@router.post("/webhook/twitch/subscribe", dependencies=[Depends(require_admin)])
def eventsub_subscribe(request: FastAPIRequest, relay: RelayContext = Depends(get_relay)):
    callback_url = relay.config.eventsub_callback_url() or str(request.url_for("eventsub_callback"))
    try:
        subscription = relay.subscribe_eventsub(callback_url)
    except RelayError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return {"status": "ok", "callback": callback_url, "subscription": subscription}


@router.get("/webhook/twitch/status", dependencies=[Depends(require_admin)])
def eventsub_status(relay: RelayContext = Depends(get_relay)):
    try:
        subscriptions = relay.twitch.list_subscriptions()
    except RelayError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return {
        "status": "ok",
        "subscriptions": subscriptions,
        "lastRevocation": relay.last_revocation,
        "dedupWindow": len(relay.seen_messages),
    }


@router.get("/webhook/twitch/test")
def eventsub_test():
    return {
        "status": "ok",
        "message": "Twitch webhook endpoint is reachable",
        "timestamp": _utcnow().isoformat(),
    }


@router.post("/webhook/twitch/test-event", dependencies=[Depends(require_admin)])
def eventsub_test_event(payload: Dict[str, Any] = Body(...), relay: RelayContext = Depends(get_relay)):
    """Push a redemption payload through routing without a signature (operator debugging)."""

    payload.setdefault("subscription", {"type": eventsub.REDEMPTION_EVENT_TYPE})
    redemption = eventsub.extract_redemption(payload, relay.config.redemption_name)
    if redemption is None:
        return {"status": "ignored", "result": None}
    result = relay.process_redemption(redemption)
    if result is None:
        raise HTTPException(status_code=500, detail="redemption processing failed")
    return {
        "status": result.status,
        "result": {
            "success": result.success,
            "position": result.position,
            "error": result.error,
            "request": result.request.to_payload() if result.request else None,
        },
    }
