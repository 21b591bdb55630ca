from __future__ import annotations
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, time as dt_time, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union
from zoneinfo import ZoneInfo

from .errors import ValidationError

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("track_id", "track_name", "artist_name", "requested_by")

DEFAULT_RESET_TIME = dt_time(8, 0)
DEFAULT_RESET_TIMEZONE = "America/New_York"

# Same track reported with progress this far behind the last poll counts as a replay.
RESTART_TOLERANCE_MS = 5000

_PAYLOAD_KEYS: Dict[str, Tuple[str, ...]] = {
    "track_id": ("trackId", "track_id"),
    "track_name": ("trackName", "track_name"),
    "artist_name": ("artistName", "artist_name"),
    "requested_by": ("requestedBy", "requested_by"),
    "album_name": ("albumName", "album_name"),
    "album_image_url": ("albumImageUrl", "album_image_url", "albumImage"),
    "requested_at": ("requestedAt", "requested_at"),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _pick(data: Mapping[str, Any], name: str) -> Any:
    for key in _PAYLOAD_KEYS[name]:
        if key in data and data[key] is not None:
            return data[key]
    return None


@dataclass(frozen=True)
class SongRequest:
    track_id: str
    track_name: str
    artist_name: str
    requested_by: str
    album_name: Optional[str] = None
    album_image_url: Optional[str] = None
    requested_at: datetime = field(default_factory=_utcnow)

    def missing_fields(self) -> List[str]:
        return [name for name in REQUIRED_FIELDS if not str(getattr(self, name) or "").strip()]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "trackId": self.track_id,
            "trackName": self.track_name,
            "artistName": self.artist_name,
            "albumName": self.album_name,
            "albumImageUrl": self.album_image_url,
            "requestedBy": self.requested_by,
            "requestedAt": self.requested_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "SongRequest":
        """Build a request from a camelCase (or snake_case) mapping.

        Raises ``ValidationError`` when a required field is absent so that
        persisted snapshots with damaged rows are rejected as a whole.
        """

        if not isinstance(data, Mapping):
            raise ValidationError("song request payload must be an object")
        values = {name: _pick(data, name) for name in _PAYLOAD_KEYS}
        missing = [name for name in REQUIRED_FIELDS if not str(values[name] or "").strip()]
        if missing:
            raise ValidationError(f"invalid song request: missing {', '.join(missing)}")
        requested_at = values.pop("requested_at")
        if isinstance(requested_at, str):
            try:
                requested_at = datetime.fromisoformat(requested_at)
            except ValueError as exc:
                raise ValidationError(f"invalid requestedAt timestamp: {requested_at}") from exc
        if not isinstance(requested_at, datetime):
            requested_at = _utcnow()
        return cls(**{k: (str(v) if v is not None else None) for k, v in values.items()}, requested_at=requested_at)


@dataclass(frozen=True)
class CurrentlyPlayingSnapshot:
    track_id: Optional[str]
    progress_ms: int = 0
    is_playing: bool = False
    polled_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_playback(cls, payload: Optional[Mapping[str, Any]]) -> Optional["CurrentlyPlayingSnapshot"]:
        """Translate a raw ``/me/player/currently-playing`` body into a snapshot."""

        if not payload:
            return None
        item = payload.get("item")
        track_id = item.get("id") if isinstance(item, Mapping) else None
        if not track_id:
            return None
        try:
            progress = int(payload.get("progress_ms") or 0)
        except (TypeError, ValueError):
            progress = 0
        return cls(track_id=str(track_id), progress_ms=progress, is_playing=bool(payload.get("is_playing")))


@dataclass(frozen=True)
class ReconcileResult:
    matched_head: bool
    skipped: List[SongRequest]
    now_playing: Optional[SongRequest] = None


@dataclass(frozen=True)
class QueueChange:
    reason: str
    pending: Tuple[SongRequest, ...]
    now_playing: Optional[SongRequest]
    started: Optional[SongRequest] = None
    skipped: Tuple[SongRequest, ...] = ()
    # Assigned under the queue lock; listeners can use it to drop stale changes.
    version: int = 0


def next_reset_time(now: datetime, reset_at: dt_time, tz: ZoneInfo) -> datetime:
    """Return the next wall-clock ``reset_at`` in ``tz`` strictly after ``now``.

    The date arithmetic happens in local time so the instant follows daylight
    saving transitions instead of drifting by an hour for half the year.
    """

    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local_now = now.astimezone(tz)
    candidate = datetime.combine(local_now.date(), reset_at, tzinfo=tz)
    if candidate <= local_now:
        candidate = datetime.combine(local_now.date() + timedelta(days=1), reset_at, tzinfo=tz)
    return candidate


def _start_timer(delay: float, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()
    return timer


QueueListener = Callable[[QueueChange], None]
TimerFactory = Callable[[float, Callable[[], None]], Any]


class ShadowQueue:
    """Locally tracked ordering of requests Spotify has queued but not yet played.

    Spotify offers no endpoint to read the upcoming queue, so the relay keeps
    its own FIFO of what it enqueued and infers progress from polls of the
    currently playing track (``reconcile``). Every mutation runs under one
    re-entrant lock; listeners run after the lock is released, so each
    ``QueueChange`` carries a version that orders it against concurrent ones.
    """

    def __init__(
        self,
        *,
        reset_at: dt_time = DEFAULT_RESET_TIME,
        reset_timezone: Union[str, ZoneInfo] = DEFAULT_RESET_TIMEZONE,
        timer_factory: Optional[TimerFactory] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._lock = threading.RLock()
        self._queue: List[SongRequest] = []
        self._now_playing: Optional[SongRequest] = None
        self._last_progress_ms: Optional[int] = None
        self._reset_at = reset_at
        self._reset_tz = reset_timezone if isinstance(reset_timezone, ZoneInfo) else ZoneInfo(reset_timezone)
        self._timer_factory: TimerFactory = timer_factory or _start_timer
        self._clock = clock
        self._reset_timer: Any = None
        self._reset_generation = 0
        self._next_reset_at: Optional[datetime] = None
        self._listeners: List[QueueListener] = []
        self._version = 0

    # ---- reads ----
    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)

    def pending(self) -> List[SongRequest]:
        with self._lock:
            return list(self._queue)

    @property
    def now_playing(self) -> Optional[SongRequest]:
        with self._lock:
            return self._now_playing

    @property
    def next_reset_at(self) -> Optional[datetime]:
        with self._lock:
            return self._next_reset_at

    def to_payload(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "queue": [item.to_payload() for item in self._queue],
                "nowPlaying": self._now_playing.to_payload() if self._now_playing else None,
            }

    def add_listener(self, listener: QueueListener) -> None:
        self._listeners.append(listener)

    # ---- mutations ----
    def append(self, request: SongRequest) -> int:
        """Add ``request`` to the tail and return its 1-based position."""

        if not isinstance(request, SongRequest):
            raise ValidationError("song request must be a SongRequest instance")
        missing = request.missing_fields()
        if missing:
            raise ValidationError(f"invalid song request: missing {', '.join(missing)}")
        with self._lock:
            self._queue.append(request)
            position = len(self._queue)
            change = self._change("append")
        self.ensure_daily_reset()
        self._notify(change)
        return position

    def reconcile(self, snapshot: Optional[CurrentlyPlayingSnapshot]) -> ReconcileResult:
        """Advance the queue from one poll of what Spotify is playing right now.

        Only the head and the entry right behind it are ever compared; a match
        on the second entry means the head was skipped (or played between two
        polls) and it is discarded. Anything else leaves the queue alone so an
        unrelated song the streamer plays cannot drain pending requests.
        """

        try:
            with self._lock:
                result, change = self._reconcile_locked(snapshot)
        except Exception:
            logger.exception("Queue reconciliation failed; leaving state untouched")
            return ReconcileResult(matched_head=False, skipped=[], now_playing=self.now_playing)
        if change is not None:
            self._notify(change)
        return result

    def clear(self) -> None:
        with self._lock:
            self._queue.clear()
            self._now_playing = None
            self._last_progress_ms = None
            change = self._change("clear")
        self._notify(change)

    def restore(self, pending: Sequence[SongRequest], now_playing: Optional[SongRequest] = None) -> None:
        items = list(pending)
        for item in items + ([now_playing] if now_playing else []):
            missing = item.missing_fields()
            if missing:
                raise ValidationError(f"invalid song request: missing {', '.join(missing)}")
        with self._lock:
            self._queue = items
            self._now_playing = now_playing
            self._last_progress_ms = None
            change = self._change("restore")
        if items:
            self.ensure_daily_reset()
        self._notify(change)

    # ---- daily reset ----
    def schedule_daily_reset(self) -> datetime:
        """Arm the one-shot reset timer for the next configured wall-clock time.

        Any pending timer is cancelled first, so at most one is ever live.
        """

        with self._lock:
            self._cancel_timer_locked()
            now = self._clock()
            fire_at = next_reset_time(now, self._reset_at, self._reset_tz)
            delay = max((fire_at - now).total_seconds(), 0.0)
            generation = self._reset_generation
            self._reset_timer = self._timer_factory(delay, lambda: self._run_daily_reset(generation))
            self._next_reset_at = fire_at
        logger.info("Queue reset scheduled for %s (in %d minutes)", fire_at.isoformat(), int(delay // 60))
        return fire_at

    def ensure_daily_reset(self) -> Optional[datetime]:
        with self._lock:
            if self._reset_timer is not None:
                return self._next_reset_at
        return self.schedule_daily_reset()

    def cancel_daily_reset(self) -> None:
        with self._lock:
            self._cancel_timer_locked()

    def _cancel_timer_locked(self) -> None:
        self._reset_generation += 1
        timer = self._reset_timer
        self._reset_timer = None
        self._next_reset_at = None
        if timer is not None:
            cancel = getattr(timer, "cancel", None)
            if callable(cancel):
                cancel()

    def _run_daily_reset(self, generation: int) -> None:
        with self._lock:
            if generation != self._reset_generation:
                return
            self._reset_timer = None
            self._next_reset_at = None
        logger.info("Daily queue reset firing")
        self.clear()
        self.schedule_daily_reset()

    # ---- internals ----
    def _reconcile_locked(
        self, snapshot: Optional[CurrentlyPlayingSnapshot]
    ) -> Tuple[ReconcileResult, Optional[QueueChange]]:
        track_id = getattr(snapshot, "track_id", None) if snapshot is not None else None
        if not track_id:
            # Paused or nothing playing: keep the attribution we already have.
            return ReconcileResult(False, [], self._now_playing), None

        current = self._now_playing
        progress = getattr(snapshot, "progress_ms", None)
        replayed = (
            progress is not None
            and self._last_progress_ms is not None
            and progress + RESTART_TOLERANCE_MS < self._last_progress_ms
        )
        self._last_progress_ms = progress
        if current is not None and current.track_id == track_id and not replayed:
            return ReconcileResult(False, [], current), None

        if self._queue:
            head = self._queue[0]
            if head.track_id == track_id:
                self._queue.pop(0)
                self._now_playing = head
                return ReconcileResult(True, [], head), self._change("reconcile", started=head)
            if len(self._queue) > 1 and self._queue[1].track_id == track_id:
                skipped = self._queue.pop(0)
                started = self._queue.pop(0)
                self._now_playing = started
                logger.info(
                    "Request %s by %s was skipped; now playing %s by %s",
                    skipped.track_name,
                    skipped.requested_by,
                    started.track_name,
                    started.requested_by,
                )
                return (
                    ReconcileResult(True, [skipped], started),
                    self._change("reconcile", started=started, skipped=(skipped,)),
                )

        if current is not None and current.track_id != track_id:
            self._now_playing = None
            return ReconcileResult(False, [], None), self._change("reconcile")
        return ReconcileResult(False, [], self._now_playing), None

    def _change(
        self,
        reason: str,
        *,
        started: Optional[SongRequest] = None,
        skipped: Tuple[SongRequest, ...] = (),
    ) -> QueueChange:
        self._version += 1
        return QueueChange(
            reason=reason,
            pending=tuple(self._queue),
            now_playing=self._now_playing,
            started=started,
            skipped=skipped,
            version=self._version,
        )

    def _notify(self, change: QueueChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("Queue listener failed for %s", change.reason)
