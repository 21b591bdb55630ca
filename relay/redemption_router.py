from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .errors import ValidationError
from .shadow_queue import ShadowQueue, SongRequest

logger = logging.getLogger(__name__)

STATUS_QUEUED = "queued"
STATUS_BLACKLISTED = "blacklisted"
STATUS_REJECTED = "rejected"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class RouteResult:
    status: str
    request: Optional[SongRequest] = None
    position: Optional[int] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == STATUS_QUEUED


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RedemptionRouter:
    """Turn a redemption (requester + free text) into a queued song request.

    Dependencies: ``blacklist`` exposes ``contains(username)``, ``gateway``
    exposes ``queue_track(text)`` returning an ``EnqueueResult`` and
    ``leaderboard`` (optional) exposes ``record_request(request)``.
    Code customers: the EventSub webhook dispatch and the operator test-event
    route.
    Used variables/origin: the track is resolved and enqueued on Spotify
    before the shadow queue is touched, so a request that never reached
    Spotify can never show up as pending.
    """

    def __init__(
        self,
        queue: ShadowQueue,
        gateway: Any,
        blacklist: Any,
        leaderboard: Any = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.queue = queue
        self.gateway = gateway
        self.blacklist = blacklist
        self.leaderboard = leaderboard
        self._clock = clock

    def handle(self, requester: str, text: str) -> RouteResult:
        requester = (requester or "").strip()
        text = (text or "").strip()
        if not requester:
            logger.warning("Dropping redemption without a requester")
            return RouteResult(STATUS_REJECTED, error="missing requester")
        if self.blacklist.contains(requester):
            logger.info("Ignoring song request from blacklisted user %s", requester)
            return RouteResult(STATUS_BLACKLISTED, error="requester is blacklisted")
        if not text:
            logger.info("Ignoring empty song request from %s", requester)
            return RouteResult(STATUS_REJECTED, error="empty song request")

        logger.info("Song request from %s: %s", requester, text)
        result = self.gateway.queue_track(text)
        if not result.success or result.track is None:
            logger.warning("Failed to add song for %s: %s", requester, result.error)
            return RouteResult(STATUS_FAILED, error=result.error or "track could not be queued")

        track = result.track
        request = SongRequest(
            track_id=track.track_id,
            track_name=track.name,
            artist_name=track.artist_name,
            requested_by=requester,
            album_name=track.album_name,
            album_image_url=track.album_image_url,
            requested_at=self._clock(),
        )
        try:
            position = self.queue.append(request)
        except ValidationError as exc:
            logger.error("Spotify accepted %s but the request is malformed: %s", track.track_id, exc)
            return RouteResult(STATUS_FAILED, error=str(exc))

        if self.leaderboard is not None:
            try:
                self.leaderboard.record_request(request)
            except Exception:
                logger.exception("Leaderboard update failed for %s", requester)
        logger.info("Queued %s by %s for %s at position %s", track.name, track.artist_name, requester, position)
        return RouteResult(STATUS_QUEUED, request=request, position=position)
