from __future__ import annotations
import logging
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional

from .errors import NotAuthenticated, UpstreamUnavailable

logger = logging.getLogger(__name__)

SPOTIFY_DOMAIN = "spotify"
TWITCH_DOMAIN = "twitch"
TWITCH_APP_DOMAIN = "twitch_app"

REFRESH_MARGIN_SECONDS = 60


@dataclass
class Credential:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None
    scopes: List[str] = field(default_factory=list)

    def expires_within(self, seconds: float, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        current = time.time() if now is None else now
        return current + seconds >= self.expires_at

    @classmethod
    def from_token_response(
        cls,
        payload: Mapping[str, Any],
        *,
        previous: Optional["Credential"] = None,
        now: Optional[float] = None,
    ) -> "Credential":
        """Build a credential from an OAuth token endpoint response.

        Providers may omit ``refresh_token`` on refresh; the previous one is
        kept in that case.
        """

        access_token = payload.get("access_token")
        if not access_token:
            message = payload.get("message") or payload.get("error_description") or payload.get("error") or payload
            raise UpstreamUnavailable(f"token response missing access_token: {message}")
        current = time.time() if now is None else now
        expires_in = payload.get("expires_in")
        expires_at: Optional[float] = None
        if expires_in is not None:
            try:
                expires_at = current + int(expires_in)
            except (TypeError, ValueError):
                expires_at = None
        raw_scopes = payload.get("scope")
        if isinstance(raw_scopes, str):
            scopes = raw_scopes.split()
        elif isinstance(raw_scopes, list):
            scopes = [str(s) for s in raw_scopes]
        else:
            scopes = list(previous.scopes) if previous else []
        refresh_token = payload.get("refresh_token") or (previous.refresh_token if previous else None)
        return cls(access_token=access_token, refresh_token=refresh_token, expires_at=expires_at, scopes=scopes)


Refresher = Callable[[Credential], Credential]


class TokenStore:
    """Access/refresh tokens per identity domain, memory first, durable when possible.

    Callers never learn which tier served them: a failed durable write is
    logged and the in-memory record stays authoritative for the process.
    """

    def __init__(
        self,
        durable: Optional[Any] = None,
        *,
        clock: Callable[[], float] = time.time,
        refresh_margin: float = REFRESH_MARGIN_SECONDS,
    ) -> None:
        self._durable = durable
        self._clock = clock
        self._refresh_margin = refresh_margin
        self._records: Dict[str, Credential] = {}
        self._refreshers: Dict[str, Refresher] = {}
        self._lock = Lock()
        self._domain_locks: Dict[str, Lock] = {}

    def load(self) -> int:
        if self._durable is None:
            return 0
        records = self._durable.load_all()
        with self._lock:
            self._records.update(records)
        return len(records)

    def register_refresher(self, domain: str, refresher: Refresher) -> None:
        self._refreshers[domain] = refresher

    def get(self, domain: str) -> Optional[Credential]:
        with self._lock:
            return self._records.get(domain)

    def save(self, domain: str, credential: Credential, *, persist: bool = True) -> None:
        with self._lock:
            self._records[domain] = credential
        if persist and self._durable is not None:
            if not self._durable.save(domain, credential):
                logger.warning("Durable token storage unavailable; keeping %s token in memory only", domain)

    def clear(self, domain: str) -> None:
        with self._lock:
            self._records.pop(domain, None)
        if self._durable is not None:
            self._durable.delete(domain)

    def is_authenticated(self, domain: str) -> bool:
        return self.get(domain) is not None

    def get_valid_token(self, domain: str, *, force_refresh: bool = False) -> str:
        """Return a usable access token, refreshing it first when it is about to expire."""

        with self._domain_lock(domain):
            credential = self.get(domain)
            if credential is None:
                raise NotAuthenticated(f"{domain} is not authenticated")
            if not force_refresh and not credential.expires_within(self._refresh_margin, self._clock()):
                return credential.access_token
            refresher = self._refreshers.get(domain)
            if refresher is None or not credential.refresh_token:
                if force_refresh or credential.expires_within(0, self._clock()):
                    raise NotAuthenticated(f"{domain} token expired and cannot be refreshed")
                return credential.access_token
            try:
                refreshed = refresher(credential)
            except UpstreamUnavailable:
                if not force_refresh and not credential.expires_within(0, self._clock()):
                    logger.warning("Refreshing %s token failed; using current token until expiry", domain)
                    return credential.access_token
                raise
            self.save(domain, refreshed)
            logger.info("Refreshed %s access token", domain)
            return refreshed.access_token

    def _domain_lock(self, domain: str) -> Lock:
        with self._lock:
            lock = self._domain_locks.get(domain)
            if lock is None:
                lock = Lock()
                self._domain_locks[domain] = lock
            return lock
