from __future__ import annotations
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence
from urllib.parse import urlencode

import requests

from .errors import NoActiveDevice, NotFound, RelayError, UpstreamUnavailable, ValidationError
from .tokens import SPOTIFY_DOMAIN, Credential, TokenStore

logger = logging.getLogger(__name__)

SPOTIFY_ACCOUNTS_URL = "https://accounts.spotify.com"
SPOTIFY_API_URL = "https://api.spotify.com/v1"

SPOTIFY_SCOPES = [
    "user-read-private",
    "user-read-email",
    "user-modify-playback-state",
    "user-read-playback-state",
    "user-read-currently-playing",
]

TRACK_URI_RE = re.compile(r"spotify:track:([A-Za-z0-9]+)")
TRACK_URL_RE = re.compile(r"open\.spotify\.com/(?:intl-[\w-]+/)?track/([A-Za-z0-9]+)", re.I)


@dataclass(frozen=True)
class TrackInfo:
    track_id: str
    name: str
    artist_name: str
    album_name: Optional[str] = None
    album_image_url: Optional[str] = None

    @property
    def uri(self) -> str:
        return f"spotify:track:{self.track_id}"

    @classmethod
    def from_api(cls, item: Mapping[str, Any]) -> "TrackInfo":
        if not isinstance(item, Mapping) or not item.get("id"):
            raise UpstreamUnavailable("Spotify returned a track without an id")
        artists = item.get("artists") or []
        artist_name = ", ".join(str(a.get("name")) for a in artists if isinstance(a, Mapping) and a.get("name"))
        album = item.get("album") or {}
        images = (album.get("images") or []) if isinstance(album, Mapping) else []
        image_url = images[0].get("url") if images and isinstance(images[0], Mapping) else None
        return cls(
            track_id=str(item["id"]),
            name=str(item.get("name") or ""),
            artist_name=artist_name or "Unknown",
            album_name=album.get("name") if isinstance(album, Mapping) else None,
            album_image_url=image_url,
        )


@dataclass(frozen=True)
class EnqueueResult:
    success: bool
    track: Optional[TrackInfo] = None
    error: Optional[str] = None


def extract_track_id(query: str) -> Optional[str]:
    """Return the track id embedded in a Spotify URI or open.spotify.com URL."""

    for pattern in (TRACK_URI_RE, TRACK_URL_RE):
        match = pattern.search(query)
        if match:
            return match.group(1)
    return None


class SpotifyGateway:
    """Thin wrapper over the Spotify Web API calls the relay needs.

    Every call obtains its bearer token from the shared ``TokenStore`` which
    refreshes transparently; HTTP and transport failures surface as
    ``UpstreamUnavailable`` (or one of its subclasses).
    """

    def __init__(
        self,
        token_store: TokenStore,
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: str,
        device_name: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 10,
    ) -> None:
        self._tokens = token_store
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.device_name = device_name
        self._session = session or requests.Session()
        self._timeout = timeout
        token_store.register_refresher(SPOTIFY_DOMAIN, self._refresh)

    # ---- auth ----
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def is_authenticated(self) -> bool:
        return self._tokens.is_authenticated(SPOTIFY_DOMAIN)

    def authorization_url(self, state: Optional[str] = None) -> str:
        params = {
            "client_id": self.client_id or "",
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(SPOTIFY_SCOPES),
        }
        if state:
            params["state"] = state
        return f"{SPOTIFY_ACCOUNTS_URL}/authorize?{urlencode(params)}"

    def exchange_code(self, code: str) -> Credential:
        payload = self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
        })
        credential = Credential.from_token_response(payload)
        self._tokens.save(SPOTIFY_DOMAIN, credential)
        logger.info("Stored Spotify credentials from OAuth callback")
        return credential

    def _refresh(self, credential: Credential) -> Credential:
        payload = self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token or "",
        })
        return Credential.from_token_response(payload, previous=credential)

    def _token_request(self, data: Dict[str, str]) -> Dict[str, Any]:
        if not self.is_configured():
            raise UpstreamUnavailable("Spotify client credentials are not configured")
        try:
            resp = self._session.post(
                f"{SPOTIFY_ACCOUNTS_URL}/api/token",
                data=data,
                auth=(self.client_id or "", self.client_secret or ""),
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise UpstreamUnavailable(f"Spotify token request failed: {exc}") from exc
        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if resp.status_code >= 400:
            message = payload.get("error_description") or payload.get("error") or resp.text
            raise UpstreamUnavailable(f"Spotify token request rejected: {message}", status=resp.status_code)
        return payload

    # ---- transport ----
    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> requests.Response:
        token = self._tokens.get_valid_token(SPOTIFY_DOMAIN)
        resp = self._send(method, path, token, params=params, json=json)
        if resp.status_code == 401:
            logger.info("Spotify rejected the access token; forcing a refresh")
            token = self._tokens.get_valid_token(SPOTIFY_DOMAIN, force_refresh=True)
            resp = self._send(method, path, token, params=params, json=json)
        if resp.status_code >= 400:
            raise self._error_from(resp)
        return resp

    def _send(self, method: str, path: str, token: str, **kwargs: Any) -> requests.Response:
        try:
            return self._session.request(
                method,
                f"{SPOTIFY_API_URL}{path}",
                headers={"Authorization": f"Bearer {token}"},
                timeout=self._timeout,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise UpstreamUnavailable(f"Spotify request failed: {exc}") from exc

    @staticmethod
    def _error_from(resp: requests.Response) -> UpstreamUnavailable:
        message = resp.text or f"HTTP {resp.status_code}"
        reason: Optional[str] = None
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, Mapping):
            error = body.get("error")
            if isinstance(error, Mapping):
                message = str(error.get("message") or message)
                reason = error.get("reason")
            elif isinstance(error, str):
                message = str(body.get("error_description") or error)
        if reason == "NO_ACTIVE_DEVICE" or (resp.status_code == 404 and "active device" in message.lower()):
            return NoActiveDevice(message, status=resp.status_code, reason="NO_ACTIVE_DEVICE")
        if resp.status_code == 429:
            retry_after = resp.headers.get("Retry-After")
            message = f"Spotify rate limit reached (retry after {retry_after or '?'}s)"
        return UpstreamUnavailable(message, status=resp.status_code, reason=reason)

    # ---- tracks ----
    def get_track(self, track_id: str) -> TrackInfo:
        resp = self._request("GET", f"/tracks/{track_id}")
        return TrackInfo.from_api(resp.json())

    def search_track(self, query: str) -> TrackInfo:
        resp = self._request("GET", "/search", params={"q": query, "type": "track", "limit": 1})
        items = ((resp.json() or {}).get("tracks") or {}).get("items") or []
        if not items:
            raise NotFound("No tracks found matching the query")
        return TrackInfo.from_api(items[0])

    def resolve_track(self, query: str) -> TrackInfo:
        text = (query or "").strip()
        if not text:
            raise ValidationError("empty song request")
        track_id = extract_track_id(text)
        if track_id:
            return self.get_track(track_id)
        if "spotify.com" in text or text.startswith("spotify:"):
            raise ValidationError("Invalid Spotify URI or URL")
        return self.search_track(text)

    # ---- player ----
    def enqueue(self, track: TrackInfo) -> None:
        """Add ``track`` to the Spotify queue, recovering once from a missing active device."""

        try:
            self._request("POST", "/me/player/queue", params={"uri": track.uri})
        except NoActiveDevice:
            logger.info("No active Spotify device; attempting playback transfer before retrying")
            self.recover_active_device()
            self._request("POST", "/me/player/queue", params={"uri": track.uri})

    def list_devices(self) -> List[Dict[str, Any]]:
        resp = self._request("GET", "/me/player/devices")
        return list((resp.json() or {}).get("devices") or [])

    def transfer_playback(self, device_id: str, *, play: bool = False) -> None:
        self._request("PUT", "/me/player", json={"device_ids": [device_id], "play": play})

    def recover_active_device(self) -> str:
        devices = self.list_devices()
        device = self._pick_device(devices)
        if device is None:
            raise NoActiveDevice("No Spotify devices available", reason="NO_ACTIVE_DEVICE")
        device_id = str(device["id"])
        self.transfer_playback(device_id)
        logger.info("Transferred Spotify playback to %s", device.get("name") or device_id)
        return device_id

    def _pick_device(self, devices: Sequence[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
        usable = [d for d in devices if d.get("id") and not d.get("is_restricted")]
        if not usable:
            return None
        if self.device_name:
            wanted = self.device_name.strip().casefold()
            for device in usable:
                if str(device.get("name") or "").strip().casefold() == wanted:
                    return device
        for device in usable:
            if device.get("is_active"):
                return device
        return usable[0]

    def currently_playing(self) -> Optional[Dict[str, Any]]:
        resp = self._request("GET", "/me/player/currently-playing")
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    def queue_track(self, query: str) -> EnqueueResult:
        """Resolve ``query`` and enqueue it, reporting failures as a result instead of raising."""

        try:
            track = self.resolve_track(query)
            self.enqueue(track)
        except RelayError as exc:
            logger.warning("Could not queue %r: %s", query, exc)
            return EnqueueResult(success=False, error=str(exc))
        logger.info("Added %s by %s to the Spotify queue", track.name, track.artist_name)
        return EnqueueResult(success=True, track=track)
