from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests

from .errors import NotAuthenticated, UpstreamUnavailable
from .eventsub import REDEMPTION_EVENT_TYPE
from .tokens import TWITCH_APP_DOMAIN, TWITCH_DOMAIN, REFRESH_MARGIN_SECONDS, Credential, TokenStore

logger = logging.getLogger(__name__)

TWITCH_OAUTH_URL = "https://id.twitch.tv/oauth2"
HELIX_URL = "https://api.twitch.tv/helix"

TWITCH_SCOPES = ["channel:read:redemptions"]


class TwitchClient:
    """OAuth and Helix calls against Twitch used to set up EventSub delivery.

    The broadcaster token (``twitch`` domain) comes from the OAuth callback;
    EventSub webhook subscriptions and user lookups use an app access token
    obtained with client credentials and cached in memory only.
    """

    def __init__(
        self,
        token_store: TokenStore,
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: str,
        channel: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 5,
    ) -> None:
        self._tokens = token_store
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.channel = channel
        self._session = session or requests.Session()
        self._timeout = timeout
        self._broadcaster_id: Optional[str] = None
        token_store.register_refresher(TWITCH_DOMAIN, self._refresh_user)

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def is_authenticated(self) -> bool:
        return self._tokens.is_authenticated(TWITCH_DOMAIN)

    def authorization_url(self, state: Optional[str] = None) -> str:
        params = {
            "client_id": self.client_id or "",
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(TWITCH_SCOPES),
        }
        if state:
            params["state"] = state
        return f"{TWITCH_OAUTH_URL}/authorize?{urlencode(params)}"

    # ---- tokens ----
    def exchange_code(self, code: str) -> Credential:
        payload = self._token_request({
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.redirect_uri,
        })
        credential = Credential.from_token_response(payload)
        self._tokens.save(TWITCH_DOMAIN, credential)
        logger.info("Stored Twitch credentials from OAuth callback")
        return credential

    def _refresh_user(self, credential: Credential) -> Credential:
        payload = self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token or "",
        })
        return Credential.from_token_response(payload, previous=credential)

    def app_access_token(self) -> str:
        credential = self._tokens.get(TWITCH_APP_DOMAIN)
        if credential is None or credential.expires_within(REFRESH_MARGIN_SECONDS):
            payload = self._token_request({"grant_type": "client_credentials"})
            credential = Credential.from_token_response(payload)
            self._tokens.save(TWITCH_APP_DOMAIN, credential, persist=False)
            logger.info("Obtained Twitch app access token for EventSub")
        return credential.access_token

    def _token_request(self, data: Dict[str, str]) -> Dict[str, Any]:
        if not self.is_configured():
            raise NotAuthenticated("twitch oauth credentials are not configured")
        form = {"client_id": self.client_id or "", "client_secret": self.client_secret or ""}
        form.update(data)
        try:
            resp = self._session.post(f"{TWITCH_OAUTH_URL}/token", data=form, timeout=self._timeout)
        except requests.RequestException as exc:
            raise UpstreamUnavailable(f"Twitch token request failed: {exc}") from exc
        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if resp.status_code >= 400:
            message = payload.get("message") or resp.text
            raise UpstreamUnavailable(f"Twitch token request rejected: {message}", status=resp.status_code)
        return payload

    # ---- helix ----
    def _helix(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.app_access_token()}", "Client-Id": self.client_id or ""}
        try:
            resp = self._session.request(method, f"{HELIX_URL}{path}", headers=headers, timeout=self._timeout, **kwargs)
        except requests.RequestException as exc:
            raise UpstreamUnavailable(f"Twitch request failed: {exc}") from exc
        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if resp.status_code >= 400:
            message = payload.get("message") if isinstance(payload, dict) else None
            if resp.status_code == 403:
                logger.warning("Twitch returned 403; the broadcaster must authorize channel:read:redemptions")
            raise UpstreamUnavailable(f"Twitch {method} {path} failed: {message or resp.text}", status=resp.status_code)
        return payload if isinstance(payload, dict) else {}

    def get_user_id(self, login: str) -> str:
        data = self._helix("GET", "/users", params={"login": login}).get("data") or []
        if not data:
            raise UpstreamUnavailable(f"Twitch user {login} not found", status=404)
        return str(data[0]["id"])

    def broadcaster_id(self) -> str:
        if self._broadcaster_id:
            return self._broadcaster_id
        if not self.channel:
            raise NotAuthenticated("TWITCH_CHANNEL is not configured")
        self._broadcaster_id = self.get_user_id(self.channel)
        logger.info("Resolved Twitch channel %s to user ID %s", self.channel, self._broadcaster_id)
        return self._broadcaster_id

    def subscribe_redemptions(self, callback_url: str, secret: str) -> Dict[str, Any]:
        payload = {
            "type": REDEMPTION_EVENT_TYPE,
            "version": "1",
            "condition": {"broadcaster_user_id": self.broadcaster_id()},
            "transport": {"method": "webhook", "callback": callback_url, "secret": secret},
        }
        data = self._helix("POST", "/eventsub/subscriptions", json=payload).get("data") or []
        subscription = data[0] if data else {}
        logger.info(
            "Subscribed to channel point redemptions with ID %s (status %s)",
            subscription.get("id"),
            subscription.get("status"),
        )
        return subscription

    def list_subscriptions(self) -> List[Dict[str, Any]]:
        return list(self._helix("GET", "/eventsub/subscriptions").get("data") or [])
