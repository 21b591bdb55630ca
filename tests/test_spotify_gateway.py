import json
import sys
import unittest
from pathlib import Path
from unittest.mock import MagicMock

import requests

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from relay.errors import NoActiveDevice, NotAuthenticated, UpstreamUnavailable, ValidationError
from relay.spotify_gateway import SpotifyGateway, TrackInfo, extract_track_id
from relay.tokens import SPOTIFY_DOMAIN, Credential, TokenStore

TRACK_ID = "4uLU6hMCjMI75M1A2tKUQC"


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, headers=None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.content = b"" if payload is None else json.dumps(payload).encode("utf-8")
        self.text = self.content.decode("utf-8")

    def json(self):
        if self._payload is None:
            raise ValueError("no body")
        return self._payload


def _track_payload(track_id: str = TRACK_ID) -> dict:
    return {
        "id": track_id,
        "name": "Never Gonna Give You Up",
        "artists": [{"name": "Rick Astley"}],
        "album": {"name": "Whenever You Need Somebody", "images": [{"url": "https://img.example/cover.jpg"}]},
    }


class SpotifyGatewayTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = MagicMock()
        self.tokens = TokenStore()
        self.gateway = SpotifyGateway(
            self.tokens,
            client_id="client",
            client_secret="secret",
            redirect_uri="http://localhost:8888/callback",
            device_name="Desktop",
            session=self.session,
        )
        self.tokens.save(SPOTIFY_DOMAIN, Credential(access_token="token", refresh_token="refresh"))

    def _requested(self, index: int) -> tuple:
        call = self.session.request.call_args_list[index]
        return call.args[0], call.args[1], call.kwargs

    def test_extract_track_id_handles_uri_and_urls(self) -> None:
        self.assertEqual(extract_track_id(f"spotify:track:{TRACK_ID}"), TRACK_ID)
        self.assertEqual(extract_track_id(f"https://open.spotify.com/track/{TRACK_ID}?si=abc"), TRACK_ID)
        self.assertEqual(extract_track_id(f"https://open.spotify.com/intl-de/track/{TRACK_ID}"), TRACK_ID)
        self.assertIsNone(extract_track_id("rick astley"))

    def test_track_info_from_api(self) -> None:
        track = TrackInfo.from_api(_track_payload())

        self.assertEqual(track.uri, f"spotify:track:{TRACK_ID}")
        self.assertEqual(track.artist_name, "Rick Astley")
        self.assertEqual(track.album_image_url, "https://img.example/cover.jpg")

    def test_url_request_looks_up_track_and_enqueues(self) -> None:
        self.session.request.side_effect = [
            FakeResponse(200, _track_payload()),
            FakeResponse(204),
        ]

        result = self.gateway.queue_track(f"https://open.spotify.com/intl-de/track/{TRACK_ID}?si=xyz")

        self.assertTrue(result.success)
        self.assertEqual(result.track.track_id, TRACK_ID)
        method, url, kwargs = self._requested(0)
        self.assertEqual(method, "GET")
        self.assertTrue(url.endswith(f"/tracks/{TRACK_ID}"))
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer token")
        method, url, kwargs = self._requested(1)
        self.assertEqual(method, "POST")
        self.assertTrue(url.endswith("/me/player/queue"))
        self.assertEqual(kwargs["params"], {"uri": f"spotify:track:{TRACK_ID}"})

    def test_free_text_uses_first_search_result(self) -> None:
        self.session.request.side_effect = [
            FakeResponse(200, {"tracks": {"items": [_track_payload("first"), _track_payload("second")]}}),
            FakeResponse(204),
        ]

        result = self.gateway.queue_track("rick astley")

        self.assertTrue(result.success)
        self.assertEqual(result.track.track_id, "first")
        _, url, kwargs = self._requested(0)
        self.assertTrue(url.endswith("/search"))
        self.assertEqual(kwargs["params"]["q"], "rick astley")

    def test_search_without_results_is_reported(self) -> None:
        self.session.request.return_value = FakeResponse(200, {"tracks": {"items": []}})

        result = self.gateway.queue_track("asdfghjkl")

        self.assertFalse(result.success)
        self.assertEqual(result.error, "No tracks found matching the query")
        self.assertEqual(self.session.request.call_count, 1)

    def test_invalid_spotify_link_is_rejected_without_request(self) -> None:
        with self.assertRaises(ValidationError):
            self.gateway.resolve_track("https://open.spotify.com/album/xyz")

        result = self.gateway.queue_track("https://open.spotify.com/album/xyz")
        self.assertFalse(result.success)
        self.session.request.assert_not_called()

    def test_no_active_device_transfers_playback_and_retries_once(self) -> None:
        no_device = {"error": {"status": 404, "message": "Player command failed: No active device found", "reason": "NO_ACTIVE_DEVICE"}}
        self.session.request.side_effect = [
            FakeResponse(404, no_device),
            FakeResponse(200, {"devices": [
                {"id": "phone", "name": "Phone", "is_active": False, "is_restricted": False},
                {"id": "desk", "name": "Desktop", "is_active": False, "is_restricted": False},
            ]}),
            FakeResponse(204),
            FakeResponse(204),
        ]

        self.gateway.enqueue(TrackInfo(track_id=TRACK_ID, name="Song", artist_name="Artist"))

        self.assertEqual(self.session.request.call_count, 4)
        method, url, kwargs = self._requested(2)
        self.assertEqual(method, "PUT")
        self.assertTrue(url.endswith("/me/player"))
        self.assertEqual(kwargs["json"], {"device_ids": ["desk"], "play": False})
        method, url, _ = self._requested(3)
        self.assertEqual(method, "POST")
        self.assertTrue(url.endswith("/me/player/queue"))

    def test_no_devices_available_raises(self) -> None:
        no_device = {"error": {"status": 404, "message": "No active device found", "reason": "NO_ACTIVE_DEVICE"}}
        self.session.request.side_effect = [
            FakeResponse(404, no_device),
            FakeResponse(200, {"devices": []}),
        ]

        with self.assertRaises(NoActiveDevice):
            self.gateway.enqueue(TrackInfo(track_id=TRACK_ID, name="Song", artist_name="Artist"))

    def test_expired_token_is_refreshed_after_401(self) -> None:
        self.session.request.side_effect = [
            FakeResponse(401, {"error": {"status": 401, "message": "The access token expired"}}),
            FakeResponse(200, {"item": {"id": TRACK_ID}, "progress_ms": 10, "is_playing": True}),
        ]
        self.session.post.return_value = FakeResponse(200, {"access_token": "fresh", "expires_in": 3600})

        playback = self.gateway.currently_playing()

        self.assertEqual(playback["item"]["id"], TRACK_ID)
        _, _, kwargs = self._requested(1)
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer fresh")
        stored = self.tokens.get(SPOTIFY_DOMAIN)
        self.assertEqual(stored.access_token, "fresh")
        self.assertEqual(stored.refresh_token, "refresh")

    def test_nothing_playing_returns_none(self) -> None:
        self.session.request.return_value = FakeResponse(204)

        self.assertIsNone(self.gateway.currently_playing())

    def test_rate_limit_is_reported(self) -> None:
        self.session.request.return_value = FakeResponse(429, {"error": {"status": 429}}, headers={"Retry-After": "7"})

        with self.assertRaises(UpstreamUnavailable) as ctx:
            self.gateway.currently_playing()

        self.assertIn("rate limit", str(ctx.exception))
        self.assertEqual(ctx.exception.status, 429)

    def test_transport_error_becomes_upstream_unavailable(self) -> None:
        self.session.request.side_effect = requests.ConnectionError("connection reset")

        result = self.gateway.queue_track("rick astley")

        self.assertFalse(result.success)
        self.assertIn("connection reset", result.error)

    def test_unauthenticated_gateway_raises_not_authenticated(self) -> None:
        self.tokens.clear(SPOTIFY_DOMAIN)

        with self.assertRaises(NotAuthenticated):
            self.gateway.currently_playing()
        self.assertFalse(self.gateway.is_authenticated())

    def test_authorization_url_carries_scopes_and_state(self) -> None:
        url = self.gateway.authorization_url("state-1")

        self.assertTrue(url.startswith("https://accounts.spotify.com/authorize?"))
        self.assertIn("state=state-1", url)
        self.assertIn("user-modify-playback-state", url)


if __name__ == "__main__":
    unittest.main()
