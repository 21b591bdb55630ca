import asyncio
import sys
import tempfile
import threading
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import backend_app
from relay.errors import UpstreamUnavailable
from relay.shadow_queue import ShadowQueue, SongRequest
from relay.spotify_gateway import EnqueueResult, TrackInfo

ADMIN = {"X-Admin-Token": "admin-secret"}


class StubGateway:
    def __init__(self, authenticated: bool = True) -> None:
        self.authenticated = authenticated
        self.playback = None
        self.codes: list[str] = []
        self.queries: list[str] = []

    def is_configured(self) -> bool:
        return True

    def is_authenticated(self) -> bool:
        return self.authenticated

    def authorization_url(self, state=None) -> str:
        return f"https://accounts.spotify.com/authorize?state={state}"

    def exchange_code(self, code: str) -> None:
        self.codes.append(code)
        self.authenticated = True

    def currently_playing(self):
        if isinstance(self.playback, Exception):
            raise self.playback
        return self.playback

    def queue_track(self, query: str) -> EnqueueResult:
        self.queries.append(query)
        track = TrackInfo(track_id=query, name=f"Song {query}", artist_name="Artist")
        return EnqueueResult(success=True, track=track)


class StubTwitch:
    def __init__(self) -> None:
        self.authenticated = False
        self.codes: list[str] = []
        self.subscribed: list[tuple[str, str]] = []

    def is_configured(self) -> bool:
        return True

    def is_authenticated(self) -> bool:
        return self.authenticated

    def authorization_url(self, state=None) -> str:
        return f"https://id.twitch.tv/oauth2/authorize?state={state}"

    def exchange_code(self, code: str) -> None:
        self.codes.append(code)
        self.authenticated = True

    def subscribe_redemptions(self, callback_url: str, secret: str) -> dict:
        self.subscribed.append((callback_url, secret))
        return {"id": "sub-1", "status": "webhook_callback_verification_pending"}

    def list_subscriptions(self) -> list:
        return [{"id": "sub-1", "status": "enabled"}]


class FakeTimer:
    def __init__(self, delay, callback) -> None:
        self.delay = delay
        self.callback = callback

    def cancel(self) -> None:
        return None


def _request(track_id: str, requester: str = "viewer") -> SongRequest:
    return SongRequest(track_id=track_id, track_name=f"Song {track_id}", artist_name="Artist", requested_by=requester)


def _playback(track_id: str) -> dict:
    return {"is_playing": True, "progress_ms": 1000, "item": {"id": track_id, "name": f"Song {track_id}"}}


def _config(**overrides) -> backend_app.RelayConfig:
    values = {
        "db_url": "sqlite://",
        "admin_token": "admin-secret",
        "eventsub_secret": "secret",
        "poll_enabled": False,
    }
    values.update(overrides)
    return backend_app.RelayConfig(**values)


class DashboardApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.gateway = StubGateway()
        self.twitch = StubTwitch()
        self.app = backend_app.create_app(
            _config(app_url="https://relay.example"),
            gateway=self.gateway,
            twitch=self.twitch,
            timer_factory=FakeTimer,
        )
        self.relay = self.app.state.relay
        self.client = TestClient(self.app)

    def tearDown(self) -> None:
        self.client.close()
        self.relay.engine.dispose()

    def test_unauthenticated_dashboard_reports_failure(self) -> None:
        self.gateway.authenticated = False

        response = self.client.get("/api/queue")

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertFalse(data["success"])
        self.assertIn("not authenticated", data["error"])
        self.assertEqual(data["shadowQueue"], [])

    def test_dashboard_reconciles_with_current_playback(self) -> None:
        self.relay.queue.append(_request("a", "alice"))
        self.relay.queue.append(_request("b", "bob"))
        self.gateway.playback = _playback("a")

        response = self.client.get("/api/queue")

        data = response.json()
        self.assertTrue(data["success"])
        self.assertEqual(data["currentlyPlaying"]["item"]["id"], "a")
        self.assertEqual(data["currentSongInfo"]["requestedBy"], "alice")
        self.assertEqual([item["trackId"] for item in data["shadowQueue"]], ["b"])

    def test_dashboard_reports_upstream_errors(self) -> None:
        self.relay.queue.append(_request("a"))
        self.gateway.playback = UpstreamUnavailable("Spotify request failed: timeout")

        data = self.client.get("/api/queue").json()

        self.assertFalse(data["success"])
        self.assertEqual(data["error"], "Spotify request failed: timeout")
        self.assertEqual(len(data["shadowQueue"]), 1)

    def test_clear_requires_admin_and_empties_queue(self) -> None:
        self.relay.queue.append(_request("a"))

        denied = self.client.post("/api/queue/clear")
        self.assertEqual(denied.status_code, 401)
        self.assertEqual(len(self.relay.queue), 1)

        response = self.client.post("/api/queue/clear", headers=ADMIN)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"success": True, "shadowQueue": []})
        self.assertEqual(len(self.relay.queue), 0)

    def test_blacklist_replace_normalizes_usernames(self) -> None:
        response = self.client.post(
            "/api/blacklist",
            json={"blacklist": [" TrollUser ", "trolluser", "Spammer", ""]},
            headers=ADMIN,
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["blacklist"], ["spammer", "trolluser"])
        self.assertEqual(self.client.get("/api/blacklist").json()["blacklist"], ["spammer", "trolluser"])
        self.assertTrue(self.relay.blacklist.contains("TROLLUSER"))

        self.client.post("/api/blacklist", json=["someone"], headers=ADMIN)
        self.assertEqual(self.relay.blacklist.get(), ["someone"])

    def test_blacklist_rejects_non_list(self) -> None:
        response = self.client.post("/api/blacklist", json={"blacklist": "trolluser"}, headers=ADMIN)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.relay.blacklist.get(), [])

    def test_blacklist_update_requires_admin(self) -> None:
        response = self.client.post("/api/blacklist", json=["trolluser"])

        self.assertEqual(response.status_code, 401)

    def test_status_reports_connections(self) -> None:
        self.twitch.authenticated = False

        self.assertEqual(self.client.get("/api/status").json(), {"spotify": "connected", "twitch": "disconnected"})

    def test_health(self) -> None:
        response = self.client.get("/system/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")

    def test_leaderboards_count_requests_and_plays(self) -> None:
        self.relay.router.handle("Alice", "a")
        self.relay.router.handle("alice", "b")
        self.relay.router.handle("Bob", "a")
        self.gateway.playback = _playback("a")
        self.client.get("/api/queue")

        users = self.client.get("/api/leaderboard/users", params={"top": 5}).json()
        songs = self.client.get("/api/leaderboard/songs").json()

        self.assertEqual(users[0]["username"], "alice")
        self.assertEqual(users[0]["songs_requested"], 2)
        self.assertEqual(users[1]["username"], "bob")
        self.assertEqual(songs[0]["track_id"], "a")
        self.assertEqual(songs[0]["play_count"], 1)
        self.assertEqual(songs[0]["last_queued_by"], "Bob")

    def test_leaderboard_top_is_bounded(self) -> None:
        response = self.client.get("/api/leaderboard/songs", params={"top": 0})

        self.assertEqual(response.status_code, 422)

    def test_spotify_oauth_round_trip(self) -> None:
        redirect = self.client.get("/auth/spotify", follow_redirects=False)
        self.assertIn(redirect.status_code, (302, 307))
        state = parse_qs(urlparse(redirect.headers["location"]).query)["state"][0]

        response = self.client.get("/callback", params={"code": "abc", "state": state})

        self.assertEqual(response.status_code, 200)
        self.assertIn("Connected", response.text)
        self.assertEqual(self.gateway.codes, ["abc"])

        replay = self.client.get("/callback", params={"code": "abc", "state": state})
        self.assertEqual(replay.status_code, 400)

    def test_twitch_callback_subscribes_when_app_url_set(self) -> None:
        redirect = self.client.get("/auth/twitch", follow_redirects=False)
        state = parse_qs(urlparse(redirect.headers["location"]).query)["state"][0]

        response = self.client.get("/twitch/callback", params={"code": "xyz", "state": state})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.twitch.codes, ["xyz"])
        self.assertEqual(self.twitch.subscribed, [("https://relay.example/webhook/twitch", "secret")])

    def test_eventsub_admin_routes(self) -> None:
        self.assertEqual(self.client.get("/webhook/twitch/status").status_code, 401)

        subscribed = self.client.post("/webhook/twitch/subscribe", headers=ADMIN)
        status = self.client.get("/webhook/twitch/status", headers=ADMIN)
        ping = self.client.get("/webhook/twitch/test")

        self.assertEqual(subscribed.status_code, 200)
        self.assertEqual(subscribed.json()["callback"], "https://relay.example/webhook/twitch")
        self.assertEqual(status.json()["subscriptions"], [{"id": "sub-1", "status": "enabled"}])
        self.assertIsNone(status.json()["lastRevocation"])
        self.assertEqual(ping.json()["status"], "ok")


class QueueSnapshotRestoreTests(unittest.TestCase):
    def test_pending_requests_survive_restart(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            config = _config(db_url=f"sqlite:///{tmp}/nested/relay.sqlite")
            first = backend_app.create_app(config, gateway=StubGateway(), twitch=StubTwitch(), timer_factory=FakeTimer)
            relay = first.state.relay
            relay.queue.append(_request("a", "alice"))
            relay.queue.append(_request("b", "bob"))
            relay.queue.reconcile(backend_app.CurrentlyPlayingSnapshot(track_id="a"))
            relay.engine.dispose()

            second = backend_app.create_app(config, gateway=StubGateway(), twitch=StubTwitch(), timer_factory=FakeTimer)
            restored = second.state.relay
            try:
                self.assertEqual([item.track_id for item in restored.queue.pending()], ["b"])
                self.assertEqual(restored.queue.now_playing.requested_by, "alice")
            finally:
                restored.engine.dispose()

    def test_late_append_save_does_not_overwrite_newer_reconcile(self) -> None:
        app = backend_app.create_app(_config(), gateway=StubGateway(), twitch=StubTwitch(), timer_factory=FakeTimer)
        relay = app.state.relay
        original_save = backend_app.QueueSnapshotStore.save
        append_notified = threading.Event()
        reconcile_saved = threading.Event()

        def ordered_save(store, change):
            if change.reason == "append":
                append_notified.set()
                reconcile_saved.wait(5)
                original_save(store, change)
            else:
                original_save(store, change)
                reconcile_saved.set()

        try:
            with patch.object(backend_app.QueueSnapshotStore, "save", ordered_save):
                worker = threading.Thread(target=relay.queue.append, args=(_request("a", "alice"),))
                worker.start()
                self.assertTrue(append_notified.wait(5))
                relay.queue.reconcile(backend_app.CurrentlyPlayingSnapshot(track_id="a"))
                worker.join(5)

            pending, now_playing = relay.snapshots.load()
            self.assertEqual(pending, [])
            self.assertEqual(now_playing.track_id, "a")
        finally:
            relay.engine.dispose()


class PlaybackPollerTests(unittest.IsolatedAsyncioTestCase):
    async def test_poller_reconciles_until_stopped(self) -> None:
        queue = ShadowQueue(timer_factory=FakeTimer)
        queue.append(_request("a"))
        gateway = StubGateway()
        gateway.playback = _playback("a")
        poller = backend_app.PlaybackPoller(gateway, queue, interval=0.01)

        poller.start()
        for _ in range(100):
            if queue.now_playing is not None:
                break
            await asyncio.sleep(0.01)
        await poller.stop()

        self.assertEqual(queue.now_playing.track_id, "a")
        self.assertFalse(poller.running)
        self.assertEqual(poller.last_playback["item"]["id"], "a")

    async def test_poller_survives_upstream_errors(self) -> None:
        queue = ShadowQueue(timer_factory=FakeTimer)
        gateway = MagicMock()
        gateway.is_authenticated.return_value = True
        gateway.currently_playing.side_effect = UpstreamUnavailable("Spotify request failed: timeout")
        poller = backend_app.PlaybackPoller(gateway, queue, interval=0.01)

        poller.start()
        for _ in range(100):
            if gateway.currently_playing.call_count >= 2:
                break
            await asyncio.sleep(0.01)
        await poller.stop()

        self.assertGreaterEqual(gateway.currently_playing.call_count, 2)
        self.assertEqual(poller.last_error, "Spotify request failed: timeout")


class QueueBrokerTests(unittest.IsolatedAsyncioTestCase):
    async def test_publish_from_worker_thread_reaches_listener(self) -> None:
        broker = backend_app._QueueBroker()
        listener = broker.subscribe()

        await asyncio.to_thread(broker.publish, "changed")
        message = await asyncio.wait_for(listener.get(), timeout=1)

        self.assertEqual(message, "changed")
        broker.unsubscribe(listener)
        self.assertFalse(broker.has_listeners())


if __name__ == "__main__":
    unittest.main()
