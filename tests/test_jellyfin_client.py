import json
import unittest
import httpx
from userdata_sync.clients.jellyfin_client import JellyfinClient, parse_timestamp, remote_is_newer
from userdata_sync.config import settings
from userdata_sync.engine import SyncEngine
from userdata_sync.errors import RemoteError, RemoteUnavailableError
from userdata_sync.models import PushStatus, RemoteUserData, Server, User, UserPlaybackState
from userdata_sync.state import PlaybackStateStore

SERVER = Server(id="srv", name="Home", address="http://jf.local/")
USER = User(id="u1", name="alice", server_id="srv", access_token="secret")

def user_data(played=False, favorite=False, ticks=0, last_played=None, **extra):
    data = {"Played": played, "IsFavorite": favorite, "PlaybackPositionTicks": ticks, "ItemId": "item1"}
    if last_played:
        data["LastPlayedDate"] = last_played
    data.update(extra)
    return data

class TestParsing(unittest.TestCase):
    def test_parse_timestamp_with_seven_digit_fraction(self):
        ts = parse_timestamp("2024-01-01T00:00:00.1234567Z")
        self.assertAlmostEqual(ts, 1704067200.123456, places=5)

    def test_parse_timestamp_garbage(self):
        self.assertIsNone(parse_timestamp("yesterday"))
        self.assertIsNone(parse_timestamp(None))

    def test_remote_is_newer_prefers_versions(self):
        state = UserPlaybackState(user_id="u1", item_id="i", server_version=3, server_updated_at=10.0)
        self.assertFalse(remote_is_newer(state, RemoteUserData(item_id="i", version=3, updated_at=99.0)))
        self.assertTrue(remote_is_newer(state, RemoteUserData(item_id="i", version=4)))

    def test_remote_is_newer_by_timestamp(self):
        state = UserPlaybackState(user_id="u1", item_id="i", server_updated_at=10.0)
        self.assertTrue(remote_is_newer(state, RemoteUserData(item_id="i", updated_at=11.0)))
        self.assertFalse(remote_is_newer(state, RemoteUserData(item_id="i", updated_at=10.0)))
        self.assertFalse(remote_is_newer(state, RemoteUserData(item_id="i")))

class TestJellyfinClient(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        settings.SYNC_FETCH_BEFORE_PUSH = True
        settings.DRY_RUN = False
        self.requests = []
        self.remote = None          # what GET returns, None -> 404
        self.post_status = 200

    def tearDown(self):
        settings.SYNC_FETCH_BEFORE_PUSH = True
        settings.DRY_RUN = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET":
            if self.remote is None:
                return httpx.Response(404)
            return httpx.Response(200, json=self.remote)
        body = json.loads(request.content)
        if self.post_status == 409:
            return httpx.Response(409, json=user_data(played=True, last_played="2030-01-01T00:00:00Z"))
        if self.post_status != 200:
            return httpx.Response(self.post_status)
        return httpx.Response(200, json=user_data(body["Played"], body["IsFavorite"], body["PlaybackPositionTicks"]))

    def client(self, handler=None):
        return JellyfinClient(SERVER, USER, transport=httpx.MockTransport(handler or self.handler))

    def state(self, **fields):
        return UserPlaybackState(user_id="u1", item_id="item1", dirty=True, revision=1, **fields)

    async def test_push_sends_absolute_state(self):
        async with self.client() as client:
            result = await client.push_user_data(self.state(played=True, playback_position_ticks=50))

        self.assertEqual(result.status, PushStatus.ACK)
        self.assertTrue(result.remote.played)
        post = self.requests[-1]
        self.assertEqual(post.method, "POST")
        self.assertEqual(post.url.path, "/UserItems/item1/UserData")
        self.assertEqual(post.url.params["userId"], "u1")
        self.assertIn('Token="secret"', post.headers["Authorization"])
        self.assertEqual(json.loads(post.content),
                         {"Played": True, "IsFavorite": False, "PlaybackPositionTicks": 50})

    async def test_newer_remote_returns_conflict_without_pushing(self):
        self.remote = user_data(favorite=True, last_played="2030-01-01T00:00:00Z")
        async with self.client() as client:
            result = await client.push_user_data(self.state(played=True))

        self.assertEqual(result.status, PushStatus.CONFLICT)
        self.assertTrue(result.remote.favorite)
        self.assertEqual([r.method for r in self.requests], ["GET"])

    async def test_forced_push_skips_check(self):
        self.remote = user_data(favorite=True, last_played="2030-01-01T00:00:00Z")
        async with self.client() as client:
            result = await client.push_user_data(self.state(played=True), force=True)

        self.assertEqual(result.status, PushStatus.ACK)
        self.assertEqual([r.method for r in self.requests], ["POST"])

    async def test_identical_remote_acks_without_pushing(self):
        self.remote = user_data(played=True, ticks=5, last_played="2030-01-01T00:00:00Z")
        async with self.client() as client:
            result = await client.push_user_data(self.state(played=True, playback_position_ticks=5))

        self.assertEqual(result.status, PushStatus.ACK)
        self.assertEqual([r.method for r in self.requests], ["GET"])

    async def test_http_409_is_conflict(self):
        settings.SYNC_FETCH_BEFORE_PUSH = False
        self.post_status = 409
        async with self.client() as client:
            result = await client.push_user_data(self.state())

        self.assertEqual(result.status, PushStatus.CONFLICT)
        self.assertTrue(result.remote.played)
        self.assertIsNotNone(result.remote.updated_at)

    async def test_server_error_is_result_not_exception(self):
        settings.SYNC_FETCH_BEFORE_PUSH = False
        self.post_status = 500
        async with self.client() as client:
            result = await client.push_user_data(self.state())

        self.assertEqual(result.status, PushStatus.ERROR)
        self.assertIn("500", result.detail)

    async def test_connection_failure_raises_unavailable(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with self.client(refuse) as client:
            with self.assertRaises(RemoteUnavailableError):
                await client.push_user_data(self.state())

    async def test_fetch_errors(self):
        async with self.client() as client:
            with self.assertRaises(RemoteError) as ctx:
                await client.fetch_user_data("item1")
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_non_json_body_is_remote_error(self):
        def proxy_page(request):
            return httpx.Response(200, text="<html>proxy login</html>")

        async with self.client(proxy_page) as client:
            with self.assertRaises(RemoteError) as ctx:
                await client.fetch_user_data("item1")
            self.assertEqual(ctx.exception.status_code, 200)
            with self.assertRaises(RemoteError):
                await client.get_current_user_id()
            result = await client.push_user_data(self.state(played=True))

        self.assertEqual(result.status, PushStatus.ERROR)

    async def test_non_json_item_does_not_end_the_pass(self):
        def handler(request):
            if request.url.path == "/Users/Me":
                return httpx.Response(200, json={"Id": "u1"})
            if request.method == "GET" and "/a/" in request.url.path:
                return httpx.Response(200, text="<html>proxy login</html>")
            if request.method == "GET":
                return httpx.Response(404)
            body = json.loads(request.content)
            return httpx.Response(200, json=user_data(body["Played"], body["IsFavorite"], body["PlaybackPositionTicks"]))

        store = PlaybackStateStore("/nonexistent/state.json", persist=False)
        store.upsert_server(SERVER)
        store.upsert_user(USER)
        for item_id in ("a", "b"):
            store.upsert(UserPlaybackState(user_id="u1", item_id=item_id, dirty=True, revision=1, played=True))
        engine = SyncEngine(store, lambda server, user: JellyfinClient(
            server, user, transport=httpx.MockTransport(handler)))

        report = await engine.run_pass()

        self.assertTrue(store.get("u1", "a").dirty)
        self.assertFalse(store.get("u1", "b").dirty)
        self.assertEqual((report.synced, report.failed), (1, 1))
        self.assertEqual(report.aborted_servers, [])

    async def test_repeated_push_leaves_server_unchanged(self):
        settings.SYNC_FETCH_BEFORE_PUSH = False
        server_state = {}
        bodies = []

        def stateful(request):
            body = json.loads(request.content)
            bodies.append(body)
            server_state.update(body)
            return httpx.Response(200, json=user_data(server_state["Played"], server_state["IsFavorite"],
                                                      server_state["PlaybackPositionTicks"]))

        record = self.state(played=True, playback_position_ticks=42)
        async with self.client(stateful) as client:
            first = await client.push_user_data(record)
            after_first = dict(server_state)
            second = await client.push_user_data(record)

        self.assertEqual(bodies[0], bodies[1])
        self.assertEqual(server_state, after_first)
        self.assertEqual(first.remote, second.remote)
        self.assertEqual(server_state, {"Played": True, "IsFavorite": False, "PlaybackPositionTicks": 42})

    async def test_dry_run_does_not_post(self):
        settings.DRY_RUN = True
        async with self.client() as client:
            result = await client.push_user_data(self.state(favorite=True))

        self.assertEqual(result.status, PushStatus.ACK)
        self.assertNotIn("POST", [r.method for r in self.requests])

    async def test_current_user(self):
        def me(request):
            if request.headers["Authorization"].endswith('Token="secret"'):
                return httpx.Response(200, json={"Id": "u1"})
            return httpx.Response(401)

        async with self.client(me) as client:
            self.assertEqual(await client.get_current_user_id(), "u1")

        stranger = JellyfinClient(SERVER, User(id="u2", name="bob", server_id="srv"),
                                  transport=httpx.MockTransport(me))
        async with stranger:
            self.assertIsNone(await stranger.get_current_user_id())

if __name__ == '__main__':
    unittest.main()
