import json
import os
import tempfile
import unittest
from userdata_sync.errors import StoreError, UnknownUserError
from userdata_sync.models import RemoteUserData, Server, User, UserPlaybackState
from userdata_sync.state import PlaybackStateStore

def make_store(path):
    store = PlaybackStateStore(path)
    store.upsert_server(Server(id="srv", name="Home", address="http://jf.local"))
    store.upsert_user(User(id="u1", name="alice", server_id="srv", access_token="tok"))
    return store

def dirty(user_id, item_id, revision=1, **fields):
    return UserPlaybackState(user_id=user_id, item_id=item_id, dirty=True, revision=revision, **fields)

class TestPlaybackStateStore(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "state.json")
        self.store = make_store(self.path)

    def tearDown(self):
        self.tmp.cleanup()

    def test_upsert_replaces_by_key(self):
        self.store.upsert(dirty("u1", "a", played=True))
        self.store.upsert(dirty("u1", "a", revision=2, favorite=True))

        record = self.store.get("u1", "a")
        self.assertFalse(record.played)
        self.assertTrue(record.favorite)
        self.assertEqual(len(self.store.list_for_user("u1")), 1)

    def test_upsert_unknown_user(self):
        with self.assertRaises(UnknownUserError):
            self.store.upsert(dirty("nobody", "a"))

    def test_get_returns_copy(self):
        self.store.upsert(dirty("u1", "a"))
        record = self.store.get("u1", "a")
        record.played = True
        self.assertFalse(self.store.get("u1", "a").played)

    def test_list_dirty_only_dirty_rows_for_user(self):
        self.store.upsert_user(User(id="u2", name="bob", server_id="srv"))
        self.store.upsert(dirty("u1", "a"))
        self.store.upsert(UserPlaybackState(user_id="u1", item_id="b"))
        self.store.upsert(dirty("u2", "c"))

        self.assertEqual([r.item_id for r in self.store.list_dirty("u1")], ["a"])
        self.assertEqual(self.store.count_dirty(), 2)

    def test_mark_clean_respects_revision(self):
        self.store.upsert(dirty("u1", "a", revision=3))

        self.assertFalse(self.store.mark_clean("u1", "a", revision=2))
        self.assertTrue(self.store.get("u1", "a").dirty)

        self.assertTrue(self.store.mark_clean("u1", "a", revision=3))
        record = self.store.get("u1", "a")
        self.assertFalse(record.dirty)
        self.assertIsNotNone(record.synced_at)

    def test_mark_clean_records_server_version(self):
        self.store.upsert(dirty("u1", "a"))
        remote = RemoteUserData(item_id="a", version=7, updated_at=1000.0)
        self.store.mark_clean("u1", "a", revision=1, remote=remote)

        record = self.store.get("u1", "a")
        self.assertEqual(record.server_version, 7)
        self.assertEqual(record.server_updated_at, 1000.0)

    def test_apply_remote_keeps_newer_local_change(self):
        self.store.upsert(dirty("u1", "a", revision=5, played=True))
        remote = RemoteUserData(item_id="a", favorite=True, playback_position_ticks=500)

        merged = self.store.apply_remote("u1", "a", remote, expected_revision=4)
        self.assertTrue(merged.dirty)
        self.assertTrue(merged.played)
        self.assertFalse(merged.favorite)

        merged = self.store.apply_remote("u1", "a", remote, expected_revision=5)
        self.assertFalse(merged.dirty)
        self.assertFalse(merged.played)
        self.assertTrue(merged.favorite)
        self.assertEqual(merged.playback_position_ticks, 500)

    def test_apply_remote_creates_missing_row_clean(self):
        remote = RemoteUserData(item_id="new", played=True)
        merged = self.store.apply_remote("u1", "new", remote)
        self.assertTrue(merged.played)
        self.assertFalse(merged.dirty)

    def test_update_rejects_negative_position(self):
        def bad(state):
            state.playback_position_ticks = -1
        with self.assertRaises(ValueError):
            self.store.update("u1", "a", bad)
        self.assertIsNone(self.store.get("u1", "a"))

    def test_delete_user_cascades(self):
        self.store.upsert(dirty("u1", "a"))
        self.store.upsert(dirty("u1", "b"))

        self.assertTrue(self.store.delete_user("u1"))
        self.assertIsNone(self.store.get_user("u1"))
        self.assertEqual(self.store.list_dirty("u1"), [])
        self.assertEqual(self.store.count_dirty(), 0)
        self.assertFalse(self.store.delete_user("u1"))

    def test_delete_server_cascades_to_users_and_rows(self):
        self.store.upsert_server(Server(id="other", name="Other", address="http://other"))
        self.store.upsert_user(User(id="u2", name="bob", server_id="other"))
        self.store.upsert(dirty("u1", "a"))
        self.store.upsert(dirty("u2", "b"))

        self.assertTrue(self.store.delete_server("srv"))
        self.assertIsNone(self.store.get_user("u1"))
        self.assertIsNone(self.store.get("u1", "a"))
        self.assertIsNotNone(self.store.get("u2", "b"))
        self.assertEqual(self.store.count_dirty(), 1)

    def test_user_requires_server(self):
        with self.assertRaises(StoreError):
            self.store.upsert_user(User(id="u9", name="x", server_id="missing"))

    def test_persists_across_reload(self):
        self.store.upsert(dirty("u1", "a", favorite=True, playback_position_ticks=1234))

        reloaded = PlaybackStateStore(self.path)
        record = reloaded.get("u1", "a")
        self.assertTrue(record.favorite)
        self.assertTrue(record.dirty)
        self.assertEqual(record.playback_position_ticks, 1234)
        self.assertEqual(reloaded.get_user("u1").access_token, "tok")

    def test_failed_write_raises_and_rolls_back(self):
        self.store.path = self.store.path.parent / "missing-dir" / "state.json"
        with self.assertRaises(StoreError):
            self.store.upsert(dirty("u1", "a"))
        self.assertIsNone(self.store.get("u1", "a"))

    def test_corrupt_file_is_not_silently_replaced(self):
        with open(self.path, "w") as f:
            f.write("{not json")
        with self.assertRaises(StoreError):
            PlaybackStateStore(self.path)

    def test_oldest_dirty_mutation(self):
        self.assertIsNone(self.store.oldest_dirty_mutation())
        self.store.upsert(dirty("u1", "a", mutated_at=200.0))
        self.store.upsert(dirty("u1", "b", mutated_at=100.0))
        self.assertEqual(self.store.oldest_dirty_mutation(), 100.0)

    def test_file_is_plain_json(self):
        self.store.upsert(dirty("u1", "a"))
        with open(self.path) as f:
            data = json.load(f)
        self.assertIn("u1:a", data["user_data"])

if __name__ == '__main__':
    unittest.main()
