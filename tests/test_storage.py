"""
Unit tests for the transient and meta stores.
"""

import json
from unittest.mock import MagicMock

import pytest

from storage import MemoryTransients, MetaStore, RedisTransients, make_transients


@pytest.mark.unit
class TestMemoryTransients:
    """Test the in-process TTL store."""

    def test_entries_expire(self, transients, clock):
        """Test values disappear once their TTL has passed."""
        transients.set("flag", 1, ttl=10)
        assert transients.get("flag") == 1

        clock.now += 10
        assert transients.get("flag") is None

    def test_entries_without_ttl_persist(self, transients, clock):
        """Test a missing TTL means no expiry."""
        transients.set("flag", "x")
        clock.now += 10_000

        assert transients.get("flag") == "x"

    def test_add_only_when_absent(self, transients, clock):
        """Test add refuses to overwrite a live entry."""
        assert transients.add("lock", True, ttl=10) is True
        assert transients.add("lock", True, ttl=10) is False

        clock.now += 11
        assert transients.add("lock", True, ttl=10) is True

    def test_delete(self, transients):
        """Test delete removes the entry and tolerates missing keys."""
        transients.set("flag", 1)
        transients.delete("flag")
        transients.delete("never-set")

        assert transients.get("flag") is None


@pytest.mark.unit
class TestRedisTransients:
    """Test the Redis store against a mocked client."""

    def test_add_uses_set_nx_ex(self):
        """Test add maps to an atomic SET NX EX."""
        client = MagicMock()
        client.set.return_value = True
        store = RedisTransients(client, prefix="t")

        assert store.add("lock", True, ttl=10) is True
        client.set.assert_called_once_with("t:lock", "true", nx=True, ex=10)

    def test_add_reports_held_lock(self):
        """Test a None reply from SET NX means the key existed."""
        client = MagicMock()
        client.set.return_value = None

        assert RedisTransients(client).add("lock", True, ttl=10) is False

    def test_set_with_ttl_uses_setex(self):
        """Test TTLs are rounded up to whole seconds."""
        client = MagicMock()
        RedisTransients(client, prefix="t").set("deadline", 12.5, ttl=0.4)

        client.setex.assert_called_once_with("t:deadline", 1, "12.5")

    def test_get_decodes_json(self):
        """Test stored JSON is decoded and misses return None."""
        client = MagicMock()
        client.get.side_effect = [json.dumps({"a": 1}), None]
        store = RedisTransients(client)

        assert store.get("k") == {"a": 1}
        assert store.get("missing") is None

    def test_make_transients_defaults_to_memory(self):
        """Test no Redis URL gives the in-process store."""
        assert isinstance(make_transients(None), MemoryTransients)


@pytest.mark.unit
class TestMetaStore:
    """Test user/post attribute storage."""

    def test_user_meta_roundtrip(self, meta):
        """Test get/update/delete of a user attribute."""
        assert meta.get_user_meta(7, "_bunny_collection_id") is None

        meta.update_user_meta(7, "_bunny_collection_id", "col-1")
        assert meta.get_user_meta("7", "_bunny_collection_id") == "col-1"

        assert meta.delete_user_meta(7, "_bunny_collection_id") is True
        assert meta.delete_user_meta(7, "_bunny_collection_id") is False

    def test_persists_to_json_file(self, tmp_path):
        """Test a file-backed store survives a reload."""
        path = tmp_path / "meta.json"
        store = MetaStore(path)
        store.update_user_meta(1, "_bunny_collection_id", "col-1")
        store.update_post_meta(42, "_bunny_video_id", "vid-1")

        reloaded = MetaStore(path)

        assert reloaded.get_user_meta(1, "_bunny_collection_id") == "col-1"
        assert reloaded.get_post_meta(42, "_bunny_video_id") == "vid-1"
        assert not list(tmp_path.glob("*.tmp.*"))

    def test_empty_owner_removed(self, tmp_path):
        """Test deleting the last attribute drops the owner entry."""
        path = tmp_path / "meta.json"
        store = MetaStore(path)
        store.update_post_meta(42, "_bunny_video_id", "vid-1")
        store.delete_post_meta(42, "_bunny_video_id")

        assert json.loads(path.read_text())["posts"] == {}


@pytest.mark.unit
class TestLockRelease:
    """Test token-checked deletes used by the collection lock."""

    def test_memory_release_matches_token(self, transients):
        """Test only the owner's token removes the entry."""
        transients.add("lock", "mine", ttl=10)

        assert transients.release("lock", "theirs") is False
        assert transients.get("lock") == "mine"
        assert transients.release("lock", "mine") is True
        assert transients.get("lock") is None

    def test_memory_release_of_expired_entry(self, transients, clock):
        """Test releasing an expired lock reports nothing was removed."""
        transients.add("lock", "mine", ttl=10)
        clock.now += 10

        assert transients.release("lock", "mine") is False

    def test_redis_release_is_a_server_side_compare(self):
        """Test release runs one script comparing the stored token."""
        client = MagicMock()
        client.eval.return_value = 1
        store = RedisTransients(client, prefix="t")

        assert store.release("lock", "mine") is True
        script, numkeys, key, token = client.eval.call_args[0]
        assert numkeys == 1 and key == "t:lock" and token == '"mine"'
        assert "del" in script


@pytest.mark.unit
class TestCorruptMetaFile:
    """Test a damaged meta file stops with a readable message."""

    def test_corrupt_file_exits_naming_it(self, tmp_path):
        """Test invalid JSON aborts instead of raising a traceback."""
        path = tmp_path / "bunny_meta.json"
        path.write_text("{not json")

        with pytest.raises(SystemExit) as exc:
            MetaStore(path)

        assert str(path) in str(exc.value.code)
