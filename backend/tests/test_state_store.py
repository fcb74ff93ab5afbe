import fnmatch
import unittest

from redis.exceptions import ConnectionError as RedisConnectionError

from tabletop.core.config import Settings
from tabletop.core.errors import TransientStoreFailure
from tabletop.services.state_store import (
    AssetRecord,
    MemoryStateStore,
    RedisStateStore,
    build_state_store,
    current_key,
    meta_key,
    states_key,
)


class InMemoryRedis:
    """Just enough of redis.asyncio.Redis for the store's commands."""

    def __init__(self) -> None:
        self.strings: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("connection refused")

    async def get(self, key):
        self._check()
        return self.strings.get(key)

    async def set(self, key, value):
        self._check()
        self.strings[key] = value
        return True

    async def exists(self, key):
        self._check()
        return int(key in self.strings or key in self.hashes or key in self.zsets)

    async def hset(self, key, field=None, value=None, mapping=None):
        self._check()
        target = self.hashes.setdefault(key, {})
        if field is not None:
            target[field] = value
        target.update(mapping or {})
        return 1

    async def hgetall(self, key):
        self._check()
        return dict(self.hashes.get(key, {}))

    async def zadd(self, key, mapping):
        self._check()
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def zrevrange(self, key, start, end):
        self._check()
        members = sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1], reverse=True)
        return [member for member, _score in members]

    async def zcard(self, key):
        self._check()
        return len(self.zsets.get(key, {}))

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            for bucket in (self.strings, self.hashes, self.zsets):
                if key in bucket:
                    bucket.pop(key)
                    removed += 1
        return removed

    async def scan_iter(self, match=None):
        self._check()
        for key in list(self.hashes):
            if match is None or fnmatch.fnmatch(key, match):
                yield key

    async def aclose(self):
        return None


def _asset(asset_id: str, uploaded_at: str) -> AssetRecord:
    return AssetRecord(
        id=asset_id,
        filename=f"asset-{asset_id}.png",
        original_name="token.png",
        mime_type="image/png",
        size=12,
        uploaded_at=uploaded_at,
    )


class MemoryStateStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.store = MemoryStateStore()

    async def test_missing_board_reads_as_empty(self) -> None:
        self.assertEqual(await self.store.get_current_state("nowhere"), {"pieces": []})

    async def test_list_states_newest_first_with_limit_and_filter(self) -> None:
        await self.store.save_state("b", {"pieces": []})
        await self.store.save_state("b", {"pieces": []}, name="manual-1", is_manual=True)
        await self.store.save_state("b", {"pieces": []})
        await self.store.save_state("b", {"pieces": []}, name="manual-2", is_manual=True)

        everything = await self.store.list_states("b", limit=10)
        self.assertEqual(len(everything), 4)
        self.assertEqual(everything[0].id, "manual-2")

        self.assertEqual(len(await self.store.list_states("b", limit=2)), 2)
        manual = await self.store.list_states("b", limit=10, manual_only=True)
        self.assertEqual([entry.id for entry in manual], ["manual-2", "manual-1"])

    async def test_saved_state_is_a_copy(self) -> None:
        state = {"pieces": [{"id": "p1", "x": 1, "y": 1}]}
        await self.store.save_state("b", state)
        state["pieces"][0]["x"] = 500
        current = await self.store.get_current_state("b")
        self.assertEqual(current["pieces"][0]["x"], 1)

    async def test_switch_requires_existing_snapshot(self) -> None:
        await self.store.save_state("b", {"pieces": [{"id": "p1"}]}, name="keep")
        await self.store.save_state("b", {"pieces": []})
        self.assertFalse(await self.store.switch_to_state("b", "nope"))
        self.assertEqual(await self.store.get_current_state("b"), {"pieces": []})
        self.assertTrue(await self.store.switch_to_state("b", "keep"))
        self.assertEqual(await self.store.get_current_state("b"), {"pieces": [{"id": "p1"}]})

    async def test_assets_register_get_remove(self) -> None:
        await self.store.register_asset(_asset("a1", "2026-01-01T00:00:00+00:00"))
        fetched = await self.store.get_asset("a1")
        assert fetched is not None
        self.assertEqual(fetched.url, "/assets/asset-a1.png")
        self.assertTrue(await self.store.remove_asset("a1"))
        self.assertFalse(await self.store.remove_asset("a1"))
        self.assertIsNone(await self.store.get_asset("a1"))


class RedisStateStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.redis = InMemoryRedis()
        self.store = RedisStateStore(self.redis, "default")  # type: ignore[arg-type]

    async def test_save_state_writes_history_pointer_and_meta(self) -> None:
        saved = await self.store.save_state("default", {"pieces": [{"id": "p1"}]})

        self.assertEqual(self.redis.strings[current_key("default")], saved.state_id)
        self.assertEqual(len(self.redis.zsets[states_key("default")]), 1)
        meta = self.redis.hashes[meta_key("default")]
        self.assertEqual(meta["name"], "Default Board")
        self.assertIn("last_modified", meta)
        self.assertEqual(await self.store.get_current_state("default"), {"pieces": [{"id": "p1"}]})

    async def test_dangling_pointer_reads_as_empty(self) -> None:
        self.redis.strings[current_key("default")] = "state-0"
        self.assertEqual(await self.store.get_current_state("default"), {"pieces": []})

    async def test_board_listing_and_delete(self) -> None:
        board = await self.store.create_board("Table one")
        await self.store.ensure_board("room-7")

        listed = {entry.id: entry for entry in await self.store.list_boards()}
        self.assertEqual(set(listed), {board.id, "room-7"})
        self.assertEqual(listed[board.id].state_count, 1)
        self.assertEqual(listed["room-7"].name, "Board room-7")

        self.assertTrue(await self.store.delete_board(board.id))
        self.assertIsNone(await self.store.get_board(board.id))

    async def test_assets_roundtrip_through_json_list(self) -> None:
        await self.store.register_asset(_asset("a1", "2026-01-01T00:00:00+00:00"))
        await self.store.register_asset(_asset("a2", "2026-01-02T00:00:00+00:00"))
        self.assertEqual([asset.id for asset in await self.store.list_assets()], ["a1", "a2"])
        self.assertTrue(await self.store.remove_asset("a1"))
        self.assertEqual([asset.id for asset in await self.store.list_assets()], ["a2"])

    async def test_redis_errors_become_transient_store_failures(self) -> None:
        self.redis.fail = True
        with self.assertRaises(TransientStoreFailure):
            await self.store.get_current_state("default")
        with self.assertRaises(TransientStoreFailure):
            await self.store.save_state("default", {"pieces": []})


class MetadataVanishingRedis(InMemoryRedis):
    async def hgetall(self, key):
        self._check()
        return {}


class MissingMetadataTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.store = RedisStateStore(MetadataVanishingRedis(), "default")  # type: ignore[arg-type]

    async def test_board_writes_fail_when_metadata_cannot_be_read_back(self) -> None:
        with self.assertRaises(TransientStoreFailure):
            await self.store.create_board("Table one")
        with self.assertRaises(TransientStoreFailure):
            await self.store.ensure_board("room-7")


class BuildStateStoreTests(unittest.TestCase):
    def test_backend_selection(self) -> None:
        self.assertIsInstance(
            build_state_store(Settings(state_store_backend="memory")),
            MemoryStateStore,
        )
        self.assertIsInstance(
            build_state_store(Settings(state_store_backend="redis")),
            RedisStateStore,
        )
        with self.assertRaises(ValueError):
            build_state_store(Settings(state_store_backend="sqlite"))


if __name__ == "__main__":
    unittest.main()
