"""Tests for the dependency cache store."""

from __future__ import annotations

import pytest

from gantry.engine.cache import (
    DAY,
    CacheKeyError,
    CacheStore,
    pack_paths,
    parse_path_list,
    resolve,
    unpack_paths,
)
from gantry.engine.context import Context

MAIN = "refs/heads/main"
FEATURE = "refs/heads/feature"


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_store(storage, clock=None, **kwargs) -> CacheStore:
    return CacheStore(
        storage,
        quota_bytes=kwargs.get("quota_bytes", 10_000),
        retention_days=kwargs.get("retention_days", 7),
        default_scope=MAIN,
        clock=clock or FakeClock(),
    )


class TestResolve:
    def test_key_and_restore_chain(self):
        ctx = Context(runner={"os": "Linux"})
        key, chain = resolve(
            "deps-${{ runner.os }}-abc",
            "deps-${{ runner.os }}-\ndeps-\n",
            ctx,
        )
        assert key == "deps-Linux-abc"
        assert chain == ["deps-Linux-", "deps-"]

    def test_empty_key(self):
        with pytest.raises(CacheKeyError):
            resolve("", None, Context())

    def test_comma_in_key(self):
        with pytest.raises(CacheKeyError):
            resolve("a,b", None, Context())

    def test_key_too_long(self):
        with pytest.raises(CacheKeyError):
            resolve("k" * 600, None, Context())

    def test_parse_path_list(self):
        assert parse_path_list("~/.npm\n  node_modules \n\n") == ["~/.npm", "node_modules"]
        assert parse_path_list(["a", "b"]) == ["a", "b"]


class TestPacking:
    def test_pack_and_unpack_tree(self, tmp_path):
        src = tmp_path / "src"
        (src / "deep").mkdir(parents=True)
        (src / "deep" / "file.txt").write_text("payload")
        single = tmp_path / "single.bin"
        single.write_bytes(b"\x00\x01")

        payload = pack_paths([src, single])

        dest = tmp_path / "dest"
        written = unpack_paths(payload, [dest / "src", dest / "single.bin"])
        assert written == 2
        assert (dest / "src" / "deep" / "file.txt").read_text() == "payload"
        assert (dest / "single.bin").read_bytes() == b"\x00\x01"


class TestLookup:
    @pytest.mark.asyncio
    async def test_miss_is_not_an_error(self, storage):
        store = make_store(storage)
        result = await store.lookup("deps-abc", ["deps-"], MAIN)
        assert result.hit is False
        assert result.entry is None

    @pytest.mark.asyncio
    async def test_exact_hit(self, storage):
        store = make_store(storage)
        await store.put("deps-abc", MAIN, ["node_modules"], b"data")
        result = await store.lookup("deps-abc", ["deps-"], MAIN)
        assert result.hit is True
        assert result.matched_key == "deps-abc"

    @pytest.mark.asyncio
    async def test_prefix_fallback_prefers_newest(self, storage):
        clock = FakeClock()
        store = make_store(storage, clock)
        await store.put("deps-old", MAIN, ["x"], b"1")
        clock.advance(10)
        await store.put("deps-new", MAIN, ["x"], b"2")

        result = await store.lookup("deps-missing", ["deps-"], MAIN)
        assert result.hit is False
        assert result.matched_key == "deps-new"

    @pytest.mark.asyncio
    async def test_restore_keys_tried_in_order(self, storage):
        store = make_store(storage)
        await store.put("deps-linux-1", MAIN, ["x"], b"1")
        await store.put("deps-mac-1", MAIN, ["x"], b"2")

        result = await store.lookup("deps-linux-2", ["deps-linux-", "deps-"], MAIN)
        assert result.matched_key == "deps-linux-1"

    @pytest.mark.asyncio
    async def test_branch_falls_back_to_default_branch(self, storage):
        store = make_store(storage)
        await store.put("deps-abc", MAIN, ["x"], b"main")

        result = await store.lookup("deps-abc", [], FEATURE)
        assert result.hit is True
        assert result.entry.scope == MAIN

    @pytest.mark.asyncio
    async def test_feature_entries_invisible_to_main(self, storage):
        store = make_store(storage)
        await store.put("deps-abc", FEATURE, ["x"], b"feature")
        result = await store.lookup("deps-abc", [], MAIN)
        assert result.entry is None


class TestWrites:
    @pytest.mark.asyncio
    async def test_first_writer_wins(self, storage):
        store = make_store(storage)
        first = await store.put("deps-abc", MAIN, ["x"], b"first")
        second = await store.put("deps-abc", MAIN, ["x"], b"second")
        assert first is not None
        assert second is None

        assert await storage.read(first.blob) == b"first"
        assert len(await store.entries()) == 1

    @pytest.mark.asyncio
    async def test_lru_eviction_when_over_quota(self, storage):
        clock = FakeClock()
        store = make_store(storage, clock, quota_bytes=10)
        await store.put("a", MAIN, ["x"], b"12345")
        clock.advance(1)
        await store.put("b", MAIN, ["x"], b"12345")
        clock.advance(1)
        await store.lookup("a", [], MAIN)  # a is now more recently used than b
        clock.advance(1)

        await store.put("c", MAIN, ["x"], b"12345")
        keys = sorted(e.key for e in await store.entries())
        assert keys == ["a", "c"]

    @pytest.mark.asyncio
    async def test_entry_larger_than_quota_is_dropped(self, storage):
        store = make_store(storage, quota_bytes=4)
        assert await store.put("huge", MAIN, ["x"], b"123456789") is None
        assert await store.entries() == []

    @pytest.mark.asyncio
    async def test_stale_entries_evicted(self, storage):
        clock = FakeClock()
        store = make_store(storage, clock, retention_days=7)
        entry = await store.put("old", MAIN, ["x"], b"1")
        clock.advance(8 * DAY)

        evicted = await store.evict_stale()
        assert [e.key for e in evicted] == ["old"]
        assert await store.entries() == []
        assert await storage.read(entry.blob) is None

    @pytest.mark.asyncio
    async def test_save_and_restore_roundtrip(self, storage, tmp_path):
        ws = tmp_path / "ws"
        (ws / "node_modules" / "pkg").mkdir(parents=True)
        (ws / "node_modules" / "pkg" / "index.js").write_text("module.exports = 1")
        store = make_store(storage)

        entry = await store.save("deps-1", MAIN, ["node_modules"], ws)
        assert entry is not None

        target = tmp_path / "other"
        result = await store.restore("deps-1", [], MAIN, [target / "node_modules"])
        assert result.hit is True
        assert (target / "node_modules" / "pkg" / "index.js").read_text() == "module.exports = 1"

    @pytest.mark.asyncio
    async def test_save_with_no_existing_paths(self, storage, tmp_path):
        store = make_store(storage)
        assert await store.save("deps-1", MAIN, ["missing"], tmp_path) is None

    @pytest.mark.asyncio
    async def test_delete(self, storage):
        store = make_store(storage)
        await store.put("k", MAIN, ["x"], b"1")
        await store.put("k", FEATURE, ["x"], b"2")
        assert await store.delete("k", FEATURE) == 1
        assert [e.scope for e in await store.entries()] == [MAIN]
