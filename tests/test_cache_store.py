from __future__ import annotations

import asyncio
import os
import shutil
from pathlib import Path

import pytest

from imagecache.common.schemas import CacheKey
from imagecache.proxy.cache_store import (
    TEMP_PREFIX,
    CacheHit,
    CacheMiss,
    FileCacheStore,
    NotModified,
    etag_for_mtime_ns,
)
from imagecache.proxy.streams import StreamTee


def _read_hit(result) -> bytes:
    assert isinstance(result, CacheHit)
    with result.stream as handle:
        return handle.read()


async def _chunks(*parts: bytes, delay: float = 0.0):
    for part in parts:
        if delay:
            await asyncio.sleep(delay)
        yield part


async def _collect(stream) -> bytes:
    return b"".join([chunk async for chunk in stream])


def test_path_for_matches_uri_component_encoding(tmp_path: Path) -> None:
    store = FileCacheStore(tmp_path)
    assert store.path_for(CacheKey("a/b c.jpg")).name == "a%2Fb%20c.jpg"
    assert store.path_for(CacheKey("a/b.jpg", ("w_100", "f_cover", "f_webp"))).name == "a%2Fb.jpg_w_100_f_cover_f_webp"
    assert store.path_for(CacheKey("x(1)!~*'.png")).name == "x(1)!~*'.png"
    assert store.path_for(CacheKey("ümlaut@home")).name == "%C3%BCmlaut%40home"


def test_path_for_never_escapes_cache_dir(tmp_path: Path) -> None:
    store = FileCacheStore(tmp_path)
    for key in ("..", ".", "../etc/passwd", "/abs"):
        assert store.path_for(CacheKey(key)).parent == tmp_path


def test_etag_format() -> None:
    assert etag_for_mtime_ns(1_700_000_000_123_456_789) == "mt_1700000000123"


@pytest.mark.asyncio
async def test_missing_entry_is_a_miss(tmp_path: Path) -> None:
    store = FileCacheStore(tmp_path)
    assert isinstance(await store.get(CacheKey("nope"), ""), CacheMiss)


@pytest.mark.asyncio
async def test_put_then_get_hit_then_not_modified(tmp_path: Path) -> None:
    store = FileCacheStore(tmp_path)
    key = CacheKey("docs/report.pdf")

    assert await store.put(key, b"payload") is True

    hit = await store.get(key, "")
    assert isinstance(hit, CacheHit)
    assert hit.etag.startswith("mt_")
    assert hit.size == len(b"payload")
    assert _read_hit(hit) == b"payload"

    not_modified = await store.get(key, hit.etag)
    assert not_modified == NotModified(etag=hit.etag)

    quoted = await store.get(key, f'W/"{hit.etag}"')
    assert isinstance(quoted, NotModified)

    stale = await store.get(key, "mt_1")
    assert _read_hit(stale) == b"payload"


@pytest.mark.asyncio
async def test_put_accepts_async_stream(tmp_path: Path) -> None:
    store = FileCacheStore(tmp_path)
    key = CacheKey("streamed.bin")
    assert await store.put(key, _chunks(b"abc", b"def", b"ghi")) is True
    assert _read_hit(await store.get(key)) == b"abcdefghi"


@pytest.mark.asyncio
async def test_every_put_changes_the_etag(tmp_path: Path) -> None:
    store = FileCacheStore(tmp_path)
    key = CacheKey("same.txt")
    await store.put(key, b"identical")
    first = await store.get(key)
    first.stream.close()

    await store.put(key, b"identical")
    second = await store.get(key)
    second.stream.close()

    assert first.etag != second.etag
    assert isinstance(await store.get(key, first.etag), CacheHit)


@pytest.mark.asyncio
async def test_failed_stream_keeps_previous_version(tmp_path: Path) -> None:
    store = FileCacheStore(tmp_path)
    key = CacheKey("flaky.bin")
    await store.put(key, b"previous")

    async def broken():
        yield b"partial"
        raise RuntimeError("origin went away")

    assert await store.put(key, broken()) is False
    assert _read_hit(await store.get(key)) == b"previous"
    assert not list(tmp_path.glob(f"{TEMP_PREFIX}*"))


@pytest.mark.asyncio
async def test_put_failure_is_swallowed(tmp_path: Path) -> None:
    root = tmp_path / "cache"
    store = FileCacheStore(root)
    shutil.rmtree(root)
    assert await store.put(CacheKey("lost"), b"data") is False


@pytest.mark.asyncio
async def test_directory_at_entry_path_is_a_miss(tmp_path: Path) -> None:
    store = FileCacheStore(tmp_path)
    store.path_for(CacheKey("folder")).mkdir()
    assert isinstance(await store.get(CacheKey("folder")), CacheMiss)


@pytest.mark.asyncio
async def test_readers_never_observe_partial_writes(tmp_path: Path) -> None:
    store = FileCacheStore(tmp_path)
    key = CacheKey("big.bin")
    old = b"o" * 4096
    new = b"n" * 4096
    await store.put(key, old)

    observed: set[bytes] = set()
    done = asyncio.Event()

    async def poll() -> None:
        while not done.is_set():
            result = await store.get(key)
            observed.add(_read_hit(result))
            await asyncio.sleep(0)

    async def write(payload: bytes) -> None:
        parts = [payload[i : i + 512] for i in range(0, len(payload), 512)]
        await store.put(key, _chunks(*parts, delay=0.005))

    poller = asyncio.create_task(poll())
    await asyncio.gather(write(new), write(new))
    done.set()
    await poller

    assert observed <= {old, new}
    assert _read_hit(await store.get(key)) == new


@pytest.mark.asyncio
async def test_spawn_put_and_drain(tmp_path: Path) -> None:
    store = FileCacheStore(tmp_path)
    key = CacheKey("background.txt")
    task = store.spawn_put(key, _chunks(b"later", delay=0.01))
    assert store.pending_writes == 1
    await store.drain()
    assert task.result() is True
    assert store.pending_writes == 0
    assert _read_hit(await store.get(key)) == b"later"


def test_remove_stale_temp_files(tmp_path: Path) -> None:
    store = FileCacheStore(tmp_path)
    (tmp_path / f"{TEMP_PREFIX}abc").write_bytes(b"junk")
    (tmp_path / "tmp_real_object").write_bytes(b"keep")
    assert store.remove_stale_temp_files() == 1
    assert sorted(os.listdir(tmp_path)) == ["tmp_real_object"]


def test_status_reports_writable(tmp_path: Path) -> None:
    status = FileCacheStore(tmp_path).status()
    assert status["backend"] == "local"
    assert status["writable"] is True
    assert status["pending_writes"] == 0


@pytest.mark.asyncio
async def test_failed_put_releases_its_tee_branch(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = FileCacheStore(tmp_path)

    async def refuse(_temp_path, _data):
        raise OSError("disk full")

    monkeypatch.setattr(store, "_write_temp", refuse)
    client, cache = StreamTee(_chunks(*[b"p"] * 40), buffer_chunks=2).branches()
    write = store.spawn_put(CacheKey("doomed.bin"), cache)

    body = await asyncio.wait_for(_collect(client), timeout=5)
    assert body == b"p" * 40
    assert await write is False
    assert isinstance(await store.get(CacheKey("doomed.bin")), CacheMiss)
