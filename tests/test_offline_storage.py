import asyncio

from lp_analyzer.offline_storage import DiskCacheStorage, MemoryCacheStorage, StoredResponse, request_key


def _entry(url: str, body: bytes = b"\x1f\x8bgzip-ish", **kw) -> StoredResponse:
    return StoredResponse(
        url=url,
        status_code=200,
        headers=[("Content-Type", "application/json"), ("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")],
        content=body,
        **kw,
    )


def test_request_key_distinguishes_methods() -> None:
    assert request_key("get", "https://x/pools") == "https://x/pools"
    assert request_key("POST", "https://x/pools") == "POST https://x/pools"


def test_disk_storage_survives_reopen(tmp_path) -> None:
    root = tmp_path / "offline"

    async def write():
        storage = DiskCacheStorage(root)
        bucket = await storage.open("lp-analyzer-dynamic-v1")
        await bucket.put(_entry("https://x/pools"))
        await bucket.put(_entry("https://x/advanced-lp-strategy", b"", method="POST", request_content=b'{"a":1}'))
        await storage.open("lp-analyzer-static-v1")

    async def read():
        storage = DiskCacheStorage(root)
        names = sorted(await storage.names())
        hit = await storage.match("https://x/pools")
        queued = await storage.match("POST https://x/advanced-lp-strategy")
        miss = await storage.match("https://x/ohlcv")
        return names, hit, queued, miss

    asyncio.run(write())
    names, hit, queued, miss = asyncio.run(read())

    assert names == ["lp-analyzer-dynamic-v1", "lp-analyzer-static-v1"]
    assert hit is not None
    assert hit.content == b"\x1f\x8bgzip-ish"
    assert hit.headers == [("Content-Type", "application/json"), ("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")]
    assert queued is not None
    assert queued.request_content == b'{"a":1}'
    assert miss is None


def test_disk_storage_delete_bucket_and_entry(tmp_path) -> None:
    async def run():
        storage = DiskCacheStorage(tmp_path)
        bucket = await storage.open("b")
        await bucket.put(_entry("https://x/1"))
        await bucket.put(_entry("https://x/2"))
        removed = await bucket.delete("https://x/1")
        missing = await bucket.delete("https://x/1")
        keys = await bucket.keys()
        dropped = await storage.delete("b")
        return removed, missing, keys, dropped, await storage.names(), await storage.delete("b")

    removed, missing, keys, dropped, names, again = asyncio.run(run())
    assert removed is True
    assert missing is False
    assert keys == ["https://x/2"]
    assert dropped is True
    assert names == []
    assert again is False


def test_unreadable_bucket_file_reads_as_empty(tmp_path) -> None:
    async def run():
        storage = DiskCacheStorage(tmp_path)
        bucket = await storage.open("b")
        await bucket.put(_entry("https://x/1"))
        for p in tmp_path.glob("*.json"):
            p.write_text("{not json", encoding="utf-8")
        return await bucket.keys()

    assert asyncio.run(run()) == []


def test_memory_match_searches_every_bucket() -> None:
    async def run():
        storage = MemoryCacheStorage()
        await storage.open("static")
        dynamic = await storage.open("dynamic")
        await dynamic.put(_entry("https://x/pools"))
        return await storage.match("https://x/pools"), await storage.names()

    hit, names = asyncio.run(run())
    assert hit is not None
    assert names == ["static", "dynamic"]


def test_disk_names_follow_creation_order(tmp_path) -> None:
    root = tmp_path / "offline"
    order = ["zeta", "alpha", "mid"]

    async def create():
        storage = DiskCacheStorage(root)
        for name in order:
            await storage.open(name)
        # Reopening an existing bucket keeps its place.
        await storage.open("zeta")
        return await storage.names()

    async def reopen():
        storage = DiskCacheStorage(root)
        await storage.open("alpha")
        await storage.delete("alpha")
        await storage.open("late")
        return await storage.names()

    assert asyncio.run(create()) == order
    assert asyncio.run(reopen()) == ["zeta", "mid", "late"]


def test_queued_entries_for_one_url_keep_separate_keys(tmp_path) -> None:
    url = "https://x/advanced-lp-strategy"

    async def run():
        storage = DiskCacheStorage(tmp_path / "offline")
        bucket = await storage.open("lp-analyzer-dynamic-v1")
        await bucket.put(_entry(url, b"", method="POST", request_content=b"1", queue_id="a"))
        await bucket.put(_entry(url, b"", method="POST", request_content=b"2", queue_id="b"))
        reloaded = await DiskCacheStorage(tmp_path / "offline").open("lp-analyzer-dynamic-v1")
        return sorted(await reloaded.keys()), await reloaded.get(f"POST {url}#b")

    keys, second = asyncio.run(run())
    assert keys == [f"POST {url}#a", f"POST {url}#b"]
    assert second is not None
    assert second.request_content == b"2"
