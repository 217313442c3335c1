import asyncio
import json

import httpx
from fastapi.testclient import TestClient

from lp_analyzer.context import AppContext
from lp_analyzer.main import create_app
from lp_analyzer.offline_storage import MemoryCacheStorage
from lp_analyzer.scheduler import sync_job
from lp_analyzer.settings import Settings

BACKEND = "https://backend.example"

RESULTS = {
    "scenario_analysis": [
        {
            "scenario": "bull",
            "final_price": 0.288,
            "probability": 0.25,
            "in_range": False,
            "fees_earned_usd": 12.5,
            "impermanent_loss_percent": -1.2,
            "impermanent_loss_usd": -120,
            "net_return_usd": 80,
            "lp_vs_hodl": {"lp_return_usd": 80, "hodl_return_usd": 100, "advantage_usd": -20},
        }
    ]
}


class _Backend:
    def __init__(self) -> None:
        self.online = True
        self.calls: list[tuple[str, str]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append((request.method, request.url.path))
        if not self.online:
            raise httpx.ConnectError("network unreachable", request=request)
        path = request.url.path
        if path == "/advanced-lp-strategy":
            return httpx.Response(200, json=RESULTS)
        if path == "/pools":
            return httpx.Response(200, json={"known_pools": {"HBAR/USDC": {"pool_id": "0.0.3964804"}}})
        if path == "/health/detailed":
            return httpx.Response(200, json={"status": "healthy"})
        if path == "/test-any-pool":
            return httpx.Response(200, json={"pool_id": request.url.params["pool_id"], "days": request.url.params["lookback_days"]})
        if path == "/find-active-pools":
            return httpx.Response(200, json={"active_pools": []})
        return httpx.Response(404, json={"error": "unknown"})

    def count(self, path: str) -> int:
        return sum(1 for _, p in self.calls if p == path)


def _context(tmp_path, backend: _Backend) -> AppContext:
    settings = Settings(
        backend_url=BACKEND,
        backend_timeout_seconds=5.0,
        offline_storage="memory",
        offline_static_assets=[],
        sync_interval_seconds=60,
        log_level="INFO",
    )
    return AppContext.build(
        settings,
        network=httpx.MockTransport(backend),
        storage=MemoryCacheStorage(),
        data_dir=tmp_path,
    )


def _client(tmp_path, backend: _Backend) -> TestClient:
    return TestClient(create_app(_context(tmp_path, backend), with_scheduler=False))


def test_second_identical_analysis_is_served_from_state_cache(tmp_path) -> None:
    backend = _Backend()
    with _client(tmp_path, backend) as client:
        form = {"price_lower": 0.2, "price_upper": 0.3}
        r1 = client.post("/api/analysis", json=form)
        assert r1.status_code == 200
        assert r1.json()["cached"] is False

        r2 = client.post("/api/analysis", json=form)
        assert r2.status_code == 200
        body = r2.json()
        assert body["cached"] is True
        assert body["results"] == RESULTS
        assert body["cache_key"] == r1.json()["cache_key"]

        assert backend.count("/advanced-lp-strategy") == 1

        perf = client.get("/api/performance").json()
        assert perf["total_cache_hits"] == 1
        assert perf["total_cache_misses"] == 1
        assert perf["cache_hit_rate"] == 0.5
        assert perf["analyses_run"] == 1

        client.delete("/api/cache")
        r3 = client.post("/api/analysis", json=form)
        assert r3.json()["cached"] is False
        assert backend.count("/advanced-lp-strategy") == 2


def test_invalid_form_is_rejected(tmp_path) -> None:
    with _client(tmp_path, _Backend()) as client:
        r = client.post("/api/analysis", json={"price_lower": 0.3, "price_upper": 0.2})
        assert r.status_code == 400
        assert r.json()["error"] == "Min price must be less than max price"
        assert client.get("/api/ui").json()["error"] == "Min price must be less than max price"

        r = client.post("/api/analysis", json={"price_lower": 0.1, "price_upper": 0.2, "liquidity_usd": 0})
        assert r.json()["error"] == "Liquidity amount must be greater than 0"


def test_preferences_are_persisted(tmp_path) -> None:
    with _client(tmp_path, _Backend()) as client:
        r = client.post("/api/preferences", json={"theme": "dark", "cache_expiry": 5})
        assert r.status_code == 200
        assert r.json()["preferences"]["theme"] == "dark"

        bad = client.post("/api/preferences", json={"max_cache_size": 0})
        assert bad.status_code == 400

    saved = json.loads((tmp_path / "store.json").read_text(encoding="utf-8"))
    assert saved["preferences"]["theme"] == "dark"
    assert saved["preferences"]["cache_expiry"] == 5
    assert saved["preferences"]["max_cache_size"] == 100


def test_export_formats(tmp_path) -> None:
    with _client(tmp_path, _Backend()) as client:
        assert client.get("/api/analysis/export").status_code == 404

        client.post("/api/analysis", json={})
        r = client.get("/api/analysis/export", params={"format": "csv"})
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/csv")
        lines = r.text.strip().splitlines()
        assert lines[0].startswith("Scenario,Final Price,Probability (%)")
        assert lines[1].startswith("bull,0.288000,25.0,No,12.50")

        r = client.get("/api/analysis/export", params={"format": "json"})
        assert r.json() == RESULTS

        assert client.get("/api/analysis/export", params={"format": "montecarlo"}).status_code == 404
        assert client.get("/api/analysis/export", params={"format": "xml"}).status_code == 400


def test_pools_and_selection(tmp_path) -> None:
    backend = _Backend()
    with _client(tmp_path, backend) as client:
        pools = client.get("/api/pools").json()["pools"]
        assert [p["id"] for p in pools] == ["0.0.3964804"]

        client.get("/api/pools")
        assert backend.count("/pools") == 1

        r = client.post("/api/pools/select", json={"pool_id": "0.0.3964804"})
        assert r.status_code == 200
        assert r.json()["form"]["pool_id"] == "0.0.3964804"

        assert client.post("/api/pools/select", json={"pool_id": "0.0.1"}).status_code == 404


def test_offline_message_and_cached_analysis(tmp_path) -> None:
    with _client(tmp_path, _Backend()) as client:
        assert client.get("/api/analysis").json() == {"results": None, "offline": False}

        r = client.post("/api/offline/message", json={"type": "CACHE_ANALYSIS", "payload": {"x": 1}})
        assert r.status_code == 200
        assert r.json()["offline_cache"]["active"] == "v1.0.0"

        assert client.get("/api/analysis").json() == {"results": {"x": 1}, "offline": True}

        bad = client.post("/api/offline/message", json={"type": "NOPE"})
        assert bad.status_code == 400


def test_network_failure_queues_analysis_for_background_sync(tmp_path) -> None:
    backend = _Backend()
    with _client(tmp_path, backend) as client:
        backend.online = False
        r = client.post("/api/analysis", json={"price_lower": 0.21})
        assert r.status_code == 502

        health = client.get("/api/backend-health").json()
        assert health["status"] == "offline"

        assert client.post("/api/offline/sync").json() == {"ok": True, "synced": []}

        backend.online = True
        synced = client.post("/api/offline/sync", json={"tag": "sync-analysis"}).json()["synced"]
        assert synced == [{"type": "SYNC_SUCCESS", "data": {"url": f"{BACKEND}/advanced-lp-strategy"}}]
        assert ("POST", "/advanced-lp-strategy") in backend.calls

        assert client.post("/api/offline/sync").json()["synced"] == []

        events = client.get("/api/offline/events").json()["events"]
        assert events == synced
        assert client.get("/api/offline/events").json() == {"events": []}


def test_health_reports_offline_cache(tmp_path) -> None:
    with _client(tmp_path, _Backend()) as client:
        body = client.get("/health").json()
        assert body["ok"] is True
        assert body["offline_cache"]["active_state"] == "activated"
        assert body["cache_hit_rate"] is None


def test_pool_lookups_are_proxied(tmp_path) -> None:
    with _client(tmp_path, _Backend()) as client:
        assert client.get("/api/pools/0.0.5/test").json() == {"pool_id": "0.0.5", "days": "7"}
        assert client.get("/api/active-pools").json() == {"active_pools": []}
        assert client.get("/api/pools/0.0.5/validate").status_code == 404


def test_scheduled_sync_events_reach_the_ui(tmp_path) -> None:
    backend = _Backend()
    url = f"{BACKEND}/advanced-lp-strategy"

    async def run():
        ctx = _context(tmp_path, backend)
        app = create_app(ctx, with_scheduler=False)
        await ctx.start(with_scheduler=False)
        try:
            await ctx.offline.active.queue_request("POST", url, b'{"price_lower": 0.21}')
            await sync_job(offline=ctx.offline)
            async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://ui") as ui:
                first = (await ui.get("/api/offline/events")).json()
                second = (await ui.get("/api/offline/events")).json()
        finally:
            await ctx.close()
        return first, second

    first, second = asyncio.run(run())
    assert first == {"events": [{"type": "SYNC_SUCCESS", "data": {"url": url}}]}
    assert second == {"events": []}
