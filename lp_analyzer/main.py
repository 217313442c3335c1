from __future__ import annotations

import logging
from typing import Any, Literal

from fastapi import FastAPI
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from lp_analyzer.backend import TIMEOUT_MESSAGE, BackendError
from lp_analyzer.context import AppContext
from lp_analyzer.export import analysis_to_json, monte_carlo_to_csv, scenarios_to_csv
from lp_analyzer.offline_cache import SYNC_TAG
from lp_analyzer.offline_messages import UnknownMessageError, parse_command
from lp_analyzer.settings import Settings, configure_logging

logger = logging.getLogger(__name__)


class ApiFormUpdateRequest(BaseModel):
    pool_id: str | None = None
    price_lower: float | None = None
    price_upper: float | None = None
    liquidity_usd: float | None = None
    bear_case_drop: float | None = None
    bull_case_rise: float | None = None
    time_horizon_days: int | None = None
    advanced_mode: bool | None = None
    backtest_mode: bool | None = None


class ApiPreferencesUpdateRequest(BaseModel):
    theme: Literal["light", "dark", "auto"] | None = None
    default_timeframe: str | None = None
    auto_save: bool | None = None
    export_format: Literal["csv", "json", "pdf"] | None = None
    chart_animations: bool | None = None
    cache_expiry: float | None = None
    max_cache_size: int | None = None


class ApiSelectPoolRequest(BaseModel):
    pool_id: str


class ApiUIUpdateRequest(BaseModel):
    selected_tab: Literal["scenarios", "advanced", "backtest", "efficiency"] | None = None
    error: str | None = None


class ApiOfflineMessageRequest(BaseModel):
    type: str
    payload: Any = None


class ApiSyncRequest(BaseModel):
    tag: str = SYNC_TAG


def _updates(req: BaseModel) -> dict[str, Any]:
    # Only fields the caller actually sent, and never explicit nulls.
    return {k: v for k, v in req.model_dump(exclude_unset=True).items() if v is not None}


def _backend_error_response(e: BackendError) -> JSONResponse:
    if e.status_code is None:
        status = 504 if e.message == TIMEOUT_MESSAGE else 502
    elif e.status_code == 404:
        status = 404
    else:
        status = 502
    return JSONResponse({"ok": False, "error": e.message}, status_code=status)


def create_app(ctx: AppContext | None = None, *, with_scheduler: bool = True) -> FastAPI:
    if ctx is None:
        settings = Settings.load()
        configure_logging(settings)
        ctx = AppContext.build(settings)

    app = FastAPI(title="SaucerSwap V2 LP Analyzer")
    app.state.ctx = ctx
    store = ctx.store
    service = ctx.service

    @app.on_event("startup")
    async def _startup() -> None:
        await ctx.start(with_scheduler=with_scheduler)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await ctx.close()

    @app.get("/health")
    async def health() -> dict:
        return {
            "ok": True,
            "offline_cache": ctx.offline.status(),
            "cache_hit_rate": store.performance.cache_hit_rate,
        }

    @app.get("/api/backend-health")
    async def api_backend_health() -> JSONResponse:
        try:
            data = await service.get_health()
        except BackendError as e:
            return _backend_error_response(e)
        return JSONResponse(data)

    @app.get("/api/pools")
    async def api_pools(refresh: bool = False) -> JSONResponse:
        try:
            pools = await service.get_pools(force=refresh)
        except BackendError as e:
            store.set_error(e.message)
            return _backend_error_response(e)
        selected = store.selected_pool.id if store.selected_pool else None
        return JSONResponse({"pools": [p.model_dump() for p in pools], "selected_pool_id": selected})

    @app.post("/api/pools/select")
    async def api_pools_select(req: ApiSelectPoolRequest) -> JSONResponse:
        try:
            pool = await service.select_pool(req.pool_id)
        except LookupError:
            return JSONResponse({"ok": False, "error": "pool not found"}, status_code=404)
        except BackendError as e:
            return _backend_error_response(e)
        return JSONResponse({"ok": True, "pool": pool.model_dump(), "form": store.form.model_dump()})

    @app.get("/api/pools/{pool_id}/validate")
    async def api_pools_validate(pool_id: str) -> JSONResponse:
        if not pool_id.strip():
            return JSONResponse({"ok": False, "error": "missing pool_id"}, status_code=400)
        try:
            result = await service.validate_pool(pool_id)
        except BackendError as e:
            return _backend_error_response(e)
        return JSONResponse(result.model_dump())

    @app.get("/api/pools/{pool_id}/test")
    async def api_pools_test(pool_id: str) -> JSONResponse:
        try:
            data = await ctx.client.test_pool(pool_id.strip())
        except BackendError as e:
            return _backend_error_response(e)
        return JSONResponse(data)

    @app.get("/api/active-pools")
    async def api_active_pools() -> JSONResponse:
        try:
            data = await ctx.client.find_active_pools()
        except BackendError as e:
            return _backend_error_response(e)
        return JSONResponse(data)

    @app.get("/api/ohlcv")
    async def api_ohlcv(pool_id: str, timeframe: str | None = None, lookback_days: int = 30) -> JSONResponse:
        tf = (timeframe or store.preferences.default_timeframe).strip()
        try:
            candles = await service.get_ohlcv(pool_id.strip(), tf, max(1, lookback_days))
        except BackendError as e:
            return _backend_error_response(e)
        return JSONResponse({"candles": candles})

    @app.get("/api/form")
    async def api_form_get() -> JSONResponse:
        return JSONResponse(store.form.model_dump())

    @app.post("/api/form")
    async def api_form_update(req: ApiFormUpdateRequest) -> JSONResponse:
        try:
            form = store.set_form(_updates(req))
        except ValueError as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
        return JSONResponse({"ok": True, "form": form.model_dump()})

    @app.post("/api/form/reset")
    async def api_form_reset() -> JSONResponse:
        return JSONResponse({"ok": True, "form": store.reset_form().model_dump()})

    @app.post("/api/analysis")
    async def api_analysis(req: ApiFormUpdateRequest | None = None) -> JSONResponse:
        updates = _updates(req) if req is not None else None
        try:
            outcome = await service.run_analysis(updates)
        except ValueError as e:
            # FormError or a pydantic validation error on the updates.
            return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
        except BackendError as e:
            return _backend_error_response(e)
        return JSONResponse(
            {
                "ok": True,
                "cached": outcome.cached,
                "cache_key": outcome.key,
                "duration_ms": outcome.duration_ms,
                "results": outcome.results,
            }
        )

    @app.get("/api/analysis")
    async def api_analysis_current() -> JSONResponse:
        if store.results is not None:
            return JSONResponse({"results": store.results, "offline": False})
        offline = await service.get_offline_analysis()
        return JSONResponse({"results": offline, "offline": offline is not None})

    @app.get("/api/analysis/export")
    async def api_analysis_export(format: str | None = None) -> Response:
        results = store.results
        if results is None:
            return JSONResponse({"ok": False, "error": "no analysis results"}, status_code=404)
        fmt = (format or store.preferences.export_format).strip().lower()
        if fmt == "json":
            return Response(
                analysis_to_json(results),
                media_type="application/json",
                headers={"Content-Disposition": 'attachment; filename="lp-analysis.json"'},
            )
        if fmt == "montecarlo":
            body = monte_carlo_to_csv(results)
            if body is None:
                return JSONResponse({"ok": False, "error": "no monte carlo results"}, status_code=404)
            return Response(
                body,
                media_type="text/csv",
                headers={"Content-Disposition": 'attachment; filename="monte-carlo-analysis.csv"'},
            )
        if fmt == "csv":
            return Response(
                scenarios_to_csv(results),
                media_type="text/csv",
                headers={"Content-Disposition": 'attachment; filename="lp-analysis.csv"'},
            )
        return JSONResponse({"ok": False, "error": f"unsupported format: {fmt}"}, status_code=400)

    @app.get("/api/liquidity-distribution")
    async def api_liquidity_distribution(pool_id: str, price_points: int = 100) -> JSONResponse:
        try:
            data = await service.get_liquidity_distribution(pool_id.strip(), max(2, price_points))
        except BackendError as e:
            return _backend_error_response(e)
        store.set_chart_data("liquidity_distribution", data)
        return JSONResponse(data)

    @app.get("/api/range-comparison")
    async def api_range_comparison(pool_id: str, ranges: str, liquidity_usd: float) -> JSONResponse:
        try:
            data = await service.get_range_comparison(pool_id.strip(), ranges.strip(), liquidity_usd)
        except BackendError as e:
            return _backend_error_response(e)
        store.set_chart_data("range_comparison", data)
        return JSONResponse(data)

    @app.get("/api/preferences")
    async def api_preferences_get() -> JSONResponse:
        return JSONResponse(store.preferences.model_dump())

    @app.post("/api/preferences")
    async def api_preferences_update(req: ApiPreferencesUpdateRequest) -> JSONResponse:
        try:
            prefs = store.update_preferences(_updates(req))
        except ValueError as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
        return JSONResponse({"ok": True, "preferences": prefs.model_dump()})

    @app.get("/api/performance")
    async def api_performance() -> JSONResponse:
        return JSONResponse(store.get_performance_stats())

    @app.delete("/api/cache")
    async def api_cache_clear() -> JSONResponse:
        store.clear_cache()
        return JSONResponse({"ok": True})

    @app.get("/api/ui")
    async def api_ui_get() -> JSONResponse:
        return JSONResponse(store.ui.model_dump())

    @app.post("/api/ui")
    async def api_ui_update(req: ApiUIUpdateRequest) -> JSONResponse:
        updates = req.model_dump(exclude_unset=True)
        return JSONResponse({"ok": True, "ui": store.set_ui(updates).model_dump()})

    @app.post("/api/offline/message")
    async def api_offline_message(req: ApiOfflineMessageRequest) -> JSONResponse:
        try:
            command = parse_command(req.model_dump())
        except UnknownMessageError as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
        await ctx.messenger.post_message(command)
        return JSONResponse({"ok": True, "offline_cache": ctx.offline.status()})

    @app.post("/api/offline/sync")
    async def api_offline_sync(req: ApiSyncRequest | None = None) -> JSONResponse:
        tag = req.tag if req is not None else SYNC_TAG
        synced = await ctx.messenger.request_background_sync(tag)
        return JSONResponse({"ok": True, "synced": [e.to_dict() for e in synced]})

    @app.get("/api/offline/events")
    async def api_offline_events() -> JSONResponse:
        # SYNC_SUCCESS events since the last call, from any sync trigger.
        events = ctx.messenger.drain_sync_events()
        return JSONResponse({"events": [e.to_dict() for e in events]})

    return app


app = create_app()
