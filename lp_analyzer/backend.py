from __future__ import annotations

import logging
from typing import Any

import httpx

from lp_analyzer.models import LPStrategyForm, Pool, PoolValidation

logger = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = "Resource not found. Please check your inputs."
SERVER_ERROR_MESSAGE = "Server error. Please try again later."
TIMEOUT_MESSAGE = "Request timeout. The analysis is taking longer than expected."
UNEXPECTED_MESSAGE = "An unexpected error occurred"


class BackendError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def normalize_error_response(response: httpx.Response) -> BackendError:
    status = response.status_code
    if status == 404:
        return BackendError(NOT_FOUND_MESSAGE, status_code=status)
    if status == 500:
        return BackendError(SERVER_ERROR_MESSAGE, status_code=status)
    try:
        data = response.json()
    except Exception:
        data = None
    if isinstance(data, dict) and data.get("error"):
        return BackendError(str(data["error"]), status_code=status)
    return BackendError(f"Request failed with status code {status}", status_code=status)


def _bool_param(v: bool) -> str:
    return "true" if v else "false"


class BackendClient:
    """Thin async client for the LP analysis backend.

    Every request goes through ``transport``; in the running app that is the
    offline cache, which decides per request whether the network is hit.
    """

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
            follow_redirects=True,
            max_redirects=5,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _get_json(self, path: str, params: dict[str, Any] | None = None, *, accept_status: tuple[int, ...] = ()) -> Any:
        logger.debug("backend request GET %s %s", path, params or "")
        try:
            r = await self._client.get(path, params=params)
        except httpx.TimeoutException as e:
            logger.warning("backend timeout GET %s: %s", path, e)
            raise BackendError(TIMEOUT_MESSAGE) from e
        except httpx.HTTPError as e:
            logger.warning("backend request failed GET %s: %s", path, e)
            raise BackendError(str(e) or UNEXPECTED_MESSAGE) from e

        logger.debug("backend response %s %s", r.status_code, path)
        if r.is_error and r.status_code not in accept_status:
            err = normalize_error_response(r)
            logger.warning("backend error GET %s: %s %s", path, r.status_code, err.message)
            raise err
        try:
            return r.json()
        except ValueError as e:
            raise BackendError(UNEXPECTED_MESSAGE, status_code=r.status_code) from e

    async def get_health(self) -> dict[str, Any]:
        # 503 carries a status payload (e.g. the offline placeholder), not an error body.
        return await self._get_json("/health/detailed", accept_status=(503,))

    async def get_pools(self) -> list[Pool]:
        data = await self._get_json("/pools")
        known = (data or {}).get("known_pools") or {}
        out: list[Pool] = []
        for name, raw in known.items():
            if not isinstance(raw, dict) or not raw.get("pool_id"):
                continue
            fields = {k: v for k, v in raw.items() if k not in {"id", "name"}}
            out.append(Pool(id=str(raw["pool_id"]), name=str(name), **fields))
        return out

    async def validate_pool(self, pool_id: str) -> PoolValidation:
        data = await self._get_json("/test-pool-id", {"pool_id": pool_id})
        valid = data.get("test_result") == "success"
        return PoolValidation(
            valid=valid,
            pool_id=data.get("pool_id"),
            error=None if valid else data.get("message"),
        )

    async def get_ohlcv(self, pool_id: str, timeframe: str = "1H", lookback_days: int = 30) -> list[dict[str, Any]]:
        data = await self._get_json(
            "/ohlcv",
            {"pool_id": pool_id, "timeframe": timeframe, "lookback_days": str(lookback_days)},
        )
        return list((data or {}).get("ohlcv") or [])

    async def analyze_strategy(self, form: LPStrategyForm) -> dict[str, Any]:
        params = {
            "pool_id": form.pool_id,
            "price_lower": str(form.price_lower),
            "price_upper": str(form.price_upper),
            "liquidity_usd": str(form.liquidity_usd),
            "bear_case_drop": str(form.bear_case_drop or 20),
            "bull_case_rise": str(form.bull_case_rise or 20),
            "time_horizon_days": str(form.time_horizon_days or 30),
            "advanced_mode": _bool_param(form.advanced_mode),
            "backtest_mode": _bool_param(form.backtest_mode),
        }
        return await self._get_json("/advanced-lp-strategy", params)

    async def get_range_comparison(self, pool_id: str, ranges: str, liquidity_usd: float) -> Any:
        # ranges: "0.22-0.26,0.20-0.28"
        return await self._get_json(
            "/range-comparison-chart",
            {"pool_id": pool_id, "ranges": ranges, "liquidity_usd": str(liquidity_usd)},
        )

    async def get_liquidity_distribution(self, pool_id: str, price_points: int = 100) -> Any:
        return await self._get_json("/liquidity-distribution", {"pool_id": pool_id, "price_points": str(price_points)})

    async def test_pool(self, pool_id: str) -> Any:
        return await self._get_json("/test-any-pool", {"pool_id": pool_id, "lookback_days": "7"})

    async def find_active_pools(self) -> Any:
        return await self._get_json("/find-active-pools")
