from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_POOL_ID = "0.0.3964804"


class LPStrategyForm(BaseModel):
    pool_id: str = Field(DEFAULT_POOL_ID, description="SaucerSwap V2 pool id, e.g. 0.0.3964804")
    price_lower: float = 0.22
    price_upper: float = 0.26
    liquidity_usd: float = 10000.0
    bear_case_drop: float = Field(20.0, description="Bear scenario price drop, percent")
    bull_case_rise: float = Field(20.0, description="Bull scenario price rise, percent")
    time_horizon_days: int = 30
    advanced_mode: bool = False
    backtest_mode: bool = False


class UserPreferences(BaseModel):
    theme: Literal["light", "dark", "auto"] = "light"
    default_timeframe: str = "1H"
    auto_save: bool = True
    export_format: Literal["csv", "json", "pdf"] = "csv"
    chart_animations: bool = True
    cache_expiry: float = Field(30.0, gt=0, description="State cache TTL in minutes")
    max_cache_size: int = Field(100, ge=1, description="Max entries per bounded state cache")


class UIState(BaseModel):
    is_loading: bool = False
    error: str | None = None
    selected_tab: Literal["scenarios", "advanced", "backtest", "efficiency"] = "scenarios"


class Pool(BaseModel):
    # Backend pool records carry more fields than we model; keep them.
    model_config = ConfigDict(extra="allow")

    id: str
    name: str = ""
    token0_symbol: str | None = None
    token1_symbol: str | None = None
    fee_tier: Any = None


class PoolValidation(BaseModel):
    valid: bool
    pool_id: str | None = None
    error: str | None = None


def validate_form(form: LPStrategyForm, *, selected_pool: Pool | None) -> str | None:
    """Return a user-facing error for an unusable form, or None."""
    if selected_pool is None and not form.pool_id.strip():
        return "Please select a valid pool first"
    if form.price_lower >= form.price_upper:
        return "Min price must be less than max price"
    if form.liquidity_usd <= 0:
        return "Liquidity amount must be greater than 0"
    return None
