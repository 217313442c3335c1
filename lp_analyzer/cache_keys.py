"""Cache key derivation for state-cache lookups.

Keys are built from an explicit field list so that adding a parameter which
changes the backend result is a deliberate edit here. The analysis field
list mirrors the query parameters of ``/advanced-lp-strategy``; any field of
the form outside it (e.g. UI-only state) never reaches the key.

Bump ``KEY_VERSION`` whenever a field list or its normalization changes, so
that keys produced by older code can never collide with new ones.
"""

from __future__ import annotations

import base64
import json
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import BaseModel

KEY_VERSION = "v1"

# field -> normalizer; order is irrelevant, keys are sorted on encode.
ANALYSIS_KEY_FIELDS: dict[str, Callable[[Any], Any]] = {
    "price_lower": float,
    "price_upper": float,
    "liquidity_usd": float,
    "bear_case_drop": float,
    "bull_case_rise": float,
    "time_horizon_days": int,
    "advanced_mode": bool,
    "backtest_mode": bool,
}

OHLCV_KEY_FIELDS: dict[str, Callable[[Any], Any]] = {
    "timeframe": str,
    "lookback_days": int,
}


def _as_mapping(form: BaseModel | Mapping[str, Any]) -> Mapping[str, Any]:
    if isinstance(form, BaseModel):
        return form.model_dump()
    return form


def _encode(kind: str, payload: dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    token = base64.urlsafe_b64encode(canonical.encode("utf-8")).decode("ascii").rstrip("=")
    return f"{KEY_VERSION}:{kind}:{token}"


def _canonical(pool_id: str, values: Mapping[str, Any], fields: dict[str, Callable[[Any], Any]]) -> dict[str, Any]:
    out: dict[str, Any] = {"pool_id": (pool_id or "").strip()}
    for name, normalize in fields.items():
        raw = values.get(name)
        # Missing fields stay distinguishable from zero/false.
        out[name] = None if raw is None else normalize(raw)
    return out


def generate_cache_key(pool_id: str, form: BaseModel | Mapping[str, Any]) -> str:
    return _encode("analysis", _canonical(pool_id, _as_mapping(form), ANALYSIS_KEY_FIELDS))


def generate_ohlcv_key(pool_id: str, timeframe: str, lookback_days: int) -> str:
    values = {"timeframe": timeframe, "lookback_days": lookback_days}
    return _encode("ohlcv", _canonical(pool_id, values, OHLCV_KEY_FIELDS))


def decode_cache_key(key: str) -> dict[str, Any]:
    # Debug helper: turns an opaque key back into its canonical payload.
    _, _, token = key.split(":", 2)
    padded = token + "=" * (-len(token) % 4)
    return json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
