from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path


def _get_int(name: str, default: int) -> int:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return int(v)
    except Exception:
        return default


def _get_float(name: str, default: float) -> float:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return float(v)
    except Exception:
        return default


def _get_str(name: str, default: str | None = None) -> str | None:
    v = os.environ.get(name)
    if v is None:
        return default
    s = v.strip()
    return s if s else default


def _get_list(name: str) -> list[str]:
    v = os.environ.get(name)
    if not v:
        return []
    return [x.strip() for x in v.split(",") if x.strip()]


DATA_DIR = Path(__file__).resolve().parent.parent / "data"

DEFAULT_BACKEND_URL = "https://hederalp-backend.onrender.com"


@dataclass(frozen=True)
class Settings:
    backend_url: str
    backend_timeout_seconds: float
    # "memory" keeps offline buckets for the process lifetime; "disk" persists them under DATA_DIR.
    offline_storage: str
    offline_static_assets: list[str]
    sync_interval_seconds: int
    log_level: str

    @staticmethod
    def load() -> "Settings":
        storage = (_get_str("LPA_OFFLINE_STORAGE", "memory") or "memory").lower()
        if storage not in {"memory", "disk"}:
            storage = "memory"
        return Settings(
            backend_url=(_get_str("LPA_BACKEND_URL", DEFAULT_BACKEND_URL) or DEFAULT_BACKEND_URL).rstrip("/"),
            backend_timeout_seconds=max(1.0, _get_float("LPA_BACKEND_TIMEOUT_SECONDS", 30.0)),
            offline_storage=storage,
            offline_static_assets=_get_list("LPA_OFFLINE_STATIC_ASSETS"),
            sync_interval_seconds=max(5, _get_int("LPA_SYNC_INTERVAL_SECONDS", 60)),
            log_level=(_get_str("LPA_LOG_LEVEL", "INFO") or "INFO").upper(),
        )


def configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

