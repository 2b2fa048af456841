"""Lightweight configuration helpers for the messaging worker."""
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


DEFAULT_SESSIONS_DIR = "/app/sessions"
FALLBACK_SESSIONS_DIR = "/tmp/msgworker-sessions"
DEFAULT_PORT = 3000
DEFAULT_MAX_BODY_BYTES = 10_000_000


def _coerce_int(value: str | None, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip() or default)
    except ValueError:
        return default


@dataclass(frozen=True, slots=True)
class WorkerConfig:
    api_id: int
    api_hash: str
    sessions_dir: Path
    device_model: str
    system_version: str
    app_version: str
    lang_code: str
    system_lang_code: str
    qr_ttl: float
    port: int = DEFAULT_PORT
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES
    admin_token: str = ""


def _resolve_sessions_dir(raw: str | None) -> Path:
    candidate = Path(raw or DEFAULT_SESSIONS_DIR)
    try:
        candidate.mkdir(parents=True, exist_ok=True)
    except OSError:
        alt = Path(FALLBACK_SESSIONS_DIR)
        alt.mkdir(parents=True, exist_ok=True)
        return alt
    return candidate


@lru_cache(maxsize=8)
def _parse_duration(raw: str | None, *, default: float) -> float:
    if not raw:
        return default
    cleaned = raw.strip().lower()
    if not cleaned:
        return default
    if cleaned.endswith("s"):
        cleaned = cleaned[:-1]
    try:
        return float(cleaned)
    except ValueError:
        return default


def worker_config() -> WorkerConfig:
    sessions_dir = _resolve_sessions_dir(os.getenv("SESSIONS_DIR"))

    device_model = os.getenv("TG_DEVICE_MODEL", "msgworker").strip() or "msgworker"
    system_version = os.getenv("TG_SYSTEM_VERSION", "1.0").strip() or "1.0"
    app_version = os.getenv("TG_APP_VERSION", "1.0").strip() or "1.0"
    lang = os.getenv("TG_LANG", "en").strip() or "en"

    max_body_bytes = _coerce_int(os.getenv("MAX_BODY_BYTES"), DEFAULT_MAX_BODY_BYTES)
    if max_body_bytes <= 0:
        max_body_bytes = DEFAULT_MAX_BODY_BYTES

    return WorkerConfig(
        api_id=_coerce_int(os.getenv("TELEGRAM_API_ID")),
        api_hash=(os.getenv("TELEGRAM_API_HASH") or "").strip(),
        sessions_dir=sessions_dir,
        device_model=device_model,
        system_version=system_version,
        app_version=app_version,
        lang_code=lang,
        system_lang_code=lang,
        qr_ttl=_parse_duration(os.getenv("QR_TTL"), default=120.0),
        port=_coerce_int(os.getenv("PORT"), DEFAULT_PORT),
        max_body_bytes=max_body_bytes,
        admin_token=(os.getenv("ADMIN_TOKEN") or "").strip(),
    )


__all__ = [
    "DEFAULT_MAX_BODY_BYTES",
    "DEFAULT_PORT",
    "WorkerConfig",
    "worker_config",
]
