"""
settings_store.py — runtime-editable service settings.

Priority order (same pattern as key_store.py):
  1. Database (set via `main.py set-setting`) — takes precedence, no restart needed
  2. Environment variable / .env file         — fallback / bootstrap

All settings are stored as strings in the DB and cast to the right type on read.
"""
from __future__ import annotations

import logging
import os
from typing import Any

logger = logging.getLogger(__name__)

_db = None


def _get_db():
    global _db
    if _db is None:
        import database as db
        _db = db
    return _db


# ── Setting definitions ────────────────────────────────────────────────────────
# Each entry: key → env var, default, type, label, description, choices
# type: "str" | "int" | "float" | "bool"

SETTINGS_META: dict[str, dict] = {
    "vision_enabled": {
        "env": "VISION_ENABLED",
        "default": "true",
        "type": "bool",
        "label": "Remote vision provider",
        "desc": "Call the remote vision API before falling back to local analysis",
        "choices": ["true", "false"],
    },
    "vision_timeout_secs": {
        "env": "VISION_TIMEOUT_SECS",
        "default": "30",
        "type": "float",
        "label": "Vision timeout (s)",
        "desc": "Total timeout for one remote annotate call",
        "choices": [],
    },
    "provider_disable_after": {
        "env": "PROVIDER_DISABLE_AFTER",
        "default": "5",
        "type": "int",
        "label": "Auto-disable after",
        "desc": "Consecutive remote failures before the provider is disabled (0 = never)",
        "choices": [],
    },
    "queue_batch_size": {
        "env": "QUEUE_BATCH_SIZE",
        "default": "10",
        "type": "int",
        "label": "Queue batch size",
        "desc": "Items claimed per worker tick (1–100)",
        "choices": [],
    },
    "queue_max_attempts": {
        "env": "QUEUE_MAX_ATTEMPTS",
        "default": "3",
        "type": "int",
        "label": "Max attempts",
        "desc": "Attempts given to newly enqueued items",
        "choices": [],
    },
    "queue_poll_interval_secs": {
        "env": "QUEUE_POLL_INTERVAL_SECS",
        "default": "30",
        "type": "int",
        "label": "Poll interval (s)",
        "desc": "Seconds between worker ticks",
        "choices": [],
    },
    "queue_retention_days": {
        "env": "QUEUE_RETENTION_DAYS",
        "default": "7",
        "type": "int",
        "label": "Retention (days)",
        "desc": "Completed/failed items older than this are purged",
        "choices": [],
    },
    "queue_stale_processing_minutes": {
        "env": "QUEUE_STALE_PROCESSING_MINUTES",
        "default": "5",
        "type": "int",
        "label": "Stale processing (min)",
        "desc": "Items stuck in processing longer than this are failed",
        "choices": [],
    },
    "autofill_max_images": {
        "env": "AUTOFILL_MAX_IMAGES",
        "default": "5",
        "type": "int",
        "label": "Auto-fill image limit",
        "desc": "Maximum images per interactive auto-fill request",
        "choices": [],
    },
}


def _cast(raw: str, typ: str) -> Any:
    if typ == "bool":
        return raw.strip().lower() in ("true", "1", "yes")
    if typ == "int":
        return int(raw.strip())
    if typ == "float":
        return float(raw.strip())
    return raw.strip()


def _meta(key: str) -> dict:
    meta = SETTINGS_META.get(key)
    if meta is None:
        raise KeyError(f"Unknown setting: {key}")
    return meta


def _env_or_default(meta: dict) -> str:
    env_val = os.getenv(meta["env"], "").strip()
    return env_val if env_val else meta["default"]


async def get(key: str) -> Any:
    """Return the current value for a setting, DB first then env/default."""
    meta = _meta(key)
    try:
        raw = await _get_db().get_setting(key)
        if raw is not None:
            return _cast(raw, meta["type"])
    except Exception as exc:
        logger.warning("settings_store: DB lookup failed for %s: %s", key, exc)
    return _cast(_env_or_default(meta), meta["type"])


async def get_raw(key: str) -> str:
    """Return raw string value (for display)."""
    meta = _meta(key)
    raw = await _get_db().get_setting(key)
    if raw is not None:
        return raw
    return _env_or_default(meta)


async def set(key: str, value: str, updated_by: str = "cli") -> None:
    """Persist a setting to DB and apply it live to the config module."""
    meta = _meta(key)
    if meta["choices"] and value.strip().lower() not in meta["choices"]:
        raise ValueError(f"{key} must be one of {', '.join(meta['choices'])}")
    _cast(value, meta["type"])  # raises ValueError on bad input
    await _get_db().set_setting(key, value, updated_by)
    _apply_to_config(key, value, meta["type"])


async def delete(key: str) -> None:
    """Remove a setting from DB (falls back to .env / default)."""
    meta = _meta(key)
    await _get_db().delete_setting(key)
    _apply_to_config(key, _env_or_default(meta), meta["type"])


async def get_all() -> dict[str, str]:
    """Return all settings as raw strings (source: DB or env/default)."""
    return {key: await get_raw(key) for key in SETTINGS_META}


def _apply_to_config(key: str, raw: str, typ: str) -> None:
    """Immediately update the live config module so no restart is needed."""
    import config as cfg
    value = _cast(raw, typ)
    attr = key.upper()
    if hasattr(cfg, attr):
        setattr(cfg, attr, value)
        logger.info("settings_store: config.%s = %r (live)", attr, value)
    # Provider selection depends on these — rebuild on next call
    if key in ("vision_enabled", "vision_timeout_secs"):
        import providers.manager as pm
        pm.reset()
