"""
Central configuration — reads from .env file.

Settings priority order:
  1. Database (set via settings_store / the `settings` CLI) — live, no restart needed
  2. Environment variable / .env file                      — fallback / bootstrap

API keys follow the same priority via key_store.py.
settings_store.py writes directly to the module attributes below when a
setting is changed, so all code reading config.X always gets the latest
value without restarting the worker.
"""
import os
from dotenv import load_dotenv

load_dotenv()

# ── Storage ───────────────────────────────────────────────────────────────────
# DATA_DIR holds the SQLite file and the log file; UPLOAD_DIR is where the
# listing service drops uploaded photos (image records store paths relative to it).
DATA_DIR: str   = os.getenv("DATA_DIR", "data")
UPLOAD_DIR: str = os.getenv("UPLOAD_DIR", os.path.join(DATA_DIR, "uploads"))

# ── Remote vision provider (Google Cloud Vision REST) ─────────────────────────
# The API key is read through key_store (DB first, then VISION_API_KEY from the
# environment); leave it unset to run on the local fallback only.
VISION_ENDPOINT: str       = os.getenv(
    "VISION_ENDPOINT", "https://vision.googleapis.com/v1/images:annotate"
)
# NOTE: overridden at runtime by settings_store
VISION_ENABLED: bool       = os.getenv("VISION_ENABLED", "true").lower() == "true"
VISION_TIMEOUT_SECS: float = float(os.getenv("VISION_TIMEOUT_SECS", "30"))

# Consecutive remote failures before the provider is auto-disabled (0 = never)
PROVIDER_DISABLE_AFTER: int = int(os.getenv("PROVIDER_DISABLE_AFTER", "5"))

# Upper bound for any confidence produced from local-fallback detections
FALLBACK_MAX_CONFIDENCE: float = float(os.getenv("FALLBACK_MAX_CONFIDENCE", "0.6"))

# ── Processing queue ──────────────────────────────────────────────────────────
# NOTE: all overridden at runtime by settings_store
QUEUE_BATCH_SIZE: int                = int(os.getenv("QUEUE_BATCH_SIZE", "10"))
QUEUE_MAX_ATTEMPTS: int              = int(os.getenv("QUEUE_MAX_ATTEMPTS", "3"))
QUEUE_POLL_INTERVAL_SECS: int        = int(os.getenv("QUEUE_POLL_INTERVAL_SECS", "30"))
QUEUE_RETENTION_DAYS: int            = int(os.getenv("QUEUE_RETENTION_DAYS", "7"))
QUEUE_RETRY_WINDOW_HOURS: int        = int(os.getenv("QUEUE_RETRY_WINDOW_HOURS", "24"))
QUEUE_STALE_PROCESSING_MINUTES: int  = int(os.getenv("QUEUE_STALE_PROCESSING_MINUTES", "5"))
# Run the stale/retry/cleanup sweeps every N scheduler ticks
QUEUE_MAINTENANCE_EVERY: int         = int(os.getenv("QUEUE_MAINTENANCE_EVERY", "10"))
# Used by the processing-time estimate when there is no history yet
QUEUE_DEFAULT_SECS_PER_ITEM: float   = float(os.getenv("QUEUE_DEFAULT_SECS_PER_ITEM", "30"))

# ── Cache ─────────────────────────────────────────────────────────────────────
ANALYSIS_CACHE_TTL_SECS: int = int(os.getenv("ANALYSIS_CACHE_TTL_SECS", str(24 * 3600)))
DERIVED_CACHE_TTL_SECS: int  = int(os.getenv("DERIVED_CACHE_TTL_SECS", "3600"))

# ── Interactive auto-fill ─────────────────────────────────────────────────────
AUTOFILL_MAX_IMAGES: int = int(os.getenv("AUTOFILL_MAX_IMAGES", "5"))

# ── HTTP API ──────────────────────────────────────────────────────────────────
API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
API_PORT: int = int(os.getenv("API_PORT", "8080"))

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()


async def apply_db_settings() -> None:
    """
    Load all DB-persisted settings and apply them to this module's attributes.
    Called once at startup so DB values override .env from the start.
    """
    import database as _db
    import settings_store
    for key, meta in settings_store.SETTINGS_META.items():
        db_raw = await _db.get_setting(key)
        # Only apply if there's a DB override (don't stomp .env unnecessarily)
        if db_raw is not None:
            settings_store._apply_to_config(key, db_raw, meta["type"])
