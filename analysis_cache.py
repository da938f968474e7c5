"""
analysis_cache.py — content-hash keyed cache of analysis results.

Keys are SHA-256 digests of the image bytes, so two uploads of the same photo
share one analysis regardless of filename. Full analyses live for 24h;
derived lookups (similar images, category candidates) for 1h. Expired rows
read as misses and are deleted by the maintenance sweep.
"""
from __future__ import annotations

import hashlib
import json
import logging
from datetime import timedelta
from typing import Any, Optional

import config
import database as db
from providers.base import AnalysisResult

logger = logging.getLogger(__name__)

KIND_ANALYSIS = "analysis"
KIND_SIMILARITY = "similarity"
KIND_CATEGORIZATION = "categorization"


def content_hash(image_bytes: bytes) -> str:
    return hashlib.sha256(image_bytes).hexdigest()


def derived_key(kind: str, *parts: Any) -> str:
    """Stable key for a derived lookup, e.g. derived_key("similarity", image_id)."""
    raw = json.dumps(parts, sort_keys=True, default=str)
    return f"{kind}:{hashlib.sha256(raw.encode()).hexdigest()}"


class AnalysisCache:

    async def get(self, digest: str) -> Optional[AnalysisResult]:
        payload = await db.get_cache_entry(f"{KIND_ANALYSIS}:{digest}")
        if payload is None:
            return None
        logger.debug("Cache hit for %s…", digest[:12])
        return AnalysisResult.from_dict(json.loads(payload))

    async def put(self, digest: str, result: AnalysisResult, ttl: Optional[int] = None) -> None:
        ttl = config.ANALYSIS_CACHE_TTL_SECS if ttl is None else ttl
        await db.put_cache_entry(
            f"{KIND_ANALYSIS}:{digest}",
            KIND_ANALYSIS,
            json.dumps(result.to_dict()),
            db.utcnow() + timedelta(seconds=ttl),
        )

    async def get_derived(self, key: str) -> Optional[Any]:
        payload = await db.get_cache_entry(key)
        return json.loads(payload) if payload is not None else None

    async def put_derived(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl = config.DERIVED_CACHE_TTL_SECS if ttl is None else ttl
        kind = key.split(":", 1)[0]
        await db.put_cache_entry(key, kind, json.dumps(value), db.utcnow() + timedelta(seconds=ttl))

    async def purge_expired(self) -> int:
        removed = await db.purge_expired_cache()
        if removed:
            logger.info("🧹 Purged %d expired cache entries", removed)
        return removed

    async def stats(self) -> dict:
        return await db.get_cache_stats()
