"""
Provider Manager — picks the remote provider when it is usable and falls back
to local analysis otherwise. Keys are read from key_store (DB → .env fallback)
on every cold-start so that changing a key takes effect without a restart.

Selection, per call:
  1. Validate the image bytes (InvalidImage propagates — nothing to fall back to)
  2. Remote provider, when VISION_ENABLED, a key is set and it isn't auto-disabled
  3. Local fallback on any remote failure

Health tracking: every remote failure bumps provider_health.consecutive_failures;
after PROVIDER_DISABLE_AFTER in a row the provider is disabled until an operator
re-enables it (`main.py enable-provider google_vision`).
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional

import config
import database as db
from errors import ProviderUnavailable
from providers.base import AnalysisOptions, AnalysisResult, VisionProvider
from providers.local_provider import LocalProvider, inspect_image

logger = logging.getLogger(__name__)

# Module-level cache — reset() is called by key_store / settings_store on change
_providers: dict[str, VisionProvider] = {}
_built = False
_fallback = LocalProvider()


async def _build_providers() -> dict[str, VisionProvider]:
    """Instantiate every remote provider that is enabled and has a key."""
    import key_store
    providers: dict[str, VisionProvider] = {}

    if not config.VISION_ENABLED:
        logger.info("Remote vision disabled (VISION_ENABLED=false) — local analysis only")
        return providers

    api_key = await key_store.get("vision_api_key")
    if api_key:
        from providers.google_vision_provider import GoogleVisionProvider
        p = GoogleVisionProvider(api_key)
        providers[p.name] = p
        logger.info("Loaded provider: %s", p.name)
    else:
        logger.info("No vision_api_key set — local analysis only")
    return providers


async def get_providers() -> dict[str, VisionProvider]:
    global _providers, _built
    if not _built:
        _providers = await _build_providers()
        _built = True
    return _providers


def reset() -> None:
    """Drop cached providers; the next call rebuilds them from key_store/config."""
    global _providers, _built
    _providers = {}
    _built = False


async def _record_failure(provider: VisionProvider, reason: str) -> None:
    failures = await db.record_provider_failure(provider.name, reason)
    limit = config.PROVIDER_DISABLE_AFTER
    if limit and failures >= limit:
        await db.disable_provider(provider.name, f"{failures} consecutive failures: {reason}")
        logger.error("⛔ [%s] auto-disabled after %d consecutive failures", provider.name, failures)


# ── Core analysis function ────────────────────────────────────────────────────

async def analyse_image(
    image_bytes: bytes,
    options: Optional[AnalysisOptions] = None,
) -> AnalysisResult:
    """
    Return raw detections for one image. Never raises for provider trouble:
    remote failures are logged, counted and absorbed by the local fallback.
    Raises InvalidImage when the bytes are not a decodable image.
    """
    options = options or AnalysisOptions()
    properties = inspect_image(image_bytes, options.image_ref)

    for provider in (await get_providers()).values():
        if await db.is_provider_disabled(provider.name):
            logger.debug("[%s] skipped (disabled)", provider.name)
            continue
        try:
            result = await provider.detect(image_bytes, options)
        except ProviderUnavailable as exc:
            logger.warning("[%s] unavailable for %s: %s — using local fallback",
                           provider.name, options.image_ref or "image", exc.reason)
            await _record_failure(provider, exc.reason)
            continue
        except Exception as exc:
            logger.error("[%s] unexpected error for %s: %s — using local fallback",
                         provider.name, options.image_ref or "image", exc, exc_info=True)
            await _record_failure(provider, str(exc))
            continue
        await db.record_provider_success(provider.name)
        return replace(result, image_properties=properties)

    return await _fallback.detect(image_bytes, options)


async def provider_status() -> dict:
    """Which providers are loaded, plus their health rows (for /health)."""
    providers = await get_providers()
    return {
        "remote_enabled": config.VISION_ENABLED,
        "providers":      list(providers),
        "fallback":       _fallback.name,
        "health":         await db.get_provider_health(),
    }
