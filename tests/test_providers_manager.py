"""
Tests for providers/manager.py.

Covers:
  - _build_providers(): remote only when enabled and keyed
  - get_providers(): caches result until reset()
  - analyse_image(): remote success, fallback on ProviderUnavailable / any
    exception, disabled providers skipped, InvalidImage propagates
  - auto-disable after PROVIDER_DISABLE_AFTER consecutive failures
"""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio

import config
import database as db
import providers.manager as manager_mod
from errors import InvalidImage, ProviderUnavailable
from providers.base import AnalysisOptions, AnalysisResult, DetectedObject, VisionProvider
from providers.google_vision_provider import GoogleVisionProvider
from providers.manager import analyse_image, get_providers


@pytest_asyncio.fixture(autouse=True)
async def init_db(tmp_data_dir):
    await db.init_db()


def make_provider(result=None, error=None) -> VisionProvider:
    p = MagicMock(spec=VisionProvider)
    p.name = "google_vision"
    if error is not None:
        p.detect = AsyncMock(side_effect=error)
    else:
        p.detect = AsyncMock(return_value=result or AnalysisResult(
            provider="google_vision", objects=[DetectedObject("Phone", 0.9)],
        ))
    return p


def install(provider: VisionProvider) -> None:
    manager_mod._providers = {provider.name: provider}
    manager_mod._built = True


# ── _build_providers ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestBuildProviders:
    async def test_no_key_means_local_only(self, monkeypatch):
        monkeypatch.setattr(config, "VISION_ENABLED", True)
        with patch("key_store.get", AsyncMock(return_value=None)):
            assert await manager_mod._build_providers() == {}

    async def test_key_loads_google_vision(self, monkeypatch):
        monkeypatch.setattr(config, "VISION_ENABLED", True)
        with patch("key_store.get", AsyncMock(return_value="AIza-test")):
            providers = await manager_mod._build_providers()
        assert isinstance(providers["google_vision"], GoogleVisionProvider)

    async def test_key_from_environment(self, monkeypatch):
        monkeypatch.setattr(config, "VISION_ENABLED", True)
        monkeypatch.setenv("VISION_API_KEY", "AIza-env")
        providers = await manager_mod._build_providers()
        assert isinstance(providers["google_vision"], GoogleVisionProvider)

    async def test_disabled_by_config(self, monkeypatch):
        monkeypatch.setattr(config, "VISION_ENABLED", False)
        with patch("key_store.get", AsyncMock(return_value="AIza-test")):
            assert await manager_mod._build_providers() == {}


@pytest.mark.asyncio
class TestGetProviders:
    async def test_caches_on_second_call(self):
        build_mock = AsyncMock(return_value={})
        with patch.object(manager_mod, "_build_providers", build_mock):
            await get_providers()
            await get_providers()
        assert build_mock.call_count == 1

    async def test_rebuilds_after_reset(self):
        build_mock = AsyncMock(return_value={})
        with patch.object(manager_mod, "_build_providers", build_mock):
            await get_providers()
            manager_mod.reset()
            await get_providers()
        assert build_mock.call_count == 2


# ── analyse_image ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestAnalyseImage:
    async def test_remote_result_used(self, image_bytes):
        provider = make_provider()
        install(provider)
        result = await analyse_image(image_bytes, AnalysisOptions(image_ref="image 1"))
        assert result.provider == "google_vision"
        assert result.image_properties["format"] == "PNG"
        provider.detect.assert_awaited_once()

    async def test_no_providers_uses_local(self, image_bytes):
        manager_mod._providers = {}
        manager_mod._built = True
        result = await analyse_image(image_bytes, AnalysisOptions(filename="laptop.png"))
        assert result.provider == "local"
        assert [lb.name for lb in result.labels] == ["Electronics"]

    async def test_provider_unavailable_falls_back(self, image_bytes):
        install(make_provider(error=ProviderUnavailable("google_vision", "HTTP 503")))
        result = await analyse_image(image_bytes)
        assert result.is_fallback
        health = await db.get_provider_health()
        assert health[0]["consecutive_failures"] == 1
        assert health[0]["last_failure_reason"] == "HTTP 503"

    async def test_unexpected_exception_falls_back(self, image_bytes):
        install(make_provider(error=KeyError("responses")))
        result = await analyse_image(image_bytes)
        assert result.is_fallback

    async def test_success_resets_failure_count(self, image_bytes):
        await db.record_provider_failure("google_vision", "HTTP 500")
        install(make_provider())
        await analyse_image(image_bytes)
        health = await db.get_provider_health()
        assert health[0]["consecutive_failures"] == 0

    async def test_disabled_provider_skipped(self, image_bytes):
        provider = make_provider()
        install(provider)
        await db.disable_provider("google_vision", "manual")
        result = await analyse_image(image_bytes)
        assert result.is_fallback
        provider.detect.assert_not_awaited()

    async def test_auto_disable_after_consecutive_failures(self, image_bytes, monkeypatch):
        monkeypatch.setattr(config, "PROVIDER_DISABLE_AFTER", 2)
        provider = make_provider(error=ProviderUnavailable("google_vision", "timeout"))
        install(provider)
        await analyse_image(image_bytes)
        assert not await db.is_provider_disabled("google_vision")
        await analyse_image(image_bytes)
        assert await db.is_provider_disabled("google_vision")
        await analyse_image(image_bytes)
        assert provider.detect.await_count == 2

    async def test_invalid_image_propagates_without_calling_remote(self):
        provider = make_provider()
        install(provider)
        with pytest.raises(InvalidImage):
            await analyse_image(b"not an image")
        provider.detect.assert_not_awaited()


@pytest.mark.asyncio
class TestProviderStatus:
    async def test_reports_fallback_and_health(self):
        install(make_provider())
        status = await manager_mod.provider_status()
        assert status["providers"] == ["google_vision"]
        assert status["fallback"] == "local"
        assert status["health"] == []
