"""
Shared pytest fixtures.

Every test that touches the database or config gets a clean
temporary DATA_DIR via the `tmp_data_dir` fixture so tests
are fully isolated from each other and from the real autofill.db.
No test talks to the network: the remote provider is either unconfigured
or mocked around aiohttp.ClientSession.
"""
from __future__ import annotations

import io
import os
import sys
from pathlib import Path

import pytest
import pytest_asyncio

# ── Make the project root importable without installing the package ────────────
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))


@pytest.fixture(autouse=True)
def tmp_data_dir(tmp_path, monkeypatch):
    """
    Redirect DATA_DIR to a fresh tmp directory for every test.
    This gives each test a clean SQLite file and prevents cross-test pollution.
    """
    data = tmp_path / "data"
    data.mkdir()
    uploads = data / "uploads"
    uploads.mkdir()
    monkeypatch.setenv("DATA_DIR", str(data))
    monkeypatch.delenv("VISION_API_KEY", raising=False)

    # Patch the module-level DB_PATH that was already computed at import time
    import database
    monkeypatch.setattr(database, "DB_PATH", str(data / "autofill.db"))
    monkeypatch.setattr(database, "_DATA_DIR", data)

    # Also reset the internal lock so tests don't share state
    import asyncio
    monkeypatch.setattr(database, "_lock", asyncio.Lock())

    import config
    monkeypatch.setattr(config, "DATA_DIR", str(data))
    monkeypatch.setattr(config, "UPLOAD_DIR", str(uploads))

    yield data


@pytest.fixture(autouse=True)
def reset_providers():
    """Each test starts with a clean provider cache."""
    import providers.manager as manager_mod
    manager_mod.reset()
    yield
    manager_mod.reset()


def make_image_bytes(color=(200, 30, 30), size=(64, 48), fmt="PNG") -> bytes:
    from PIL import Image
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def image_bytes() -> bytes:
    """A small solid-red PNG."""
    return make_image_bytes()
