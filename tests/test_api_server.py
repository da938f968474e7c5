"""
Tests for api_server.py.

Runs the real aiohttp application against a temporary database via
aiohttp's own TestServer/TestClient; providers fall back to local analysis.
"""
from __future__ import annotations

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import test_utils

import database as db
from api_server import build_web_app
from conftest import make_image_bytes
from pipeline import AnalysisPipeline
from processing_queue import ProcessingQueue


@pytest_asyncio.fixture
async def client(tmp_data_dir):
    await db.init_db()
    pipeline = await AnalysisPipeline.create()
    app = build_web_app(pipeline, ProcessingQueue(pipeline))
    async with test_utils.TestClient(test_utils.TestServer(app)) as c:
        yield c


def _form(*files: tuple[str, bytes], article_id: str | None = None) -> aiohttp.FormData:
    form = aiohttp.FormData()
    for filename, data in files:
        form.add_field("images", data, filename=filename, content_type="image/png")
    if article_id is not None:
        form.add_field("article_id", article_id)
    return form


@pytest.mark.asyncio
class TestHealth:
    async def test_ok(self, client):
        resp = await client.get("/health")
        assert resp.status == 200
        body = await resp.json()
        assert body["status"] == "ok"
        assert body["backlog"] == 0
        assert body["providers"]["providers"] == []
        assert body["providers"]["fallback"] == "local"


@pytest.mark.asyncio
class TestAutofill:
    async def test_merges_uploads(self, client):
        form = _form(("sofa.jpg", make_image_bytes()),
                     ("chair.jpg", make_image_bytes((0, 120, 0))),
                     ("broken.jpg", b"nope"))
        resp = await client.post("/autofill", data=form)
        assert resp.status == 200
        body = await resp.json()
        assert body["title"] == "Furniture"
        assert body["image_count"] == 2
        assert [s["filename"] for s in body["skipped"]] == ["broken.jpg"]
        assert body["suggestion_ids"] == {}

    async def test_persists_with_article_id(self, client):
        resp = await client.post("/autofill", data=_form(("sofa.jpg", make_image_bytes()),
                                                         article_id="9"))
        assert resp.status == 200
        assert "title" in (await resp.json())["suggestion_ids"]

        resp = await client.get("/articles/9/suggestions")
        body = await resp.json()
        assert body["article_id"] == 9
        assert {s["value"] for s in body["suggestions"]["title"]} == {"Furniture"}

    async def test_no_images(self, client):
        resp = await client.post("/autofill", data=_form(article_id="1"))
        assert resp.status == 400
        assert "No images" in await resp.text()

    async def test_only_broken_images(self, client):
        resp = await client.post("/autofill", data=_form(("a.jpg", b"x"), ("b.jpg", b"y")))
        assert resp.status == 400

    async def test_too_many_images(self, client):
        files = [(f"{i}.png", make_image_bytes((i, i, i))) for i in range(6)]
        resp = await client.post("/autofill", data=_form(*files))
        assert resp.status == 400
        assert "Maximum" in await resp.text()

    async def test_bad_article_id(self, client):
        resp = await client.post("/autofill", data=_form(("sofa.jpg", make_image_bytes()),
                                                         article_id="abc"))
        assert resp.status == 400


@pytest.mark.asyncio
class TestQueue:
    async def test_enqueue_process_stats(self, client):
        resp = await client.post("/queue", json={"image_ids": [1, 2], "priority": "high"})
        assert resp.status == 200
        assert await resp.json() == {"queued": 2, "requested": 2}

        resp = await client.post("/queue/process", json={"batch_size": 1})
        body = await resp.json()
        assert body["errors"] == 1          # no such image record

        resp = await client.get("/queue/stats")
        body = await resp.json()
        assert body["pending"] == 1
        assert body["estimate"]["pending_items"] == 1
        assert "cache" in body

    async def test_process_empty(self, client):
        resp = await client.post("/queue/process")
        assert (await resp.json())["message"] == "No pending items"

    @pytest.mark.parametrize("payload", [
        {"image_ids": []},
        {"image_ids": "1"},
        {"image_ids": ["x"]},
        {"image_ids": [1], "processing_type": "resize"},
        {"image_ids": [1], "priority": "urgent"},
    ])
    async def test_enqueue_validation(self, client, payload):
        resp = await client.post("/queue", json=payload)
        assert resp.status == 400

    async def test_non_json_body(self, client):
        resp = await client.post("/queue", data="image_ids=1",
                                 headers={"Content-Type": "application/json"})
        assert resp.status == 400


@pytest.mark.asyncio
class TestFeedback:
    async def test_accept(self, client):
        sid = await db.add_suggestion("title", "Lamp", 0.6, article_id=2)
        resp = await client.post(f"/suggestions/{sid}/feedback", json={"feedback": "accepted"})
        assert resp.status == 200
        body = await resp.json()
        assert body["applied"] is True
        assert body["feedback_weight"] == 1.05

        resp = await client.post(f"/suggestions/{sid}/feedback", json={"feedback": "accepted"})
        assert (await resp.json())["applied"] is False

    async def test_modified_value_stored(self, client):
        sid = await db.add_suggestion("price", "40", 0.4)
        resp = await client.post(f"/suggestions/{sid}/feedback",
                                 json={"feedback": "modified", "modified_value": "35"})
        assert resp.status == 200
        assert (await db.get_suggestion(sid)).modified_value == "35"

    async def test_bad_value(self, client):
        sid = await db.add_suggestion("title", "Lamp", 0.6)
        resp = await client.post(f"/suggestions/{sid}/feedback", json={"feedback": "love it"})
        assert resp.status == 400

    async def test_unknown_suggestion(self, client):
        resp = await client.post("/suggestions/999/feedback", json={"feedback": "rejected"})
        assert resp.status == 404


@pytest.mark.asyncio
class TestPriceEstimate:
    async def test_estimate(self, client):
        await db.add_price_record(1, 100.0, "good")
        resp = await client.get("/price-estimate", params={"category_id": "1", "condition": "good"})
        assert resp.status == 200
        body = await resp.json()
        assert body["estimated_price"] == 70.0
        assert body["price_range"] == {"min": 56.0, "max": 84.0}

    async def test_unknown_category(self, client):
        resp = await client.get("/price-estimate", params={"category_id": "999"})
        assert resp.status == 404

    @pytest.mark.parametrize("params", [
        {"category_id": "abc"},
        {},
        {"category_id": "1", "condition": "shiny"},
    ])
    async def test_bad_params(self, client, params):
        resp = await client.get("/price-estimate", params=params)
        assert resp.status == 400


@pytest.mark.asyncio
async def test_suggestions_bad_article_id(client):
    resp = await client.get("/articles/abc/suggestions")
    assert resp.status == 400
