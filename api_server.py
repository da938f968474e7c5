"""
api_server.py — HTTP surface of the auto-fill service.

Runs as an aiohttp web server in the same asyncio event loop as the queue worker.
Handlers are thin: they parse the request, call the pipeline or the queue, and
map the two caller-facing errors (InvalidImage, AggregationEmpty) to 400.

Endpoints:
  GET  /health                         → provider status + queue backlog
  POST /autofill                       → multipart images (+ optional article_id) → suggestion
  POST /queue                          → {image_ids, processing_type?, priority?} → queued count
  POST /queue/process                  → run one batch now ({batch_size?})
  GET  /queue/stats                    → 24h queue stats + processing-time estimate
  GET  /articles/{id}/suggestions      → stored suggestions grouped by type
  POST /suggestions/{id}/feedback      → {feedback, modified_value?}
  GET  /price-estimate?category_id=&condition=
"""
from __future__ import annotations

import logging

from aiohttp import web

import config
import database as db
import market
from errors import AggregationEmpty, InvalidImage, SuggestionNotFound
from pipeline import AnalysisPipeline, ImageInput
from processing_queue import ProcessingQueue
from providers import manager

logger = logging.getLogger(__name__)

PIPELINE_KEY = web.AppKey("pipeline", AnalysisPipeline)
QUEUE_KEY = web.AppKey("queue", ProcessingQueue)

# Five photos straight off a phone comfortably fit
MAX_UPLOAD_BYTES = 50 * 1024 * 1024


def _bad_request(message: str) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(text=message, content_type="text/plain")


async def _json_body(request: web.Request) -> dict:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise _bad_request("Body must be JSON")
    if not isinstance(body, dict):
        raise _bad_request("Body must be a JSON object")
    return body


def _int_param(raw, name: str) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise _bad_request(f"{name} must be an integer")


# ── Request handlers ───────────────────────────────────────────────────────────

async def handle_health(request: web.Request) -> web.Response:
    """Health check — returns 200 OK with provider and backlog info."""
    stats = await db.get_queue_stats(db.utcnow())
    return web.json_response({
        "status":    "ok",
        "providers": await manager.provider_status(),
        "backlog":   stats["backlog"],
    })


async def handle_autofill(request: web.Request) -> web.Response:
    """
    Analyse up to AUTOFILL_MAX_IMAGES uploaded photos and return one merged
    suggestion. Every multipart file field counts as an image; an optional
    `article_id` form field persists the suggestions against that listing.
    """
    form = await request.post()
    images = []
    for field in form.values():
        if isinstance(field, web.FileField):
            images.append(ImageInput(data=field.file.read(), filename=field.filename or ""))
    article_id = form.get("article_id")
    article_id = _int_param(article_id, "article_id") if article_id else None

    try:
        suggestion = await request.app[PIPELINE_KEY].submit_images_for_autofill(images, article_id)
    except (AggregationEmpty, InvalidImage, ValueError) as exc:
        raise _bad_request(str(exc))
    return web.json_response(suggestion.to_dict())


async def handle_enqueue(request: web.Request) -> web.Response:
    body = await _json_body(request)
    image_ids = body.get("image_ids")
    if not isinstance(image_ids, list) or not image_ids:
        raise _bad_request("image_ids must be a non-empty list")
    try:
        queued = await request.app[QUEUE_KEY].enqueue_for_analysis(
            [_int_param(i, "image_ids[]") for i in image_ids],
            body.get("processing_type", "analysis"),
            body.get("priority", "normal"),
        )
    except ValueError as exc:
        raise _bad_request(str(exc))
    return web.json_response({"queued": queued, "requested": len(image_ids)})


async def handle_process(request: web.Request) -> web.Response:
    body = await _json_body(request)
    batch_size = body.get("batch_size")
    if batch_size is not None:
        batch_size = _int_param(batch_size, "batch_size")
    result = await request.app[QUEUE_KEY].process_pending_queue(batch_size)
    return web.json_response(result)


async def handle_queue_stats(request: web.Request) -> web.Response:
    queue = request.app[QUEUE_KEY]
    stats = await queue.stats()
    stats["estimate"] = await queue.estimate_processing_time()
    return web.json_response(stats)


async def handle_suggestions(request: web.Request) -> web.Response:
    article_id = _int_param(request.match_info["article_id"], "article_id")
    grouped = await request.app[PIPELINE_KEY].get_suggestions(article_id)
    return web.json_response({"article_id": article_id, "suggestions": grouped})


async def handle_feedback(request: web.Request) -> web.Response:
    suggestion_id = _int_param(request.match_info["suggestion_id"], "suggestion_id")
    body = await _json_body(request)
    feedback = body.get("feedback")
    if feedback not in db.FEEDBACK_VALUES:
        raise _bad_request(f"feedback must be one of {', '.join(db.FEEDBACK_VALUES)}")
    try:
        result = await request.app[PIPELINE_KEY].record_suggestion_feedback(
            suggestion_id, feedback, body.get("modified_value")
        )
    except SuggestionNotFound as exc:
        raise web.HTTPNotFound(text=str(exc), content_type="text/plain")
    return web.json_response(result)


async def handle_price_estimate(request: web.Request) -> web.Response:
    category_id = _int_param(request.query.get("category_id"), "category_id")
    condition = request.query.get("condition", market.DEFAULT_CONDITION)
    try:
        estimate = await market.estimate_price(category_id, condition)
    except ValueError as exc:
        raise _bad_request(str(exc))
    if estimate is None:
        raise web.HTTPNotFound(text="Category not found.", content_type="text/plain")
    return web.json_response(estimate)


# ── App factory ────────────────────────────────────────────────────────────────

def build_web_app(pipeline: AnalysisPipeline, queue: ProcessingQueue) -> web.Application:
    app = web.Application(client_max_size=MAX_UPLOAD_BYTES)
    app[PIPELINE_KEY] = pipeline
    app[QUEUE_KEY] = queue
    app.router.add_get("/health",                                handle_health)
    app.router.add_post("/autofill",                             handle_autofill)
    app.router.add_post("/queue",                                handle_enqueue)
    app.router.add_post("/queue/process",                        handle_process)
    app.router.add_get("/queue/stats",                           handle_queue_stats)
    app.router.add_get("/articles/{article_id}/suggestions",     handle_suggestions)
    app.router.add_post("/suggestions/{suggestion_id}/feedback", handle_feedback)
    app.router.add_get("/price-estimate",                        handle_price_estimate)
    return app


async def start_api_server(pipeline: AnalysisPipeline, queue: ProcessingQueue) -> web.AppRunner:
    """Start the web server. Returns runner so caller can shut it down cleanly."""
    app    = build_web_app(pipeline, queue)
    runner = web.AppRunner(app, access_log=logger)
    await runner.setup()
    site = web.TCPSite(runner, config.API_HOST, config.API_PORT)
    await site.start()
    logger.info("🌐 Auto-fill API listening on %s:%d", config.API_HOST, config.API_PORT)
    return runner
