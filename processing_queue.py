"""
processing_queue.py — durable background work over uploaded images.

Every item is one (image, processing type) pair. A worker claims a batch of
pending items oldest-first, runs the handler for each and records the
outcome on the item. Claiming is an atomic conditional update, so several
workers can share the table without ever running an item twice at once or
pushing its attempt count past max_attempts.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional

import config
import database as db
from aggregator import aggregate
from analysis_cache import KIND_CATEGORIZATION, KIND_SIMILARITY, content_hash, derived_key
from confidence import bound_score
from errors import AutofillError, InvalidImage, QueueItemExhausted
from pipeline import AnalysisPipeline
from providers.base import AnalysisOptions, AnalysisResult
from suggestion_engine import category_scores, color_name

logger = logging.getLogger(__name__)

SIMILAR_LIMIT = 10
CATEGORY_CANDIDATES = 3
STATS_WINDOW = timedelta(hours=24)


def _terms(result: AnalysisResult) -> set[str]:
    """Object, label and dominant-colour names of one analysis, lowercased."""
    terms = {o.name.lower() for o in result.objects}
    terms |= {lb.name.lower() for lb in result.labels}
    for color in result.colors:
        name = color_name(color.rgb)
        if name:
            terms.add(name)
    return terms


def similarity(a: AnalysisResult, b: AnalysisResult) -> float:
    """Jaccard overlap of the two images' detected terms."""
    ta, tb = _terms(a), _terms(b)
    if not ta or not tb:
        return 0.0
    return round(len(ta & tb) / len(ta | tb), 4)


class ProcessingQueue:

    def __init__(self, pipeline: AnalysisPipeline):
        self.pipeline = pipeline
        self._handlers = {
            "analysis":        self._handle_analysis,
            "similarity":      self._handle_similarity,
            "categorization":  self._handle_categorization,
            "text_extraction": self._handle_text_extraction,
        }

    # ── Enqueue ───────────────────────────────────────────────────────────────

    async def enqueue_for_analysis(
        self,
        image_ids: list[int],
        processing_type: str = "analysis",
        priority: str = "normal",
    ) -> int:
        if processing_type not in db.PROCESSING_TYPES:
            raise ValueError(f"Unknown processing type: {processing_type!r}")
        if priority not in db.PRIORITIES:
            raise ValueError(f"Unknown priority: {priority!r}")
        if not image_ids:
            return 0
        added = await db.enqueue_items(
            image_ids, processing_type, priority, max_attempts=config.QUEUE_MAX_ATTEMPTS
        )
        logger.info("📥 Queued %d/%d images for %s (%s priority)",
                    added, len(image_ids), processing_type, priority)
        return added

    # ── Batch processing ──────────────────────────────────────────────────────

    async def process_pending_queue(self, batch_size: Optional[int] = None) -> dict:
        """
        Claim and run up to `batch_size` pending items.
        Returns {processed, errors, details[]}; one failing item never stops the batch.
        """
        batch_size = batch_size or config.QUEUE_BATCH_SIZE
        items = await db.get_pending_items(batch_size)
        if not items:
            return {"processed": 0, "errors": 0, "details": [], "message": "No pending items"}
        await self.pipeline.refresh_context()

        processed = errors = 0
        details = []
        for item in items:
            if not await db.claim_item(item.id):
                logger.debug("Queue item %d claimed elsewhere — skipping", item.id)
                continue
            error = await self._run(item)
            if error is None:
                processed += 1
            else:
                errors += 1
            details.append({
                "queue_id":  item.id,
                "image_id":  item.image_id,
                "type":      item.processing_type,
                "success":   error is None,
                "error":     error,
            })

        logger.info("⚙️ Batch done: %d processed, %d errors", processed, errors)
        return {"processed": processed, "errors": errors, "details": details}

    async def _run(self, item: db.QueueItem) -> Optional[str]:
        """Run one claimed item to a terminal state. Returns the error message, if any."""
        image = await db.get_image(item.image_id)
        error = None
        exhaust = False
        try:
            if image is None:
                raise InvalidImage("image record not found", f"image {item.image_id}")
            await self._handlers[item.processing_type](image)
        except InvalidImage as exc:
            # Retrying cannot fix undecodable bytes
            error, exhaust = str(exc), True
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            logger.exception("Queue item %d (%s, image %d) failed",
                             item.id, item.processing_type, item.image_id)

        if error is None:
            await db.complete_item(item.id)
            logger.info("✅ Queue item %d: %s of image %d done",
                        item.id, item.processing_type, item.image_id)
        else:
            failed = await db.fail_item(item.id, error, exhaust=exhaust)
            if failed is not None and failed.exhausted:
                logger.warning("%s", QueueItemExhausted(item.id, failed.attempts, error))
            else:
                logger.warning("Queue item %d failed (attempt %d/%d): %s",
                               item.id, item.attempts + 1, item.max_attempts, error)

        if item.processing_type == "analysis" and image is not None:
            await self._maybe_aggregate(image.article_id)
        return error

    # ── Handlers ──────────────────────────────────────────────────────────────

    async def _load_bytes(self, image: db.ArticleImage) -> bytes:
        path = Path(image.file_path)
        if not path.is_absolute():
            path = Path(config.UPLOAD_DIR) / path
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise InvalidImage("file not found", str(path))

    async def _analysis_of(self, image: db.ArticleImage) -> AnalysisResult:
        if not image.analysis:
            raise AutofillError(f"Image {image.id} must be analyzed first")
        return AnalysisResult.from_dict(image.analysis)

    async def _handle_analysis(self, image: db.ArticleImage) -> None:
        data = await self._load_bytes(image)
        result = await self.pipeline.analyze(
            data, AnalysisOptions(filename=image.filename, image_ref=f"image {image.id}")
        )
        await db.set_image_hash(image.id, content_hash(data))
        await db.save_image_analysis(image.id, result.to_dict())
        await self.pipeline.persist_image_suggestions(result, image.article_id, image.id)

    async def _handle_similarity(self, image: db.ArticleImage) -> None:
        result = await self._analysis_of(image)
        key = derived_key(KIND_SIMILARITY, image.id, image.analyzed_at)
        similar = await self.pipeline.cache.get_derived(key)
        if similar is None:
            scored = []
            for other in await db.get_analyzed_images(image.id):
                score = similarity(result, AnalysisResult.from_dict(other.analysis))
                if score > 0:
                    scored.append({"image_id": other.id, "article_id": other.article_id,
                                   "similarity": score})
            scored.sort(key=lambda s: s["similarity"], reverse=True)
            similar = scored[:SIMILAR_LIMIT]
            await self.pipeline.cache.put_derived(key, similar)
        await db.save_image_similar(image.id, similar)
        logger.info("Image %d: %d similar images", image.id, len(similar))

    async def _handle_categorization(self, image: db.ArticleImage) -> None:
        result = await self._analysis_of(image)
        key = derived_key(
            KIND_CATEGORIZATION,
            [(o.name.lower(), o.confidence) for o in result.objects],
            [(lb.name.lower(), lb.confidence) for lb in result.labels],
        )
        candidates = await self.pipeline.cache.get_derived(key)
        if candidates is None:
            candidates = [
                {"category_id": category.id, "name": category.name, "score": round(score, 4),
                 "confidence": bound_score(min(score / 3, 1.0), result.is_fallback)}
                for category, score in category_scores(result, self.pipeline.context.categories)
            ][:CATEGORY_CANDIDATES]
            await self.pipeline.cache.put_derived(key, candidates)

        for c in candidates:
            await db.add_suggestion(
                "category", str(c["category_id"]), c["confidence"],
                article_id=image.article_id, image_id=image.id, category_id=c["category_id"],
            )
        logger.info("Image %d: %d category candidates", image.id, len(candidates))

    async def _handle_text_extraction(self, image: db.ArticleImage) -> None:
        if image.analysis:
            result = AnalysisResult.from_dict(image.analysis)
        else:
            data = await self._load_bytes(image)
            result = await self.pipeline.analyze(
                data, AnalysisOptions(filename=image.filename, image_ref=f"image {image.id}")
            )
        fragments = [{"text": t.text, "confidence": t.confidence} for t in result.text]
        await db.save_image_text(image.id, fragments)
        logger.info("Image %d: %d text fragments", image.id, len(fragments))

    # ── Listing completion ────────────────────────────────────────────────────

    async def _maybe_aggregate(self, article_id: Optional[int]) -> bool:
        """Once every analysis item of a listing is terminal, merge its images once."""
        if article_id is None:
            return False
        total, terminal = await db.get_listing_progress(article_id)
        if total == 0 or terminal < total:
            return False

        images = await db.get_images_for_article(article_id)
        results = [AnalysisResult.from_dict(i.analysis) for i in images if i.analysis]
        if not await db.mark_listing_aggregated(article_id, len(results)):
            return False
        if not results:
            logger.warning("Listing %d: no image could be analysed — nothing to aggregate",
                           article_id)
            return True

        suggestion = aggregate(results)
        ids = await self.pipeline.persist_listing_suggestions(suggestion, article_id)
        logger.info("🧩 Listing %d aggregated from %d images → %r (%d suggestions)",
                    article_id, len(results), suggestion.title, len(ids))
        return True

    async def aggregate_completed_listings(self) -> int:
        """Merge listings completed by the sweeps rather than by a worker."""
        count = 0
        for article_id in await db.get_unaggregated_listings():
            if await self._maybe_aggregate(article_id):
                count += 1
        if count:
            logger.info("🧩 Aggregated %d listings left complete by the sweeps", count)
        return count

    # ── Sweeps ────────────────────────────────────────────────────────────────

    async def reclaim_stale(self) -> int:
        cutoff = db.utcnow() - timedelta(minutes=config.QUEUE_STALE_PROCESSING_MINUTES)
        count = await db.fail_stale_processing(cutoff)
        if count:
            logger.warning("⏱ Marked %d stale processing items as failed", count)
        return count

    async def retry_failed(self) -> int:
        cutoff = db.utcnow() - timedelta(hours=config.QUEUE_RETRY_WINDOW_HOURS)
        count = await db.reset_failed_items(cutoff)
        if count:
            logger.info("🔁 Reset %d failed items for retry", count)
        return count

    async def cleanup(self, days: Optional[int] = None) -> int:
        days = config.QUEUE_RETENTION_DAYS if days is None else days
        count = await db.purge_terminal_items(db.utcnow() - timedelta(days=days))
        if count:
            logger.info("🧹 Removed %d finished queue items older than %d days", count, days)
        return count

    async def run_maintenance(self) -> dict:
        return {
            "stale":         await self.reclaim_stale(),
            "retried":       await self.retry_failed(),
            "aggregated":    await self.aggregate_completed_listings(),
            "cleaned":       await self.cleanup(),
            "cache_expired": await self.pipeline.cache.purge_expired(),
        }

    # ── Statistics ────────────────────────────────────────────────────────────

    async def stats(self) -> dict:
        stats = await db.get_queue_stats(db.utcnow() - STATS_WINDOW)
        stats["cache"] = await self.pipeline.cache.stats()
        return stats

    async def estimate_processing_time(self) -> dict:
        """Rough time to drain the current backlog at the recent average pace."""
        stats = await db.get_queue_stats(db.utcnow() - STATS_WINDOW)
        per_item = stats["avg_processing_secs"] or config.QUEUE_DEFAULT_SECS_PER_ITEM
        estimated = round(stats["backlog"] * per_item, 1)
        return {
            "pending_items":      stats["backlog"],
            "secs_per_item":      per_item,
            "estimated_secs":     estimated,
            "estimated_completion": (db.utcnow() + timedelta(seconds=estimated)).isoformat(),
        }
