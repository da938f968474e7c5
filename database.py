"""
database.py — async SQLite persistence via aiosqlite.

Tables:
  queue_items           — durable background work list (one row per image × processing type)
  suggestions           — proposed listing fields awaiting user feedback
  confidence_weights    — learned per-suggestion-type feedback multipliers
  analysis_cache        — content-hash keyed analysis results and derived lookups
  categories            — listing categories with their keyword lists
  price_history         — past sale prices per category and condition
  article_images        — uploaded listing photos plus their saved analysis
  listing_aggregations  — listings whose background aggregation already ran
  api_keys / service_settings / provider_health — operator-managed state

The DB file is created automatically on first run.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import aiosqlite

logger = logging.getLogger(__name__)

# Store the DB in a dedicated data/ directory so Docker volume mounts work
# correctly (mount ./data:/app/data) and the file survives container restarts.
_DATA_DIR = Path(os.getenv("DATA_DIR", "data"))
_DATA_DIR.mkdir(parents=True, exist_ok=True)

DB_PATH = str(_DATA_DIR / "autofill.db")
_lock = asyncio.Lock()          # serialise schema migrations

QUEUE_STATUSES = ("pending", "processing", "completed", "failed")
PROCESSING_TYPES = ("analysis", "similarity", "categorization", "text_extraction")
PRIORITIES = ("high", "normal", "low")
SUGGESTION_TYPES = ("title", "description", "category", "price", "condition")
FEEDBACK_VALUES = ("accepted", "rejected", "modified")


def utcnow() -> datetime:
    """Current UTC time. Patched in tests to move the clock."""
    return datetime.now(timezone.utc)


# ── Data models ───────────────────────────────────────────────────────────────

@dataclass
class QueueItem:
    id: int
    image_id: int
    processing_type: str        # analysis | similarity | categorization | text_extraction
    priority: str               # high | normal | low
    status: str                 # pending | processing | completed | failed
    attempts: int
    max_attempts: int
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def exhausted(self) -> bool:
        return self.status == "failed" and self.attempts >= self.max_attempts


@dataclass
class Suggestion:
    id: int
    article_id: Optional[int]
    image_id: Optional[int]     # None for listing-level (aggregated) suggestions
    category_id: Optional[int]  # listing category when the suggestion was made
    suggestion_type: str
    suggested_value: str
    confidence_score: float
    user_feedback: Optional[str]
    modified_value: Optional[str]
    is_accepted: bool
    feedback_processed: bool    # learning nudge already applied
    created_at: datetime
    updated_at: datetime


@dataclass
class ArticleImage:
    id: int
    article_id: Optional[int]
    file_path: str              # relative to UPLOAD_DIR, or absolute
    filename: str               # original upload name (used by the fallback labels)
    content_hash: Optional[str]
    analysis_json: Optional[str]
    text_json: Optional[str]
    analyzed_at: Optional[datetime]
    created_at: datetime
    similar_json: Optional[str] = None

    @property
    def analysis(self) -> Optional[dict]:
        return json.loads(self.analysis_json) if self.analysis_json else None


@dataclass
class Category:
    id: int
    name: str
    keywords: list[str]
    is_active: bool = True
    sort_order: int = 0


# ── Schema ────────────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS queue_items (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    image_id        INTEGER NOT NULL,
    processing_type TEXT    NOT NULL DEFAULT 'analysis',
    priority        TEXT    NOT NULL DEFAULT 'normal',
    status          TEXT    NOT NULL DEFAULT 'pending',
    attempts        INTEGER NOT NULL DEFAULT 0,
    max_attempts    INTEGER NOT NULL DEFAULT 3,
    created_at      TEXT    NOT NULL,
    started_at      TEXT,
    completed_at    TEXT,
    error_message   TEXT
);
-- "oldest pending with attempts < max" and "terminal items older than N days"
CREATE INDEX IF NOT EXISTS idx_queue_pending  ON queue_items (status, attempts, created_at);
CREATE INDEX IF NOT EXISTS idx_queue_terminal ON queue_items (status, completed_at);
CREATE INDEX IF NOT EXISTS idx_queue_image    ON queue_items (image_id, processing_type);

CREATE TABLE IF NOT EXISTS suggestions (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    article_id         INTEGER,
    image_id           INTEGER,
    category_id        INTEGER,
    suggestion_type    TEXT    NOT NULL,
    suggested_value    TEXT    NOT NULL,
    confidence_score   REAL    NOT NULL DEFAULT 0,
    user_feedback      TEXT,
    modified_value     TEXT,
    is_accepted        INTEGER NOT NULL DEFAULT 0,
    feedback_processed INTEGER NOT NULL DEFAULT 0,
    created_at         TEXT    NOT NULL,
    updated_at         TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_suggestions_article ON suggestions (article_id);
CREATE INDEX IF NOT EXISTS idx_suggestions_type    ON suggestions (suggestion_type, created_at);

CREATE TABLE IF NOT EXISTS confidence_weights (
    suggestion_type TEXT PRIMARY KEY,
    weight          REAL NOT NULL,
    updated_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS analysis_cache (
    cache_key  TEXT PRIMARY KEY,
    kind       TEXT NOT NULL DEFAULT 'analysis',
    payload    TEXT NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_cache_expires ON analysis_cache (expires_at);

CREATE TABLE IF NOT EXISTS categories (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    name       TEXT    NOT NULL UNIQUE,
    keywords   TEXT    NOT NULL DEFAULT '[]',
    is_active  INTEGER NOT NULL DEFAULT 1,
    sort_order INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS price_history (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    article_id     INTEGER,
    category_id    INTEGER NOT NULL,
    condition_type TEXT    NOT NULL DEFAULT 'good',
    original_price REAL    NOT NULL,
    created_at     TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_price_category ON price_history (category_id, condition_type, created_at);

CREATE TABLE IF NOT EXISTS article_images (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    article_id    INTEGER,
    file_path     TEXT    NOT NULL,
    filename      TEXT    NOT NULL DEFAULT '',
    content_hash  TEXT,
    analysis_json TEXT,
    text_json     TEXT,
    analyzed_at   TEXT,
    created_at    TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_images_article ON article_images (article_id);

CREATE TABLE IF NOT EXISTS listing_aggregations (
    article_id       INTEGER PRIMARY KEY,
    aggregated_at    TEXT    NOT NULL,
    image_count      INTEGER NOT NULL DEFAULT 0
);

-- API keys set by operators (override .env values)
CREATE TABLE IF NOT EXISTS api_keys (
    key_name   TEXT PRIMARY KEY,
    key_value  TEXT NOT NULL,
    updated_by TEXT NOT NULL DEFAULT '',
    updated_at TEXT NOT NULL
);

-- Service settings editable at runtime (override .env values)
CREATE TABLE IF NOT EXISTS service_settings (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_by TEXT NOT NULL DEFAULT '',
    updated_at TEXT NOT NULL
);

-- Provider health: track consecutive failures and auto-disable
CREATE TABLE IF NOT EXISTS provider_health (
    provider_name        TEXT PRIMARY KEY,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    total_failures       INTEGER NOT NULL DEFAULT 0,
    total_calls          INTEGER NOT NULL DEFAULT 0,
    is_disabled          INTEGER NOT NULL DEFAULT 0,
    disabled_at          TEXT,
    last_failure_ts      TEXT,
    last_failure_reason  TEXT    NOT NULL DEFAULT ''
);
"""

_MIGRATIONS: list[str] = [
    # Similarity results are kept next to the analysis they were derived from
    "ALTER TABLE article_images ADD COLUMN similar_json TEXT",
]

# Default categories and the keywords used to match detections against them
DEFAULT_CATEGORIES: list[tuple[str, list[str]]] = [
    ("Electronics", ["smartphone", "laptop", "computer", "tablet", "headphones",
                     "camera", "gaming", "console", "tv", "monitor"]),
    ("Fashion & Beauty", ["clothing", "shoes", "bag", "watch", "jewelry",
                          "cosmetics", "dress", "shirt", "pants", "jacket"]),
    ("Home & Garden", ["furniture", "decor", "kitchen", "garden", "tools",
                       "lighting", "bed", "sofa", "table", "chair"]),
    ("Sports & Leisure", ["bicycle", "fitness", "sports", "outdoor", "camping",
                          "swimming", "running", "gym", "ball", "racket"]),
    ("Vehicles", ["car", "motorcycle", "truck", "bicycle", "scooter",
                  "boat", "caravan", "trailer", "parts", "accessories"]),
    ("Baby & Kids", ["stroller", "crib", "toys", "clothes", "books",
                     "games", "baby", "child", "educational", "safety"]),
    ("Books & Media", ["book", "dvd", "cd", "vinyl", "magazine",
                       "comics", "textbook", "novel", "music", "movie"]),
    ("Collectibles & Art", ["antique", "art", "painting", "sculpture", "coins",
                            "stamps", "vintage", "collectible", "rare", "handmade"]),
    ("Other", ["misc", "various", "other", "unknown", "mixed",
               "general", "different", "assorted"]),
]


async def init_db(seed_categories: bool = True) -> None:
    """Create tables if they don't exist. Safe to call multiple times."""
    async with _lock:
        async with aiosqlite.connect(DB_PATH) as db:
            await db.executescript(_SCHEMA)
            # Run additive migrations (ALTER TABLE ADD COLUMN, etc.)
            # SQLite raises OperationalError when the column already exists.
            for sql in _MIGRATIONS:
                try:
                    await db.execute(sql)
                except aiosqlite.OperationalError:
                    pass   # already applied
            if seed_categories:
                async with db.execute("SELECT COUNT(*) FROM categories") as cur:
                    count = (await cur.fetchone())[0]
                if count == 0:
                    await db.executemany(
                        "INSERT INTO categories (name, keywords, sort_order) VALUES (?, ?, ?)",
                        [
                            (name, json.dumps(keywords), idx)
                            for idx, (name, keywords) in enumerate(DEFAULT_CATEGORIES, start=1)
                        ],
                    )
                    logger.info("Seeded %d default categories", len(DEFAULT_CATEGORIES))
            await db.commit()
    logger.info("Database initialised at %s", DB_PATH)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _dt(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


# ── Processing queue ──────────────────────────────────────────────────────────

def _row_to_queue_item(r: aiosqlite.Row) -> QueueItem:
    return QueueItem(
        id=r["id"],
        image_id=r["image_id"],
        processing_type=r["processing_type"],
        priority=r["priority"],
        status=r["status"],
        attempts=r["attempts"],
        max_attempts=r["max_attempts"],
        created_at=datetime.fromisoformat(r["created_at"]),
        started_at=_dt(r["started_at"]),
        completed_at=_dt(r["completed_at"]),
        error_message=r["error_message"],
    )


async def enqueue_items(
    image_ids: list[int],
    processing_type: str,
    priority: str = "normal",
    max_attempts: int = 3,
) -> int:
    """
    Insert one pending queue item per image.
    Images that already have a pending/processing item of the same type are
    skipped. Returns the number of rows actually added.
    """
    now = _iso(utcnow())
    added = 0
    async with aiosqlite.connect(DB_PATH) as db:
        for image_id in image_ids:
            async with db.execute(
                """SELECT 1 FROM queue_items
                   WHERE image_id = ? AND processing_type = ?
                     AND status IN ('pending', 'processing')""",
                (image_id, processing_type),
            ) as cur:
                if await cur.fetchone():
                    continue
            await db.execute(
                """INSERT INTO queue_items
                   (image_id, processing_type, priority, status, attempts, max_attempts, created_at)
                   VALUES (?, ?, ?, 'pending', 0, ?, ?)""",
                (image_id, processing_type, priority, max_attempts, now),
            )
            added += 1
        await db.commit()
    return added


async def get_queue_item(queue_id: int) -> Optional[QueueItem]:
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute("SELECT * FROM queue_items WHERE id = ?", (queue_id,)) as cur:
            row = await cur.fetchone()
    return _row_to_queue_item(row) if row else None


async def get_pending_items(limit: int = 10) -> list[QueueItem]:
    """Oldest-first pending items still under their attempt bound, high priority first."""
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            """SELECT * FROM queue_items
               WHERE status = 'pending' AND attempts < max_attempts
               ORDER BY CASE priority WHEN 'high' THEN 0 WHEN 'normal' THEN 1 ELSE 2 END,
                        created_at, id
               LIMIT ?""",
            (limit,),
        ) as cur:
            rows = await cur.fetchall()
    return [_row_to_queue_item(r) for r in rows]


async def claim_item(queue_id: int) -> bool:
    """
    Atomically move one item pending → processing and bump its attempt count.
    Returns False if another worker got there first (or the item is exhausted).
    """
    now = _iso(utcnow())
    async with aiosqlite.connect(DB_PATH) as db:
        cur = await db.execute(
            """UPDATE queue_items
               SET status = 'processing', attempts = attempts + 1,
                   started_at = ?, error_message = NULL
               WHERE id = ? AND status = 'pending' AND attempts < max_attempts""",
            (now, queue_id),
        )
        await db.commit()
        return cur.rowcount == 1


async def complete_item(queue_id: int) -> None:
    now = _iso(utcnow())
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """UPDATE queue_items SET status = 'completed', completed_at = ?, error_message = NULL
               WHERE id = ?""",
            (now, queue_id),
        )
        await db.commit()


async def fail_item(queue_id: int, error_message: str, exhaust: bool = False) -> Optional[QueueItem]:
    """
    Mark an item failed and return its updated row.
    exhaust=True also uses up its remaining attempts so it is never retried.
    """
    now = _iso(utcnow())
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """UPDATE queue_items
               SET status = 'failed', completed_at = ?, error_message = ?,
                   attempts = CASE WHEN ? THEN max_attempts ELSE attempts END
               WHERE id = ?""",
            (now, error_message[:1000], int(exhaust), queue_id),
        )
        await db.commit()
    return await get_queue_item(queue_id)


async def fail_stale_processing(started_before: datetime) -> int:
    """Mark items stuck in 'processing' since before the cutoff as failed."""
    now = _iso(utcnow())
    async with aiosqlite.connect(DB_PATH) as db:
        cur = await db.execute(
            """UPDATE queue_items
               SET status = 'failed', completed_at = ?,
                   error_message = 'Processing timed out (stale item reclaimed)'
               WHERE status = 'processing' AND started_at < ?""",
            (now, _iso(started_before)),
        )
        await db.commit()
        return cur.rowcount


async def reset_failed_items(created_after: datetime) -> int:
    """Put retry-eligible failed items back to pending."""
    async with aiosqlite.connect(DB_PATH) as db:
        cur = await db.execute(
            """UPDATE queue_items
               SET status = 'pending', error_message = NULL,
                   started_at = NULL, completed_at = NULL
               WHERE status = 'failed' AND attempts < max_attempts AND created_at > ?""",
            (_iso(created_after),),
        )
        await db.commit()
        return cur.rowcount


async def purge_terminal_items(completed_before: datetime) -> int:
    """Delete completed/failed items whose completion is older than the cutoff."""
    async with aiosqlite.connect(DB_PATH) as db:
        cur = await db.execute(
            """DELETE FROM queue_items
               WHERE status IN ('completed', 'failed') AND completed_at < ?""",
            (_iso(completed_before),),
        )
        await db.commit()
        return cur.rowcount


async def get_queue_stats(since: datetime) -> dict:
    """
    Queue health over items created since `since`.
    Processing time is measured from started_at to completed_at.
    """
    since_str = _iso(since)
    counts = {status: 0 for status in QUEUE_STATUSES}
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            "SELECT status, COUNT(*) FROM queue_items WHERE created_at >= ? GROUP BY status",
            (since_str,),
        ) as cur:
            for status, count in await cur.fetchall():
                counts[status] = count

        async with db.execute(
            """SELECT started_at, completed_at FROM queue_items
               WHERE created_at >= ? AND status = 'completed'
                 AND started_at IS NOT NULL AND completed_at IS NOT NULL""",
            (since_str,),
        ) as cur:
            spans = await cur.fetchall()

        async with db.execute(
            """SELECT COUNT(*) FROM queue_items
               WHERE status = 'failed' AND attempts >= max_attempts AND created_at >= ?""",
            (since_str,),
        ) as cur:
            exhausted = (await cur.fetchone())[0]

        async with db.execute(
            "SELECT COUNT(*) FROM queue_items WHERE status = 'pending' AND attempts < max_attempts"
        ) as cur:
            backlog = (await cur.fetchone())[0]

    durations = [
        (datetime.fromisoformat(done) - datetime.fromisoformat(started)).total_seconds()
        for started, done in spans
    ]
    total = sum(counts.values())
    finished = counts["completed"] + counts["failed"]
    return {
        **counts,
        "total":               total,
        "exhausted":           exhausted,
        "backlog":             backlog,
        "avg_processing_secs": round(sum(durations) / len(durations), 2) if durations else 0.0,
        "success_rate":        round(counts["completed"] / finished * 100, 2) if finished else 0.0,
        "failure_rate":        round(counts["failed"] / finished * 100, 2) if finished else 0.0,
    }


async def get_listing_progress(article_id: int) -> tuple[int, int]:
    """(analysis items for the listing's images, how many of them are terminal)."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            """SELECT COUNT(*),
                      SUM(CASE WHEN q.status = 'completed'
                                 OR (q.status = 'failed' AND q.attempts >= q.max_attempts)
                               THEN 1 ELSE 0 END)
               FROM queue_items q JOIN article_images i ON i.id = q.image_id
               WHERE i.article_id = ? AND q.processing_type = 'analysis'""",
            (article_id,),
        ) as cur:
            total, terminal = await cur.fetchone()
    return total or 0, terminal or 0


async def get_unaggregated_listings() -> list[int]:
    """Listings whose analysis items are all terminal but which were never aggregated."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            """SELECT i.article_id
               FROM queue_items q JOIN article_images i ON i.id = q.image_id
               WHERE i.article_id IS NOT NULL AND q.processing_type = 'analysis'
                 AND i.article_id NOT IN (SELECT article_id FROM listing_aggregations)
               GROUP BY i.article_id
               HAVING SUM(CASE WHEN q.status = 'completed'
                                 OR (q.status = 'failed' AND q.attempts >= q.max_attempts)
                               THEN 1 ELSE 0 END) = COUNT(*)
               ORDER BY i.article_id"""
        ) as cur:
            return [row[0] for row in await cur.fetchall()]


async def mark_listing_aggregated(article_id: int, image_count: int) -> bool:
    """Record that a listing was aggregated. False if it already was."""
    now = _iso(utcnow())
    async with aiosqlite.connect(DB_PATH) as db:
        cur = await db.execute(
            """INSERT OR IGNORE INTO listing_aggregations (article_id, aggregated_at, image_count)
               VALUES (?, ?, ?)""",
            (article_id, now, image_count),
        )
        await db.commit()
        return cur.rowcount == 1


async def is_listing_aggregated(article_id: int) -> bool:
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            "SELECT 1 FROM listing_aggregations WHERE article_id = ?", (article_id,)
        ) as cur:
            return await cur.fetchone() is not None


# ── Article images (upstream collaborator) ────────────────────────────────────

def _row_to_image(r: aiosqlite.Row) -> ArticleImage:
    return ArticleImage(
        id=r["id"],
        article_id=r["article_id"],
        file_path=r["file_path"],
        filename=r["filename"],
        content_hash=r["content_hash"],
        analysis_json=r["analysis_json"],
        text_json=r["text_json"],
        analyzed_at=_dt(r["analyzed_at"]),
        created_at=datetime.fromisoformat(r["created_at"]),
        similar_json=r["similar_json"],
    )


async def add_image(
    file_path: str,
    filename: str = "",
    article_id: Optional[int] = None,
    content_hash: Optional[str] = None,
) -> int:
    now = _iso(utcnow())
    async with aiosqlite.connect(DB_PATH) as db:
        cur = await db.execute(
            """INSERT INTO article_images (article_id, file_path, filename, content_hash, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (article_id, file_path, filename or os.path.basename(file_path), content_hash, now),
        )
        await db.commit()
        return cur.lastrowid


async def get_image(image_id: int) -> Optional[ArticleImage]:
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute("SELECT * FROM article_images WHERE id = ?", (image_id,)) as cur:
            row = await cur.fetchone()
    return _row_to_image(row) if row else None


async def get_images_for_article(article_id: int) -> list[ArticleImage]:
    """Images of one listing in upload order (the order aggregation sees them)."""
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            "SELECT * FROM article_images WHERE article_id = ? ORDER BY id", (article_id,)
        ) as cur:
            rows = await cur.fetchall()
    return [_row_to_image(r) for r in rows]


async def get_analyzed_images(exclude_id: int, limit: int = 200) -> list[ArticleImage]:
    """Most recently analysed images other than `exclude_id` (similarity candidates)."""
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            """SELECT * FROM article_images
               WHERE id != ? AND analysis_json IS NOT NULL
               ORDER BY analyzed_at DESC LIMIT ?""",
            (exclude_id, limit),
        ) as cur:
            rows = await cur.fetchall()
    return [_row_to_image(r) for r in rows]


async def set_image_hash(image_id: int, content_hash: str) -> None:
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            "UPDATE article_images SET content_hash = ? WHERE id = ?", (content_hash, image_id)
        )
        await db.commit()


async def save_image_analysis(image_id: int, analysis: dict) -> None:
    now = _iso(utcnow())
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            "UPDATE article_images SET analysis_json = ?, analyzed_at = ? WHERE id = ?",
            (json.dumps(analysis), now, image_id),
        )
        await db.commit()


async def save_image_text(image_id: int, fragments: list[dict]) -> None:
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            "UPDATE article_images SET text_json = ? WHERE id = ?",
            (json.dumps(fragments), image_id),
        )
        await db.commit()


async def save_image_similar(image_id: int, similar: list[dict]) -> None:
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            "UPDATE article_images SET similar_json = ? WHERE id = ?",
            (json.dumps(similar), image_id),
        )
        await db.commit()


# ── Categories & price history (upstream collaborators) ──────────────────────

async def get_categories(active_only: bool = True) -> list[Category]:
    sql = "SELECT id, name, keywords, is_active, sort_order FROM categories"
    if active_only:
        sql += " WHERE is_active = 1"
    sql += " ORDER BY sort_order, id"
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(sql) as cur:
            rows = await cur.fetchall()
    return [
        Category(id=r[0], name=r[1], keywords=json.loads(r[2] or "[]"),
                 is_active=bool(r[3]), sort_order=r[4])
        for r in rows
    ]


async def add_category(name: str, keywords: list[str], sort_order: int = 0) -> int:
    async with aiosqlite.connect(DB_PATH) as db:
        cur = await db.execute(
            "INSERT INTO categories (name, keywords, sort_order) VALUES (?, ?, ?)",
            (name, json.dumps(keywords), sort_order),
        )
        await db.commit()
        return cur.lastrowid


async def add_price_record(
    category_id: int,
    price: float,
    condition: str = "good",
    article_id: Optional[int] = None,
    created_at: Optional[datetime] = None,
) -> None:
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO price_history (article_id, category_id, condition_type, original_price, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (article_id, category_id, condition, price, _iso(created_at or utcnow())),
        )
        await db.commit()


async def get_price_stats(
    category_id: int,
    since: datetime,
    condition: Optional[str] = None,
) -> dict:
    """avg/min/max/sample_size of sale prices for a category (optionally one condition)."""
    sql = """SELECT AVG(original_price), MIN(original_price), MAX(original_price), COUNT(*)
             FROM price_history WHERE category_id = ? AND created_at > ?"""
    params: list = [category_id, _iso(since)]
    if condition:
        sql += " AND condition_type = ?"
        params.append(condition)
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(sql, params) as cur:
            avg, lo, hi, count = await cur.fetchone()
    return {"avg": avg, "min": lo, "max": hi, "sample_size": count or 0}


# ── Suggestions ───────────────────────────────────────────────────────────────

def _row_to_suggestion(r: aiosqlite.Row) -> Suggestion:
    return Suggestion(
        id=r["id"],
        article_id=r["article_id"],
        image_id=r["image_id"],
        category_id=r["category_id"],
        suggestion_type=r["suggestion_type"],
        suggested_value=r["suggested_value"],
        confidence_score=r["confidence_score"],
        user_feedback=r["user_feedback"],
        modified_value=r["modified_value"],
        is_accepted=bool(r["is_accepted"]),
        feedback_processed=bool(r["feedback_processed"]),
        created_at=datetime.fromisoformat(r["created_at"]),
        updated_at=datetime.fromisoformat(r["updated_at"]),
    )


async def add_suggestion(
    suggestion_type: str,
    suggested_value: str,
    confidence_score: float,
    article_id: Optional[int] = None,
    image_id: Optional[int] = None,
    category_id: Optional[int] = None,
    created_at: Optional[datetime] = None,
) -> int:
    if suggestion_type not in SUGGESTION_TYPES:
        raise ValueError(f"Unknown suggestion type: {suggestion_type}")
    now = _iso(created_at or utcnow())
    async with aiosqlite.connect(DB_PATH) as db:
        cur = await db.execute(
            """INSERT INTO suggestions
               (article_id, image_id, category_id, suggestion_type, suggested_value,
                confidence_score, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (article_id, image_id, category_id, suggestion_type, str(suggested_value),
             confidence_score, now, now),
        )
        await db.commit()
        return cur.lastrowid


async def get_suggestion(suggestion_id: int) -> Optional[Suggestion]:
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute("SELECT * FROM suggestions WHERE id = ?", (suggestion_id,)) as cur:
            row = await cur.fetchone()
    return _row_to_suggestion(row) if row else None


async def get_suggestions_for_article(article_id: int) -> list[Suggestion]:
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            """SELECT * FROM suggestions WHERE article_id = ?
               ORDER BY suggestion_type, confidence_score DESC, id""",
            (article_id,),
        ) as cur:
            rows = await cur.fetchall()
    return [_row_to_suggestion(r) for r in rows]


async def store_feedback(
    suggestion_id: int,
    feedback: str,
    modified_value: Optional[str] = None,
) -> tuple[Optional[Suggestion], bool]:
    """
    Persist user feedback on a suggestion.

    The stored feedback is always overwritten with the latest value, but the
    feedback_processed flag flips 0 → 1 only once, in the same transaction.
    Returns (updated suggestion, first_time) — first_time is True only for the
    call that flipped the flag, so the caller applies the learning nudge once.
    """
    if feedback not in FEEDBACK_VALUES:
        raise ValueError(f"Unknown feedback value: {feedback}")
    now = _iso(utcnow())
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("BEGIN IMMEDIATE")
        cur = await db.execute(
            """UPDATE suggestions
               SET user_feedback = ?, is_accepted = ?, modified_value = ?, updated_at = ?
               WHERE id = ?""",
            (feedback, 1 if feedback == "accepted" else 0, modified_value, now, suggestion_id),
        )
        if cur.rowcount == 0:
            await db.rollback()
            return None, False
        cur = await db.execute(
            "UPDATE suggestions SET feedback_processed = 1 WHERE id = ? AND feedback_processed = 0",
            (suggestion_id,),
        )
        first_time = cur.rowcount == 1
        await db.commit()
        async with db.execute("SELECT * FROM suggestions WHERE id = ?", (suggestion_id,)) as c:
            row = await c.fetchone()
    return _row_to_suggestion(row), first_time


async def get_feedback_weight_averages(since: datetime) -> dict[str, float]:
    """Rolling {accepted→1.2, rejected→0.8, modified→1.0} average per suggestion type."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            """SELECT suggestion_type,
                      AVG(CASE WHEN user_feedback = 'accepted' THEN 1.2
                               WHEN user_feedback = 'rejected' THEN 0.8
                               ELSE 1.0 END)
               FROM suggestions
               WHERE user_feedback IS NOT NULL AND created_at > ?
               GROUP BY suggestion_type""",
            (_iso(since),),
        ) as cur:
            rows = await cur.fetchall()
    return {r[0]: r[1] for r in rows}


async def get_historical_accuracy(
    suggestion_type: str,
    since: datetime,
    category_id: Optional[int] = None,
) -> Optional[float]:
    """Fraction of reviewed suggestions of this type that were accepted. None without history."""
    sql = """SELECT AVG(CASE WHEN user_feedback = 'accepted' THEN 1.0 ELSE 0.0 END)
             FROM suggestions
             WHERE suggestion_type = ? AND user_feedback IS NOT NULL AND created_at > ?"""
    params: list = [suggestion_type, _iso(since)]
    if category_id is not None:
        sql += " AND category_id = ?"
        params.append(category_id)
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(sql, params) as cur:
            row = await cur.fetchone()
    return row[0] if row and row[0] is not None else None


async def get_suggestion_stats() -> list[dict]:
    """Per-type totals, feedback breakdown and average confidence."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            """SELECT suggestion_type, COUNT(*),
                      SUM(CASE WHEN user_feedback = 'accepted' THEN 1 ELSE 0 END),
                      SUM(CASE WHEN user_feedback = 'rejected' THEN 1 ELSE 0 END),
                      SUM(CASE WHEN user_feedback = 'modified' THEN 1 ELSE 0 END),
                      AVG(confidence_score)
               FROM suggestions GROUP BY suggestion_type ORDER BY suggestion_type"""
        ) as cur:
            rows = await cur.fetchall()
    return [
        {
            "suggestion_type": r[0],
            "total":           r[1],
            "accepted":        r[2] or 0,
            "rejected":        r[3] or 0,
            "modified":        r[4] or 0,
            "avg_confidence":  round(r[5] or 0.0, 3),
        }
        for r in rows
    ]


# ── Learned confidence weights ────────────────────────────────────────────────

async def get_confidence_weights() -> dict[str, float]:
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute("SELECT suggestion_type, weight FROM confidence_weights") as cur:
            rows = await cur.fetchall()
    return {r[0]: r[1] for r in rows}


async def set_confidence_weight(suggestion_type: str, weight: float) -> None:
    now = _iso(utcnow())
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO confidence_weights (suggestion_type, weight, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(suggestion_type) DO UPDATE SET
                 weight=excluded.weight, updated_at=excluded.updated_at""",
            (suggestion_type, weight, now),
        )
        await db.commit()


# ── Analysis cache rows ───────────────────────────────────────────────────────

async def get_cache_entry(cache_key: str) -> Optional[str]:
    """Return the payload for a non-expired key, or None."""
    now = _iso(utcnow())
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            "SELECT payload FROM analysis_cache WHERE cache_key = ? AND expires_at > ?",
            (cache_key, now),
        ) as cur:
            row = await cur.fetchone()
            return row[0] if row else None


async def put_cache_entry(cache_key: str, kind: str, payload: str, expires_at: datetime) -> None:
    now = _iso(utcnow())
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT OR REPLACE INTO analysis_cache (cache_key, kind, payload, created_at, expires_at)
               VALUES (?, ?, ?, ?, ?)""",
            (cache_key, kind, payload, now, _iso(expires_at)),
        )
        await db.commit()


async def purge_expired_cache() -> int:
    now = _iso(utcnow())
    async with aiosqlite.connect(DB_PATH) as db:
        cur = await db.execute("DELETE FROM analysis_cache WHERE expires_at <= ?", (now,))
        await db.commit()
        return cur.rowcount


async def get_cache_stats() -> dict:
    now = _iso(utcnow())
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            """SELECT kind, COUNT(*), SUM(CASE WHEN expires_at <= ? THEN 1 ELSE 0 END)
               FROM analysis_cache GROUP BY kind""",
            (now,),
        ) as cur:
            rows = await cur.fetchall()
    by_kind = {r[0]: r[1] for r in rows}
    return {
        "entries": sum(by_kind.values()),
        "expired": sum((r[2] or 0) for r in rows),
        "by_kind": by_kind,
    }


# ── API key operations ────────────────────────────────────────────────────────

async def get_api_key(key_name: str) -> Optional[str]:
    """Return DB-stored value for key_name, or None if not set."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            "SELECT key_value FROM api_keys WHERE key_name = ?", (key_name,)
        ) as cur:
            row = await cur.fetchone()
            return row[0] if row else None


async def set_api_key(key_name: str, key_value: str, updated_by: str = "") -> None:
    now = _iso(utcnow())
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO api_keys (key_name, key_value, updated_by, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(key_name) DO UPDATE SET
                 key_value=excluded.key_value,
                 updated_by=excluded.updated_by,
                 updated_at=excluded.updated_at""",
            (key_name, key_value, updated_by, now),
        )
        await db.commit()


async def delete_api_key(key_name: str) -> None:
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute("DELETE FROM api_keys WHERE key_name = ?", (key_name,))
        await db.commit()


# ── Service settings ──────────────────────────────────────────────────────────

async def get_setting(key: str) -> Optional[str]:
    """Return DB-stored value for setting key, or None if not set."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            "SELECT value FROM service_settings WHERE key = ?", (key,)
        ) as cur:
            row = await cur.fetchone()
            return row[0] if row else None


async def set_setting(key: str, value: str, updated_by: str = "") -> None:
    now = _iso(utcnow())
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO service_settings (key, value, updated_by, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET
                 value=excluded.value,
                 updated_by=excluded.updated_by,
                 updated_at=excluded.updated_at""",
            (key, value, updated_by, now),
        )
        await db.commit()


async def delete_setting(key: str) -> None:
    """Remove a setting from DB (service falls back to .env / default)."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute("DELETE FROM service_settings WHERE key = ?", (key,))
        await db.commit()


# ── Provider health ───────────────────────────────────────────────────────────

async def record_provider_failure(provider_name: str, reason: str) -> int:
    """Increment failure counters. Returns new consecutive_failures count."""
    now = _iso(utcnow())
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO provider_health
               (provider_name, consecutive_failures, total_failures, total_calls,
                last_failure_ts, last_failure_reason)
               VALUES (?, 1, 1, 1, ?, ?)
               ON CONFLICT(provider_name) DO UPDATE SET
                 consecutive_failures = consecutive_failures + 1,
                 total_failures       = total_failures + 1,
                 total_calls          = total_calls + 1,
                 last_failure_ts      = excluded.last_failure_ts,
                 last_failure_reason  = excluded.last_failure_reason""",
            (provider_name, now, reason[:500]),
        )
        await db.commit()
        async with db.execute(
            "SELECT consecutive_failures FROM provider_health WHERE provider_name = ?",
            (provider_name,),
        ) as cur:
            row = await cur.fetchone()
            return row[0] if row else 1


async def record_provider_success(provider_name: str) -> None:
    """Reset consecutive failure counter after a successful call."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO provider_health (provider_name, consecutive_failures, total_calls)
               VALUES (?, 0, 1)
               ON CONFLICT(provider_name) DO UPDATE SET
                 consecutive_failures = 0, total_calls = total_calls + 1""",
            (provider_name,),
        )
        await db.commit()


async def disable_provider(provider_name: str, reason: str) -> None:
    """Disable a provider until an operator re-enables it."""
    now = _iso(utcnow())
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO provider_health (provider_name, is_disabled, disabled_at, last_failure_reason)
               VALUES (?, 1, ?, ?)
               ON CONFLICT(provider_name) DO UPDATE SET
                 is_disabled         = 1,
                 disabled_at         = excluded.disabled_at,
                 last_failure_reason = excluded.last_failure_reason""",
            (provider_name, now, reason[:500]),
        )
        await db.commit()


async def enable_provider(provider_name: str) -> None:
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO provider_health (provider_name, is_disabled, consecutive_failures)
               VALUES (?, 0, 0)
               ON CONFLICT(provider_name) DO UPDATE SET
                 is_disabled = 0, consecutive_failures = 0, disabled_at = NULL""",
            (provider_name,),
        )
        await db.commit()


async def is_provider_disabled(provider_name: str) -> bool:
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            "SELECT is_disabled FROM provider_health WHERE provider_name = ?", (provider_name,)
        ) as cur:
            row = await cur.fetchone()
    return bool(row and row[0])


async def get_provider_health() -> list[dict]:
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            """SELECT provider_name, consecutive_failures, total_failures, total_calls,
                      is_disabled, disabled_at, last_failure_ts, last_failure_reason
               FROM provider_health ORDER BY is_disabled DESC, total_failures DESC"""
        ) as cur:
            rows = await cur.fetchall()
    return [
        {
            "provider_name":        r[0],
            "consecutive_failures": r[1],
            "total_failures":       r[2],
            "total_calls":          r[3],
            "is_disabled":          bool(r[4]),
            "disabled_at":          r[5],
            "last_failure_ts":      r[6],
            "last_failure_reason":  r[7],
        }
        for r in rows
    ]
