"""
main.py — Single entry point.

Runs the auto-fill HTTP API and the background queue worker in the same
asyncio event loop — no threads, no subprocesses.

Architecture:
  asyncio event loop
    ├── aiohttp web server  (interactive auto-fill, enqueue, feedback)
    └── queue worker        (scheduler.py, every QUEUE_POLL_INTERVAL_SECS)

Operator commands:
  python main.py serve                 API + worker (default)
  python main.py daemon                worker only
  python main.py process [--batch N]   run one batch and exit
  python main.py stats                 queue + suggestion statistics
  python main.py cleanup [--days N]    purge finished items and expired cache
  python main.py retry                 stale reclaim + reset retryable failures
  python main.py estimate              time to drain the current backlog
  python main.py enable-provider NAME  re-enable an auto-disabled vision provider
  python main.py set-key NAME VALUE    store an API key in the DB (overrides .env)
  python main.py set-setting KEY VAL   change a runtime setting
  python main.py settings              show current settings and keys
"""
import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

import config

# Log file lives in the same data/ directory as the database so that a single
# Docker volume mount (./data:/app/data) captures both.
_data_dir = Path(config.DATA_DIR)
_data_dir.mkdir(parents=True, exist_ok=True)

logging.basicConfig(
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(str(_data_dir / "autofill.log"), encoding="utf-8"),
    ],
)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
logging.getLogger("PIL").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def bootstrap():
    """Database + DB settings, then a pipeline and queue ready to use."""
    import database as _db
    from pipeline import AnalysisPipeline
    from processing_queue import ProcessingQueue
    try:
        await _db.init_db()
        logger.info("Database ready at %s", _db.DB_PATH)
        await config.apply_db_settings()
        logger.info("DB settings applied.")
    except Exception as exc:
        logger.critical("FATAL: database init failed: %s", exc, exc_info=True)
        raise
    pipeline = await AnalysisPipeline.create()
    return pipeline, ProcessingQueue(pipeline)


async def run(with_api: bool = True) -> None:
    pipeline, queue = await bootstrap()

    web_runner = None
    if with_api:
        from api_server import start_api_server
        web_runner = await start_api_server(pipeline, queue)

    stop_event = asyncio.Event()

    def _stop(*_):
        logger.info("Shutdown signal received.")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _stop)
        except (NotImplementedError, RuntimeError):
            # Windows doesn't support add_signal_handler for all signals
            pass

    import scheduler as sched
    sched_task = sched.start(queue)
    logger.info("✅ Auto-fill service is running. Press Ctrl+C to stop.")

    try:
        await stop_event.wait()
    except (KeyboardInterrupt, SystemExit):
        pass

    # Graceful shutdown
    logger.info("Shutting down…")
    sched.stop()
    sched_task.cancel()
    if web_runner:
        await web_runner.cleanup()
        logger.info("API server stopped.")
    logger.info("Goodbye.")


async def run_command(args: argparse.Namespace) -> dict:
    """One-shot operator commands. Returns a JSON-serialisable report."""
    import database as _db
    pipeline, queue = await bootstrap()

    if args.command == "process":
        return await queue.process_pending_queue(args.batch)
    if args.command == "stats":
        return {
            "queue":       await queue.stats(),
            "suggestions": await _db.get_suggestion_stats(),
            "weights":     pipeline.weights.as_dict(),
        }
    if args.command == "cleanup":
        return {
            "cleaned":       await queue.cleanup(args.days),
            "cache_expired": await pipeline.cache.purge_expired(),
        }
    if args.command == "retry":
        return {"stale": await queue.reclaim_stale(), "retried": await queue.retry_failed()}
    if args.command == "estimate":
        return await queue.estimate_processing_time()
    if args.command == "enable-provider":
        await _db.enable_provider(args.name)
        return {"enabled": args.name, "health": await _db.get_provider_health()}
    if args.command == "set-key":
        import key_store
        await key_store.set(args.name, args.value)
        return {"key": args.name, "value": key_store.mask(args.value)}
    if args.command == "set-setting":
        import settings_store
        await settings_store.set(args.key, args.value)
        return {"setting": args.key, "value": await settings_store.get_raw(args.key)}
    if args.command == "settings":
        import key_store
        import settings_store
        keys = await key_store.get_all_keys()
        return {
            "settings": await settings_store.get_all(),
            "keys":     {name: key_store.mask(value) for name, value in keys.items()},
        }
    raise ValueError(f"Unknown command: {args.command}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Listing auto-fill service")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="HTTP API + queue worker")
    sub.add_parser("daemon", help="queue worker only")
    process = sub.add_parser("process", help="process one batch of pending items")
    process.add_argument("--batch", type=int, default=None, help="batch size")
    sub.add_parser("stats", help="queue and suggestion statistics")
    cleanup = sub.add_parser("cleanup", help="purge old finished items and expired cache")
    cleanup.add_argument("--days", type=int, default=None, help="retention in days")
    sub.add_parser("retry", help="reclaim stale items and reset retryable failures")
    sub.add_parser("estimate", help="estimate time to drain the queue")
    enable = sub.add_parser("enable-provider", help="re-enable an auto-disabled provider")
    enable.add_argument("name", help="provider name, e.g. google_vision")
    set_key = sub.add_parser("set-key", help="store an API key in the DB")
    set_key.add_argument("name", help="key name, e.g. vision_api_key")
    set_key.add_argument("value")
    set_setting = sub.add_parser("set-setting", help="change a runtime setting")
    set_setting.add_argument("key")
    set_setting.add_argument("value")
    sub.add_parser("settings", help="show current settings and keys")
    return parser


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    command = args.command or "serve"
    try:
        if command in ("serve", "daemon"):
            asyncio.run(run(with_api=command == "serve"))
        else:
            report = asyncio.run(run_command(args))
            print(json.dumps(report, indent=2, default=str))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
