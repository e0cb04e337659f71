"""
Main entrypoint: runs the sync scheduler, or a single sync operation.

FastAPI runs separately under uvicorn.

Usage:
    python -m syncengine                                   # starts scheduler
    python -m syncengine sync --connection 1 [--type full_sync]
    python -m syncengine retry --log 17
    uvicorn syncengine.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


async def _run_scheduler() -> None:
    from syncengine.config import get_settings
    from syncengine.db.engine import get_engine
    from syncengine.scheduler.jobs import build_scheduler

    settings = get_settings()
    scheduler = build_scheduler(get_engine())
    scheduler.start()
    logger.info(
        "Scheduler started (full sync at %02d:00 UTC). Press Ctrl+C to stop.",
        settings.scheduled_sync_hour,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: `sync` / `retry` run once, otherwise schedule
    if len(sys.argv) > 1 and sys.argv[1] in ("sync", "retry"):
        from syncengine.scripts.run_sync import main
        sys.exit(main(sys.argv[1:]))
    else:
        asyncio.run(_run_scheduler())
