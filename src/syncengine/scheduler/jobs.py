"""
APScheduler jobs for background sync.

A daily full sync of every active connection catches anything nobody
triggered manually. Runs with the configured system role, through the same
SyncService entry point as manual syncs.
"""
import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from syncengine.config import get_settings

logger = logging.getLogger(__name__)


def build_scheduler(engine) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine to pass to the sync service.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _scheduled_sync,
        trigger="cron",
        hour=settings.scheduled_sync_hour,
        minute=0,
        id="scheduled_sync",
        replace_existing=True,
        kwargs={"engine": engine},
    )

    return scheduler


async def _scheduled_sync(engine) -> None:
    """
    Daily job: full_sync every active connection.

    Idempotent: connections already in sync just produce update operations.
    """
    from sqlmodel import Session, select

    from syncengine.models.integration import IntegrationConnection
    from syncengine.models.schemas import CallerContext
    from syncengine.sync.service import SyncService

    settings = get_settings()
    caller = CallerContext(user_id="scheduler", role=settings.scheduler_role)
    logger.info("Scheduled sync starting at %s", datetime.utcnow().isoformat())

    try:
        with Session(engine) as s:
            connection_ids = s.exec(
                select(IntegrationConnection.id).where(IntegrationConnection.is_active == True)  # noqa: E712
            ).all()

        service = SyncService(engine=engine)
        for connection_id in connection_ids:
            result = await service.trigger_manual_sync(
                caller, connection_id, sync_type="full_sync"
            )
            if result.success:
                logger.info(
                    "Connection %s synced: %s (%d processed, %d failed)",
                    connection_id, result.data.status,
                    result.data.records_processed, result.data.records_failed,
                )
            else:
                logger.warning("Connection %s not synced: %s", connection_id, result.error)

    except Exception as exc:
        logger.error("Scheduled sync failed: %s", exc)
