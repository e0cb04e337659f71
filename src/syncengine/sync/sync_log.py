"""
SyncLog lifecycle.

    pending → running → completed | failed | partial

A log is created directly in `running` and receives exactly one terminal
update. The terminal write is conditional on the row still being `running`,
so a log closed by cancel_sync_log is never overwritten by the run that was
cancelled. Retries open a new log (retry_of_id → original); the original is
never touched again.
"""
import logging
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from sqlmodel import Session

from syncengine.models.schemas import SyncError, decode_sync_errors, encode_sync_errors
from syncengine.models.sync import SyncLog
from syncengine.sync.errors import SyncLogStateError, SyncPreconditionError

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


class SyncType(str, Enum):
    PUSH = "push"
    PULL = "pull"
    FULL_SYNC = "full_sync"


TERMINAL_STATUSES = {SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.PARTIAL}
RETRYABLE_STATUSES = {SyncStatus.FAILED, SyncStatus.PARTIAL}

CANCELLED = "CANCELLED"


def decide_terminal_status(
    *,
    records_created: int,
    records_updated: int,
    records_failed: int,
    aborted: bool = False,
) -> SyncStatus:
    """
    Terminal status for a finished run.

    aborted (top-level exception) → failed; no failures → completed (also
    when nothing was processed); failures plus at least one success →
    partial; failures and no success → failed.
    """
    if aborted:
        return SyncStatus.FAILED
    if records_failed == 0:
        return SyncStatus.COMPLETED
    if records_created + records_updated > 0:
        return SyncStatus.PARTIAL
    return SyncStatus.FAILED


def create_sync_log(
    engine,
    *,
    connection_id: int,
    mapping_id: Optional[int],
    sync_type: str,
    retry_of_id: Optional[int] = None,
) -> SyncLog:
    """Open a log in `running` state."""
    log = SyncLog(
        connection_id=connection_id,
        mapping_id=mapping_id,
        sync_type=SyncType(sync_type).value,
        status=SyncStatus.RUNNING.value,
        started_at=datetime.utcnow(),
        retry_of_id=retry_of_id,
    )
    with Session(engine) as s:
        s.add(log)
        s.commit()
        s.refresh(log)
    logger.info(
        "Sync log %s opened (connection=%s mapping=%s type=%s retry_of=%s)",
        log.id, connection_id, mapping_id, sync_type, retry_of_id,
    )
    return log


def get_sync_log(engine, sync_log_id: int) -> Optional[SyncLog]:
    with Session(engine) as s:
        return s.get(SyncLog, sync_log_id)


def is_running(engine, sync_log_id: int) -> bool:
    log = get_sync_log(engine, sync_log_id)
    return log is not None and log.status == SyncStatus.RUNNING.value


def finalize_sync_log(
    engine,
    sync_log_id: int,
    *,
    status: SyncStatus,
    records_processed: int,
    records_created: int,
    records_updated: int,
    records_failed: int,
    errors: List[SyncError],
) -> SyncLog:
    """
    Write the terminal update.

    Returns:
        The log as persisted. If it was already closed (e.g. cancelled while
        the run was in flight) it is returned unchanged.
    """
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"'{status.value}' is not a terminal status")

    with Session(engine) as s:
        db_log = s.get(SyncLog, sync_log_id)
        if db_log is None:
            raise LookupError(f"Sync log {sync_log_id} not found")
        if db_log.status != SyncStatus.RUNNING.value:
            logger.info(
                "Sync log %s already %s; terminal update skipped", sync_log_id, db_log.status
            )
            return db_log
        db_log.status = status.value
        db_log.records_processed = records_processed
        db_log.records_created = records_created
        db_log.records_updated = records_updated
        db_log.records_failed = records_failed
        db_log.error_details_json = encode_sync_errors(errors)
        db_log.completed_at = datetime.utcnow()
        s.add(db_log)
        s.commit()
        s.refresh(db_log)

    logger.info(
        "Sync log %s %s: processed=%d created=%d updated=%d failed=%d",
        sync_log_id, status.value, records_processed, records_created,
        records_updated, records_failed,
    )
    return db_log


def cancel_sync_log(engine, sync_log_id: int) -> SyncLog:
    """
    Close a running log as failed with one CANCELLED error.

    Counters keep whatever value the log holds. In-flight external calls are
    not interrupted; the batch processor notices at its next record.

    Raises:
        SyncPreconditionError: log not found.
        SyncLogStateError: log is not running.
    """
    with Session(engine) as s:
        db_log = s.get(SyncLog, sync_log_id)
        if db_log is None:
            raise SyncPreconditionError("Sync log not found")
        if db_log.status != SyncStatus.RUNNING.value:
            raise SyncLogStateError("Can only cancel running syncs")
        db_log.status = SyncStatus.FAILED.value
        db_log.error_details_json = encode_sync_errors(
            [SyncError(error_code=CANCELLED, message="Sync was cancelled by user")]
        )
        db_log.completed_at = datetime.utcnow()
        s.add(db_log)
        s.commit()
        s.refresh(db_log)
    logger.info("Sync log %s cancelled", sync_log_id)
    return db_log


def ensure_retryable(log: SyncLog) -> None:
    """
    Raises:
        SyncLogStateError: unless the log is failed or partial and came from
            a push-direction run.
    """
    if log.status not in {s.value for s in RETRYABLE_STATUSES}:
        raise SyncLogStateError(
            f"Cannot retry sync with status '{log.status}'. "
            "Only failed or partial syncs can be retried."
        )
    if log.sync_type == SyncType.PULL.value:
        raise SyncLogStateError("Pull syncs cannot be retried; trigger a new pull instead.")


def failed_record_ids(log: SyncLog) -> Dict[Optional[int], List[str]]:
    """
    Failed local record ids of a log, grouped by mapping id.

    Errors without a record id (mapping-level, cancellation) are skipped.
    Errors without a mapping id fall back to the log's own mapping_id.
    Order of first appearance is kept; duplicates are dropped.
    """
    grouped: Dict[Optional[int], List[str]] = {}
    for err in decode_sync_errors(log):
        if not err.record_id:
            continue
        mapping_id = err.mapping_id if err.mapping_id is not None else log.mapping_id
        ids = grouped.setdefault(mapping_id, [])
        if err.record_id not in ids:
            ids.append(err.record_id)
    return grouped
