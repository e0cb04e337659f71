"""
SyncService — public sync operations: trigger, retry, status, cancel.

Every operation:
  - takes an explicit CallerContext and rejects non-admin callers with the
    uniform error "Unauthorized" before reading any state
  - returns ActionResult and never raises past its own boundary
  - closes any SyncLog it opened, on every return path

Flow for trigger_manual_sync:
  1. Authorize, validate input
  2. Load connection; must be active with a usable token (refresh if possible)
  3. Resolve mappings (one, or all active ones of the connection)
  4. Build the adapter for the connection's provider
  5. Open SyncLog (running) → BatchProcessor per mapping → finalize log
  6. Update connection.last_sync_at / last_error

Runs for the same connection are serialized inside this process with an
asyncio.Lock. Across processes, ExternalIdMapping upserts keep overlapping
runs convergent.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from sqlmodel import Session, select

import syncengine.adapters.memory  # noqa: F401  registers the "memory" provider
from syncengine.adapters.base import AdapterNotFoundError, ExternalApiAdapter, create_adapter
from syncengine.config import get_settings
from syncengine.models.integration import IntegrationConnection, SyncMapping
from syncengine.models.schemas import (
    ActionResult,
    CallerContext,
    SyncError,
    SyncLogRead,
    SyncResult,
    SyncStatusSummary,
)
from syncengine.models.sync import SyncLog
from syncengine.sync.engine import BatchProcessor, SyncContext
from syncengine.sync.errors import SyncPreconditionError, UnauthorizedError
from syncengine.sync.retry import RetryConfig
from syncengine.sync.sync_log import (
    SyncStatus,
    SyncType,
    cancel_sync_log,
    create_sync_log,
    ensure_retryable,
    failed_record_ids,
    finalize_sync_log,
    get_sync_log,
    is_running,
)
from syncengine.sync.tokens import TokenRefresher, check_token_status

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[IntegrationConnection], ExternalApiAdapter]


class SyncService:
    """Entry points for manual syncs, retries, status and cancellation."""

    def __init__(
        self,
        engine,
        adapter_factory: Optional[AdapterFactory] = None,
        token_refresher: Optional[TokenRefresher] = None,
        retry_config: Optional[RetryConfig] = None,
        record_concurrency: Optional[int] = None,
    ):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            adapter_factory: Builds the adapter for a connection. Defaults to
                the provider registry (create_adapter).
            token_refresher: Refreshes a connection's OAuth token; without it
                an expired token cannot be refreshed.
            retry_config: Backoff for adapter calls; defaults to Settings.
            record_concurrency: Records in flight per mapping.
        """
        self.engine = engine
        self.adapter_factory = adapter_factory or create_adapter
        self.token_refresher = token_refresher
        self.retry_config = retry_config
        self.record_concurrency = record_concurrency
        self._locks: Dict[int, asyncio.Lock] = {}

    # ─── Public operations ───────────────────────────────────────────────────

    async def trigger_manual_sync(
        self,
        caller: CallerContext,
        connection_id: Optional[int],
        mapping_id: Optional[int] = None,
        sync_type: str = SyncType.PUSH.value,
    ) -> ActionResult[SyncResult]:
        """Sync one mapping, or all active mappings, of a connection."""
        try:
            self._authorize(caller)
            if not connection_id:
                raise SyncPreconditionError("Connection ID is required")
            sync_type = _parse_sync_type(sync_type)

            connection = await self._usable_connection(connection_id)
            mappings = self._resolve_mappings(connection.id, mapping_id)
            adapter = self._build_adapter(connection)

            logger.info(
                "Manual %s sync of connection %s requested by %s (%d mapping(s))",
                sync_type, connection.id, caller.user_id, len(mappings),
            )
            async with self._lock(connection.id):
                result = await self._run(
                    connection, adapter, mapping_id, sync_type,
                    [(m, None) for m in mappings],
                )
            return ActionResult.ok(result)

        except SyncPreconditionError as exc:
            return ActionResult.fail(str(exc))
        except Exception as exc:
            logger.exception("Error triggering manual sync")
            return ActionResult.fail(str(exc) or "Failed to trigger sync")

    async def retry_failed_sync(
        self, caller: CallerContext, sync_log_id: Optional[int]
    ) -> ActionResult[SyncResult]:
        """Re-run only the records that failed in a failed/partial run."""
        try:
            self._authorize(caller)
            if not sync_log_id:
                raise SyncPreconditionError("Sync log ID is required")

            original = get_sync_log(self.engine, sync_log_id)
            if original is None:
                raise SyncPreconditionError("Sync log not found")
            ensure_retryable(original)

            connection = await self._usable_connection(original.connection_id)
            grouped = failed_record_ids(original)
            if not grouped:
                raise SyncPreconditionError("No failed records found to retry")
            adapter = self._build_adapter(connection)

            batches = []
            orphaned: Dict[Optional[int], List[str]] = {}
            for mapping_id, ids in grouped.items():
                mapping = self._get_mapping(connection.id, mapping_id) if mapping_id else None
                if mapping is None:
                    orphaned[mapping_id] = ids
                else:
                    batches.append((mapping, ids))

            logger.info(
                "Retrying sync log %s: %d record(s) across %d mapping(s)",
                original.id, sum(len(ids) for ids in grouped.values()), len(grouped),
            )
            async with self._lock(connection.id):
                result = await self._run(
                    connection, adapter, original.mapping_id, original.sync_type,
                    batches, retry_of_id=original.id, orphaned=orphaned,
                )
            return ActionResult.ok(result)

        except SyncPreconditionError as exc:
            return ActionResult.fail(str(exc))
        except Exception as exc:
            logger.exception("Error retrying failed sync")
            return ActionResult.fail(str(exc) or "Failed to retry sync")

    def get_sync_status(
        self, caller: CallerContext, connection_id: Optional[int]
    ) -> ActionResult[SyncStatusSummary]:
        """Latest run, running flag, and success rate over recent history."""
        try:
            self._authorize(caller)
            if not connection_id:
                raise SyncPreconditionError("Connection ID is required")

            limit = get_settings().status_history_limit
            with Session(self.engine) as s:
                logs = s.exec(
                    select(SyncLog)
                    .where(SyncLog.connection_id == connection_id)
                    .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
                    .limit(limit)
                ).all()

            total = len(logs)
            completed = sum(1 for log in logs if log.status == SyncStatus.COMPLETED.value)
            rate = (completed / total) * 100 if total else 0.0
            return ActionResult.ok(SyncStatusSummary(
                last_sync=SyncLogRead.from_log(logs[0]) if logs else None,
                is_running=any(log.status == SyncStatus.RUNNING.value for log in logs),
                total_syncs=total,
                success_rate=round(rate, 2),
            ))

        except SyncPreconditionError as exc:
            return ActionResult.fail(str(exc))
        except Exception as exc:
            logger.exception("Error getting sync status")
            return ActionResult.fail(str(exc) or "Failed to get sync status")

    def cancel_sync(self, caller: CallerContext, sync_log_id: Optional[int]) -> ActionResult[None]:
        """Mark a running log failed (cooperative; in-flight calls finish)."""
        try:
            self._authorize(caller)
            if not sync_log_id:
                raise SyncPreconditionError("Sync log ID is required")
            cancel_sync_log(self.engine, sync_log_id)
            return ActionResult.ok()

        except SyncPreconditionError as exc:
            return ActionResult.fail(str(exc))
        except Exception as exc:
            logger.exception("Error cancelling sync")
            return ActionResult.fail(str(exc) or "Failed to cancel sync")

    # ─── Run ─────────────────────────────────────────────────────────────────

    async def _run(
        self,
        connection: IntegrationConnection,
        adapter: ExternalApiAdapter,
        log_mapping_id: Optional[int],
        sync_type: str,
        batches: Sequence,
        retry_of_id: Optional[int] = None,
        orphaned: Optional[Dict[Optional[int], List[str]]] = None,
    ) -> SyncResult:
        """
        Open a log, run each (mapping, record_ids) batch, close the log.

        Any exception after the log is opened closes it as failed and is
        re-raised for the caller's boundary to convert.
        """
        log = create_sync_log(
            self.engine,
            connection_id=connection.id,
            mapping_id=log_mapping_id,
            sync_type=sync_type,
            retry_of_id=retry_of_id,
        )
        context = SyncContext(connection.id, log_mapping_id, sync_type)
        processor = BatchProcessor(
            self.engine,
            adapter,
            retry_config=self.retry_config,
            on_token_expired=self._token_callback(connection),
            concurrency=self.record_concurrency,
            is_cancelled=lambda: not is_running(self.engine, log.id),
        )

        try:
            for mapping_id, ids in (orphaned or {}).items():
                for record_id in ids:
                    context.record_failure(
                        record_id, "NO_MAPPING", "No mapping found for retry", mapping_id=mapping_id
                    )

            for mapping, record_ids in batches:
                mapping_context = await processor.run_mapping(
                    connection, mapping, sync_type, record_ids
                )
                context.absorb(mapping_context, mapping.local_table)

            status = context.terminal_status()
        except Exception as exc:
            context.errors.append(SyncError(error_code="SYNC_ABORTED", message=str(exc)))
            self._close(log.id, context, SyncStatus.FAILED)
            self._touch_connection(connection.id, f"Sync aborted: {exc}")
            raise

        closed = self._close(log.id, context, status)
        self._touch_connection(
            connection.id,
            f"{len(context.errors)} errors during sync" if context.errors else None,
        )
        return context.to_result(log.id, closed.status)

    def _close(self, log_id: int, context: SyncContext, status: SyncStatus) -> SyncLog:
        return finalize_sync_log(
            self.engine,
            log_id,
            status=status,
            records_processed=context.records_processed,
            records_created=context.records_created,
            records_updated=context.records_updated,
            records_failed=context.records_failed,
            errors=context.errors,
        )

    def _touch_connection(self, connection_id: int, last_error: Optional[str]) -> None:
        with Session(self.engine) as s:
            conn = s.get(IntegrationConnection, connection_id)
            conn.last_sync_at = datetime.utcnow()
            conn.last_error = last_error
            s.add(conn)
            s.commit()

    # ─── Preconditions ───────────────────────────────────────────────────────

    def _authorize(self, caller: Optional[CallerContext]) -> None:
        if caller is None or caller.role not in get_settings().admin_roles:
            raise UnauthorizedError()

    async def _usable_connection(self, connection_id: int) -> IntegrationConnection:
        with Session(self.engine) as s:
            connection = s.get(IntegrationConnection, connection_id)
        if connection is None:
            raise SyncPreconditionError("Connection not found")
        if not connection.is_active:
            raise SyncPreconditionError("Connection is not active")

        token = check_token_status(connection)
        if token.valid:
            return connection
        if token.requires_reauth or self.token_refresher is None:
            raise SyncPreconditionError(
                "Connection requires re-authentication. "
                "OAuth token expired and no refresh path is available."
            )
        if not await self.token_refresher(connection):
            raise SyncPreconditionError("Token refresh failed; connection requires re-authentication")

        logger.info("Refreshed token for connection %s before sync", connection.id)
        with Session(self.engine) as s:
            return s.get(IntegrationConnection, connection_id)

    def _resolve_mappings(self, connection_id: int, mapping_id: Optional[int]) -> List[SyncMapping]:
        if mapping_id:
            mapping = self._get_mapping(connection_id, mapping_id)
            if mapping is None:
                raise SyncPreconditionError("Mapping not found")
            return [mapping]

        with Session(self.engine) as s:
            mappings = s.exec(
                select(SyncMapping)
                .where(SyncMapping.connection_id == connection_id, SyncMapping.is_active == True)  # noqa: E712
                .order_by(SyncMapping.id)
            ).all()
        if not mappings:
            raise SyncPreconditionError("No active mappings found for this connection")
        return list(mappings)

    def _get_mapping(self, connection_id: int, mapping_id: int) -> Optional[SyncMapping]:
        with Session(self.engine) as s:
            return s.exec(
                select(SyncMapping).where(
                    SyncMapping.id == mapping_id, SyncMapping.connection_id == connection_id
                )
            ).first()

    def _build_adapter(self, connection: IntegrationConnection) -> ExternalApiAdapter:
        try:
            return self.adapter_factory(connection)
        except AdapterNotFoundError as exc:
            raise SyncPreconditionError(str(exc)) from exc

    def _token_callback(self, connection: IntegrationConnection):
        if self.token_refresher is None or not connection.refresh_token:
            return None

        async def refresh() -> bool:
            return await self.token_refresher(connection)

        return refresh

    def _lock(self, connection_id: int) -> asyncio.Lock:
        if connection_id not in self._locks:
            self._locks[connection_id] = asyncio.Lock()
        return self._locks[connection_id]


def _parse_sync_type(sync_type: Optional[str]) -> str:
    try:
        return SyncType(sync_type or SyncType.PUSH.value).value
    except ValueError:
        raise SyncPreconditionError(
            f"Invalid sync type '{sync_type}'. Expected one of: "
            + ", ".join(t.value for t in SyncType)
        )
