"""
Batch processor — one pass over the in-scope records of one sync mapping.

Flow for a push batch (push and full_sync):
  1. Decode + validate the mapping's rules and filter conditions
  2. Fetch candidate local rows (all, or only the retry id set)
  3. Filter Evaluator drops out-of-scope rows (not counted)
  4. Snapshot External-Identity Lookup once for the batch
  5. Per record: transform → create/update via adapter (with backoff) →
     upsert ExternalIdMapping. A failure is recorded as a SyncError and the
     batch moves on to the next record.

Flow for a pull batch:
  1. adapter.fetch_records(external_entity)
  2. Records whose external id is linked refresh their mapping snapshot;
     unlinked ones are skipped.

Failure scopes:
  - per record → SyncError(record_id=<local id>), batch continues
  - mapping level (bad configuration, unreadable table) → one SyncError with
    an empty record_id; the mapping's records count as failed
  - connection level → handled by SyncService before a batch starts

Counters are plain sums, so outcomes can be folded in any order; they are
folded in input order to keep error lists stable.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from syncengine.adapters.base import ExternalApiAdapter, supports_pull
from syncengine.config import get_settings
from syncengine.db.local_tables import LocalTableError, load_local_records
from syncengine.models.integration import IntegrationConnection, SyncMapping
from syncengine.models.schemas import (
    FieldMappingRule,
    MappingSyncSummary,
    SyncError,
    SyncResult,
    decode_field_mappings,
    decode_filter_conditions,
)
from syncengine.sync.errors import SyncConfigurationError, TransformError
from syncengine.sync.external_ids import (
    CREATE,
    ExternalIdLookup,
    determine_operation,
    refresh_snapshot,
    upsert_external_id_mapping,
)
from syncengine.sync.field_mapping import apply_field_mappings, validate_field_mappings
from syncengine.sync.filters import filter_records, validate_filter_conditions
from syncengine.sync.retry import RetryConfig, TokenRefreshFn, retry_with_backoff
from syncengine.sync.sync_log import SyncStatus, SyncType, decide_terminal_status

logger = logging.getLogger(__name__)


@dataclass
class RecordOutcome:
    local_id: str
    success: bool
    operation: str  # "create" | "update"
    external_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class SyncContext:
    """Counters and errors accumulated during a run (or one mapping of it)."""

    connection_id: int
    mapping_id: Optional[int]
    sync_type: str
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    records_skipped: int = 0
    errors: List[SyncError] = field(default_factory=list)
    mappings: List[MappingSyncSummary] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.utcnow)

    def record_create(self) -> None:
        self.records_processed += 1
        self.records_created += 1

    def record_update(self) -> None:
        self.records_processed += 1
        self.records_updated += 1

    def record_failure(
        self,
        record_id: str,
        error_code: str,
        message: str,
        mapping_id: Optional[int] = None,
    ) -> None:
        self.records_processed += 1
        self.records_failed += 1
        self.errors.append(
            SyncError(
                record_id=str(record_id),
                error_code=error_code,
                message=message,
                mapping_id=mapping_id if mapping_id is not None else self.mapping_id,
            )
        )

    def record_mapping_failure(self, error_code: str, message: str, failed_count: int = 1) -> None:
        """The whole mapping failed before its records could be attempted."""
        self.records_failed += failed_count
        self.errors.append(
            SyncError(error_code=error_code, message=message, mapping_id=self.mapping_id)
        )

    def record_outcome(self, outcome: RecordOutcome) -> None:
        if not outcome.success:
            self.record_failure(
                outcome.local_id,
                outcome.error_code or "UNKNOWN",
                outcome.error or "Unknown error",
            )
        elif outcome.operation == CREATE:
            self.record_create()
        else:
            self.record_update()

    def summary(self, local_table: str) -> MappingSyncSummary:
        mapping_error = next((e.message for e in self.errors if not e.record_id), None)
        return MappingSyncSummary(
            mapping_id=self.mapping_id,
            local_table=local_table,
            records_processed=self.records_processed,
            records_created=self.records_created,
            records_updated=self.records_updated,
            records_failed=self.records_failed,
            records_skipped=self.records_skipped,
            error=mapping_error,
        )

    def absorb(self, other: "SyncContext", local_table: str) -> None:
        """Fold one mapping's context into this run context."""
        self.records_processed += other.records_processed
        self.records_created += other.records_created
        self.records_updated += other.records_updated
        self.records_failed += other.records_failed
        self.records_skipped += other.records_skipped
        self.errors.extend(other.errors)
        self.mappings.append(other.summary(local_table))

    def terminal_status(self, aborted: bool = False) -> SyncStatus:
        return decide_terminal_status(
            records_created=self.records_created,
            records_updated=self.records_updated,
            records_failed=self.records_failed,
            aborted=aborted,
        )

    def to_result(self, sync_log_id: int, status: str) -> SyncResult:
        return SyncResult(
            sync_log_id=sync_log_id,
            status=status,
            records_processed=self.records_processed,
            records_created=self.records_created,
            records_updated=self.records_updated,
            records_failed=self.records_failed,
            error_details=list(self.errors) or None,
            mappings=list(self.mappings),
        )


class BatchProcessor:
    """Runs batches for one connection against one adapter."""

    def __init__(
        self,
        engine,
        adapter: ExternalApiAdapter,
        *,
        retry_config: Optional[RetryConfig] = None,
        on_token_expired: Optional[TokenRefreshFn] = None,
        concurrency: Optional[int] = None,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ):
        """
        Args:
            engine: SQLAlchemy engine for local tables and sync bookkeeping.
            adapter: ExternalApiAdapter (or AsyncMock in tests).
            retry_config: Backoff settings; defaults to Settings.
            on_token_expired: Async refresh callback used when the adapter
                reports an expired token mid-run.
            concurrency: Max records in flight per mapping; defaults to
                Settings.record_concurrency.
            is_cancelled: Checked before each record; True stops the batch.
        """
        self.engine = engine
        self.adapter = adapter
        self.retry_config = retry_config or RetryConfig.from_settings()
        self.on_token_expired = on_token_expired
        self.concurrency = max(1, concurrency or get_settings().record_concurrency)
        self.is_cancelled = is_cancelled
        self._cancel_seen = False

    async def run_mapping(
        self,
        connection: IntegrationConnection,
        mapping: SyncMapping,
        sync_type: str,
        record_ids: Optional[Sequence[str]] = None,
    ) -> SyncContext:
        """
        Execute one batch for `mapping`.

        Args:
            record_ids: Restrict to these local ids (retry). None = whole table.

        Returns:
            The mapping's SyncContext. Never raises for per-record or
            mapping-level failures.
        """
        ctx = SyncContext(connection.id, mapping.id, sync_type)
        if sync_type == SyncType.PULL.value:
            return await self._pull(connection, mapping, ctx)

        ids = [str(i) for i in record_ids] if record_ids is not None else None
        failed_if_aborted = len(ids) if ids is not None else 1

        try:
            rules = decode_field_mappings(mapping)
            conditions = decode_filter_conditions(mapping)
            validate_field_mappings(rules)
            validate_filter_conditions(conditions)
        except SyncConfigurationError as exc:
            logger.warning("Mapping %s misconfigured: %s", mapping.id, exc)
            ctx.record_mapping_failure("MAPPING_ERROR", str(exc), failed_if_aborted)
            return ctx

        try:
            records = load_local_records(self.engine, mapping.local_table, ids)
            lookup = ExternalIdLookup.snapshot(self.engine, connection.id, mapping.local_table, ids)
        except (LocalTableError, SQLAlchemyError) as exc:
            logger.warning("Mapping %s: cannot read %s: %s", mapping.id, mapping.local_table, exc)
            ctx.record_mapping_failure("FETCH_ERROR", str(exc), failed_if_aborted)
            return ctx

        if ids is not None:
            found = {str(r["id"]) for r in records}
            for missing in (i for i in ids if i not in found):
                ctx.record_failure(
                    missing, "RECORD_NOT_FOUND",
                    f"Record {missing} no longer exists in {mapping.local_table}",
                )

        in_scope = filter_records(records, conditions)
        logger.info(
            "Mapping %s (%s → %s): %d candidate(s), %d in scope, %d already linked",
            mapping.id, mapping.local_table, mapping.external_entity,
            len(records), len(in_scope), len(lookup),
        )

        outcomes = await self._sync_records(connection, mapping, rules, in_scope, lookup)
        for outcome in outcomes:
            if outcome is not None:
                ctx.record_outcome(outcome)
        return ctx

    # ─── Push ────────────────────────────────────────────────────────────────

    def _stop_requested(self) -> bool:
        if self._cancel_seen:
            return True
        if self.is_cancelled is not None and self.is_cancelled():
            logger.info("Run cancelled; remaining records are not sent")
            self._cancel_seen = True
        return self._cancel_seen

    async def _sync_records(
        self,
        connection: IntegrationConnection,
        mapping: SyncMapping,
        rules: List[FieldMappingRule],
        records: List[Mapping[str, Any]],
        lookup: ExternalIdLookup,
    ) -> List[Optional[RecordOutcome]]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def guarded(record: Mapping[str, Any]) -> Optional[RecordOutcome]:
            async with semaphore:
                if self._stop_requested():
                    return None
                return await self._sync_record(connection, mapping, rules, record, lookup)

        # Every task settles before the outcomes are counted; an error in one
        # record becomes that record's failure.
        results = await asyncio.gather(*(guarded(r) for r in records), return_exceptions=True)
        outcomes: List[Optional[RecordOutcome]] = []
        for record, result in zip(records, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                local_id = str(record["id"])
                logger.error("Record %s/%s raised: %r", mapping.local_table, local_id, result)
                existing = lookup.resolve(connection.id, mapping.local_table, local_id)
                result = RecordOutcome(
                    local_id, False, determine_operation(existing),
                    error=str(result) or result.__class__.__name__, error_code="SYNC_ERROR",
                )
            outcomes.append(result)
        return outcomes

    async def _sync_record(
        self,
        connection: IntegrationConnection,
        mapping: SyncMapping,
        rules: List[FieldMappingRule],
        record: Mapping[str, Any],
        lookup: ExternalIdLookup,
    ) -> RecordOutcome:
        local_id = str(record["id"])
        existing = lookup.resolve(connection.id, mapping.local_table, local_id)
        operation = determine_operation(existing)

        def failed(code: str, message: str) -> RecordOutcome:
            logger.warning("Record %s/%s %s failed: %s %s",
                           mapping.local_table, local_id, operation, code, message)
            return RecordOutcome(local_id, False, operation, error=message, error_code=code)

        try:
            payload = apply_field_mappings(record, rules)
        except TransformError as exc:
            return failed("TRANSFORM_ERROR", str(exc))
        except Exception as exc:
            logger.exception("Unexpected error transforming %s/%s", mapping.local_table, local_id)
            return failed("TRANSFORM_ERROR", str(exc) or exc.__class__.__name__)

        try:
            if operation == CREATE:
                result = await retry_with_backoff(
                    lambda: self.adapter.create_record(mapping.external_entity, payload),
                    self.retry_config,
                    self.on_token_expired,
                )
            else:
                result = await retry_with_backoff(
                    lambda: self.adapter.update_record(
                        mapping.external_entity, existing.external_id, payload
                    ),
                    self.retry_config,
                    self.on_token_expired,
                )
        except Exception as exc:  # e.g. the token refresh callback itself raised
            return failed("SYNC_ERROR", str(exc) or exc.__class__.__name__)

        if not result.success:
            return failed(result.error_code or "SYNC_ERROR", result.error or "External call failed")

        external_id = result.result.external_id if operation == CREATE else existing.external_id
        if not external_id:
            return failed("MISSING_EXTERNAL_ID", "Adapter reported success without an external id")

        try:
            upsert_external_id_mapping(
                self.engine,
                connection_id=connection.id,
                local_table=mapping.local_table,
                local_id=local_id,
                external_id=external_id,
                external_data=payload,
            )
        except SQLAlchemyError as exc:
            # The external write succeeded; without the mapping a later run
            # would create a second external record for this row.
            logger.error("External id %s for %s/%s not persisted: %s",
                         external_id, mapping.local_table, local_id, exc)
            return failed("PERSIST_ERROR", f"External id {external_id} not persisted: {exc}")

        return RecordOutcome(local_id, True, operation, external_id=external_id)

    # ─── Pull ────────────────────────────────────────────────────────────────

    async def _pull(
        self, connection: IntegrationConnection, mapping: SyncMapping, ctx: SyncContext
    ) -> SyncContext:
        if not supports_pull(self.adapter):
            ctx.record_mapping_failure("NOT_SUPPORTED", "Adapter does not support pull sync")
            return ctx

        result = await retry_with_backoff(
            lambda: self.adapter.fetch_records(mapping.external_entity),
            self.retry_config,
            self.on_token_expired,
        )
        if not result.success:
            ctx.record_mapping_failure(
                result.error_code or "FETCH_ERROR", result.error or "Failed to fetch records"
            )
            return ctx

        try:
            lookup = ExternalIdLookup.snapshot(self.engine, connection.id, mapping.local_table)
        except SQLAlchemyError as exc:
            ctx.record_mapping_failure("FETCH_ERROR", str(exc))
            return ctx

        for external in result.result.records:
            if self._stop_requested():
                break
            external_id = str(external.get("id") or "")
            linked = lookup.resolve_external(connection.id, mapping.local_table, external_id)
            if linked is None:
                ctx.records_skipped += 1
                continue
            try:
                refresh_snapshot(self.engine, linked.id, _without_id(external))
            except (SQLAlchemyError, LookupError) as exc:
                ctx.record_failure(linked.local_id, "PERSIST_ERROR", str(exc))
                continue
            ctx.record_update()

        logger.info(
            "Pull for mapping %s: %d refreshed, %d unlinked, %d failed",
            mapping.id, ctx.records_updated, ctx.records_skipped, ctx.records_failed,
        )
        return ctx


def _without_id(record: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in record.items() if k != "id"}
