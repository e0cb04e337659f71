"""
Typed schemas for JSON columns and for service results.

SQLModel rows keep rule lists, condition lists, error lists and payload
snapshots as JSON text. Everything is decoded here, at the persistence
boundary, so the sync engine never handles untyped rows. Decode failures
raise MappingDecodeError, which the batch processor records as a
mapping-level error.
"""
import json
from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, TypeAdapter, ValidationError

from syncengine.models.integration import ExternalIdMapping, SyncMapping
from syncengine.models.sync import SyncLog
from syncengine.sync.errors import MappingDecodeError

T = TypeVar("T")


# ── Mapping configuration ─────────────────────────────────────────────────────

class FieldMappingRule(BaseModel):
    """local_field → external_field, with an optional named transform."""

    local_field: str
    external_field: str
    transform: Optional[str] = None


class FilterCondition(BaseModel):
    """One predicate: record[field] <operator> value."""

    field: str
    operator: str
    value: Any = None


# ── Run outcome ───────────────────────────────────────────────────────────────

class SyncError(BaseModel):
    """
    One failure inside a run.

    record_id is the local id for per-record failures and "" for
    mapping-level or run-level failures. mapping_id says which mapping the
    record belongs to, so a retry of a multi-mapping run can regroup ids.
    """

    record_id: str = ""
    error_code: str
    message: str
    mapping_id: Optional[int] = None


class MappingSyncSummary(BaseModel):
    mapping_id: Optional[int]
    local_table: str
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    records_skipped: int = 0  # pull only: external records with no local link
    error: Optional[str] = None


class SyncResult(BaseModel):
    sync_log_id: int
    status: str
    records_processed: int
    records_created: int
    records_updated: int
    records_failed: int
    error_details: Optional[List[SyncError]] = None
    mappings: List[MappingSyncSummary] = []


class SyncLogRead(BaseModel):
    """SyncLog with its error list decoded."""

    id: int
    connection_id: int
    mapping_id: Optional[int]
    sync_type: str
    status: str
    records_processed: int
    records_created: int
    records_updated: int
    records_failed: int
    started_at: datetime
    completed_at: Optional[datetime]
    error_details: List[SyncError] = []
    retry_of_id: Optional[int] = None

    @classmethod
    def from_log(cls, log: SyncLog) -> "SyncLogRead":
        return cls(
            id=log.id,
            connection_id=log.connection_id,
            mapping_id=log.mapping_id,
            sync_type=log.sync_type,
            status=log.status,
            records_processed=log.records_processed,
            records_created=log.records_created,
            records_updated=log.records_updated,
            records_failed=log.records_failed,
            started_at=log.started_at,
            completed_at=log.completed_at,
            error_details=decode_sync_errors(log),
            retry_of_id=log.retry_of_id,
        )


class SyncStatusSummary(BaseModel):
    last_sync: Optional[SyncLogRead]
    is_running: bool
    total_syncs: int
    success_rate: float  # percent, two decimals


# ── Service boundary ──────────────────────────────────────────────────────────

class CallerContext(BaseModel):
    """Identity of whoever invokes a sync operation. Passed explicitly."""

    user_id: str
    role: str


class ActionResult(BaseModel, Generic[T]):
    """Tagged result returned by every public sync operation."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Optional[T] = None) -> "ActionResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> "ActionResult[T]":
        return cls(success=False, error=error)


# ── Decoding ──────────────────────────────────────────────────────────────────

_RULES = TypeAdapter(List[FieldMappingRule])
_CONDITIONS = TypeAdapter(List[FilterCondition])
_ERRORS = TypeAdapter(List[SyncError])


def _decode(adapter: TypeAdapter, raw: Optional[str], what: str):
    if not raw:
        return []
    try:
        return adapter.validate_json(raw)
    except ValidationError as exc:
        raise MappingDecodeError(f"Invalid {what}: {exc.error_count()} error(s)") from exc


def decode_field_mappings(mapping: SyncMapping) -> List[FieldMappingRule]:
    return _decode(_RULES, mapping.field_mappings_json, f"field mappings for mapping {mapping.id}")


def decode_filter_conditions(mapping: SyncMapping) -> List[FilterCondition]:
    return _decode(
        _CONDITIONS, mapping.filter_conditions_json, f"filter conditions for mapping {mapping.id}"
    )


def decode_sync_errors(log: SyncLog) -> List[SyncError]:
    return _decode(_ERRORS, log.error_details_json, f"error details for sync log {log.id}")


def encode_sync_errors(errors: List[SyncError]) -> Optional[str]:
    """JSON for SyncLog.error_details_json; None when there are no errors."""
    if not errors:
        return None
    return _ERRORS.dump_json(errors).decode("utf-8")


def encode_field_mappings(rules: List[FieldMappingRule]) -> str:
    return _RULES.dump_json(rules).decode("utf-8")


def encode_filter_conditions(conditions: List[FilterCondition]) -> str:
    return _CONDITIONS.dump_json(conditions).decode("utf-8")


def decode_external_data(mapping: ExternalIdMapping) -> Optional[Dict[str, Any]]:
    if not mapping.external_data_json:
        return None
    return json.loads(mapping.external_data_json)
